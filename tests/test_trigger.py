"""Tests for schedule expressions."""

from datetime import datetime, timedelta, timezone

import pytest

from git_relay.trigger import Trigger

MOMENT = datetime(2024, 3, 10, 12, 7, 30, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("expression", "expected"),
    [
        ("*/5 * * * *", datetime(2024, 3, 10, 12, 10, 0, tzinfo=timezone.utc)),
        ("0 */5 * * * *", datetime(2024, 3, 10, 12, 10, 0, tzinfo=timezone.utc)),
        ("*/20 * * * * *", datetime(2024, 3, 10, 12, 7, 40, tzinfo=timezone.utc)),
        ("@hourly", datetime(2024, 3, 10, 13, 0, 0, tzinfo=timezone.utc)),
        ("@daily", datetime(2024, 3, 11, 0, 0, 0, tzinfo=timezone.utc)),
    ],
)
def test_next_after(expression: str, expected: datetime) -> None:
    """Verifies fire times for five-field, six-field and named expressions."""
    assert Trigger.parse(expression).next_after(MOMENT) == expected


def test_every_interval() -> None:
    """Verifies that '@every' adds a fixed interval."""
    trigger = Trigger.parse("@every 90s")
    assert trigger.interval == timedelta(seconds=90)
    assert trigger.next_after(MOMENT) == MOMENT + timedelta(seconds=90)
    assert Trigger.parse("@every 2h").interval == timedelta(hours=2)


def test_next_after_is_strictly_later() -> None:
    """Verifies that a moment exactly on a fire time yields the following one."""
    on_the_hour = datetime(2024, 3, 10, 12, 0, 0, tzinfo=timezone.utc)
    assert Trigger.parse("@hourly").next_after(on_the_hour) == on_the_hour + timedelta(
        hours=1
    )


@pytest.mark.parametrize(
    ("expression", "message"),
    [
        ("", "empty"),
        ("   ", "empty"),
        ("@fortnightly", "unknown shortcut"),
        ("@every 0s", "must be positive"),
        ("@every soon", "Invalid time format"),
        ("* * *", "expected 5 or 6 fields"),
        ("61 * * * *", "Invalid schedule"),
    ],
)
def test_parse_rejects_invalid(expression: str, message: str) -> None:
    """Verifies that malformed expressions are rejected with a clear message."""
    with pytest.raises(ValueError, match=message):
        Trigger.parse(expression)
