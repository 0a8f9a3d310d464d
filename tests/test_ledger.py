"""Tests for the transaction ledger."""

import threading
from datetime import timedelta
from pathlib import Path

import pytest

from git_relay.ledger import (
    STATUS_FAILED,
    STATUS_RUNNING,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
    Ledger,
    LedgerError,
    TransactionRecord,
    utcnow,
)


@pytest.fixture
def ledger(tmp_path: Path) -> Ledger:
    return Ledger(tmp_path / "data" / "ledger.db", "sync_transactions")


def _record(job: str = "job", target: str = "t1", **kwargs) -> TransactionRecord:
    return TransactionRecord(
        job_name=job, repo_name="repo", source="src", target=target, **kwargs
    )


def test_append_assigns_unique_ids(ledger: Ledger) -> None:
    """Verifies that appended records get distinct identities and round-trip."""
    first = ledger.append(_record(start_time=utcnow()))
    second = ledger.append(_record())

    assert first.id and second.id and first.id != second.id
    stored = ledger.get(first.id)
    assert stored is not None
    assert stored.job_name == "job"
    assert stored.start_time == first.start_time
    assert ledger.get("missing") is None


def test_update_changes_status_and_keeps_position(ledger: Ledger) -> None:
    """Verifies that updating an old record does not make it the newest."""
    old = ledger.append(_record(status=STATUS_RUNNING, branch="a"))
    ledger.append(_record(status=STATUS_RUNNING, branch="b"))

    old.finish(STATUS_FAILED, "boom")
    ledger.update(old)

    records = ledger.list_by_job("job", 10)
    assert [r.branch for r in records] == ["b", "a"]
    assert records[1].status == STATUS_FAILED
    assert records[1].error == "boom"


def test_update_unknown_record_raises(ledger: Ledger) -> None:
    """Verifies that updating a record that was never appended fails loudly."""
    with pytest.raises(LedgerError, match="not found"):
        ledger.update(_record(id="nope"))


def test_list_by_job_orders_newest_first_and_limits(ledger: Ledger) -> None:
    """Verifies ordering, job filtering and the limit of list_by_job."""
    for i in range(5):
        ledger.append(_record(branch=str(i)))
    ledger.append(_record(job="other"))

    assert [r.branch for r in ledger.list_by_job("job", 3)] == ["4", "3", "2"]
    assert len(ledger.list_by_job("job", 100)) == 5
    assert ledger.list_by_job("job", 0) == []
    assert ledger.list_by_job("job", -1) == []
    assert ledger.list_by_job("unknown", 5) == []


def test_last_success(ledger: Ledger) -> None:
    """Verifies that last_success returns the most recent matching success."""
    ledger.append(_record(status=STATUS_SUCCESS, commit_hash="old"))
    ledger.append(_record(status=STATUS_SUCCESS, commit_hash="new"))
    ledger.append(_record(status=STATUS_FAILED, commit_hash="broken"))
    ledger.append(_record(status=STATUS_SUCCESS, target="t2", commit_hash="t2"))

    found = ledger.last_success("job", "repo", "t1")
    assert found is not None and found.commit_hash == "new"
    assert ledger.last_success("job", "repo", "t3") is None


def test_delete_older_than_only_removes_old_terminal_records(ledger: Ledger) -> None:
    """Verifies retention keeps recent and in-flight records."""
    now = utcnow()
    ledger.append(_record(status=STATUS_SUCCESS, end_time=now - timedelta(days=40)))
    ledger.append(_record(status=STATUS_SKIPPED, end_time=now - timedelta(days=31)))
    recent = ledger.append(_record(status=STATUS_SUCCESS, end_time=now))
    running = ledger.append(_record(status=STATUS_RUNNING))

    removed = ledger.delete_older_than(now - timedelta(days=30))

    assert removed == 2
    remaining = {r.id for r in ledger.list_by_job("job", 10)}
    assert remaining == {recent.id, running.id}


def test_aggregate_stats(ledger: Ledger) -> None:
    """Verifies counters and the mean duration over successful pushes."""
    start = utcnow()
    ledger.append(
        _record(
            status=STATUS_SUCCESS,
            start_time=start,
            end_time=start + timedelta(seconds=2),
        )
    )
    ledger.append(
        _record(
            status=STATUS_SUCCESS,
            start_time=start,
            end_time=start + timedelta(seconds=4),
        )
    )
    ledger.append(_record(status=STATUS_FAILED))
    ledger.append(_record(status=STATUS_SKIPPED))
    ledger.append(_record(status=STATUS_RUNNING))

    stats = ledger.aggregate_stats()
    assert stats.total == 5
    assert stats.succeeded == 2
    assert stats.failed == 1
    assert stats.skipped == 1
    assert stats.avg_duration_seconds == pytest.approx(3.0)


def test_aggregate_stats_empty(ledger: Ledger) -> None:
    """Verifies that an empty ledger reports zeros."""
    stats = ledger.aggregate_stats()
    assert stats.total == 0
    assert stats.avg_duration_seconds == 0.0


def test_concurrent_appends_are_all_kept(ledger: Ledger) -> None:
    """Verifies that appends from several threads are serialized without loss."""

    def worker(n: int) -> None:
        for i in range(10):
            ledger.append(_record(branch=f"{n}-{i}"))

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    records = ledger.list_by_job("job", 100)
    assert len(records) == 40
    assert len({r.id for r in records}) == 40


def test_records_survive_reopen(tmp_path: Path) -> None:
    """Verifies that records persist across ledger instances."""
    path = tmp_path / "ledger.db"
    Ledger(path, "tx").append(_record(status=STATUS_SUCCESS))

    assert Ledger(path, "tx").aggregate_stats().total == 1


def test_invalid_collection_name(tmp_path: Path) -> None:
    """Verifies that a collection must be a plain identifier."""
    with pytest.raises(ValueError, match="Invalid collection"):
        Ledger(tmp_path / "ledger.db", "drop table; --")


def test_finish_twice_raises() -> None:
    """Verifies that a terminal record cannot change status again."""
    record = _record(status=STATUS_RUNNING)
    record.finish(STATUS_SUCCESS)
    assert record.end_time is not None

    with pytest.raises(ValueError, match="already success"):
        record.finish(STATUS_FAILED, "late")
