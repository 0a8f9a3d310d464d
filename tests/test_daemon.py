"""Tests for the service process: logging setup, wiring and lifecycle."""

import json
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from git_relay import daemon
from git_relay.config import Config, LoggingConfig
from git_relay.context import RunContext
from git_relay.scheduler import Scheduler
from git_relay.sync import RepoOutcome, SyncError


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Builds a configuration with two enabled jobs rooted in tmp_path."""
    repo = {
        "source": "https://github.com/org/project.git",
        "targets": ["https://gitlab.com/org/project.git"],
    }
    return Config.from_dict(
        {
            "service": {"workspace": str(tmp_path / "work")},
            "store": {"path": str(tmp_path / "ledger.db"), "retention_days": 7},
            "logging": {"output": "stderr"},
            "jobs": [
                {"name": "first", "schedule": "@hourly", "repos": [repo]},
                {"name": "second", "schedule": "@daily", "repos": [repo]},
                {"name": "off", "schedule": "", "enabled": False, "repos": [repo]},
            ],
        }
    )


def test_setup_logging_text(capsys: pytest.CaptureFixture) -> None:
    """Verifies the text format and level on stdout."""
    logger = daemon.setup_logging(LoggingConfig(level="warning"))

    logger.info("hidden")
    logger.warning("Disk almost full")

    out = capsys.readouterr().out
    assert "hidden" not in out
    assert "WARNING: Disk almost full" in out
    assert logger.level == logging.WARNING


def test_setup_logging_json_includes_context(capsys: pytest.CaptureFixture) -> None:
    """Verifies one JSON object per line carrying the context fields."""
    logger = daemon.setup_logging(LoggingConfig(format="json"))

    logger.info("PUSHED", extra={"job": "nightly", "branch": "main"})

    entry = json.loads(capsys.readouterr().out.strip())
    assert entry["level"] == "INFO"
    assert entry["logger"] == "git-relay"
    assert entry["message"] == "PUSHED"
    assert entry["job"] == "nightly"
    assert entry["branch"] == "main"
    assert "target" not in entry


def test_json_formatter_renders_exceptions() -> None:
    """Verifies that tracebacks are embedded in the JSON entry."""
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord(
            "git-relay", logging.ERROR, __file__, 1, "failed", None, sys.exc_info()
        )

    entry = json.loads(daemon.JSONFormatter().format(record))

    assert entry["message"] == "failed"
    assert "ValueError: boom" in entry["exception"]


def test_setup_logging_file_rotation(tmp_path: Path) -> None:
    """Verifies the rotating file handler for a file destination."""
    log_file = tmp_path / "logs" / "relay.log"
    settings = LoggingConfig(output=str(log_file), max_size=1024, max_backups=2)

    logger = daemon.setup_logging(settings)
    logger.info("written to disk")

    (handler,) = logger.handlers
    assert isinstance(handler, RotatingFileHandler)
    assert handler.maxBytes == 1024
    assert handler.backupCount == 2
    handler.flush()
    assert "written to disk" in log_file.read_text()


def test_setup_logging_replaces_handlers() -> None:
    """Verifies that reconfiguring does not duplicate output."""
    daemon.setup_logging(LoggingConfig(output="stderr"))
    logger = daemon.setup_logging(LoggingConfig(output="stdout"))
    assert len(logger.handlers) == 1


def test_build_services_wires_the_ledger(config: Config) -> None:
    """Verifies that engine and scheduler share the configured ledger."""
    ledger, engine, scheduler = daemon.build_services(config)

    assert ledger.path == Path(config.store.path)
    assert engine.ledger is ledger
    assert scheduler.ledger is ledger
    assert scheduler.retention_days == 7
    assert scheduler.job_names() == ["first", "second", "off"]


def test_serve_fails_without_git(config: Config, mocker: MagicMock) -> None:
    """Verifies that a missing git executable stops the service at startup."""
    mocker.patch(
        "git_relay.daemon.git_version",
        side_effect=RuntimeError("git is not available: git"),
    )
    build = mocker.patch("git_relay.daemon.build_services")

    assert daemon.serve(config) == 1
    build.assert_not_called()


@pytest.fixture
def signals(mocker: MagicMock) -> dict[int, Any]:
    """Captures the handlers installed by serve instead of installing them."""
    installed: dict[int, Any] = {}
    mocker.patch(
        "git_relay.daemon.signal.signal",
        side_effect=lambda signum, handler: installed.__setitem__(signum, handler),
    )
    return installed


def test_serve_lifecycle(
    config: Config, mocker: MagicMock, signals: dict[int, Any]
) -> None:
    """Verifies initial runs, scheduling and shutdown on SIGTERM."""
    mocker.patch("git_relay.daemon.git_version", return_value="git version 2.44.0")
    scheduler = MagicMock()
    scheduler.run_now.side_effect = [
        SyncError("first", [RepoOutcome(repo="p", source="s", errors=["boom"])]),
        [],
    ]
    scheduler.start.side_effect = lambda: signals[signal.SIGTERM](
        signal.SIGTERM, None
    )
    mocker.patch(
        "git_relay.daemon.build_services",
        return_value=(MagicMock(), MagicMock(), scheduler),
    )

    assert daemon.serve(config) == 0

    # A failed initial run does not prevent the others or the scheduler.
    assert [c.args[0] for c in scheduler.run_now.call_args_list] == [
        "first",
        "second",
    ]
    scheduler.start.assert_called_once()
    scheduler.stop.assert_called_once()
    assert set(signals) == {signal.SIGINT, signal.SIGTERM}


def test_serve_without_initial_run(
    config: Config, mocker: MagicMock, signals: dict[int, Any]
) -> None:
    """Verifies that the initial run can be disabled."""
    mocker.patch("git_relay.daemon.git_version", return_value="git version 2.44.0")
    scheduler = MagicMock()
    scheduler.start.side_effect = lambda: signals[signal.SIGINT](signal.SIGINT, None)
    mocker.patch(
        "git_relay.daemon.build_services",
        return_value=(MagicMock(), MagicMock(), scheduler),
    )

    assert daemon.serve(config, initial_run=False) == 0

    scheduler.run_now.assert_not_called()
    scheduler.stop.assert_called_once()


def test_signal_during_initial_run_cancels_it(
    config: Config, mocker: MagicMock, signals: dict[int, Any]
) -> None:
    """Verifies that a shutdown signal reaches the run already in progress."""
    mocker.patch("git_relay.daemon.git_version", return_value="git version 2.44.0")
    seen: list[str] = []

    def interrupted(job: Any, ctx: RunContext) -> list[RepoOutcome]:
        signals[signal.SIGTERM](signal.SIGTERM, None)
        seen.append(ctx.reason())
        outcome = RepoOutcome(repo="p", source="s", errors=[ctx.reason()])
        outcome.cancelled = True
        return [outcome]

    engine = MagicMock()
    engine.sync_job.side_effect = interrupted
    scheduler = Scheduler(config.jobs, engine)
    mocker.patch(
        "git_relay.daemon.build_services",
        return_value=(MagicMock(), engine, scheduler),
    )

    assert daemon.serve(config) == 0

    assert seen == ["scheduler stopping"]
    # The remaining initial runs and the scheduler start are skipped.
    assert engine.sync_job.call_count == 1
    assert not scheduler.running
