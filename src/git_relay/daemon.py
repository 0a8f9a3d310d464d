import json
import logging
import signal
import sys
import threading
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import FrameType
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from .config import Config, LoggingConfig
from .constants import APP_NAME, APP_VERSION
from .git_wrapper import git_version
from .ledger import Ledger, LedgerError
from .scheduler import Scheduler
from .sync import SyncEngine, SyncError

logger = logging.getLogger(APP_NAME)

console = Console()
err_console = Console(stderr=True)

TEXT_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Context attached to records through `extra=`.
CONTEXT_FIELDS = ("job", "repo", "branch", "target", "commit")


class JSONFormatter(logging.Formatter):
    """Renders each record as one JSON object per line.

    Output format:
    {"ts": "...", "level": "...", "logger": "...", "message": "...", "job": ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                entry[name] = getattr(record, name)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(settings: LoggingConfig) -> logging.Logger:
    """Configures the application logger.

    Args:
        settings (LoggingConfig): Level, format and destination. A destination
                                  other than 'stdout' or 'stderr' is a file
                                  path, rotated by size.

    Returns:
        logging.Logger: The configured application logger.
    """
    if settings.format.lower() == "json":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT, DATE_FORMAT)

    output = settings.output or "stdout"
    if output == "stdout":
        handler: logging.Handler = logging.StreamHandler(sys.stdout)
    elif output == "stderr":
        handler = logging.StreamHandler(sys.stderr)
    else:
        log_file = Path(output).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_file,
            maxBytes=settings.max_size,
            backupCount=settings.max_backups,
        )
    handler.setFormatter(formatter)

    # Reconfiguring replaces the previous destination.
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()
    logger.addHandler(handler)
    logger.setLevel(settings.level.upper())
    return logger


def build_services(config: Config) -> tuple[Ledger, SyncEngine, Scheduler]:
    """Wires the ledger, the sync engine and the scheduler from configuration.

    Raises:
        LedgerError: If the ledger cannot be opened.
    """
    ledger = Ledger(config.store.path, config.store.collection, logger=logger)
    engine = SyncEngine(ledger, Path(config.service.workspace), logger=logger)
    scheduler = Scheduler(
        config.jobs,
        engine,
        ledger=ledger,
        retention_days=config.store.retention_days,
        logger=logger,
    )
    return ledger, engine, scheduler


def _banner(config: Config) -> Panel:
    content = Text()
    content.append("Version:     ", style="bold")
    content.append(f"{APP_VERSION}\n")
    content.append("Environment: ", style="bold")
    content.append(f"{config.service.environment}\n")
    content.append("Jobs:        ", style="bold")
    content.append(f"{len(config.enabled_jobs())} enabled of {len(config.jobs)}\n")
    content.append("Ledger:      ", style="bold")
    content.append(f"{config.store.path} ({config.store.collection})")
    return Panel(content, title=config.service.name, expand=False)


def serve(config: Config, initial_run: bool = True) -> int:
    """Runs the service until SIGINT or SIGTERM.

    Steps:
    1. Configures logging and prints the banner.
    2. Verifies that git is available.
    3. Runs every enabled job once (unless disabled).
    4. Starts the scheduler and waits for a shutdown signal.

    Args:
        config (Config): The validated configuration.
        initial_run (bool, optional): Whether to run every enabled job once
                                      before scheduling. Defaults to True.

    Returns:
        int: The process exit code.
    """
    setup_logging(config.logging)
    console.print(_banner(config))

    try:
        logger.info(f"Using {git_version()}")
    except RuntimeError as e:
        logger.critical(str(e))
        err_console.print(f"[bold red]FATAL:[/bold red] {e}")
        return 1

    try:
        _, _, scheduler = build_services(config)
    except LedgerError as e:
        logger.critical(str(e))
        err_console.print(f"[bold red]FATAL:[/bold red] {e}")
        return 1

    shutdown = threading.Event()

    def handle_signal(signum: int, _frame: FrameType | None) -> None:
        logger.info(f"Received {signal.Signals(signum).name}, shutting down...")
        shutdown.set()
        scheduler.request_stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    if initial_run:
        for job in config.enabled_jobs():
            if shutdown.is_set():
                break
            try:
                scheduler.run_now(job.name)
            except SyncError:
                pass  # Logged by the scheduler; the service keeps going.

    if not shutdown.is_set():
        scheduler.start()
        while not shutdown.wait(1.0):
            pass

    scheduler.stop()
    logger.info(f"{config.service.name} stopped")
    return 0
