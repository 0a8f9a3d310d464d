"""Runs jobs on their schedules.

Each enabled job gets a daemon trigger thread that sleeps until the next
fire time and then runs the job through the sync engine. A per-job run lock
keeps two runs of the same job from overlapping: a firing (or `run_now`)
that finds the job busy is skipped. Different jobs never wait on each other.
"""

import logging
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .config import JobDefinition
from .constants import APP_NAME, RETENTION_SWEEP_INTERVAL, STATUS_HISTORY_LIMIT
from .context import RunContext
from .ledger import Ledger, LedgerError, TransactionRecord, utcnow
from .sync import RepoOutcome, SyncEngine, SyncError, raise_for_outcomes
from .trigger import Trigger

STATE_UNSCHEDULED = "unscheduled"
STATE_SCHEDULED = "scheduled"
STATE_RUNNING = "running"
STATE_STOPPED = "stopped"


class JobNotFoundError(KeyError):
    """No job with the requested name is registered."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class JobBusyError(RuntimeError):
    """The job is already running."""


@dataclass
class JobStatus:
    """A point-in-time view of one job.

    Attributes:
        name (str): The job name.
        state (str): unscheduled, scheduled, running or stopped.
        schedule (str): The recurrence expression.
        enabled (bool): Whether the job is registered on start.
        description (str): Free text from the configuration.
        next_run (datetime | None): The next fire time.
        prev_run (datetime | None): The last fire time.
        last_duration (float | None): Seconds taken by the last run.
        last_error (str | None): Failure of the last run, if any.
        recent (list[TransactionRecord]): Latest ledger records, newest first.
    """

    name: str
    state: str
    schedule: str
    enabled: bool = True
    description: str = ""
    next_run: datetime | None = None
    prev_run: datetime | None = None
    last_duration: float | None = None
    last_error: str | None = None
    recent: list[TransactionRecord] = field(default_factory=list)


class _JobSlot:
    """Mutable runtime state of one registered job."""

    def __init__(self, job: JobDefinition, trigger: Trigger | None):
        self.job = job
        self.trigger = trigger
        self.run_lock = threading.Lock()
        self.thread: threading.Thread | None = None
        self.next_run: datetime | None = None
        self.prev_run: datetime | None = None
        self.last_duration: float | None = None
        self.last_error: str | None = None


class Scheduler:
    """Owns the trigger threads, the run locks and the retention sweep.

    Attributes:
        engine (SyncEngine): Performs the runs.
        ledger (Ledger | None): Queried for status and swept for retention.
        retention_days (int): Age of swept records; 0 disables the sweep.
        sweep_interval (float): Seconds between two retention sweeps.
        logger (logging.Logger): Logger for scheduling events.
    """

    def __init__(
        self,
        jobs: Iterable[JobDefinition],
        engine: SyncEngine,
        ledger: Ledger | None = None,
        retention_days: int = 0,
        logger: logging.Logger | None = None,
        sweep_interval: float = RETENTION_SWEEP_INTERVAL,
    ):
        """Registers the jobs without starting anything.

        Raises:
            ValueError: If an enabled job has an invalid schedule.
        """
        self.engine = engine
        self.ledger = ledger
        self.retention_days = retention_days
        self.sweep_interval = sweep_interval
        self.logger = logger or logging.getLogger(APP_NAME)

        self._slots: dict[str, _JobSlot] = {}
        for job in jobs:
            self._slots[job.name] = _JobSlot(job, self._parse_trigger(job))

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._started = False
        self._stopped = False
        self._sweeper: threading.Thread | None = None

    @staticmethod
    def _parse_trigger(job: JobDefinition) -> Trigger | None:
        try:
            return Trigger.parse(job.schedule)
        except ValueError:
            # Disabled jobs may carry an empty or draft schedule.
            if job.enabled:
                raise
            return None

    @property
    def running(self) -> bool:
        return self._started and not self._stopped

    def job_names(self) -> list[str]:
        return list(self._slots)

    def _slot(self, name: str) -> _JobSlot:
        try:
            return self._slots[name]
        except KeyError:
            raise JobNotFoundError(f"Job '{name}' not found") from None

    # --- Lifecycle ---

    def start(self) -> None:
        """Schedules every enabled job and starts the retention sweep.

        Raises:
            RuntimeError: If the scheduler was already stopped.
        """
        with self._lock:
            if self._stopped:
                raise RuntimeError("A stopped scheduler cannot be restarted")

            for slot in self._slots.values():
                if slot.job.enabled:
                    self._schedule(slot)

            if self.ledger is not None and self.retention_days > 0:
                if self._sweeper is None:
                    self._sweeper = threading.Thread(
                        target=self._retention_loop,
                        name="retention-sweep",
                        daemon=True,
                    )
                    self._sweeper.start()

            self._started = True

        scheduled = sum(1 for s in self._slots.values() if s.thread is not None)
        self.logger.info(f"Scheduler started with {scheduled} jobs")

    def _schedule(self, slot: _JobSlot) -> None:
        name = slot.job.name
        if slot.thread is not None:
            self.logger.warning(
                f"Job '{name}' is already scheduled", extra={"job": name}
            )
            return
        slot.thread = threading.Thread(
            target=self._trigger_loop, args=(slot,), name=f"job-{name}", daemon=True
        )
        slot.thread.start()
        self.logger.info(
            f"SCHEDULED {name}: '{slot.job.schedule}'", extra={"job": name}
        )

    def request_stop(self) -> None:
        """Cancels in-flight and future runs without waiting for them.

        Safe to call from a signal handler. In-flight runs observe the signal
        at their next checkpoint; a push that already started completes first.
        """
        self._stop.set()

    def stop(self) -> None:
        """Signals every run to stop and waits for all threads to exit."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            self.request_stop()
            threads = [s.thread for s in self._slots.values() if s.thread]
            if self._sweeper is not None:
                threads.append(self._sweeper)

        for thread in threads:
            thread.join()
        self.logger.info("Scheduler stopped")

    # --- Execution ---

    def _trigger_loop(self, slot: _JobSlot) -> None:
        name = slot.job.name
        while not self._stop.is_set():
            slot.next_run = slot.trigger.next_after(datetime.now().astimezone())
            delay = (slot.next_run - datetime.now().astimezone()).total_seconds()
            if self._stop.wait(max(delay, 0.0)):
                break
            slot.prev_run = slot.next_run
            try:
                self._execute(slot)
            except JobBusyError as e:
                self.logger.warning(f"SKIPPED {name}: {e}", extra={"job": name})
            except SyncError:
                pass  # Logged by _execute.
            except Exception:
                self.logger.exception(f"LOOP ERROR {name}")

    def run_now(self, name: str) -> list[RepoOutcome]:
        """Runs a job immediately on the calling thread.

        Args:
            name (str): The job to run.

        Returns:
            list[RepoOutcome]: The outcome of each repository.

        Raises:
            JobNotFoundError: If no such job is registered.
            JobBusyError: If the job is already running.
            SyncError: If any repository or push failed.
        """
        return self._execute(self._slot(name))

    def _execute(self, slot: _JobSlot) -> list[RepoOutcome]:
        job = slot.job
        if not slot.run_lock.acquire(blocking=False):
            raise JobBusyError(f"Job '{job.name}' is already running")

        try:
            ctx = RunContext(timeout=job.timeout, stop_event=self._stop)
            started = time.monotonic()
            self.logger.info(f"RUN {job.name}: started", extra={"job": job.name})
            try:
                outcomes = self.engine.sync_job(job, ctx)
            except Exception as e:
                slot.last_error = str(e)
                raise
            finally:
                slot.last_duration = time.monotonic() - started

            try:
                raise_for_outcomes(job.name, outcomes)
            except SyncError as e:
                slot.last_error = str(e)
                self.logger.error(
                    f"RUN {job.name}: failed after {slot.last_duration:.1f}s: {e}",
                    extra={"job": job.name},
                )
                raise

            slot.last_error = None
            self.logger.info(
                f"RUN {job.name}: completed in {slot.last_duration:.1f}s",
                extra={"job": job.name},
            )
            return outcomes
        finally:
            slot.run_lock.release()

    # --- Retention ---

    def _retention_loop(self) -> None:
        while True:
            self.sweep_once()
            if self._stop.wait(self.sweep_interval):
                break

    def sweep_once(self) -> int:
        """Deletes ledger records older than the retention period.

        Returns:
            int: The number of deleted records.
        """
        if self.ledger is None or self.retention_days <= 0:
            return 0
        cutoff = utcnow() - timedelta(days=self.retention_days)
        try:
            removed = self.ledger.delete_older_than(cutoff)
        except LedgerError as e:
            self.logger.error(f"RETENTION ERROR: {e}")
            return 0
        if removed:
            self.logger.info(
                f"RETENTION: removed {removed} transactions older than "
                f"{self.retention_days} days"
            )
        return removed

    # --- Status ---

    def _state(self, slot: _JobSlot) -> str:
        if slot.run_lock.locked():
            return STATE_RUNNING
        if self._stopped:
            return STATE_STOPPED
        if slot.thread is not None:
            return STATE_SCHEDULED
        return STATE_UNSCHEDULED

    def job_status(self, name: str) -> JobStatus:
        """Reports the state, timing and recent records of one job.

        Raises:
            JobNotFoundError: If no such job is registered.
        """
        slot = self._slot(name)

        next_run = slot.next_run
        if next_run is None and slot.trigger is not None and not self._stopped:
            next_run = slot.trigger.next_after(datetime.now().astimezone())

        recent: list[TransactionRecord] = []
        if self.ledger is not None:
            try:
                recent = self.ledger.list_by_job(name, STATUS_HISTORY_LIMIT)
            except LedgerError as e:
                self.logger.error(f"STATUS ERROR {name}: {e}")

        return JobStatus(
            name=name,
            state=self._state(slot),
            schedule=slot.job.schedule,
            enabled=slot.job.enabled,
            description=slot.job.description,
            next_run=next_run,
            prev_run=slot.prev_run,
            last_duration=slot.last_duration,
            last_error=slot.last_error,
            recent=recent,
        )

    def all_statuses(self) -> list[JobStatus]:
        return [self.job_status(name) for name in self._slots]
