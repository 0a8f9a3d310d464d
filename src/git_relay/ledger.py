"""Durable record of every push attempt.

Records live in a single table of an embedded SQLite file. Each row holds
the record identity and its JSON document; the autoincrement ``seq`` column
keeps insertion order, which "most recent first" queries walk backwards.
"""

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Iterator
from contextlib import closing
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

from .constants import APP_NAME

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"

TERMINAL_STATUSES = (STATUS_SUCCESS, STATUS_FAILED, STATUS_SKIPPED)


class LedgerError(RuntimeError):
    """A ledger read or write failed."""


def generate_id() -> str:
    """Returns a unique identifier that sorts roughly by creation time."""
    return f"{time.time_ns():020d}-{uuid4().hex[:8]}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class TransactionRecord:
    """The outcome of one push attempt of a branch to a target.

    Attributes:
        job_name (str): The job that performed the attempt.
        repo_name (str): The repository resource name.
        source (str): The source URL.
        target (str): The target URL.
        branch (str): The branch pushed.
        status (str): One of pending, running, success, failed, skipped.
        commit_hash (str): The local commit being mirrored.
        start_time (datetime | None): When the attempt began (UTC).
        end_time (datetime | None): When the attempt concluded (UTC).
        error (str | None): Failure text for failed attempts.
        id (str): Opaque identity assigned on append.
    """

    job_name: str
    repo_name: str
    source: str
    target: str
    branch: str = ""
    status: str = STATUS_PENDING
    commit_hash: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    error: str | None = None
    id: str = ""

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration(self) -> float | None:
        """Seconds between start and end, when both are known."""
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return None

    def finish(self, status: str, error: str | None = None) -> None:
        """Moves the record to a terminal status."""
        if self.terminal:
            raise ValueError(f"Transaction {self.id} is already {self.status}")
        self.status = status
        self.error = error
        self.end_time = utcnow()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["start_time"] = _to_iso(self.start_time)
        data["end_time"] = _to_iso(self.end_time)
        if data["error"] is None:
            del data["error"]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransactionRecord":
        return cls(
            id=data.get("id", ""),
            job_name=data.get("job_name", ""),
            repo_name=data.get("repo_name", ""),
            source=data.get("source", ""),
            target=data.get("target", ""),
            branch=data.get("branch", ""),
            status=data.get("status", STATUS_PENDING),
            commit_hash=data.get("commit_hash", ""),
            start_time=_from_iso(data.get("start_time")),
            end_time=_from_iso(data.get("end_time")),
            error=data.get("error"),
        )


@dataclass
class LedgerStats:
    """Aggregate counters over every stored record."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    avg_duration_seconds: float = 0.0


class Ledger:
    """Append/query/expire store of TransactionRecords.

    Writes are serialized by a lock; reads use their own connection and may
    or may not observe a concurrent append.

    Attributes:
        path (Path): The SQLite file.
        collection (str): The table holding the records.
    """

    def __init__(
        self,
        path: str | Path,
        collection: str,
        logger: logging.Logger | None = None,
    ):
        """Opens (and creates if needed) the ledger.

        Args:
            path (str | Path): The SQLite file. Parent directories are created.
            collection (str): Table name; must be a plain identifier.
            logger (logging.Logger | None): Logger for ledger events.

        Raises:
            ValueError: If the collection name is not a plain identifier.
            LedgerError: If the store cannot be opened.
        """
        if not collection.isidentifier():
            raise ValueError(f"Invalid collection name: {collection!r}")
        self.path = Path(path)
        self.collection = collection
        self.logger = logger or logging.getLogger(APP_NAME)
        self._write_lock = threading.Lock()
        self._init_schema()

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with closing(self.connect()) as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self.collection} (
                        seq INTEGER PRIMARY KEY AUTOINCREMENT,
                        id TEXT NOT NULL UNIQUE,
                        data TEXT NOT NULL
                    )
                    """
                )
                conn.commit()
        except (OSError, sqlite3.Error) as e:
            raise LedgerError(f"Failed to open ledger {self.path}: {e}") from e

    # --- Writes ---

    def append(self, record: TransactionRecord) -> TransactionRecord:
        """Stores a new record, assigning its identity when missing.

        Returns:
            TransactionRecord: The same record, with `id` set.

        Raises:
            LedgerError: If the write fails or the identity already exists.
        """
        if not record.id:
            record.id = generate_id()
        payload = json.dumps(record.to_dict())
        try:
            with self._write_lock, closing(self.connect()) as conn:
                conn.execute(
                    f"INSERT INTO {self.collection} (id, data) VALUES (?, ?)",
                    (record.id, payload),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise LedgerError(f"Failed to append transaction {record.id}: {e}") from e
        return record

    def update(self, record: TransactionRecord) -> None:
        """Rewrites an existing record in place, keeping its position.

        Raises:
            LedgerError: If the write fails or the record does not exist.
        """
        payload = json.dumps(record.to_dict())
        try:
            with self._write_lock, closing(self.connect()) as conn:
                cur = conn.execute(
                    f"UPDATE {self.collection} SET data = ? WHERE id = ?",
                    (payload, record.id),
                )
                updated = cur.rowcount
                conn.commit()
        except sqlite3.Error as e:
            raise LedgerError(f"Failed to update transaction {record.id}: {e}") from e
        if updated == 0:
            raise LedgerError(f"Transaction not found: {record.id}")

    def delete_older_than(self, cutoff: datetime) -> int:
        """Deletes terminal records whose end time is before `cutoff`.

        Args:
            cutoff (datetime): Timezone-aware cutoff.

        Returns:
            int: The number of deleted records.
        """
        try:
            with self._write_lock, closing(self.connect()) as conn:
                doomed = [
                    record.id
                    for record in self._scan(conn)
                    if record.terminal and record.end_time and record.end_time < cutoff
                ]
                conn.executemany(
                    f"DELETE FROM {self.collection} WHERE id = ?",
                    [(i,) for i in doomed],
                )
                conn.commit()
        except sqlite3.Error as e:
            raise LedgerError(f"Failed to delete old transactions: {e}") from e
        return len(doomed)

    # --- Reads ---

    def _scan(
        self, conn: sqlite3.Connection, newest_first: bool = False
    ) -> Iterator[TransactionRecord]:
        order = "DESC" if newest_first else "ASC"
        for row in conn.execute(
            f"SELECT id, data FROM {self.collection} ORDER BY seq {order}"
        ):
            try:
                yield TransactionRecord.from_dict(json.loads(row["data"]))
            except (ValueError, TypeError) as e:
                self.logger.warning(f"Skipping unreadable transaction {row['id']}: {e}")

    def get(self, record_id: str) -> TransactionRecord | None:
        """Returns the record with the given identity, or None."""
        try:
            with closing(self.connect()) as conn:
                row = conn.execute(
                    f"SELECT data FROM {self.collection} WHERE id = ?", (record_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise LedgerError(f"Failed to read transaction {record_id}: {e}") from e
        if row is None:
            return None
        return TransactionRecord.from_dict(json.loads(row["data"]))

    def list_by_job(self, job_name: str, limit: int) -> list[TransactionRecord]:
        """Returns at most `limit` records of a job, most recent first."""
        if limit <= 0:
            return []
        records: list[TransactionRecord] = []
        try:
            with closing(self.connect()) as conn:
                for record in self._scan(conn, newest_first=True):
                    if record.job_name == job_name:
                        records.append(record)
                        if len(records) >= limit:
                            break
        except sqlite3.Error as e:
            raise LedgerError(f"Failed to list transactions of {job_name}: {e}") from e
        return records

    def last_success(
        self, job_name: str, repo_name: str, target: str
    ) -> TransactionRecord | None:
        """Returns the most recent successful push of a repository to a target."""
        try:
            with closing(self.connect()) as conn:
                for record in self._scan(conn, newest_first=True):
                    if (
                        record.status == STATUS_SUCCESS
                        and record.job_name == job_name
                        and record.repo_name == repo_name
                        and record.target == target
                    ):
                        return record
        except sqlite3.Error as e:
            raise LedgerError(f"Failed to query last success: {e}") from e
        return None

    def aggregate_stats(self) -> LedgerStats:
        """Counts records by outcome and averages the duration of successes."""
        stats = LedgerStats()
        total_duration = 0.0
        try:
            with closing(self.connect()) as conn:
                for record in self._scan(conn):
                    stats.total += 1
                    if record.status == STATUS_SUCCESS:
                        stats.succeeded += 1
                        total_duration += record.duration or 0.0
                    elif record.status == STATUS_FAILED:
                        stats.failed += 1
                    elif record.status == STATUS_SKIPPED:
                        stats.skipped += 1
        except sqlite3.Error as e:
            raise LedgerError(f"Failed to compute statistics: {e}") from e
        if stats.succeeded:
            stats.avg_duration_seconds = total_duration / stats.succeeded
        return stats
