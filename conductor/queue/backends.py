"""Queue storage backends.

This module provides two backend implementations:

- InMemoryQueueBackend: Thread-safe dict-backed storage. Jobs are lost when
  the process exits. Best for: tests and single-process embedding.

- SQLiteQueueBackend: Durable SQLite storage with WAL mode. Jobs survive
  restarts and can be shared by worker processes on the same host.

Both backends implement the QueueBackend interface. Claiming is atomic: a job
is handed to exactly one caller per lease.
"""
from __future__ import annotations

import copy
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock, RLock, local
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from ..exceptions import QueueError
from .models import CLAIMABLE_STATES, JobState, QueueJob

logger = logging.getLogger(__name__)


class QueueBackend(ABC):
    """Abstract storage for queue jobs."""

    @abstractmethod
    def add(self, job: QueueJob) -> bool:
        """Insert ``job`` unless its id already exists.

        Returns:
            True if inserted, False if a job with the same id is present
        """

    @abstractmethod
    def get(self, job_id: str) -> Optional[QueueJob]:
        """Return a copy of the stored job or None."""

    @abstractmethod
    def update(self, job: QueueJob, expected: Optional[QueueJob] = None) -> bool:
        """Overwrite the stored job with ``job``.

        With ``expected`` (the record as it was read) the write only happens
        if the stored status, attempt count and lease still match it, so a
        read-modify-write never clobbers a concurrent transition.

        Returns:
            False if ``expected`` no longer matches (or the job is gone)

        Raises:
            QueueError: If the job is unknown and ``expected`` is None
        """

    @abstractmethod
    def remove(self, job_id: str) -> bool:
        """Delete a job. Returns False if it did not exist."""

    @abstractmethod
    def claim(self, now: float, lease_seconds: float, limit: int = 1) -> List[QueueJob]:
        """Atomically move up to ``limit`` due jobs to ``active``.

        Due jobs are waiting or delayed jobs whose ``available_at`` has passed,
        plus active jobs whose lease expired. Each claim increments
        ``attempts_made``. Lower priority values are claimed first, then
        oldest first. Expired leases whose attempts are used up are left
        for :meth:`expire_leases`.
        """

    @abstractmethod
    def expire_leases(self, now: float, error: Dict[str, Any]) -> List[QueueJob]:
        """Fail active jobs whose lease expired on their last attempt.

        Returns:
            The jobs moved to ``failed``, with ``error`` recorded on each
        """

    @abstractmethod
    def list_jobs(self, states: Optional[Iterable[JobState]] = None, limit: Optional[int] = None) -> List[QueueJob]:
        """Jobs in the given states, most recently finished or created first."""

    @abstractmethod
    def counts(self) -> Dict[str, int]:
        """Number of jobs per state."""

    def close(self) -> None:
        """Release resources."""


def _recency(job: QueueJob) -> float:
    return job.finished_on or job.processed_on or job.created_at


def _lease_expired(job: QueueJob, now: float) -> bool:
    return job.status == JobState.ACTIVE and job.lease_expires_at is not None and job.lease_expires_at <= now


def _delivery_state(job: QueueJob) -> Tuple[JobState, int, Optional[float]]:
    return job.status, job.attempts_made, job.lease_expires_at


class InMemoryQueueBackend(QueueBackend):
    """Thread-safe in-memory job storage.

    Thread Safety:
        All operations are protected by an RLock. Jobs are copied on the way in
        and out so callers never share a record with the store.
    """

    def __init__(self):
        self._jobs: Dict[str, QueueJob] = {}
        self._lock = RLock()

    def add(self, job: QueueJob) -> bool:
        with self._lock:
            if job.id in self._jobs:
                return False
            self._jobs[job.id] = copy.deepcopy(job)
            return True

    def get(self, job_id: str) -> Optional[QueueJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def update(self, job: QueueJob, expected: Optional[QueueJob] = None) -> bool:
        with self._lock:
            stored = self._jobs.get(job.id)
            if stored is None:
                if expected is not None:
                    return False
                raise QueueError(f"Cannot update unknown job {job.id}")
            if expected is not None and _delivery_state(stored) != _delivery_state(expected):
                return False
            self._jobs[job.id] = copy.deepcopy(job)
            return True

    def remove(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def claim(self, now: float, lease_seconds: float, limit: int = 1) -> List[QueueJob]:
        with self._lock:
            due = [
                job
                for job in self._jobs.values()
                if (job.status in CLAIMABLE_STATES and job.available_at <= now)
                or (_lease_expired(job, now) and job.attempts_made < job.max_attempts)
            ]
            due.sort(key=lambda j: (j.priority, j.created_at))

            claimed = []
            for job in due[:limit]:
                if job.status == JobState.ACTIVE:
                    logger.warning(f"Redelivering job {job.id}: lease expired")
                job.status = JobState.ACTIVE
                job.attempts_made += 1
                job.processed_on = now
                job.lease_expires_at = now + lease_seconds
                claimed.append(copy.deepcopy(job))
            return claimed

    def expire_leases(self, now: float, error: Dict[str, Any]) -> List[QueueJob]:
        with self._lock:
            expired = []
            for job in self._jobs.values():
                if _lease_expired(job, now) and job.attempts_made >= job.max_attempts:
                    job.status = JobState.FAILED
                    job.finished_on = now
                    job.lease_expires_at = None
                    job.error = dict(error)
                    job.failed_reason = error.get("message")
                    expired.append(copy.deepcopy(job))
            return expired

    def list_jobs(self, states: Optional[Iterable[JobState]] = None, limit: Optional[int] = None) -> List[QueueJob]:
        wanted = {JobState(s) for s in states} if states is not None else None
        with self._lock:
            jobs = [j for j in self._jobs.values() if wanted is None or j.status in wanted]
            jobs.sort(key=_recency, reverse=True)
            if limit is not None:
                jobs = jobs[:limit]
            return [copy.deepcopy(j) for j in jobs]

    def counts(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        with self._lock:
            for job in self._jobs.values():
                counts[job.status.value] += 1
        return counts


_COLUMNS = (
    "id",
    "kind",
    "payload",
    "options",
    "status",
    "attempts_made",
    "progress",
    "progress_message",
    "priority",
    "max_attempts",
    "created_at",
    "available_at",
    "processed_on",
    "finished_on",
    "lease_expires_at",
    "failed_reason",
    "error",
    "return_value",
)

# Waiting or delayed jobs that are available, and expired leases with attempts left
_DUE_SQL = (
    "(status IN (?, ?) AND available_at <= ?)"
    " OR (status = ? AND lease_expires_at <= ? AND attempts_made < max_attempts)"
)


class SQLiteQueueBackend(QueueBackend):
    """Durable job storage in SQLite with WAL mode.

    Thread Safety:
        Uses thread-local storage for SQLite connections (one per thread) since
        SQLite connections are not thread-safe. Writes are additionally
        protected by a Lock.

    Concurrency:
        Several processes may share the database. Claims re-check the due
        condition in the ``UPDATE`` itself and state changes made through
        ``update(job, expected)`` only apply if status, attempt count and
        lease are unchanged; a zero row count means another process got
        there first.
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        """Initialize the backend.

        Args:
            db_path: SQLite database file (default ``~/.conductor/queue.db``)
        """
        self.db_path = Path(db_path) if db_path else Path.home() / ".conductor" / "queue.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

        # Thread-local storage for connections (SQLite connections aren't thread-safe)
        self._local = local()

        self._init_database()
        logger.info(f"Initialized SQLiteQueueBackend at {self.db_path} (WAL mode)")

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the calling thread's connection."""
        if not hasattr(self._local, "conn"):
            try:
                conn = sqlite3.connect(str(self.db_path), timeout=30.0)
            except sqlite3.Error as e:
                raise QueueError(f"Cannot open queue database {self.db_path}: {e}") from e
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA temp_store=MEMORY")
            self._local.conn = conn
        return self._local.conn

    def _init_database(self):
        """Create the jobs table and indexes (safe to call repeatedly)."""
        conn = self._get_connection()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                payload TEXT NOT NULL,
                options TEXT NOT NULL,
                status TEXT NOT NULL,
                attempts_made INTEGER NOT NULL DEFAULT 0,
                progress INTEGER NOT NULL DEFAULT 0,
                progress_message TEXT,
                priority INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 1,
                created_at REAL NOT NULL,
                available_at REAL NOT NULL,
                processed_on REAL,
                finished_on REAL,
                lease_expires_at REAL,
                failed_reason TEXT,
                error TEXT,
                return_value TEXT
            )
        """
        )
        columns = {row["name"] for row in conn.execute("PRAGMA table_info(jobs)")}
        if "max_attempts" not in columns:
            conn.execute("ALTER TABLE jobs ADD COLUMN max_attempts INTEGER NOT NULL DEFAULT 1")
            conn.execute("UPDATE jobs SET max_attempts = COALESCE(json_extract(options, '$.attempts'), 1)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_due ON jobs(status, available_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_order ON jobs(priority, created_at)")
        conn.commit()

    def _execute(self, sql: str, params: Iterable = ()) -> sqlite3.Cursor:
        try:
            return self._get_connection().execute(sql, tuple(params))
        except sqlite3.Error as e:
            raise QueueError(f"Queue database error: {e}") from e

    def _commit(self) -> None:
        try:
            self._get_connection().commit()
        except sqlite3.Error as e:
            raise QueueError(f"Queue database error: {e}") from e

    @staticmethod
    def _to_job(row: sqlite3.Row) -> QueueJob:
        return QueueJob.from_row(dict(row))

    def add(self, job: QueueJob) -> bool:
        row = job.to_row()
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._lock:
            cursor = self._execute(
                f"INSERT OR IGNORE INTO jobs ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                (row[c] for c in _COLUMNS),
            )
            self._commit()
            return cursor.rowcount == 1

    def get(self, job_id: str) -> Optional[QueueJob]:
        row = self._execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return self._to_job(row) if row else None

    def update(self, job: QueueJob, expected: Optional[QueueJob] = None) -> bool:
        row = job.to_row()
        assignments = ", ".join(f"{c} = ?" for c in _COLUMNS if c != "id")
        sql = f"UPDATE jobs SET {assignments} WHERE id = ?"
        params = [row[c] for c in _COLUMNS if c != "id"] + [job.id]
        if expected is not None:
            sql += " AND status = ? AND attempts_made = ? AND lease_expires_at IS ?"
            params += [expected.status.value, expected.attempts_made, expected.lease_expires_at]

        with self._lock:
            cursor = self._execute(sql, params)
            self._commit()
        if cursor.rowcount == 1:
            return True
        if expected is None:
            raise QueueError(f"Cannot update unknown job {job.id}")
        logger.debug(f"Job {job.id} changed since it was read; update skipped")
        return False

    def remove(self, job_id: str) -> bool:
        with self._lock:
            cursor = self._execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            self._commit()
            return cursor.rowcount > 0

    def claim(self, now: float, lease_seconds: float, limit: int = 1) -> List[QueueJob]:
        due_params = (*[s.value for s in CLAIMABLE_STATES], now, JobState.ACTIVE.value, now)
        with self._lock:
            candidates = self._execute(
                f"SELECT id, status FROM jobs WHERE {_DUE_SQL} ORDER BY priority ASC, created_at ASC LIMIT ?",
                (*due_params, limit),
            ).fetchall()

            claimed_ids = []
            for row in candidates:
                # Re-check the due condition so a concurrent claim wins at most once
                cursor = self._execute(
                    f"""
                    UPDATE jobs
                    SET status = ?, attempts_made = attempts_made + 1,
                        processed_on = ?, lease_expires_at = ?
                    WHERE id = ? AND ({_DUE_SQL})
                    """,
                    (JobState.ACTIVE.value, now, now + lease_seconds, row["id"], *due_params),
                )
                if cursor.rowcount == 1:
                    if row["status"] == JobState.ACTIVE.value:
                        logger.warning(f"Redelivering job {row['id']}: lease expired")
                    claimed_ids.append(row["id"])
            self._commit()

        claimed = []
        for job_id in claimed_ids:
            job = self.get(job_id)
            if job is not None:
                claimed.append(job)
        return claimed

    def expire_leases(self, now: float, error: Dict[str, Any]) -> List[QueueJob]:
        exhausted = "status = ? AND lease_expires_at <= ? AND attempts_made >= max_attempts"
        with self._lock:
            rows = self._execute(f"SELECT id FROM jobs WHERE {exhausted}", (JobState.ACTIVE.value, now)).fetchall()
            expired_ids = []
            for row in rows:
                cursor = self._execute(
                    f"""
                    UPDATE jobs
                    SET status = ?, finished_on = ?, lease_expires_at = NULL, failed_reason = ?, error = ?
                    WHERE id = ? AND {exhausted}
                    """,
                    (
                        JobState.FAILED.value,
                        now,
                        error.get("message"),
                        json.dumps(error),
                        row["id"],
                        JobState.ACTIVE.value,
                        now,
                    ),
                )
                if cursor.rowcount == 1:
                    expired_ids.append(row["id"])
            self._commit()
        return [job for job in (self.get(job_id) for job_id in expired_ids) if job is not None]

    def list_jobs(self, states: Optional[Iterable[JobState]] = None, limit: Optional[int] = None) -> List[QueueJob]:
        sql = "SELECT * FROM jobs"
        params: List = []
        if states is not None:
            values = [JobState(s).value for s in states]
            if not values:
                return []
            sql += f" WHERE status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        sql += " ORDER BY COALESCE(finished_on, processed_on, created_at) DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._to_job(row) for row in self._execute(sql, params).fetchall()]

    def counts(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        for row in self._execute("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status").fetchall():
            counts[row["status"]] = row["n"]
        return counts

    def close(self) -> None:
        """Close the calling thread's connection."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            del self._local.conn
