"""Dead-letter storage for jobs that exhausted their attempts.

Entries are keyed by job id: a job is dead-lettered at most once no matter how
many times its exhaustion is reported.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock, RLock, local
from typing import Any, Dict, List, Optional, Union

from ..exceptions import QueueError

logger = logging.getLogger(__name__)


@dataclass
class DeadLetterEntry:
    """A job that could not be completed, with what is needed to requeue it."""

    job_id: str
    kind: str
    payload: Dict[str, Any]
    reason: str
    error: Optional[Dict[str, Any]] = None
    options: Dict[str, Any] = field(default_factory=dict)
    attempts_made: int = 0
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind,
            "payload": self.payload,
            "reason": self.reason,
            "error": self.error,
            "options": self.options,
            "attempts_made": self.attempts_made,
            "created_at": self.created_at,
        }


class DeadLetterStore(ABC):
    """Append-only (per job id) store of exhausted jobs."""

    @abstractmethod
    def add(self, entry: DeadLetterEntry) -> bool:
        """Store ``entry`` unless its job id is already present.

        Returns:
            True if a new entry was created
        """

    @abstractmethod
    def get(self, job_id: str) -> Optional[DeadLetterEntry]:
        pass

    @abstractmethod
    def remove(self, job_id: str) -> bool:
        pass

    @abstractmethod
    def list_entries(self, limit: Optional[int] = None) -> List[DeadLetterEntry]:
        """Entries, newest first."""

    @abstractmethod
    def count(self) -> int:
        pass

    @abstractmethod
    def purge(self) -> int:
        """Delete every entry and return how many were removed."""

    def close(self) -> None:
        """Release resources."""


class InMemoryDeadLetterStore(DeadLetterStore):
    def __init__(self):
        self._entries: Dict[str, DeadLetterEntry] = {}
        self._lock = RLock()

    def add(self, entry: DeadLetterEntry) -> bool:
        with self._lock:
            if entry.job_id in self._entries:
                return False
            self._entries[entry.job_id] = entry
            return True

    def get(self, job_id: str) -> Optional[DeadLetterEntry]:
        with self._lock:
            return self._entries.get(job_id)

    def remove(self, job_id: str) -> bool:
        with self._lock:
            return self._entries.pop(job_id, None) is not None

    def list_entries(self, limit: Optional[int] = None) -> List[DeadLetterEntry]:
        with self._lock:
            entries = sorted(self._entries.values(), key=lambda e: e.created_at, reverse=True)
        return entries[:limit] if limit is not None else entries

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def purge(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count


class SQLiteDeadLetterStore(DeadLetterStore):
    """Dead letters persisted in SQLite (WAL mode, one connection per thread)."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = Path(db_path) if db_path else Path.home() / ".conductor" / "dead_letters.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._local = local()
        self._init_database()
        logger.info(f"Initialized dead-letter store at {self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        if not hasattr(self._local, "conn"):
            conn = sqlite3.connect(str(self.db_path), timeout=30.0)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn = conn
        return self._local.conn

    def _init_database(self):
        conn = self._get_connection()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS dead_letters (
                job_id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                payload TEXT NOT NULL,
                reason TEXT NOT NULL,
                error TEXT,
                options TEXT NOT NULL,
                attempts_made INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL
            )
        """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_dead_letters_created ON dead_letters(created_at)")
        conn.commit()

    def _write(self, sql: str, params: tuple = ()) -> int:
        with self._lock:
            try:
                conn = self._get_connection()
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor.rowcount
            except sqlite3.Error as e:
                raise QueueError(f"Dead-letter database error: {e}") from e

    def _read(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            return self._get_connection().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise QueueError(f"Dead-letter database error: {e}") from e

    @staticmethod
    def _to_entry(row: sqlite3.Row) -> DeadLetterEntry:
        return DeadLetterEntry(
            job_id=row["job_id"],
            kind=row["kind"],
            payload=json.loads(row["payload"]),
            reason=row["reason"],
            error=json.loads(row["error"]) if row["error"] else None,
            options=json.loads(row["options"]),
            attempts_made=row["attempts_made"],
            created_at=row["created_at"],
        )

    def add(self, entry: DeadLetterEntry) -> bool:
        inserted = self._write(
            """
            INSERT OR IGNORE INTO dead_letters
                (job_id, kind, payload, reason, error, options, attempts_made, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.job_id,
                entry.kind,
                json.dumps(entry.payload, default=str),
                entry.reason,
                json.dumps(entry.error) if entry.error is not None else None,
                json.dumps(entry.options),
                entry.attempts_made,
                entry.created_at,
            ),
        )
        return inserted == 1

    def get(self, job_id: str) -> Optional[DeadLetterEntry]:
        rows = self._read("SELECT * FROM dead_letters WHERE job_id = ?", (job_id,))
        return self._to_entry(rows[0]) if rows else None

    def remove(self, job_id: str) -> bool:
        return self._write("DELETE FROM dead_letters WHERE job_id = ?", (job_id,)) > 0

    def list_entries(self, limit: Optional[int] = None) -> List[DeadLetterEntry]:
        sql = "SELECT * FROM dead_letters ORDER BY created_at DESC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        return [self._to_entry(row) for row in self._read(sql, params)]

    def count(self) -> int:
        return self._read("SELECT COUNT(*) FROM dead_letters")[0][0]

    def purge(self) -> int:
        return self._write("DELETE FROM dead_letters")

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            del self._local.conn
