"""Execution record persistence."""
from __future__ import annotations

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

from .workflow_engine.steps import ExecutionContext, StepResult, StepStatus, WorkflowStatus

logger = logging.getLogger(__name__)


class WorkflowStateManager(ABC):
    """Abstract base class for execution record persistence."""

    @abstractmethod
    def save_state(self, execution_id: str, context: ExecutionContext) -> bool:
        """Save an execution record.

        Args:
            execution_id: Execution identifier
            context: Record to save

        Returns:
            True if successful
        """
        pass

    @abstractmethod
    def load_state(self, execution_id: str) -> Optional[ExecutionContext]:
        """Load an execution record, or None if unknown."""
        pass

    @abstractmethod
    def delete_state(self, execution_id: str) -> bool:
        pass

    @abstractmethod
    def list_states(self) -> Dict[str, WorkflowStatus]:
        """Map every saved execution id to its status."""
        pass

    @abstractmethod
    def cleanup_old_states(self, days: int = 30) -> int:
        """Delete terminal records older than ``days``.

        Returns:
            Number of records removed
        """
        pass


class InMemoryStateManager(WorkflowStateManager):
    """In-memory state manager for development/testing.

    Holds at most ``max_records`` executions. When full, the oldest finished
    records are evicted first; running executions are never evicted.
    """

    def __init__(self, max_records: Optional[int] = 1000):
        if max_records is not None and max_records < 1:
            raise ValueError("max_records must be at least 1")
        self.max_records = max_records
        self._states: "OrderedDict[str, ExecutionContext]" = OrderedDict()
        self._lock = Lock()

    def save_state(self, execution_id: str, context: ExecutionContext) -> bool:
        with self._lock:
            self._states[execution_id] = context
            self._states.move_to_end(execution_id)
            self._evict()
            logger.debug(f"Saved execution {execution_id} in memory")
            return True

    def _evict(self) -> None:
        if self.max_records is None or len(self._states) <= self.max_records:
            return
        finished = [eid for eid, ctx in self._states.items() if ctx.is_terminal()]
        for eid in finished[: len(self._states) - self.max_records]:
            del self._states[eid]
            logger.debug(f"Evicted execution {eid} from memory")

    def load_state(self, execution_id: str) -> Optional[ExecutionContext]:
        with self._lock:
            return self._states.get(execution_id)

    def delete_state(self, execution_id: str) -> bool:
        with self._lock:
            return self._states.pop(execution_id, None) is not None

    def list_states(self) -> Dict[str, WorkflowStatus]:
        with self._lock:
            return {eid: ctx.status for eid, ctx in self._states.items()}

    def cleanup_old_states(self, days: int = 30) -> int:
        cutoff = datetime.now().timestamp() - days * 86400
        with self._lock:
            stale = [
                eid
                for eid, ctx in self._states.items()
                if ctx.is_terminal() and ctx.end_time and ctx.end_time.timestamp() < cutoff
            ]
            for eid in stale:
                del self._states[eid]
        return len(stale)


class PersistentStateManager(WorkflowStateManager):
    """Persistent state manager using SQLite."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize persistent state manager.

        Args:
            db_path: Path to SQLite database
        """
        self.db_path = Path(db_path) if db_path else Path.home() / ".conductor" / "executions.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_database(self):
        """Initialize database schema."""
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS executions (
                    execution_id TEXT PRIMARY KEY,
                    pipeline_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    current_step TEXT,
                    start_time TIMESTAMP,
                    end_time TIMESTAMP,
                    state_data TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_executions_status ON executions(status)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_executions_pipeline ON executions(pipeline_id)"
            )
            conn.commit()
        logger.info(f"Initialized execution database at {self.db_path}")

    def save_state(self, execution_id: str, context: ExecutionContext) -> bool:
        try:
            with self._lock, self._connect() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO executions
                    (execution_id, pipeline_id, status, current_step, start_time, end_time,
                     state_data, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                """,
                    (
                        execution_id,
                        context.pipeline_id,
                        context.status.value,
                        context.current_step,
                        context.start_time.isoformat() if context.start_time else None,
                        context.end_time.isoformat() if context.end_time else None,
                        self._serialize_state(context),
                    ),
                )
                conn.commit()
                logger.debug(f"Persisted execution {execution_id}")
                return True
        except sqlite3.Error as e:
            logger.error(f"Failed to save execution state: {e}")
            return False

    def load_state(self, execution_id: str) -> Optional[ExecutionContext]:
        try:
            with self._lock, self._connect() as conn:
                row = conn.execute(
                    "SELECT state_data FROM executions WHERE execution_id = ?", (execution_id,)
                ).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Failed to load execution state: {e}")
            return None
        return self._deserialize_state(row[0]) if row else None

    def delete_state(self, execution_id: str) -> bool:
        try:
            with self._lock, self._connect() as conn:
                cursor = conn.execute("DELETE FROM executions WHERE execution_id = ?", (execution_id,))
                conn.commit()
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            logger.error(f"Failed to delete execution state: {e}")
            return False

    def list_states(self) -> Dict[str, WorkflowStatus]:
        try:
            with self._lock, self._connect() as conn:
                rows = conn.execute("SELECT execution_id, status FROM executions").fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to list execution states: {e}")
            return {}
        return {row[0]: WorkflowStatus(row[1]) for row in rows}

    def cleanup_old_states(self, days: int = 30) -> int:
        try:
            with self._lock, self._connect() as conn:
                cursor = conn.execute(
                    """
                    DELETE FROM executions
                    WHERE status IN ('completed', 'failed', 'cancelled')
                    AND updated_at < datetime('now', '-' || ? || ' days')
                """,
                    (days,),
                )
                conn.commit()
                deleted = cursor.rowcount
        except sqlite3.Error as e:
            logger.error(f"Failed to cleanup old states: {e}")
            return 0
        logger.info(f"Cleaned up {deleted} old execution records")
        return deleted

    def _serialize_state(self, context: ExecutionContext) -> str:
        # Provider outputs may hold arbitrary objects; store their string form
        return json.dumps(context.to_dict(), default=str)

    def _deserialize_state(self, data: str) -> ExecutionContext:
        state = json.loads(data)

        context = ExecutionContext(
            execution_id=state["execution_id"],
            pipeline_id=state["pipeline_id"],
            project_id=state.get("project_id", "default"),
            user_id=state.get("user_id", "system"),
            variables=state.get("variables", {}),
            status=WorkflowStatus(state["status"]),
            start_time=_parse_time(state.get("start_time")),
            end_time=_parse_time(state.get("end_time")),
            current_step=state.get("current_step"),
            metadata=state.get("metadata", {}),
            error=state.get("error"),
        )

        for step_id, result in state.get("step_results", {}).items():
            context.step_results[step_id] = StepResult(
                step_id=result["step_id"],
                status=StepStatus(result["status"]),
                start_time=_parse_time(result.get("start_time")),
                end_time=_parse_time(result.get("end_time")),
                inputs=result.get("inputs", {}),
                outputs=result.get("outputs"),
                error=result.get("error"),
                error_code=result.get("error_code"),
                retry_count=result.get("retry_count", 0),
                logs=result.get("logs", []),
                metadata=result.get("metadata", {}),
            )

        return context


def _parse_time(value: Optional[Any]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
