"""Job records and options for the durable workflow queue."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ..utils.retry import BackoffStrategy, RetryConfig


class JobKind(str, Enum):
    """What a queued job executes."""

    WORKFLOW = "workflow"
    STEP = "step"


class JobState(str, Enum):
    """Lifecycle of a queued job.

    ``waiting`` and ``delayed`` jobs are claimable (a delayed job once its
    ``available_at`` has passed). ``active`` jobs hold a lease; an active job
    whose lease expired is redelivered.
    """

    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


CLAIMABLE_STATES = (JobState.WAITING, JobState.DELAYED)
FINISHED_STATES = (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)


@dataclass
class JobOptions:
    """Per-job delivery settings.

    Attributes:
        attempts: Total attempts including the first one
        backoff: Delay growth between attempts
        backoff_delay: Base delay in seconds before the first retry
        max_backoff_delay: Ceiling for a single retry delay
        priority: Lower values are claimed first
        delay: Seconds before the job becomes claimable
    """

    attempts: int = 3
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    backoff_delay: float = 2.0
    max_backoff_delay: float = 300.0
    priority: int = 0
    delay: float = 0.0

    def __post_init__(self) -> None:
        self.backoff = BackoffStrategy(self.backoff)
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.backoff_delay < 0 or self.delay < 0:
            raise ValueError("delays must be non-negative")

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.attempts,
            base_delay=self.backoff_delay,
            max_delay=max(self.max_backoff_delay, self.backoff_delay),
            backoff=self.backoff,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempts": self.attempts,
            "backoff": self.backoff.value,
            "backoff_delay": self.backoff_delay,
            "max_backoff_delay": self.max_backoff_delay,
            "priority": self.priority,
            "delay": self.delay,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobOptions":
        return cls(**data)


@dataclass
class QueueJob:
    """A durable job record. Timestamps are epoch seconds from the queue clock."""

    id: str
    kind: JobKind
    payload: Dict[str, Any]
    options: JobOptions = field(default_factory=JobOptions)
    status: JobState = JobState.WAITING
    attempts_made: int = 0
    progress: int = 0
    progress_message: Optional[str] = None
    created_at: float = 0.0
    available_at: float = 0.0
    processed_on: Optional[float] = None
    finished_on: Optional[float] = None
    lease_expires_at: Optional[float] = None
    failed_reason: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    return_value: Any = None

    def __post_init__(self) -> None:
        self.kind = JobKind(self.kind)
        self.status = JobState(self.status)

    @property
    def max_attempts(self) -> int:
        return self.options.attempts

    @property
    def priority(self) -> int:
        return self.options.priority

    @property
    def workflow_id(self) -> Optional[str]:
        return self.payload.get("workflow_id")

    @property
    def step_id(self) -> Optional[str]:
        return self.payload.get("step_id")

    def is_finished(self) -> bool:
        return self.status in FINISHED_STATES

    def to_row(self) -> Dict[str, Any]:
        """Column values for the SQLite backend."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "payload": json.dumps(self.payload, default=str),
            "options": json.dumps(self.options.to_dict()),
            "status": self.status.value,
            "attempts_made": self.attempts_made,
            "progress": self.progress,
            "progress_message": self.progress_message,
            "priority": self.priority,
            "max_attempts": self.max_attempts,
            "created_at": self.created_at,
            "available_at": self.available_at,
            "processed_on": self.processed_on,
            "finished_on": self.finished_on,
            "lease_expires_at": self.lease_expires_at,
            "failed_reason": self.failed_reason,
            "error": json.dumps(self.error) if self.error is not None else None,
            "return_value": json.dumps(self.return_value, default=str),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "QueueJob":
        return cls(
            id=row["id"],
            kind=row["kind"],
            payload=json.loads(row["payload"]),
            options=JobOptions.from_dict(json.loads(row["options"])),
            status=row["status"],
            attempts_made=row["attempts_made"],
            progress=row["progress"],
            progress_message=row["progress_message"],
            created_at=row["created_at"],
            available_at=row["available_at"],
            processed_on=row["processed_on"],
            finished_on=row["finished_on"],
            lease_expires_at=row["lease_expires_at"],
            failed_reason=row["failed_reason"],
            error=json.loads(row["error"]) if row["error"] else None,
            return_value=json.loads(row["return_value"]) if row["return_value"] else None,
        )


@dataclass
class JobStatus:
    """Read-only view of a job returned by ``WorkflowQueue.get_job_status``."""

    id: str
    name: str
    status: JobState
    data: Dict[str, Any]
    progress: int
    message: Optional[str]
    created_at: float
    processed_on: Optional[float]
    finished_on: Optional[float]
    failed_reason: Optional[str]
    error: Optional[Dict[str, Any]]
    return_value: Any
    attempts_made: int
    max_attempts: int

    @classmethod
    def from_job(cls, job: QueueJob) -> "JobStatus":
        return cls(
            id=job.id,
            name=job.kind.value,
            status=job.status,
            data=dict(job.payload),
            progress=job.progress,
            message=job.progress_message,
            created_at=job.created_at,
            processed_on=job.processed_on,
            finished_on=job.finished_on,
            failed_reason=job.failed_reason,
            error=dict(job.error) if job.error else None,
            return_value=job.return_value,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "data": self.data,
            "progress": self.progress,
            "message": self.message,
            "created_at": self.created_at,
            "processed_on": self.processed_on,
            "finished_on": self.finished_on,
            "failed_reason": self.failed_reason,
            "error": self.error,
            "return_value": self.return_value,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
        }
