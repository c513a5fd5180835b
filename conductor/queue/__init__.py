"""Durable job queue, worker pool and their manager."""

from .backends import InMemoryQueueBackend, QueueBackend, SQLiteQueueBackend
from .manager import QueueManager
from .models import JobKind, JobOptions, JobState, JobStatus, QueueJob
from .worker import WorkerConfig, WorkflowWorker
from .workflow_queue import WorkflowQueue, step_job_id, workflow_job_id

__all__ = [
    "InMemoryQueueBackend",
    "JobKind",
    "JobOptions",
    "JobState",
    "JobStatus",
    "QueueBackend",
    "QueueJob",
    "QueueManager",
    "SQLiteQueueBackend",
    "WorkerConfig",
    "WorkflowQueue",
    "WorkflowWorker",
    "step_job_id",
    "workflow_job_id",
]
