"""Durable at-least-once queue for workflow and step jobs."""
from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from ..exceptions import JobNotFoundError
from ..orchestration.workflow_engine.events import EventBus, EventType
from ..orchestration.workflow_engine.steps import PipelineDefinition, StepDefinition
from .backends import InMemoryQueueBackend, QueueBackend
from .models import JobKind, JobOptions, JobState, JobStatus, QueueJob

logger = logging.getLogger(__name__)

LEASE_EXPIRED_ERROR = {
    "message": "Worker lease expired on the final attempt",
    "code": "LEASE_EXPIRED",
    "retryable": False,
}


def workflow_job_id(pipeline_id: str) -> str:
    return pipeline_id


def step_job_id(pipeline_id: str, step_id: str) -> str:
    return f"{pipeline_id}-{step_id}"


class WorkflowQueue:
    """Job queue with retries, delays, leases and progress tracking.

    Job ids are derived from the pipeline (and step) id, so submitting the
    same pipeline twice while the first job is still stored returns the
    existing id instead of creating a duplicate.

    A failed attempt is retried after a backoff delay until the job's
    attempts are used up; the job then becomes ``failed`` and a
    ``job.exhausted`` event is published exactly once.
    """

    def __init__(
        self,
        backend: Optional[QueueBackend] = None,
        event_bus: Optional[EventBus] = None,
        name: str = "workflow-queue",
        default_options: Optional[JobOptions] = None,
        lease_seconds: float = 600.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        """Initialize the queue.

        Args:
            backend: Job storage (in-memory if None)
            event_bus: Receives ``job.*`` events
            name: Queue name used in logs and stats
            default_options: Options for jobs submitted without explicit options
            lease_seconds: How long a claimed job stays reserved before redelivery
            clock: Wall clock returning epoch seconds
        """
        self.backend = backend or InMemoryQueueBackend()
        self.event_bus = event_bus or EventBus()
        self.name = name
        self.default_options = default_options or JobOptions()
        self.lease_seconds = lease_seconds
        self._clock = clock or time.time
        self._paused = False

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def add_job(
        self,
        job_id: str,
        kind: Union[JobKind, str],
        payload: Dict[str, Any],
        options: Optional[JobOptions] = None,
    ) -> str:
        """Store a job unless one with ``job_id`` already exists.

        Returns:
            The job id (existing or new)
        """
        options = options or self.default_options
        now = self._clock()
        job = QueueJob(
            id=job_id,
            kind=kind,
            payload=payload,
            options=options,
            status=JobState.DELAYED if options.delay > 0 else JobState.WAITING,
            created_at=now,
            available_at=now + options.delay,
        )
        if self.backend.add(job):
            logger.info(f"[{self.name}] Queued {job.kind.value} job {job_id}")
        else:
            logger.info(f"[{self.name}] Job {job_id} already queued; not adding a duplicate")
        return job_id

    async def add_workflow_job(
        self,
        pipeline: Union[PipelineDefinition, Mapping[str, Any]],
        variables: Optional[Dict[str, Any]] = None,
        project_id: str = "default",
        user_id: str = "system",
        options: Optional[JobOptions] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Queue a whole pipeline run. The job id is the pipeline id."""
        if not isinstance(pipeline, PipelineDefinition):
            pipeline = PipelineDefinition.model_validate(dict(pipeline))
        payload = {
            "workflow_id": pipeline.id,
            "project_id": project_id,
            "user_id": user_id,
            "pipeline": pipeline.model_dump(mode="json", by_alias=True),
            "variables": dict(variables or {}),
            "metadata": dict(metadata or {}),
        }
        return await self.add_job(workflow_job_id(pipeline.id), JobKind.WORKFLOW, payload, options)

    async def add_step_job(
        self,
        pipeline_id: str,
        step: Union[StepDefinition, Mapping[str, Any]],
        variables: Optional[Dict[str, Any]] = None,
        step_outputs: Optional[Dict[str, Dict[str, Any]]] = None,
        project_id: str = "default",
        user_id: str = "system",
        options: Optional[JobOptions] = None,
    ) -> str:
        """Queue a single step. The job id is ``pipelineId-stepId``.

        Args:
            pipeline_id: Owning pipeline
            step: Step definition
            variables: Values for ``${name}`` references in the step
            step_outputs: Upstream outputs for ``${step.key}`` references
        """
        if not isinstance(step, StepDefinition):
            step = StepDefinition.model_validate(dict(step))
        payload = {
            "workflow_id": pipeline_id,
            "step_id": step.id,
            "project_id": project_id,
            "user_id": user_id,
            "step": step.model_dump(mode="json", by_alias=True),
            "variables": dict(variables or {}),
            "step_outputs": dict(step_outputs or {}),
        }
        return await self.add_job(step_job_id(pipeline_id, step.id), JobKind.STEP, payload, options)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def claim(self, limit: int = 1) -> List[QueueJob]:
        """Lease up to ``limit`` due jobs (none while paused).

        Jobs whose lease ran out on their final attempt are failed first and
        reported as exhausted instead of being redelivered.
        """
        if self._paused or limit < 1:
            return []
        now = self._clock()
        for job in self.backend.expire_leases(now, LEASE_EXPIRED_ERROR):
            logger.error(f"[{self.name}] Job {job.id} lease expired on attempt {job.attempts_made}/{job.max_attempts}")
            await self._publish_exhausted(job)
        return self.backend.claim(now, self.lease_seconds, limit)

    def _require(self, job_id: str) -> QueueJob:
        job = self.backend.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    async def update_progress(self, job_id: str, percent: int, message: Optional[str] = None) -> None:
        """Record progress of an active job."""
        current = self._require(job_id)
        if current.status != JobState.ACTIVE:
            return
        job = replace(current, progress=max(0, min(100, int(percent))))
        if message is not None:
            job.progress_message = message
        if not self.backend.update(job, expected=current):
            return
        await self.event_bus.publish(
            EventType.JOB_PROGRESS,
            job.workflow_id or job.id,
            job.step_id,
            job_id=job.id,
            progress=job.progress,
            message=message,
        )

    async def complete_job(self, job_id: str, return_value: Any = None) -> Optional[QueueJob]:
        """Mark an active job completed.

        Returns:
            The updated job, or None if the job is no longer active (for
            example it was cancelled while running)
        """
        current = self.backend.get(job_id)
        job = None
        if current is not None and current.status == JobState.ACTIVE:
            job = replace(
                current,
                status=JobState.COMPLETED,
                progress=100,
                finished_on=self._clock(),
                lease_expires_at=None,
                return_value=return_value,
            )
        if job is None or not self.backend.update(job, expected=current):
            logger.info(f"[{self.name}] Discarding result for job {job_id}; it is no longer active")
            return None

        logger.info(f"[{self.name}] Job {job_id} completed")
        await self.event_bus.publish(
            EventType.JOB_COMPLETED,
            job.workflow_id or job.id,
            job.step_id,
            job_id=job.id,
            kind=job.kind.value,
            attempts_made=job.attempts_made,
            return_value=return_value,
        )
        return job

    async def fail_job(self, job_id: str, error: Dict[str, Any]) -> Optional[QueueJob]:
        """Record a failed attempt.

        The job is delayed for a retry while attempts remain and the error is
        retryable; otherwise it becomes ``failed`` and ``job.exhausted`` is
        published.

        Args:
            job_id: Active job
            error: ``{message, code, retryable}`` triple

        Returns:
            The updated job, or None if the job is no longer active
        """
        current = self.backend.get(job_id)
        if current is None or current.status != JobState.ACTIVE:
            logger.info(f"[{self.name}] Ignoring failure for job {job_id}; it is no longer active")
            return None

        now = self._clock()
        retry = current.options.retry_config()
        job = replace(current, error=dict(error), failed_reason=error.get("message"), lease_expires_at=None)

        will_retry = error.get("retryable", True) and retry.has_attempts_left(job.attempts_made)
        if will_retry:
            delay = retry.calculate_backoff_delay(job.attempts_made)
            job.status = JobState.DELAYED
            job.available_at = now + delay
        else:
            job.status = JobState.FAILED
            job.finished_on = now

        if not self.backend.update(job, expected=current):
            logger.info(f"[{self.name}] Ignoring failure for job {job_id}; it changed while running")
            return None

        if not will_retry:
            logger.error(
                f"[{self.name}] Job {job_id} exhausted after {job.attempts_made} attempt(s): {job.failed_reason}"
            )
            await self._publish_exhausted(job)
            return job

        logger.warning(
            f"[{self.name}] Job {job_id} failed (attempt {job.attempts_made}/{job.max_attempts}); "
            f"retrying in {delay:.1f}s: {job.failed_reason}"
        )
        await self.event_bus.publish(
            EventType.JOB_FAILED,
            job.workflow_id or job.id,
            job.step_id,
            job_id=job.id,
            error=job.error,
            attempts_made=job.attempts_made,
            will_retry=True,
            retry_delay=delay,
        )
        return job

    async def _publish_exhausted(self, job: QueueJob) -> None:
        await self.event_bus.publish(
            EventType.JOB_FAILED,
            job.workflow_id or job.id,
            job.step_id,
            job_id=job.id,
            error=job.error,
            attempts_made=job.attempts_made,
            will_retry=False,
        )
        await self.event_bus.publish(
            EventType.JOB_EXHAUSTED,
            job.workflow_id or job.id,
            job.step_id,
            job_id=job.id,
            kind=job.kind.value,
            payload=job.payload,
            options=job.options.to_dict(),
            error=job.error,
            attempts_made=job.attempts_made,
        )

    # ------------------------------------------------------------------
    # Inspection and administration
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        return self.backend.get(job_id)

    async def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        """Snapshot of a job; None if unknown."""
        job = self.backend.get(job_id)
        return JobStatus.from_job(job) if job else None

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a job that has not finished.

        A cancelled active job keeps running in its worker, but its result is
        discarded.

        Returns:
            False if the job is unknown or already finished
        """
        while True:
            current = self.backend.get(job_id)
            if current is None or current.is_finished():
                return False
            job = replace(current, status=JobState.CANCELLED, finished_on=self._clock(), lease_expires_at=None)
            if self.backend.update(job, expected=current):
                break
        logger.info(f"[{self.name}] Cancelled job {job_id}")
        return True

    async def remove_job(self, job_id: str) -> bool:
        return self.backend.remove(job_id)

    async def pause(self) -> None:
        """Stop handing out jobs. Active jobs finish normally."""
        self._paused = True
        logger.info(f"[{self.name}] Queue paused")

    async def resume(self) -> None:
        self._paused = False
        logger.info(f"[{self.name}] Queue resumed")

    @property
    def is_paused(self) -> bool:
        return self._paused

    async def clean(self, grace: float = 0.0, states: Optional[List[JobState]] = None) -> int:
        """Remove finished jobs older than ``grace`` seconds.

        Args:
            grace: Minimum age in seconds since the job finished
            states: Finished states to clean (completed and failed by default)

        Returns:
            Number of jobs removed
        """
        states = states or [JobState.COMPLETED, JobState.FAILED]
        cutoff = self._clock() - grace
        removed = 0
        for job in self.backend.list_jobs(states):
            if job.finished_on is not None and job.finished_on <= cutoff and self.backend.remove(job.id):
                removed += 1
        if removed:
            logger.info(f"[{self.name}] Cleaned {removed} finished job(s)")
        return removed

    async def retry_failed_jobs(self) -> int:
        """Move every failed job back to ``waiting`` with fresh attempts.

        Returns:
            Number of jobs requeued
        """
        now = self._clock()
        count = 0
        for current in self.backend.list_jobs([JobState.FAILED]):
            job = replace(
                current, status=JobState.WAITING, attempts_made=0, available_at=now, finished_on=None, progress=0
            )
            if self.backend.update(job, expected=current):
                count += 1
        if count:
            logger.info(f"[{self.name}] Requeued {count} failed job(s)")
        return count

    async def get_stats(self) -> Dict[str, Any]:
        """Job counts per state."""
        counts = self.backend.counts()
        return {
            "name": self.name,
            "paused": self._paused,
            "waiting": counts[JobState.WAITING.value],
            "active": counts[JobState.ACTIVE.value],
            "completed": counts[JobState.COMPLETED.value],
            "failed": counts[JobState.FAILED.value],
            "delayed": counts[JobState.DELAYED.value],
            "cancelled": counts[JobState.CANCELLED.value],
            "total": sum(counts.values()),
        }

    async def get_active_workflows(self) -> List[JobStatus]:
        """Workflow jobs that are waiting, delayed or running."""
        jobs = self.backend.list_jobs([JobState.WAITING, JobState.DELAYED, JobState.ACTIVE])
        return [JobStatus.from_job(j) for j in jobs if j.kind == JobKind.WORKFLOW]

    async def get_recent_finished(self, limit: int = 100) -> List[QueueJob]:
        """Most recently finished completed or failed jobs."""
        return self.backend.list_jobs([JobState.COMPLETED, JobState.FAILED], limit=limit)

    async def close(self) -> None:
        self.backend.close()
        logger.info(f"[{self.name}] Queue closed")


__all__ = ["WorkflowQueue", "step_job_id", "workflow_job_id"]
