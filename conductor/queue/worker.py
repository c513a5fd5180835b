"""Worker pool that pulls jobs from a WorkflowQueue and executes them."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from ..exceptions import ConductorError, StepTimeoutError, error_payload
from ..orchestration.workflow_engine.core import WorkflowEngine
from ..orchestration.workflow_engine.events import EventType, WorkflowEvent
from ..orchestration.workflow_engine.references import resolve_variables
from ..orchestration.workflow_engine.steps import PipelineDefinition, StepDefinition, WorkflowStatus
from ..providers.registry import ProviderRegistry
from .models import JobKind, QueueJob
from .workflow_queue import WorkflowQueue

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Worker pool settings.

    Attributes:
        queue_name: Name of the queue this worker serves (used in logs)
        concurrency: Maximum jobs processed at the same time
        poll_interval: Seconds to wait before polling an empty queue again
    """

    queue_name: str = "workflow-queue"
    concurrency: int = 2
    poll_interval: float = 0.5

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")


class WorkflowWorker:
    """Executes queued jobs with bounded concurrency.

    Workflow jobs run through a :class:`WorkflowEngine`; step jobs call their
    provider through :meth:`ProviderRegistry.execute_with_policy`. Progress is
    written back to the queue as the job advances. Any failure is reported to
    the queue, which decides between a delayed retry and exhaustion.
    """

    def __init__(
        self,
        queue: WorkflowQueue,
        engine: WorkflowEngine,
        registry: Optional[ProviderRegistry] = None,
        config: Optional[WorkerConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Optional[Callable[[], float]] = None,
    ):
        """Initialize the worker.

        Args:
            queue: Queue to pull jobs from
            engine: Engine used for workflow jobs
            registry: Providers for step jobs (defaults to the engine's registry)
            config: Concurrency and polling settings
            sleep: Awaitable used between polls
            clock: Monotonic clock for job timings
        """
        self.queue = queue
        self.engine = engine
        self.registry = registry or engine.registry
        self.config = config or WorkerConfig(queue_name=queue.name)
        self._sleep = sleep
        self._clock = clock or time.monotonic

        self._in_flight: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False
        self._paused = False
        self._stats = {"processed": 0, "completed": 0, "failed": 0}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start polling in a background task."""
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop(), name=f"worker:{self.config.queue_name}")
        logger.info(
            f"WorkflowWorker ready - listening on queue: {self.config.queue_name} "
            f"(concurrency={self.config.concurrency})"
        )

    async def _run_loop(self) -> None:
        while self._running:
            try:
                claimed = await self._dispatch_available()
            except ConductorError as e:
                logger.error(f"Worker failed to claim jobs: {e.message}")
                claimed = 0
            if claimed == 0:
                await self._sleep(self.config.poll_interval)

    async def _dispatch_available(self) -> int:
        if self._paused:
            return 0
        free = self.config.concurrency - len(self._in_flight)
        if free <= 0:
            if self._in_flight:
                await asyncio.wait(self._in_flight, return_when=asyncio.FIRST_COMPLETED)
            return 0

        jobs = await self.queue.claim(free)
        for job in jobs:
            task = asyncio.create_task(self.process_job(job), name=f"job:{job.id}")
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
        return len(jobs)

    async def run_once(self) -> int:
        """Claim whatever is due, process it and wait for completion.

        Returns:
            Number of jobs processed
        """
        jobs = [] if self._paused else await self.queue.claim(self.config.concurrency)
        if jobs:
            await asyncio.gather(*(self.process_job(job) for job in jobs))
        return len(jobs)

    async def pause(self) -> None:
        """Stop claiming new jobs. Jobs already running finish normally."""
        self._paused = True
        logger.info("WorkflowWorker paused")

    async def resume(self) -> None:
        self._paused = False
        logger.info("WorkflowWorker resumed")

    async def close(self, wait: bool = True) -> None:
        """Stop polling and optionally wait for in-flight jobs."""
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        if wait and self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        logger.info("WorkflowWorker closed")

    # ------------------------------------------------------------------
    # Job processing
    # ------------------------------------------------------------------

    async def process_job(self, job: QueueJob) -> None:
        """Run one claimed job and report the outcome to the queue."""
        logger.info(f"Processing {job.kind.value} job {job.id} (attempt {job.attempts_made}/{job.max_attempts})")
        started = self._clock()
        self._stats["processed"] += 1
        try:
            await self.queue.update_progress(job.id, 5, "Job processing started")
            if job.kind == JobKind.WORKFLOW:
                result = await self._process_workflow_job(job)
            else:
                result = await self._process_step_job(job)
        except Exception as e:
            self._stats["failed"] += 1
            logger.error(f"Job {job.id} failed: {e}")
            await self.queue.fail_job(job.id, error_payload(e))
            return

        result["execution_time"] = self._clock() - started
        self._stats["completed"] += 1
        await self.queue.complete_job(job.id, result)

    async def _process_workflow_job(self, job: QueueJob) -> Dict[str, Any]:
        payload = job.payload
        pipeline = PipelineDefinition.model_validate(payload["pipeline"])
        execution_id = f"{job.id}-{job.attempts_made}"

        await self.queue.update_progress(job.id, 10, "Starting workflow execution")

        async def on_progress(event: WorkflowEvent) -> None:
            if event.execution_id != execution_id:
                return
            percent = event.data.get("progress", 0)
            await self.queue.update_progress(
                job.id, min(90, 20 + int(percent * 0.7)), f"Workflow progress: {percent}%"
            )

        unsubscribe = self.engine.event_bus.subscribe(EventType.WORKFLOW_PROGRESS, on_progress)
        try:
            context = await self.engine.execute_workflow(
                pipeline,
                payload.get("variables", {}),
                run_meta={
                    "execution_id": execution_id,
                    "project_id": payload.get("project_id", "default"),
                    "user_id": payload.get("user_id", "system"),
                    "metadata": {"job_id": job.id, **payload.get("metadata", {})},
                },
            )
        finally:
            unsubscribe()

        if context.status != WorkflowStatus.COMPLETED:
            error = context.error or {}
            raise ConductorError(
                error.get("message", f"Workflow {pipeline.id} ended with status {context.status.value}"),
                code=error.get("code", "WORKFLOW_FAILED"),
                retryable=error.get("retryable", True),
            )

        await self.queue.update_progress(job.id, 95, "Workflow execution completed")
        return {
            "workflow_id": pipeline.id,
            "execution_id": execution_id,
            "status": context.status.value,
            "outputs": context.step_outputs(),
            "duration": context.get_duration(),
        }

    async def _process_step_job(self, job: QueueJob) -> Dict[str, Any]:
        payload = job.payload
        step = StepDefinition.model_validate(payload["step"])
        variables = payload.get("variables", {})
        step_outputs = payload.get("step_outputs", {})

        await self.queue.update_progress(job.id, 10, f"Starting step: {step.id}")
        inputs = resolve_variables(step.inputs, variables, step_outputs)
        config = resolve_variables(step.config, variables, step_outputs)

        await self.queue.update_progress(job.id, 20, f"Executing step with provider: {step.provider}")
        call = self.registry.execute_with_policy(step.provider, config, inputs)
        if step.timeout:
            try:
                outputs = await asyncio.wait_for(call, step.timeout)
            except asyncio.TimeoutError:
                raise StepTimeoutError(step.id, step.timeout) from None
        else:
            outputs = await call

        await self.queue.update_progress(job.id, 90, f"Step execution completed: {step.id}")
        return {
            "workflow_id": payload.get("workflow_id"),
            "step_id": step.id,
            "status": "completed",
            "result": outputs,
        }

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    def get_worker_stats(self) -> Dict[str, Any]:
        return {
            "name": self.config.queue_name,
            "is_running": self._running,
            "is_paused": self._paused,
            "concurrency": self.config.concurrency,
            "active_jobs": len(self._in_flight),
            **self._stats,
        }
