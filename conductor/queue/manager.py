"""Facade wiring queue, worker and engine together from configuration."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional, Union

from ..config import Config, get_config
from ..exceptions import ConductorError, QueueError
from ..orchestration.state_manager import InMemoryStateManager, PersistentStateManager
from ..orchestration.workflow_engine.core import WorkflowEngine
from ..orchestration.workflow_engine.events import EventBus
from ..orchestration.workflow_engine.steps import PipelineDefinition, StepDefinition
from ..providers.registry import ProviderRegistry
from .backends import InMemoryQueueBackend, QueueBackend, SQLiteQueueBackend
from .models import JobOptions, JobStatus
from .worker import WorkflowWorker
from .workflow_queue import WorkflowQueue

logger = logging.getLogger(__name__)


class QueueManager:
    """Owns one queue, one engine and one worker pool.

    Components are created lazily by :meth:`initialize` so the manager can be
    constructed cheaply and configured before anything touches the disk.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        config: Optional[Config] = None,
        backend: Optional[QueueBackend] = None,
        event_bus: Optional[EventBus] = None,
        engine: Optional[WorkflowEngine] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """Initialize the manager.

        Args:
            registry: Providers used by the engine and step jobs
            config: Application configuration (global config if None)
            backend: Queue storage (SQLite when ``config.queue_db`` is set,
                in-memory otherwise)
            event_bus: Shared bus for engine and queue events
            engine: Engine for workflow jobs (built from config if None)
            clock: Wall clock for the queue
        """
        self.registry = registry
        self.config = config or get_config()
        self.event_bus = event_bus or EventBus()
        self._backend = backend
        self._engine = engine
        self._clock = clock

        self.queue: Optional[WorkflowQueue] = None
        self.engine: Optional[WorkflowEngine] = None
        self.worker: Optional[WorkflowWorker] = None
        self._initialized = False

    async def initialize(self, start_worker: bool = True) -> None:
        """Create the queue, engine and worker; optionally start polling."""
        if self._initialized:
            return

        backend = self._backend
        if backend is None:
            backend = SQLiteQueueBackend(self.config.queue_db) if self.config.queue_db else InMemoryQueueBackend()

        self.queue = WorkflowQueue(
            backend=backend,
            event_bus=self.event_bus,
            name=self.config.queue_name,
            default_options=self.config.job_options(),
            lease_seconds=self.config.job_lease_seconds,
            clock=self._clock,
        )

        if self._engine is None:
            state_manager = (
                PersistentStateManager(self.config.state_db)
                if self.config.state_db
                else InMemoryStateManager(self.config.state_max_records)
            )
            self._engine = WorkflowEngine(
                self.registry,
                config=self.config.engine_config(),
                event_bus=self.event_bus,
                state_manager=state_manager,
            )
        self.engine = self._engine

        self.worker = WorkflowWorker(self.queue, self.engine, self.registry, self.config.worker_config())
        if start_worker:
            await self.worker.start()

        self._initialized = True
        logger.info(f"Queue manager initialized (queue={self.config.queue_name})")

    def get_queue(self) -> WorkflowQueue:
        if self.queue is None:
            raise QueueError("Queue manager is not initialized")
        return self.queue

    async def queue_workflow(
        self,
        pipeline: Union[PipelineDefinition, Mapping[str, Any]],
        variables: Optional[Dict[str, Any]] = None,
        project_id: str = "default",
        user_id: str = "system",
        options: Optional[JobOptions] = None,
    ) -> str:
        return await self.get_queue().add_workflow_job(
            pipeline, variables, project_id=project_id, user_id=user_id, options=options
        )

    async def queue_step(
        self,
        pipeline_id: str,
        step: Union[StepDefinition, Mapping[str, Any]],
        variables: Optional[Dict[str, Any]] = None,
        step_outputs: Optional[Dict[str, Dict[str, Any]]] = None,
        options: Optional[JobOptions] = None,
    ) -> str:
        return await self.get_queue().add_step_job(
            pipeline_id, step, variables, step_outputs, options=options
        )

    async def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        return await self.get_queue().get_job_status(job_id)

    async def health_check(self) -> Dict[str, Any]:
        """Report whether the queue answers and the worker is running."""
        try:
            stats = await self.get_queue().get_stats()
        except ConductorError as e:
            logger.error(f"Queue health check failed: {e.message}")
            return {"status": "unhealthy", "error": e.to_dict()}

        worker = self.worker.get_worker_stats() if self.worker else None
        return {
            "status": "healthy",
            "queue": stats,
            "worker": worker,
        }

    async def get_full_stats(self) -> Dict[str, Any]:
        queue = self.get_queue()
        return {
            "queue": await queue.get_stats(),
            "worker": self.worker.get_worker_stats() if self.worker else None,
            "engine": self.engine.get_engine_stats() if self.engine else None,
            "active_workflows": [s.to_dict() for s in await queue.get_active_workflows()],
        }

    async def close(self) -> None:
        """Stop the worker and release the queue backend."""
        if self.worker is not None:
            await self.worker.close()
        if self.queue is not None:
            await self.queue.close()
        self._initialized = False
        logger.info("Queue manager closed")
