"""Queue health checks, dead-letter handling and alerting."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..exceptions import ConductorError
from ..orchestration.workflow_engine.core import WorkflowEngine
from ..orchestration.workflow_engine.events import EventBus, EventType, WorkflowEvent
from ..queue.manager import QueueManager
from ..queue.models import JobOptions, JobState
from .alerts import AlertCategory, AlertChannel, AlertManager, AlertRecord, AlertSeverity
from .dead_letter import DeadLetterEntry, DeadLetterStore, InMemoryDeadLetterStore

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
CRITICAL = "critical"


@dataclass
class MonitoringConfig:
    """Monitor settings.

    Attributes:
        health_check_interval: Seconds between health checks
        error_rate_threshold: Error rate (percent) above which an alert is raised
        alert_cooldown: Seconds between alerts of the same category and severity
        dead_letter_threshold: Dead-letter count above which an alert is raised
        dead_letter_enabled: Store exhausted jobs in the dead-letter store
        recent_jobs_window: Finished jobs considered for the error rate
        degraded_error_rate: Error rate (percent) above which health is degraded
        critical_error_rate: Error rate (percent) above which health is critical
    """

    health_check_interval: float = 30.0
    error_rate_threshold: float = 5.0
    alert_cooldown: float = 900.0
    dead_letter_threshold: int = 10
    dead_letter_enabled: bool = True
    recent_jobs_window: int = 100
    degraded_error_rate: float = 5.0
    critical_error_rate: float = 10.0

    def __post_init__(self) -> None:
        if self.health_check_interval <= 0:
            raise ValueError("health_check_interval must be positive")
        if self.degraded_error_rate > self.critical_error_rate:
            raise ValueError("degraded_error_rate must not exceed critical_error_rate")


@dataclass
class HealthMetrics:
    """Result of the latest health check."""

    status: str = HEALTHY
    uptime: float = 0.0
    total_jobs: int = 0
    waiting_jobs: int = 0
    active_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    avg_processing_time: float = 0.0
    error_rate: float = 0.0
    dead_letter_count: int = 0
    last_check: Optional[datetime] = None
    alerts: List[AlertRecord] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "uptime": self.uptime,
            "metrics": {
                "total_jobs": self.total_jobs,
                "waiting_jobs": self.waiting_jobs,
                "active_jobs": self.active_jobs,
                "completed_jobs": self.completed_jobs,
                "failed_jobs": self.failed_jobs,
                "avg_processing_time": self.avg_processing_time,
                "error_rate": self.error_rate,
                "dead_letter_count": self.dead_letter_count,
            },
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "alerts": [a.to_dict() for a in self.alerts],
            "error": self.error,
        }


def classify_health(error_rate: float, config: MonitoringConfig) -> str:
    if error_rate > config.critical_error_rate:
        return CRITICAL
    if error_rate > config.degraded_error_rate:
        return DEGRADED
    return HEALTHY


class WorkflowMonitor:
    """Watches queue, worker and engine and reacts to failures.

    Exhausted jobs are moved to the dead-letter store (once per job id).
    Health is checked on a fixed interval; error-rate breaches, dead-letter
    accumulation, critical health and workflow failures raise alerts through
    an :class:`AlertManager`.
    """

    def __init__(
        self,
        queue_manager: QueueManager,
        engine: Optional[WorkflowEngine] = None,
        dead_letters: Optional[DeadLetterStore] = None,
        channel: Optional[AlertChannel] = None,
        config: Optional[MonitoringConfig] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the monitor.

        Args:
            queue_manager: Source of queue stats and ``job.*`` events
            engine: Engine whose workflow and step failures raise alerts
                (defaults to the manager's engine)
            dead_letters: Dead-letter storage (in-memory if None)
            channel: Alert delivery channel (logging if None)
            config: Thresholds and intervals
            clock: Monotonic clock for uptime and alert cooldowns
            sleep: Awaitable used between health checks
        """
        self.queue_manager = queue_manager
        self.engine = engine or queue_manager.engine
        self.dead_letters = dead_letters or InMemoryDeadLetterStore()
        self.config = config or MonitoringConfig()
        self._clock = clock or time.monotonic
        self._sleep = sleep
        self.alerts = AlertManager(channel, cooldown=self.config.alert_cooldown, clock=self._clock)

        self._started_at = self._clock()
        self._metrics = HealthMetrics(dead_letter_count=self.dead_letters.count())
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False
        self._unsubscribers: List[Callable[[], None]] = []

        self._subscribe(queue_manager.event_bus)
        if self.engine is not None and self.engine.event_bus is not queue_manager.event_bus:
            self._subscribe(self.engine.event_bus)

    def _subscribe(self, bus: EventBus) -> None:
        self._unsubscribers += [
            bus.subscribe(EventType.JOB_EXHAUSTED, self._handle_job_exhausted),
            bus.subscribe(EventType.WORKFLOW_FAILED, self._handle_workflow_failure),
            bus.subscribe(EventType.STEP_FAILED, self._handle_step_failure),
        ]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Run an initial health check, then keep checking in the background."""
        if self._running:
            logger.info("WorkflowMonitor already running")
            return
        self._running = True
        await self.perform_health_check()
        self._loop_task = asyncio.create_task(self._health_loop(), name="workflow-monitor")
        logger.info(
            f"WorkflowMonitor started (interval={self.config.health_check_interval}s, "
            f"{self.dead_letters.count()} dead letter(s))"
        )

    async def _health_loop(self) -> None:
        while self._running:
            await self._sleep(self.config.health_check_interval)
            if self._running:
                await self.perform_health_check()

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        logger.info("WorkflowMonitor stopped")

    def close(self) -> None:
        """Drop event subscriptions and release the dead-letter store."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self.dead_letters.close()

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Health checks
    # ------------------------------------------------------------------

    async def perform_health_check(self) -> HealthMetrics:
        """Recompute health from queue stats and recent finished jobs."""
        uptime = self._clock() - self._started_at
        try:
            queue = self.queue_manager.get_queue()
            stats = await queue.get_stats()
            recent = await queue.get_recent_finished(self.config.recent_jobs_window)
        except ConductorError as e:
            logger.error(f"Health check failed: {e.message}")
            self._metrics = HealthMetrics(
                status=CRITICAL,
                uptime=uptime,
                dead_letter_count=self.dead_letters.count(),
                last_check=datetime.now(),
                alerts=self.alerts.active_alerts(),
                error=e.to_dict(),
            )
            await self.alerts.create_alert(
                AlertCategory.PERFORMANCE,
                AlertSeverity.CRITICAL,
                "Health check failed: queue unreachable",
                {"error": e.to_dict()},
                system_status=CRITICAL,
            )
            return self._metrics

        failed_recent = sum(1 for job in recent if job.status == JobState.FAILED)
        error_rate = failed_recent / len(recent) * 100 if recent else 0.0
        durations = [
            job.finished_on - job.processed_on
            for job in recent
            if job.finished_on is not None and job.processed_on is not None
        ]

        self._metrics = HealthMetrics(
            status=classify_health(error_rate, self.config),
            uptime=uptime,
            total_jobs=stats["total"],
            waiting_jobs=stats["waiting"] + stats["delayed"],
            active_jobs=stats["active"],
            completed_jobs=stats["completed"],
            failed_jobs=stats["failed"],
            avg_processing_time=sum(durations) / len(durations) if durations else 0.0,
            error_rate=error_rate,
            dead_letter_count=self.dead_letters.count(),
            last_check=datetime.now(),
            alerts=self.alerts.active_alerts(),
        )
        logger.debug(
            f"Health check: {self._metrics.status} (error rate {error_rate:.2f}%, "
            f"{self._metrics.dead_letter_count} dead letter(s))"
        )
        await self._check_alert_conditions()
        return self._metrics

    async def _check_alert_conditions(self) -> None:
        metrics = self._metrics
        if metrics.error_rate > self.config.error_rate_threshold:
            await self.alerts.create_alert(
                AlertCategory.ERROR,
                AlertSeverity.HIGH,
                f"High error rate detected: {metrics.error_rate:.2f}%",
                {"error_rate": metrics.error_rate, "threshold": self.config.error_rate_threshold},
                system_status=metrics.status,
            )

        await self._check_dead_letter_threshold()

        if metrics.status == CRITICAL:
            await self.alerts.create_alert(
                AlertCategory.RESOURCE,
                AlertSeverity.CRITICAL,
                "System health is critical",
                {"status": metrics.status, "error_rate": metrics.error_rate},
                system_status=metrics.status,
            )

    async def _check_dead_letter_threshold(self) -> None:
        count = self._metrics.dead_letter_count
        if count > self.config.dead_letter_threshold:
            await self.alerts.create_alert(
                AlertCategory.ERROR,
                AlertSeverity.MEDIUM,
                f"Dead letter queue accumulating: {count} items",
                {"dead_letter_count": count, "threshold": self.config.dead_letter_threshold},
                system_status=self._metrics.status,
            )

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _handle_job_exhausted(self, event: WorkflowEvent) -> None:
        job_id = event.data.get("job_id", event.execution_id)
        if not self.config.dead_letter_enabled:
            logger.warning(f"Job {job_id} exhausted; dead-letter storage is disabled")
            return

        error = event.data.get("error") or {}
        entry = DeadLetterEntry(
            job_id=job_id,
            kind=event.data.get("kind", "workflow"),
            payload=event.data.get("payload", {}),
            reason=error.get("message", "Job exhausted its attempts"),
            error=error or None,
            options=event.data.get("options", {}),
            attempts_made=event.data.get("attempts_made", 0),
        )
        if not self.dead_letters.add(entry):
            logger.debug(f"Job {job_id} is already dead-lettered")
            return

        self._metrics.dead_letter_count = self.dead_letters.count()
        logger.warning(f"Moved job {job_id} to dead letter queue: {entry.reason}")
        await self._check_dead_letter_threshold()

    async def _handle_workflow_failure(self, event: WorkflowEvent) -> None:
        await self.alerts.create_alert(
            AlertCategory.ERROR,
            AlertSeverity.MEDIUM,
            f"Workflow failed: {event.execution_id}",
            {"execution_id": event.execution_id, "error": event.data.get("error")},
            system_status=self._metrics.status,
        )

    async def _handle_step_failure(self, event: WorkflowEvent) -> None:
        await self.alerts.create_alert(
            AlertCategory.ERROR,
            AlertSeverity.LOW,
            f"Step failed: {event.step_id} in {event.execution_id}",
            {"execution_id": event.execution_id, "step_id": event.step_id, "error": event.data.get("error")},
            system_status=self._metrics.status,
        )

    # ------------------------------------------------------------------
    # Dead-letter inspection
    # ------------------------------------------------------------------

    def list_dead_letters(self, limit: Optional[int] = None) -> List[DeadLetterEntry]:
        return self.dead_letters.list_entries(limit)

    async def retry_dead_letter(self, job_id: str) -> bool:
        """Requeue a dead-lettered job with its original payload and options.

        Returns:
            False if no dead letter exists for ``job_id``
        """
        entry = self.dead_letters.get(job_id)
        if entry is None:
            return False

        queue = self.queue_manager.get_queue()
        # The exhausted record still holds the id; replace it with a fresh job
        await queue.remove_job(job_id)
        options = JobOptions.from_dict(entry.options) if entry.options else None
        await queue.add_job(job_id, entry.kind, entry.payload, options)
        self.dead_letters.remove(job_id)
        self._metrics.dead_letter_count = self.dead_letters.count()

        logger.info(f"Requeued dead letter job {job_id}")
        await self.alerts.create_alert(
            AlertCategory.RECOVERY,
            AlertSeverity.LOW,
            f"Dead letter job requeued: {job_id}",
            {"job_id": job_id, "kind": entry.kind},
            system_status=self._metrics.status,
        )
        return True

    def purge_dead_letters(self) -> int:
        count = self.dead_letters.purge()
        self._metrics.dead_letter_count = 0
        logger.info(f"Purged {count} items from dead letter queue")
        return count

    # ------------------------------------------------------------------
    # Public metrics
    # ------------------------------------------------------------------

    def get_health_metrics(self) -> HealthMetrics:
        return self._metrics

    def get_alert_history(self, limit: int = 50) -> List[AlertRecord]:
        return self.alerts.get_history(limit)

    def resolve_alert(self, alert_id: str) -> bool:
        resolved = self.alerts.resolve(alert_id)
        if resolved:
            logger.info(f"Resolved alert {alert_id}")
        return resolved
