"""
Core pipeline orchestration engine.

This module contains the engine that validates a pipeline, drives its waves
through step runtimes, applies the pipeline error policy, emits lifecycle
events and persists the final execution record.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Union

import psutil

from ...exceptions import (
    ConductorError,
    ProviderError,
    ValidationError,
    WorkflowCancelledError,
    WorkflowTimeoutError,
    error_payload,
)
from ...providers.registry import ProviderRegistry
from .events import EventBus, EventType
from .executors import StepRuntime
from .expressions import evaluate_expression, validate_expression
from .references import StepOutputRef, iter_references, parse_value, resolve
from .resolver import ExecutionPlan, resolve_execution_plan
from .steps import (
    ErrorPolicy,
    ExecutionContext,
    ExecutionMode,
    PipelineDefinition,
    StepDefinition,
    StepResult,
    StepStatus,
    WorkflowStatus,
)

logger = logging.getLogger(__name__)

_IN_FLIGHT = (StepStatus.RUNNING, StepStatus.RETRYING)


@dataclass
class EngineConfig:
    """Engine behaviour switches.

    Attributes:
        execution_mode: ``parallel`` runs a wave's steps concurrently (bounded by
            ``max_concurrency``); ``sequential`` runs them one at a time in
            declaration order
        max_concurrency: Upper bound on concurrently running steps per run
        persist_results: Save finished execution records through the state manager
    """

    execution_mode: ExecutionMode = ExecutionMode.PARALLEL
    max_concurrency: int = 4
    persist_results: bool = True

    def __post_init__(self) -> None:
        self.execution_mode = ExecutionMode(self.execution_mode)
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")


@dataclass
class ValidationReport:
    """Outcome of :meth:`WorkflowEngine.validate_workflow`."""

    pipeline_id: str
    errors: List[str] = field(default_factory=list)
    plan: Optional[ExecutionPlan] = None

    @property
    def valid(self) -> bool:
        return not self.errors

    def __bool__(self) -> bool:
        return self.valid


@dataclass
class WorkflowProgress:
    """Snapshot of a run's progress."""

    execution_id: str
    status: WorkflowStatus
    total_steps: int
    completed_steps: int
    failed_steps: int
    skipped_steps: int
    current_step: Optional[str]
    progress: int
    errors: List[str] = field(default_factory=list)


@dataclass
class _RunState:
    pipeline: PipelineDefinition
    plan: ExecutionPlan
    context: ExecutionContext
    semaphore: asyncio.Semaphore
    parsed_inputs: Dict[str, Any]
    parsed_config: Dict[str, Any]
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    tasks: Set[asyncio.Task] = field(default_factory=set)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class WorkflowEngine:
    """Main pipeline orchestration engine."""

    def __init__(
        self,
        registry: ProviderRegistry,
        config: Optional[EngineConfig] = None,
        event_bus: Optional[EventBus] = None,
        state_manager: Optional["WorkflowStateManager"] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the engine.

        Args:
            registry: Providers available to steps
            config: Execution mode and concurrency settings
            event_bus: Receives lifecycle events (a private bus is created if None)
            state_manager: Execution record persistence
            clock: Monotonic clock used for uptime
            sleep: Awaitable used by step runtimes for backoff waits
        """
        # Import here to avoid circular imports
        from ..state_manager import InMemoryStateManager

        self.registry = registry
        self.config = config or EngineConfig()
        self.event_bus = event_bus or EventBus()
        self.state_manager = state_manager or InMemoryStateManager()
        self._clock = clock or time.monotonic
        self._sleep = sleep
        self._started_at = self._clock()

        self._runs: Dict[str, _RunState] = {}
        self._background: Set[asyncio.Task] = set()
        self._lock = Lock()

        # Metrics
        self._metrics = {
            "workflows_started": 0,
            "workflows_completed": 0,
            "workflows_failed": 0,
            "workflows_cancelled": 0,
            "steps_executed": 0,
            "steps_failed": 0,
            "steps_skipped": 0,
            "total_duration": 0.0,
        }

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_workflow(self, pipeline: PipelineDefinition) -> ValidationReport:
        """Check a pipeline without running it.

        Covers dependency targets and cycles, provider availability and config,
        condition safety, and that every ``${step.key}`` reference targets a
        transitive dependency of the referencing step.
        """
        report = ValidationReport(pipeline_id=pipeline.id)
        try:
            report.plan = resolve_execution_plan(pipeline.steps, pipeline.id)
        except ValidationError as e:
            report.errors.append(e.message)

        step_ids = pipeline.step_ids
        for step in pipeline.steps:
            try:
                provider = self.registry.get(step.provider)
                if not provider.validate(step.config):
                    report.errors.append(
                        f"Invalid configuration for provider {step.provider} in step {step.id}"
                    )
            except ProviderError as e:
                report.errors.append(f"Step {step.id}: {e.message}")

            if step.condition is not None and not validate_expression(step.condition):
                report.errors.append(f"Step {step.id} has an invalid or unsafe condition: {step.condition!r}")

            if report.plan is None:
                continue
            dependencies = report.plan.dependencies(step.id)
            parsed = [parse_value(step.inputs, step_ids), parse_value(step.config, step_ids)]
            for ref in (r for tree in parsed for r in iter_references(tree)):
                if isinstance(ref, StepOutputRef) and ref.step_id not in dependencies:
                    report.errors.append(
                        f"Step {step.id} references output of step {ref.step_id}, "
                        f"which is not one of its dependencies"
                    )

        if report.errors:
            logger.warning(f"Pipeline {pipeline.id} failed validation: {report.errors}")
        return report

    def ensure_valid(self, pipeline: PipelineDefinition) -> ExecutionPlan:
        """Validate and return the execution plan.

        Raises:
            ValidationError: If any check fails
        """
        report = self.validate_workflow(pipeline)
        if not report.valid:
            raise ValidationError(
                f"Pipeline {pipeline.id} is invalid: {report.errors[0]}",
                pipeline_id=pipeline.id,
                errors=report.errors,
            )
        return report.plan

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_workflow(
        self,
        pipeline: Union[PipelineDefinition, Mapping[str, Any]],
        variables: Optional[Dict[str, Any]] = None,
        run_meta: Optional[Dict[str, Any]] = None,
    ) -> ExecutionContext:
        """Run a pipeline to a terminal state.

        Args:
            pipeline: Pipeline definition (or its dict form)
            variables: Run-scoped variables for ``${name}`` references and conditions
            run_meta: Optional ``execution_id``, ``project_id``, ``user_id`` and ``metadata``

        Returns:
            Final execution context

        Raises:
            ValidationError: Definition problems; no step runs
        """
        if not isinstance(pipeline, PipelineDefinition):
            pipeline = PipelineDefinition.model_validate(pipeline)
        plan = self.ensure_valid(pipeline)

        run_meta = run_meta or {}
        context = ExecutionContext(
            execution_id=run_meta.get("execution_id") or f"{pipeline.id}-{uuid.uuid4().hex[:12]}",
            pipeline_id=pipeline.id,
            project_id=run_meta.get("project_id", "default"),
            user_id=run_meta.get("user_id", "system"),
            variables=dict(variables or {}),
            metadata=dict(run_meta.get("metadata", {})),
        )
        for step in pipeline.steps:
            context.step_results[step.id] = StepResult(
                step_id=step.id, metadata={"provider": step.provider, "type": step.type}
            )

        step_ids = pipeline.step_ids
        run = _RunState(
            pipeline=pipeline,
            plan=plan,
            context=context,
            semaphore=asyncio.Semaphore(self.config.max_concurrency),
            parsed_inputs={s.id: parse_value(s.inputs, step_ids) for s in pipeline.steps},
            parsed_config={s.id: parse_value(s.config, step_ids) for s in pipeline.steps},
        )

        with self._lock:
            self._runs[context.execution_id] = run
            self._metrics["workflows_started"] += 1

        context.status = WorkflowStatus.RUNNING
        context.start_time = datetime.now()
        logger.info(
            f"Starting pipeline {pipeline.name} ({context.execution_id}): "
            f"{' -> '.join(str(w) for w in plan.waves)}"
        )
        await self.event_bus.publish(
            EventType.WORKFLOW_STARTED,
            context.execution_id,
            pipeline_id=pipeline.id,
            pipeline_name=pipeline.name,
            step_count=len(pipeline.steps),
            waves=plan.waves,
        )

        try:
            if pipeline.timeout:
                await asyncio.wait_for(self._drive(run), timeout=pipeline.timeout)
            else:
                await self._drive(run)
        except asyncio.TimeoutError:
            timeout_error = WorkflowTimeoutError(
                f"Pipeline {pipeline.id} timed out after {pipeline.timeout}s"
            )
            logger.error(timeout_error.message)
            self._abort_in_flight(run, timeout_error)
            context.error = timeout_error.to_dict()
        except Exception as e:
            logger.error(f"Pipeline {context.execution_id} failed: {e}")
            self._abort_in_flight(run, e)
            context.error = error_payload(e)
        finally:
            with self._lock:
                self._runs.pop(context.execution_id, None)

        await self._finalize_workflow(run)
        return context

    async def _drive(self, run: _RunState) -> None:
        """Run waves in order until done, stopped or cancelled."""
        stop_on_failure = run.pipeline.on_error == ErrorPolicy.STOP

        for index, wave in enumerate(run.plan.waves):
            if run.cancelled:
                return
            logger.debug(f"[{run.context.execution_id}] Dispatching wave {index}: {wave}")

            finished = await self._run_wave(run, wave, stop_on_failure)
            if not finished:
                return

            failed = [sid for sid in wave if run.context.step_results[sid].status == StepStatus.FAILED]
            if failed and stop_on_failure:
                logger.warning(
                    f"[{run.context.execution_id}] Stopping after failed steps {failed}; "
                    f"{len(run.plan.waves) - index - 1} wave(s) not dispatched"
                )
                return

    async def _run_wave(self, run: _RunState, wave: List[str], stop_on_failure: bool) -> bool:
        """Dispatch one wave.

        Returns:
            False if the run was cancelled while the wave was in flight
        """
        context = run.context
        eligible: List[StepDefinition] = []

        for step_id in wave:
            step = run.pipeline.get_step(step_id)
            blocked = [d for d in step.depends_on if context.step_results[d].status != StepStatus.COMPLETED]
            if blocked:
                await self._skip_step(run, step, f"Dependency {', '.join(blocked)} did not complete")
                continue
            if not evaluate_expression(step.condition, self._condition_scope(context)):
                await self._skip_step(run, step, f"Step skipped due to condition: {step.condition}")
                continue
            eligible.append(step)

        if self.config.execution_mode == ExecutionMode.SEQUENTIAL:
            for step in eligible:
                if run.cancelled:
                    return False
                if not await self._await_tasks(run, [self._spawn(run, step)]):
                    return False
                if stop_on_failure and context.step_results[step.id].status == StepStatus.FAILED:
                    break
            return not run.cancelled

        tasks = [self._spawn(run, step) for step in eligible]
        return await self._await_tasks(run, tasks)

    def _spawn(self, run: _RunState, step: StepDefinition) -> asyncio.Task:
        task = asyncio.create_task(self._run_step(run, step), name=f"{run.context.execution_id}:{step.id}")
        run.tasks.add(task)
        task.add_done_callback(run.tasks.discard)
        return task

    async def _await_tasks(self, run: _RunState, tasks: List[asyncio.Task]) -> bool:
        """Wait for ``tasks`` or for cancellation, whichever comes first.

        Tasks still running when the run is cancelled are left to finish in
        the background; their results are ignored.
        """
        pending: Set[asyncio.Future] = set(tasks)
        if not pending:
            return True

        cancel_waiter = asyncio.ensure_future(run.cancel_event.wait())
        try:
            while pending:
                done, _ = await asyncio.wait(pending | {cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
                if cancel_waiter in done:
                    for task in pending:
                        self._background.add(task)
                        task.add_done_callback(self._background.discard)
                    return False
                pending -= done
            return True
        finally:
            if not cancel_waiter.done():
                cancel_waiter.cancel()

    async def _run_step(self, run: _RunState, step: StepDefinition) -> None:
        context = run.context
        async with run.semaphore:
            if run.cancelled:
                return

            try:
                provider = self.registry.get(step.provider)
                step_outputs = context.step_outputs()
                inputs = resolve(run.parsed_inputs[step.id], context.variables, step_outputs, step.id)
                config = resolve(run.parsed_config[step.id], context.variables, step_outputs, step.id)
            except ConductorError as e:
                await self._fail_before_start(run, step, e)
                return

            runtime = StepRuntime(
                step,
                provider,
                registry=self.registry,
                retry_policy=run.pipeline.retry_policy_for(step),
                sleep=self._sleep,
                on_retry=partial(self._on_step_retry, run),
            )
            context.current_step = step.id
            context.step_results[step.id] = runtime.result

            await self.event_bus.publish(
                EventType.STEP_STARTED,
                context.execution_id,
                step.id,
                step_name=step.name,
                provider=step.provider,
            )
            logger.info(f"[{context.execution_id}] Executing step: {step.name}")

            result = await runtime.execute(inputs, config)

            if run.cancelled:
                logger.info(f"[{context.execution_id}] Ignoring result of {step.id}; run was cancelled")
                return

            with self._lock:
                self._metrics["steps_executed"] += 1
                if result.status == StepStatus.FAILED:
                    self._metrics["steps_failed"] += 1

            if result.status == StepStatus.COMPLETED:
                await self.event_bus.publish(
                    EventType.STEP_COMPLETED,
                    context.execution_id,
                    step.id,
                    outputs=result.outputs,
                    duration=result.duration,
                    retry_count=result.retry_count,
                )
            else:
                await self.event_bus.publish(
                    EventType.STEP_FAILED,
                    context.execution_id,
                    step.id,
                    error={
                        "message": result.error,
                        "code": result.error_code,
                        "retryable": result.metadata.get("retryable", False),
                    },
                    retry_count=result.retry_count,
                )
            await self._publish_progress(run)

    async def _fail_before_start(self, run: _RunState, step: StepDefinition, error: ConductorError) -> None:
        result = run.context.step_results[step.id]
        result.start_time = result.end_time = datetime.now()
        result.error = error.message
        result.error_code = error.code
        result.metadata["retryable"] = error.retryable
        result.transition(StepStatus.FAILED)
        result.log(f"Step execution failed before start: {error.message}")
        logger.error(f"[{run.context.execution_id}] Step {step.id} failed before start: {error.message}")

        with self._lock:
            self._metrics["steps_failed"] += 1
        await self.event_bus.publish(
            EventType.STEP_FAILED, run.context.execution_id, step.id, error=error.to_dict(), retry_count=0
        )
        await self._publish_progress(run)

    async def _skip_step(self, run: _RunState, step: StepDefinition, reason: str) -> None:
        result = run.context.step_results[step.id]
        result.start_time = result.end_time = datetime.now()
        result.transition(StepStatus.SKIPPED)
        result.log(reason)
        logger.info(f"[{run.context.execution_id}] Skipping step {step.id}: {reason}")

        with self._lock:
            self._metrics["steps_skipped"] += 1
        await self.event_bus.publish(EventType.STEP_SKIPPED, run.context.execution_id, step.id, reason=reason)

    async def _on_step_retry(self, run: _RunState, result: StepResult, error: ConductorError, delay: float) -> None:
        await self.event_bus.publish(
            EventType.STEP_RETRYING,
            run.context.execution_id,
            result.step_id,
            retry_count=result.retry_count,
            delay=delay,
            error=error.to_dict(),
        )

    async def _publish_progress(self, run: _RunState) -> None:
        progress = self._progress_for(run.context, len(run.pipeline.steps))
        await self.event_bus.publish(
            EventType.WORKFLOW_PROGRESS,
            run.context.execution_id,
            progress=progress.progress,
            completed_steps=progress.completed_steps,
            total_steps=progress.total_steps,
            current_step=progress.current_step,
        )

    @staticmethod
    def _condition_scope(context: ExecutionContext) -> Dict[str, Any]:
        """Variables plus completed step outputs as ``step`` and ``step.key``."""
        scope = dict(context.variables)
        for step_id, outputs in context.step_outputs().items():
            scope.setdefault(step_id, outputs)
            for key, value in outputs.items():
                scope[f"{step_id}.{key}"] = value
        return scope

    def _abort_in_flight(self, run: _RunState, error: BaseException, cancel_tasks: bool = True) -> None:
        """Record in-flight steps as failed, optionally cancelling their tasks."""
        if cancel_tasks:
            for task in list(run.tasks):
                if not task.done():
                    task.cancel()

        payload = error_payload(error)
        for step_id, current in list(run.context.step_results.items()):
            if current.status not in _IN_FLIGHT:
                continue
            # Detached copy, so a late runtime update cannot touch the record
            aborted = StepResult(
                step_id=step_id,
                status=current.status,
                start_time=current.start_time,
                inputs=dict(current.inputs),
                retry_count=current.retry_count,
                logs=list(current.logs),
                metadata=dict(current.metadata),
            )
            aborted.error = payload["message"]
            aborted.error_code = payload["code"]
            aborted.end_time = datetime.now()
            aborted.transition(StepStatus.FAILED)
            aborted.log(f"Step aborted: {payload['message']}")
            run.context.step_results[step_id] = aborted

    async def _finalize_workflow(self, run: _RunState) -> None:
        """Settle the final status, emit the terminal event and persist."""
        context = run.context
        context.end_time = datetime.now()
        failed = context.failed_steps

        if run.cancelled:
            context.status = WorkflowStatus.CANCELLED
        elif context.error is not None or failed:
            context.status = WorkflowStatus.FAILED
            if context.error is None:
                first = context.step_results[failed[0]]
                context.error = {
                    "message": f"Step {first.step_id} failed: {first.error}",
                    "code": first.error_code or "PROVIDER_ERROR",
                    "retryable": bool(first.metadata.get("retryable", False)),
                }
        else:
            context.status = WorkflowStatus.COMPLETED

        with self._lock:
            key = {
                WorkflowStatus.COMPLETED: "workflows_completed",
                WorkflowStatus.FAILED: "workflows_failed",
                WorkflowStatus.CANCELLED: "workflows_cancelled",
            }[context.status]
            self._metrics[key] += 1
            self._metrics["total_duration"] += context.get_duration() or 0.0

        if self.config.persist_results:
            self.state_manager.save_state(context.execution_id, context)

        if context.status == WorkflowStatus.COMPLETED:
            await self.event_bus.publish(
                EventType.WORKFLOW_COMPLETED,
                context.execution_id,
                duration=context.get_duration(),
                step_results=list(context.step_results),
            )
        elif context.status == WorkflowStatus.FAILED:
            await self.event_bus.publish(
                EventType.WORKFLOW_FAILED,
                context.execution_id,
                failed_steps=failed,
                error=context.error,
            )

        logger.info(
            f"Pipeline {context.execution_id} finished with status {context.status.value} "
            f"in {context.get_duration():.2f}s"
        )

    # ------------------------------------------------------------------
    # Control and diagnostics
    # ------------------------------------------------------------------

    async def cancel_workflow(self, execution_id: str, reason: str = "User requested cancellation") -> bool:
        """Cancel a running pipeline.

        No further steps are dispatched. Steps already running are not killed,
        but their results are ignored and they are recorded as failed with
        code ``CANCELLED``.

        Returns:
            False if no run with this id is in progress
        """
        with self._lock:
            run = self._runs.get(execution_id)
        if run is None or run.cancelled:
            return False

        run.cancel_event.set()
        cancelled = WorkflowCancelledError(f"Pipeline {execution_id} cancelled: {reason}")
        self._abort_in_flight(run, cancelled, cancel_tasks=False)

        run.context.status = WorkflowStatus.CANCELLED
        run.context.error = cancelled.to_dict()
        logger.info(f"Cancelled pipeline {execution_id}")
        await self.event_bus.publish(EventType.WORKFLOW_CANCELLED, execution_id, reason=reason)
        return True

    def get_running_workflows(self) -> List[str]:
        with self._lock:
            return list(self._runs)

    def get_context(self, execution_id: str) -> Optional[ExecutionContext]:
        """Live context of a running pipeline, or its persisted record."""
        with self._lock:
            run = self._runs.get(execution_id)
        if run is not None:
            return run.context
        return self.state_manager.load_state(execution_id)

    def get_workflow_progress(self, execution_id: str) -> Optional[WorkflowProgress]:
        with self._lock:
            run = self._runs.get(execution_id)
        if run is not None:
            return self._progress_for(run.context, len(run.pipeline.steps))

        context = self.state_manager.load_state(execution_id)
        if context is None:
            return None
        return self._progress_for(context, len(context.step_results))

    @staticmethod
    def _progress_for(context: ExecutionContext, total: int) -> WorkflowProgress:
        results = context.step_results.values()
        terminal = sum(1 for r in results if r.is_terminal())
        return WorkflowProgress(
            execution_id=context.execution_id,
            status=context.status,
            total_steps=total,
            completed_steps=len(context.completed_steps),
            failed_steps=len(context.failed_steps),
            skipped_steps=len(context.skipped_steps),
            current_step=context.current_step,
            progress=round(terminal / total * 100) if total else 0,
            errors=[r.error for r in results if r.error],
        )

    def get_engine_stats(self) -> Dict[str, Any]:
        """Provider, run and process statistics."""
        memory = psutil.Process().memory_info()
        with self._lock:
            running = list(self._runs)
            metrics = self._metrics.copy()
        return {
            "running_workflows": len(running),
            "workflow_ids": running,
            "provider_count": len(self.registry),
            "enabled_providers": len(self.registry.list_enabled()),
            "providers": self.registry.get_stats(),
            "uptime": self._clock() - self._started_at,
            "memory": {"rss": memory.rss, "vms": memory.vms},
            "execution_mode": self.config.execution_mode.value,
            "max_concurrency": self.config.max_concurrency,
            "metrics": metrics,
        }

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            return self._metrics.copy()
