"""
Step runtime: one provider invocation with input checks, timeout racing and
a retry/backoff state machine.

    pending -> running -> completed
                       -> retrying -> running -> ...
                       -> failed
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from ...exceptions import (
    ConductorError,
    MissingInputError,
    ProviderExecutionError,
    StepTimeoutError,
)
from ...providers.base import Provider
from ...utils.retry import calculate_backoff
from .expressions import evaluate_expression
from .steps import RetryPolicy, StepDefinition, StepResult, StepStatus

if TYPE_CHECKING:
    from ...providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]
RetryCallback = Callable[[StepResult, ConductorError, float], Awaitable[None]]


class StepRuntime:
    """Runs one step to a terminal :class:`StepResult`."""

    def __init__(
        self,
        step: StepDefinition,
        provider: Provider,
        registry: Optional["ProviderRegistry"] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: SleepFunc = asyncio.sleep,
        on_retry: Optional[RetryCallback] = None,
    ):
        """Initialize the runtime.

        Args:
            step: Step definition
            provider: Provider resolved for ``step.provider``
            registry: When given, calls go through ``execute_with_policy`` so
                registry rate limits and timeouts apply
            retry_policy: Overrides ``step.retry``
            sleep: Awaitable used for backoff waits
            on_retry: Awaited before each backoff wait
        """
        self.step = step
        self.provider = provider
        self.registry = registry
        self.retry_policy = retry_policy or step.retry or RetryPolicy()
        self._sleep = sleep
        self._on_retry = on_retry
        self.retry_delays: List[float] = []
        self.result = StepResult(
            step_id=step.id,
            metadata={"provider": step.provider, "type": step.type},
        )

    @property
    def status(self) -> StepStatus:
        return self.result.status

    def can_execute(self, variables: Dict[str, Any]) -> bool:
        """Evaluate the step condition; no condition means always executable."""
        return evaluate_expression(self.step.condition, variables)

    def calculate_retry_delay(self, retry_number: int) -> float:
        """Backoff before retry ``retry_number`` (1-based)."""
        return calculate_backoff(self.retry_policy.delay, retry_number, self.retry_policy.backoff)

    async def execute(
        self, inputs: Optional[Dict[str, Any]] = None, config: Optional[Dict[str, Any]] = None
    ) -> StepResult:
        """Run the step until it completes or exhausts its retries.

        Args:
            inputs: Call-time inputs; they win over the step's static inputs
            config: Resolved provider config (defaults to ``step.config``)

        Returns:
            Terminal StepResult
        """
        result = self.result
        merged = {**self.step.inputs, **(inputs or {})}
        config = self.step.config if config is None else config

        result.inputs = merged
        result.start_time = datetime.now()
        result.transition(StepStatus.RUNNING)
        result.log(f"Starting execution of step: {self.step.name}")

        missing = [name for name in self.provider.required_inputs() if name not in merged]
        if missing:
            return self._fail(MissingInputError(self.step.id, missing))

        while True:
            attempt = result.retry_count + 1
            started = time.monotonic()
            try:
                outputs = await self._call(config, merged)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = self._wrap_error(e)
                elapsed = time.monotonic() - started
                result.error = error.message
                result.error_code = error.code
                result.log(f"Attempt {attempt} failed after {elapsed:.3f}s: {error.message}")

                if not self._should_retry(error):
                    return self._fail(error)

                result.retry_count += 1
                delay = self.calculate_retry_delay(result.retry_count)
                self.retry_delays.append(delay)
                result.transition(StepStatus.RETRYING)
                result.log(
                    f"Retrying step (attempt {result.retry_count + 1}/"
                    f"{self.retry_policy.max_attempts}) in {delay:.3f}s"
                )
                logger.warning(
                    f"Step {self.step.id} failed ({error.code}), retry {result.retry_count} in {delay:.3f}s"
                )
                if self._on_retry is not None:
                    await self._on_retry(result, error, delay)
                if delay > 0:
                    await self._sleep(delay)
                result.transition(StepStatus.RUNNING)
                continue

            elapsed = time.monotonic() - started
            result.outputs = dict(outputs or {})
            result.error = None
            result.error_code = None
            result.end_time = datetime.now()
            result.metadata.update(attempts=attempt, retry_delays=list(self.retry_delays))
            result.transition(StepStatus.COMPLETED)
            result.log(f"Step completed successfully in {elapsed:.3f}s (attempt {attempt})")
            logger.debug(f"Step {self.step.id} completed on attempt {attempt}")
            return result

    async def _call(self, config: Dict[str, Any], inputs: Dict[str, Any]) -> Dict[str, Any]:
        if self.registry is not None:
            call = self.registry.execute_with_policy(self.step.provider, config, inputs)
        else:
            call = self.provider.execute(config, inputs)

        if not self.step.timeout:
            return await call
        try:
            return await asyncio.wait_for(call, self.step.timeout)
        except asyncio.TimeoutError:
            raise StepTimeoutError(self.step.id, self.step.timeout) from None

    def _wrap_error(self, error: Exception) -> ConductorError:
        if isinstance(error, ConductorError):
            return error
        if isinstance(error, asyncio.TimeoutError):
            return StepTimeoutError(self.step.id, self.step.timeout or 0)
        wrapped = ProviderExecutionError(
            str(error) or error.__class__.__name__, provider=self.step.provider, step_id=self.step.id
        )
        wrapped.__cause__ = error
        return wrapped

    def _should_retry(self, error: ConductorError) -> bool:
        if not error.retryable:
            return False
        return self.result.retry_count < self.retry_policy.max_attempts - 1

    def _fail(self, error: ConductorError) -> StepResult:
        result = self.result
        result.error = error.message
        result.error_code = error.code
        result.end_time = datetime.now()
        result.metadata.update(
            attempts=result.retry_count + (0 if isinstance(error, MissingInputError) else 1),
            retry_delays=list(self.retry_delays),
            retryable=error.retryable,
        )
        result.transition(StepStatus.FAILED)
        result.log(f"Step failed permanently after {result.retry_count + 1} attempt(s): {error.message}")
        logger.error(f"Step {self.step.id} failed: {error.message}")
        return result
