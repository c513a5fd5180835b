"""Global pytest fixtures and configuration.

This module provides shared fixtures for all tests including:
- A provider registry with the built-in demo providers
- Scriptable providers for failure and retry scenarios
- A recording sleep and a manual clock so backoff never waits for real
- Pipeline document factories
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import pytest

from conductor.orchestration.workflow_engine.core import EngineConfig, WorkflowEngine
from conductor.orchestration.workflow_engine.events import EventBus
from conductor.orchestration.workflow_engine.steps import ExecutionMode, PipelineDefinition
from conductor.providers import BaseProvider, ProviderRegistry, builtin_providers


class RecordingSleep:
    """Async sleep replacement that records requested delays and returns at once."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyProvider(BaseProvider):
    """Fails the first ``failures`` calls, then echoes its inputs."""

    name = "flaky"
    kind = "test"

    def __init__(self, failures: int = 0, name: str = "flaky"):
        super().__init__(name=name)
        self.failures = failures
        self.calls = 0

    async def execute(self, config: Dict[str, Any], inputs: Dict[str, Any]) -> Dict[str, Any]:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"transient failure {self.calls}")
        return {**inputs, "calls": self.calls}


class RecordingProvider(BaseProvider):
    """Echo provider that remembers every call."""

    name = "recorder"
    kind = "test"

    def __init__(self, name: str = "recorder", outputs: Optional[Dict[str, Any]] = None):
        super().__init__(name=name)
        self.calls: List[Dict[str, Any]] = []
        self._outputs = outputs or {}

    async def execute(self, config: Dict[str, Any], inputs: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append({"config": config, "inputs": inputs})
        return {**inputs, **self._outputs}


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def registry() -> ProviderRegistry:
    """Registry with the echo and sleep providers."""
    registry = ProviderRegistry()
    for provider in builtin_providers():
        registry.register(provider)
    return registry


@pytest.fixture
def recorder(registry: ProviderRegistry) -> RecordingProvider:
    provider = RecordingProvider()
    registry.register(provider)
    return provider


@pytest.fixture
def make_engine(registry: ProviderRegistry, recording_sleep: RecordingSleep) -> Callable[..., WorkflowEngine]:
    """Factory for engines sharing the test registry and recording sleep."""

    def factory(
        mode: ExecutionMode = ExecutionMode.PARALLEL,
        max_concurrency: int = 4,
        event_bus: Optional[EventBus] = None,
    ) -> WorkflowEngine:
        return WorkflowEngine(
            registry,
            config=EngineConfig(execution_mode=mode, max_concurrency=max_concurrency),
            event_bus=event_bus or EventBus(history_size=200),
            sleep=recording_sleep,
        )

    return factory


@pytest.fixture
def engine(make_engine) -> WorkflowEngine:
    return make_engine()


def step(step_id: str, provider: str = "echo", **fields: Any) -> Dict[str, Any]:
    """Step document with sensible defaults."""
    return {"id": step_id, "provider": provider, **fields}


def pipeline_doc(*steps: Dict[str, Any], pipeline_id: str = "p1", **fields: Any) -> Dict[str, Any]:
    return {"id": pipeline_id, "name": f"Pipeline {pipeline_id}", "steps": list(steps), **fields}


def make_pipeline(*steps: Dict[str, Any], pipeline_id: str = "p1", **fields: Any) -> PipelineDefinition:
    return PipelineDefinition.model_validate(pipeline_doc(*steps, pipeline_id=pipeline_id, **fields))
