"""Pipeline orchestration: engine, definition loading and execution records."""

from .parser import create_sample_pipeline, load_pipeline, parse_pipeline
from .state_manager import InMemoryStateManager, PersistentStateManager, WorkflowStateManager
from .workflow_engine import (
    EngineConfig,
    EventBus,
    EventType,
    ExecutionContext,
    ExecutionMode,
    PipelineDefinition,
    StepDefinition,
    StepResult,
    StepStatus,
    WorkflowEngine,
    WorkflowEvent,
    WorkflowStatus,
)

__all__ = [
    # Core engine classes
    "EngineConfig",
    "ExecutionContext",
    "ExecutionMode",
    "PipelineDefinition",
    "StepDefinition",
    "StepResult",
    "StepStatus",
    "WorkflowEngine",
    "WorkflowStatus",
    # Events
    "EventBus",
    "EventType",
    "WorkflowEvent",
    # Definition loading
    "create_sample_pipeline",
    "load_pipeline",
    "parse_pipeline",
    # State management
    "InMemoryStateManager",
    "PersistentStateManager",
    "WorkflowStateManager",
]
