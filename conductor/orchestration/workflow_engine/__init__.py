"""
Pipeline workflow engine.

This package contains the engine components:
- steps: Definition models and runtime records
- expressions: Condition evaluation
- references: Pre-parsed ``${...}`` references
- resolver: Dependency graph and waves
- events: Lifecycle events and the event bus
- executors: Step runtime with retry/backoff
- core: Pipeline orchestration
"""

from __future__ import annotations

# Export main public API
from .steps import (
    ErrorPolicy,
    ExecutionContext,
    ExecutionMode,
    PipelineDefinition,
    RetryPolicy,
    StepDefinition,
    StepResult,
    StepStatus,
    WorkflowStatus,
)

from .core import EngineConfig, ValidationReport, WorkflowEngine, WorkflowProgress
from .events import EventBus, EventType, WorkflowEvent
from .executors import StepRuntime
from .expressions import create_condition, evaluate_expression, validate_expression
from .references import StepOutputRef, Template, VariableRef, parse_value, resolve, resolve_variables
from .resolver import DependencyResolver, ExecutionPlan, resolve_execution_plan

__all__ = [
    # Models
    "ErrorPolicy",
    "ExecutionContext",
    "ExecutionMode",
    "PipelineDefinition",
    "RetryPolicy",
    "StepDefinition",
    "StepResult",
    "StepStatus",
    "WorkflowStatus",

    # Engine
    "EngineConfig",
    "ValidationReport",
    "WorkflowEngine",
    "WorkflowProgress",
    "StepRuntime",

    # Events
    "EventBus",
    "EventType",
    "WorkflowEvent",

    # Expressions and references
    "create_condition",
    "evaluate_expression",
    "validate_expression",
    "StepOutputRef",
    "Template",
    "VariableRef",
    "parse_value",
    "resolve",
    "resolve_variables",

    # Scheduling
    "DependencyResolver",
    "ExecutionPlan",
    "resolve_execution_plan",
]
