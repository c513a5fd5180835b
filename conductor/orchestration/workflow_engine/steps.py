"""
Pipeline step models and data structures.

This module defines the declarative pipeline/step definitions (validated
pydantic models) and the runtime records the engine fills in while a pipeline
runs: the execution context and one result per step.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class WorkflowStatus(Enum):
    """Pipeline run status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(Enum):
    """Individual step execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRYING = "retrying"


class ErrorPolicy(str, Enum):
    """What the engine does with later waves after a step fails."""

    STOP = "stop"
    CONTINUE = "continue"
    RETRY = "retry"


class ExecutionMode(Enum):
    """Intra-wave execution modes."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


TERMINAL_WORKFLOW_STATUSES = frozenset(
    {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}
)
TERMINAL_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED})

# Allowed StepResult transitions; terminal states have no way out
_STEP_TRANSITIONS = {
    StepStatus.PENDING: {StepStatus.RUNNING, StepStatus.SKIPPED, StepStatus.FAILED},
    StepStatus.RUNNING: {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.RETRYING},
    StepStatus.RETRYING: {StepStatus.RUNNING, StepStatus.FAILED},
    StepStatus.COMPLETED: set(),
    StepStatus.FAILED: set(),
    StepStatus.SKIPPED: set(),
}


class RetryPolicy(BaseModel):
    """Per-step retry policy.

    ``max_attempts`` counts every attempt including the first one, and
    ``delay`` is in seconds.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    max_attempts: int = Field(1, ge=1, alias="maxAttempts")
    delay: float = Field(0.0, ge=0)
    backoff: Literal["linear", "exponential"] = "linear"


class StepDefinition(BaseModel):
    """One step of a pipeline definition."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    name: str = ""
    type: str = "task"
    provider: str = Field(min_length=1)
    config: Dict[str, Any] = Field(default_factory=dict)
    inputs: Dict[str, Any] = Field(default_factory=dict)
    outputs: List[str] = Field(default_factory=list)
    depends_on: List[str] = Field(default_factory=list, alias="dependsOn")
    condition: Optional[str] = None
    retry: Optional[RetryPolicy] = None
    timeout: Optional[float] = Field(None, gt=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def default_name(cls, data: Any) -> Any:
        """Use the step id as its display name when none is given."""
        if isinstance(data, dict) and not data.get("name") and data.get("id"):
            data = {**data, "name": data["id"]}
        return data

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: List[str]) -> List[str]:
        """Drop duplicate dependency ids while keeping declaration order."""
        return list(dict.fromkeys(v))


class PipelineDefinition(BaseModel):
    """Pipeline definition with validation."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    version: str = "1.0.0"
    description: str = ""
    steps: List[StepDefinition]
    on_error: ErrorPolicy = Field(ErrorPolicy.STOP, alias="onError")
    max_retries: int = Field(0, ge=0, alias="maxRetries")
    timeout: Optional[float] = Field(None, gt=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("steps")
    @classmethod
    def validate_steps(cls, v: List[StepDefinition]) -> List[StepDefinition]:
        """Validate step definitions."""
        if not v:
            raise ValueError("Pipeline must have at least one step")

        step_ids = set()
        for step in v:
            if step.id in step_ids:
                raise ValueError(f"Duplicate step ID: {step.id}")
            step_ids.add(step.id)

        return v

    @property
    def step_ids(self) -> List[str]:
        return [step.id for step in self.steps]

    def get_step(self, step_id: str) -> Optional[StepDefinition]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def retry_policy_for(self, step: StepDefinition) -> RetryPolicy:
        """Step retry policy, falling back to the pipeline-wide ``max_retries``."""
        if step.retry is not None:
            return step.retry
        return RetryPolicy(max_attempts=self.max_retries + 1)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class StepResult:
    """Result from executing a pipeline step."""

    step_id: str
    status: StepStatus = StepStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    inputs: Dict[str, Any] = field(default_factory=dict)
    outputs: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retry_count: int = 0
    logs: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def transition(self, new_status: StepStatus) -> None:
        """Move to ``new_status``.

        Raises:
            ValueError: If the transition would leave a terminal state or skip
                the running state
        """
        if new_status not in _STEP_TRANSITIONS[self.status]:
            raise ValueError(
                f"Illegal step transition for {self.step_id}: "
                f"{self.status.value} -> {new_status.value}"
            )
        self.status = new_status

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES

    def log(self, message: str) -> None:
        """Append a timestamped log line."""
        self.logs.append(f"[{datetime.now().isoformat()}] {message}")

    @property
    def duration(self) -> Optional[float]:
        """Step execution duration in seconds."""
        if not self.start_time:
            return None
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "inputs": self.inputs,
            "outputs": self.outputs,
            "error": self.error,
            "error_code": self.error_code,
            "retry_count": self.retry_count,
            "logs": list(self.logs),
            "metadata": self.metadata,
        }


@dataclass
class ExecutionContext:
    """State of one pipeline run, owned by the engine until it is terminal."""

    execution_id: str
    pipeline_id: str
    project_id: str = "default"
    user_id: str = "system"
    variables: Dict[str, Any] = field(default_factory=dict)
    status: WorkflowStatus = WorkflowStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    current_step: Optional[str] = None
    step_results: Dict[str, StepResult] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None

    def is_terminal(self) -> bool:
        """Check if the run is in a terminal state."""
        return self.status in TERMINAL_WORKFLOW_STATUSES

    def get_duration(self) -> Optional[float]:
        """Get run duration in seconds."""
        if not self.start_time:
            return None
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    def steps_with_status(self, status: StepStatus) -> List[str]:
        return [sid for sid, result in self.step_results.items() if result.status == status]

    @property
    def completed_steps(self) -> List[str]:
        return self.steps_with_status(StepStatus.COMPLETED)

    @property
    def failed_steps(self) -> List[str]:
        return self.steps_with_status(StepStatus.FAILED)

    @property
    def skipped_steps(self) -> List[str]:
        return self.steps_with_status(StepStatus.SKIPPED)

    def step_outputs(self) -> Dict[str, Dict[str, Any]]:
        """Outputs of completed steps keyed by step id."""
        return {
            sid: dict(result.outputs or {})
            for sid, result in self.step_results.items()
            if result.status == StepStatus.COMPLETED
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "pipeline_id": self.pipeline_id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "variables": self.variables,
            "status": self.status.value,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration": self.get_duration(),
            "current_step": self.current_step,
            "step_results": {sid: r.to_dict() for sid, r in self.step_results.items()},
            "metadata": self.metadata,
            "error": self.error,
        }
