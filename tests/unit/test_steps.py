"""Tests for pipeline definition models and runtime records."""

import pydantic
import pytest

from conductor.orchestration.workflow_engine.steps import (
    ErrorPolicy,
    ExecutionContext,
    PipelineDefinition,
    RetryPolicy,
    StepDefinition,
    StepResult,
    StepStatus,
    WorkflowStatus,
)
from tests.conftest import make_pipeline, step


class TestStepDefinition:
    """Tests for StepDefinition validation."""

    def test_camel_case_aliases(self):
        definition = StepDefinition.model_validate(
            {
                "id": "b",
                "provider": "echo",
                "dependsOn": ["a"],
                "retry": {"maxAttempts": 3, "delay": 1, "backoff": "exponential"},
            }
        )
        assert definition.depends_on == ["a"]
        assert definition.retry.max_attempts == 3
        assert definition.retry.backoff == "exponential"

    def test_snake_case_names_accepted(self):
        definition = StepDefinition(id="b", provider="echo", depends_on=["a"])
        assert definition.depends_on == ["a"]

    def test_name_defaults_to_id(self):
        assert StepDefinition(id="fetch", provider="echo").name == "fetch"

    def test_duplicate_dependencies_collapsed(self):
        definition = StepDefinition(id="c", provider="echo", depends_on=["a", "b", "a"])
        assert definition.depends_on == ["a", "b"]

    def test_definitions_are_immutable(self):
        definition = StepDefinition(id="a", provider="echo")
        with pytest.raises(pydantic.ValidationError):
            definition.provider = "other"

    @pytest.mark.parametrize(
        "doc",
        [
            {"id": "", "provider": "echo"},
            {"id": "a", "provider": ""},
            {"id": "a", "provider": "echo", "timeout": 0},
            {"id": "a", "provider": "echo", "retry": {"maxAttempts": 0}},
            {"id": "a", "provider": "echo", "retry": {"delay": -1}},
            {"id": "a", "provider": "echo", "retry": {"backoff": "random"}},
        ],
    )
    def test_invalid_step_documents(self, doc):
        with pytest.raises(pydantic.ValidationError):
            StepDefinition.model_validate(doc)


class TestPipelineDefinition:
    """Tests for PipelineDefinition validation."""

    def test_defaults(self):
        pipeline = make_pipeline(step("a"))
        assert pipeline.on_error == ErrorPolicy.STOP
        assert pipeline.max_retries == 0
        assert pipeline.version == "1.0.0"
        assert pipeline.timeout is None

    def test_on_error_alias(self):
        pipeline = make_pipeline(step("a"), onError="continue")
        assert pipeline.on_error == ErrorPolicy.CONTINUE

    def test_empty_steps_rejected(self):
        with pytest.raises(pydantic.ValidationError, match="at least one step"):
            PipelineDefinition(id="p", name="P", steps=[])

    def test_duplicate_step_ids_rejected(self):
        with pytest.raises(pydantic.ValidationError, match="Duplicate step ID: a"):
            make_pipeline(step("a"), step("a"))

    def test_get_step(self):
        pipeline = make_pipeline(step("a"), step("b"))
        assert pipeline.get_step("b").id == "b"
        assert pipeline.get_step("missing") is None
        assert pipeline.step_ids == ["a", "b"]

    def test_retry_policy_falls_back_to_max_retries(self):
        pipeline = make_pipeline(step("a"), step("b", retry={"maxAttempts": 5}), maxRetries=2)
        assert pipeline.retry_policy_for(pipeline.get_step("a")).max_attempts == 3
        assert pipeline.retry_policy_for(pipeline.get_step("b")).max_attempts == 5

    def test_retry_policy_default_is_single_attempt(self):
        assert RetryPolicy().max_attempts == 1
        assert RetryPolicy().backoff == "linear"


class TestStepResult:
    """Tests for StepResult state transitions."""

    def test_happy_path(self):
        result = StepResult(step_id="a")
        result.transition(StepStatus.RUNNING)
        result.transition(StepStatus.RETRYING)
        result.transition(StepStatus.RUNNING)
        result.transition(StepStatus.COMPLETED)
        assert result.is_terminal()

    @pytest.mark.parametrize("terminal", [StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED])
    def test_terminal_states_are_final(self, terminal):
        result = StepResult(step_id="a", status=terminal)
        with pytest.raises(ValueError, match="Illegal step transition"):
            result.transition(StepStatus.RUNNING)

    def test_pending_cannot_complete_without_running(self):
        with pytest.raises(ValueError):
            StepResult(step_id="a").transition(StepStatus.COMPLETED)

    def test_to_dict_serializes_status(self):
        result = StepResult(step_id="a")
        result.log("hello")
        data = result.to_dict()
        assert data["status"] == "pending"
        assert data["retry_count"] == 0
        assert data["logs"][0].endswith("hello")
        assert data["start_time"] is None


class TestExecutionContext:
    """Tests for ExecutionContext helpers."""

    def test_step_outputs_only_include_completed_steps(self):
        context = ExecutionContext(execution_id="e1", pipeline_id="p1")
        context.step_results["a"] = StepResult(step_id="a", status=StepStatus.COMPLETED, outputs={"x": 1})
        context.step_results["b"] = StepResult(step_id="b", status=StepStatus.FAILED, outputs={"y": 2})
        context.step_results["c"] = StepResult(step_id="c", status=StepStatus.SKIPPED)

        assert context.step_outputs() == {"a": {"x": 1}}
        assert context.completed_steps == ["a"]
        assert context.failed_steps == ["b"]
        assert context.skipped_steps == ["c"]

    def test_terminal_statuses(self):
        context = ExecutionContext(execution_id="e1", pipeline_id="p1")
        assert not context.is_terminal()
        for status in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED):
            context.status = status
            assert context.is_terminal()

    def test_duration_is_none_before_start(self):
        context = ExecutionContext(execution_id="e1", pipeline_id="p1")
        assert context.get_duration() is None
        assert context.to_dict()["duration"] is None
