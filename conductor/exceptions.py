"""Error taxonomy for the orchestration core.

Every error carries a machine-readable ``code`` and a ``retryable`` flag so it
can be surfaced at job-status and event boundaries as a structured
``{message, code, retryable}`` triple instead of a raw traceback.
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, Optional


class ConductorError(Exception):
    """Base class for all orchestration errors."""

    code = "CONDUCTOR_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        retryable: Optional[bool] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Return the structured error triple."""
        return {"message": self.message, "code": self.code, "retryable": self.retryable}


class ValidationError(ConductorError):
    """Bad pipeline or step definition. Never retried."""

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        pipeline_id: Optional[str] = None,
        step_id: Optional[str] = None,
        errors: Optional[Iterable[str]] = None,
    ) -> None:
        super().__init__(message, context={"pipeline_id": pipeline_id, "step_id": step_id})
        self.pipeline_id = pipeline_id
        self.step_id = step_id
        self.errors = list(errors) if errors else [message]


class ReferenceResolutionError(ValidationError):
    """A ``${...}`` reference could not be resolved."""


class MissingInputError(ConductorError):
    """Step inputs are incomplete; the provider is never called."""

    code = "MISSING_INPUT"

    def __init__(self, step_id: str, missing: Iterable[str]) -> None:
        self.step_id = step_id
        self.missing = sorted(missing)
        super().__init__(
            f"Step {step_id} is missing required inputs: {', '.join(self.missing)}",
            context={"step_id": step_id, "missing": self.missing},
        )


class ProviderError(ConductorError):
    """Provider registry or provider configuration problem."""

    code = "PROVIDER_ERROR"

    def __init__(self, message: str, provider: str, code: Optional[str] = None) -> None:
        super().__init__(message, code=code, context={"provider": provider})
        self.provider = provider


class ProviderNotFoundError(ProviderError):
    code = "PROVIDER_NOT_FOUND"


class ProviderDisabledError(ProviderError):
    code = "PROVIDER_DISABLED"


class RateLimitExceededError(ProviderError):
    code = "RATE_LIMITED"
    retryable = True


class ProviderExecutionError(ConductorError):
    """Raised (or wrapped) when a provider call fails."""

    code = "PROVIDER_ERROR"
    retryable = True

    def __init__(self, message: str, provider: str, step_id: Optional[str] = None) -> None:
        super().__init__(message, context={"provider": provider, "step_id": step_id})
        self.provider = provider
        self.step_id = step_id


class ProviderTimeoutError(ProviderError):
    """Registry-level timeout. The late provider result is discarded."""

    code = "TIMEOUT"
    retryable = True


class StepTimeoutError(ConductorError):
    """Step-level timeout; handled like a provider failure for retries."""

    code = "TIMEOUT"
    retryable = True

    def __init__(self, step_id: str, timeout: float) -> None:
        super().__init__(
            f"Step {step_id} timed out after {timeout}s",
            context={"step_id": step_id, "timeout": timeout},
        )
        self.step_id = step_id
        self.timeout = timeout


class WorkflowTimeoutError(ConductorError):
    code = "TIMEOUT"


class WorkflowCancelledError(ConductorError):
    code = "CANCELLED"


class QueueError(ConductorError):
    """Queue backend unreachable or misbehaving."""

    code = "QUEUE_ERROR"
    retryable = True


class JobNotFoundError(QueueError):
    code = "JOB_NOT_FOUND"
    retryable = False


def error_payload(error: BaseException, default_code: str = "INTERNAL_ERROR") -> Dict[str, Any]:
    """Convert any exception into the ``{message, code, retryable}`` triple.

    Args:
        error: Exception to convert
        default_code: Code used for exceptions outside the taxonomy

    Returns:
        Structured error dictionary
    """
    if isinstance(error, ConductorError):
        return error.to_dict()
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return {"message": str(error) or "Operation timed out", "code": "TIMEOUT", "retryable": True}
    return {"message": str(error) or error.__class__.__name__, "code": default_code, "retryable": True}
