"""Error taxonomy for the orchestration core.

Every failure inside a turn maps onto one of these classes.  Errors raised
while executing a function call are converted into a ``FunctionResult``
error payload via :meth:`OrchestrationError.to_error` so the model can see
what happened and continue; the remaining ones end the turn with a safe
fallback reply.  Nothing here is allowed to terminate a session.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from dental_voice.models import ValidationVerdict


class OrchestrationError(Exception):
    """Base class for every error the orchestrator knows how to handle."""

    code = "internal_error"
    retryable = False

    def to_error(self) -> dict[str, Any]:
        """Return the payload stored in ``FunctionResult.error``."""
        return {"code": self.code, "message": str(self), "retryable": self.retryable}


class TransientUpstreamError(OrchestrationError):
    """Network blip, timeout or 5xx from the model, validator or practice API."""

    code = "transient_upstream_error"
    retryable = True


class InvalidArguments(OrchestrationError):
    """The model sent arguments that do not match the operation's schema."""

    code = "invalid_arguments"

    def __init__(self, operation: str, details: list[dict[str, str]]):
        self.operation = operation
        self.details = details
        fields = ", ".join(d["field"] for d in details) or "arguments"
        super().__init__(f"Invalid arguments for {operation}: {fields}")

    def to_error(self) -> dict[str, Any]:
        error = super().to_error()
        error["details"] = self.details
        error["hint"] = (
            "Ask the caller for the missing or malformed information, "
            f"then call {self.operation} again with corrected arguments."
        )
        return error


class UnknownOperation(OrchestrationError):
    """The model asked for an operation that is not in the catalogue."""

    code = "unknown_operation"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown operation: {name}")

    def to_error(self) -> dict[str, Any]:
        error = super().to_error()
        error["hint"] = "Apologise to the caller; this request cannot be handled automatically."
        return error


class OperationFailed(OrchestrationError):
    """The practice API processed the call and reported ``success: false``."""

    code = "operation_failed"

    def __init__(self, operation: str, error_code: str, message: str):
        self.operation = operation
        self.error_code = error_code
        super().__init__(message)

    def to_error(self) -> dict[str, Any]:
        error = super().to_error()
        error["errorCode"] = self.error_code
        return error


class ValidationBlocked(OrchestrationError):
    """The validation layer vetoed a mutating call."""

    code = "validation_blocked"

    def __init__(self, verdict: ValidationVerdict):
        self.verdict = verdict
        super().__init__(verdict.reasoning or "The request was blocked by validation.")

    def to_error(self) -> dict[str, Any]:
        error = super().to_error()
        error["severity"] = self.verdict.severity
        error["hint"] = (
            "Do not repeat this call unchanged. Explain briefly and offer the "
            "caller an alternative (for example a different time), or ask for "
            "the missing details."
        )
        return error


class IterationCapExceeded(OrchestrationError):
    """The model kept requesting function calls past the round-trip cap."""

    code = "iteration_cap_exceeded"


class SessionBusyError(OrchestrationError):
    """A turn for this session is already running."""

    code = "session_busy"


class SessionEvictedError(OrchestrationError):
    """The session was evicted before the turn could run."""

    code = "session_evicted"


class WorkflowSynthesisError(OrchestrationError):
    """No generated workflow candidate was judged correct."""

    code = "workflow_synthesis_failed"


class PairingViolation(ValueError):
    """A write would break the function-call / function-result pairing."""
