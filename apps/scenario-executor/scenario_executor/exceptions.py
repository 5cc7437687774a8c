"""Scenario execution exceptions.

Errors raised before a run starts (missing servers, invalid parameters) abort
the run. Errors raised while a step executes are captured on that step's
result as ``{code, message, details}`` and only abort the run under the
stop-on-error policy.
"""

from __future__ import annotations

from typing import Any


class ExecutionError(Exception):
    """Base exception for scenario execution errors.

    Attributes:
        message: Human-readable error message.
        code: Machine-readable error code.
        details: Additional error context as dictionary.
    """

    code = "EXECUTION_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class MissingServerError(ExecutionError):
    """Raised when request steps reference servers absent from the server map.

    Attributes:
        missing: Every missing server id, in first-reference order.
        references: Step ids per missing server id.
    """

    code = "MISSING_SERVER"

    def __init__(self, references: dict[str, list[str]]) -> None:
        self.missing = list(references)
        self.references = references
        super().__init__(
            f"Missing server definition(s): {', '.join(self.missing)}",
            details={"missing_servers": self.missing, "references": references},
        )


class ParameterValidationError(ExecutionError):
    code = "INVALID_PARAMETERS"

    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        super().__init__(
            "Scenario parameters are invalid: " + "; ".join(problems),
            details={"problems": problems},
        )


class VariableResolutionError(ExecutionError):
    """Raised when a ``${...}`` reference cannot be resolved."""

    code = "VARIABLE_RESOLUTION_FAILED"

    def __init__(self, reference: str, reason: str) -> None:
        super().__init__(
            f"Cannot resolve '${{{reference}}}': {reason}",
            details={"reference": reference, "reason": reason},
        )
        self.reference = reference


class ConditionEvaluationError(ExecutionError):
    code = "CONDITION_EVALUATION_FAILED"


class LoopConfigurationError(ExecutionError):
    """Raised when a loop's count or source does not yield a usable iteration plan."""

    code = "INVALID_LOOP"

    def __init__(self, loop_step_id: str, reason: str) -> None:
        super().__init__(
            f"Loop '{loop_step_id}' is misconfigured: {reason}",
            details={"step_id": loop_step_id, "reason": reason},
        )


class LoopLimitExceededError(ExecutionError):
    code = "LOOP_LIMIT_EXCEEDED"

    def __init__(self, loop_step_id: str, limit: int) -> None:
        super().__init__(
            f"Loop '{loop_step_id}' did not finish within {limit} iterations",
            details={"step_id": loop_step_id, "max_iterations": limit},
        )


class HttpRequestError(ExecutionError):
    """Raised when a request cannot be sent or no response arrives."""

    code = "HTTP_REQUEST_FAILED"

    def __init__(self, method: str, url: str, reason: str) -> None:
        super().__init__(
            f"HTTP request failed for {method} {url}: {reason}",
            details={"method": method, "url": url, "reason": reason},
        )


class StepExecutionError(ExecutionError):
    """Generic step failure, e.g. an HTTP error status."""

    code = "STEP_FAILED"

    def __init__(self, message: str, code: str = "STEP_FAILED", details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details)
        self.code = code


class ExecutionCancelledError(ExecutionError):
    code = "EXECUTION_CANCELLED"

    def __init__(self, step_id: str | None = None) -> None:
        where = f" at step '{step_id}'" if step_id else ""
        super().__init__(f"Execution stopped{where}", details={"step_id": step_id})


class StepLimitExceededError(ExecutionError):
    code = "STEP_LIMIT_EXCEEDED"

    def __init__(self, limit: int) -> None:
        super().__init__(
            f"Run exceeded {limit} step visits; the scenario topology does not terminate",
            details={"max_step_visits": limit},
        )
