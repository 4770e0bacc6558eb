"""
Error kinds raised by the execution engine.

Step-local errors carry a ``code`` and a ``retryable`` flag so the retry
policy can decide whether another attempt is worth making without knowing
which node type produced the error.
"""

import traceback
from typing import Any

from agentgraph.schemas.run_state import ErrorInfo


class AgentGraphError(Exception):
    """Base class for all engine errors."""


class StepError(AgentGraphError):
    """An error produced while executing a single step."""

    code: str = "STEP_ERROR"
    retryable: bool = True

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retryable: bool | None = None,
        stack: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.stack = stack
        self.details = details or {}

    def to_info(self) -> ErrorInfo:
        """Convert to the serialisable form stored in traces and the error ledger."""
        return ErrorInfo(message=self.message, code=self.code, stack=self.stack)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "StepError":
        """Wrap an arbitrary exception, keeping its traceback as the stack."""
        if isinstance(exc, StepError):
            return exc
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return ExecutionError(f"{type(exc).__name__}: {exc}", stack=stack)


class ValidationError(StepError):
    """Step params failed validation. Never retried."""

    code = "VALIDATION_ERROR"
    retryable = False


class ConditionError(ValidationError):
    """A strict condition referenced a missing field or an unknown operator."""

    code = "CONDITION_ERROR"


class AuthorizationError(StepError):
    """A connector rejected the caller's credentials. Never retried."""

    code = "AUTHORIZATION_ERROR"
    retryable = False


class ExecutionError(StepError):
    """A connector or handler failed while running. Retried."""

    code = "EXECUTION_ERROR"


class StepTimeoutError(StepError):
    """A step attempt exceeded its hard timeout. Retried within budget."""

    code = "TIMEOUT"

    def __init__(self, step_id: str, timeout: float):
        super().__init__(f"Step '{step_id}' timed out after {timeout:g}s")
        self.step_id = step_id
        self.timeout = timeout


class StepLimitExceeded(StepError):
    """The run dispatched more steps than the graph allows."""

    code = "STEP_LIMIT_EXCEEDED"
    retryable = False


class GraphDefinitionError(AgentGraphError):
    """Structural problems found while compiling a graph definition."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Invalid graph definition: " + "; ".join(self.errors))


class RunStateError(AgentGraphError):
    """An attempt was made to mutate a run that already reached a terminal status."""


class RunNotFoundError(AgentGraphError, KeyError):
    """No run with the given id exists in the store."""

    def __init__(self, run_id: str):
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id

    def __str__(self) -> str:
        return self.args[0]
