"""Schema definitions for runs, steps and errors."""

from agentgraph.schemas.run_state import (
    TERMINAL_STATUSES,
    ErrorInfo,
    ErrorRecord,
    FailureInfo,
    RunContext,
    RunMetrics,
    RunState,
    RunStateDelta,
    RunStatus,
    StepDuration,
    StepStatus,
    StepTraceEntry,
)

__all__ = [
    "TERMINAL_STATUSES",
    "ErrorInfo",
    "ErrorRecord",
    "FailureInfo",
    "RunContext",
    "RunMetrics",
    "RunState",
    "RunStateDelta",
    "RunStatus",
    "StepDuration",
    "StepStatus",
    "StepTraceEntry",
]
