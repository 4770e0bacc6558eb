"""
Run State Schema - The cumulative state of one graph execution.

A RunState is owned by a single walker invocation. It is never edited in
place: every step produces a RunStateDelta which the reducer merges into a
new RunState. ``trace`` and ``errors`` only ever grow.
"""

from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(UTC)


class RunStatus(StrEnum):
    """Status of a run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


class StepStatus(StrEnum):
    """Status of a single step attempt."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"  # Attempt failed, another one follows


class ErrorInfo(BaseModel):
    """Serialisable error summary."""

    message: str
    code: str | None = None
    stack: str | None = None

    model_config = {"extra": "allow"}


class StepTraceEntry(BaseModel):
    """
    One attempt at executing one step.

    Created with status ``started`` when the step is dispatched and finished
    exactly once via :meth:`finish`.
    """

    step_id: str
    step_name: str = ""
    node_type: str = ""
    attempt: int = 1
    dispatch: int = 0  # Per-run dispatch sequence number
    parent_step_id: str | None = None  # Set for loop body steps
    iteration: int | None = None

    start_time: datetime = Field(default_factory=utc_now)
    end_time: datetime | None = None
    status: StepStatus = StepStatus.STARTED
    duration_ms: int | None = None

    input: Any = None
    output: Any = None
    error: ErrorInfo | None = None

    model_config = {"extra": "allow"}

    @property
    def is_finished(self) -> bool:
        return self.end_time is not None

    @property
    def record_key(self) -> str:
        """Idempotency key used by run stores: one record per attempt of one dispatch."""
        return f"{self.step_id}:{self.dispatch}:{self.attempt}"

    def finish(
        self,
        status: StepStatus,
        *,
        output: Any = None,
        error: ErrorInfo | None = None,
        end_time: datetime | None = None,
    ) -> "StepTraceEntry":
        """Move the entry to a terminal status. May only be called once."""
        if self.is_finished:
            raise ValueError(f"Trace entry {self.record_key} is already finished")
        if status == StepStatus.STARTED:
            raise ValueError("finish() requires a terminal status")
        self.end_time = end_time or utc_now()
        self.status = status
        self.duration_ms = max(0, (self.end_time - self.start_time) // timedelta(milliseconds=1))
        if output is not None:
            self.output = output
        if error is not None:
            self.error = error
        return self


class ErrorRecord(BaseModel):
    """An entry in the run's error ledger."""

    id: str
    step_id: str
    step_name: str = ""
    attempt: int = 1
    timestamp: datetime = Field(default_factory=utc_now)
    error: ErrorInfo
    context: dict[str, Any] = Field(default_factory=dict)
    resolved: bool = False

    model_config = {"extra": "allow"}


class RunContext(BaseModel):
    """Who the run belongs to. Extra keys are kept."""

    workspace_id: str | None = None
    user_id: str | None = None
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = {"extra": "allow"}


class StepDuration(BaseModel):
    step_id: str
    step_name: str = ""
    status: StepStatus
    duration_ms: int


class RunMetrics(BaseModel):
    """Rollup metrics. Always derived from the trace, never maintained incrementally."""

    total_steps: int = 0
    completed_steps: int = 0
    failed_steps: int = 0
    success_rate: float = 0.0
    average_step_duration: float = 0.0
    total_duration: int = 0
    steps_by_duration: list[StepDuration] = Field(default_factory=list)

    @classmethod
    def from_trace(cls, trace: list[StepTraceEntry]) -> "RunMetrics":
        """
        Recompute metrics from trace entries.

        ``completed_steps`` counts every step that reached ``completed`` or
        ``failed``; ``failed_steps`` counts the failed ones. Intermediate
        ``retrying`` attempts contribute to totals and durations only.
        """
        finished = [e for e in trace if e.status in (StepStatus.COMPLETED, StepStatus.FAILED)]
        failed = [e for e in finished if e.status == StepStatus.FAILED]
        timed = [e for e in trace if e.duration_ms is not None]

        completed_count = len(finished)
        success_rate = (
            (completed_count - len(failed)) / completed_count * 100 if completed_count else 0.0
        )
        total_duration = sum(e.duration_ms or 0 for e in timed)

        return cls(
            total_steps=len(trace),
            completed_steps=completed_count,
            failed_steps=len(failed),
            success_rate=success_rate,
            average_step_duration=total_duration / len(timed) if timed else 0.0,
            total_duration=total_duration,
            steps_by_duration=[
                StepDuration(
                    step_id=e.step_id,
                    step_name=e.step_name,
                    status=e.status,
                    duration_ms=e.duration_ms or 0,
                )
                for e in sorted(timed, key=lambda e: e.duration_ms or 0, reverse=True)
            ],
        )


class FailureInfo(BaseModel):
    """Why a run failed."""

    step_id: str
    message: str
    attempts: int = 1
    code: str | None = None


class RunState(BaseModel):
    """The cumulative state of a run."""

    run_id: str
    graph_id: str
    status: RunStatus = RunStatus.PENDING

    context: RunContext = Field(default_factory=RunContext)
    messages: list[dict[str, Any]] = Field(default_factory=list)
    agent_state: dict[str, Any] = Field(default_factory=dict)

    metrics: RunMetrics = Field(default_factory=RunMetrics)
    errors: list[ErrorRecord] = Field(default_factory=list)
    trace: list[StepTraceEntry] = Field(default_factory=list)

    trigger_input: dict[str, Any] = Field(default_factory=dict)
    pending: list[str] = Field(default_factory=list)  # Top-level dispatch cursor
    executed: list[str] = Field(default_factory=list)  # Top-level nodes that already ran
    steps_dispatched: int = 0
    failure: FailureInfo | None = None
    output: Any = None

    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    model_config = {"extra": "allow"}

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class RunStateDelta(BaseModel):
    """
    A partial update to a RunState.

    Only fields that were explicitly set take part in a merge; an empty
    delta leaves the state unchanged.
    """

    status: RunStatus | None = None
    context: dict[str, Any] | None = None
    messages: list[dict[str, Any]] | None = None
    agent_state: dict[str, Any] | None = None
    errors: list[ErrorRecord] | None = None
    trace: list[StepTraceEntry] | None = None
    pending: list[str] | None = None
    executed: list[str] | None = None
    steps_dispatched: int | None = None
    failure: FailureInfo | None = None
    output: Any = None
    completed_at: datetime | None = None

    def is_empty(self) -> bool:
        return not self.model_fields_set
