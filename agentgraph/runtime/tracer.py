"""
Execution Tracer - Read models over a RunState.

Summaries and step details are computed on demand from the run's trace and
error ledger; nothing here mutates a RunState. The tracer can also follow a
live EventBus to report which step an in-flight run is currently on.
"""

import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from agentgraph.runtime.event_bus import EventBus, EventType, RunEvent
from agentgraph.schemas.run_state import (
    ErrorInfo,
    FailureInfo,
    RunMetrics,
    RunState,
    RunStatus,
    StepDuration,
    StepStatus,
    StepTraceEntry,
)

logger = logging.getLogger(__name__)

RECENT_STEPS_LIMIT = 10
LATEST_ERRORS_LIMIT = 5
SLOWEST_STEPS_LIMIT = 5
DEFAULT_SLOW_STEP_THRESHOLD_MS = 1000


class ErrorBrief(BaseModel):
    id: str
    step_id: str
    step_name: str
    message: str
    timestamp: datetime
    resolved: bool = False


class ErrorsSummary(BaseModel):
    total: int = 0
    unresolved: int = 0
    latest: list[ErrorBrief] = Field(default_factory=list)


class StepBrief(BaseModel):
    step_id: str
    step_name: str
    status: StepStatus
    attempt: int
    duration_ms: int | None = None
    start_time: datetime
    parent_step_id: str | None = None
    iteration: int | None = None


class RunProgress(BaseModel):
    """Live position of an in-flight run, maintained from bus events."""

    current_step: str | None = None
    current_attempt: int | None = None
    steps_started: int = 0
    steps_finished: int = 0
    last_event: str | None = None
    updated_at: datetime | None = None


class RunSummary(BaseModel):
    run_id: str
    graph_id: str
    status: RunStatus
    metrics: RunMetrics
    errors: ErrorsSummary
    recent_steps: list[StepBrief] = Field(default_factory=list)
    slowest_steps: list[StepDuration] = Field(default_factory=list)
    slow_step_count: int = 0
    failure: FailureInfo | None = None
    started_at: datetime
    completed_at: datetime | None = None
    progress: RunProgress | None = None


class StepExecution(BaseModel):
    attempt: int
    dispatch: int
    start_time: datetime
    end_time: datetime | None = None
    duration_ms: int | None = None
    status: StepStatus
    input: Any = None
    output: Any = None
    error: ErrorInfo | None = None
    parent_step_id: str | None = None
    iteration: int | None = None


class StepMetrics(BaseModel):
    total_executions: int = 0
    success_rate: float = 0.0
    average_duration: float = 0.0


class StepDetail(BaseModel):
    step_id: str
    step_name: str
    node_type: str = ""
    executions: list[StepExecution] = Field(default_factory=list)
    errors: list[ErrorBrief] = Field(default_factory=list)
    metrics: StepMetrics = Field(default_factory=StepMetrics)


def _recency_key(entry: StepTraceEntry) -> tuple:
    return (entry.start_time, entry.dispatch, entry.attempt)


class ExecutionTracer:
    """
    Builds run summaries and step details.

    Example:
        tracer = ExecutionTracer()
        summary = tracer.summarize(state)
        detail = tracer.step_detail(state, "send_email")
    """

    def __init__(self, slow_step_threshold_ms: int = DEFAULT_SLOW_STEP_THRESHOLD_MS):
        self.slow_step_threshold_ms = slow_step_threshold_ms
        self._progress: dict[str, RunProgress] = {}
        self._subscription_id: str | None = None

    # === READ MODELS ===

    def summarize(self, state: RunState) -> RunSummary:
        """Status, rounded metrics, latest errors, recent and slowest steps."""
        metrics = RunMetrics.from_trace(state.trace)
        metrics = metrics.model_copy(
            update={
                "success_rate": round(metrics.success_rate, 2),
                "average_step_duration": round(metrics.average_step_duration, 2),
            }
        )

        recent = sorted(state.trace, key=_recency_key, reverse=True)[:RECENT_STEPS_LIMIT]

        return RunSummary(
            run_id=state.run_id,
            graph_id=state.graph_id,
            status=state.status,
            metrics=metrics,
            errors=ErrorsSummary(
                total=len(state.errors),
                unresolved=sum(1 for e in state.errors if not e.resolved),
                latest=[
                    ErrorBrief(
                        id=e.id,
                        step_id=e.step_id,
                        step_name=e.step_name,
                        message=e.error.message,
                        timestamp=e.timestamp,
                        resolved=e.resolved,
                    )
                    for e in state.errors[-LATEST_ERRORS_LIMIT:]
                ],
            ),
            recent_steps=[
                StepBrief(
                    step_id=e.step_id,
                    step_name=e.step_name,
                    status=e.status,
                    attempt=e.attempt,
                    duration_ms=e.duration_ms,
                    start_time=e.start_time,
                    parent_step_id=e.parent_step_id,
                    iteration=e.iteration,
                )
                for e in recent
            ],
            slowest_steps=metrics.steps_by_duration[:SLOWEST_STEPS_LIMIT],
            slow_step_count=sum(
                1 for s in metrics.steps_by_duration if s.duration_ms > self.slow_step_threshold_ms
            ),
            failure=state.failure,
            started_at=state.started_at,
            completed_at=state.completed_at,
            progress=None if state.is_terminal else self._progress.get(state.run_id),
        )

    def step_detail(self, state: RunState, step_id: str) -> StepDetail | None:
        """Every attempt of ``step_id``, most recent first. None if it never ran."""
        entries = sorted(
            (e for e in state.trace if e.step_id == step_id), key=_recency_key, reverse=True
        )
        if not entries:
            return None

        completed = sum(1 for e in entries if e.status == StepStatus.COMPLETED)
        total_duration = sum(e.duration_ms or 0 for e in entries)

        return StepDetail(
            step_id=step_id,
            step_name=entries[0].step_name,
            node_type=entries[0].node_type,
            executions=[
                StepExecution(
                    attempt=e.attempt,
                    dispatch=e.dispatch,
                    start_time=e.start_time,
                    end_time=e.end_time,
                    duration_ms=e.duration_ms,
                    status=e.status,
                    input=e.input,
                    output=e.output,
                    error=e.error,
                    parent_step_id=e.parent_step_id,
                    iteration=e.iteration,
                )
                for e in entries
            ],
            errors=[
                ErrorBrief(
                    id=e.id,
                    step_id=e.step_id,
                    step_name=e.step_name,
                    message=e.error.message,
                    timestamp=e.timestamp,
                    resolved=e.resolved,
                )
                for e in state.errors
                if e.step_id == step_id
            ],
            metrics=StepMetrics(
                total_executions=len(entries),
                success_rate=completed / len(entries) * 100,
                average_duration=total_duration / len(entries),
            ),
        )

    # === LIVE PROGRESS ===

    def attach(self, event_bus: EventBus) -> None:
        """Follow step and run events on ``event_bus``."""
        if self._subscription_id is not None:
            return
        self._subscription_id = event_bus.subscribe(
            event_types=[
                EventType.RUN_STARTED,
                EventType.STEP_STARTED,
                EventType.STEP_COMPLETED,
                EventType.STEP_FAILED,
                EventType.STEP_RETRY,
                EventType.RUN_COMPLETED,
                EventType.RUN_FAILED,
                EventType.RUN_CANCELLED,
            ],
            handler=self._on_event,
        )

    def get_progress(self, run_id: str) -> RunProgress | None:
        return self._progress.get(run_id)

    async def _on_event(self, event: RunEvent) -> None:
        if event.run_id is None:
            return

        if event.type in (EventType.RUN_COMPLETED, EventType.RUN_FAILED, EventType.RUN_CANCELLED):
            self._progress.pop(event.run_id, None)
            return

        progress = self._progress.setdefault(event.run_id, RunProgress())
        if event.type == EventType.STEP_STARTED:
            progress.current_step = event.node_id
            progress.current_attempt = event.data.get("attempt")
            progress.steps_started += 1
        elif event.type in (EventType.STEP_COMPLETED, EventType.STEP_FAILED, EventType.STEP_RETRY):
            progress.steps_finished += 1
            duration = event.data.get("duration_ms")
            if duration is not None and duration > self.slow_step_threshold_ms:
                logger.warning(f"⚠ Slow step {event.node_id}: {duration}ms")
        progress.last_event = event.type.value
        progress.updated_at = event.timestamp
