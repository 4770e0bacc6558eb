"""
State Channel Reducer - Explicit per-field merge of deltas into a RunState.

Every RunState field has exactly one merge strategy:
- APPEND: lists that only grow (trace, errors, messages, executed)
- UPDATE: key-wise dict update (agent_state, context)
- OVERWRITE: scalar replaced when the delta defines it
- RECOMPUTE: derived from other fields after the merge (metrics)

``merge(state, empty_delta)`` returns ``state`` unchanged, and
``merge(merge(s, a), b) == merge(s, combine(a, b))``.
"""

from enum import StrEnum
from typing import Any

from agentgraph.errors import RunStateError
from agentgraph.schemas.run_state import (
    RunContext,
    RunMetrics,
    RunState,
    RunStateDelta,
    utc_now,
)


class MergeStrategy(StrEnum):
    APPEND = "append"
    UPDATE = "update"
    OVERWRITE = "overwrite"
    RECOMPUTE = "recompute"


FIELD_STRATEGIES: dict[str, MergeStrategy] = {
    "trace": MergeStrategy.APPEND,
    "errors": MergeStrategy.APPEND,
    "messages": MergeStrategy.APPEND,
    "executed": MergeStrategy.APPEND,
    "agent_state": MergeStrategy.UPDATE,
    "context": MergeStrategy.UPDATE,
    "status": MergeStrategy.OVERWRITE,
    "pending": MergeStrategy.OVERWRITE,
    "steps_dispatched": MergeStrategy.OVERWRITE,
    "failure": MergeStrategy.OVERWRITE,
    "output": MergeStrategy.OVERWRITE,
    "completed_at": MergeStrategy.OVERWRITE,
    "metrics": MergeStrategy.RECOMPUTE,
}


def _as_delta(delta: RunStateDelta | dict[str, Any] | None) -> RunStateDelta:
    if delta is None:
        return RunStateDelta()
    if isinstance(delta, RunStateDelta):
        return delta
    return RunStateDelta.model_validate(delta)


def merge(previous: RunState, delta: RunStateDelta | dict[str, Any] | None) -> RunState:
    """
    Apply ``delta`` to ``previous`` and return the new state.

    The previous state is never modified. Raises RunStateError when a
    non-empty delta targets a run that is already terminal.
    """
    delta = _as_delta(delta)
    if delta.is_empty():
        return previous
    if previous.is_terminal:
        raise RunStateError(
            f"Run {previous.run_id} is {previous.status} and can no longer be modified"
        )

    updates: dict[str, Any] = {}
    for name in delta.model_fields_set:
        value = getattr(delta, name)
        strategy = FIELD_STRATEGIES[name]

        if strategy == MergeStrategy.APPEND:
            updates[name] = [*getattr(previous, name), *(value or [])]
        elif strategy == MergeStrategy.UPDATE:
            if name == "context":
                updates[name] = RunContext.model_validate(
                    {**previous.context.model_dump(), **(value or {}), "updated_at": utc_now()}
                )
            else:
                updates[name] = {**getattr(previous, name), **(value or {})}
        else:
            updates[name] = value

    # Metrics are derived from the trace only
    if "trace" in updates:
        updates["metrics"] = RunMetrics.from_trace(updates["trace"])

    return previous.model_copy(update=updates)


def combine(
    first: RunStateDelta | dict[str, Any] | None,
    second: RunStateDelta | dict[str, Any] | None,
) -> RunStateDelta:
    """Fold two deltas into one with the same effect as applying them in order."""
    first, second = _as_delta(first), _as_delta(second)
    combined: dict[str, Any] = {}

    for name in first.model_fields_set | second.model_fields_set:
        in_first = name in first.model_fields_set
        in_second = name in second.model_fields_set
        a, b = getattr(first, name), getattr(second, name)
        strategy = FIELD_STRATEGIES[name]

        if in_first and in_second and strategy == MergeStrategy.APPEND:
            combined[name] = [*(a or []), *(b or [])]
        elif in_first and in_second and strategy == MergeStrategy.UPDATE:
            combined[name] = {**(a or {}), **(b or {})}
        else:
            combined[name] = b if in_second else a

    return RunStateDelta.model_validate(combined) if combined else RunStateDelta()


def resolve_error(state: RunState, error_id: str) -> RunState:
    """
    Mark one ledger entry as resolved.

    This is the only way ``resolved`` changes. It is allowed on terminal runs
    since errors are typically reviewed after a run has failed.
    """
    found = False
    errors = []
    for record in state.errors:
        if record.id == error_id:
            found = True
            record = record.model_copy(update={"resolved": True})
        errors.append(record)
    if not found:
        raise KeyError(f"Error {error_id} not found in run {state.run_id}")
    return state.model_copy(update={"errors": errors})
