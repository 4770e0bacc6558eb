"""
Run Store - Persistence of run state and step records.

The engine only talks to the :class:`RunStore` interface. Two
implementations ship with the package:

- InMemoryRunStore: process-local, used by tests and one-shot CLI runs
- FileRunStore: one directory per run::

    {base_path}/
      runs/
        {run_id}/
          state.json     # Latest RunState snapshot, written atomically
          steps.jsonl    # Step records, appended on dispatch and on finish

Step records are keyed by ``StepTraceEntry.record_key``; writing the same
key twice keeps the last version, so retried persistence is idempotent.
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any

from agentgraph.errors import RunNotFoundError
from agentgraph.schemas.run_state import (
    FailureInfo,
    RunContext,
    RunState,
    RunStatus,
    StepTraceEntry,
    utc_now,
)
from agentgraph.utils.io import atomic_write

logger = logging.getLogger(__name__)


def generate_run_id() -> str:
    """
    Generate run ID in format: run_YYYYMMDD_HHMMSS_{uuid}.

    Returns:
        Run ID string (e.g., "run_20260206_143022_abc12345")
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"run_{timestamp}_{uuid.uuid4().hex[:8]}"


class RunStore(ABC):
    """Persistence interface consumed by the execution engine."""

    @abstractmethod
    async def create_run(
        self,
        graph_id: str,
        trigger_input: dict[str, Any],
        context: dict[str, Any] | None = None,
    ) -> str:
        """Create a pending run and return its id."""

    @abstractmethod
    async def append_step_record(self, run_id: str, entry: StepTraceEntry) -> None:
        """Persist a step record. Same record key overwrites."""

    @abstractmethod
    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        failure: FailureInfo | None = None,
    ) -> None:
        """Record a run status transition."""

    @abstractmethod
    async def get_run(self, run_id: str) -> RunState:
        """Load a run. Raises RunNotFoundError."""

    @abstractmethod
    async def save_state(self, state: RunState) -> None:
        """Persist a full RunState snapshot."""

    @abstractmethod
    async def get_step_records(self, run_id: str) -> list[StepTraceEntry]:
        """All step records of a run in first-write order, including in-flight ones."""

    @abstractmethod
    async def list_runs(
        self,
        graph_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 100,
    ) -> list[RunState]:
        """List runs, most recently started first."""

    @staticmethod
    def _new_state(
        run_id: str,
        graph_id: str,
        trigger_input: dict[str, Any],
        context: dict[str, Any] | None,
    ) -> RunState:
        return RunState(
            run_id=run_id,
            graph_id=graph_id,
            status=RunStatus.PENDING,
            trigger_input=dict(trigger_input),
            context=RunContext.model_validate(context or {}),
        )

    @staticmethod
    def _with_status(
        state: RunState, status: RunStatus, failure: FailureInfo | None
    ) -> RunState:
        updates: dict[str, Any] = {"status": status}
        if failure is not None:
            updates["failure"] = failure
        if status.is_terminal and state.completed_at is None:
            updates["completed_at"] = utc_now()
        return state.model_copy(update=updates)

    @staticmethod
    def _filter_runs(
        runs: list[RunState],
        graph_id: str | None,
        status: RunStatus | None,
        limit: int,
    ) -> list[RunState]:
        if graph_id:
            runs = [r for r in runs if r.graph_id == graph_id]
        if status:
            runs = [r for r in runs if r.status == status]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return runs[:limit]


class InMemoryRunStore(RunStore):
    """Dictionary-backed store. Snapshots are deep-copied in and out."""

    def __init__(self) -> None:
        self._runs: dict[str, RunState] = {}
        self._records: dict[str, dict[str, StepTraceEntry]] = {}

    async def create_run(
        self,
        graph_id: str,
        trigger_input: dict[str, Any],
        context: dict[str, Any] | None = None,
    ) -> str:
        run_id = generate_run_id()
        self._runs[run_id] = self._new_state(run_id, graph_id, trigger_input, context)
        self._records[run_id] = {}
        return run_id

    def _require(self, run_id: str) -> RunState:
        if run_id not in self._runs:
            raise RunNotFoundError(run_id)
        return self._runs[run_id]

    async def append_step_record(self, run_id: str, entry: StepTraceEntry) -> None:
        self._require(run_id)
        self._records[run_id][entry.record_key] = entry.model_copy(deep=True)

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        failure: FailureInfo | None = None,
    ) -> None:
        self._runs[run_id] = self._with_status(self._require(run_id), status, failure)

    async def get_run(self, run_id: str) -> RunState:
        return self._require(run_id).model_copy(deep=True)

    async def save_state(self, state: RunState) -> None:
        self._records.setdefault(state.run_id, {})
        self._runs[state.run_id] = state.model_copy(deep=True)

    async def get_step_records(self, run_id: str) -> list[StepTraceEntry]:
        self._require(run_id)
        return [e.model_copy(deep=True) for e in self._records[run_id].values()]

    async def list_runs(
        self,
        graph_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 100,
    ) -> list[RunState]:
        runs = [r.model_copy(deep=True) for r in self._runs.values()]
        return self._filter_runs(runs, graph_id, status, limit)


class FileRunStore(RunStore):
    """File-based store. Each run gets its own directory under ``runs/``."""

    def __init__(self, base_path: Path | str):
        self.base_path = Path(base_path).expanduser()
        self.runs_dir = self.base_path / "runs"
        self._locks: dict[str, asyncio.Lock] = {}

    def get_run_path(self, run_id: str) -> Path:
        return self.runs_dir / run_id

    def get_state_path(self, run_id: str) -> Path:
        return self.get_run_path(run_id) / "state.json"

    def get_steps_path(self, run_id: str) -> Path:
        return self.get_run_path(run_id) / "steps.jsonl"

    def _lock(self, run_id: str) -> asyncio.Lock:
        if run_id not in self._locks:
            self._locks[run_id] = asyncio.Lock()
        return self._locks[run_id]

    # -------------------------------------------------------------------
    # Sync helpers (run in worker threads)
    # -------------------------------------------------------------------

    def _write_state_sync(self, state: RunState) -> None:
        with atomic_write(self.get_state_path(state.run_id)) as f:
            f.write(state.model_dump_json(indent=2))

    def _read_state_sync(self, run_id: str) -> RunState:
        path = self.get_state_path(run_id)
        if not path.exists():
            raise RunNotFoundError(run_id)
        return RunState.model_validate_json(path.read_text(encoding="utf-8"))

    def _append_record_sync(self, run_id: str, entry: StepTraceEntry) -> None:
        path = self.get_steps_path(run_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        line = entry.model_dump_json() + "\n"
        with open(path, "a", encoding="utf-8") as f:
            f.write(line)

    def _read_records_sync(self, run_id: str) -> list[StepTraceEntry]:
        """Read steps.jsonl, keeping the last record per key. Skips corrupt lines."""
        path = self.get_steps_path(run_id)
        records: dict[str, StepTraceEntry] = {}
        if not path.exists():
            return []
        try:
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = StepTraceEntry.model_validate(json.loads(line))
                    except (json.JSONDecodeError, ValueError) as e:
                        logger.warning("Skipping corrupt JSONL line in %s: %s", path, e)
                        continue
                    records[entry.record_key] = entry
        except OSError as e:
            logger.warning("Failed to read %s: %s", path, e)
        return list(records.values())

    # -------------------------------------------------------------------
    # RunStore interface
    # -------------------------------------------------------------------

    async def create_run(
        self,
        graph_id: str,
        trigger_input: dict[str, Any],
        context: dict[str, Any] | None = None,
    ) -> str:
        run_id = generate_run_id()
        state = self._new_state(run_id, graph_id, trigger_input, context)
        await asyncio.to_thread(self._write_state_sync, state)
        logger.debug(f"Created run {run_id} for graph {graph_id}")
        return run_id

    async def append_step_record(self, run_id: str, entry: StepTraceEntry) -> None:
        if not await asyncio.to_thread(self.get_run_path(run_id).exists):
            raise RunNotFoundError(run_id)
        await asyncio.to_thread(self._append_record_sync, run_id, entry)

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        failure: FailureInfo | None = None,
    ) -> None:
        async with self._lock(run_id):
            state = await asyncio.to_thread(self._read_state_sync, run_id)
            updated = self._with_status(state, status, failure)
            await asyncio.to_thread(self._write_state_sync, updated)

    async def get_run(self, run_id: str) -> RunState:
        return await asyncio.to_thread(self._read_state_sync, run_id)

    async def save_state(self, state: RunState) -> None:
        async with self._lock(state.run_id):
            await asyncio.to_thread(self._write_state_sync, state)
        logger.debug(f"Wrote state.json for run {state.run_id}")

    async def get_step_records(self, run_id: str) -> list[StepTraceEntry]:
        if not await asyncio.to_thread(self.get_run_path(run_id).exists):
            raise RunNotFoundError(run_id)
        return await asyncio.to_thread(self._read_records_sync, run_id)

    async def list_runs(
        self,
        graph_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 100,
    ) -> list[RunState]:
        def _scan() -> list[RunState]:
            runs: list[RunState] = []
            if not self.runs_dir.exists():
                return runs
            for run_dir in self.runs_dir.iterdir():
                state_path = run_dir / "state.json"
                if not run_dir.is_dir() or not state_path.exists():
                    continue
                try:
                    text = state_path.read_text(encoding="utf-8")
                    runs.append(RunState.model_validate_json(text))
                except Exception as e:
                    logger.warning(f"Failed to load {state_path}: {e}")
            return runs

        runs = await asyncio.to_thread(_scan)
        return self._filter_runs(runs, graph_id, status, limit)
