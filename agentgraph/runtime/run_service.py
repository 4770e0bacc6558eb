"""
Run Service - Top-level orchestrator for graph runs.

Owns the registered graphs and schedules each triggered run as its own
asyncio task, so many runs progress concurrently as independent walkers.
Also serves the run summary API used by dashboards.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from agentgraph.errors import GraphDefinitionError, RunStateError
from agentgraph.graph.definition import GraphDefinition
from agentgraph.graph.executor import GraphExecutor
from agentgraph.graph.invoker import StepActionInvoker
from agentgraph.graph.plan import ExecutionPlan, compile_graph
from agentgraph.graph.reducer import resolve_error
from agentgraph.observability import set_trace_context
from agentgraph.runtime.event_bus import EventBus, EventType, RunEvent
from agentgraph.runtime.tracer import ExecutionTracer, RunSummary, StepDetail
from agentgraph.schemas.run_state import RunState, RunStatus
from agentgraph.storage.run_store import RunStore

logger = logging.getLogger(__name__)


@dataclass
class RunServiceConfig:
    """Configuration for RunService."""

    max_concurrent_runs: int = 10
    slow_step_threshold_ms: int = 1000


class RunService:
    """
    Registers graphs, triggers runs and answers summary queries.

    Example:
        service = RunService(executor)
        service.register_graph(graph)
        run_id = await service.trigger("support-agent", {"email": "..."})
        state = await service.wait_for_completion(run_id, timeout=30)
        summary = await service.get_summary(run_id)
    """

    def __init__(
        self,
        executor: GraphExecutor,
        event_bus: EventBus | None = None,
        tracer: ExecutionTracer | None = None,
        config: RunServiceConfig | None = None,
    ):
        self._config = config or RunServiceConfig()
        self.executor = executor
        self._event_bus = event_bus or executor.event_bus or EventBus()
        if executor.event_bus is None:
            executor.event_bus = self._event_bus
        self.tracer = tracer or ExecutionTracer(self._config.slow_step_threshold_ms)
        self.tracer.attach(self._event_bus)

        self._plans: dict[str, ExecutionPlan] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._semaphore = asyncio.Semaphore(self._config.max_concurrent_runs)

    @classmethod
    def from_config(
        cls,
        invoker: StepActionInvoker,
        store: RunStore | None = None,
        engine_config: Any = None,
    ) -> "RunService":
        """Build executor, bus and tracer from an EngineConfig (defaults from disk)."""
        from agentgraph.config import EngineConfig

        engine_config = engine_config or EngineConfig()
        event_bus = EventBus()
        executor = GraphExecutor.from_config(
            invoker, engine_config, store=store, event_bus=event_bus
        )
        return cls(
            executor,
            event_bus=event_bus,
            config=RunServiceConfig(max_concurrent_runs=engine_config.max_concurrent_runs),
        )

    # === GRAPH REGISTRATION ===

    def register_graph(self, graph: GraphDefinition | dict[str, Any] | str) -> ExecutionPlan:
        """
        Validate and register a graph.

        Raises:
            GraphDefinitionError: the graph cannot be executed
        """
        plan = compile_graph(graph, self.executor.max_steps)
        self._plans[plan.graph_id] = plan
        logger.info(f"Registered graph '{plan.graph_id}' ({len(plan.order)} reachable nodes)")
        return plan

    def unregister_graph(self, graph_id: str) -> bool:
        return self._plans.pop(graph_id, None) is not None

    def get_graph(self, graph_id: str) -> GraphDefinition | None:
        plan = self._plans.get(graph_id)
        return plan.graph if plan else None

    def get_graph_ids(self) -> list[str]:
        return list(self._plans.keys())

    # === RUNS ===

    async def trigger(
        self,
        graph_id: str,
        trigger_input: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> str:
        """
        Start a run of a registered graph.

        Non-blocking - returns the run id as soon as the run exists.

        Raises:
            GraphDefinitionError: If the graph is not registered
        """
        plan = self._plans.get(graph_id)
        if plan is None:
            raise GraphDefinitionError([f"Graph '{graph_id}' is not registered"])

        _, state = await self.executor.start_run(plan.graph, trigger_input, context=context)
        task = asyncio.create_task(self._run(plan, state), name=f"run-{state.run_id}")
        self._tasks[state.run_id] = task
        task.add_done_callback(lambda _t, run_id=state.run_id: self._tasks.pop(run_id, None))

        logger.debug(f"Queued run {state.run_id} for graph {graph_id}")
        return state.run_id

    async def trigger_and_wait(
        self,
        graph_id: str,
        trigger_input: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> RunState | None:
        """Trigger a run and wait for it to finish. None on timeout."""
        run_id = await self.trigger(graph_id, trigger_input, context)
        return await self.wait_for_completion(run_id, timeout)

    async def resume(self, run_id: str) -> str:
        """
        Schedule an interrupted run to continue from its pending steps.

        Raises:
            RunNotFoundError: unknown run
            RunStateError: the run is terminal or already executing
        """
        state = await self.executor.store.get_run(run_id)
        if state.is_terminal:
            raise RunStateError(f"Run {run_id} is already {state.status}")
        if run_id in self._tasks:
            raise RunStateError(f"Run {run_id} is already executing")
        plan = self._plans.get(state.graph_id)
        if plan is None:
            raise GraphDefinitionError([f"Graph '{state.graph_id}' is not registered"])

        async def _resume() -> RunState:
            async with self._semaphore:
                set_trace_context(run_id=run_id, graph_id=plan.graph_id)
                return await self.executor.resume(plan.graph, run_id)

        task = asyncio.create_task(_resume(), name=f"resume-{run_id}")
        self._tasks[run_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(run_id, None))
        return run_id

    async def _run(self, plan: ExecutionPlan, state: RunState) -> RunState:
        started = False
        try:
            async with self._semaphore:
                started = True
                set_trace_context(run_id=state.run_id, graph_id=plan.graph_id)
                return await self.executor.run(plan, state)
        except asyncio.CancelledError:
            if not started:
                # Cancelled while queued: the walker never ran, record it here
                await self.executor.store.update_run_status(state.run_id, RunStatus.CANCELLED)
            raise

    async def wait_for_completion(
        self, run_id: str, timeout: float | None = None
    ) -> RunState | None:
        """
        Wait for a run to reach a terminal status.

        Returns:
            The final RunState, or None on timeout
        """
        task = self._tasks.get(run_id)
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except TimeoutError:
                return None
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise
        return await self.get_run(run_id)

    async def cancel(self, run_id: str) -> bool:
        """
        Cancel a run.

        A running walker stops before its next step; a queued run is dropped.

        Returns:
            True if the run was active, False if unknown or already finished
        """
        if self.executor.cancel(run_id):
            return True
        task = self._tasks.get(run_id)
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            return True
        return False

    async def stop(self) -> None:
        """Cancel every outstanding run task."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("RunService stopped")

    # === SUMMARY API ===

    async def get_run(self, run_id: str) -> RunState:
        """Raises RunNotFoundError."""
        return await self.executor.store.get_run(run_id)

    async def list_runs(
        self,
        graph_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 100,
    ) -> list[RunState]:
        return await self.executor.store.list_runs(graph_id=graph_id, status=status, limit=limit)

    async def get_summary(self, run_id: str) -> RunSummary:
        """Raises RunNotFoundError."""
        return self.tracer.summarize(await self.get_run(run_id))

    async def get_step_detail(self, run_id: str, step_id: str) -> StepDetail | None:
        """Raises RunNotFoundError for unknown runs; None if the step never ran."""
        return self.tracer.step_detail(await self.get_run(run_id), step_id)

    async def resolve_error(self, run_id: str, error_id: str) -> RunState:
        """
        Mark an error ledger entry as resolved.

        Raises:
            RunNotFoundError: unknown run
            RunStateError: the run is still executing
            KeyError: unknown error id
        """
        if run_id in self._tasks:
            raise RunStateError(
                f"Run {run_id} is still executing; resolve errors once it has finished"
            )
        state = resolve_error(await self.get_run(run_id), error_id)
        await self.executor.store.save_state(state)
        await self._event_bus.publish(
            RunEvent(
                type=EventType.ERROR_RESOLVED,
                graph_id=state.graph_id,
                run_id=run_id,
                data={"error_id": error_id},
            )
        )
        return state

    # === STATS AND MONITORING ===

    def get_stats(self) -> dict:
        return {
            "graphs": list(self._plans.keys()),
            "active_runs": len(self._tasks),
            "event_bus": self._event_bus.get_stats(),
        }

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus
