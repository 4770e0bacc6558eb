"""
Graph Executor - Walks a compiled graph and drives step execution.

The executor:
1. Validates and compiles the graph before any run exists
2. Dispatches nodes depth-first from ``startAt``, each node at most once
   (fan-out targets run sequentially in list order)
3. Runs every step through the retry policy and the step action invoker
4. Folds each attempt into the run state through the reducer
5. Follows ``next`` (or the selected branch of a condition) on success and
   ``onError`` once retries are exhausted; without ``onError`` the run fails
6. Runs loop bodies as child steps, bounded by ``maxIterations``
7. Persists step records and the final status, even when something breaks
8. On resume, folds step records the crashed process never merged back into
   the run state

Cancellation is cooperative and only takes effect between steps.
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from agentgraph.errors import (
    ConditionError,
    RunStateError,
    StepError,
    StepLimitExceeded,
)
from agentgraph.graph.bindings import BindingScope, resolve_bindings
from agentgraph.graph.conditions import ConditionEvaluator
from agentgraph.graph.definition import GraphDefinition, NodeDefinition, NodeType
from agentgraph.graph.invoker import StepActionInvoker, StepContext, StepResult
from agentgraph.graph.plan import DEFAULT_MAX_STEPS, ExecutionPlan, compile_graph
from agentgraph.graph.reducer import merge
from agentgraph.graph.retry import RetryOutcome, RetryPolicy
from agentgraph.observability import set_trace_context
from agentgraph.runtime.event_bus import EventBus, EventType, RunEvent
from agentgraph.schemas.run_state import (
    ErrorInfo,
    ErrorRecord,
    FailureInfo,
    RunState,
    RunStatus,
    StepStatus,
    StepTraceEntry,
    utc_now,
)
from agentgraph.storage.run_store import InMemoryRunStore, RunStore

if TYPE_CHECKING:
    from agentgraph.config import EngineConfig

logger = logging.getLogger(__name__)


class _RunCancelled(Exception):
    """Raised inside a walk once cancellation has been requested."""


@dataclass
class _DrainResult:
    ok: bool = True
    output: Any = None
    failure: FailureInfo | None = None


@dataclass
class _Walk:
    """Mutable bookkeeping of one walker invocation."""

    plan: ExecutionPlan
    state: RunState
    current_node: str | None = None


class GraphExecutor:
    """
    Executes agent graphs.

    Each call to :meth:`execute` (or :meth:`resume`) is an independent walker
    owning exactly one RunState; concurrent runs share nothing but the
    injected collaborators.

    Example:
        invoker = StepActionInvoker(llm=MockLLMProvider())
        executor = GraphExecutor(invoker, store=InMemoryRunStore())
        state = await executor.execute(graph, {"email": "hi"})
    """

    def __init__(
        self,
        invoker: StepActionInvoker,
        store: RunStore | None = None,
        event_bus: EventBus | None = None,
        retry_policy: RetryPolicy | None = None,
        max_steps: int = DEFAULT_MAX_STEPS,
        capture_inputs: bool = True,
        capture_outputs: bool = True,
    ):
        self.invoker = invoker
        self.store = store or InMemoryRunStore()
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_steps = max_steps
        self.capture_inputs = capture_inputs
        self.capture_outputs = capture_outputs
        self._event_bus = event_bus
        self._active: set[str] = set()
        self._cancel_requested: set[str] = set()

    @classmethod
    def from_config(
        cls,
        invoker: StepActionInvoker,
        config: "EngineConfig",
        store: RunStore | None = None,
        event_bus: EventBus | None = None,
    ) -> "GraphExecutor":
        return cls(
            invoker,
            store=store,
            event_bus=event_bus,
            retry_policy=config.retry_policy(),
            max_steps=config.max_steps,
            capture_inputs=config.capture_inputs,
            capture_outputs=config.capture_outputs,
        )

    # === PUBLIC API ===

    async def execute(
        self,
        graph: GraphDefinition | dict[str, Any],
        trigger_input: dict[str, Any] | None = None,
        *,
        context: dict[str, Any] | None = None,
    ) -> RunState:
        """
        Run ``graph`` to completion.

        Raises:
            GraphDefinitionError: the graph is invalid; no run is created

        Returns:
            The terminal RunState
        """
        plan, state = await self.start_run(graph, trigger_input, context=context)
        return await self.run(plan, state)

    async def start_run(
        self,
        graph: GraphDefinition | dict[str, Any],
        trigger_input: dict[str, Any] | None = None,
        *,
        context: dict[str, Any] | None = None,
    ) -> tuple[ExecutionPlan, RunState]:
        """Compile the graph and create a pending run without walking it yet."""
        plan = compile_graph(graph, self.max_steps)
        run_id = await self.store.create_run(plan.graph_id, dict(trigger_input or {}), context)
        state = await self.store.get_run(run_id)
        return plan, state

    async def run(self, plan: ExecutionPlan, state: RunState) -> RunState:
        """Walk a run created by :meth:`start_run`."""
        return await self._walk(plan, state)

    async def resume(self, graph: GraphDefinition | dict[str, Any], run_id: str) -> RunState:
        """
        Continue a run that stopped before reaching a terminal status.

        The node that was in flight when the run stopped is executed again.
        """
        plan = compile_graph(graph, self.max_steps)
        state = await self.store.get_run(run_id)
        if state.is_terminal:
            raise RunStateError(f"Run {run_id} is already {state.status}")
        if state.graph_id != plan.graph_id:
            raise RunStateError(
                f"Run {run_id} belongs to graph '{state.graph_id}', not '{plan.graph_id}'"
            )
        state = await self._recover_step_records(state)
        logger.info(f"🔄 Resuming run {run_id} from: {state.pending or [plan.start_at]}")
        return await self._walk(plan, state, resumed=True)

    async def _recover_step_records(self, state: RunState) -> RunState:
        """
        Merge step records the stopped process wrote but never folded into its state.

        Finished attempts are appended to the trace, and their errors to the
        ledger. An attempt that was still running is closed as failed.
        """
        records = await self.store.get_step_records(state.run_id)
        known = {entry.record_key for entry in state.trace}
        trace: list[StepTraceEntry] = []
        errors: list[ErrorRecord] = []
        last_dispatch = state.steps_dispatched

        for record in records:
            last_dispatch = max(last_dispatch, record.dispatch)
            if record.record_key in known:
                continue
            if not record.is_finished:
                record.finish(
                    StepStatus.FAILED,
                    error=ErrorInfo(
                        message="Interrupted before the attempt finished", code="INTERRUPTED"
                    ),
                )
                await self._store_call("append_step_record", state.run_id, record)
            trace.append(record)
            if record.error is not None:
                errors.append(
                    ErrorRecord(
                        id=f"err_{uuid.uuid4().hex[:12]}",
                        step_id=record.step_id,
                        step_name=record.step_name,
                        attempt=record.attempt,
                        timestamp=record.end_time or utc_now(),
                        error=record.error,
                        context={"dispatch": record.dispatch, "recovered": True},
                    )
                )

        delta: dict[str, Any] = {"steps_dispatched": last_dispatch}
        if trace:
            logger.warning(
                f"Recovered {len(trace)} step record(s) of run {state.run_id} "
                f"({len(errors)} with errors)"
            )
            delta["trace"] = trace
            delta["errors"] = errors
        return merge(state, delta)

    def cancel(self, run_id: str) -> bool:
        """Request cancellation; honoured before the next step is dispatched."""
        if run_id not in self._active:
            return False
        self._cancel_requested.add(run_id)
        logger.info(f"⏹ Cancellation requested for run {run_id}")
        return True

    def is_active(self, run_id: str) -> bool:
        return run_id in self._active

    @property
    def event_bus(self) -> EventBus | None:
        return self._event_bus

    @event_bus.setter
    def event_bus(self, event_bus: EventBus | None) -> None:
        self._event_bus = event_bus

    # === WALK ===

    async def _walk(self, plan: ExecutionPlan, state: RunState, resumed: bool = False) -> RunState:
        run_id = state.run_id
        walk = _Walk(plan=plan, state=state)
        pending = list(state.pending) or [plan.start_at]

        self._active.add(run_id)
        set_trace_context(run_id=run_id, graph_id=plan.graph_id, node_id=None)

        try:
            walk.state = merge(walk.state, {"status": RunStatus.RUNNING, "pending": pending})
            await self._store_call("update_run_status", run_id, RunStatus.RUNNING)
            await self._save_state(walk.state)

            if resumed:
                if self._event_bus:
                    await self._event_bus.publish(
                        RunEvent(
                            type=EventType.RUN_RESUMED,
                            graph_id=plan.graph_id,
                            run_id=run_id,
                            data={"pending": pending},
                        )
                    )
            else:
                logger.info(f"🚀 Starting run {run_id}: {plan.graph.name or plan.graph_id}")
                logger.info(f"   Entry node: {plan.start_at}")
                if self._event_bus:
                    await self._event_bus.emit_run_started(
                        plan.graph_id, run_id, state.trigger_input
                    )

            result = await self._drain(walk, deque(pending), top_level=True)
            if result.ok:
                walk.state = merge(
                    walk.state,
                    {
                        "status": RunStatus.COMPLETED,
                        "pending": [],
                        "output": result.output,
                        "completed_at": utc_now(),
                    },
                )
                logger.info("✓ Run complete!")
            else:
                walk.state = self._fail(walk.state, result.failure)

        except _RunCancelled:
            walk.state = merge(
                walk.state, {"status": RunStatus.CANCELLED, "completed_at": utc_now()}
            )
            logger.info("⏹ Run cancelled at step boundary")

        except StepLimitExceeded as e:
            node_id = walk.current_node or ""
            walk.state = merge(walk.state, {"errors": [self._error_record(node_id, "", 0, e)]})
            walk.state = self._fail(
                walk.state,
                FailureInfo(step_id=node_id, message=e.message, attempts=0, code=e.code),
            )

        except asyncio.CancelledError:
            if not walk.state.is_terminal:
                walk.state = merge(
                    walk.state, {"status": RunStatus.CANCELLED, "completed_at": utc_now()}
                )
            raise

        except Exception as e:
            logger.exception(f"Run {run_id} aborted by an unexpected error")
            if not walk.state.is_terminal:
                error = StepError.from_exception(e)
                walk.state = self._fail(
                    walk.state,
                    FailureInfo(
                        step_id=walk.current_node or "",
                        message=error.message,
                        attempts=0,
                        code=error.code,
                    ),
                )

        finally:
            self._active.discard(run_id)
            self._cancel_requested.discard(run_id)
            # The final status must reach the store whatever happened above
            await self._save_state(walk.state)
            await self._store_call(
                "update_run_status", run_id, walk.state.status, walk.state.failure
            )
            if self._event_bus:
                await self._event_bus.emit_run_finished(
                    plan.graph_id,
                    run_id,
                    walk.state.status,
                    output=walk.state.output,
                    error=walk.state.failure.message if walk.state.failure else None,
                )
            set_trace_context(node_id=None)

        return walk.state

    def _fail(self, state: RunState, failure: FailureInfo | None) -> RunState:
        failure = failure or FailureInfo(step_id="", message="Run failed")
        logger.error(
            f"✗ Run failed at step '{failure.step_id}' after {failure.attempts} attempt(s): "
            f"{failure.message}"
        )
        return merge(
            state,
            {"status": RunStatus.FAILED, "failure": failure, "completed_at": utc_now()},
        )

    async def _drain(
        self,
        walk: _Walk,
        queue: deque[str],
        *,
        parent_step_id: str | None = None,
        iteration: int | None = None,
        loop: dict[str, Any] | None = None,
        top_level: bool = False,
    ) -> _DrainResult:
        """
        Dispatch nodes from ``queue`` depth-first until it is empty or a step fails unhandled.

        A node runs at most once per drain, which also cuts cycles. The top-level
        drain keeps its executed set on the run state so a resumed run does not
        repeat finished nodes; loop bodies start from an empty set every iteration.
        """
        last_output: Any = None
        executed = set(walk.state.executed) if top_level else set()

        while queue:
            if walk.state.run_id in self._cancel_requested:
                raise _RunCancelled()

            node = walk.plan.node(queue.popleft())
            if node.id in executed:
                logger.info(f"   ↷ Skipping '{node.id}': already executed")
                continue
            outcome = await self._run_step(
                walk, node, parent_step_id=parent_step_id, iteration=iteration, loop=loop
            )

            failure: FailureInfo | None = None
            output = outcome.result.output
            if not outcome.success:
                error = outcome.result.error
                failure = FailureInfo(
                    step_id=node.id,
                    message=error.message if error else "Step failed",
                    attempts=outcome.attempts,
                    code=error.code if error else None,
                )
            elif node.type == NodeType.LOGIC_LOOP:
                body = await self._run_loop(walk, node, output or {}, loop)
                if body.ok:
                    output = body.output
                else:
                    failure = body.failure

            if failure is None:
                last_output = output
                successors = walk.plan.successors(node, outcome.result.output)
                if not successors:
                    logger.info("   → No more edges from this step")
                for target in successors:
                    logger.info(f"   → Next: {target}")
                    await self._emit_edge(walk, node.id, target, "next")
                # Depth-first: successors go ahead of queued siblings, in list order
                queue.extendleft(reversed(successors))
            elif node.on_error:
                logger.info(f"   → Routing to failure handler: {node.on_error}")
                await self._emit_edge(walk, node.id, node.on_error, "onError")
                queue.appendleft(node.on_error)
            else:
                return _DrainResult(ok=False, failure=failure)

            executed.add(node.id)
            if top_level:
                walk.state = merge(walk.state, {"pending": list(queue), "executed": [node.id]})
                await self._save_state(walk.state)

        return _DrainResult(ok=True, output=last_output)

    async def _run_loop(
        self,
        walk: _Walk,
        node: NodeDefinition,
        plan_output: dict[str, Any],
        outer_loop: dict[str, Any] | None,
    ) -> _DrainResult:
        """Run the loop body once per iteration as child steps of ``node``."""
        config = node.loop
        items = plan_output.get("items")
        iterations = int(plan_output.get("iterations") or 0)
        evaluator = ConditionEvaluator(strict=node.strict) if config and config.while_ else None
        results: list[Any] = []

        for index in range(iterations):
            loop_scope = {
                "index": index,
                "iteration": index + 1,
                "item": items[index] if items is not None else None,
                "results": list(results),
                "parent": outer_loop,
            }

            if evaluator is not None:
                scope = self._scope(walk.state, loop_scope)
                try:
                    keep_going = evaluator.evaluate(config.while_, scope.as_context())
                except ConditionError as e:
                    return _DrainResult(
                        ok=False,
                        failure=FailureInfo(step_id=node.id, message=e.message, code=e.code),
                    )
                if not keep_going:
                    logger.info(f"   ↻ Loop '{node.id}' condition false, stopping")
                    break

            if walk.state.run_id in self._cancel_requested:
                raise _RunCancelled()

            logger.info(f"   ↻ Loop '{node.id}': iteration {index + 1}/{iterations}")
            if self._event_bus:
                await self._event_bus.emit_loop_iteration(
                    walk.plan.graph_id, walk.state.run_id, node.id, index + 1, iterations
                )

            body = await self._drain(
                walk,
                deque([config.body]),
                parent_step_id=node.id,
                iteration=index,
                loop=loop_scope,
            )
            if not body.ok:
                return body
            results.append(body.output)

        summary = {**plan_output, "results": results, "completedIterations": len(results)}
        walk.state = merge(walk.state, {"agent_state": {node.id: summary}})
        return _DrainResult(ok=True, output=summary)

    # === STEP DISPATCH ===

    def _scope(self, state: RunState, loop: dict[str, Any] | None) -> BindingScope:
        return BindingScope(
            trigger=state.trigger_input,
            context=state.context.model_dump(mode="json"),
            state=state.agent_state,
            loop=loop,
        )

    async def _run_step(
        self,
        walk: _Walk,
        node: NodeDefinition,
        *,
        parent_step_id: str | None,
        iteration: int | None,
        loop: dict[str, Any] | None,
    ) -> RetryOutcome:
        """Dispatch one node through the retry policy, recording one trace entry per attempt."""
        walk.current_node = node.id
        if walk.state.steps_dispatched >= walk.plan.max_steps:
            raise StepLimitExceeded(
                f"Run exceeded {walk.plan.max_steps} step dispatches at node '{node.id}'"
            )
        dispatch = walk.state.steps_dispatched + 1
        walk.state = merge(walk.state, {"steps_dispatched": dispatch})
        # Stored before the invoker runs so a resumed run never reuses this number
        await self._save_state(walk.state)
        set_trace_context(node_id=node.id)

        run_id, graph_id = walk.state.run_id, walk.plan.graph_id
        scope = self._scope(walk.state, loop)
        params = resolve_bindings(node.inputs, scope)
        base_ctx = StepContext(
            run_id=run_id, graph_id=graph_id, node=node, action=node.action, scope=scope
        )
        policy = self.retry_policy.with_overrides(node.retry, node.timeout)
        current: dict[str, StepTraceEntry] = {}

        logger.info(f"▶ Step {dispatch}: {node.display_name} ({node.type})")

        async def on_attempt_start(attempt: int) -> None:
            entry = StepTraceEntry(
                step_id=node.id,
                step_name=node.display_name,
                node_type=node.type,
                attempt=attempt,
                dispatch=dispatch,
                parent_step_id=parent_step_id,
                iteration=iteration,
                input=params if self.capture_inputs else None,
            )
            current["entry"] = entry
            set_trace_context(attempt=attempt)
            await self._store_call("append_step_record", run_id, entry)
            if self._event_bus:
                await self._event_bus.emit_step_started(graph_id, run_id, node.id, attempt)

        async def attempt_fn(attempt: int) -> StepResult:
            ctx = replace(base_ctx, attempt=attempt)
            return await self.invoker.invoke(node.type, node.action, params, ctx)

        async def on_attempt_end(attempt: int, result: StepResult, will_retry: bool) -> None:
            entry = current.pop("entry")
            delta: dict[str, Any] = {}
            if result.success:
                entry.finish(
                    StepStatus.COMPLETED,
                    output=result.output if self.capture_outputs else None,
                )
                logger.info(f"   ✓ Completed in {entry.duration_ms}ms")
            else:
                error = result.error or StepError("Step failed")
                entry.finish(
                    StepStatus.RETRYING if will_retry else StepStatus.FAILED,
                    error=error.to_info(),
                )
                logger.error(f"   ✗ Failed: {error.message}")
                delta["errors"] = [
                    self._error_record(
                        node.id,
                        node.display_name,
                        attempt,
                        error,
                        {"dispatch": dispatch, "input": params} if self.capture_inputs else None,
                    )
                ]
            delta["trace"] = [entry]
            walk.state = merge(walk.state, delta)

            await self._store_call("append_step_record", run_id, entry)
            if self._event_bus:
                await self._event_bus.emit_step_finished(
                    graph_id,
                    run_id,
                    node.id,
                    attempt,
                    entry.status,
                    duration_ms=entry.duration_ms,
                    error=entry.error.message if entry.error else None,
                )

        outcome = await policy.run(
            attempt_fn,
            label=node.id,
            on_attempt_start=on_attempt_start,
            on_attempt_end=on_attempt_end,
        )

        if outcome.success:
            delta: dict[str, Any] = {"agent_state": {node.id: outcome.result.output}}
            messages = self._messages_for(node, params, outcome.result.output)
            if messages:
                delta["messages"] = messages
            walk.state = merge(walk.state, delta)
        else:
            error = outcome.result.error
            walk.state = merge(
                walk.state,
                {
                    "agent_state": {
                        node.id: {
                            "error": {
                                "message": error.message if error else "Step failed",
                                "code": error.code if error else None,
                            }
                        }
                    }
                },
            )
        set_trace_context(node_id=None, attempt=None)
        return outcome

    @staticmethod
    def _messages_for(node: NodeDefinition, params: dict[str, Any], output: Any) -> list[dict]:
        """Conversation messages contributed by ai-prompt steps."""
        if node.type != NodeType.AI_PROMPT or not isinstance(output, dict):
            return []
        return [
            {"role": "user", "content": params.get("prompt"), "node_id": node.id},
            {"role": "assistant", "content": output.get("content"), "node_id": node.id},
        ]

    @staticmethod
    def _error_record(
        step_id: str,
        step_name: str,
        attempt: int,
        error: StepError,
        context: dict[str, Any] | None = None,
    ) -> ErrorRecord:
        return ErrorRecord(
            id=f"err_{uuid.uuid4().hex[:12]}",
            step_id=step_id,
            step_name=step_name,
            attempt=attempt,
            error=error.to_info(),
            context=context or {},
        )

    # === COLLABORATORS ===

    async def _emit_edge(self, walk: _Walk, source: str, target: str, kind: str) -> None:
        if self._event_bus:
            await self._event_bus.emit_edge_traversed(
                walk.plan.graph_id, walk.state.run_id, source, target, kind
            )

    async def _save_state(self, state: RunState) -> None:
        await self._store_call("save_state", state)

    async def _store_call(self, method: str, *args: Any) -> None:
        """Call a store method, logging instead of aborting the run on failure."""
        try:
            await getattr(self.store, method)(*args)
        except Exception:
            logger.exception(f"Run store {method} failed")
