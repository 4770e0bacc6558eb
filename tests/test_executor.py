"""
Tests for GraphExecutor: routing, retries, failure handling, loops,
step limits, cancellation and resume.
"""

import asyncio

import pytest

from agentgraph.errors import ExecutionError, GraphDefinitionError, RunStateError
from agentgraph.graph.definition import NodeType
from agentgraph.graph.executor import GraphExecutor
from agentgraph.graph.reducer import merge
from agentgraph.graph.retry import RetryPolicy
from agentgraph.runtime.event_bus import EventType
from agentgraph.schemas.run_state import ErrorInfo, RunStatus, StepStatus, StepTraceEntry


def _graph(states: dict, start_at: str = "a", **extra) -> dict:
    return {"id": "test-graph", "startAt": start_at, "states": states, **extra}


def _action(action: str = "echo", **fields) -> dict:
    return {"type": "action", "action": action, **fields}


def _step_ids(state) -> list[str]:
    return [e.step_id for e in state.trace]


class TestLinearRuns:
    @pytest.mark.asyncio
    async def test_linear_graph_completes(self, executor, store):
        graph = _graph({"a": _action(next="b"), "b": _action(next="c"), "c": _action()})

        state = await executor.execute(graph, {"email": "ana@example.com"})

        assert state.status == RunStatus.COMPLETED
        assert _step_ids(state) == ["a", "b", "c"]
        assert all(e.status == StepStatus.COMPLETED for e in state.trace)
        assert state.output == {"node": "c"}
        assert state.completed_at is not None
        assert state.metrics.success_rate == 100.0

        stored = await store.get_run(state.run_id)
        assert stored.status == RunStatus.COMPLETED
        assert len(stored.trace) == 3

    @pytest.mark.asyncio
    async def test_bindings_reach_handlers(self, executor):
        graph = _graph(
            {
                "a": {"type": "trigger", "next": "b"},
                "b": _action(
                    inputs={
                        "to": "{{trigger.email}}",
                        "workspace": "{{context.workspace_id}}",
                        "subject": "Hi {{a.name}}",
                    }
                ),
            }
        )

        state = await executor.execute(
            graph, {"email": "ana@example.com", "name": "Ana"}, context={"workspace_id": "ws_1"}
        )

        assert state.agent_state["b"] == {
            "node": "b",
            "to": "ana@example.com",
            "workspace": "ws_1",
            "subject": "Hi Ana",
        }
        assert state.trace[1].input["to"] == "ana@example.com"
        assert state.context.workspace_id == "ws_1"

    @pytest.mark.asyncio
    async def test_fan_out_is_sequential_depth_first(self, executor):
        graph = _graph(
            {
                "a": _action(next=["b", "c"]),
                "b": _action(next="d"),
                "c": _action(),
                "d": _action(),
            }
        )

        state = await executor.execute(graph)

        assert _step_ids(state) == ["a", "b", "d", "c"]
        assert [e.dispatch for e in state.trace] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_join_node_runs_once(self, executor):
        graph = _graph(
            {
                "a": _action(next=["b", "c"]),
                "b": _action(next="d"),
                "c": _action(next="d"),
                "d": _action(),
            }
        )

        state = await executor.execute(graph)

        assert state.status == RunStatus.COMPLETED
        assert _step_ids(state) == ["a", "b", "d", "c"]
        assert state.executed == ["a", "b", "d", "c"]

    @pytest.mark.asyncio
    async def test_back_edge_does_not_rerun_nodes(self, executor):
        graph = _graph({"a": _action(next="b"), "b": _action(next="a")})

        state = await executor.execute(graph)

        assert state.status == RunStatus.COMPLETED
        assert _step_ids(state) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_ai_prompt_appends_messages(self, executor):
        graph = _graph(
            {
                "a": {"type": "trigger", "next": "summarize"},
                "summarize": {"type": "ai-prompt", "inputs": {"prompt": "Summarize {{a.text}}"}},
            }
        )

        state = await executor.execute(graph, {"text": "the invoice"})

        assert state.agent_state["summarize"]["content"] == "Summarize the invoice"
        assert [m["role"] for m in state.messages] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_capture_flags(self, invoker, store):
        executor = GraphExecutor(invoker, store=store, capture_inputs=False, capture_outputs=False)

        state = await executor.execute(_graph({"a": _action(inputs={"secret": "x"})}))

        assert state.trace[0].input is None
        assert state.trace[0].output is None
        assert state.agent_state["a"]["secret"] == "x"

    @pytest.mark.asyncio
    async def test_invalid_graph_creates_no_run(self, executor, store):
        with pytest.raises(GraphDefinitionError):
            await executor.execute(_graph({"a": _action()}, start_at="missing"))

        assert await store.list_runs() == []


class TestBranching:
    GRAPH = _graph(
        {
            "a": {
                "type": "logic-condition",
                "condition": {
                    "operator": "and",
                    "conditions": [
                        {"operator": "gt", "field": "trigger.age", "value": 18},
                        {"operator": "eq", "field": "trigger.country", "value": "US"},
                    ],
                },
                "next": {"true": "adult", "false": "minor"},
            },
            "adult": _action(),
            "minor": _action(),
        }
    )

    @pytest.mark.asyncio
    async def test_true_branch(self, executor):
        state = await executor.execute(self.GRAPH, {"age": 20, "country": "US"})
        assert _step_ids(state) == ["a", "adult"]
        assert state.agent_state["a"] == {"result": True}

    @pytest.mark.asyncio
    async def test_false_branch(self, executor):
        state = await executor.execute(self.GRAPH, {"age": 16, "country": "US"})
        assert _step_ids(state) == ["a", "minor"]

    @pytest.mark.asyncio
    async def test_list_branch_form(self, executor):
        graph = _graph(
            {
                "a": {
                    "type": "logic-condition",
                    "condition": {"operator": "eq", "field": "trigger.vip", "value": True},
                    "next": ["vip", "regular"],
                },
                "vip": _action(),
                "regular": _action(),
            }
        )
        state = await executor.execute(graph, {"vip": False})
        assert _step_ids(state) == ["a", "regular"]


class TestFailureHandling:
    @pytest.mark.asyncio
    async def test_on_error_route_completes_run(self, executor):
        graph = _graph(
            {
                "a": _action(next="b"),
                "b": _action("boom", next="c", onError="err", retry={"maxAttempts": 1}),
                "c": _action(),
                "err": _action(),
            }
        )

        state = await executor.execute(graph)

        assert state.status == RunStatus.COMPLETED
        assert _step_ids(state) == ["a", "b", "err"]
        assert len(state.trace) == 3
        assert len(state.errors) >= 1
        assert state.errors[0].step_id == "b"
        assert state.errors[0].error.code == "EXECUTION_ERROR"
        assert state.agent_state["b"] == {
            "error": {"message": "connector unavailable", "code": "EXECUTION_ERROR"}
        }
        assert "c" not in state.agent_state

    @pytest.mark.asyncio
    async def test_on_error_runs_before_queued_siblings(self, executor):
        graph = _graph(
            {
                "a": _action(next=["b", "c"]),
                "b": _action("boom", onError="err", retry={"maxAttempts": 1}),
                "c": _action(),
                "err": _action(),
            }
        )

        state = await executor.execute(graph)

        assert _step_ids(state) == ["a", "b", "err", "c"]

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_the_run(self, executor, store):
        graph = _graph({"a": _action(next="b"), "b": _action("boom", next="c"), "c": _action()})

        state = await executor.execute(graph)

        assert state.status == RunStatus.FAILED
        b_entries = [e for e in state.trace if e.step_id == "b"]
        assert [e.status for e in b_entries] == [
            StepStatus.RETRYING,
            StepStatus.RETRYING,
            StepStatus.FAILED,
        ]
        assert [e.attempt for e in b_entries] == [1, 2, 3]
        assert len(state.errors) == 3
        assert state.failure.step_id == "b"
        assert state.failure.attempts == 3
        assert state.failure.message == "connector unavailable"
        assert "c" not in _step_ids(state)

        stored = await store.get_run(state.run_id)
        assert stored.status == RunStatus.FAILED
        assert stored.failure.step_id == "b"

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_immediately(self, executor):
        graph = _graph({"a": _action("not-registered")})

        state = await executor.execute(graph)

        assert state.status == RunStatus.FAILED
        assert len(state.trace) == 1
        assert state.failure.code == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_node_timeout(self, invoker, store):
        async def hang(params, ctx):
            await asyncio.Event().wait()

        invoker.register_action("hang", hang)
        executor = GraphExecutor(invoker, store=store, retry_policy=RetryPolicy(base_delay=0))
        graph = _graph({"a": _action("hang", timeout=0.05, retry={"maxAttempts": 2})})

        state = await executor.execute(graph)

        assert state.status == RunStatus.FAILED
        assert state.failure.code == "TIMEOUT"
        assert [e.status for e in state.trace] == [StepStatus.RETRYING, StepStatus.FAILED]

    @pytest.mark.asyncio
    async def test_flaky_step_recovers(self, invoker, executor):
        calls = []

        async def flaky(params, ctx):
            calls.append(ctx.attempt)
            if ctx.attempt < 2:
                raise ExecutionError("try again")
            return {"ok": True}

        invoker.register_action("flaky", flaky)

        state = await executor.execute(_graph({"a": _action("flaky")}))

        assert state.status == RunStatus.COMPLETED
        assert calls == [1, 2]
        assert [e.status for e in state.trace] == [StepStatus.RETRYING, StepStatus.COMPLETED]
        assert state.metrics.completed_steps == 1
        assert state.metrics.total_steps == 2


class TestLoops:
    @pytest.mark.asyncio
    async def test_items_loop_is_capped(self, executor):
        graph = _graph(
            {
                "a": {
                    "type": "logic-loop",
                    "loop": {"body": "work", "maxIterations": 2, "items": "trigger.skus"},
                    "next": "done",
                },
                "work": _action(inputs={"sku": "{{loop.item}}", "i": "{{loop.index}}"}),
                "done": _action(),
            }
        )

        state = await executor.execute(graph, {"skus": ["A", "B", "C"]})

        assert state.status == RunStatus.COMPLETED
        assert _step_ids(state) == ["a", "work", "work", "done"]
        body = [e for e in state.trace if e.step_id == "work"]
        assert [e.parent_step_id for e in body] == ["a", "a"]
        assert [e.iteration for e in body] == [0, 1]
        assert [e.input["sku"] for e in body] == ["A", "B"]

        summary = state.agent_state["a"]
        assert summary["completedIterations"] == 2
        assert [r["sku"] for r in summary["results"]] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_while_condition_stops_loop(self, executor):
        graph = _graph(
            {
                "a": {
                    "type": "logic-loop",
                    "loop": {
                        "body": "work",
                        "maxIterations": 10,
                        "while": {"operator": "lt", "field": "loop.index", "value": 3},
                    },
                },
                "work": _action(),
            }
        )

        state = await executor.execute(graph)

        assert state.agent_state["a"]["completedIterations"] == 3

    @pytest.mark.asyncio
    async def test_failing_body_fails_loop(self, executor):
        graph = _graph(
            {
                "a": {
                    "type": "logic-loop",
                    "loop": {"body": "work", "maxIterations": 3},
                    "onError": "cleanup",
                },
                "work": _action("boom", retry={"maxAttempts": 1}),
                "cleanup": _action(),
            }
        )

        state = await executor.execute(graph)

        assert state.status == RunStatus.COMPLETED
        assert _step_ids(state) == ["a", "work", "cleanup"]


class TestStepLimit:
    @pytest.mark.asyncio
    async def test_loop_dispatches_are_bounded(self, executor):
        graph = _graph(
            {
                "a": {"type": "logic-loop", "loop": {"body": "work", "maxIterations": 10}},
                "work": _action(),
            },
            maxSteps=5,
        )

        state = await executor.execute(graph)

        assert state.status == RunStatus.FAILED
        assert state.steps_dispatched == 5
        assert len(state.trace) == 5
        assert state.failure.code == "STEP_LIMIT_EXCEEDED"
        assert state.errors[-1].error.code == "STEP_LIMIT_EXCEEDED"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_between_steps(self, invoker, executor):
        started = asyncio.Event()
        release = asyncio.Event()
        seen: dict[str, str] = {}

        async def blocker(params, ctx):
            seen["run_id"] = ctx.run_id
            started.set()
            await release.wait()
            return {"done": True}

        invoker.register_action("blocker", blocker)
        graph = _graph({"a": _action("blocker", next="b"), "b": _action()})

        task = asyncio.create_task(executor.execute(graph))
        await started.wait()
        assert executor.is_active(seen["run_id"])
        assert executor.cancel(seen["run_id"]) is True
        release.set()
        state = await task

        assert state.status == RunStatus.CANCELLED
        assert _step_ids(state) == ["a"]
        assert state.trace[0].status == StepStatus.COMPLETED
        assert not executor.is_active(seen["run_id"])

    def test_cancel_unknown_run(self, executor):
        assert executor.cancel("run_missing") is False


class TestResume:
    GRAPH = _graph({"a": _action(next="b"), "b": _action(next="c"), "c": _action()})

    @pytest.mark.asyncio
    async def test_resume_from_pending(self, executor, store):
        plan, state = await executor.start_run(self.GRAPH, {"x": 1})
        # Simulate a process that stopped after "a" completed
        state = merge(
            state,
            {"status": RunStatus.RUNNING, "pending": ["b"], "agent_state": {"a": {"node": "a"}}},
        )
        await store.save_state(state)

        resumed = await executor.resume(self.GRAPH, state.run_id)

        assert resumed.status == RunStatus.COMPLETED
        assert _step_ids(resumed) == ["b", "c"]
        assert resumed.agent_state["a"] == {"node": "a"}

    @pytest.mark.asyncio
    async def test_resume_recovers_records_of_interrupted_retry(self, executor, store):
        _, state = await executor.start_run(self.GRAPH)
        done = StepTraceEntry(step_id="a", dispatch=1).finish(StepStatus.COMPLETED)
        retrying = StepTraceEntry(step_id="b", dispatch=2, attempt=1).finish(
            StepStatus.RETRYING,
            error=ErrorInfo(message="gateway timeout", code="EXECUTION_ERROR"),
        )
        in_flight = StepTraceEntry(step_id="b", dispatch=2, attempt=2)
        for record in (done, retrying, in_flight):
            await store.append_step_record(state.run_id, record)
        # The process died during attempt 2 of "b": only "a" made it into state.json
        state = merge(
            state,
            {
                "status": RunStatus.RUNNING,
                "pending": ["b"],
                "executed": ["a"],
                "trace": [done],
                "steps_dispatched": 2,
            },
        )
        await store.save_state(state)

        resumed = await executor.resume(self.GRAPH, state.run_id)

        assert resumed.status == RunStatus.COMPLETED
        assert [e.record_key for e in resumed.trace] == [
            "a:1:1",
            "b:2:1",
            "b:2:2",
            "b:3:1",
            "c:4:1",
        ]
        assert [e.status for e in resumed.trace if e.step_id == "b"] == [
            StepStatus.RETRYING,
            StepStatus.FAILED,
            StepStatus.COMPLETED,
        ]
        assert [e.error.message for e in resumed.errors] == [
            "gateway timeout",
            "Interrupted before the attempt finished",
        ]
        records = await store.get_step_records(state.run_id)
        assert len(records) == 5
        assert all(r.is_finished for r in records)

    @pytest.mark.asyncio
    async def test_resume_skips_executed_nodes(self, executor, store):
        _, state = await executor.start_run(self.GRAPH)
        state = merge(
            state,
            {"status": RunStatus.RUNNING, "pending": ["a", "c"], "executed": ["a", "b"]},
        )
        await store.save_state(state)

        resumed = await executor.resume(self.GRAPH, state.run_id)

        assert _step_ids(resumed) == ["c"]
        assert resumed.executed == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_terminal_run_cannot_resume(self, executor):
        state = await executor.execute(self.GRAPH)
        with pytest.raises(RunStateError):
            await executor.resume(self.GRAPH, state.run_id)

    @pytest.mark.asyncio
    async def test_wrong_graph(self, executor, store):
        _, state = await executor.start_run(self.GRAPH)
        other = {**self.GRAPH, "id": "other-graph"}
        with pytest.raises(RunStateError):
            await executor.resume(other, state.run_id)


class TestEvents:
    @pytest.mark.asyncio
    async def test_lifecycle_events(self, executor, event_bus):
        graph = _graph({"a": _action(next="b"), "b": _action()})

        state = await executor.execute(graph)

        history = event_bus.get_history(run_id=state.run_id)[::-1]
        types = [e.type for e in history]
        assert types[0] == EventType.RUN_STARTED
        assert types[-1] == EventType.RUN_COMPLETED
        assert types.count(EventType.STEP_STARTED) == 2
        assert types.count(EventType.STEP_COMPLETED) == 2
        edges = [e.data for e in history if e.type == EventType.EDGE_TRAVERSED]
        assert edges == [{"source_node": "a", "target_node": "b", "edge": "next"}]

    @pytest.mark.asyncio
    async def test_retry_and_failure_events(self, executor, event_bus):
        state = await executor.execute(_graph({"a": _action("boom", retry={"maxAttempts": 2})}))

        types = [e.type for e in event_bus.get_history(run_id=state.run_id)]
        assert EventType.STEP_RETRY in types
        assert EventType.STEP_FAILED in types
        assert EventType.RUN_FAILED in types

    @pytest.mark.asyncio
    async def test_custom_node_handler(self, invoker, executor):
        async def trigger_handler(params, ctx):
            return {"custom": True, "node": ctx.node.id}

        invoker.register(NodeType.TRIGGER, trigger_handler)

        state = await executor.execute(_graph({"a": {"type": "trigger"}}))

        assert state.agent_state["a"] == {"custom": True, "node": "a"}


class TestPersistence:
    @pytest.mark.asyncio
    async def test_step_records_written_for_every_attempt(self, executor, store):
        graph = _graph({"a": _action(next="b"), "b": _action("boom", retry={"maxAttempts": 2})})

        state = await executor.execute(graph)

        records = await store.get_step_records(state.run_id)
        assert [(r.step_id, r.attempt, r.status) for r in records] == [
            ("a", 1, StepStatus.COMPLETED),
            ("b", 1, StepStatus.RETRYING),
            ("b", 2, StepStatus.FAILED),
        ]

    @pytest.mark.asyncio
    async def test_store_failures_do_not_abort_run(self, executor, store, monkeypatch):
        async def broken(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(store, "append_step_record", broken)

        state = await executor.execute(_graph({"a": _action()}))

        assert state.status == RunStatus.COMPLETED
