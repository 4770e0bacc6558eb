"""Shared fixtures for agentgraph tests."""

import pytest

from agentgraph.errors import ExecutionError
from agentgraph.graph.executor import GraphExecutor
from agentgraph.graph.invoker import StepActionInvoker
from agentgraph.graph.retry import RetryPolicy
from agentgraph.llm import MockLLMProvider
from agentgraph.runtime.event_bus import EventBus
from agentgraph.storage import InMemoryRunStore


@pytest.fixture
def invoker():
    invoker = StepActionInvoker(llm=MockLLMProvider())

    async def echo(params, ctx):
        return {"node": ctx.node.id, **params}

    async def boom(params, ctx):
        raise ExecutionError("connector unavailable")

    invoker.register_action("echo", echo)
    invoker.register_action("boom", boom)
    return invoker


@pytest.fixture
def store():
    return InMemoryRunStore()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def executor(invoker, store, event_bus):
    """Executor with zero backoff so retries do not sleep."""
    return GraphExecutor(
        invoker,
        store=store,
        event_bus=event_bus,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0, timeout=5),
    )
