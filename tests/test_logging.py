"""Tests for log formatters and trace context propagation."""

import asyncio
import json
import logging

import pytest

from agentgraph.observability import (
    HumanReadableFormatter,
    StructuredFormatter,
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)


@pytest.fixture(autouse=True)
def _clean_context():
    clear_trace_context()
    yield
    clear_trace_context()


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("agentgraph.test", logging.INFO, __file__, 1, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestTraceContext:
    def test_set_merges(self):
        set_trace_context(run_id="run_1", graph_id="g")
        set_trace_context(node_id="fetch")
        assert get_trace_context() == {"run_id": "run_1", "graph_id": "g", "node_id": "fetch"}

    def test_get_returns_copy(self):
        set_trace_context(run_id="run_1")
        get_trace_context()["run_id"] = "changed"
        assert get_trace_context()["run_id"] == "run_1"

    @pytest.mark.asyncio
    async def test_tasks_do_not_share_context(self):
        async def run(run_id: str) -> dict:
            set_trace_context(run_id=run_id)
            await asyncio.sleep(0)
            return get_trace_context()

        first, second = await asyncio.gather(run("run_a"), run("run_b"))

        assert first == {"run_id": "run_a"}
        assert second == {"run_id": "run_b"}
        assert get_trace_context() == {}


class TestStructuredFormatter:
    def test_json_includes_context_and_extras(self):
        set_trace_context(run_id="run_1", graph_id="g")

        line = StructuredFormatter().format(
            _record("\033[32mStep done\033[0m", node_id="fetch", latency_ms=12)
        )
        entry = json.loads(line)

        assert entry["message"] == "Step done"
        assert entry["level"] == "info"
        assert entry["run_id"] == "run_1"
        assert entry["node_id"] == "fetch"
        assert entry["latency_ms"] == 12


class TestHumanReadableFormatter:
    def test_prefix(self):
        set_trace_context(run_id="run_20260101_000000_abcdef12", node_id="send")

        line = HumanReadableFormatter().format(_record("Retrying", event="step_retry"))

        assert "run:abcdef12" in line
        assert "node:send" in line
        assert line.endswith("Retrying [step_retry]")


def test_configure_logging_installs_one_handler():
    root = logging.getLogger()
    saved = (root.handlers[:], root.level)
    try:
        configure_logging("debug", "human")
        configure_logging("warning", "human")
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, HumanReadableFormatter)
        assert root.level == logging.WARNING
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
