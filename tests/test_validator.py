"""Tests for graph loading, validation and compilation."""

import json

import pytest

from agentgraph.errors import GraphDefinitionError
from agentgraph.graph.definition import GraphDefinition, NodeType
from agentgraph.graph.plan import compile_graph
from agentgraph.graph.validator import load_graph, validate_graph


def _graph(states: dict, start_at: str = "start", **extra) -> dict:
    return {"id": "g", "startAt": start_at, "states": states, **extra}


VALID = _graph(
    {
        "start": {"type": "trigger", "next": "check"},
        "check": {
            "type": "logic-condition",
            "condition": {"operator": "eq", "field": "trigger.vip", "value": True},
            "next": {"true": "vip", "false": "regular"},
        },
        "vip": {"type": "action", "action": "notify"},
        "regular": {"type": "action", "action": "queue"},
    }
)


class TestLoad:
    def test_node_ids_default_to_keys(self):
        graph = load_graph(VALID)
        assert graph.states["vip"].id == "vip"
        assert graph.start_at == "start"

    def test_from_json_string(self):
        graph = load_graph(json.dumps(VALID))
        assert isinstance(graph, GraphDefinition)
        assert graph.states["check"].type == NodeType.LOGIC_CONDITION

    def test_camel_case_round_trip(self):
        data = load_graph(VALID).to_dict()
        assert data["startAt"] == "start"
        assert "start_at" not in data

    def test_schema_errors_become_definition_errors(self):
        with pytest.raises(GraphDefinitionError) as exc_info:
            load_graph({"id": "g", "states": {}})
        assert any("startAt" in e for e in exc_info.value.errors)

    def test_unknown_node_type(self):
        with pytest.raises(GraphDefinitionError):
            load_graph(_graph({"start": {"type": "webhook"}}))

    def test_invalid_json(self):
        with pytest.raises(GraphDefinitionError, match="not valid JSON"):
            load_graph("{not json")


class TestValidate:
    def test_valid_graph(self):
        report = validate_graph(load_graph(VALID))
        assert report.valid
        assert report.warnings == []

    def test_missing_start_at_state(self):
        report = validate_graph(load_graph(_graph({"a": {"type": "trigger"}}, start_at="ghost")))
        assert not report.valid
        assert "startAt node 'ghost' not found" in report.errors

    def test_dangling_references(self):
        graph = _graph(
            {"start": {"type": "trigger", "next": "nowhere", "onError": "also_nowhere"}}
        )
        report = validate_graph(load_graph(graph))
        assert len(report.errors) == 2

    def test_condition_without_condition(self):
        graph = _graph(
            {
                "start": {"type": "logic-condition", "next": {"true": "a", "false": "a"}},
                "a": {"type": "trigger"},
            }
        )
        report = validate_graph(load_graph(graph))
        assert not report.valid

    def test_branch_keys_must_be_true_false(self):
        graph = _graph(
            {
                "start": {
                    "type": "logic-condition",
                    "condition": {"operator": "eq", "field": "x", "value": 1},
                    "next": {"yes": "a", "no": "a"},
                },
                "a": {"type": "trigger"},
            }
        )
        assert not validate_graph(load_graph(graph)).valid

    def test_loop_requires_iteration_cap(self):
        graph = _graph(
            {
                "start": {"type": "logic-loop", "loop": {"body": "work"}},
                "work": {"type": "action", "action": "noop"},
            }
        )
        report = validate_graph(load_graph(graph))
        assert not report.valid
        assert any("maxIterations" in e for e in report.errors)

    def test_action_node_requires_action(self):
        report = validate_graph(load_graph(_graph({"start": {"type": "action"}})))
        assert not report.valid

    def test_warnings_for_unreachable_and_cycles(self):
        graph = _graph(
            {
                "start": {"type": "trigger", "next": "a"},
                "a": {"type": "action", "action": "x", "next": "start"},
                "orphan": {"type": "action", "action": "x"},
            }
        )
        report = validate_graph(load_graph(graph))
        assert report.valid
        assert any("orphan" in w for w in report.warnings)
        assert any("cycles" in w for w in report.warnings)


class TestCompile:
    def test_missing_start_at_raises_before_execution(self):
        with pytest.raises(GraphDefinitionError, match="ghost"):
            compile_graph(_graph({"a": {"type": "trigger"}}, start_at="ghost"))

    def test_plan(self):
        plan = compile_graph(VALID, default_max_steps=50)
        assert plan.graph_id == "g"
        assert plan.start_at == "start"
        assert plan.order[0] == "start"
        assert set(plan.order) == {"start", "check", "vip", "regular"}
        assert plan.max_steps == 50

    def test_graph_max_steps_wins(self):
        plan = compile_graph({**VALID, "maxSteps": 7}, default_max_steps=50)
        assert plan.max_steps == 7

    def test_successors_follow_branch(self):
        plan = compile_graph(VALID)
        check = plan.node("check")
        assert plan.successors(check, {"result": True}) == ["vip"]
        assert plan.successors(check, {"result": False}) == ["regular"]
        assert plan.successors(plan.node("start"), {}) == ["check"]
