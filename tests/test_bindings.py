"""Tests for {{...}} input bindings."""

from agentgraph.graph.bindings import BindingScope, interpolate, resolve_bindings


def _scope(**overrides) -> BindingScope:
    defaults = {
        "trigger": {"email": "ana@example.com", "items": [1, 2, 3]},
        "context": {"workspace_id": "ws_1"},
        "state": {"classify": {"label": "billing", "score": 0.9}},
    }
    defaults.update(overrides)
    return BindingScope(**defaults)


class TestInterpolate:
    def test_whole_template_keeps_raw_value(self):
        assert interpolate("{{trigger.items}}", _scope()) == [1, 2, 3]
        assert interpolate("{{ classify.score }}", _scope()) == 0.9

    def test_embedded_template_renders_string(self):
        assert interpolate("Reply to {{trigger.email}}", _scope()) == "Reply to ana@example.com"

    def test_embedded_structure_renders_json(self):
        assert interpolate("items={{trigger.items}}", _scope()) == "items=[1, 2, 3]"

    def test_previous_node_output(self):
        assert interpolate("{{classify.label}}", _scope()) == "billing"
        assert interpolate("{{classify}}", _scope()) == {"label": "billing", "score": 0.9}

    def test_state_and_context_prefixes(self):
        assert interpolate("{{state.classify.label}}", _scope()) == "billing"
        assert interpolate("{{context.workspace_id}}", _scope()) == "ws_1"

    def test_unresolved_left_untouched(self):
        assert interpolate("{{unknown.path}}", _scope()) == "{{unknown.path}}"
        assert interpolate("Hi {{trigger.name}}", _scope()) == "Hi {{trigger.name}}"

    def test_loop_scope(self):
        scope = _scope(loop={"item": {"sku": "A1"}, "index": 0})
        assert interpolate("{{loop.item.sku}}", scope) == "A1"
        assert interpolate("{{loop.index}}", scope) == 0

    def test_loop_outside_loop_is_unresolved(self):
        assert interpolate("{{loop.item}}", _scope()) == "{{loop.item}}"


class TestResolveBindings:
    def test_recurses_into_structures(self):
        params = {
            "to": "{{trigger.email}}",
            "tags": ["{{classify.label}}", "static"],
            "meta": {"score": "{{classify.score}}", "count": 3},
        }
        assert resolve_bindings(params, _scope()) == {
            "to": "ana@example.com",
            "tags": ["billing", "static"],
            "meta": {"score": 0.9, "count": 3},
        }

    def test_as_context_exposes_node_outputs_and_prefixes(self):
        context = _scope().as_context()
        assert context["classify"]["label"] == "billing"
        assert context["trigger"]["email"] == "ana@example.com"
        assert "loop" not in context

    def test_resolve_bare_reference(self):
        assert _scope().resolve("trigger.items") == [1, 2, 3]
        assert _scope().resolve("trigger.nothing", default=[]) == []
