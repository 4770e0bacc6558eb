"""
Input bindings - ``{{...}}`` template resolution for step params.

Supported references:
- ``{{trigger.path}}``  the payload that started the run
- ``{{context.path}}``  the run context (workspace/user ids, extra keys)
- ``{{state.path}}``    the cumulative agent state
- ``{{loop.item}}`` / ``{{loop.index}}``  the current loop iteration
- ``{{nodeId.path}}`` or ``{{nodeId}}``  output of a previously executed node

A string that consists of a single template resolves to the raw value
(so lists and numbers survive); templates embedded in longer strings are
rendered with ``str()``. Unresolvable templates are left untouched.
"""

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from agentgraph.graph.conditions import get_path

logger = logging.getLogger(__name__)

TEMPLATE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

_UNRESOLVED = object()

SCOPE_PREFIXES = ("trigger", "context", "state", "loop")


@dataclass
class BindingScope:
    """Everything a template may reference while a step is being prepared."""

    trigger: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    state: dict[str, Any] = field(default_factory=dict)
    loop: dict[str, Any] | None = None

    def as_context(self) -> dict[str, Any]:
        """Flat mapping used as the evaluation context for conditions."""
        data: dict[str, Any] = dict(self.state)
        data.update(
            {
                "trigger": self.trigger,
                "context": self.context,
                "state": self.state,
            }
        )
        if self.loop is not None:
            data["loop"] = self.loop
        return data

    def lookup(self, expression: str) -> Any:
        head, _, rest = expression.partition(".")
        if head in SCOPE_PREFIXES:
            root = getattr(self, head)
            if root is None:
                return _UNRESOLVED
            return get_path(root, rest, _UNRESOLVED) if rest else root

        # Previous node output
        if head not in self.state:
            return _UNRESOLVED
        node_output = self.state[head]
        return get_path(node_output, rest, _UNRESOLVED) if rest else node_output

    def resolve(self, expression: str, default: Any = None) -> Any:
        """Look up a bare reference such as ``trigger.items``."""
        value = self.lookup(expression.strip())
        return default if value is _UNRESOLVED else value


def _render(value: Any) -> str:
    if isinstance(value, dict | list):
        return json.dumps(value, default=str)
    return str(value)


def interpolate(template: str, scope: BindingScope) -> Any:
    """Resolve the templates in one string."""
    whole = TEMPLATE_PATTERN.fullmatch(template.strip())
    if whole:
        value = scope.lookup(whole.group(1).strip())
        return template if value is _UNRESOLVED or value is None else value

    def replace(match: re.Match) -> str:
        value = scope.lookup(match.group(1).strip())
        if value is _UNRESOLVED or value is None:
            logger.debug(f"Unresolved binding left as-is: {match.group(0)}")
            return match.group(0)
        return _render(value)

    return TEMPLATE_PATTERN.sub(replace, template)


def resolve_bindings(data: Any, scope: BindingScope) -> Any:
    """Recursively resolve templates in strings, lists and mappings."""
    if isinstance(data, str):
        return interpolate(data, scope) if "{{" in data else data
    if isinstance(data, list):
        return [resolve_bindings(item, scope) for item in data]
    if isinstance(data, Mapping):
        return {key: resolve_bindings(value, scope) for key, value in data.items()}
    return data
