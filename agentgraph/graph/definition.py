"""
Graph Definition - The static description of an agent workflow.

A graph is a set of named states (nodes) plus a ``startAt`` entry point.
Nodes reference each other by id through ``next``, ``onError`` and, for
loops, ``loop.body``. Documents use camelCase keys; Python code may use
either the alias or the field name.

Node types:
- trigger: passes the triggering payload through
- ai-prompt: renders a prompt and calls the configured LLM provider
- action: calls a registered connector action
- logic-condition: evaluates a condition and follows the "true"/"false" edge
- logic-loop: runs a body sub-workflow once per iteration
"""

import json
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class NodeType(StrEnum):
    """The closed set of node types the engine knows how to dispatch."""

    TRIGGER = "trigger"
    AI_PROMPT = "ai-prompt"
    ACTION = "action"
    LOGIC_CONDITION = "logic-condition"
    LOGIC_LOOP = "logic-loop"


class _DefinitionModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class Condition(_DefinitionModel):
    """
    A boolean expression tree.

    Field conditions compare the value at a dotted ``field`` path with
    ``value``; logical conditions (``and``, ``or``, ``not``) combine nested
    ``conditions``. The operator is kept as a plain string so unknown
    operators survive loading and are reported at evaluation time.
    """

    operator: str
    field: str | None = None
    value: Any = None
    conditions: list["Condition"] | None = None


class RetryOverride(_DefinitionModel):
    """Per-node overrides of the engine's retry policy."""

    max_attempts: int | None = Field(default=None, ge=1)
    base_delay: float | None = Field(default=None, ge=0)
    backoff_factor: float | None = Field(default=None, ge=1)
    max_delay: float | None = Field(default=None, ge=0)


class LoopConfig(_DefinitionModel):
    """Configuration of a logic-loop node."""

    body: str = Field(description="Entry node id of the sub-workflow run per iteration")
    max_iterations: int | None = Field(
        default=None, description="Hard iteration cap; required by the validator"
    )
    items: str | None = Field(
        default=None, description="Binding resolving to a list to iterate over"
    )
    while_: Condition | None = Field(
        default=None,
        alias="while",
        description="Checked before each iteration; the loop stops when it is false",
    )


class NodeDefinition(_DefinitionModel):
    """A single state in the graph."""

    id: str
    type: NodeType
    name: str = ""
    description: str = ""

    action: str | None = Field(default=None, description="Connector action name for action nodes")
    inputs: dict[str, Any] = Field(
        default_factory=dict,
        description="Step params; string values may contain {{...}} bindings",
    )
    input_schema: dict[str, Any] | None = Field(
        default=None,
        description="JSON-schema subset (required, properties.*.type) checked before invoking",
    )

    next: str | list[str] | dict[str, str] | None = Field(
        default=None,
        description="Successor id, fan-out list, or {'true': id, 'false': id} for conditions",
    )
    on_error: str | None = Field(default=None, description="Node to run when retries are exhausted")
    retry: RetryOverride | None = None
    timeout: float | None = Field(default=None, gt=0, description="Per-attempt timeout in seconds")

    condition: Condition | None = None
    strict: bool = False

    loop: LoopConfig | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def next_targets(self) -> list[str]:
        """All successor ids in dispatch order, ignoring branch selection."""
        if self.next is None:
            return []
        if isinstance(self.next, str):
            return [self.next]
        if isinstance(self.next, dict):
            return [t for t in self.next.values() if t]
        return list(self.next)

    def branch_target(self, result: bool) -> str | None:
        """The successor selected by a condition result."""
        if isinstance(self.next, dict):
            return self.next.get("true" if result else "false")
        if isinstance(self.next, list) and len(self.next) == 2:
            return self.next[0] if result else self.next[1]
        if isinstance(self.next, str):
            return self.next if result else None
        return None

    def referenced_ids(self) -> list[str]:
        """Every node id this node points at."""
        refs = self.next_targets()
        if self.on_error:
            refs.append(self.on_error)
        if self.loop is not None:
            refs.append(self.loop.body)
        return refs


class GraphDefinition(_DefinitionModel):
    """
    A complete workflow graph.

    Node ids default to their key in ``states``, so documents may omit them.
    """

    id: str
    name: str = ""
    version: str = "1.0"
    description: str = ""
    start_at: str
    states: dict[str, NodeDefinition]
    max_steps: int | None = Field(
        default=None, gt=0, description="Dispatch guard; falls back to the engine default"
    )

    @model_validator(mode="before")
    @classmethod
    def _default_node_ids(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("states"), dict):
            states = {}
            for key, node in data["states"].items():
                if isinstance(node, dict) and "id" not in node:
                    node = {**node, "id": key}
                states[key] = node
            data = {**data, "states": states}
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GraphDefinition":
        return cls.model_validate(data)

    @classmethod
    def from_json(cls, text: str) -> "GraphDefinition":
        return cls.model_validate(json.loads(text))

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
