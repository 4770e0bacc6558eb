"""
Execution plan - A validated graph ready for the walker.

Compilation validates the definition once and precomputes what the walker
needs at dispatch time: the reachable node order and the step cap. Nothing
in the plan is re-validated while a run is in progress.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any

from agentgraph.graph.definition import GraphDefinition, NodeDefinition, NodeType
from agentgraph.graph.validator import ensure_valid, load_graph

DEFAULT_MAX_STEPS = 100


@dataclass
class ExecutionPlan:
    """Compiled form of a GraphDefinition."""

    graph: GraphDefinition
    order: list[str]
    warnings: list[str] = field(default_factory=list)
    max_steps: int = DEFAULT_MAX_STEPS

    @property
    def graph_id(self) -> str:
        return self.graph.id

    @property
    def start_at(self) -> str:
        return self.graph.start_at

    def node(self, node_id: str) -> NodeDefinition:
        return self.graph.states[node_id]

    def successors(self, node: NodeDefinition, output: Any) -> list[str]:
        """Next node ids after ``node`` completed with ``output``."""
        if node.type == NodeType.LOGIC_CONDITION:
            result = bool(output.get("result")) if isinstance(output, dict) else bool(output)
            target = node.branch_target(result)
            return [target] if target else []
        return node.next_targets()


def _bfs(graph: GraphDefinition, start: str) -> list[str]:
    order: list[str] = []
    seen = {start}
    queue = deque([start])
    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        for target in graph.states[node_id].referenced_ids():
            if target not in seen and target in graph.states:
                seen.add(target)
                queue.append(target)
    return order


def compile_graph(
    graph: GraphDefinition | dict[str, Any] | str,
    default_max_steps: int = DEFAULT_MAX_STEPS,
) -> ExecutionPlan:
    """
    Validate a graph and build its execution plan.

    Raises:
        GraphDefinitionError: the definition cannot be executed
    """
    graph = load_graph(graph)
    report = ensure_valid(graph)

    return ExecutionPlan(
        graph=graph,
        order=_bfs(graph, graph.start_at),
        warnings=list(report.warnings),
        max_steps=graph.max_steps or default_max_steps,
    )
