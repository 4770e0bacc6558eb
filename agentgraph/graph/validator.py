"""Structural validation of graph definitions.

Runs once, before a run is created. Problems that make a graph impossible
to execute are errors and abort compilation; questionable but runnable
shapes (unreachable nodes, cycles) are warnings.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from agentgraph.errors import GraphDefinitionError
from agentgraph.graph.definition import GraphDefinition, NodeDefinition, NodeType

logger = logging.getLogger(__name__)


@dataclass
class ValidationReport:
    """Result of validating a graph."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(self.errors) if self.errors else ""


def load_graph(data: GraphDefinition | dict[str, Any] | str) -> GraphDefinition:
    """Parse a graph document, reporting schema problems as GraphDefinitionError."""
    if isinstance(data, GraphDefinition):
        return data
    try:
        if isinstance(data, str):
            return GraphDefinition.from_json(data)
        return GraphDefinition.from_dict(data)
    except PydanticValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or 'graph'}: {err['msg']}" for err in e.errors()
        ]
        raise GraphDefinitionError(errors) from e
    except ValueError as e:
        raise GraphDefinitionError([f"Graph document is not valid JSON: {e}"]) from e


def _check_node(node_id: str, node: NodeDefinition, graph: GraphDefinition) -> list[str]:
    errors = []

    if node.id != node_id:
        errors.append(f"Node key '{node_id}' does not match its id '{node.id}'")

    for target in node.next_targets():
        if target not in graph.states:
            errors.append(f"Node '{node_id}' references missing next node '{target}'")
    if node.on_error and node.on_error not in graph.states:
        errors.append(f"Node '{node_id}' references missing onError node '{node.on_error}'")

    if node.type == NodeType.LOGIC_CONDITION:
        if node.condition is None and "condition" not in node.inputs:
            errors.append(f"Condition node '{node_id}' has no condition")
        if isinstance(node.next, dict):
            unknown = set(node.next) - {"true", "false"}
            if unknown:
                errors.append(
                    f"Condition node '{node_id}' has unknown branch keys: {sorted(unknown)}"
                )
        elif isinstance(node.next, list) and len(node.next) != 2:
            errors.append(
                f"Condition node '{node_id}' branch list must be [trueTarget, falseTarget]"
            )
    elif isinstance(node.next, dict):
        errors.append(f"Only condition nodes may use branch mappings (node '{node_id}')")

    if node.type == NodeType.LOGIC_LOOP:
        if node.loop is None:
            errors.append(f"Loop node '{node_id}' has no loop config")
        else:
            if node.loop.body not in graph.states:
                errors.append(f"Loop node '{node_id}' references missing body '{node.loop.body}'")
            if node.loop.max_iterations is None or node.loop.max_iterations <= 0:
                errors.append(f"Loop node '{node_id}' must set a positive maxIterations")

    if node.type == NodeType.ACTION and not node.action:
        errors.append(f"Action node '{node_id}' does not name an action")

    return errors


def _reachable(graph: GraphDefinition) -> set[str]:
    reachable: set[str] = set()
    to_visit = [graph.start_at]
    while to_visit:
        current = to_visit.pop()
        if current in reachable or current not in graph.states:
            continue
        reachable.add(current)
        to_visit.extend(graph.states[current].referenced_ids())
    return reachable


def _has_cycle(graph: GraphDefinition) -> bool:
    """Detect cycles along next/onError edges. Loop bodies are bounded and excluded."""
    visiting: set[str] = set()
    done: set[str] = set()

    def visit(node_id: str) -> bool:
        if node_id in done or node_id not in graph.states:
            return False
        if node_id in visiting:
            return True
        visiting.add(node_id)
        node = graph.states[node_id]
        targets = node.next_targets() + ([node.on_error] if node.on_error else [])
        found = any(visit(t) for t in targets)
        visiting.discard(node_id)
        done.add(node_id)
        return found

    return any(visit(node_id) for node_id in graph.states)


def validate_graph(graph: GraphDefinition) -> ValidationReport:
    """Collect every structural problem in ``graph``."""
    report = ValidationReport()

    if not graph.states:
        report.errors.append("Graph has no states")
        return report
    if graph.start_at not in graph.states:
        report.errors.append(f"startAt node '{graph.start_at}' not found")

    for node_id, node in graph.states.items():
        report.errors.extend(_check_node(node_id, node, graph))

        if node.type == NodeType.AI_PROMPT and "prompt" not in node.inputs:
            report.warnings.append(f"Prompt node '{node_id}' has no prompt input")

    if not any(n.type == NodeType.TRIGGER for n in graph.states.values()):
        report.warnings.append("Graph has no trigger node")

    if graph.start_at in graph.states:
        unreachable = sorted(set(graph.states) - _reachable(graph))
        for node_id in unreachable:
            report.warnings.append(f"Node '{node_id}' is unreachable from '{graph.start_at}'")

    if _has_cycle(graph):
        report.warnings.append("Graph contains cycles; execution is bounded by maxSteps")

    return report


def ensure_valid(graph: GraphDefinition) -> ValidationReport:
    """Validate and raise GraphDefinitionError on any error."""
    report = validate_graph(graph)
    for warning in report.warnings:
        logger.warning(f"⚠ Graph '{graph.id}': {warning}")
    if not report.valid:
        logger.error(f"❌ Graph '{graph.id}' failed validation:")
        for err in report.errors:
            logger.error(f"   • {err}")
        raise GraphDefinitionError(report.errors)
    return report
