"""Graph definitions, compilation and execution."""

from agentgraph.graph.bindings import BindingScope, interpolate, resolve_bindings
from agentgraph.graph.conditions import ConditionEvaluator, get_path
from agentgraph.graph.definition import (
    Condition,
    GraphDefinition,
    LoopConfig,
    NodeDefinition,
    NodeType,
    RetryOverride,
)
from agentgraph.graph.executor import GraphExecutor
from agentgraph.graph.invoker import StepActionInvoker, StepContext, StepResult
from agentgraph.graph.plan import DEFAULT_MAX_STEPS, ExecutionPlan, compile_graph
from agentgraph.graph.reducer import MergeStrategy, combine, merge, resolve_error
from agentgraph.graph.retry import RetryOutcome, RetryPolicy
from agentgraph.graph.validator import (
    ValidationReport,
    ensure_valid,
    load_graph,
    validate_graph,
)

__all__ = [
    # Definition
    "Condition",
    "GraphDefinition",
    "LoopConfig",
    "NodeDefinition",
    "NodeType",
    "RetryOverride",
    # Validation and compilation
    "ValidationReport",
    "ensure_valid",
    "load_graph",
    "validate_graph",
    "DEFAULT_MAX_STEPS",
    "ExecutionPlan",
    "compile_graph",
    # Conditions and bindings
    "ConditionEvaluator",
    "get_path",
    "BindingScope",
    "interpolate",
    "resolve_bindings",
    # Steps
    "StepActionInvoker",
    "StepContext",
    "StepResult",
    "RetryOutcome",
    "RetryPolicy",
    # State
    "MergeStrategy",
    "combine",
    "merge",
    "resolve_error",
    # Execution
    "GraphExecutor",
]
