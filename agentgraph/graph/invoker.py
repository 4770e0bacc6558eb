"""
Step Action Invoker - Uniform invocation of every node type.

Each node type is served by one async handler ``(params, ctx) -> output``
held in a lookup table. Handlers may raise; :meth:`StepActionInvoker.invoke`
never does. It converts every failure into a ``StepResult`` carrying a
typed :class:`StepError` so the retry policy can classify it.

Connector code plugs in two ways:
- ``register(node_type, handler)`` replaces the handler for a whole node type
- ``register_action(name, handler)`` adds a named action for ``action`` nodes
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any

from agentgraph.errors import ExecutionError, StepError, ValidationError
from agentgraph.graph.bindings import BindingScope, interpolate
from agentgraph.graph.conditions import ConditionEvaluator
from agentgraph.graph.definition import Condition, NodeDefinition, NodeType
from agentgraph.llm.provider import LLMProvider

logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    """What a handler knows about the step it is running."""

    run_id: str
    graph_id: str
    node: NodeDefinition
    action: str | None = None
    attempt: int = 1
    scope: BindingScope = field(default_factory=BindingScope)


@dataclass
class StepResult:
    """Outcome of one invocation: exactly one of output/error is meaningful."""

    output: Any = None
    error: StepError | None = None
    latency_ms: int = 0

    @property
    def success(self) -> bool:
        return self.error is None


StepHandler = Callable[[dict[str, Any], StepContext], Awaitable[Any]]
ActionHandler = Callable[[dict[str, Any], StepContext], Any]

JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list, tuple),
}


def validate_params(params: dict[str, Any], schema: dict[str, Any] | None) -> None:
    """
    Check resolved params against a JSON-schema subset.

    Supports ``required`` and ``properties.<key>.type``. Raises
    ValidationError listing every problem found.
    """
    if not schema:
        return

    errors: list[str] = []
    for key in schema.get("required", []):
        if params.get(key) is None:
            errors.append(f"missing required param '{key}'")

    for key, prop in schema.get("properties", {}).items():
        expected = prop.get("type") if isinstance(prop, dict) else None
        if key not in params or params[key] is None or expected not in JSON_TYPES:
            continue
        value = params[key]
        is_bool = isinstance(value, bool)
        if not isinstance(value, JSON_TYPES[expected]) or (
            is_bool and expected in ("number", "integer")
        ):
            errors.append(f"param '{key}' should be {expected}, got {type(value).__name__}")

    if errors:
        raise ValidationError(
            "Invalid step params: " + "; ".join(errors), details={"errors": errors}
        )


class StepActionInvoker:
    """
    Dispatches a step to the handler for its node type.

    Example:
        invoker = StepActionInvoker(llm=MockLLMProvider())

        async def send_email(params, ctx):
            return {"sent": True, "to": params["to"]}

        invoker.register_action("email.send", send_email)
        result = await invoker.invoke(NodeType.ACTION, "email.send", {"to": "a@b.c"}, ctx)
    """

    def __init__(
        self,
        llm: LLMProvider | None = None,
        actions: dict[str, ActionHandler] | None = None,
        default_model: str | None = None,
    ):
        self.llm = llm
        self.default_model = default_model
        self._actions: dict[str, ActionHandler] = dict(actions or {})
        self._handlers: dict[NodeType, StepHandler] = {
            NodeType.TRIGGER: self._run_trigger,
            NodeType.AI_PROMPT: self._run_ai_prompt,
            NodeType.ACTION: self._run_action,
            NodeType.LOGIC_CONDITION: self._run_condition,
            NodeType.LOGIC_LOOP: self._run_loop,
        }

    def register(self, node_type: NodeType | str, handler: StepHandler) -> None:
        """Replace the handler used for every node of ``node_type``."""
        self._handlers[NodeType(node_type)] = handler

    def register_action(self, name: str, handler: ActionHandler) -> None:
        """Register a named connector action. Sync and async callables are both accepted."""
        self._actions[name] = handler

    def has_action(self, name: str) -> bool:
        return name in self._actions

    def get_registered_actions(self) -> list[str]:
        return list(self._actions.keys())

    async def invoke(
        self,
        node_type: NodeType | str,
        action: str | None,
        params: dict[str, Any],
        context: StepContext,
    ) -> StepResult:
        """Run one step. Never raises StepError or handler exceptions."""
        try:
            handler = self._handlers.get(NodeType(node_type))
        except ValueError:
            handler = None
        if handler is None:
            return StepResult(error=ValidationError(f"Unsupported node type: {node_type}"))

        try:
            validate_params(params, context.node.input_schema)
            if action is not None and action != context.action:
                context = replace(context, action=action)
            output = await handler(params, context)
            return StepResult(output=output)
        except StepError as e:
            return StepResult(error=e)
        except Exception as e:
            logger.debug(f"Handler for {node_type} raised {type(e).__name__}: {e}")
            return StepResult(error=StepError.from_exception(e))

    # === BUILT-IN HANDLERS ===

    async def _run_trigger(self, params: dict[str, Any], ctx: StepContext) -> Any:
        return {**params, **ctx.scope.trigger}

    async def _run_ai_prompt(self, params: dict[str, Any], ctx: StepContext) -> Any:
        prompt = params.get("prompt")
        if not prompt:
            raise ValidationError("Prompt is required for ai-prompt steps")
        if self.llm is None:
            raise ValidationError("No LLM provider configured for ai-prompt steps")

        try:
            response = await self.llm.acomplete(
                messages=[{"role": "user", "content": str(prompt)}],
                system=str(params.get("system", "")),
                max_tokens=int(params.get("max_tokens", 1024)),
                model=params.get("model") or self.default_model,
                temperature=params.get("temperature"),
            )
        except StepError:
            raise
        except Exception as e:
            raise ExecutionError(f"LLM call failed: {e}") from e

        return {
            "content": response.content,
            "model": response.model,
            "usage": {
                "input_tokens": response.input_tokens,
                "output_tokens": response.output_tokens,
            },
        }

    async def _run_action(self, params: dict[str, Any], ctx: StepContext) -> Any:
        name = ctx.action or ctx.node.action
        if not name:
            raise ValidationError(f"Action node '{ctx.node.id}' does not name an action")
        handler = self._actions.get(name)
        if handler is None:
            raise ValidationError(f"Unknown action: {name}")

        result = handler(params, ctx)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _run_condition(self, params: dict[str, Any], ctx: StepContext) -> Any:
        condition: Condition | dict | None = ctx.node.condition or params.get("condition")
        if condition is None:
            raise ValidationError(f"Condition node '{ctx.node.id}' has no condition")

        evaluator = ConditionEvaluator(strict=ctx.node.strict)
        evaluation_context = {**ctx.scope.as_context(), **params.get("context", {})}
        return {"result": evaluator.evaluate(condition, evaluation_context)}

    async def _run_loop(self, params: dict[str, Any], ctx: StepContext) -> Any:
        loop = ctx.node.loop
        if loop is None:
            raise ValidationError(f"Loop node '{ctx.node.id}' has no loop config")
        max_iterations = loop.max_iterations or 0

        items = params.get("items")
        if items is None and loop.items:
            items = _resolve_items(loop.items, ctx.scope)
        if items is not None and not isinstance(items, list | tuple):
            raise ValidationError(
                f"Loop items for '{ctx.node.id}' must resolve to a list, got {type(items).__name__}"
            )

        if items is None:
            iterations = max_iterations
        else:
            items = list(items)
            iterations = min(len(items), max_iterations)
            if len(items) > max_iterations:
                logger.warning(
                    f"Loop '{ctx.node.id}' has {len(items)} items, capped at {max_iterations}"
                )

        return {"items": items, "iterations": iterations, "maxIterations": max_iterations}


def _resolve_items(expression: str, scope: BindingScope) -> Any:
    if "{{" in expression:
        value = interpolate(expression, scope)
        return None if isinstance(value, str) and "{{" in value else value
    return scope.resolve(expression)
