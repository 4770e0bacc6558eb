"""
Condition Evaluator - Pure evaluation of condition trees against a context.

Supported field operators: eq, neq, gt, gte, lt, lte, contains, startsWith,
endsWith, in, notIn. Logical operators: and, or, not (``not`` takes exactly
one nested condition). Fields are dotted paths into the context mapping.

Strictness is chosen when the evaluator is constructed: in strict mode a
missing field, an unsupported operator or an incomparable value raises
ConditionError; in lenient mode the offending condition is simply false.
"""

import logging
from collections.abc import Mapping
from typing import Any

from agentgraph.errors import ConditionError
from agentgraph.graph.definition import Condition

logger = logging.getLogger(__name__)

LOGICAL_OPERATORS = frozenset({"and", "or", "not"})
FIELD_OPERATORS = frozenset(
    {"eq", "neq", "gt", "gte", "lt", "lte", "contains", "startsWith", "endsWith", "in", "notIn"}
)

_MISSING = object()


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Resolve a dotted path through nested mappings and sequences."""
    current = data
    for key in path.split("."):
        if isinstance(current, Mapping):
            if key not in current:
                return default
            current = current[key]
        elif isinstance(current, list | tuple) and key.isdigit():
            index = int(key)
            if index >= len(current):
                return default
            current = current[index]
        else:
            return default
    return current


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def loose_equals(left: Any, right: Any) -> bool:
    """Equality that treats numeric strings and numbers as comparable ("5" == 5)."""
    if left == right:
        return True
    if isinstance(left, str) != isinstance(right, str):
        left_num, right_num = _as_number(left), _as_number(right)
        if left_num is not None and right_num is not None:
            return left_num == right_num
    return False


class ConditionEvaluator:
    """
    Evaluates :class:`Condition` trees.

    Example:
        evaluator = ConditionEvaluator(strict=False)
        evaluator.evaluate(
            {"operator": "and", "conditions": [
                {"field": "user.age", "operator": "gt", "value": 18},
                {"field": "user.status", "operator": "eq", "value": "active"},
            ]},
            {"user": {"age": 25, "status": "active"}},
        )  # True
    """

    def __init__(self, strict: bool = False):
        self.strict = strict

    def evaluate(
        self, condition: Condition | Mapping[str, Any], context: Mapping[str, Any]
    ) -> bool:
        if not isinstance(condition, Condition):
            try:
                condition = Condition.model_validate(condition)
            except Exception as e:
                return self._fail(f"Invalid condition: {e}")
        return self._evaluate(condition, context)

    def _fail(self, message: str) -> bool:
        if self.strict:
            raise ConditionError(message)
        logger.debug(f"Condition evaluated to false: {message}")
        return False

    def _evaluate(self, condition: Condition, context: Mapping[str, Any]) -> bool:
        if not condition.operator:
            return self._fail("Missing operator in condition")
        if condition.operator in LOGICAL_OPERATORS:
            return self._evaluate_logical(condition, context)
        return self._evaluate_field(condition, context)

    def _evaluate_logical(self, condition: Condition, context: Mapping[str, Any]) -> bool:
        children = condition.conditions
        if children is None:
            return self._fail(f"Missing or invalid conditions for {condition.operator} operator")

        if condition.operator == "and":
            return all(self._evaluate(c, context) for c in children)
        if condition.operator == "or":
            return any(self._evaluate(c, context) for c in children)

        if len(children) != 1:
            return self._fail("NOT operator requires exactly one condition")
        return not self._evaluate(children[0], context)

    def _evaluate_field(self, condition: Condition, context: Mapping[str, Any]) -> bool:
        operator, value = condition.operator, condition.value

        if operator not in FIELD_OPERATORS:
            return self._fail(f"Unsupported operator: {operator}")
        if condition.field is None:
            return self._fail("Field is required for field condition")

        field_value = get_path(context, condition.field, _MISSING)
        if field_value is _MISSING or field_value is None:
            return self._fail(f"Field '{condition.field}' not found in context")

        try:
            return self._compare(operator, field_value, value)
        except TypeError as e:
            return self._fail(f"Error evaluating condition: {e}")

    @staticmethod
    def _compare(operator: str, field_value: Any, value: Any) -> bool:
        if operator == "eq":
            return loose_equals(field_value, value)
        if operator == "neq":
            return not loose_equals(field_value, value)
        if operator == "gt":
            return field_value > value
        if operator == "gte":
            return field_value >= value
        if operator == "lt":
            return field_value < value
        if operator == "lte":
            return field_value <= value
        if operator == "contains":
            if isinstance(field_value, str):
                return isinstance(value, str) and value in field_value
            if isinstance(field_value, list | tuple):
                return value in field_value
            return False
        if operator == "startsWith":
            return isinstance(field_value, str) and field_value.startswith(str(value))
        if operator == "endsWith":
            return isinstance(field_value, str) and field_value.endswith(str(value))
        if operator == "in":
            return isinstance(value, list | tuple) and field_value in value
        if operator == "notIn":
            return isinstance(value, list | tuple) and field_value not in value
        raise TypeError(f"Unsupported operator: {operator}")
