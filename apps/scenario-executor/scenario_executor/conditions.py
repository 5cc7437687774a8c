"""Evaluation of branch, pre-step and while-loop conditions."""

from __future__ import annotations

import json
import re
from typing import Any, Optional

from scenario_graph.models import Condition, ConditionExpression, ConditionGroup

from .exceptions import ConditionEvaluationError
from .variables import MISSING, VariableScope, lookup, resolve_string

_INTEGER = re.compile(r"[+-]?\d+")
_NUMBER = re.compile(r"[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _coerce_expected(raw: Any) -> Any:
    """Values typed into an editor arrive as strings: turn "true"/"12"/"[1]" into data."""

    if not isinstance(raw, str):
        return raw
    if raw == "true":
        return True
    if raw == "false":
        return False
    if raw == "null":
        return None
    stripped = raw.strip()
    if _INTEGER.fullmatch(stripped):
        return int(stripped)
    if _NUMBER.fullmatch(stripped):
        return float(stripped)
    if raw.startswith(("{", "[")):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw
    return raw


def loose_equals(left: Any, right: Any) -> bool:
    """Equality that treats ``5 == "5"`` and ``None == missing`` as equal."""

    if left is MISSING:
        left = None
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, str) and not isinstance(right, str):
        left = _coerce_expected(left)
    elif isinstance(right, str) and not isinstance(left, str):
        right = _coerce_expected(right)
    return left == right


def _is_empty(value: Any) -> bool:
    if value is None or value is MISSING:
        return True
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) == 0
    return False


def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, str) and isinstance(needle, str):
        return needle in haystack
    if isinstance(haystack, (list, tuple)):
        return any(loose_equals(item, needle) for item in haystack)
    return False


def compare(operator: str, actual: Any, expected: Any) -> bool:
    if operator == "==":
        return loose_equals(actual, expected)
    if operator == "!=":
        return not loose_equals(actual, expected)
    if operator in {">", ">=", "<", "<="}:
        if not (_is_number(actual) and _is_number(expected)):
            return False
        if operator == ">":
            return actual > expected
        if operator == ">=":
            return actual >= expected
        if operator == "<":
            return actual < expected
        return actual <= expected
    if operator == "contains":
        return _contains(actual, expected)
    if operator == "notContains":
        return not _contains(actual, expected)
    if operator == "isEmpty":
        return _is_empty(actual)
    if operator == "isNotEmpty":
        return not _is_empty(actual)
    if operator == "exists":
        return actual is not None and actual is not MISSING
    raise ConditionEvaluationError(f"Unsupported operator: {operator}", details={"operator": operator})


def condition_value(condition: Condition, scope: VariableScope) -> Any:
    """Read the left-hand side of a condition; ``None`` when the field is absent."""

    if condition.source == "params":
        source: Any = scope.params
    else:
        source = scope.responses.get(condition.step_id or "", MISSING)
        if source is MISSING:
            return None
    value = lookup(source, condition.field) if condition.field else source
    return None if value is MISSING else value


def evaluate_condition(condition: Condition, scope: VariableScope) -> bool:
    actual = condition_value(condition, scope)
    expected = condition.value
    if isinstance(expected, str) and "${" in expected:
        expected = resolve_string(expected, scope)
    return compare(condition.operator, actual, _coerce_expected(expected))


def evaluate(expression: Optional[ConditionExpression], scope: VariableScope) -> bool:
    """Evaluate a condition or (nested) AND/OR group. ``None`` is always true."""

    if expression is None:
        return True
    if isinstance(expression, ConditionGroup):
        if not expression.conditions:
            return True
        results = (evaluate(item, scope) for item in expression.conditions)
        return all(results) if expression.operator == "AND" else any(results)
    return evaluate_condition(expression, scope)
