"""Apply a scenario's parameter schema to the caller's parameters."""

from __future__ import annotations

import copy
import re
from typing import Any, Optional

from scenario_graph.models import ParameterSchema

from .exceptions import ParameterValidationError

_PY_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list, tuple),
}


def _type_matches(expected: str, value: Any) -> bool:
    if expected == "any":
        return True
    if expected == "number" and isinstance(value, bool):
        return False
    return isinstance(value, _PY_TYPES[expected])


def _check(schema: ParameterSchema, value: Any, path: str, problems: list[str]) -> None:
    if not _type_matches(schema.type, value):
        problems.append(f"{path}: expected {schema.type}, got {type(value).__name__}")
        return

    rules = schema.validation
    if rules is not None:
        measured: Optional[float] = None
        if schema.type == "number" or (schema.type == "any" and isinstance(value, (int, float)) and not isinstance(value, bool)):
            measured = value
        elif isinstance(value, (str, list, tuple)):
            measured = len(value)
        if measured is not None and rules.min is not None and measured < rules.min:
            problems.append(f"{path}: {value!r} is below the minimum {rules.min:g}")
        if measured is not None and rules.max is not None and measured > rules.max:
            problems.append(f"{path}: {value!r} is above the maximum {rules.max:g}")
        if rules.pattern and isinstance(value, str) and not re.fullmatch(rules.pattern, value):
            problems.append(f"{path}: {value!r} does not match {rules.pattern!r}")
        if rules.enum is not None and value not in rules.enum:
            problems.append(f"{path}: {value!r} is not one of {rules.enum!r}")

    if schema.type == "array" and schema.item_schema is not None:
        for index, item in enumerate(value):
            _check(schema.item_schema, item, f"{path}[{index}]", problems)
    if schema.type == "object" and schema.properties:
        _apply(schema.properties, value, f"{path}.", problems)


def _apply(schemas: list[ParameterSchema], values: dict[str, Any], prefix: str, problems: list[str]) -> None:
    for schema in schemas:
        path = f"{prefix}{schema.name}"
        if schema.name not in values or values[schema.name] is None:
            if schema.default_value is not None:
                values[schema.name] = schema.default_value
            elif schema.required:
                problems.append(f"{path}: required parameter is missing")
                continue
            else:
                continue
        _check(schema, values[schema.name], path, problems)


def apply_parameter_schema(schemas: list[ParameterSchema], params: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Return a copy of ``params`` with defaults filled in.

    Every violation is collected before raising ``ParameterValidationError``.
    Parameters the schema does not declare are passed through untouched.
    """

    values = copy.deepcopy(dict(params or {}))
    problems: list[str] = []
    _apply(schemas, values, "", problems)
    if problems:
        raise ParameterValidationError(problems)
    return values
