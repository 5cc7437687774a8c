"""Resolution of ``${...}`` references in step fields.

Supported references:

* ``${params.user.id}`` - scenario parameters
* ``${response.<alias>.data[0].id}`` - saved responses (alias or step id)
* ``${loop.index}``, ``${loop.item}``, ``${loop.item.name}`` - innermost loop
* ``${<variableName>.index}`` / ``${<variableName>.item}`` - a named loop
* ``${<itemAlias>}`` / ``${<indexAlias>}`` - forEach aliases
* ``${system.timestamp}`` - ISO timestamp of the current resolution

A field that is exactly one reference keeps the referenced value's type; a
reference embedded in text is rendered into the string.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Sequence

from scenario_graph.models import utc_now

from .exceptions import VariableResolutionError
from .models import ExecutionContext, LoopFrame

VARIABLE_PATTERN = re.compile(r"\$\{([^}]+)\}")
_WHOLE_PATTERN = re.compile(r"^\$\{([^}]+)\}$")
_PATH_TOKEN = re.compile(r"\[(\d+)\]|([^.\[\]]+)")


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


@dataclass
class VariableScope:
    params: dict[str, Any]
    responses: dict[str, Any]
    loop_stack: Sequence[LoopFrame] = field(default_factory=list)
    timestamp: str = ""

    @classmethod
    def from_context(cls, context: ExecutionContext) -> "VariableScope":
        return cls(
            params=context.params,
            responses=context.responses_snapshot(),
            loop_stack=list(context.loop_stack),
            timestamp=utc_now().isoformat(),
        )


def split_path(path: str) -> list[Any]:
    """``"items[0].name"`` -> ``["items", 0, "name"]``."""

    tokens: list[Any] = []
    for index, name in _PATH_TOKEN.findall(path):
        tokens.append(int(index) if index else name)
    return tokens


def lookup(data: Any, path: str | Sequence[Any]) -> Any:
    """Walk ``path`` through nested dicts and lists; ``MISSING`` when absent."""

    tokens = split_path(path) if isinstance(path, str) else list(path)
    current = data
    for token in tokens:
        if isinstance(current, dict):
            if token in current:
                current = current[token]
            elif str(token) in current:
                current = current[str(token)]
            else:
                return MISSING
        elif isinstance(current, (list, tuple)):
            try:
                position = int(token)
            except (TypeError, ValueError):
                return MISSING
            if not -len(current) <= position < len(current):
                return MISSING
            current = current[position]
        else:
            return MISSING
    return current


def _frame_value(frame: LoopFrame, tokens: list[Any]) -> Any:
    if not tokens:
        return MISSING
    head, rest = tokens[0], tokens[1:]
    if head == "index":
        return frame.index if not rest else MISSING
    if head == "total":
        return frame.total if not rest else MISSING
    if head == "item":
        return lookup(frame.item, rest)
    return MISSING


def resolve_reference(reference: str, scope: VariableScope) -> Any:
    """Resolve one reference (the text between ``${`` and ``}``)."""

    tokens = split_path(reference.strip())
    if not tokens:
        raise VariableResolutionError(reference, "empty reference")
    root, rest = tokens[0], tokens[1:]

    if root == "params":
        value = lookup(scope.params, rest)
        if value is MISSING:
            raise VariableResolutionError(reference, "parameter not provided")
        return value

    if root == "response":
        if not rest:
            raise VariableResolutionError(reference, "response alias missing")
        alias = str(rest[0])
        if alias not in scope.responses:
            raise VariableResolutionError(reference, f"no saved response named '{alias}'")
        value = lookup(scope.responses[alias], rest[1:])
        if value is MISSING:
            raise VariableResolutionError(reference, f"path not found in response '{alias}'")
        return value

    if root == "system":
        if rest == ["timestamp"]:
            return scope.timestamp or utc_now().isoformat()
        raise VariableResolutionError(reference, "unknown system variable")

    frames = list(reversed(scope.loop_stack))
    if root == "loop":
        if not frames:
            raise VariableResolutionError(reference, "not inside a loop")
        value = _frame_value(frames[0], rest)
        if value is MISSING:
            raise VariableResolutionError(reference, "unknown loop field")
        return value

    for frame in frames:
        if root == frame.variable_name:
            value = _frame_value(frame, rest)
        elif root == frame.item_alias:
            value = lookup(frame.item, rest)
        elif root == frame.index_alias and not rest:
            value = frame.index
        else:
            continue
        if value is not MISSING:
            return value

    raise VariableResolutionError(reference, "unknown variable")


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def resolve_string(template: str, scope: VariableScope) -> Any:
    whole = _WHOLE_PATTERN.match(template)
    if whole:
        return resolve_reference(whole.group(1), scope)
    return VARIABLE_PATTERN.sub(lambda match: _render(resolve_reference(match.group(1), scope)), template)


def resolve_value(value: Any, scope: VariableScope) -> Any:
    """Resolve references anywhere inside strings, lists and dicts."""

    if isinstance(value, str):
        return resolve_string(value, scope) if "${" in value else value
    if isinstance(value, list):
        return [resolve_value(item, scope) for item in value]
    if isinstance(value, dict):
        return {key: resolve_value(item, scope) for key, item in value.items()}
    return value
