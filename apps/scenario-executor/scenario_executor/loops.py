"""Iteration plans for count, forEach and while loops."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from scenario_graph.models import CountLoop, ForEachLoop, LoopStep, WhileLoop

from .conditions import evaluate
from .exceptions import LoopConfigurationError, LoopLimitExceededError
from .models import LoopFrame
from .variables import MISSING, VariableScope, lookup, resolve_reference, resolve_string


@dataclass
class LoopPlan:
    """How many passes a loop makes and what each pass sees.

    ``total`` is ``None`` for while loops, whose length is only known once the
    condition turns false.
    """

    step: LoopStep
    limit: int
    total: Optional[int]
    items: list[Any] = field(default_factory=list)

    @property
    def loop(self):
        return self.step.loop

    def frame(self, index: int) -> LoopFrame:
        loop = self.loop
        item = self.items[index] if index < len(self.items) else None
        return LoopFrame(
            loop_id=self.step.id,
            variable_name=self.step.variable_name,
            index=index,
            total=self.total,
            item=item,
            item_alias=loop.item_alias if isinstance(loop, ForEachLoop) else None,
            index_alias=loop.index_alias if isinstance(loop, ForEachLoop) else None,
        )

    def should_continue(self, index: int, scope: VariableScope) -> bool:
        """Checked before pass ``index``; raises when a while loop hits its cap."""

        if isinstance(self.loop, WhileLoop):
            if not evaluate(self.loop.condition, scope):
                return False
            if index >= self.limit:
                raise LoopLimitExceededError(self.step.id, self.limit)
            return True
        return index < (self.total or 0)


def _resolve_count(step: LoopStep, loop: CountLoop, scope: VariableScope) -> int:
    raw = loop.count
    if isinstance(raw, str):
        raw = resolve_string(raw, scope) if "${" in raw else raw
    if isinstance(raw, bool):
        raise LoopConfigurationError(step.id, f"count must be a number, got {raw!r}")
    try:
        count = int(raw)
    except (TypeError, ValueError) as exc:
        raise LoopConfigurationError(step.id, f"count must be a number, got {raw!r}") from exc
    if count < 0:
        raise LoopConfigurationError(step.id, f"count must not be negative, got {count}")
    return count


def _resolve_source(step: LoopStep, loop: ForEachLoop, scope: VariableScope) -> list[Any]:
    source = loop.source.strip()
    if "${" in source:
        value = resolve_string(source, scope)
    else:
        value = resolve_reference(source, scope)
    if not isinstance(value, (list, tuple)):
        raise LoopConfigurationError(step.id, f"forEach source {loop.source!r} is not a list")
    return list(value)


def expand_items(items: list[Any], count_field: Optional[str]) -> list[Any]:
    """Repeat each item ``item[count_field]`` times; invalid counts keep it once."""

    if not count_field:
        return list(items)
    expanded: list[Any] = []
    for item in items:
        count = lookup(item, count_field)
        if count is MISSING or isinstance(count, bool) or not isinstance(count, int) or count <= 0:
            expanded.append(item)
            continue
        expanded.extend([item] * count)
    return expanded


def plan_loop(step: LoopStep, scope: VariableScope, default_max: int) -> LoopPlan:
    loop = step.loop
    limit = loop.max_iterations if loop.max_iterations is not None else default_max
    if limit < 0:
        raise LoopConfigurationError(step.id, "maxIterations must not be negative")

    if isinstance(loop, CountLoop):
        return LoopPlan(step=step, limit=limit, total=min(_resolve_count(step, loop, scope), limit))
    if isinstance(loop, ForEachLoop):
        items = expand_items(_resolve_source(step, loop, scope), loop.count_field)[:limit]
        return LoopPlan(step=step, limit=limit, total=len(items), items=items)
    return LoopPlan(step=step, limit=limit, total=None)
