"""Container nesting depth rules for loop and group steps."""

from __future__ import annotations

import os
from typing import Optional, Sequence

from .models import ContainerStep, Step, is_container

ENV_VAR_NAME = "SCENARIO_MAX_NESTING_DEPTH"
DEFAULT_MAX_NESTING_DEPTH = 3


def get_max_nesting_depth(override: int | None = None) -> int:
    """Resolve the nesting limit: explicit value > environment variable > default."""

    if override is not None:
        return override
    env_value = os.environ.get(ENV_VAR_NAME)
    if env_value:
        try:
            return max(1, int(env_value))
        except ValueError:
            pass
    return DEFAULT_MAX_NESTING_DEPTH


MAX_NESTING_DEPTH = get_max_nesting_depth()


def find_parent_container(step_id: str, all_steps: Sequence[Step]) -> Optional[ContainerStep]:
    for step in all_steps:
        if is_container(step) and step_id in step.step_ids:  # type: ignore[union-attr]
            return step  # type: ignore[return-value]
    return None


def calculate_nesting_depth(step_id: str, all_steps: Sequence[Step]) -> int:
    """Count the containers enclosing ``step_id`` (0 = root level).

    Walks parent lookups upward with a linear search per level; scenarios are
    small and containers shallow, so nothing is cached.
    """

    depth = 0
    visited = {step_id}
    current = step_id
    while True:
        parent = find_parent_container(current, all_steps)
        if parent is None or parent.id in visited:
            return depth
        depth += 1
        visited.add(parent.id)
        current = parent.id


def would_exceed_limit(
    container_id: Optional[str],
    all_steps: Sequence[Step],
    max_depth: Optional[int] = None,
) -> bool:
    """Check whether a new container inside ``container_id`` breaks the depth limit.

    A container created inside ``container_id`` sits one level below it; it is
    rejected when that level reaches ``max_depth``. ``None`` means root level.
    """

    limit = max_depth if max_depth is not None else MAX_NESTING_DEPTH
    if container_id is None:
        return False
    current_depth = calculate_nesting_depth(container_id, all_steps)
    return current_depth + 1 >= limit


def subtree_height(step_id: str, all_steps: Sequence[Step]) -> int:
    """Number of container levels at and below ``step_id`` (0 for a plain step)."""

    by_id = {step.id: step for step in all_steps}

    def _height(current: str, trail: frozenset[str]) -> int:
        step = by_id.get(current)
        if step is None or not is_container(step) or current in trail:
            return 0
        children = [
            _height(child, trail | {current})
            for child in step.step_ids  # type: ignore[union-attr]
        ]
        return 1 + max(children, default=0)

    return _height(step_id, frozenset())


def is_descendant(candidate_id: str, ancestor_id: str, all_steps: Sequence[Step]) -> bool:
    """True when ``candidate_id`` is nested (at any depth) below ``ancestor_id``."""

    by_id = {step.id: step for step in all_steps}
    pending = [ancestor_id]
    seen: set[str] = set()
    while pending:
        current = pending.pop()
        if current in seen:
            continue
        seen.add(current)
        step = by_id.get(current)
        if step is None or not is_container(step):
            continue
        for child in step.step_ids:  # type: ignore[union-attr]
            if child == candidate_id:
                return True
            pending.append(child)
    return False


def nesting_limit_message(max_depth: Optional[int] = None) -> str:
    limit = max_depth if max_depth is not None else MAX_NESTING_DEPTH
    return f"Maximum {limit} levels of nesting allowed"
