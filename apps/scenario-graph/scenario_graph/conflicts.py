"""Edge conflict detection for cut/move of steps into and out of containers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Literal, Optional

import structlog

from .errors import (
    ContainerCycleError,
    EdgeConflictRejectedError,
    NestingDepthExceededError,
    ScenarioValidationError,
    StepNotFoundError,
)
from .graph import ScenarioGraph
from .models import Scenario, ScenarioEdge, Step, is_container
from .nesting import MAX_NESTING_DEPTH, calculate_nesting_depth, is_descendant, subtree_height
from .topology import delete_edge

LOGGER = structlog.get_logger("scenario_graph")

Operation = Literal["cut", "move"]
ConflictType = Literal["outgoing", "incoming"]


@dataclass(frozen=True)
class EdgeConflict:
    """An edge that a cut/move would leave dangling across the selection boundary."""

    edge: ScenarioEdge
    source_step: Step
    target_step: Step
    conflict_type: ConflictType

    @property
    def description(self) -> str:
        direction = "outgoing to external step" if self.conflict_type == "outgoing" else "incoming from external step"
        return f"{_label(self.source_step)} -> {_label(self.target_step)} ({direction})"


def _label(step: Step) -> str:
    return step.name or step.id


def detect_conflicts(
    operation: Operation,
    selected_step_ids: Iterable[str],
    scenario: Scenario,
) -> list[EdgeConflict]:
    """Return every edge with exactly one endpoint inside the selection.

    Edges fully inside or fully outside the selection are not conflicts. The
    caller has to confirm the list before committing the structural change and
    then remove the edges with ``resolve_conflicts``.
    """

    return _scan(operation, set(selected_step_ids), scenario, in_target_scope=None)


def detect_move_conflicts(
    selected_step_ids: Iterable[str],
    scenario: Scenario,
    target_container_id: Optional[str],
) -> list[EdgeConflict]:
    """Like ``detect_conflicts`` for a move, sparing edges that stay within one scope.

    An edge whose outside endpoint already sits directly in the destination
    (``target_container_id``, or root level for ``None``) keeps both ends in
    the same scope after the move and is therefore not reported.
    """

    graph = ScenarioGraph(scenario)

    def in_target_scope(step_id: str) -> bool:
        parent = graph.parent_container(step_id)
        if target_container_id is None:
            return parent is None
        return parent is not None and parent.id == target_container_id

    return _scan("move", set(selected_step_ids), scenario, in_target_scope=in_target_scope)


def _scan(
    operation: Operation,
    selected: set[str],
    scenario: Scenario,
    in_target_scope: Optional[Callable[[str], bool]],
) -> list[EdgeConflict]:
    graph = ScenarioGraph(scenario)
    conflicts: list[EdgeConflict] = []
    for edge in scenario.edges:
        source = graph.step(edge.source_step_id)
        target = graph.step(edge.target_step_id)
        if source is None or target is None:
            continue
        source_selected = edge.source_step_id in selected
        target_selected = edge.target_step_id in selected
        if source_selected == target_selected:
            continue
        outside_id = edge.target_step_id if source_selected else edge.source_step_id
        if in_target_scope is not None and in_target_scope(outside_id):
            continue
        conflicts.append(
            EdgeConflict(
                edge=edge,
                source_step=source,
                target_step=target,
                conflict_type="outgoing" if source_selected else "incoming",
            )
        )
    LOGGER.debug("edge_conflicts_detected", operation=operation, selected=len(selected), conflicts=len(conflicts))
    return conflicts


def resolve_conflicts(scenario: Scenario, conflicts: Iterable[EdgeConflict]) -> Scenario:
    """Delete the conflicting edges through the topology synchronizer."""

    updated = scenario
    for conflict in conflicts:
        updated = delete_edge(updated, conflict.edge.id)
    return updated


def move_steps(
    scenario: Scenario,
    step_ids: list[str],
    target_container_id: Optional[str],
    confirm: Callable[[list[EdgeConflict]], bool],
    *,
    max_depth: Optional[int] = None,
) -> Scenario:
    """Move steps into ``target_container_id`` (root level for ``None``).

    Conflicting edges are offered to ``confirm``; declining raises
    ``EdgeConflictRejectedError`` and nothing changes. Structural problems
    (unknown ids, cycles, depth overflow) are raised before anything is applied.
    """

    graph = ScenarioGraph(scenario)
    limit = max_depth if max_depth is not None else MAX_NESTING_DEPTH
    for step_id in step_ids:
        if step_id not in graph:
            raise StepNotFoundError(step_id)

    if target_container_id is not None:
        target = graph.step(target_container_id)
        if target is None:
            raise StepNotFoundError(target_container_id)
        if not is_container(target):
            raise ScenarioValidationError(f"Step '{target_container_id}' is not a loop or group")
        target_depth = calculate_nesting_depth(target_container_id, scenario.steps)
        for step_id in step_ids:
            if step_id == target_container_id or is_descendant(target_container_id, step_id, scenario.steps):
                raise ContainerCycleError(step_id, target_container_id)
            height = subtree_height(step_id, scenario.steps)
            if height and target_depth + height >= limit:
                raise NestingDepthExceededError(target_container_id, limit)

    conflicts = detect_move_conflicts(step_ids, scenario, target_container_id)
    if conflicts and not confirm(conflicts):
        raise EdgeConflictRejectedError([conflict.edge.id for conflict in conflicts])

    updated = resolve_conflicts(scenario, conflicts).model_copy(deep=True)
    moving = set(step_ids)
    for step in updated.steps:
        if is_container(step):
            step.step_ids = [child for child in step.step_ids if child not in moving]  # type: ignore[union-attr]
    if target_container_id is not None:
        target = ScenarioGraph(updated).step(target_container_id)
        target.step_ids.extend(step_ids)  # type: ignore[union-attr]
    updated.touch()
    LOGGER.info(
        "steps_moved",
        steps=list(step_ids),
        target=target_container_id or "root",
        removed_edges=[conflict.edge.id for conflict in conflicts],
    )
    return updated


def available_containers(step_id: str, scenario: Scenario) -> list[Step]:
    """Containers ``step_id`` could be moved into (not itself, its parent or a descendant)."""

    graph = ScenarioGraph(scenario)
    parent = graph.parent_container(step_id)
    candidates: list[Step] = []
    for container in graph.containers():
        if container.id == step_id:
            continue
        if parent is not None and container.id == parent.id:
            continue
        if is_descendant(container.id, step_id, scenario.steps):
            continue
        candidates.append(container)
    return candidates


def format_conflict_message(conflicts: list[EdgeConflict], operation: Operation) -> str:
    """Render a confirmation prompt listing the edges that would be removed."""

    if not conflicts:
        return ""
    verb = "cutting" if operation == "cut" else "moving"
    lines = [f"The following edge connections will be removed when {verb} the selected step(s):", ""]
    outgoing = [item for item in conflicts if item.conflict_type == "outgoing"]
    incoming = [item for item in conflicts if item.conflict_type == "incoming"]
    if outgoing:
        lines.append("Outgoing connections:")
        lines.extend(f"  * {item.description}" for item in outgoing)
        if incoming:
            lines.append("")
    if incoming:
        lines.append("Incoming connections:")
        lines.extend(f"  * {item.description}" for item in incoming)
    lines.append("")
    lines.append(f"Total: {len(conflicts)} edge(s) will be deleted.")
    return "\n".join(lines)
