"""Structural edits that keep the edge list and branch targets in agreement.

A scenario stores its topology twice: ``edges`` (consumed by the external
diagram renderer) and ``branch.next_step_id`` / container ``step_ids``
(consumed by the execution engine). Every edit of ``edges``, ``step_ids`` or
``next_step_id`` must go through the functions in this module:

* ``add_edge`` / ``delete_edge`` / ``delete_step`` / ``add_step`` work on a
  deep copy and return it, so a rejected edit never leaves a partial change.
* ``find_divergences`` is the invariant checker. Each edit compares the
  divergences before and after and refuses to return a result that introduces
  new ones.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from .errors import (
    EdgeNotFoundError,
    InvalidEdgeError,
    NestingDepthExceededError,
    ScenarioValidationError,
    StepNotFoundError,
    TopologyDivergenceError,
)
from .graph import ScenarioGraph
from .models import Scenario, ScenarioEdge, Step, has_branches, is_container
from .nesting import MAX_NESTING_DEPTH, would_exceed_limit

LOGGER = structlog.get_logger("scenario_graph")


@dataclass(frozen=True)
class TopologyDivergence:
    """One place where the edge list and a branch target disagree."""

    kind: str
    step_id: str
    branch_id: str
    edge_id: Optional[str] = None
    detail: str = ""

    def __str__(self) -> str:
        where = f"{self.step_id}/{self.branch_id}"
        if self.edge_id:
            where += f" (edge {self.edge_id})"
        return f"{self.kind}: {where} {self.detail}".rstrip()


def find_divergences(scenario: Scenario) -> list[TopologyDivergence]:
    """Compare every branch-bound edge with its branch, and every branch target with its edge."""

    graph = ScenarioGraph(scenario)
    problems: list[TopologyDivergence] = []
    seen_handles: dict[tuple[str, str], str] = {}

    for edge in scenario.edges:
        handle = edge.source_handle
        if not handle:
            continue
        branch = next((item for item in graph.branches(edge.source_step_id) if item.id == handle), None)
        if branch is None:
            continue
        key = (edge.source_step_id, handle)
        if key in seen_handles:
            problems.append(
                TopologyDivergence(
                    kind="duplicate_branch_edge",
                    step_id=edge.source_step_id,
                    branch_id=handle,
                    edge_id=edge.id,
                    detail=f"also bound to edge {seen_handles[key]}",
                )
            )
            continue
        seen_handles[key] = edge.id
        if branch.next_step_id != edge.target_step_id:
            problems.append(
                TopologyDivergence(
                    kind="edge_target_mismatch",
                    step_id=edge.source_step_id,
                    branch_id=handle,
                    edge_id=edge.id,
                    detail=f"edge -> {edge.target_step_id!r}, branch -> {branch.next_step_id!r}",
                )
            )

    for step in scenario.steps:
        for branch in graph.branches(step.id):
            if not branch.next_step_id:
                continue
            if (step.id, branch.id) not in seen_handles:
                problems.append(
                    TopologyDivergence(
                        kind="branch_without_edge",
                        step_id=step.id,
                        branch_id=branch.id,
                        detail=f"branch -> {branch.next_step_id!r} has no edge",
                    )
                )
    return problems


def assert_consistent(scenario: Scenario) -> None:
    problems = find_divergences(scenario)
    if problems:
        raise TopologyDivergenceError(problems)


def _commit(before: Scenario, after: Scenario) -> Scenario:
    introduced = set(find_divergences(after)) - set(find_divergences(before))
    if introduced:
        raise TopologyDivergenceError(sorted(introduced, key=str))
    after.touch()
    return after


def add_edge(scenario: Scenario, edge: ScenarioEdge) -> Scenario:
    """Append ``edge``; when its handle names a branch, point that branch at the target.

    A branch owns at most one edge, so an older edge for the same branch handle
    is replaced.
    """

    updated = scenario.model_copy(deep=True)
    graph = ScenarioGraph(updated)

    if any(existing.id == edge.id for existing in updated.edges):
        raise InvalidEdgeError(edge.id, "an edge with this id already exists")
    if edge.source_step_id not in graph:
        raise InvalidEdgeError(edge.id, f"source step '{edge.source_step_id}' does not exist")
    if edge.target_step_id not in graph:
        raise InvalidEdgeError(edge.id, f"target step '{edge.target_step_id}' does not exist")
    if edge.source_step_id == edge.target_step_id:
        raise InvalidEdgeError(edge.id, "an edge cannot connect a step to itself")

    if edge.source_handle:
        branch = next(
            (item for item in graph.branches(edge.source_step_id) if item.id == edge.source_handle),
            None,
        )
        if branch is None:
            raise InvalidEdgeError(
                edge.id,
                f"handle '{edge.source_handle}' is not a branch of step '{edge.source_step_id}'",
            )
        updated.edges = [
            existing
            for existing in updated.edges
            if not (
                existing.source_step_id == edge.source_step_id
                and existing.source_handle == edge.source_handle
            )
        ]
        branch.next_step_id = edge.target_step_id

    updated.edges.append(edge.model_copy(deep=True))
    LOGGER.debug(
        "edge_added",
        edge_id=edge.id,
        source=edge.source_step_id,
        target=edge.target_step_id,
        handle=edge.source_handle,
    )
    return _commit(scenario, updated)


def delete_edge(scenario: Scenario, edge_id: str) -> Scenario:
    """Remove an edge and clear the branch target it stood for."""

    updated = scenario.model_copy(deep=True)
    # Look the edge up before removing it: the branch lookup needs its handle.
    edge = next((item for item in updated.edges if item.id == edge_id), None)
    if edge is None:
        raise EdgeNotFoundError(edge_id)

    if edge.source_handle:
        graph = ScenarioGraph(updated)
        for branch in graph.branches(edge.source_step_id):
            if branch.id == edge.source_handle and branch.next_step_id == edge.target_step_id:
                branch.next_step_id = ""

    updated.edges = [item for item in updated.edges if item.id != edge_id]
    LOGGER.debug("edge_deleted", edge_id=edge_id, handle=edge.source_handle)
    return _commit(scenario, updated)


def delete_step(scenario: Scenario, step_id: str) -> Scenario:
    """Remove a step together with every reference to it.

    Children of a removed container are spliced into the removed container's
    parent (or stay at root level).
    """

    updated = scenario.model_copy(deep=True)
    graph = ScenarioGraph(updated)
    removed = graph.step(step_id)
    if removed is None:
        raise StepNotFoundError(step_id)
    orphans = list(removed.step_ids) if is_container(removed) else []  # type: ignore[union-attr]

    updated.steps = [step for step in updated.steps if step.id != step_id]
    updated.edges = [
        edge for edge in updated.edges if step_id not in (edge.source_step_id, edge.target_step_id)
    ]

    for step in updated.steps:
        if has_branches(step):
            for branch in step.branches:  # type: ignore[union-attr]
                if branch.next_step_id == step_id:
                    branch.next_step_id = ""
        if is_container(step) and step_id in step.step_ids:  # type: ignore[union-attr]
            spliced: list[str] = []
            for child in step.step_ids:  # type: ignore[union-attr]
                if child == step_id:
                    spliced.extend(orphan for orphan in orphans if orphan not in spliced)
                elif child not in spliced:
                    spliced.append(child)
            step.step_ids = spliced  # type: ignore[union-attr]

    if updated.start_step_id == step_id:
        updated.start_step_id = updated.steps[0].id if updated.steps else ""

    LOGGER.debug("step_deleted", step_id=step_id, rehomed=len(orphans))
    return _commit(scenario, updated)


def add_step(
    scenario: Scenario,
    step: Step,
    container_id: Optional[str] = None,
    *,
    max_depth: Optional[int] = None,
) -> Scenario:
    """Append a new step at root level or as the last child of ``container_id``."""

    updated = scenario.model_copy(deep=True)
    graph = ScenarioGraph(updated)
    if step.id in graph:
        raise ScenarioValidationError(f"Step id '{step.id}' already exists")
    if is_container(step) and step.step_ids:  # type: ignore[union-attr]
        raise ScenarioValidationError(
            f"New container '{step.id}' must start empty; move children into it with move_steps"
        )

    if container_id is not None:
        container = graph.step(container_id)
        if container is None:
            raise StepNotFoundError(container_id)
        if not is_container(container):
            raise ScenarioValidationError(f"Step '{container_id}' is not a loop or group")
        if is_container(step) and would_exceed_limit(container_id, updated.steps, max_depth):
            raise NestingDepthExceededError(container_id, max_depth or MAX_NESTING_DEPTH)
        container.step_ids.append(step.id)  # type: ignore[union-attr]

    updated.steps.append(step.model_copy(deep=True))
    if not updated.start_step_id:
        updated.start_step_id = step.id
    return _commit(scenario, updated)