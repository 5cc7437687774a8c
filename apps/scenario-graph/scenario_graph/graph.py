"""Read-only index over a scenario's steps and topology."""

from __future__ import annotations

from collections import deque
from typing import Iterable, Iterator, Optional

from .models import Branch, ContainerStep, Scenario, ScenarioEdge, Step, has_branches, is_container


class ScenarioGraph:
    """Lookup helpers shared by the editing operations and the execution engine.

    The index is built once from a scenario snapshot; callers that mutate the
    scenario must build a new graph afterwards.
    """

    def __init__(self, scenario: Scenario) -> None:
        self.scenario = scenario
        self._steps: dict[str, Step] = {step.id: step for step in scenario.steps}
        self._outgoing: dict[str, list[ScenarioEdge]] = {}
        for edge in scenario.edges:
            self._outgoing.setdefault(edge.source_step_id, []).append(edge)

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def __iter__(self) -> Iterator[Step]:
        return iter(self.scenario.steps)

    def step(self, step_id: str) -> Optional[Step]:
        return self._steps.get(step_id)

    def containers(self) -> Iterator[ContainerStep]:
        for step in self.scenario.steps:
            if is_container(step):
                yield step  # type: ignore[misc]

    def branches(self, step_id: str) -> list[Branch]:
        step = self._steps.get(step_id)
        if step is None or not has_branches(step):
            return []
        return list(step.branches)  # type: ignore[union-attr]

    def branch_ids(self, step_id: str) -> set[str]:
        return {branch.id for branch in self.branches(step_id)}

    def outgoing_edges(self, step_id: str) -> list[ScenarioEdge]:
        return list(self._outgoing.get(step_id, []))

    def parent_container(self, step_id: str) -> Optional[ContainerStep]:
        """Return the container that lists ``step_id`` directly, if any."""

        for container in self.containers():
            if step_id in container.step_ids:
                return container
        return None

    def ancestors(self, step_id: str) -> list[str]:
        """Container ids enclosing ``step_id``, innermost first."""

        chain: list[str] = []
        current = step_id
        while True:
            parent = self.parent_container(current)
            if parent is None or parent.id in chain or parent.id == step_id:
                return chain
            chain.append(parent.id)
            current = parent.id

    def default_successor(self, step_id: str) -> Optional[str]:
        """Target of the first outgoing edge that is not bound to a branch."""

        branch_ids = self.branch_ids(step_id)
        for edge in self._outgoing.get(step_id, []):
            if not edge.source_handle or edge.source_handle not in branch_ids:
                return edge.target_step_id
        return None

    def successors(self, step_id: str) -> set[str]:
        """Every step id directly reachable from ``step_id``.

        Covers edges, branch targets and, for containers, their children.
        """

        targets = {edge.target_step_id for edge in self._outgoing.get(step_id, [])}
        targets.update(branch.next_step_id for branch in self.branches(step_id) if branch.next_step_id)
        step = self._steps.get(step_id)
        if step is not None and is_container(step):
            targets.update(step.step_ids)  # type: ignore[union-attr]
        return targets

    def reachable_from(self, start_ids: Iterable[str]) -> set[str]:
        seen: set[str] = set()
        pending = deque(step_id for step_id in start_ids if step_id)
        while pending:
            current = pending.popleft()
            if current in seen:
                continue
            seen.add(current)
            pending.extend(self.successors(current) - seen)
        return seen

    def is_internally_wired(self, container: ContainerStep) -> bool:
        """True when any edge or branch links two direct children of ``container``."""

        children = set(container.step_ids)
        for child_id in container.step_ids:
            for edge in self._outgoing.get(child_id, []):
                if edge.target_step_id in children:
                    return True
            for branch in self.branches(child_id):
                if branch.next_step_id in children:
                    return True
        return False
