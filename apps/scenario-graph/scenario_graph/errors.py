"""Errors raised while loading or editing scenario graphs."""

from __future__ import annotations

from typing import Any


class ScenarioGraphError(Exception):
    """Base class for structural and validation errors.

    Attributes:
        message: Human-readable error message.
        code: Machine-readable error code.
        details: Additional context as a dictionary.
    """

    code = "SCENARIO_GRAPH_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ScenarioValidationError(ScenarioGraphError):
    """Raised when a scenario or server document does not match the schema."""

    code = "SCENARIO_INVALID"

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        self.problems = problems or []
        super().__init__(message, details={"problems": self.problems})

    def __str__(self) -> str:
        if not self.problems:
            return self.message
        return self.message + "\n" + "\n".join(f"  - {item}" for item in self.problems)


class StepNotFoundError(ScenarioGraphError):
    code = "STEP_NOT_FOUND"

    def __init__(self, step_id: str) -> None:
        super().__init__(f"Step '{step_id}' does not exist", details={"step_id": step_id})
        self.step_id = step_id


class EdgeNotFoundError(ScenarioGraphError):
    code = "EDGE_NOT_FOUND"

    def __init__(self, edge_id: str) -> None:
        super().__init__(f"Edge '{edge_id}' does not exist", details={"edge_id": edge_id})
        self.edge_id = edge_id


class InvalidEdgeError(ScenarioGraphError):
    """Raised when an edge cannot be added to the scenario."""

    code = "INVALID_EDGE"

    def __init__(self, edge_id: str, reason: str) -> None:
        super().__init__(f"Edge '{edge_id}' is invalid: {reason}", details={"edge_id": edge_id, "reason": reason})
        self.edge_id = edge_id
        self.reason = reason


class NestingDepthExceededError(ScenarioGraphError):
    code = "NESTING_DEPTH_EXCEEDED"

    def __init__(self, container_id: str | None, max_depth: int) -> None:
        where = f"inside '{container_id}'" if container_id else "at root level"
        super().__init__(
            f"Cannot nest another container {where}: maximum {max_depth} levels of nesting allowed",
            details={"container_id": container_id, "max_depth": max_depth},
        )
        self.container_id = container_id
        self.max_depth = max_depth


class ContainerCycleError(ScenarioGraphError):
    """Raised when a container would (transitively) contain itself."""

    code = "CONTAINER_CYCLE"

    def __init__(self, step_id: str, container_id: str) -> None:
        super().__init__(
            f"Step '{step_id}' cannot be placed inside '{container_id}': it is the container or one of its ancestors",
            details={"step_id": step_id, "container_id": container_id},
        )
        self.step_id = step_id
        self.container_id = container_id


class EdgeConflictRejectedError(ScenarioGraphError):
    """Raised when the caller declines the edge removals a structural change requires."""

    code = "EDGE_CONFLICT_REJECTED"

    def __init__(self, edge_ids: list[str]) -> None:
        super().__init__(
            f"Structural change rejected: {len(edge_ids)} conflicting edge(s) were not confirmed",
            details={"edge_ids": edge_ids},
        )
        self.edge_ids = edge_ids


class TopologyDivergenceError(ScenarioGraphError):
    """Raised when the edge list and branch targets disagree."""

    code = "TOPOLOGY_DIVERGENCE"

    def __init__(self, divergences: list[Any]) -> None:
        super().__init__(
            f"Edge list and branch targets diverge in {len(divergences)} place(s)",
            details={"divergences": [str(item) for item in divergences]},
        )
        self.divergences = divergences
