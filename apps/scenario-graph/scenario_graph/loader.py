"""Scenario and server document loading utilities."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal, Optional

import structlog
import yaml
from pydantic import ValidationError

from .errors import ScenarioValidationError
from .graph import ScenarioGraph
from .models import Scenario, ServerDefinition, has_branches, is_container
from .nesting import is_descendant

LOGGER = structlog.get_logger("scenario_graph")

DocumentFormat = Literal["json", "yaml"]


def detect_format(path: Path) -> DocumentFormat:
    return "json" if path.suffix.lower() == ".json" else "yaml"


def _problems(exc: ValidationError) -> list[str]:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "<root>"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return problems


def _parse_text(text: str, fmt: DocumentFormat, source: str) -> Any:
    try:
        if fmt == "json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ScenarioValidationError(f"{source} is not valid {fmt.upper()}", [str(exc)]) from exc


def scenario_from_dict(data: Any, *, source: str = "scenario") -> Scenario:
    """Validate a raw document and sanitise its references."""

    if not isinstance(data, dict):
        raise ScenarioValidationError(f"{source} must contain a mapping", [f"<root>: got {type(data).__name__}"])
    try:
        scenario = Scenario.model_validate(data)
    except ValidationError as exc:
        raise ScenarioValidationError(f"{source} does not match the scenario schema", _problems(exc)) from exc
    return sanitize_scenario(scenario)


def parse_scenario(text: str, fmt: DocumentFormat = "yaml") -> Scenario:
    return scenario_from_dict(_parse_text(text, fmt, "scenario document"))


def load_scenario(path: Path) -> Scenario:
    """Load, validate and sanitise a scenario JSON or YAML file."""

    text = path.read_text(encoding="utf-8")
    data = _parse_text(text, detect_format(path), str(path))
    scenario = scenario_from_dict(data, source=str(path))
    LOGGER.debug("scenario_loaded", path=str(path), scenario_id=scenario.id, steps=len(scenario.steps))
    return scenario


def dump_scenario(scenario: Scenario, fmt: DocumentFormat = "json") -> str:
    payload = scenario.as_serializable()
    if fmt == "json":
        return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"
    return yaml.safe_dump(payload, sort_keys=False, allow_unicode=True)


def save_scenario(scenario: Scenario, path: Path, fmt: Optional[DocumentFormat] = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_scenario(scenario, fmt or detect_format(path)), encoding="utf-8")
    return path


def sanitize_scenario(scenario: Scenario) -> Scenario:
    """Drop references to steps that do not exist.

    Container ``stepIds``, branch ``nextStepId`` and edges pointing at unknown
    steps are removed or cleared, a container may only claim a child once and
    never one of its own ancestors, and an invalid ``startStepId`` falls back
    to the first step. Applying it twice gives the same document.
    """

    cleaned = scenario.model_copy(deep=True)
    known = {step.id for step in cleaned.steps}
    dropped: list[str] = []
    claimed: set[str] = set()

    for step in cleaned.steps:
        if is_container(step):
            kept: list[str] = []
            for child in step.step_ids:  # type: ignore[union-attr]
                if child not in known or child == step.id or child in claimed:
                    dropped.append(f"{step.id}.stepIds:{child}")
                    continue
                if is_descendant(step.id, child, cleaned.steps):
                    dropped.append(f"{step.id}.stepIds:{child}")
                    continue
                kept.append(child)
                claimed.add(child)
            step.step_ids = kept  # type: ignore[union-attr]
        if has_branches(step):
            for branch in step.branches:  # type: ignore[union-attr]
                if branch.next_step_id and branch.next_step_id not in known:
                    dropped.append(f"{step.id}.branches.{branch.id}:{branch.next_step_id}")
                    branch.next_step_id = ""

    edges = []
    for edge in cleaned.edges:
        if edge.source_step_id in known and edge.target_step_id in known:
            edges.append(edge)
        else:
            dropped.append(f"edge:{edge.id}")
    cleaned.edges = edges

    if cleaned.start_step_id not in known:
        fallback = cleaned.steps[0].id if cleaned.steps else ""
        if cleaned.start_step_id:
            dropped.append(f"startStepId:{cleaned.start_step_id}")
        cleaned.start_step_id = fallback

    if dropped:
        LOGGER.warning("scenario_sanitized", scenario_id=cleaned.id, dropped=dropped)
    return cleaned


def load_servers(path: Path) -> dict[str, ServerDefinition]:
    """Load server definitions from a list of servers or an ``id -> server`` mapping."""

    data = _parse_text(path.read_text(encoding="utf-8"), detect_format(path), str(path))
    if isinstance(data, dict) and isinstance(data.get("servers"), (list, dict)):
        data = data["servers"]
    if isinstance(data, dict):
        entries = [{"id": key, **value} if isinstance(value, dict) else value for key, value in data.items()]
    elif isinstance(data, list):
        entries = data
    else:
        raise ScenarioValidationError(f"{path} must contain a list or mapping of servers")

    servers: dict[str, ServerDefinition] = {}
    problems: list[str] = []
    for index, entry in enumerate(entries):
        try:
            server = ServerDefinition.model_validate(entry)
        except ValidationError as exc:
            problems.extend(f"servers[{index}].{item}" for item in _problems(exc))
            continue
        servers[server.id] = server
    if problems:
        raise ScenarioValidationError(f"{path} does not match the server schema", problems)
    return servers


def describe(scenario: Scenario) -> dict[str, Any]:
    """Summary counters used by the CLI."""

    graph = ScenarioGraph(scenario)
    counts: dict[str, int] = {}
    for step in scenario.steps:
        counts[step.type] = counts.get(step.type, 0) + 1
    return {
        "id": scenario.id,
        "name": scenario.name,
        "version": scenario.version,
        "steps": len(scenario.steps),
        "edges": len(scenario.edges),
        "containers": sum(1 for _ in graph.containers()),
        "by_type": counts,
        "start": scenario.start_step_id,
        "servers": list(scenario.server_ids),
    }
