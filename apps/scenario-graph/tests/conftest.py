"""Test bootstrap for scenario-graph."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable

import pytest
import structlog

APP_ROOT = Path(__file__).resolve().parents[1]

if str(APP_ROOT) not in sys.path:
    sys.path.insert(0, str(APP_ROOT))

from scenario_graph.models import Scenario  # noqa: E402


def _scenario(steps: list[dict[str, Any]], edges: list[dict[str, Any]] | None = None, **extra: Any) -> Scenario:
    payload: dict[str, Any] = {
        "id": "scn-1",
        "name": "Checkout",
        "version": "1.0.0",
        "serverIds": ["api"],
        "parameterSchema": [],
        "steps": steps,
        "edges": edges or [],
        "startStepId": steps[0]["id"] if steps else "",
        "createdAt": "2024-05-01T10:00:00Z",
        "updatedAt": "2024-05-01T10:00:00Z",
    }
    payload.update(extra)
    return Scenario.model_validate(payload)


@pytest.fixture(autouse=True)
def _restore_structlog_config():
    """The CLI callback binds structlog to the runner's temporary stderr; undo it after each test."""

    saved = structlog.get_config()
    yield
    structlog.configure(**saved)


@pytest.fixture
def build_scenario() -> Callable[..., Scenario]:
    return _scenario


@pytest.fixture
def branching_scenario() -> Scenario:
    """check -> (ok: pay | fallback: notify), pay -> done."""

    return _scenario(
        [
            {
                "id": "check",
                "type": "condition",
                "name": "Check stock",
                "branches": [
                    {
                        "id": "branch_1",
                        "label": "in stock",
                        "condition": {"source": "params", "field": "qty", "operator": ">", "value": 0},
                        "nextStepId": "pay",
                    },
                    {"id": "branch_2", "isDefault": True, "nextStepId": "notify"},
                ],
            },
            {"id": "pay", "type": "request", "name": "Pay", "serverId": "api", "method": "POST", "endpoint": "/pay"},
            {"id": "notify", "type": "request", "name": "Notify", "serverId": "api", "endpoint": "/notify"},
            {"id": "done", "type": "request", "name": "Done", "serverId": "api", "endpoint": "/done"},
        ],
        [
            {"id": "e1", "sourceStepId": "check", "targetStepId": "pay", "sourceHandle": "branch_1"},
            {"id": "e2", "sourceStepId": "check", "targetStepId": "notify", "sourceHandle": "branch_2"},
            {"id": "e3", "sourceStepId": "pay", "targetStepId": "done"},
        ],
    )
