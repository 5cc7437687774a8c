"""Test bootstrap for scenario-executor."""

from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import Any, Callable, Union
from urllib.parse import urlparse

import pytest

APPS_DIR = Path(__file__).resolve().parents[2]
for package in ["scenario-executor", "scenario-graph"]:
    package_root = APPS_DIR / package
    path_str = str(package_root)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)

from scenario_executor.http_executor import HttpRequest, HttpResponse  # noqa: E402
from scenario_graph.models import Scenario, ServerDefinition  # noqa: E402

Reply = Union[HttpResponse, Exception, Callable[[HttpRequest], HttpResponse]]


class FakeTransport:
    """In-memory stand-in for ``HttpStepExecutor`` keyed by URL path.

    A route may hold one reply or a list of replies consumed in order (the
    last one repeats). Replies are responses, exceptions to raise or
    callables receiving the request.
    """

    def __init__(self) -> None:
        self.routes: dict[str, Union[Reply, list[Reply]]] = {}
        self.calls: list[HttpRequest] = []
        self._lock = threading.Lock()

    def route(self, path: str, *replies: Reply) -> "FakeTransport":
        self.routes[path] = list(replies) if len(replies) > 1 else replies[0]
        return self

    def json(self, path: str, data: Any = None, status: int = 200) -> "FakeTransport":
        return self.route(path, HttpResponse(status=status, data=data if data is not None else {}))

    @property
    def paths(self) -> list[str]:
        return [urlparse(call.url).path for call in self.calls]

    def send(self, http_request: HttpRequest) -> HttpResponse:
        path = urlparse(http_request.url).path
        with self._lock:
            self.calls.append(http_request)
            reply = self.routes.get(path, HttpResponse(status=200, data={}))
            if isinstance(reply, list):
                reply = reply.pop(0) if len(reply) > 1 else reply[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(http_request)
        return reply


def _scenario(steps: list[dict[str, Any]], edges: list[dict[str, Any]] | None = None, **extra: Any) -> Scenario:
    payload: dict[str, Any] = {
        "id": "scn-exec",
        "name": "Order flow",
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


def request_step(step_id: str, endpoint: str | None = None, **extra: Any) -> dict[str, Any]:
    step = {"id": step_id, "type": "request", "name": step_id.upper(), "serverId": "api", "endpoint": endpoint or f"/{step_id}"}
    step.update(extra)
    return step


def chain_edges(*step_ids: str) -> list[dict[str, Any]]:
    return [
        {"id": f"e-{source}-{target}", "sourceStepId": source, "targetStepId": target}
        for source, target in zip(step_ids, step_ids[1:])
    ]


@pytest.fixture
def build_scenario() -> Callable[..., Scenario]:
    return _scenario


@pytest.fixture
def servers() -> dict[str, ServerDefinition]:
    return {
        "api": ServerDefinition(
            id="api",
            name="API",
            base_url="http://api.test",
            headers=[{"key": "X-Env", "value": "test"}],
        )
    }


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def make_request() -> Callable[..., dict[str, Any]]:
    return request_step


@pytest.fixture
def chain() -> Callable[..., list[dict[str, Any]]]:
    return chain_edges
