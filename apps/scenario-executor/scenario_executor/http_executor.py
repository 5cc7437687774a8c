"""HTTP transport used by request steps."""

from __future__ import annotations

from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Optional, Protocol
from urllib import error, parse, request
import json
import socket
import time

from .exceptions import HttpRequestError
from .settings import DEFAULT_TIMEOUT_MS

BODY_METHODS = {"POST", "PUT", "PATCH"}


@dataclass
class HttpRequest:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    timeout_ms: Optional[int] = None


@dataclass
class HttpResponse:
    """Details about a performed request."""

    status: int
    status_text: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    data: Any = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status < 400


class Transport(Protocol):
    def send(self, http_request: HttpRequest) -> HttpResponse: ...


def build_url(base_url: str, endpoint: str, query: Optional[dict[str, Any]] = None) -> str:
    """Join ``base_url`` and ``endpoint`` and append ``query`` (existing query strings are kept)."""

    if endpoint.startswith(("http://", "https://")):
        url = endpoint
    else:
        path = endpoint if endpoint.startswith("/") else f"/{endpoint}"
        url = f"{base_url.rstrip('/')}{path}"
    if query:
        pairs = {key: value if isinstance(value, str) else json.dumps(value) for key, value in query.items()}
        url = f"{url}{'&' if '?' in url else '?'}{parse.urlencode(pairs)}"
    return url


def _status_text(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return ""


def _decode(raw: bytes, content_type: str) -> Any:
    if not raw:
        return None
    text = raw.decode("utf-8", errors="replace")
    if "json" in content_type or text.lstrip().startswith(("{", "[")):
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    return text


class HttpStepExecutor:
    """Sends request-step calls with urllib."""

    def __init__(self, default_timeout_ms: int = DEFAULT_TIMEOUT_MS) -> None:
        self._default_timeout_ms = default_timeout_ms

    @staticmethod
    def encode_body(method: str, headers: dict[str, str], body: Any) -> bytes | None:
        if method.upper() not in BODY_METHODS or body is None:
            return None
        if isinstance(body, (bytes, bytearray)):
            return bytes(body)
        if isinstance(body, str):
            return body.encode("utf-8")
        if not any(key.lower() == "content-type" for key in headers):
            headers["Content-Type"] = "application/json"
        return json.dumps(body).encode("utf-8")

    def send(self, http_request: HttpRequest) -> HttpResponse:
        method = http_request.method.upper()
        headers = {"Accept": "application/json", **http_request.headers}
        data = self.encode_body(method, headers, http_request.body)
        timeout = (http_request.timeout_ms or self._default_timeout_ms) / 1000
        req = request.Request(http_request.url, data=data, headers=headers, method=method)

        start = time.perf_counter()
        try:
            with request.urlopen(req, timeout=timeout) as response:
                raw = response.read()
                status = response.getcode()
                response_headers = dict(response.headers.items())
        except error.HTTPError as exc:
            raw = exc.read()
            status = exc.code
            response_headers = dict(exc.headers.items()) if exc.headers else {}
        except error.URLError as exc:
            raise HttpRequestError(method, http_request.url, str(exc.reason)) from exc
        except (socket.timeout, TimeoutError, ConnectionError) as exc:
            raise HttpRequestError(method, http_request.url, str(exc) or type(exc).__name__) from exc
        elapsed_ms = (time.perf_counter() - start) * 1000

        content_type = next((value for key, value in response_headers.items() if key.lower() == "content-type"), "")
        return HttpResponse(
            status=status,
            status_text=_status_text(status),
            headers=response_headers,
            data=_decode(raw, content_type),
            duration_ms=round(elapsed_ms, 3),
        )
