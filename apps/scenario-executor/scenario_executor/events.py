"""Callback boundary between the engine and its host."""

from __future__ import annotations

import itertools
import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from .exceptions import ExecutionError
from .models import ExecutionEvent, ExecutionLogEntry, ExecutionStatus, StepExecutionResult, StepStatus

StepStartCallback = Callable[[str, StepStatus], None]
StepCompleteCallback = Callable[[str, StepExecutionResult], None]
LogCallback = Callable[[ExecutionLogEntry], None]
ErrorCallback = Callable[[ExecutionError, Optional[str]], None]
StatusCallback = Callable[[ExecutionStatus], None]


@dataclass
class ExecutionCallbacks:
    """The five hooks a host can attach; all optional."""

    on_step_start: Optional[StepStartCallback] = None
    on_step_complete: Optional[StepCompleteCallback] = None
    on_log: Optional[LogCallback] = None
    on_error: Optional[ErrorCallback] = None
    on_status_change: Optional[StatusCallback] = None

    @classmethod
    def combine(cls, *items: Optional["ExecutionCallbacks"]) -> "ExecutionCallbacks":
        """Fan every hook out to each of ``items`` in order."""

        present = [item for item in items if item is not None]

        def fan(name: str):
            hooks = [getattr(item, name) for item in present if getattr(item, name) is not None]
            if not hooks:
                return None

            def call(*args: Any) -> None:
                for hook in hooks:
                    hook(*args)

            return call

        return cls(
            on_step_start=fan("on_step_start"),
            on_step_complete=fan("on_step_complete"),
            on_log=fan("on_log"),
            on_error=fan("on_error"),
            on_status_change=fan("on_status_change"),
        )


class EventRecorder:
    """Collects callback invocations as an ordered sequence of ``ExecutionEvent``s."""

    def __init__(self) -> None:
        self._events: list[ExecutionEvent] = []
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    @property
    def events(self) -> list[ExecutionEvent]:
        with self._lock:
            return list(self._events)

    def _append(self, kind: str, step_id: Optional[str] = None, status: Optional[str] = None, **payload: Any) -> None:
        with self._lock:
            self._events.append(
                ExecutionEvent(sequence=next(self._sequence), kind=kind, step_id=step_id, status=status, payload=payload)
            )

    def callbacks(self) -> ExecutionCallbacks:
        return ExecutionCallbacks(
            on_step_start=lambda step_id, status: self._append("step_start", step_id, StepStatus(status).value),
            on_step_complete=lambda step_id, result: self._append(
                "step_complete", step_id, result.status.value, result=result.model_dump(mode="json", by_alias=True, exclude_none=True)
            ),
            on_log=lambda entry: self._append(
                "log", entry.step_id, None, entry=entry.model_dump(mode="json", by_alias=True, exclude_none=True)
            ),
            on_error=lambda error, step_id: self._append("error", step_id, None, error=error.to_dict()),
            on_status_change=lambda status: self._append("status", None, ExecutionStatus(status).value),
        )

    def of_kind(self, *kinds: str) -> list[ExecutionEvent]:
        return [event for event in self.events if event.kind in kinds]

    def step_sequence(self) -> list[tuple[str, str, Optional[str]]]:
        """``(kind, step_id, status)`` for every step start/complete event."""

        return [(event.kind, event.step_id or "", event.status) for event in self.of_kind("step_start", "step_complete")]

    def write_jsonl(self, target: Path, events: Optional[Iterable[ExecutionEvent]] = None) -> Path:
        with target.open("w", encoding="utf-8") as handle:
            for event in events if events is not None else self.events:
                handle.write(json.dumps(event.model_dump(mode="json")) + "\n")
        return target
