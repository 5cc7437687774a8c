"""Runtime models produced while a scenario executes."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from scenario_graph.models import ExecutionMode, GraphModel, utc_now


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class ExecutionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RequestSnapshot(GraphModel):
    """What was sent for a request step."""

    url: str
    method: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None


class ResponseSnapshot(GraphModel):
    """What came back for a request step."""

    status: int
    status_text: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    data: Any = None
    duration: float = 0.0


class StepError(GraphModel):
    code: str
    message: str
    details: Any = None


class StepExecutionResult(GraphModel):
    """Outcome of one visit of a step (one per loop iteration for loop children)."""

    step_id: str
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    request: Optional[RequestSnapshot] = None
    response: Optional[ResponseSnapshot] = None
    error: Optional[StepError] = None
    iterations: Optional[int] = None
    current_iteration: Optional[int] = None
    branch_id: Optional[str] = None
    attempts: Optional[int] = None

    @property
    def duration_ms(self) -> float:
        if self.started_at is None or self.completed_at is None:
            return 0.0
        return round((self.completed_at - self.started_at).total_seconds() * 1000, 3)


class ExecutionLogEntry(GraphModel):
    id: str
    timestamp: datetime = Field(default_factory=utc_now)
    level: Literal["debug", "info", "warn", "error"] = "info"
    step_id: Optional[str] = None
    message: str
    data: Any = None


class ExecutionResult(GraphModel):
    """Aggregated outcome of a scenario run."""

    id: str
    scenario_id: str
    status: ExecutionStatus
    step_results: dict[str, StepExecutionResult] = Field(default_factory=dict)
    history: list[StepExecutionResult] = Field(default_factory=list)
    saved_responses: dict[str, Any] = Field(default_factory=dict)
    logs: list[ExecutionLogEntry] = Field(default_factory=list)
    started_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[StepError] = None

    def _count(self, status: StepStatus) -> int:
        return sum(1 for item in self.history if item.status == status)

    @property
    def total_steps(self) -> int:
        return len(self.history)

    @property
    def passed_steps(self) -> int:
        return self._count(StepStatus.SUCCESS)

    @property
    def failed_steps(self) -> int:
        return self._count(StepStatus.FAILED)

    @property
    def skipped_steps(self) -> int:
        return self._count(StepStatus.SKIPPED)

    @property
    def duration_ms(self) -> float:
        if self.completed_at is None:
            return 0.0
        return round((self.completed_at - self.started_at).total_seconds() * 1000, 3)


class ExecutionEvent(BaseModel):
    """One callback invocation, in emission order."""

    sequence: int
    kind: Literal["step_start", "step_complete", "log", "error", "status"]
    timestamp: datetime = Field(default_factory=utc_now)
    step_id: Optional[str] = None
    status: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)


@dataclass
class LoopFrame:
    """Iteration state of one active loop, innermost last on the stack."""

    loop_id: str
    variable_name: str
    index: int
    total: Optional[int]
    item: Any = None
    item_alias: Optional[str] = None
    index_alias: Optional[str] = None


@dataclass
class ExecutionContext:
    """Per-run mutable state; owned by a single engine run."""

    execution_id: str
    scenario_id: str
    params: dict[str, Any]
    step_mode_overrides: dict[str, ExecutionMode] = field(default_factory=dict)
    step_results: dict[str, StepExecutionResult] = field(default_factory=dict)
    history: list[StepExecutionResult] = field(default_factory=list)
    saved_responses: dict[str, Any] = field(default_factory=dict)
    loop_stack: list[LoopFrame] = field(default_factory=list)
    logs: list[ExecutionLogEntry] = field(default_factory=list)
    current_step_id: Optional[str] = None
    visits: int = 0
    lock: threading.RLock = field(default_factory=threading.RLock)

    def save_response(self, key: str, data: Any) -> None:
        with self.lock:
            self.saved_responses[key] = data

    def responses_snapshot(self) -> dict[str, Any]:
        with self.lock:
            return dict(self.saved_responses)

    def record(self, result: StepExecutionResult) -> None:
        with self.lock:
            self.step_results[result.step_id] = result
            self.history.append(result)

    def has_result(self, step_id: str) -> bool:
        with self.lock:
            return step_id in self.step_results


class RunSummary(BaseModel):
    """Contents of ``summary.json`` written after a CLI run."""

    run_id: str
    execution_id: str
    scenario_id: str
    scenario_name: str
    version: str
    status: ExecutionStatus
    started_at: datetime
    finished_at: datetime
    duration_ms: float
    total_steps: int
    passed_steps: int
    failed_steps: int
    skipped_steps: int
    failures: list[dict[str, Any]] = Field(default_factory=list)
    error: Optional[StepError] = None
    params: dict[str, Any] = Field(default_factory=dict)
    events_file: str
    summary_file: str
    junit_file: str
