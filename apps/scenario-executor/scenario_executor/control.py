"""Pause/resume/stop signalling between a host and a running engine."""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Callable, Optional

import structlog

LOGGER = structlog.get_logger("scenario_executor")


class ControlState(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = {ControlState.COMPLETED, ControlState.FAILED, ControlState.CANCELLED}

_TRANSITIONS: dict[ControlState, set[ControlState]] = {
    ControlState.RUNNING: {ControlState.PAUSED, ControlState.STOPPED, *TERMINAL_STATES},
    ControlState.PAUSED: {ControlState.RUNNING, ControlState.STOPPED, *TERMINAL_STATES},
    ControlState.STOPPED: {ControlState.CANCELLED},
    ControlState.COMPLETED: set(),
    ControlState.FAILED: set(),
    ControlState.CANCELLED: set(),
}

StateListener = Callable[[ControlState, ControlState], None]


class ExecutionControl:
    """Thread-safe run state shared by the engine and its host.

    The engine only observes the state at step boundaries (``checkpoint``) and
    while sleeping (``sleep``); a step already in flight always completes.
    ``stop`` is one-way: once stopped the run can only end as cancelled.
    """

    def __init__(self) -> None:
        self._state = ControlState.RUNNING
        self._condition = threading.Condition()
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> ControlState:
        with self._condition:
            return self._state

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _transition(self, target: ControlState) -> bool:
        with self._condition:
            previous = self._state
            if target == previous or target not in _TRANSITIONS[previous]:
                return False
            self._state = target
            self._condition.notify_all()
        LOGGER.debug("execution_control_transition", previous=previous.value, state=target.value)
        for listener in list(self._listeners):
            listener(previous, target)
        return True

    def pause(self) -> bool:
        return self._transition(ControlState.PAUSED)

    def resume(self) -> bool:
        with self._condition:
            if self._state != ControlState.PAUSED:
                return False
        return self._transition(ControlState.RUNNING)

    def stop(self) -> bool:
        with self._condition:
            if self._state not in (ControlState.RUNNING, ControlState.PAUSED):
                return False
        return self._transition(ControlState.STOPPED)

    def is_paused(self) -> bool:
        return self.state == ControlState.PAUSED

    def is_stopped(self) -> bool:
        return self.state in (ControlState.STOPPED, ControlState.CANCELLED)

    def is_finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def checkpoint(self, timeout: Optional[float] = None) -> bool:
        """Block while paused; return False when the run must unwind.

        With ``timeout`` the wait gives up after that many seconds and reports
        whether the run could continue at that moment.
        """

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while self._state == ControlState.PAUSED:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._condition.wait(remaining)
            return self._state == ControlState.RUNNING

    def sleep(self, seconds: float) -> bool:
        """Wait ``seconds`` unless stopped first; return False when stopped."""

        deadline = time.monotonic() + max(0.0, seconds)
        with self._condition:
            while self._state not in (ControlState.STOPPED, ControlState.CANCELLED):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return True
                self._condition.wait(remaining)
            return False

    def finish(self, state: ControlState) -> bool:
        """Record the run's terminal state (``completed``, ``failed`` or ``cancelled``)."""

        if state not in TERMINAL_STATES:
            raise ValueError(f"{state.value} is not a terminal state")
        return self._transition(state)
