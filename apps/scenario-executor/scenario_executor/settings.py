"""Engine limits read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_MAX_LOOP_ITERATIONS = 1000
DEFAULT_MAX_STEP_VISITS = 10000
DEFAULT_TIMEOUT_MS = 30000
DEFAULT_BACKGROUND_WORKERS = 4


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class EngineSettings:
    """Guards applied by the execution engine.

    ``max_loop_iterations`` caps loops without ``maxIterations``;
    ``max_step_visits`` fails runs whose topology never terminates, counted
    separately for the top-level walk and for each container pass;
    ``default_timeout_ms`` applies when neither step nor server sets a timeout;
    ``background_workers`` sizes the pool for ``waitForResponse=false`` requests.
    """

    max_loop_iterations: int = DEFAULT_MAX_LOOP_ITERATIONS
    max_step_visits: int = DEFAULT_MAX_STEP_VISITS
    default_timeout_ms: int = DEFAULT_TIMEOUT_MS
    background_workers: int = DEFAULT_BACKGROUND_WORKERS

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            max_loop_iterations=_env_int("SCENARIO_MAX_LOOP_ITERATIONS", DEFAULT_MAX_LOOP_ITERATIONS),
            max_step_visits=_env_int("SCENARIO_MAX_STEP_VISITS", DEFAULT_MAX_STEP_VISITS),
            default_timeout_ms=_env_int("SCENARIO_DEFAULT_TIMEOUT_MS", DEFAULT_TIMEOUT_MS),
            background_workers=_env_int("SCENARIO_BACKGROUND_WORKERS", DEFAULT_BACKGROUND_WORKERS),
        )
