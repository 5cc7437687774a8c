"""Scenario execution engine.

The engine walks the scenario with an explicit current-step pointer starting
at ``startStepId``; each step type picks its own successor:

* request: matched conditional branch, else default branch, else the default
  successor edge (first edge whose handle is not a branch id).
* condition: same branch selection; without a match the step is skipped and
  the default successor edge (if any) is followed.
* loop/group: the body runs from the first child no sibling links to and
  follows the topology inside the container (declared order when the
  children are not linked); a successor outside the container ends the body
  early and becomes the container's successor.

Progress is reported only through ``ExecutionCallbacks``. Pause and stop
requests are observed between steps via ``ExecutionControl``.
"""

from __future__ import annotations

import itertools
import json
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Union

import structlog

from scenario_graph.graph import ScenarioGraph
from scenario_graph.models import (
    Branch,
    ConditionStep,
    ContainerStep,
    ExecutionMode,
    GroupStep,
    LoopStep,
    RequestStep,
    Scenario,
    ServerDefinition,
    Step,
    utc_now,
)

from .conditions import evaluate
from .control import ControlState, ExecutionControl
from .events import ExecutionCallbacks
from .exceptions import (
    ExecutionCancelledError,
    ExecutionError,
    HttpRequestError,
    LoopLimitExceededError,
    MissingServerError,
    StepExecutionError,
    StepLimitExceededError,
)
from .http_executor import HttpRequest, HttpResponse, HttpStepExecutor, Transport, build_url
from .loops import plan_loop
from .models import (
    ExecutionContext,
    ExecutionLogEntry,
    ExecutionResult,
    ExecutionStatus,
    RequestSnapshot,
    ResponseSnapshot,
    StepError,
    StepExecutionResult,
    StepStatus,
)
from .parameters import apply_parameter_schema
from .settings import EngineSettings
from .variables import VariableScope, resolve_value

LOGGER = structlog.get_logger("scenario_executor")

ServerMap = Union[Mapping[str, ServerDefinition], Iterable[ServerDefinition]]


@dataclass
class ExecutionOptions:
    step_mode_overrides: dict[str, ExecutionMode] = field(default_factory=dict)
    callbacks: Optional[ExecutionCallbacks] = None
    stop_on_error: bool = True
    execution_id: Optional[str] = None


class _Halt(Exception):
    """Unwinds the walk when the run ends early."""

    def __init__(self, status: ExecutionStatus, error: Optional[ExecutionError] = None) -> None:
        super().__init__(status.value)
        self.status = status
        self.error = error


def _as_server_map(servers: ServerMap) -> dict[str, ServerDefinition]:
    if isinstance(servers, Mapping):
        return dict(servers)
    return {server.id: server for server in servers}


def _step_error(error: ExecutionError) -> StepError:
    return StepError(code=error.code, message=error.message, details=error.details or None)


class ScenarioEngine:
    """Executes one scenario against a set of backends.

    ``control`` is the host's handle for ``pause()``, ``resume()`` and
    ``stop()``. A finished run leaves the handle in a terminal state; the next
    ``execute`` call starts with a fresh one.
    """

    def __init__(
        self,
        scenario: Scenario,
        servers: ServerMap,
        *,
        http_executor: Optional[Transport] = None,
        settings: Optional[EngineSettings] = None,
        control: Optional[ExecutionControl] = None,
    ) -> None:
        self.scenario = scenario
        self.graph = ScenarioGraph(scenario)
        self.servers = _as_server_map(servers)
        self.settings = settings or EngineSettings.from_env()
        self.http_executor: Transport = http_executor or HttpStepExecutor(self.settings.default_timeout_ms)
        self.control = control or ExecutionControl()

    def missing_servers(self) -> dict[str, list[str]]:
        """Server id -> request steps referencing it, for ids absent from the server map."""

        missing: dict[str, list[str]] = {}
        for step in self.scenario.steps:
            if isinstance(step, RequestStep) and step.server_id not in self.servers:
                missing.setdefault(step.server_id, []).append(step.id)
        return missing

    def execute(
        self,
        params: Optional[dict[str, Any]] = None,
        options: Optional[ExecutionOptions] = None,
    ) -> ExecutionResult:
        """Run the scenario to completion, failure or cancellation.

        Raises ``MissingServerError`` or ``ParameterValidationError`` before any
        step runs; every other problem is reported on the returned result.
        """

        options = options or ExecutionOptions()
        missing = self.missing_servers()
        if missing:
            raise MissingServerError(missing)
        values = apply_parameter_schema(self.scenario.parameter_schema, params)
        if self.control.is_finished():
            self.control = ExecutionControl()

        context = ExecutionContext(
            execution_id=options.execution_id or f"exec-{uuid.uuid4().hex[:12]}",
            scenario_id=self.scenario.id,
            params=values,
            step_mode_overrides=dict(options.step_mode_overrides),
        )
        return _ScenarioRun(self, context, options).execute()

    def pause(self) -> bool:
        return self.control.pause()

    def resume(self) -> bool:
        return self.control.resume()

    def stop(self) -> bool:
        return self.control.stop()

    def is_paused(self) -> bool:
        return self.control.is_paused()

    def is_stopped(self) -> bool:
        return self.control.is_stopped()


class _ScenarioRun:
    """State and step handlers for a single ``execute`` call."""

    def __init__(self, engine: ScenarioEngine, context: ExecutionContext, options: ExecutionOptions) -> None:
        self.scenario = engine.scenario
        self.graph = engine.graph
        self.servers = engine.servers
        self.transport = engine.http_executor
        self.settings = engine.settings
        self.control = engine.control
        self.context = context
        self.options = options
        self.callbacks = options.callbacks or ExecutionCallbacks()
        self.log = LOGGER.bind(run_id=context.execution_id, scenario_id=context.scenario_id)
        self._log_ids = itertools.count(1)
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pending: list[Future] = []

    # -- run lifecycle -------------------------------------------------------------

    def execute(self) -> ExecutionResult:
        started_at = utc_now()
        status = ExecutionStatus.COMPLETED
        error: Optional[ExecutionError] = None

        self.control.add_listener(self._on_control_change)
        self._emit_status(ExecutionStatus.RUNNING)
        self._log("info", f"Execution started for scenario '{self.scenario.name}'")
        try:
            current: Optional[str] = self.scenario.start_step_id or None
            while current:
                current = self._run_step(current)
        except _Halt as halt:
            status, error = halt.status, halt.error
        finally:
            self._drain_background()
            self.control.remove_listener(self._on_control_change)

        if status == ExecutionStatus.COMPLETED and self.control.is_stopped():
            status = ExecutionStatus.CANCELLED
        self.control.finish(ControlState(status.value))
        self._log(
            "error" if status == ExecutionStatus.FAILED else "info",
            f"Execution {status.value}",
            data={"steps": len(self.context.history)},
        )
        self._emit_status(status)

        return ExecutionResult(
            id=self.context.execution_id,
            scenario_id=self.scenario.id,
            status=status,
            step_results=dict(self.context.step_results),
            history=list(self.context.history),
            saved_responses=self.context.responses_snapshot(),
            logs=list(self.context.logs),
            started_at=started_at,
            completed_at=utc_now(),
            error=_step_error(error) if error is not None else None,
        )

    def _on_control_change(self, previous: ControlState, state: ControlState) -> None:
        if state == ControlState.PAUSED:
            self._emit_status(ExecutionStatus.PAUSED)
        elif state == ControlState.RUNNING and previous == ControlState.PAUSED:
            self._emit_status(ExecutionStatus.RUNNING)

    # -- callbacks -----------------------------------------------------------------

    def _emit_status(self, status: ExecutionStatus) -> None:
        if self.callbacks.on_status_change:
            self.callbacks.on_status_change(status)

    def _emit_start(self, step_id: str, status: StepStatus) -> None:
        self.log.debug("step_started", step_id=step_id, status=status.value)
        if self.callbacks.on_step_start:
            self.callbacks.on_step_start(step_id, status)

    def _complete(self, result: StepExecutionResult) -> None:
        if result.completed_at is None:
            result.completed_at = utc_now()
        self.context.record(result)
        self.log.info("step_completed", step_id=result.step_id, status=result.status.value)
        if self.callbacks.on_step_complete:
            self.callbacks.on_step_complete(result.step_id, result)

    def _log(self, level: str, message: str, step_id: Optional[str] = None, data: Any = None) -> None:
        entry = ExecutionLogEntry(
            id=f"{self.context.execution_id}-log-{next(self._log_ids)}",
            level=level,  # type: ignore[arg-type]
            step_id=step_id,
            message=message,
            data=data,
        )
        with self.context.lock:
            self.context.logs.append(entry)
        if self.callbacks.on_log:
            self.callbacks.on_log(entry)

    def _report_error(self, error: ExecutionError, step_id: Optional[str]) -> None:
        self.log.warning("step_error", step_id=step_id, code=error.code, error=error.message)
        self._log("error", error.message, step_id, data={"code": error.code, "details": error.details})
        if self.callbacks.on_error:
            self.callbacks.on_error(error, step_id)

    # -- shared step plumbing ------------------------------------------------------

    def _scope(self) -> VariableScope:
        return VariableScope.from_context(self.context)

    def _label(self, step: Step) -> str:
        return step.name or step.id

    def _new_result(self, step_id: str, status: StepStatus = StepStatus.RUNNING) -> StepExecutionResult:
        result = StepExecutionResult(step_id=step_id, status=status, started_at=utc_now())
        if self.context.loop_stack:
            frame = self.context.loop_stack[-1]
            result.current_iteration = frame.index
            result.iterations = frame.total
        return result

    def _default_successor(self, step_id: str) -> Optional[str]:
        return self.graph.default_successor(step_id)

    def _fail(
        self,
        step: Step,
        result: StepExecutionResult,
        error: ExecutionError,
        *,
        fatal: bool = False,
    ) -> Optional[str]:
        """Record a failed step; halt the run or continue at the default successor."""

        result.status = StepStatus.FAILED
        result.error = _step_error(error)
        self._complete(result)
        self._report_error(error, step.id)
        if fatal or self.options.stop_on_error:
            raise _Halt(ExecutionStatus.FAILED, error)
        return self._default_successor(step.id)

    def _cancel(self, step: Step, result: StepExecutionResult) -> None:
        result.status = StepStatus.CANCELLED
        self._complete(result)
        raise _Halt(ExecutionStatus.CANCELLED, ExecutionCancelledError(step.id))

    def _skip(self, step: Step, reason: str) -> Optional[str]:
        self._log("info", f"Step '{self._label(step)}' skipped: {reason}", step.id)
        self._complete(self._new_result(step.id, StepStatus.SKIPPED))
        return self._default_successor(step.id)

    def _choose_branch(self, branches: list[Branch]) -> Optional[Branch]:
        scope = self._scope()
        for branch in branches:
            if branch.is_default or branch.condition is None:
                continue
            if evaluate(branch.condition, scope):
                return branch
        return next((branch for branch in branches if branch.is_default), None)

    def _branch_target(self, step: Step, branch: Optional[Branch]) -> Optional[str]:
        if branch is not None and branch.next_step_id:
            return branch.next_step_id
        return self._default_successor(step.id)

    # -- walking -------------------------------------------------------------------

    def _run_step(self, step_id: str) -> Optional[str]:
        """Execute one step and return the id of the step to run next."""

        step = self.graph.step(step_id)
        if step is None:
            self._log("warn", f"Successor '{step_id}' does not exist; path ends", step_id)
            return None

        if not self.control.checkpoint():
            raise _Halt(ExecutionStatus.CANCELLED, ExecutionCancelledError(step_id))
        self.context.visits += 1
        if self.context.visits > self.settings.max_step_visits:
            error = StepLimitExceededError(self.settings.max_step_visits)
            self._report_error(error, step_id)
            raise _Halt(ExecutionStatus.FAILED, error)
        self.context.current_step_id = step_id

        mode = self.context.step_mode_overrides.get(step_id, step.execution_mode)
        if mode == "bypass":
            return self._skip(step, "bypassed")
        if step.condition is not None:
            try:
                satisfied = evaluate(step.condition, self._scope())
            except ExecutionError as exc:
                return self._fail(step, self._new_result(step.id), exc)
            if not satisfied:
                return self._skip(step, "pre-condition not met")
        if mode == "manual":
            self._wait_for_manual(step)
        elif mode == "delayed" and step.delay_ms:
            self._delay(step, step.delay_ms)

        if isinstance(step, RequestStep):
            return self._run_request(step)
        if isinstance(step, ConditionStep):
            return self._run_condition(step)
        if isinstance(step, LoopStep):
            return self._run_loop(step)
        return self._run_group(step)

    def _wait_for_manual(self, step: Step) -> None:
        # Pause before announcing the wait so a host may resume from the callback.
        self.control.pause()
        self._emit_start(step.id, StepStatus.WAITING)
        self._log("info", f"Step '{self._label(step)}' is waiting for manual confirmation", step.id)
        if not self.control.checkpoint():
            self._cancel(step, self._new_result(step.id))

    def _delay(self, step: Step, delay_ms: int) -> None:
        self._emit_start(step.id, StepStatus.WAITING)
        self._log("info", f"Delaying step '{self._label(step)}' by {delay_ms}ms", step.id)
        if not self.control.sleep(delay_ms / 1000):
            self._cancel(step, self._new_result(step.id))

    def _run_body(self, container: ContainerStep) -> Optional[str]:
        """Run a container's children once; return a successor outside the container, if any."""

        children = [child for child in container.step_ids if child in self.graph]
        if not children:
            return None
        # Each pass gets its own visit budget; loop passes are capped by their iteration limit.
        outer_visits = self.context.visits
        self.context.visits = 0
        try:
            return self._walk_body(container, children)
        finally:
            self.context.visits = outer_visits

    def _walk_body(self, container: ContainerStep, children: list[str]) -> Optional[str]:
        members = set(children)
        if self.graph.is_internally_wired(container):
            linked = {target for child in children for target in self.graph.successors(child)} & members
            current: Optional[str] = next((child for child in children if child not in linked), children[0])
            while current:
                next_id = self._run_step(current)
                if next_id and next_id not in members:
                    return next_id
                current = next_id
            return None
        for child in children:
            next_id = self._run_step(child)
            if next_id and next_id not in members:
                return next_id
        return None

    # -- request steps -------------------------------------------------------------

    def _build_request(self, step: RequestStep, server: ServerDefinition) -> HttpRequest:
        scope = self._scope()
        headers: dict[str, str] = {}
        for entry in [*server.headers, *step.headers]:
            if not entry.enabled or not entry.key:
                continue
            value = resolve_value(entry.value, scope)
            for existing in [key for key in headers if key.lower() == entry.key.lower()]:
                del headers[existing]
            headers[entry.key] = value if isinstance(value, str) else json.dumps(value)
        endpoint = resolve_value(step.endpoint, scope)
        query = resolve_value(step.query_params, scope) if step.query_params else None
        return HttpRequest(
            method=step.method,
            url=build_url(server.base_url, str(endpoint), query),
            headers=headers,
            body=resolve_value(step.body, scope),
            timeout_ms=step.timeout or server.timeout or self.settings.default_timeout_ms,
        )

    def _send(self, http_request: HttpRequest) -> HttpResponse:
        try:
            return self.transport.send(http_request)
        except ExecutionError:
            raise
        except Exception as exc:
            raise HttpRequestError(http_request.method, http_request.url, str(exc) or type(exc).__name__) from exc

    def _send_with_retry(self, step: RequestStep, http_request: HttpRequest) -> tuple[HttpResponse, int]:
        retry = step.retry_config
        max_retries = retry.max_retries if retry else 0
        attempt = 0
        while True:
            attempt += 1
            try:
                response = self._send(http_request)
            except HttpRequestError:
                if attempt > max_retries:
                    raise
            else:
                retryable = response.status in retry.retry_on if retry and retry.retry_on else response.status >= 500
                if attempt > max_retries or not retryable:
                    return response, attempt
            self._log("warn", f"Retrying {http_request.method} {http_request.url} (attempt {attempt + 1})", step.id)
            if retry and retry.retry_delay_ms and not self.control.sleep(retry.retry_delay_ms / 1000):
                raise ExecutionCancelledError(step.id)

    def _send_in_background(self, step: RequestStep, http_request: HttpRequest) -> None:
        try:
            response = self._send(http_request)
        except ExecutionError as exc:
            self._report_error(exc, step.id)
            return
        if not response.ok:
            self._report_error(
                StepExecutionError(
                    f"{http_request.method} {http_request.url} returned HTTP {response.status}",
                    code="HTTP_ERROR",
                    details={"status": response.status},
                ),
                step.id,
            )
            return
        if step.save_response:
            self.context.save_response(step.response_alias or step.id, response.data)
        self._log("debug", f"Background response received ({response.status})", step.id)

    def _drain_background(self) -> None:
        if self._pool is None:
            return
        for future in self._pending:
            future.result()
        self._pool.shutdown(wait=True)
        self._pool = None

    def _run_request(self, step: RequestStep) -> Optional[str]:
        self._emit_start(step.id, StepStatus.RUNNING)
        result = self._new_result(step.id)
        server = self.servers[step.server_id]
        try:
            http_request = self._build_request(step, server)
        except ExecutionError as exc:
            return self._fail(step, result, exc)
        result.request = RequestSnapshot(
            url=http_request.url,
            method=http_request.method,
            headers=dict(http_request.headers),
            body=http_request.body,
        )

        if not step.wait_for_response:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.settings.background_workers,
                    thread_name_prefix="scenario-request",
                )
            self._pending.append(self._pool.submit(self._send_in_background, step, http_request))
            self._log("info", f"{http_request.method} {http_request.url} dispatched without waiting", step.id)
        else:
            try:
                response, attempts = self._send_with_retry(step, http_request)
            except ExecutionCancelledError:
                self._cancel(step, result)
            except ExecutionError as exc:
                return self._fail(step, result, exc)
            result.attempts = attempts
            result.response = ResponseSnapshot(
                status=response.status,
                status_text=response.status_text,
                headers=response.headers,
                data=response.data,
                duration=response.duration_ms,
            )
            self._log("info", f"{http_request.method} {http_request.url} -> {response.status}", step.id)
            if not response.ok:
                error = StepExecutionError(
                    f"{http_request.method} {http_request.url} returned HTTP {response.status}",
                    code="HTTP_ERROR",
                    details={"status": response.status, "status_text": response.status_text},
                )
                return self._fail(step, result, error)
            if step.save_response:
                self.context.save_response(step.response_alias or step.id, response.data)

        try:
            branch = self._choose_branch(step.branches)
        except ExecutionError as exc:
            return self._fail(step, result, exc)
        result.status = StepStatus.SUCCESS
        result.branch_id = branch.id if branch is not None else None
        self._complete(result)
        return self._branch_target(step, branch)

    # -- condition steps -----------------------------------------------------------

    def _run_condition(self, step: ConditionStep) -> Optional[str]:
        self._emit_start(step.id, StepStatus.RUNNING)
        result = self._new_result(step.id)
        try:
            branch = self._choose_branch(step.branches)
        except ExecutionError as exc:
            return self._fail(step, result, exc)

        if branch is None:
            self._log("info", f"No branch of '{self._label(step)}' matched", step.id)
            result.status = StepStatus.SKIPPED
            self._complete(result)
            next_id = self._default_successor(step.id)
        else:
            self._log("info", f"Branch '{branch.label or branch.id}' taken", step.id)
            result.status = StepStatus.SUCCESS
            result.branch_id = branch.id
            self._complete(result)
            next_id = self._branch_target(step, branch)

        self._skip_untaken(step, branch, next_id)
        return next_id

    def _skip_untaken(self, step: ConditionStep, taken: Optional[Branch], next_id: Optional[str]) -> None:
        """Report targets of other branches as skipped when the taken path can never reach them."""

        targets = [
            branch.next_step_id
            for branch in step.branches
            if branch is not taken and branch.next_step_id and branch.next_step_id != next_id
        ]
        if not targets:
            return
        reachable = self.graph.reachable_from([next_id, *self._continuation(step.id)])
        for target in targets:
            if target in reachable or target == step.id or target not in self.graph:
                continue
            if self.context.has_result(target):
                continue
            skipped = self._new_result(target, StepStatus.SKIPPED)
            self._complete(skipped)

    def _continuation(self, step_id: str) -> list[str]:
        """Steps the enclosing containers may still run once the path inside them ends.

        Covers later siblings of unwired bodies and each container's default
        successor, up to the root.
        """

        seeds: list[str] = []
        current = step_id
        for container_id in self.graph.ancestors(step_id):
            container = self.graph.step(container_id)
            if container is not None and not self.graph.is_internally_wired(container):  # type: ignore[arg-type]
                siblings = list(container.step_ids)  # type: ignore[union-attr]
                if current in siblings:
                    seeds.extend(siblings[siblings.index(current) + 1 :])
            successor = self._default_successor(container_id)
            if successor:
                seeds.append(successor)
            current = container_id
        return seeds

    # -- containers ----------------------------------------------------------------

    def _close_container(self, result: StepExecutionResult, halt: _Halt, code: str) -> None:
        if halt.status == ExecutionStatus.CANCELLED:
            result.status = StepStatus.CANCELLED
        else:
            result.status = StepStatus.FAILED
            reason = halt.error.message if halt.error is not None else "a child step failed"
            result.error = StepError(code=code, message=f"Stopped inside '{result.step_id}': {reason}")
        self._complete(result)

    def _run_loop(self, step: LoopStep) -> Optional[str]:
        self._emit_start(step.id, StepStatus.RUNNING)
        result = self._new_result(step.id)
        result.current_iteration = None
        result.iterations = None
        try:
            plan = plan_loop(step, self._scope(), self.settings.max_loop_iterations)
        except ExecutionError as exc:
            return self._fail(step, result, exc)
        result.iterations = plan.total
        self._log("info", f"Loop '{self._label(step)}' starting", step.id, data={"iterations": plan.total})

        escape: Optional[str] = None
        index = 0
        try:
            while plan.should_continue(index, self._scope()):
                result.current_iteration = index
                self.context.loop_stack.append(plan.frame(index))
                try:
                    escape = self._run_body(step)
                finally:
                    self.context.loop_stack.pop()
                index += 1
                if escape:
                    self._log("info", f"Loop '{self._label(step)}' exited early to '{escape}'", step.id)
                    break
        except LoopLimitExceededError as exc:
            return self._fail(step, result, exc, fatal=True)
        except ExecutionError as exc:
            return self._fail(step, result, exc)
        except _Halt as halt:
            self._close_container(result, halt, "LOOP_FAILED")
            raise

        if plan.total is None:
            result.iterations = index
        result.status = StepStatus.SUCCESS
        self._complete(result)
        return escape or self._default_successor(step.id)

    def _run_group(self, step: GroupStep) -> Optional[str]:
        self._emit_start(step.id, StepStatus.RUNNING)
        result = self._new_result(step.id)
        try:
            escape = self._run_body(step)
        except _Halt as halt:
            self._close_container(result, halt, "GROUP_FAILED")
            raise
        result.status = StepStatus.SUCCESS
        self._complete(result)
        return escape or self._default_successor(step.id)


def execute_scenario(
    scenario: Scenario,
    servers: ServerMap,
    params: Optional[dict[str, Any]] = None,
    options: Optional[ExecutionOptions] = None,
    **engine_kwargs: Any,
) -> ExecutionResult:
    """One-shot helper around ``ScenarioEngine``."""

    return ScenarioEngine(scenario, servers, **engine_kwargs).execute(params, options)
