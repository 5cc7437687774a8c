from __future__ import annotations

import threading
import time

import pytest

from scenario_executor.control import ControlState, ExecutionControl
from scenario_executor.engine import ExecutionOptions, ScenarioEngine
from scenario_executor.events import EventRecorder, ExecutionCallbacks
from scenario_executor.http_executor import HttpResponse
from scenario_executor.models import ExecutionStatus, StepStatus
from scenario_executor.settings import EngineSettings

STEPS = ["s1", "s2", "s3", "s4", "s5"]


@pytest.fixture
def five_steps(build_scenario, make_request, chain):
    return build_scenario([make_request(step_id) for step_id in STEPS], chain(*STEPS))


def _wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_control_state_machine() -> None:
    control = ExecutionControl()
    seen = []
    control.add_listener(lambda previous, state: seen.append((previous.value, state.value)))

    assert not control.resume()
    assert control.pause()
    assert control.is_paused()
    assert not control.pause()
    assert control.resume()
    assert control.stop()
    assert control.is_stopped()
    assert not control.resume()
    assert not control.finish(ControlState.COMPLETED)
    assert control.finish(ControlState.CANCELLED)
    assert control.is_finished()
    assert seen == [
        ("running", "paused"),
        ("paused", "running"),
        ("running", "stopped"),
        ("stopped", "cancelled"),
    ]
    with pytest.raises(ValueError):
        control.finish(ControlState.PAUSED)


def test_checkpoint_blocks_while_paused() -> None:
    control = ExecutionControl()
    control.pause()

    assert control.checkpoint(timeout=0.05) is False
    threading.Timer(0.05, control.resume).start()
    assert control.checkpoint(timeout=5) is True


def test_sleep_is_interrupted_by_stop() -> None:
    control = ExecutionControl()
    threading.Timer(0.05, control.stop).start()

    started = time.monotonic()
    assert control.sleep(5) is False
    assert time.monotonic() - started < 4


def test_pause_during_step_two_resumes_at_step_three(five_steps, servers, transport) -> None:
    engine = ScenarioEngine(five_steps, servers, http_executor=transport, settings=EngineSettings())
    recorder = EventRecorder()

    def pause_mid_flight(http_request):
        engine.pause()
        return HttpResponse(200, data={})

    transport.route("/s2", pause_mid_flight)
    outcome = {}
    worker = threading.Thread(
        target=lambda: outcome.setdefault("result", engine.execute(None, ExecutionOptions(callbacks=recorder.callbacks())))
    )
    worker.start()

    assert _wait_until(lambda: ("step_complete", "s2", "success") in recorder.step_sequence())
    time.sleep(0.05)
    assert engine.is_paused()
    assert [event.step_id for event in recorder.of_kind("step_start")] == ["s1", "s2"]

    assert engine.resume()
    worker.join(timeout=5)

    result = outcome["result"]
    assert result.status == ExecutionStatus.COMPLETED
    starts = [event.step_id for event in recorder.of_kind("step_start")]
    assert starts == STEPS
    assert transport.paths == [f"/{step_id}" for step_id in STEPS]
    assert [event.status for event in recorder.of_kind("status")] == ["running", "paused", "running", "completed"]


def test_stop_unwinds_without_running_further_steps(five_steps, servers, transport) -> None:
    engine = ScenarioEngine(five_steps, servers, http_executor=transport, settings=EngineSettings())

    def stop_mid_flight(http_request):
        engine.stop()
        return HttpResponse(200, data={})

    transport.route("/s2", stop_mid_flight)

    result = engine.execute()

    assert result.status == ExecutionStatus.CANCELLED
    assert result.error.code == "EXECUTION_CANCELLED"
    assert result.step_results["s2"].status == StepStatus.SUCCESS
    assert transport.paths == ["/s1", "/s2"]
    assert engine.is_stopped()


def test_stop_while_paused_cancels(five_steps, servers, transport) -> None:
    engine = ScenarioEngine(five_steps, servers, http_executor=transport, settings=EngineSettings())
    transport.route("/s1", lambda http_request: (engine.pause(), HttpResponse(200))[1])
    outcome = {}
    worker = threading.Thread(target=lambda: outcome.setdefault("result", engine.execute()))
    worker.start()

    assert _wait_until(engine.is_paused)
    assert engine.stop()
    worker.join(timeout=5)

    assert outcome["result"].status == ExecutionStatus.CANCELLED
    assert transport.paths == ["/s1"]


def test_manual_step_waits_for_resume(build_scenario, make_request, chain, servers, transport) -> None:
    scenario = build_scenario(
        [make_request("a"), make_request("approve", executionMode="manual"), make_request("c")],
        chain("a", "approve", "c"),
    )
    engine = ScenarioEngine(scenario, servers, http_executor=transport, settings=EngineSettings())
    recorder = EventRecorder()

    def confirm(step_id, status):
        if status == StepStatus.WAITING:
            assert engine.is_paused()
            engine.resume()

    result = engine.execute(
        None,
        ExecutionOptions(callbacks=ExecutionCallbacks.combine(recorder.callbacks(), ExecutionCallbacks(on_step_start=confirm))),
    )

    assert result.status == ExecutionStatus.COMPLETED
    assert transport.paths == ["/a", "/approve", "/c"]
    assert [(event.step_id, event.status) for event in recorder.of_kind("step_start")] == [
        ("a", "running"),
        ("approve", "waiting"),
        ("approve", "running"),
        ("c", "running"),
    ]


def test_declined_manual_step_is_cancelled(build_scenario, make_request, chain, servers, transport) -> None:
    scenario = build_scenario([make_request("approve", executionMode="manual"), make_request("c")], chain("approve", "c"))
    engine = ScenarioEngine(scenario, servers, http_executor=transport, settings=EngineSettings())

    result = engine.execute(
        None,
        ExecutionOptions(callbacks=ExecutionCallbacks(on_step_start=lambda step_id, status: engine.stop())),
    )

    assert result.status == ExecutionStatus.CANCELLED
    assert result.step_results["approve"].status == StepStatus.CANCELLED
    assert transport.calls == []


def test_override_turns_manual_step_automatic(build_scenario, make_request, servers, transport) -> None:
    scenario = build_scenario([make_request("approve", executionMode="manual")])
    engine = ScenarioEngine(scenario, servers, http_executor=transport, settings=EngineSettings())

    result = engine.execute(None, ExecutionOptions(step_mode_overrides={"approve": "auto"}))

    assert result.status == ExecutionStatus.COMPLETED
    assert transport.paths == ["/approve"]


def test_engine_can_run_again_after_finishing(build_scenario, make_request, servers, transport) -> None:
    engine = ScenarioEngine(build_scenario([make_request("a")]), servers, http_executor=transport, settings=EngineSettings())

    first = engine.execute()
    second = engine.execute()

    assert first.status == second.status == ExecutionStatus.COMPLETED
    assert first.id != second.id
