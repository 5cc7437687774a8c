"""Runs a scenario file against a server file and records artifacts."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional
import xml.etree.ElementTree as ET

import structlog

from scenario_graph.loader import load_scenario, load_servers
from scenario_graph.models import ExecutionMode, Scenario

from .console_reporter import ConsoleReporter
from .engine import ExecutionOptions, ScenarioEngine
from .events import EventRecorder, ExecutionCallbacks
from .http_executor import Transport
from .models import ExecutionResult, RunSummary, StepExecutionResult, StepStatus
from .output_config import OutputFormat
from .settings import EngineSettings

LOGGER = structlog.get_logger("scenario_executor")

ManualConfirm = Callable[[str], bool]


@dataclass
class RunArtifacts:
    run_dir: Path
    events_file: Path
    summary_file: Path
    junit_file: Path


class ScenarioRunner:
    """Executes a scenario document and writes events, summary and JUnit files.

    ``manual_confirm`` decides whether a manual step may proceed; without it
    manual steps are confirmed automatically.
    """

    def __init__(
        self,
        *,
        scenario_file: Path,
        servers_file: Path,
        output_root: Path,
        run_id: str,
        params: Optional[dict[str, Any]] = None,
        step_mode_overrides: Optional[dict[str, ExecutionMode]] = None,
        stop_on_error: bool = True,
        output_format: OutputFormat = OutputFormat.AUTO,
        manual_confirm: Optional[ManualConfirm] = None,
        transport: Optional[Transport] = None,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        if not scenario_file.exists():
            raise FileNotFoundError(f"Scenario file not found: {scenario_file}")
        if not servers_file.exists():
            raise FileNotFoundError(f"Servers file not found: {servers_file}")
        self.scenario_file = scenario_file
        self.servers_file = servers_file
        self.output_root = output_root
        self.run_id = run_id
        self.params = dict(params or {})
        self.step_mode_overrides = dict(step_mode_overrides or {})
        self.stop_on_error = stop_on_error
        self.manual_confirm = manual_confirm
        self._transport = transport
        self._settings = settings
        self._reporter = ConsoleReporter(output_format=output_format)
        self._recorder = EventRecorder()
        self._engine: Optional[ScenarioEngine] = None

    @property
    def reporter(self) -> ConsoleReporter:
        return self._reporter

    def run(self) -> RunSummary:
        scenario = load_scenario(self.scenario_file)
        servers = load_servers(self.servers_file)
        self._engine = ScenarioEngine(
            scenario,
            servers,
            http_executor=self._transport,
            settings=self._settings,
        )
        log = LOGGER.bind(run_id=self.run_id, scenario_id=scenario.id)
        log.info("scenario_run_started", scenario_file=str(self.scenario_file), servers=len(servers))

        self._reporter.start(
            scenario.name or scenario.id,
            total_steps=len(scenario.steps),
            labels={step.id: step.name or step.id for step in scenario.steps},
        )
        options = ExecutionOptions(
            step_mode_overrides=self.step_mode_overrides,
            callbacks=ExecutionCallbacks.combine(
                self._recorder.callbacks(),
                self._reporter.callbacks(),
                ExecutionCallbacks(on_step_start=self._on_step_start),
            ),
            stop_on_error=self.stop_on_error,
            execution_id=self.run_id,
        )
        try:
            result = self._engine.execute(self.params, options)
        except Exception:
            self._reporter.abort()
            raise

        artifacts = self._prepare_artifacts()
        self._recorder.write_jsonl(artifacts.events_file)
        summary = self._build_summary(scenario, result, artifacts)
        artifacts.summary_file.write_text(summary.model_dump_json(indent=2), encoding="utf-8")
        self._write_junit(scenario, result, artifacts.junit_file)
        self._reporter.finish(result)
        log.info("scenario_run_finished", status=result.status.value, failed=result.failed_steps)
        return summary

    def _on_step_start(self, step_id: str, status: StepStatus) -> None:
        # Manual steps pause the engine before announcing WAITING; delayed steps do not.
        if status != StepStatus.WAITING or self._engine is None or not self._engine.is_paused():
            return
        approved = self.manual_confirm(step_id) if self.manual_confirm else True
        if approved:
            self._engine.resume()
        else:
            LOGGER.info("manual_step_declined", step_id=step_id)
            self._engine.stop()

    def _prepare_artifacts(self) -> RunArtifacts:
        run_dir = self.output_root / self.run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        return RunArtifacts(
            run_dir=run_dir,
            events_file=run_dir / "events.jsonl",
            summary_file=run_dir / "summary.json",
            junit_file=run_dir / "results.junit.xml",
        )

    @staticmethod
    def _case_name(scenario: Scenario, item: StepExecutionResult) -> str:
        step = next((step for step in scenario.steps if step.id == item.step_id), None)
        name = (step.name if step is not None else "") or item.step_id
        if item.current_iteration is not None:
            name = f"{name} [{item.current_iteration}]"
        return name

    def _build_summary(self, scenario: Scenario, result: ExecutionResult, artifacts: RunArtifacts) -> RunSummary:
        failures = [
            {
                "step_id": item.step_id,
                "step_name": self._case_name(scenario, item),
                "code": item.error.code if item.error else None,
                "error": item.error.message if item.error else None,
            }
            for item in result.history
            if item.status == StepStatus.FAILED
        ]
        return RunSummary(
            run_id=self.run_id,
            execution_id=result.id,
            scenario_id=scenario.id,
            scenario_name=scenario.name,
            version=scenario.version,
            status=result.status,
            started_at=result.started_at,
            finished_at=result.completed_at or result.started_at,
            duration_ms=result.duration_ms,
            total_steps=result.total_steps,
            passed_steps=result.passed_steps,
            failed_steps=result.failed_steps,
            skipped_steps=result.skipped_steps,
            failures=failures,
            error=result.error,
            params=self.params,
            events_file=str(artifacts.events_file),
            summary_file=str(artifacts.summary_file),
            junit_file=str(artifacts.junit_file),
        )

    def _write_junit(self, scenario: Scenario, result: ExecutionResult, junit_file: Path) -> None:
        suite = ET.Element(
            "testsuite",
            attrib={
                "name": scenario.id,
                "tests": str(result.total_steps),
                "failures": str(result.failed_steps),
                "skipped": str(result.skipped_steps),
                "time": str(result.duration_ms / 1000),
            },
        )
        for item in result.history:
            case = ET.SubElement(
                suite,
                "testcase",
                attrib={
                    "classname": scenario.name or scenario.id,
                    "name": self._case_name(scenario, item),
                    "time": str(item.duration_ms / 1000),
                },
            )
            if item.status == StepStatus.FAILED:
                failure = ET.SubElement(
                    case,
                    "failure",
                    attrib={"message": item.error.message if item.error else "Step failed"},
                )
                if item.error is not None:
                    failure.text = json.dumps(item.error.as_serializable(), indent=2)
            elif item.status in (StepStatus.SKIPPED, StepStatus.CANCELLED):
                ET.SubElement(case, "skipped", attrib={"message": item.status.value})
        tree = ET.ElementTree(suite)
        tree.write(junit_file, encoding="utf-8", xml_declaration=True)
