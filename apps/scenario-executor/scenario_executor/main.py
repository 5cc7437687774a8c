"""CLI entrypoint for scenario-executor."""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import typer
import yaml

if __package__ in {None, ""}:
    current_file = Path(__file__).resolve()
    package_root = current_file.parents[1]
    apps_dir = current_file.parents[2]
    extra_paths = [package_root, apps_dir / "scenario-graph"]
    for candidate in extra_paths:
        candidate_str = str(candidate)
        if candidate_str not in sys.path and candidate.exists():
            sys.path.insert(0, candidate_str)
    __package__ = "scenario_executor"

from scenario_graph.errors import ScenarioGraphError

from .exceptions import ExecutionError
from .logging_utils import configure_logging
from .models import ExecutionStatus
from .output_config import get_log_format, get_output_format
from .runner import ScenarioRunner

app = typer.Typer(help="Execute scenario graphs against configured HTTP backends.")

DEFAULT_OUTPUT_DIR = Path("artifacts/runs")
EXECUTION_MODES = {"auto", "manual", "delayed", "bypass"}


def _split_pair(item: str, option: str) -> tuple[str, str]:
    if "=" not in item:
        raise typer.BadParameter(f"{option} values must be in key=value format")
    key, value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise typer.BadParameter(f"{option} key cannot be empty")
    return key, value.strip()


def _parse_params(pairs: list[str], params_file: Optional[Path]) -> dict[str, Any]:
    params: dict[str, Any] = {}
    if params_file is not None:
        try:
            loaded = yaml.safe_load(params_file.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise typer.BadParameter(f"{params_file} is not valid YAML: {exc}") from exc
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise typer.BadParameter(f"{params_file} must contain a mapping of parameters")
        params.update(loaded)
    for item in pairs:
        key, raw = _split_pair(item, "--param")
        # YAML scalars give numbers, booleans and inline lists their natural types.
        try:
            params[key] = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError as exc:
            raise typer.BadParameter(f"--param value for '{key}' is not valid YAML: {exc}") from exc
    return params


def _parse_overrides(pairs: list[str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for item in pairs:
        step_id, mode = _split_pair(item, "--override")
        if mode not in EXECUTION_MODES:
            raise typer.BadParameter(f"Unknown execution mode '{mode}' for step '{step_id}'")
        overrides[step_id] = mode
    return overrides


def _default_run_id() -> str:
    return datetime.now(timezone.utc).strftime("run-%Y%m%dT%H%M%SZ")


@app.command()
def execute(
    scenario: Path = typer.Option(..., exists=True, readable=True, help="Scenario JSON/YAML document."),
    servers: Path = typer.Option(..., exists=True, readable=True, help="Server definitions (JSON/YAML)."),
    param: list[str] = typer.Option([], "--param", "-p", help="Scenario parameter as key=value (YAML value)."),
    params_file: Optional[Path] = typer.Option(
        None,
        exists=True,
        readable=True,
        help="YAML/JSON mapping of scenario parameters; --param entries win.",
    ),
    override: list[str] = typer.Option([], "--override", help="Per-step execution mode as stepId=mode."),
    continue_on_error: bool = typer.Option(
        False,
        "--continue-on-error",
        help="Keep walking after a failed step instead of stopping the run.",
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm manual steps without prompting."),
    output_dir: Path = typer.Option(DEFAULT_OUTPUT_DIR, help="Directory for run artifacts."),
    run_id: Optional[str] = typer.Option(None, help="Identifier of this run (defaults to a timestamp)."),
    output_format: Optional[str] = typer.Option(
        None,
        "--format",
        help="Console output: auto, rich, plain or json (env CONSOLE_OUTPUT_FORMAT).",
    ),
    log_level: str = typer.Option("WARNING", envvar="LOG_LEVEL", help="Log level for diagnostics on stderr."),
) -> None:
    """Run a scenario and write events.jsonl, summary.json and results.junit.xml."""

    fmt = get_output_format(output_format)
    configure_logging(log_level, get_log_format(fmt))
    params = _parse_params(param, params_file)
    overrides = _parse_overrides(override)

    def confirm_manual(step_id: str) -> bool:
        if yes:
            return True
        return typer.confirm(f"Run manual step '{step_id}'?", default=True)

    try:
        runner = ScenarioRunner(
            scenario_file=scenario,
            servers_file=servers,
            output_root=output_dir,
            run_id=run_id or _default_run_id(),
            params=params,
            step_mode_overrides=overrides,
            stop_on_error=not continue_on_error,
            output_format=fmt,
            manual_confirm=confirm_manual,
        )
        summary = runner.run()
    except (ScenarioGraphError, ExecutionError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2) from exc

    typer.secho(f"Summary written -> {summary.summary_file}", fg=typer.colors.GREEN, err=True)
    if summary.status != ExecutionStatus.COMPLETED or summary.failed_steps:
        raise typer.Exit(code=1)


def run() -> None:
    """Console_scripts hook."""

    app()


if __name__ == "__main__":  # pragma: no cover
    run()
