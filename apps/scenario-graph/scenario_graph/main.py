"""CLI entrypoint for scenario-graph."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import structlog
import typer

if __package__ in {None, ""}:
    current_file = Path(__file__).resolve()
    package_root = current_file.parents[1]
    if str(package_root) not in sys.path:
        sys.path.insert(0, str(package_root))
    __package__ = "scenario_graph"

from .errors import ScenarioGraphError
from .loader import describe, dump_scenario, load_scenario, save_scenario
from .topology import find_divergences

app = typer.Typer(help="Validate, check and sanitise scenario graph documents.")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", envvar="LOG_LEVEL", help="Log level for diagnostics on stderr."),
) -> None:
    """Send structured logs to stderr so stdout stays machine readable."""

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, log_level.upper(), logging.WARNING)),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
        cache_logger_on_first_use=False,
    )


def _load_or_exit(path: Path):
    try:
        return load_scenario(path)
    except ScenarioGraphError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc


def _report_divergences(scenario) -> int:
    problems = find_divergences(scenario)
    for problem in problems:
        typer.secho(f"  ! {problem}", fg=typer.colors.YELLOW)
    return len(problems)


@app.command()
def validate(
    scenario_file: Path = typer.Argument(..., exists=True, readable=True, help="Scenario JSON/YAML file."),
    as_json: bool = typer.Option(False, "--json", help="Print the summary as JSON."),
) -> None:
    """Validate a scenario document and its dual topology."""

    scenario = _load_or_exit(scenario_file)
    summary = describe(scenario)
    if as_json:
        summary["divergences"] = [str(item) for item in find_divergences(scenario)]
        typer.echo(json.dumps(summary, indent=2))
        raise typer.Exit(code=1 if summary["divergences"] else 0)

    typer.secho(
        f"Scenario {summary['id']} ({summary['name']} v{summary['version']}): "
        f"{summary['steps']} steps, {summary['edges']} edges, {summary['containers']} containers",
        fg=typer.colors.GREEN,
    )
    if _report_divergences(scenario):
        typer.secho("Edge list and branch targets diverge", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


@app.command()
def check(
    scenario_file: Path = typer.Argument(..., exists=True, readable=True, help="Scenario JSON/YAML file."),
) -> None:
    """Run only the topology consistency check."""

    scenario = _load_or_exit(scenario_file)
    if _report_divergences(scenario):
        raise typer.Exit(code=1)
    typer.secho("Topology consistent", fg=typer.colors.GREEN)


@app.command()
def sanitize(
    scenario_file: Path = typer.Argument(..., exists=True, readable=True, help="Scenario JSON/YAML file."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the cleaned document here."),
    fmt: Optional[str] = typer.Option(None, "--format", help="Output format: json or yaml."),
) -> None:
    """Import a document, dropping dangling references, and export it again."""

    if fmt is not None and fmt not in {"json", "yaml"}:
        raise typer.BadParameter("--format must be json or yaml")
    scenario = _load_or_exit(scenario_file)
    if output is None:
        typer.echo(dump_scenario(scenario, fmt or "json"), nl=False)
        return
    save_scenario(scenario, output, fmt)  # type: ignore[arg-type]
    typer.secho(f"Sanitised scenario written -> {output}", fg=typer.colors.GREEN)


def run() -> None:
    """Console_scripts hook."""

    app()


if __name__ == "__main__":  # pragma: no cover
    run()
