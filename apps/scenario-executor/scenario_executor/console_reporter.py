"""Console reporter with environment detection for scenario runs."""

import os
import sys
from typing import Optional

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TextColumn, TimeElapsedColumn
from rich.table import Table
from rich.text import Text

from .events import ExecutionCallbacks
from .models import ExecutionResult, StepExecutionResult, StepStatus
from .output_config import OutputFormat

STATUS_STYLES = {
    StepStatus.SUCCESS: ("✓ PASS", "green"),
    StepStatus.FAILED: ("✗ FAIL", "red"),
    StepStatus.SKIPPED: ("- SKIP", "yellow"),
    StepStatus.CANCELLED: ("■ STOP", "magenta"),
    StepStatus.WAITING: ("… WAIT", "cyan"),
}


class ConsoleReporter:
    """
    Console reporter that adapts to the environment.

    - Interactive terminals get a rich live table with a progress bar
    - CI/CD and piped output get plain text lines
    - JSON output keeps the console quiet (structured logs carry the run)
    """

    def __init__(self, output_format: OutputFormat = OutputFormat.AUTO, console: Optional[Console] = None):
        self.output_format = output_format
        self.silent = output_format == OutputFormat.JSON
        self.use_rich = self._detect_rich()
        self.console = console or Console()
        self.progress: Optional[Progress] = None
        self.progress_task: Optional[TaskID] = None
        self.live: Optional[Live] = None
        self.results_table: Optional[Table] = None
        self._labels: dict[str, str] = {}
        self._completed = 0

    def _detect_rich(self) -> bool:
        if self.output_format == OutputFormat.RICH:
            return True
        if self.output_format in (OutputFormat.PLAIN, OutputFormat.JSON):
            return False
        is_terminal = sys.stdout.isatty()
        is_ci = any(name in os.environ for name in ("CI", "JENKINS_HOME", "GITLAB_CI", "TRAVIS", "GITHUB_ACTIONS"))
        return is_terminal and not is_ci

    def _print(self, message: str = "", end: str = "\n") -> None:
        if not self.silent:
            print(message, end=end, flush=True)

    def start(self, scenario_name: str, total_steps: int, labels: Optional[dict[str, str]] = None) -> None:
        """Show the run header; ``labels`` maps step ids to display names."""

        self._labels = dict(labels or {})
        if self.silent:
            return
        if self.use_rich:
            self.results_table = Table(show_header=True, header_style="bold cyan")
            self.results_table.add_column("#", style="dim", width=5)
            self.results_table.add_column("Step", width=40)
            self.results_table.add_column("Status", width=10)
            self.results_table.add_column("Duration", justify="right", width=12)
            self.progress = Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TimeElapsedColumn(),
                console=self.console,
            )
            self.progress_task = self.progress.add_task(f"[cyan]Running {scenario_name}", total=total_steps)
            self.live = Live(Group(self.progress, self.results_table), console=self.console, refresh_per_second=4)
            self.live.start()
        else:
            self._print(f"Running scenario: {scenario_name}")
            self._print(f"Steps defined: {total_steps}")
            self._print("-" * 80)

    def _label(self, step_id: str) -> str:
        return self._labels.get(step_id, step_id)

    def step_started(self, step_id: str, status: StepStatus) -> None:
        if self.silent or self.use_rich:
            return
        if StepStatus(status) == StepStatus.WAITING:
            self._print(f"[{self._label(step_id)}] waiting ...")

    def step_completed(self, step_id: str, result: StepExecutionResult) -> None:
        if self.silent:
            return
        self._completed += 1
        icon, style = STATUS_STYLES.get(result.status, (result.status.value, "white"))
        iteration = ""
        if result.current_iteration is not None and result.iterations is not None:
            iteration = f" [{result.current_iteration + 1}/{result.iterations}]"
        elif result.current_iteration is not None:
            iteration = f" [{result.current_iteration + 1}]"
        name = f"{self._label(step_id)}{iteration}"
        error_msg = result.error.message if result.error else None

        if self.use_rich and self.results_table is not None:
            self.results_table.add_row(
                str(self._completed),
                name,
                Text(icon, style=style),
                f"{result.duration_ms:.0f}ms",
            )
            if error_msg:
                self.results_table.add_row("", Text(f"Error: {error_msg}", style="red"), "", "")
            if self.progress is not None and self.progress_task is not None:
                self.progress.update(self.progress_task, advance=1)
        else:
            self._print(f"[{self._completed}] {name} ... {icon} ({result.duration_ms:.0f}ms)")
            if error_msg:
                self._print(f"  Error: {error_msg}")

    def callbacks(self) -> ExecutionCallbacks:
        return ExecutionCallbacks(on_step_start=self.step_started, on_step_complete=self.step_completed)

    def finish(self, result: ExecutionResult) -> None:
        """Display the final run summary."""

        if self.silent:
            return
        passed = result.status.value == "completed" and result.failed_steps == 0
        if self.use_rich:
            if self.live:
                self.live.stop()
            summary_text = Text()
            summary_text.append(f"Visited: {result.total_steps}  ", style="bold")
            summary_text.append(f"Passed: {result.passed_steps}  ", style="bold green")
            summary_text.append(f"Failed: {result.failed_steps}  ", style="bold red" if result.failed_steps else "bold green")
            summary_text.append(f"Skipped: {result.skipped_steps}  ", style="bold yellow")
            summary_text.append(f"Duration: {result.duration_ms:.0f}ms", style="bold cyan")
            title = f"✓ RUN {result.status.value.upper()}" if passed else f"✗ RUN {result.status.value.upper()}"
            self.console.print()
            self.console.print(
                Panel(
                    summary_text,
                    title=Text(title, style="bold green" if passed else "bold red"),
                    border_style="green" if passed else "red",
                )
            )
        else:
            self._print("-" * 80)
            self._print(
                f"Visited: {result.total_steps} | Passed: {result.passed_steps} | Failed: {result.failed_steps} | "
                f"Skipped: {result.skipped_steps} | Duration: {result.duration_ms:.0f}ms"
            )
            self._print(f"{'✓' if passed else '✗'} RUN {result.status.value.upper()}")

    def abort(self) -> None:
        """Tear down the live display when a run fails to start."""

        if self.live:
            self.live.stop()
            self.live = None

    def print_error(self, message: str) -> None:
        if self.use_rich:
            self.console.print(f"[bold red]Error:[/] {message}")
        else:
            print(f"Error: {message}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        if self.silent:
            return
        if self.use_rich:
            self.console.print(f"[cyan]{message}[/]")
        else:
            print(message)
