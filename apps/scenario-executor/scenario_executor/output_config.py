"""Console and log format selection for scenario runs."""

import os
from enum import Enum
from typing import Literal


class OutputFormat(str, Enum):
    """How run progress is shown on the console."""
    AUTO = "auto"
    RICH = "rich"
    PLAIN = "plain"
    JSON = "json"


LogFormat = Literal["json", "console", "plain"]

ENV_VAR_NAME = "CONSOLE_OUTPUT_FORMAT"


def get_output_format(cli_override: str | None = None) -> OutputFormat:
    """
    Resolve the output format with priority: CLI option > environment variable > auto.

    Unknown values are ignored and the next source is consulted.
    """
    for candidate in (cli_override, os.environ.get(ENV_VAR_NAME)):
        if not candidate:
            continue
        try:
            return OutputFormat(candidate.lower())
        except ValueError:
            continue
    return OutputFormat.AUTO


def get_log_format(output_format: OutputFormat) -> LogFormat:
    """
    Map the console output format onto a structlog renderer:

    - auto/rich -> console (rich colours)
    - plain -> plain (no colours)
    - json -> json
    """
    if output_format == OutputFormat.JSON:
        return "json"
    if output_format == OutputFormat.PLAIN:
        return "plain"
    return "console"
