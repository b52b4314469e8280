"""Requiem CLI - inspect and manage the persisted dead-letter queue.

Package structure:
    cli/
    ├── __init__.py           # This file - app assembly
    ├── helpers.py            # Global options, config loading, queue access
    ├── output.py             # Rich formatting
    └── commands/
        ├── __init__.py       # Command exports
        ├── queue.py          # stats, list, show
        └── manage.py         # release, remove, purge, clear
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from requiem import __version__

from . import helpers as helpers
from .commands import clear, list_entries, purge, release, remove, show, stats
from .helpers import configure_global_logging, get_state, load_config
from .output import console

# =============================================================================
# Typer app definition
# =============================================================================

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
_LOG_FORMATS = ("json", "console", "both")

app = typer.Typer(
    name="requiem",
    help="Dead-letter queue with automatic recovery",
    add_completion=False,
)


# =============================================================================
# Global option callbacks
# =============================================================================


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"Requiem v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    config_path: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Path to a requiem YAML config (default: ./requiem.yaml if present)",
            envvar="REQUIEM_CONFIG",
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            "-L",
            help="Logging level (DEBUG, INFO, WARNING, ERROR)",
            envvar="REQUIEM_LOG_LEVEL",
        ),
    ] = None,
    log_file: Annotated[
        Path | None,
        typer.Option(
            "--log-file",
            help="Path for log file output",
            envvar="REQUIEM_LOG_FILE",
        ),
    ] = None,
    log_format: Annotated[
        str | None,
        typer.Option(
            "--log-format",
            help="Log format: json, console, or both",
            envvar="REQUIEM_LOG_FORMAT",
        ),
    ] = None,
) -> None:
    """Requiem - dead-letter queue with automatic recovery."""
    state = get_state()
    state.config_path = config_path
    if log_level:
        if log_level.upper() not in _LOG_LEVELS:
            console.print(f"[red]Invalid log level:[/red] {log_level}")
            raise typer.Exit(1)
        state.log_level = log_level.upper()  # type: ignore[assignment]
    if log_file:
        state.log_file = log_file
    if log_format:
        if log_format.lower() not in _LOG_FORMATS:
            console.print(f"[red]Invalid log format:[/red] {log_format}")
            raise typer.Exit(1)
        state.log_format = log_format.lower()  # type: ignore[assignment]

    configure_global_logging(console, load_config(console))


@app.command()
def version() -> None:
    """Show the Requiem version."""
    console.print(f"Requiem v{__version__}")


# =============================================================================
# Command registration
# =============================================================================

# Inspection
app.command()(stats)
app.command(name="list")(list_entries)
app.command()(show)

# Management
app.command()(release)
app.command()(remove)
app.command()(purge)
app.command()(clear)


# =============================================================================
# Public API
# =============================================================================

__all__ = [
    "app",
    "main",
    "console",
]
