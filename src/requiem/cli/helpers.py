"""Shared utilities for Requiem CLI commands.

Holds the global CLI options (config file, logging), loads configuration,
and opens a queue over the configured storage. The CLI never has a task
executor: it inspects and manages persisted entries, it does not retry them.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import typer
from pydantic import ValidationError
from rich.console import Console

from requiem.core.config import RequiemConfig
from requiem.core.errors import EntryNotFoundError
from requiem.core.logging import configure_logging, get_logger
from requiem.dlq.engine import DeadLetterQueue
from requiem.dlq.models import DLQEntry
from requiem.state import create_storage

_logger = get_logger("cli")

# Picked up from the working directory when --config is not given
DEFAULT_CONFIG_FILE = Path("requiem.yaml")


class ErrorMessages:
    """Constants for CLI error messages."""

    ENTRY_NOT_FOUND = "Entry not found"
    CONFIG_LOAD_ERROR = "Error loading config"
    NOT_QUARANTINED = "Entry is not quarantined"


@dataclass
class CliState:
    """Global CLI options, set by the app callback before any command runs."""

    config_path: Path | None = None
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None
    log_format: Literal["json", "console", "both"] | None = None
    log_file: Path | None = None
    logging_configured: bool = False
    config: RequiemConfig | None = None


_state = CliState()


def get_state() -> CliState:
    return _state


def reset_state() -> None:
    """Reset CLI options (primarily for testing)."""
    global _state
    _state = CliState()


def load_config(console: Console) -> RequiemConfig:
    """Load configuration from --config, ./requiem.yaml, or defaults.

    The result is cached for the rest of the session.

    Raises:
        typer.Exit: If the file cannot be read or fails validation.
    """
    if _state.config is not None:
        return _state.config

    path = _state.config_path
    if path is None and DEFAULT_CONFIG_FILE.exists():
        path = DEFAULT_CONFIG_FILE
    if path is None:
        _state.config = RequiemConfig()
        return _state.config

    try:
        _state.config = RequiemConfig.from_yaml(path)
    except (OSError, ValidationError, ValueError) as e:
        console.print(f"[red]{ErrorMessages.CONFIG_LOAD_ERROR}:[/red] {e}")
        raise typer.Exit(1) from None
    return _state.config


def configure_global_logging(console: Console, config: RequiemConfig) -> None:
    """Configure logging from the config file, overridden by CLI options.

    Only configures once per session. The level defaults to WARNING unless
    the config file sets one, so command output is not interleaved with
    routine log lines.

    Raises:
        typer.Exit: If logging configuration fails.
    """
    if _state.logging_configured:
        return

    log_config = config.logging
    level = _state.log_level
    if level is None:
        level = log_config.level if "level" in log_config.model_fields_set else "WARNING"

    try:
        configure_logging(
            level=level,
            format=_state.log_format or log_config.format,
            file_path=_state.log_file or log_config.file_path,
            max_file_size_mb=log_config.max_file_size_mb,
            backup_count=log_config.backup_count,
            include_timestamps=log_config.include_timestamps,
            include_context=log_config.include_context,
        )
        _state.logging_configured = True
    except ValueError as e:
        # format="both" without a file path
        console.print(f"[red]Logging configuration error:[/red] {e}")
        raise typer.Exit(1) from None


async def open_queue(config: RequiemConfig, *, load_all: bool = True) -> DeadLetterQueue:
    """Build a queue over the configured storage.

    Single-entry commands pass ``load_all=False`` and fetch what they need
    through require_entry().
    """
    storage = create_storage(config.storage)
    dlq = DeadLetterQueue(storage, config.dlq)
    count = await dlq.load_from_storage() if load_all else 0
    _logger.debug("cli.queue_opened", backend=config.storage.backend, entries=count)
    return dlq


async def require_entry(dlq: DeadLetterQueue, entry_id: str) -> DLQEntry:
    """Look up an entry by id, falling back to a task id.

    The entry id is read straight from storage; a task id needs the whole
    queue loaded.

    Raises:
        EntryNotFoundError: If neither matches.
    """
    entry = await dlq.load_entry(entry_id)
    if entry is None:
        await dlq.load_from_storage()
        entry = dlq.get_by_task_id(entry_id)
    if entry is None:
        raise EntryNotFoundError(entry_id)
    return entry
