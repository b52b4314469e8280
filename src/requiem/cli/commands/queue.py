"""Inspection commands for the Requiem CLI.

- `requiem stats` - aggregate counts over the persisted queue
- `requiem list` (list_entries) - list entries, optionally by status
- `requiem show <entry-id>` - detailed view of one entry
"""

from __future__ import annotations

import asyncio

import typer

from requiem.core.errors import EntryNotFoundError
from requiem.dlq.models import DLQEntryStatus

from ..helpers import ErrorMessages, load_config, open_queue, require_entry
from ..output import (
    add_entry_row,
    console,
    create_entries_table,
    create_entry_panel,
    create_stats_panel,
    entry_to_json,
    output_error,
    output_json,
)


def stats(
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output stats as JSON for machine parsing",
    ),
) -> None:
    """Show aggregate statistics for the dead-letter queue."""
    asyncio.run(_stats(json_output))


def list_entries(
    status_filter: DLQEntryStatus | None = typer.Option(
        None,
        "--status",
        "-s",
        help="Only show entries with this status",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output entries as JSON for machine parsing",
    ),
) -> None:
    """List entries in the dead-letter queue.

    Examples:
        requiem list
        requiem list --status quarantined
        requiem list --json
    """
    asyncio.run(_list_entries(status_filter, json_output))


def show(
    entry_id: str = typer.Argument(
        ...,
        help="Entry ID (or originating task ID) to show",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output the entry as JSON for machine parsing",
    ),
) -> None:
    """Show one entry with its error history."""
    asyncio.run(_show(entry_id, json_output))


# =============================================================================
# Async Implementation Functions
# =============================================================================


async def _stats(json_output: bool) -> None:
    dlq = await open_queue(load_config(console))
    result = dlq.get_stats()

    if json_output:
        output_json(result.to_dict())
        return

    console.print(create_stats_panel(result))


async def _list_entries(status_filter: DLQEntryStatus | None, json_output: bool) -> None:
    dlq = await open_queue(load_config(console))
    entries = dlq.list_by_status(status_filter) if status_filter else dlq.list()

    if json_output:
        output_json([entry_to_json(entry) for entry in entries])
        return

    if not entries:
        console.print("[dim]No entries in the dead-letter queue.[/dim]")
        return

    table = create_entries_table()
    for entry in entries:
        add_entry_row(table, entry)
    console.print(table)
    console.print(f"\n[dim]{len(entries)} entr{'y' if len(entries) == 1 else 'ies'}[/dim]")


async def _show(entry_id: str, json_output: bool) -> None:
    dlq = await open_queue(load_config(console), load_all=False)

    try:
        entry = await require_entry(dlq, entry_id)
    except EntryNotFoundError:
        output_error(f"{ErrorMessages.ENTRY_NOT_FOUND}:", detail=entry_id)
        raise typer.Exit(1) from None

    if json_output:
        output_json(entry_to_json(entry))
        return

    console.print(create_entry_panel(entry))
