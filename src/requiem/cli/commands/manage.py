"""Management commands for the Requiem CLI.

- `requiem release <entry-id>` - return a quarantined entry to retry rotation
- `requiem remove <entry-id>` - drop one entry
- `requiem purge` - drop entries past their retention window
- `requiem clear --yes` - drop everything
"""

from __future__ import annotations

import asyncio

import typer

from requiem.core.errors import EntryNotFoundError
from requiem.dlq.models import DLQEntryStatus

from ..helpers import ErrorMessages, load_config, open_queue, require_entry
from ..output import console, format_status, format_timestamp, output_error


def release(
    entry_id: str = typer.Argument(
        ...,
        help="Entry ID (or originating task ID) of a quarantined entry",
    ),
) -> None:
    """Release a quarantined entry so it is retried again.

    The entry is rescheduled one base retry delay from now. Its retry count
    is kept, so it still becomes a permanent failure at max_retries.
    """
    asyncio.run(_release(entry_id))


def remove(
    entry_id: str = typer.Argument(
        ...,
        help="Entry ID (or originating task ID) to remove",
    ),
) -> None:
    """Remove an entry from the dead-letter queue."""
    asyncio.run(_remove(entry_id))


def purge() -> None:
    """Remove entries whose retention window has passed."""
    asyncio.run(_purge())


def clear(
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Confirm removal of every entry",
    ),
) -> None:
    """Remove every entry from the dead-letter queue."""
    if not yes:
        output_error(
            "Refusing to clear the queue without confirmation.",
            hints=["Re-run with --yes to remove every entry"],
        )
        raise typer.Exit(1)
    asyncio.run(_clear())


# =============================================================================
# Async Implementation Functions
# =============================================================================


async def _release(entry_id: str) -> None:
    dlq = await open_queue(load_config(console), load_all=False)

    try:
        entry = await require_entry(dlq, entry_id)
    except EntryNotFoundError:
        output_error(f"{ErrorMessages.ENTRY_NOT_FOUND}:", detail=entry_id)
        raise typer.Exit(1) from None

    if entry.status != DLQEntryStatus.QUARANTINED:
        output_error(
            f"{ErrorMessages.NOT_QUARANTINED}:",
            detail=f"{entry.id} is {format_status(entry.status)}",
        )
        raise typer.Exit(1)

    await dlq.release_from_quarantine(entry.id)
    console.print(
        f"[green]Released[/green] {entry.id}, "
        f"next retry at {format_timestamp(entry.next_retry_at)}"
    )


async def _remove(entry_id: str) -> None:
    dlq = await open_queue(load_config(console), load_all=False)

    try:
        entry = await require_entry(dlq, entry_id)
    except EntryNotFoundError:
        output_error(f"{ErrorMessages.ENTRY_NOT_FOUND}:", detail=entry_id)
        raise typer.Exit(1) from None

    await dlq.remove(entry.id)
    console.print(f"[green]Removed[/green] {entry.id}")


async def _purge() -> None:
    dlq = await open_queue(load_config(console))
    count = await dlq.purge_expired()
    console.print(f"Purged {count} expired entr{'y' if count == 1 else 'ies'}")


async def _clear() -> None:
    dlq = await open_queue(load_config(console))
    count = await dlq.clear()
    console.print(f"Cleared {count} entr{'y' if count == 1 else 'ies'}")
