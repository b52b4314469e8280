"""Rich output formatting for the Requiem CLI.

Status colors, table builders and formatters shared by the commands.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from requiem.dlq.models import DLQEntry, DLQEntryStatus, DLQStats

# Shared by every command module
console = Console()


class StatusColors:
    """Color mappings for entry statuses."""

    ENTRY_STATUS: dict[DLQEntryStatus, str] = {
        DLQEntryStatus.PENDING_RETRY: "yellow",
        DLQEntryStatus.RETRYING: "blue",
        DLQEntryStatus.RECOVERED: "green",
        DLQEntryStatus.PERMANENT_FAILURE: "red",
        DLQEntryStatus.QUARANTINED: "magenta",
        DLQEntryStatus.SKIPPED: "dim",
    }

    @classmethod
    def get_entry_color(cls, status: DLQEntryStatus) -> str:
        return cls.ENTRY_STATUS.get(status, "white")


def format_timestamp(dt: datetime | None) -> str:
    """Format a datetime for display, or "-" if None."""
    if dt is None:
        return "-"
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


def format_status(status: DLQEntryStatus) -> str:
    color = StatusColors.get_entry_color(status)
    return f"[{color}]{status.value}[/{color}]"


def format_similarity(score: float | None) -> str:
    return "-" if score is None else f"{score * 100:.1f}%"


def create_entries_table(title: str = "Dead-Letter Queue") -> Table:
    """Create a styled table for entry listings."""
    table = Table(title=title)
    table.add_column("Entry ID", style="cyan", no_wrap=True)
    table.add_column("Task", no_wrap=True)
    table.add_column("Status", style="bold")
    table.add_column("Retries", justify="right")
    table.add_column("Error", style="dim")
    table.add_column("Next Retry", style="dim")
    return table


def add_entry_row(table: Table, entry: DLQEntry) -> None:
    table.add_row(
        entry.id,
        entry.task.id,
        format_status(entry.status),
        str(entry.retry_count),
        entry.error.code,
        format_timestamp(entry.next_retry_at),
    )


def create_simple_table(show_header: bool = False) -> Table:
    """Create a table without box styling, for key-value displays."""
    return Table(show_header=show_header, box=None)


def create_stats_panel(stats: DLQStats) -> Panel:
    table = create_simple_table()
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    table.add_row("Total entries", str(stats.total_entries))
    table.add_row("Pending retry", str(stats.pending_retry))
    table.add_row("Retrying", str(stats.retrying))
    table.add_row("Permanent failures", str(stats.permanent_failures))
    table.add_row("Quarantined", str(stats.quarantined))
    table.add_row("Skipped", str(stats.skipped))
    table.add_row("Poison pills", str(stats.poison_pills))
    table.add_row("Recovery rate", f"{stats.recovery_rate:.1f}%")
    table.add_row(
        "Avg poison-pill similarity",
        format_similarity(stats.average_poison_pill_similarity if stats.poison_pills else None),
    )
    return Panel(table, title="DLQ Stats", expand=False)


def create_entry_panel(entry: DLQEntry) -> Panel:
    """Detailed view of a single entry, including its error history."""
    table = create_simple_table()
    table.add_column("Field", style="bold")
    table.add_column("Value")

    table.add_row("Entry ID", entry.id)
    table.add_row("Task", f"{entry.task.id} ({entry.task.type})")
    table.add_row("Status", format_status(entry.status))
    table.add_row("Retries", str(entry.retry_count))
    table.add_row("Error", f"[red]{entry.error.code}[/red]: {entry.error.message}")
    table.add_row("First failed", format_timestamp(entry.first_failed_at))
    table.add_row("Last failed", format_timestamp(entry.last_failed_at))
    table.add_row("Next retry", format_timestamp(entry.next_retry_at))
    table.add_row("Expires", format_timestamp(entry.expires_at))

    if entry.is_poison_pill:
        table.add_row("Poison pill", f"[magenta]{entry.poison_pill_reason or 'yes'}[/magenta]")
    if entry.quarantined_at is not None:
        table.add_row("Quarantined", format_timestamp(entry.quarantined_at))
    if entry.error_similarity_score is not None:
        table.add_row("Similarity", format_similarity(entry.error_similarity_score))

    for record in entry.error_history:
        table.add_row(
            f"Attempt {record.attempt_number}",
            f"[dim]{format_timestamp(record.timestamp)}[/dim] {record.code or '-'}: {record.message}",
        )

    return Panel(table, title=f"DLQ Entry {entry.id}", expand=False)


def entry_to_json(entry: DLQEntry) -> dict[str, Any]:
    return entry.model_dump(mode="json")


def output_json(data: Any, console_instance: Console | None = None) -> None:
    """Print data as indented JSON without Rich markup or highlighting."""
    out = console_instance or console
    out.print_json(json.dumps(data))


def output_error(
    message: str,
    *,
    detail: str | None = None,
    hints: list[str] | None = None,
    console_instance: Console | None = None,
) -> None:
    """Print a red error line with optional dim hints."""
    out = console_instance or console
    suffix = f" {detail}" if detail else ""
    out.print(f"[red]Error:[/red] {message}{suffix}")

    if hints:
        out.print()
        out.print("[dim]Hints:[/dim]")
        for hint in hints:
            out.print(f"  - {hint}")
