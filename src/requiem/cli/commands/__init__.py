# requiem/cli/commands: Command modules for the Requiem CLI.
#
# Each module in this package provides one or more CLI commands.

from .manage import clear, purge, release, remove
from .queue import list_entries, show, stats

__all__ = [
    # queue.py
    "stats",
    "list_entries",
    "show",
    # manage.py
    "release",
    "remove",
    "purge",
    "clear",
]
