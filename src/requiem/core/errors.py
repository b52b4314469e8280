"""Exception hierarchy for Requiem.

All Requiem-specific exceptions inherit from RequiemError, enabling callers
to catch broad (RequiemError) or narrow (e.g., StorageError).

Failures of the work being retried are never raised: they are recorded in
the entry's error history. These exceptions cover the queue's own seams.
"""

from __future__ import annotations


class RequiemError(Exception):
    """Base exception for all Requiem errors."""


class StorageError(RequiemError):
    """Raised when a storage adapter fails to read or write an entry.

    The engine treats persistence as advisory by default and only raises
    this when ``persistence_failures_fatal`` is enabled.
    """


class EntryNotFoundError(RequiemError, KeyError):
    """Raised when an entry id is not present in the queue."""

    def __init__(self, entry_id: str) -> None:
        super().__init__(entry_id)
        self.entry_id = entry_id

    def __str__(self) -> str:
        return f"DLQ entry not found: {self.entry_id}"


class DLQNotInitializedError(RequiemError):
    """Raised when the shared DLQ instance is requested before initialization."""


class DLQAlreadyInitializedError(RequiemError):
    """Raised when the shared DLQ instance is initialized a second time."""


__all__ = [
    "DLQAlreadyInitializedError",
    "DLQNotInitializedError",
    "EntryNotFoundError",
    "RequiemError",
    "StorageError",
]
