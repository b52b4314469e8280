"""Abstract base for DLQ storage adapters."""

from abc import ABC, abstractmethod

from requiem.dlq.models import DLQEntry, PersistedDeadLetterEntry


class DLQStorageAdapter(ABC):
    """Abstract base class for dead-letter queue storage.

    Implementations persist entry records so the queue survives restarts.
    ``add_to_dead_letter_queue`` is an upsert: the engine calls it after
    every state change of an entry.
    """

    @abstractmethod
    async def add_to_dead_letter_queue(self, entry: PersistedDeadLetterEntry) -> None:
        """Insert or replace the record for an entry.

        Args:
            entry: Entry to persist. A DLQEntry is snapshotted to its
                persisted record.
        """
        ...

    @abstractmethod
    async def load_dead_letter_entry(self, entry_id: str) -> PersistedDeadLetterEntry | None:
        """Load one record.

        Returns:
            The record if found, None otherwise
        """
        ...

    @abstractmethod
    async def list_dead_letter_queue(self) -> list[PersistedDeadLetterEntry]:
        """List all records, oldest first failure first."""
        ...

    @abstractmethod
    async def remove_from_dead_letter_queue(self, entry_id: str) -> bool:
        """Delete one record.

        Returns:
            True if deleted, False if not found
        """
        ...

    async def purge_dead_letter_queue(self) -> int:
        """Delete every record.

        Returns:
            Number of records deleted
        """
        removed = 0
        for entry in await self.list_dead_letter_queue():
            if await self.remove_from_dead_letter_queue(entry.id):
                removed += 1
        return removed


def to_record(entry: PersistedDeadLetterEntry) -> PersistedDeadLetterEntry:
    """Normalize an entry to a detached persisted record."""
    if isinstance(entry, DLQEntry):
        return entry.to_persisted()
    return entry.model_copy(deep=True)
