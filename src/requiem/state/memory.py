"""In-memory storage adapter.

Keeps detached copies of records in a dict without filesystem I/O. Useful
for tests and for queues that do not need to survive a restart.
"""

from requiem.dlq.models import PersistedDeadLetterEntry
from requiem.state.base import DLQStorageAdapter, to_record


class InMemoryDLQStorage(DLQStorageAdapter):
    """In-memory storage adapter.

    Records are copied on the way in and out, so later mutation of a live
    entry is not visible until the engine writes it again.
    """

    def __init__(self) -> None:
        self.records: dict[str, PersistedDeadLetterEntry] = {}

    async def add_to_dead_letter_queue(self, entry: PersistedDeadLetterEntry) -> None:
        self.records[entry.id] = to_record(entry)

    async def load_dead_letter_entry(self, entry_id: str) -> PersistedDeadLetterEntry | None:
        record = self.records.get(entry_id)
        return record.model_copy(deep=True) if record else None

    async def list_dead_letter_queue(self) -> list[PersistedDeadLetterEntry]:
        records = sorted(self.records.values(), key=lambda r: r.first_failed_at)
        return [record.model_copy(deep=True) for record in records]

    async def remove_from_dead_letter_queue(self, entry_id: str) -> bool:
        return self.records.pop(entry_id, None) is not None

    async def purge_dead_letter_queue(self) -> int:
        count = len(self.records)
        self.records.clear()
        return count
