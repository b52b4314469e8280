"""JSON file-based storage adapter.

Stores each entry's record in a separate JSON file within a directory.
File naming: {storage_dir}/{entry_id}.json
"""

import json
from pathlib import Path

from pydantic import ValidationError

from requiem.core.errors import StorageError
from requiem.core.logging import get_logger
from requiem.dlq.models import PersistedDeadLetterEntry
from requiem.state.base import DLQStorageAdapter, to_record

_logger = get_logger("state.json")


class JsonDLQStorage(DLQStorageAdapter):
    """JSON file-based storage adapter.

    Writes are atomic (temp file + rename). Unreadable files are skipped
    with a warning when listing, so one corrupted record cannot block a
    restart.
    """

    def __init__(self, storage_dir: Path):
        """Initialize JSON backend.

        Args:
            storage_dir: Directory to store record files
        """
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    def _get_record_file(self, entry_id: str) -> Path:
        """Get the record file path for an entry."""
        safe_id = "".join(c if c.isalnum() or c in "-_" else "_" for c in entry_id)
        return self.storage_dir / f"{safe_id}.json"

    def _read(self, record_file: Path) -> PersistedDeadLetterEntry | None:
        try:
            with open(record_file, encoding="utf-8") as f:
                data = json.load(f)
            return PersistedDeadLetterEntry.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            _logger.warning("state.json.unreadable_record", path=str(record_file), error=str(e))
            return None

    async def add_to_dead_letter_queue(self, entry: PersistedDeadLetterEntry) -> None:
        record = to_record(entry)
        record_file = self._get_record_file(record.id)
        temp_file = record_file.with_suffix(".json.tmp")
        try:
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(record.model_dump(mode="json"), f, indent=2)
            temp_file.replace(record_file)
        except OSError as e:
            raise StorageError(f"Failed to write DLQ record {record.id}: {e}") from e

    async def load_dead_letter_entry(self, entry_id: str) -> PersistedDeadLetterEntry | None:
        record_file = self._get_record_file(entry_id)
        if not record_file.exists():
            return None
        return self._read(record_file)

    async def list_dead_letter_queue(self) -> list[PersistedDeadLetterEntry]:
        records = []
        for record_file in self.storage_dir.glob("*.json"):
            record = self._read(record_file)
            if record is not None:
                records.append(record)
        return sorted(records, key=lambda r: r.first_failed_at)

    async def remove_from_dead_letter_queue(self, entry_id: str) -> bool:
        record_file = self._get_record_file(entry_id)
        if not record_file.exists():
            return False
        try:
            record_file.unlink()
        except OSError as e:
            raise StorageError(f"Failed to delete DLQ record {entry_id}: {e}") from e
        return True
