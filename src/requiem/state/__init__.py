"""Storage adapters for persisted DLQ entries."""

from requiem.core.config import StorageConfig
from requiem.state.base import DLQStorageAdapter
from requiem.state.json_backend import JsonDLQStorage
from requiem.state.memory import InMemoryDLQStorage
from requiem.state.sqlite_backend import SQLiteDLQStorage


def create_storage(config: StorageConfig) -> DLQStorageAdapter:
    """Build the storage adapter selected by ``config.backend``."""
    if config.backend == "memory":
        return InMemoryDLQStorage()
    if config.backend == "json":
        return JsonDLQStorage(config.get_path())
    return SQLiteDLQStorage(config.get_path())


__all__ = [
    "DLQStorageAdapter",
    "InMemoryDLQStorage",
    "JsonDLQStorage",
    "SQLiteDLQStorage",
    "create_storage",
]
