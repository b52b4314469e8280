"""SQLite-based storage adapter for the dead-letter queue.

Keeps one row per entry in a ``dead_letter_entries`` table, with the task
and error payloads stored as JSON and the lifecycle fields in their own
columns so operators can query the queue directly.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite
from pydantic import ValidationError

from requiem.core.errors import StorageError
from requiem.core.logging import get_logger
from requiem.dlq.models import (
    DLQEntryStatus,
    PersistedDeadLetterEntry,
    Task,
    TaskError,
)
from requiem.state.base import DLQStorageAdapter, to_record
from requiem.utils.time import utc_now

_logger = get_logger("state.sqlite")

# Current schema version for migration support
SCHEMA_VERSION = 1

_COLUMNS = (
    "id",
    "task_id",
    "task_type",
    "error_code",
    "status",
    "attempts",
    "first_failed_at",
    "last_failed_at",
    "expires_at",
    "next_retry_at",
    "is_poison_pill",
    "error_similarity_score",
    "poison_pill_reason",
    "quarantined_at",
    "task_json",
    "error_json",
    "updated_at",
)


class SQLiteDLQStorage(DLQStorageAdapter):
    """SQLite-based DLQ storage.

    The schema is created lazily on first use and upgraded through numbered
    migrations recorded in a ``schema_version`` table.
    """

    def __init__(self, db_path: str | Path) -> None:
        """Initialize SQLite backend.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                yield db
        except aiosqlite.Error as e:
            raise StorageError(f"SQLite DLQ storage error ({self.db_path}): {e}") from e

    async def _ensure_initialized(self) -> None:
        """Ensure database is initialized with schema."""
        if self._initialized:
            return

        async with self._init_lock:
            # Another coroutine may have initialized while we waited
            if self._initialized:
                return

            async with self._connect() as db:
                await self._run_migrations(db)
                self._initialized = True

    async def _get_schema_version(self, db: aiosqlite.Connection) -> int:
        try:
            cursor = await db.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            )
            row = await cursor.fetchone()
            return row[0] if row else 0
        except aiosqlite.OperationalError:
            # Table doesn't exist yet
            return 0

    async def _run_migrations(self, db: aiosqlite.Connection) -> None:
        current_version = await self._get_schema_version(db)

        if current_version < 1:
            await self._migrate_v1(db)
            _logger.info("state.sqlite.schema_migrated", from_version=0, to_version=1)

    async def _migrate_v1(self, db: aiosqlite.Connection) -> None:
        """Initial schema migration (version 1)."""
        await db.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS dead_letter_entries (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL,
                task_type TEXT NOT NULL,
                error_code TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending_retry',
                attempts INTEGER NOT NULL DEFAULT 1,
                first_failed_at TEXT NOT NULL,
                last_failed_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                next_retry_at TEXT,
                is_poison_pill INTEGER NOT NULL DEFAULT 0,
                error_similarity_score REAL,
                poison_pill_reason TEXT,
                quarantined_at TEXT,
                task_json TEXT NOT NULL,
                error_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_dle_task_id ON dead_letter_entries(task_id)"
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_dle_status ON dead_letter_entries(status)"
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_dle_expires_at ON dead_letter_entries(expires_at)"
        )

        await db.execute(
            "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (1, utc_now().isoformat()),
        )
        await db.commit()

    def _datetime_to_str(self, dt: datetime | None) -> str | None:
        return dt.isoformat() if dt else None

    def _str_to_datetime(self, s: str | None) -> datetime | None:
        if not s:
            return None
        try:
            return datetime.fromisoformat(s)
        except ValueError:
            return None

    def _to_row(self, record: PersistedDeadLetterEntry) -> tuple[Any, ...]:
        return (
            record.id,
            record.task.id,
            record.task.type,
            record.error.code,
            record.status.value,
            record.attempts,
            self._datetime_to_str(record.first_failed_at),
            self._datetime_to_str(record.last_failed_at),
            self._datetime_to_str(record.expires_at),
            self._datetime_to_str(record.next_retry_at),
            int(record.is_poison_pill),
            record.error_similarity_score,
            record.poison_pill_reason,
            self._datetime_to_str(record.quarantined_at),
            json.dumps(record.task.model_dump(mode="json")),
            json.dumps(record.error.model_dump(mode="json")),
            utc_now().isoformat(),
        )

    def _from_row(self, row: aiosqlite.Row) -> PersistedDeadLetterEntry | None:
        try:
            return PersistedDeadLetterEntry(
                id=row["id"],
                task=Task.model_validate(json.loads(row["task_json"])),
                error=TaskError.model_validate(json.loads(row["error_json"])),
                attempts=row["attempts"],
                first_failed_at=self._str_to_datetime(row["first_failed_at"]),
                last_failed_at=self._str_to_datetime(row["last_failed_at"]),
                expires_at=self._str_to_datetime(row["expires_at"]),
                status=DLQEntryStatus(row["status"]),
                next_retry_at=self._str_to_datetime(row["next_retry_at"]),
                is_poison_pill=bool(row["is_poison_pill"]),
                error_similarity_score=row["error_similarity_score"],
                poison_pill_reason=row["poison_pill_reason"],
                quarantined_at=self._str_to_datetime(row["quarantined_at"]),
            )
        except (json.JSONDecodeError, ValidationError, ValueError) as e:
            _logger.warning("state.sqlite.unreadable_record", entry_id=row["id"], error=str(e))
            return None

    async def add_to_dead_letter_queue(self, entry: PersistedDeadLetterEntry) -> None:
        await self._ensure_initialized()
        record = to_record(entry)
        placeholders = ", ".join("?" for _ in _COLUMNS)

        async with self._connect() as db:
            await db.execute(
                f"INSERT OR REPLACE INTO dead_letter_entries ({', '.join(_COLUMNS)}) "
                f"VALUES ({placeholders})",
                self._to_row(record),
            )
            await db.commit()

        _logger.debug("state.sqlite.record_saved", entry_id=record.id, status=record.status.value)

    async def load_dead_letter_entry(self, entry_id: str) -> PersistedDeadLetterEntry | None:
        await self._ensure_initialized()

        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM dead_letter_entries WHERE id = ?", (entry_id,)
            )
            row = await cursor.fetchone()

        return self._from_row(row) if row else None

    async def list_dead_letter_queue(self) -> list[PersistedDeadLetterEntry]:
        await self._ensure_initialized()

        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM dead_letter_entries ORDER BY first_failed_at ASC"
            )
            rows = await cursor.fetchall()

        records = [self._from_row(row) for row in rows]
        return [record for record in records if record is not None]

    async def remove_from_dead_letter_queue(self, entry_id: str) -> bool:
        await self._ensure_initialized()

        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM dead_letter_entries WHERE id = ?", (entry_id,)
            )
            await db.commit()
            return cursor.rowcount > 0

    async def purge_dead_letter_queue(self) -> int:
        await self._ensure_initialized()

        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM dead_letter_entries")
            await db.commit()
            count = cursor.rowcount

        _logger.info("state.sqlite.purged", count=count)
        return count

    async def count_by_status(self) -> dict[str, int]:
        """Count persisted records per status."""
        await self._ensure_initialized()

        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT status, COUNT(*) FROM dead_letter_entries GROUP BY status"
            )
            rows = await cursor.fetchall()

        return {status: count for status, count in rows}
