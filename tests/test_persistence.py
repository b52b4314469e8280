"""Tests for DLQ persistence sync: hydration, purge and storage failures."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from structlog.testing import capture_logs

from requiem.core.config import DLQConfig
from requiem.core.errors import StorageError
from requiem.dlq.engine import DeadLetterQueue
from requiem.dlq.models import DLQEntryStatus, PersistedDeadLetterEntry
from requiem.state.base import DLQStorageAdapter
from requiem.state.memory import InMemoryDLQStorage
from tests.helpers import FakeClock, failed_result, make_error, make_task


def _record(
    clock: FakeClock,
    entry_id: str = "dlq-task-1-1",
    *,
    attempts: int = 3,
    status: DLQEntryStatus = DLQEntryStatus.PENDING_RETRY,
    **kwargs,
) -> PersistedDeadLetterEntry:
    now = clock()
    return PersistedDeadLetterEntry(
        id=entry_id,
        task=make_task(entry_id.removeprefix("dlq-")),
        error=make_error("last failure", "E_LAST"),
        attempts=attempts,
        first_failed_at=now - timedelta(minutes=5),
        last_failed_at=now - timedelta(minutes=1),
        expires_at=now + timedelta(hours=23),
        status=status,
        **kwargs,
    )


class TestLoadFromStorage:
    """Tests for DeadLetterQueue.load_from_storage."""

    async def test_hydrates_pending_entry(
        self, dlq: DeadLetterQueue, storage: InMemoryDLQStorage, clock: FakeClock
    ):
        record = _record(clock, attempts=3)
        await storage.add_to_dead_letter_queue(record)

        assert await dlq.load_from_storage() == 1

        entry = dlq.get(record.id)
        assert entry is not None
        assert entry.retry_count == 2
        assert entry.status == DLQEntryStatus.PENDING_RETRY
        assert entry.last_attempt_at == record.last_failed_at
        assert entry.next_retry_at == record.last_failed_at + timedelta(milliseconds=5000)
        assert entry.is_poison_pill is False

    async def test_history_is_single_reconstructed_record(
        self, dlq: DeadLetterQueue, storage: InMemoryDLQStorage, clock: FakeClock
    ):
        record = _record(clock, attempts=3)
        await storage.add_to_dead_letter_queue(record)
        await dlq.load_from_storage()

        history = dlq.get(record.id).error_history
        assert len(history) == 1
        assert history[0].message == "last failure"
        assert history[0].code == "E_LAST"
        assert history[0].attempt_number == 3
        assert history[0].timestamp == record.last_failed_at

    async def test_single_attempt_record(
        self, dlq: DeadLetterQueue, storage: InMemoryDLQStorage, clock: FakeClock
    ):
        await storage.add_to_dead_letter_queue(_record(clock, attempts=1))
        await dlq.load_from_storage()
        assert dlq.get("dlq-task-1-1").retry_count == 0

    async def test_restores_quarantine(
        self, dlq: DeadLetterQueue, storage: InMemoryDLQStorage, clock: FakeClock
    ):
        """Test that a quarantined record comes back quarantined."""
        record = _record(
            clock,
            status=DLQEntryStatus.QUARANTINED,
            is_poison_pill=True,
            error_similarity_score=0.97,
            poison_pill_reason="Detected with 97.0% error similarity",
            quarantined_at=clock() - timedelta(minutes=1),
        )
        await storage.add_to_dead_letter_queue(record)
        await dlq.load_from_storage()

        entry = dlq.get(record.id)
        assert entry.status == DLQEntryStatus.QUARANTINED
        assert entry.is_poison_pill is True
        assert entry.next_retry_at is None
        assert entry.quarantined_at == record.quarantined_at
        assert dlq.get_quarantined_entries() == [entry]
        assert await dlq.release_from_quarantine(entry.id) is True

    async def test_interrupted_retry_becomes_pending(
        self, dlq: DeadLetterQueue, storage: InMemoryDLQStorage, clock: FakeClock
    ):
        await storage.add_to_dead_letter_queue(_record(clock, status=DLQEntryStatus.RETRYING))
        await dlq.load_from_storage()

        entry = dlq.get("dlq-task-1-1")
        assert entry.status == DLQEntryStatus.PENDING_RETRY
        assert dlq.get_retryable_entries() == [entry]

    async def test_permanent_failure_has_no_next_retry(
        self, dlq: DeadLetterQueue, storage: InMemoryDLQStorage, clock: FakeClock
    ):
        await storage.add_to_dead_letter_queue(
            _record(clock, attempts=4, status=DLQEntryStatus.PERMANENT_FAILURE)
        )
        await dlq.load_from_storage()

        entry = dlq.get("dlq-task-1-1")
        assert entry.status == DLQEntryStatus.PERMANENT_FAILURE
        assert entry.next_retry_at is None
        assert dlq.get_retryable_entries() == []

    async def test_tracked_entries_are_kept(
        self, dlq: DeadLetterQueue, storage: InMemoryDLQStorage
    ):
        """Test that loading does not replace live entries with lossy copies."""
        entry = await dlq.add(make_task(), make_error("first"))
        await dlq.record_failed_attempt(entry, make_error("second"))

        assert await dlq.load_from_storage() == 0
        assert dlq.get(entry.id) is entry
        assert len(entry.error_history) == 2

    async def test_round_trip_through_restart(
        self, storage: InMemoryDLQStorage, config: DLQConfig, clock: FakeClock
    ):
        """Test that a second queue over the same storage sees the same state."""
        first = DeadLetterQueue(storage, config, clock=clock)
        entry = await first.add(make_task(), make_error("same"))
        await first.record_failed_attempt(entry, make_error("same"))
        await first.record_failed_attempt(entry, make_error("same"))
        await first.shutdown()

        second = DeadLetterQueue(storage, config, clock=clock)
        assert await second.load_from_storage() == 1

        restored = second.get(entry.id)
        assert restored.retry_count == entry.retry_count
        assert restored.status == DLQEntryStatus.QUARANTINED
        assert restored.error_similarity_score == 1.0
        assert restored.poison_pill_reason == entry.poison_pill_reason

    async def test_without_storage(self, config: DLQConfig):
        dlq = DeadLetterQueue(config=config)
        assert await dlq.load_from_storage() == 0

    async def test_storage_failure_is_logged(self, config: DLQConfig):
        storage = AsyncMock(spec=DLQStorageAdapter)
        storage.list_dead_letter_queue.side_effect = StorageError("database is locked")
        dlq = DeadLetterQueue(storage, config)

        with capture_logs() as logs:
            assert await dlq.load_from_storage() == 0

        assert any(log["event"] == "dlq.storage_load_failed" for log in logs)


class TestLoadEntry:
    """Tests for DeadLetterQueue.load_entry."""

    async def test_hydrates_single_record(
        self, dlq: DeadLetterQueue, storage: InMemoryDLQStorage, clock: FakeClock
    ):
        record = _record(clock, attempts=2)
        await storage.add_to_dead_letter_queue(record)
        await storage.add_to_dead_letter_queue(_record(clock, "dlq-task-2-1"))

        entry = await dlq.load_entry(record.id)

        assert entry is not None
        assert entry.retry_count == 1
        assert dlq.get(record.id) is entry
        assert dlq.size == 1

    async def test_tracked_entry_is_returned_as_is(self, dlq: DeadLetterQueue):
        entry = await dlq.add(make_task(), make_error())
        assert await dlq.load_entry(entry.id) is entry

    async def test_unknown_entry(self, dlq: DeadLetterQueue):
        assert await dlq.load_entry("dlq-missing") is None
        assert dlq.size == 0

    async def test_without_storage(self, config: DLQConfig):
        dlq = DeadLetterQueue(config=config)
        assert await dlq.load_entry("dlq-task-1-1") is None

    async def test_storage_failure_is_logged(self, config: DLQConfig):
        storage = AsyncMock(spec=DLQStorageAdapter)
        storage.load_dead_letter_entry.side_effect = StorageError("database is locked")
        dlq = DeadLetterQueue(storage, config)

        with capture_logs() as logs:
            assert await dlq.load_entry("dlq-task-1-1") is None

        failures = [log for log in logs if log["event"] == "dlq.storage_load_failed"]
        assert len(failures) == 1
        assert failures[0]["entry_id"] == "dlq-task-1-1"


class TestPurgeExpired:
    """Tests for DeadLetterQueue.purge_expired."""

    async def test_purges_only_expired(
        self, dlq: DeadLetterQueue, storage: InMemoryDLQStorage, clock: FakeClock
    ):
        old = await dlq.add(make_task("old"), make_error())
        clock.advance(60 * 60 * 1000)
        new = await dlq.add(make_task("new"), make_error())

        clock.advance(23 * 60 * 60 * 1000 + 1)
        assert await dlq.purge_expired() == 1

        assert dlq.get(old.id) is None
        assert old.id not in storage.records
        assert dlq.get(new.id) is new
        assert new.id in storage.records

    async def test_nothing_expired(self, dlq: DeadLetterQueue):
        await dlq.add(make_task(), make_error())
        assert await dlq.purge_expired() == 0
        assert dlq.size == 1

    async def test_exact_expiry_instant_is_kept(self, dlq: DeadLetterQueue, clock: FakeClock):
        """Test that expires_at must be strictly in the past."""
        await dlq.add(make_task(), make_error())
        clock.advance(24 * 60 * 60 * 1000)
        assert await dlq.purge_expired() == 0

    async def test_permanent_failures_retained_until_purged(
        self, no_poison_config: DLQConfig, clock: FakeClock
    ):
        executor = AsyncMock(return_value=failed_result())
        dlq = DeadLetterQueue(config=no_poison_config, executor=executor, clock=clock)
        entry = await dlq.add(make_task(), make_error())
        for _ in range(3):
            await dlq.retry_entry(entry)
        assert entry.status == DLQEntryStatus.PERMANENT_FAILURE

        clock.advance(12 * 60 * 60 * 1000)
        assert await dlq.purge_expired() == 0
        assert dlq.get(entry.id) is entry

        clock.advance(12 * 60 * 60 * 1000 + 1)
        assert await dlq.purge_expired() == 1
        assert dlq.is_empty


class TestStorageFailures:
    """Tests for advisory and fatal persistence."""

    async def test_write_failure_is_advisory_by_default(
        self, config: DLQConfig, clock: FakeClock
    ):
        storage = AsyncMock(spec=DLQStorageAdapter)
        storage.add_to_dead_letter_queue.side_effect = StorageError("read-only filesystem")
        dlq = DeadLetterQueue(storage, config, clock=clock)

        with capture_logs() as logs:
            entry = await dlq.add(make_task(), make_error())

        assert dlq.get(entry.id) is entry
        failures = [log for log in logs if log["event"] == "dlq.storage_write_failed"]
        assert len(failures) == 1
        assert failures[0]["operation"] == "write"
        assert failures[0]["entry_id"] == entry.id

    async def test_delete_failure_is_advisory(self, config: DLQConfig, clock: FakeClock):
        storage = AsyncMock(spec=DLQStorageAdapter)
        storage.remove_from_dead_letter_queue.side_effect = OSError("gone")
        dlq = DeadLetterQueue(storage, config, clock=clock)
        entry = await dlq.add(make_task(), make_error())

        assert await dlq.remove(entry.id) is True
        assert dlq.get(entry.id) is None

    async def test_write_failure_is_fatal_when_configured(self, clock: FakeClock):
        config = DLQConfig(auto_retry_enabled=False, persistence_failures_fatal=True)
        storage = AsyncMock(spec=DLQStorageAdapter)
        storage.add_to_dead_letter_queue.side_effect = StorageError("read-only filesystem")
        dlq = DeadLetterQueue(storage, config, clock=clock)

        with pytest.raises(StorageError, match="read-only filesystem"):
            await dlq.add(make_task(), make_error())

    async def test_fatal_write_failure_leaves_nothing_tracked(self, clock: FakeClock):
        config = DLQConfig(auto_retry_enabled=False, persistence_failures_fatal=True)
        storage = AsyncMock(spec=DLQStorageAdapter)
        storage.add_to_dead_letter_queue.side_effect = OSError("disk full")
        dlq = DeadLetterQueue(storage, config, clock=clock)

        with pytest.raises(StorageError, match="disk full"):
            await dlq.add(make_task("task-full"), make_error())

        assert dlq.size == 0
        assert dlq.get_by_task_id("task-full") is None
        assert dlq.get_stats().total_entries == 0

    async def test_foreign_errors_are_wrapped_when_fatal(self, clock: FakeClock):
        config = DLQConfig(auto_retry_enabled=False, persistence_failures_fatal=True)
        storage = AsyncMock(spec=DLQStorageAdapter)
        storage.purge_dead_letter_queue.side_effect = OSError("permission denied")
        dlq = DeadLetterQueue(storage, config, clock=clock)

        with pytest.raises(StorageError, match="purge") as exc_info:
            await dlq.clear()
        assert isinstance(exc_info.value.__cause__, OSError)
