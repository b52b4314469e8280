"""Dead-letter queue engine.

Owns the in-memory map of entries and drives their lifecycle: intake of
failed tasks, retry passes against an injected executor, poison-pill
classification, permanent-failure finalization, stats, observer events and
write-through to an optional storage adapter.

All mutation happens on the event loop, from a retry pass or an explicit API
call. The only guard is the single-flight lock around ``process_retries``: a
pass requested while another is running is dropped, not queued. Entries in a
pass are retried one at a time, so a hung executor call holds up the rest of
that pass; the engine imposes no timeout of its own.

Example usage:
    dlq = DeadLetterQueue(SQLiteDLQStorage(".requiem/dlq.db"), DLQConfig())
    dlq.set_task_executor(run_task)
    await dlq.load_from_storage()
    await dlq.start()

    entry = await dlq.add(task, TaskError(code="TIMEOUT", message="timed out"))
    ...
    await dlq.shutdown()
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from requiem.core.config import DLQConfig
from requiem.core.errors import StorageError
from requiem.core.logging import RetryContext, get_logger, with_context
from requiem.dlq.models import (
    DLQEntry,
    DLQEntryStatus,
    DLQEvent,
    DLQEventType,
    DLQStats,
    ErrorHistoryEntry,
    PersistedDeadLetterEntry,
    Task,
    TaskError,
    TaskResult,
)
from requiem.dlq.poison_pill import PoisonPillClassifier
from requiem.dlq.scheduler import RetryScheduler
from requiem.utils.time import ms_to_timedelta, utc_now

if TYPE_CHECKING:
    from requiem.state.base import DLQStorageAdapter

_logger = get_logger("dlq")

TaskExecutor = Callable[[Task], Awaitable[TaskResult]]
EventCallback = Callable[[DLQEvent], Awaitable[None] | None]

_TERMINAL_STATUSES = frozenset({
    DLQEntryStatus.RECOVERED,
    DLQEntryStatus.PERMANENT_FAILURE,
    DLQEntryStatus.QUARANTINED,
    DLQEntryStatus.SKIPPED,
})


class DeadLetterQueue:
    """Failure-recovery queue with bounded exponential-backoff retries.

    Storage is optional and advisory: when an adapter call fails the error is
    logged and the in-memory operation stands, unless
    ``config.persistence_failures_fatal`` is set, in which case it is raised
    as StorageError.

    The background timer needs a running event loop, so it is started by
    ``start()`` rather than the constructor.
    """

    def __init__(
        self,
        storage: DLQStorageAdapter | None = None,
        config: DLQConfig | None = None,
        *,
        executor: TaskExecutor | None = None,
        on_event: EventCallback | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the queue.

        Args:
            storage: Adapter that persists entries across restarts.
            config: Retry and poison-pill policy. Defaults to DLQConfig().
            executor: Coroutine function that re-runs a task.
            on_event: Observer for DLQ events, sync or async.
            clock: Source of the current UTC time.
        """
        self._config = config.model_copy(deep=True) if config else DLQConfig()
        self._storage = storage
        self._executor = executor
        self._on_event = on_event
        self._clock = clock

        self._entries: dict[str, DLQEntry] = {}
        self._scheduler = RetryScheduler(self._config, clock)
        self._classifier = PoisonPillClassifier(self._config.poison_pill, clock)
        self._pass_lock = asyncio.Lock()
        self._started = False

    # ─── Configuration ────────────────────────────────────────────────

    def set_task_executor(self, executor: TaskExecutor) -> None:
        self._executor = executor
        _logger.info("dlq.executor_configured")

    def set_event_callback(self, callback: EventCallback | None) -> None:
        self._on_event = callback

    def set_storage(self, storage: DLQStorageAdapter | None) -> None:
        self._storage = storage

    def get_config(self) -> DLQConfig:
        """Return a copy of the active configuration."""
        return self._config.model_copy(deep=True)

    async def update_config(self, **overrides: Any) -> DLQConfig:
        """Apply configuration overrides.

        ``poison_pill`` may be a partial mapping. Turning
        ``auto_retry_enabled`` off stops the timer; turning it back on
        restarts it if the queue has been started. A changed interval takes
        effect by restarting a running timer.

        Raises:
            pydantic.ValidationError: If the resulting configuration is invalid.
        """
        previous = self._config
        self._config = previous.merged(**overrides)
        self._scheduler.config = self._config
        self._classifier.config = self._config.poison_pill

        if self._scheduler.is_running and (
            not self._config.auto_retry_enabled
            or self._config.auto_retry_interval_ms != self._scheduler.interval_ms
        ):
            await self._scheduler.stop()

        if self._started and self._config.auto_retry_enabled and not self._scheduler.is_running:
            await self._scheduler.start(self.process_retries)

        _logger.info("dlq.config_updated", fields=sorted(overrides))
        return self.get_config()

    # ─── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the background retry timer if auto-retry is enabled."""
        self._started = True
        if self._config.auto_retry_enabled:
            await self._scheduler.start(self.process_retries)
        _logger.info(
            "dlq.started",
            auto_retry=self._config.auto_retry_enabled,
            entries=len(self._entries),
        )

    async def shutdown(self) -> None:
        """Stop the timer. In-flight executor calls are left to finish."""
        self._started = False
        await self._scheduler.stop()
        _logger.info("dlq.shutdown_complete", entries=len(self._entries))

    @property
    def is_running(self) -> bool:
        """Whether the background timer is active."""
        return self._scheduler.is_running

    # ─── Intake and queries ───────────────────────────────────────────

    async def add(self, task: Task, error: TaskError) -> DLQEntry:
        """Track a task that just failed for the first time.

        The entry is scheduled for its first retry after ``retry_delay_ms``
        and written to storage once.
        """
        now = self._clock()
        entry_id = f"dlq-{task.id}-{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:6]}"

        entry = DLQEntry(
            id=entry_id,
            task=task,
            error=error,
            attempts=1,
            first_failed_at=now,
            last_failed_at=now,
            expires_at=now + ms_to_timedelta(self._config.permanent_failure_retention_ms),
            status=DLQEntryStatus.PENDING_RETRY,
            next_retry_at=now + ms_to_timedelta(self._config.retry_delay_ms),
            retry_count=0,
            last_attempt_at=now,
            error_history=[
                ErrorHistoryEntry(
                    message=error.message,
                    code=error.code,
                    timestamp=now,
                    attempt_number=1,
                )
            ],
        )
        self._entries[entry_id] = entry

        try:
            await self._persist(entry)
        except StorageError:
            # A failed add leaves nothing tracked
            del self._entries[entry_id]
            raise

        _logger.info(
            "dlq.entry_added",
            entry_id=entry_id,
            task_id=task.id,
            error_code=error.code,
            error=error.message,
            next_retry_at=entry.next_retry_at.isoformat() if entry.next_retry_at else None,
        )
        return entry

    def get(self, entry_id: str) -> DLQEntry | None:
        return self._entries.get(entry_id)

    def get_by_task_id(self, task_id: str) -> DLQEntry | None:
        """First entry whose task has this id."""
        for entry in self._entries.values():
            if entry.task.id == task_id:
                return entry
        return None

    def list(self) -> list[DLQEntry]:
        return list(self._entries.values())

    def list_by_status(self, status: DLQEntryStatus) -> list[DLQEntry]:
        return [e for e in self._entries.values() if e.status == status]

    def list_by_error_code(self, code: str) -> list[DLQEntry]:
        return [e for e in self._entries.values() if e.error.code == code]

    def list_by_task_type(self, task_type: str) -> list[DLQEntry]:
        return [e for e in self._entries.values() if e.task.type == task_type]

    def list_expired(self) -> list[DLQEntry]:
        """Entries whose retention window has passed."""
        now = self._clock()
        return [e for e in self._entries.values() if e.expires_at < now]

    @property
    def size(self) -> int:
        return len(self._entries)

    @property
    def is_empty(self) -> bool:
        return not self._entries

    async def remove(self, entry_id: str) -> bool:
        """Drop an entry from memory and storage.

        Returns:
            False if the entry was not tracked in memory.
        """
        entry = self._entries.pop(entry_id, None)
        if entry is None:
            return False
        await self._delete(entry_id)
        _logger.debug("dlq.entry_removed", entry_id=entry_id, status=entry.status.value)
        return True

    async def clear(self) -> int:
        """Drop every entry from memory and every record from storage.

        Returns:
            Number of in-memory entries dropped.
        """
        count = len(self._entries)
        self._entries.clear()

        if self._storage is not None:
            try:
                await self._storage.purge_dead_letter_queue()
            except Exception as e:
                self._storage_failed("purge", None, e)

        _logger.info("dlq.cleared", count=count)
        return count

    # ─── Retry path ───────────────────────────────────────────────────

    def get_retryable_entries(self) -> list[DLQEntry]:
        """Entries due for a retry now.

        An entry qualifies when it is pending, not a poison pill, still under
        ``max_retries`` and its ``next_retry_at`` has passed (or is unset).
        """
        return self._scheduler.select_retryable(self._entries.values())

    def calculate_retry_delay(self, retry_count: int) -> float:
        """Backoff in ms after ``retry_count`` retries, capped at ``max_retry_delay_ms``."""
        return self._scheduler.calculate_retry_delay(retry_count)

    async def process_retries(self) -> None:
        """Run one retry pass over the currently due entries.

        Single-flight: if a pass is already running this returns immediately.
        Entries are retried sequentially; an entry removed or changed by
        another caller since the pass started is skipped. A failure while
        handling one entry is logged and never stops the pass.
        """
        if self._pass_lock.locked():
            _logger.debug("dlq.pass_skipped_in_flight")
            return

        async with self._pass_lock:
            if self._executor is None:
                _logger.warning("dlq.no_executor", pending=len(self._entries))
                return

            entries = self.get_retryable_entries()
            if not entries:
                return

            ctx = RetryContext()
            with with_context(ctx):
                _logger.info("dlq.pass_started", count=len(entries))
                retried = 0
                for entry in entries:
                    if not self._still_due(entry):
                        _logger.debug("dlq.entry_changed_during_pass", entry_id=entry.id)
                        continue

                    entry_ctx = ctx.for_entry(entry.id, entry.task.id, entry.retry_count + 1)
                    with with_context(entry_ctx):
                        try:
                            await self.retry_entry(entry)
                            retried += 1
                        except Exception:
                            _logger.exception("dlq.retry_pass_entry_failed")

                _logger.info("dlq.pass_completed", retried=retried, remaining=len(self._entries))

    def _still_due(self, entry: DLQEntry) -> bool:
        if self._entries.get(entry.id) is not entry:
            return False
        return self._scheduler.is_eligible(entry, self._clock())

    async def retry_entry(self, entry: DLQEntry) -> TaskResult | None:
        """Re-run one entry's task through the executor.

        On success the entry is recovered and removed. On a failed result or
        an executor exception the failure is recorded against the entry.

        Returns:
            The executor's result, or None if the executor raised, no
            executor is configured, or retries were already exhausted.
        """
        if entry.retry_count >= self._config.max_retries:
            await self.mark_as_permanent_failure(entry)
            return None

        if self._executor is None:
            _logger.error("dlq.no_executor", entry_id=entry.id)
            return None

        attempt = entry.retry_count + 1
        entry.status = DLQEntryStatus.RETRYING
        await self._emit(
            DLQEvent(
                type=DLQEventType.RETRY_STARTED,
                entry_id=entry.id,
                task_id=entry.task.id,
                data={"attempt_number": attempt, "max_retries": self._config.max_retries},
            )
        )
        _logger.info(
            "dlq.retry_started",
            entry_id=entry.id,
            task_id=entry.task.id,
            attempt=attempt,
            max_retries=self._config.max_retries,
        )

        try:
            result = await self._executor(entry.task)
        except Exception as e:
            await self.record_failed_attempt(entry, TaskError(code="RETRY_ERROR", message=str(e)))
            return None

        if result.success:
            entry.status = DLQEntryStatus.RECOVERED
            await self._emit(
                DLQEvent(
                    type=DLQEventType.RETRY_SUCCEEDED,
                    entry_id=entry.id,
                    task_id=entry.task.id,
                    data={"attempt_number": attempt},
                )
            )
            _logger.info(
                "dlq.retry_succeeded",
                entry_id=entry.id,
                task_id=entry.task.id,
                attempt=attempt,
            )
            await self.remove(entry.id)
            return result

        error = (
            result.errors[0]
            if result.errors
            else TaskError(code="UNKNOWN", message=result.output or "Unknown error")
        )
        await self.record_failed_attempt(entry, error)
        return result

    async def record_failed_attempt(self, entry: DLQEntry, error: TaskError) -> None:
        """Record one more failure and decide what happens next.

        Reschedules with backoff, then runs poison-pill detection. Once
        ``max_retries`` is reached the entry becomes a permanent failure,
        even if it was just quarantined.
        """
        now = self._clock()

        entry.retry_count += 1
        entry.attempts = entry.retry_count + 1
        entry.last_attempt_at = now
        entry.last_failed_at = now
        entry.error = error
        entry.error_history.append(
            ErrorHistoryEntry(
                message=error.message,
                code=error.code,
                timestamp=now,
                attempt_number=entry.retry_count + 1,
            )
        )
        entry.next_retry_at = self._scheduler.next_retry_at(now, entry.retry_count)
        entry.status = DLQEntryStatus.PENDING_RETRY

        if self._classifier.detect(entry):
            await self._emit(
                DLQEvent(
                    type=DLQEventType.POISON_PILL_DETECTED,
                    entry_id=entry.id,
                    task_id=entry.task.id,
                    data={"error_pattern": entry.recent_error_messages},
                )
            )
            _logger.warning(
                "dlq.poison_pill_detected",
                entry_id=entry.id,
                task_id=entry.task.id,
                retry_count=entry.retry_count,
                similarity=entry.error_similarity_score,
                action=self._config.poison_pill.action,
            )

        if entry.retry_count >= self._config.max_retries:
            await self._finalize_permanent_failure(entry)
        else:
            await self._emit(
                DLQEvent(
                    type=DLQEventType.RETRY_FAILED,
                    entry_id=entry.id,
                    task_id=entry.task.id,
                    data={
                        "attempt_number": entry.retry_count,
                        "next_retry_at": (
                            entry.next_retry_at.isoformat() if entry.next_retry_at else None
                        ),
                        "error": error.message,
                    },
                )
            )
            _logger.info(
                "dlq.retry_failed",
                entry_id=entry.id,
                task_id=entry.task.id,
                retry_count=entry.retry_count,
                error_code=error.code,
                next_retry_at=entry.next_retry_at.isoformat() if entry.next_retry_at else None,
            )

        await self._persist(entry)

    async def mark_as_permanent_failure(self, entry: DLQEntry) -> None:
        """Finalize an entry as permanently failed and persist it."""
        await self._finalize_permanent_failure(entry)
        await self._persist(entry)

    async def _finalize_permanent_failure(self, entry: DLQEntry) -> None:
        entry.status = DLQEntryStatus.PERMANENT_FAILURE
        entry.next_retry_at = None

        await self._emit(
            DLQEvent(
                type=DLQEventType.PERMANENT_FAILURE,
                entry_id=entry.id,
                task_id=entry.task.id,
                data={
                    "retry_count": entry.retry_count,
                    "total_errors": len(entry.error_history),
                },
            )
        )
        _logger.error(
            "dlq.permanent_failure",
            entry_id=entry.id,
            task_id=entry.task.id,
            retry_count=entry.retry_count,
            error_code=entry.error.code,
        )

    # ─── Poison pills ─────────────────────────────────────────────────

    def detect_poison_pill(self, entry: DLQEntry) -> bool:
        """Classify an entry from its recent errors, applying the configured action."""
        return self._classifier.detect(entry)

    def is_poison_pill(self, entry_id: str) -> bool:
        entry = self._entries.get(entry_id)
        return entry.is_poison_pill if entry else False

    def get_error_similarity_score(self, entry_id: str) -> float | None:
        entry = self._entries.get(entry_id)
        return entry.error_similarity_score if entry else None

    def get_quarantined_entries(self) -> list[DLQEntry]:
        return self.list_by_status(DLQEntryStatus.QUARANTINED)

    async def release_from_quarantine(self, entry_id: str) -> bool:
        """Put a quarantined entry back into the retry rotation.

        The entry is rescheduled ``retry_delay_ms`` from now with its retry
        count untouched.

        Returns:
            False if the entry is unknown or not quarantined.
        """
        entry = self._entries.get(entry_id)
        if entry is None:
            return False

        if not self._classifier.release(entry, self._config.retry_delay_ms):
            return False

        await self._persist(entry)
        _logger.info(
            "dlq.released_from_quarantine",
            entry_id=entry_id,
            task_id=entry.task.id,
            next_retry_at=entry.next_retry_at.isoformat() if entry.next_retry_at else None,
        )
        return True

    # ─── Stats ────────────────────────────────────────────────────────

    def get_stats(self) -> DLQStats:
        """Aggregate counts over the in-memory entries."""
        entries = list(self._entries.values())
        poison_pills = [e for e in entries if e.is_poison_pill]

        def count(status: DLQEntryStatus) -> int:
            return sum(1 for e in entries if e.status == status)

        stats = DLQStats(
            total_entries=len(entries),
            pending_retry=count(DLQEntryStatus.PENDING_RETRY),
            retrying=count(DLQEntryStatus.RETRYING),
            permanent_failures=count(DLQEntryStatus.PERMANENT_FAILURE),
            recovered=count(DLQEntryStatus.RECOVERED),
            poison_pills=len(poison_pills),
            quarantined=count(DLQEntryStatus.QUARANTINED),
            skipped=count(DLQEntryStatus.SKIPPED),
        )

        processed = stats.recovered + stats.permanent_failures
        if processed > 0:
            stats.recovery_rate = stats.recovered / processed * 100

        scores = [
            e.error_similarity_score for e in poison_pills if e.error_similarity_score is not None
        ]
        if scores:
            stats.average_poison_pill_similarity = sum(scores) / len(scores)

        return stats

    # ─── Persistence ──────────────────────────────────────────────────

    async def load_from_storage(self) -> int:
        """Hydrate memory from the storage adapter.

        Entries already tracked in memory are kept as they are. Rehydrated
        entries carry a single reconstructed error history record, so
        poison-pill detection starts over for them.

        Returns:
            Number of entries loaded. Storage errors are logged and yield 0.
        """
        if self._storage is None:
            return 0

        try:
            records = await self._storage.list_dead_letter_queue()
        except Exception as e:
            _logger.error("dlq.storage_load_failed", error=str(e), error_type=type(e).__name__)
            return 0

        loaded = 0
        for record in records:
            if record.id in self._entries:
                continue
            self._entries[record.id] = self._hydrate(record)
            loaded += 1

        _logger.info("dlq.loaded_from_storage", count=loaded, records=len(records))
        return loaded

    async def load_entry(self, entry_id: str) -> DLQEntry | None:
        """Return a tracked entry, hydrating it from storage if it is not in memory.

        Returns:
            The entry, or None if neither memory nor storage has it. Storage
            errors are logged and yield None.
        """
        entry = self._entries.get(entry_id)
        if entry is not None or self._storage is None:
            return entry

        try:
            record = await self._storage.load_dead_letter_entry(entry_id)
        except Exception as e:
            _logger.error(
                "dlq.storage_load_failed",
                entry_id=entry_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        if record is None:
            return None

        entry = self._hydrate(record)
        self._entries[entry.id] = entry
        _logger.debug("dlq.entry_loaded", entry_id=entry.id, status=entry.status.value)
        return entry

    def _hydrate(self, record: PersistedDeadLetterEntry) -> DLQEntry:
        """Rebuild a live entry from its storage record."""
        data = record.model_dump()
        retry_count = max(record.attempts - 1, 0)

        status = record.status
        if status == DLQEntryStatus.RETRYING:
            # The attempt in flight when the process stopped never reported back
            status = DLQEntryStatus.PENDING_RETRY

        if status in _TERMINAL_STATUSES:
            next_retry_at = None
        else:
            next_retry_at = record.last_failed_at + ms_to_timedelta(self._config.retry_delay_ms)

        data.update(
            status=status,
            next_retry_at=next_retry_at,
            retry_count=retry_count,
            last_attempt_at=record.last_failed_at,
            error_history=[
                ErrorHistoryEntry(
                    message=record.error.message,
                    code=record.error.code,
                    timestamp=record.last_failed_at,
                    attempt_number=record.attempts,
                )
            ],
        )
        return DLQEntry.model_validate(data)

    async def purge_expired(self) -> int:
        """Remove entries whose ``expires_at`` has passed.

        Never runs on its own; the owning process schedules it.

        Returns:
            Number of entries purged.
        """
        now = self._clock()
        expired = [entry_id for entry_id, e in self._entries.items() if e.expires_at < now]

        for entry_id in expired:
            del self._entries[entry_id]
            await self._delete(entry_id)

        if expired:
            _logger.info("dlq.purged_expired", count=len(expired))
        return len(expired)

    async def _persist(self, entry: DLQEntry) -> None:
        if self._storage is None:
            return
        try:
            await self._storage.add_to_dead_letter_queue(entry)
        except Exception as e:
            self._storage_failed("write", entry.id, e)

    async def _delete(self, entry_id: str) -> None:
        if self._storage is None:
            return
        try:
            await self._storage.remove_from_dead_letter_queue(entry_id)
        except Exception as e:
            self._storage_failed("delete", entry_id, e)

    def _storage_failed(self, operation: str, entry_id: str | None, error: Exception) -> None:
        _logger.error(
            "dlq.storage_write_failed",
            operation=operation,
            entry_id=entry_id,
            error=str(error),
            error_type=type(error).__name__,
        )
        if self._config.persistence_failures_fatal:
            if isinstance(error, StorageError):
                raise error
            raise StorageError(f"DLQ storage {operation} failed: {error}") from error

    # ─── Events ───────────────────────────────────────────────────────

    async def _emit(self, event: DLQEvent) -> None:
        if self._on_event is None:
            return
        try:
            result = self._on_event(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            _logger.error(
                "dlq.event_callback_error",
                event_type=event.type.value,
                entry_id=event.entry_id,
                error=str(e),
            )


__all__ = ["DeadLetterQueue", "EventCallback", "TaskExecutor"]
