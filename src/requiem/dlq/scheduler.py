"""Retry scheduling for the dead-letter queue.

Computes deterministic exponential backoff, decides which entries are due for
a retry, and drives the periodic background pass.

Backoff has no jitter: identical failure sequences always produce identical
schedules. With a small bounded retry count this is acceptable; if many
entries can fail in the same instant, jitter would avoid synchronized bursts.

Example usage:
    scheduler = RetryScheduler(DLQConfig())
    scheduler.calculate_retry_delay(0)   # 5000.0
    scheduler.calculate_retry_delay(10)  # 60000.0 (capped)

    await scheduler.start(dlq.process_retries)
    ...
    await scheduler.stop()
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime

from requiem.core.config import DLQConfig
from requiem.core.logging import get_logger
from requiem.dlq.models import DLQEntry, DLQEntryStatus
from requiem.utils.tasks import log_task_exception
from requiem.utils.time import ms_to_timedelta, utc_now

_logger = get_logger("dlq.scheduler")

PassCallback = Callable[[], Awaitable[None]]


class RetryScheduler:
    """Backoff computation, retry eligibility, and the background timer.

    The timer fires every ``auto_retry_interval_ms`` and launches the pass
    callback as its own task without waiting for it. The callback is
    expected to be single-flight: a tick that lands while a pass is still
    running is dropped by the callback, not queued here.
    """

    def __init__(
        self,
        config: DLQConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._clock = clock
        self._timer_task: asyncio.Task[None] | None = None
        self._pass_tasks: set[asyncio.Task[None]] = set()
        self._interval_ms = config.auto_retry_interval_ms

    @property
    def config(self) -> DLQConfig:
        return self._config

    @config.setter
    def config(self, value: DLQConfig) -> None:
        self._config = value

    # ─── Backoff ──────────────────────────────────────────────────────

    def calculate_retry_delay(self, retry_count: int) -> float:
        """Delay in ms before the next attempt after ``retry_count`` retries.

        ``min(retry_delay_ms * backoff_multiplier ** retry_count, max_retry_delay_ms)``
        """
        config = self._config
        try:
            delay = config.retry_delay_ms * config.backoff_multiplier**retry_count
        except OverflowError:
            return config.max_retry_delay_ms
        return min(delay, config.max_retry_delay_ms)

    def next_retry_at(self, now: datetime, retry_count: int) -> datetime:
        """Absolute time of the next attempt, counted from ``now``."""
        return now + ms_to_timedelta(self.calculate_retry_delay(retry_count))

    # ─── Eligibility ──────────────────────────────────────────────────

    def is_eligible(self, entry: DLQEntry, now: datetime) -> bool:
        """Whether an entry may be retried at ``now``."""
        if entry.status != DLQEntryStatus.PENDING_RETRY:
            return False
        if entry.is_poison_pill:
            return False
        if entry.retry_count >= self._config.max_retries:
            return False
        if entry.next_retry_at is not None and entry.next_retry_at > now:
            return False
        return True

    def select_retryable(self, entries: Iterable[DLQEntry]) -> list[DLQEntry]:
        """Entries due for a retry now, in the order given."""
        now = self._clock()
        return [entry for entry in entries if self.is_eligible(entry, now)]

    # ─── Background timer ─────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._timer_task is not None

    @property
    def interval_ms(self) -> float:
        """Interval the running timer was started with."""
        return self._interval_ms

    async def start(self, on_tick: PassCallback) -> None:
        """Start the periodic timer. No-op if it is already running."""
        if self._timer_task is not None:
            return
        self._interval_ms = self._config.auto_retry_interval_ms
        self._timer_task = asyncio.create_task(
            self._loop(on_tick, self._interval_ms / 1000), name="dlq-retry-timer"
        )
        self._timer_task.add_done_callback(self._on_timer_done)
        _logger.info("scheduler.started", interval_ms=self._interval_ms)

    async def stop(self) -> None:
        """Stop the timer.

        Passes already launched keep running to completion; an in-flight
        executor call is never interrupted.
        """
        if self._timer_task is None:
            return
        self._timer_task.cancel()
        try:
            await self._timer_task
        except asyncio.CancelledError:
            pass
        self._timer_task = None
        _logger.info("scheduler.stopped", in_flight_passes=len(self._pass_tasks))

    async def _loop(self, on_tick: PassCallback, interval_seconds: float) -> None:
        while True:
            try:
                await asyncio.sleep(interval_seconds)
            except asyncio.CancelledError:
                break
            task = asyncio.create_task(on_tick(), name="dlq-retry-pass")
            self._pass_tasks.add(task)
            task.add_done_callback(self._on_pass_done)

    def _on_pass_done(self, task: asyncio.Task[None]) -> None:
        self._pass_tasks.discard(task)
        log_task_exception(task, _logger, "scheduler.pass_died")

    def _on_timer_done(self, task: asyncio.Task[None]) -> None:
        log_task_exception(task, _logger, "scheduler.timer_died")


__all__ = ["RetryScheduler"]
