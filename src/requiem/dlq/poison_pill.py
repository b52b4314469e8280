"""Poison-pill classification for DLQ entries.

An entry is a poison pill when its most recent failures are semantically the
same: the average pairwise similarity of the last ``min_failures`` error
messages reaches ``error_similarity_threshold``. Retrying such an entry is
futile, so the configured action takes it out of the retry rotation.

This is a heuristic. Differently worded transient errors can fall below the
threshold, and identical root causes with differently formatted messages can
be missed.

The classifier only mutates the entry; persistence and event emission are
the engine's responsibility.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from requiem.core.config import PoisonPillConfig
from requiem.core.logging import get_logger
from requiem.dlq.models import DLQEntry, DLQEntryStatus
from requiem.dlq.similarity import calculate_error_similarity
from requiem.utils.time import ms_to_timedelta, utc_now

_logger = get_logger("dlq.poison_pill")


class PoisonPillClassifier:
    """Detects poison pills and applies the configured action.

    Actions:
    - quarantine: status QUARANTINED, stamps quarantined_at, no further retries
      until released.
    - skip: status SKIPPED, no further retries.
    - alert: status left unchanged. The entry is still flagged, and flagged
      entries are never retry-eligible, so retries stop all the same.
    """

    def __init__(
        self,
        config: PoisonPillConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._clock = clock

    @property
    def config(self) -> PoisonPillConfig:
        return self._config

    @config.setter
    def config(self, value: PoisonPillConfig) -> None:
        self._config = value

    def detect(self, entry: DLQEntry) -> bool:
        """Classify an entry from its recent error history.

        Stores the computed similarity on the entry and, when the threshold
        is reached, flags it and applies the configured action.

        Returns:
            True if the entry was classified as a poison pill.
        """
        config = self._config
        if not config.enabled:
            return False

        if len(entry.error_history) < config.min_failures:
            return False

        recent = entry.error_history[-config.min_failures:]
        similarity = calculate_error_similarity([record.message for record in recent])
        entry.error_similarity_score = similarity

        if similarity >= config.error_similarity_threshold:
            self.handle(entry, similarity)
            return True

        _logger.debug(
            "poison_pill.below_threshold",
            entry_id=entry.id,
            similarity=round(similarity, 4),
            threshold=config.error_similarity_threshold,
        )
        return False

    def handle(self, entry: DLQEntry, similarity: float) -> None:
        """Flag the entry and apply the configured action."""
        action = self._config.action
        similarity_pct = f"{similarity * 100:.1f}%"

        entry.is_poison_pill = True
        entry.poison_pill_reason = f"Detected with {similarity_pct} error similarity"

        if action == "quarantine":
            entry.status = DLQEntryStatus.QUARANTINED
            entry.quarantined_at = self._clock()
            entry.next_retry_at = None
            _logger.error(
                "poison_pill.quarantined",
                entry_id=entry.id,
                task_id=entry.task.id,
                similarity=similarity_pct,
                retry_count=entry.retry_count,
            )
        elif action == "skip":
            entry.status = DLQEntryStatus.SKIPPED
            entry.next_retry_at = None
            _logger.warning(
                "poison_pill.skipped",
                entry_id=entry.id,
                task_id=entry.task.id,
                similarity=similarity_pct,
            )
        else:
            _logger.error(
                "poison_pill.alert",
                entry_id=entry.id,
                task_id=entry.task.id,
                similarity=similarity_pct,
                retry_count=entry.retry_count,
                error_pattern=entry.recent_error_messages,
            )

    def release(self, entry: DLQEntry, retry_delay_ms: float) -> bool:
        """Return a quarantined entry to the retry rotation.

        Returns:
            False (and leaves the entry untouched) unless it is quarantined.
        """
        if entry.status != DLQEntryStatus.QUARANTINED:
            return False

        entry.status = DLQEntryStatus.PENDING_RETRY
        entry.is_poison_pill = False
        entry.quarantined_at = None
        entry.next_retry_at = self._clock() + ms_to_timedelta(retry_delay_ms)
        return True


__all__ = ["PoisonPillClassifier"]
