"""Data models for the dead-letter queue.

Defines the task payload handed to the executor, the error and result shapes
the executor reports, and the DLQ entry with its retry history. The entry
models are Pydantic v2 so they serialize directly into storage backends.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from requiem.utils.time import utc_now


class DLQEntryStatus(str, Enum):
    """Lifecycle status of a DLQ entry.

    State transitions:
    - PENDING_RETRY -> RETRYING: picked up by a retry pass
    - RETRYING -> RECOVERED: executor succeeded (entry is then removed)
    - RETRYING -> PENDING_RETRY: executor failed, rescheduled with backoff
    - RETRYING -> PERMANENT_FAILURE: retries exhausted
    - PENDING_RETRY -> QUARANTINED / SKIPPED: poison pill detected
    - QUARANTINED -> PENDING_RETRY: explicit release
    """

    PENDING_RETRY = "pending_retry"
    RETRYING = "retrying"
    RECOVERED = "recovered"
    PERMANENT_FAILURE = "permanent_failure"
    QUARANTINED = "quarantined"
    SKIPPED = "skipped"


class Task(BaseModel):
    """A unit of asynchronous work. Opaque to the queue beyond its id and type."""

    id: str
    type: str = "generic"
    prompt: str = ""
    context: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TaskError(BaseModel):
    """Error reported for a failed task execution."""

    code: str
    message: str
    recoverable: bool = True
    suggestion: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)


class TaskResult(BaseModel):
    """Result returned by the task executor."""

    success: bool
    output: str = ""
    errors: list[TaskError] = Field(default_factory=list)
    data: dict[str, Any] | None = None


class ErrorHistoryEntry(BaseModel):
    """One failure in an entry's error history. History is append-only."""

    message: str
    code: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)
    attempt_number: int


class PersistedDeadLetterEntry(BaseModel):
    """The record a storage adapter keeps for an entry.

    Carries the failure identity plus a snapshot of lifecycle fields so a
    restart can restore quarantine and poison-pill decisions. The full error
    history is not persisted.
    """

    id: str
    task: Task
    error: TaskError
    attempts: int = Field(
        ge=1,
        description="Executions observed so far: the initial failure plus each retry",
    )
    first_failed_at: datetime
    last_failed_at: datetime
    expires_at: datetime

    status: DLQEntryStatus = DLQEntryStatus.PENDING_RETRY
    next_retry_at: datetime | None = None
    is_poison_pill: bool = False
    error_similarity_score: float | None = None
    poison_pill_reason: str | None = None
    quarantined_at: datetime | None = None


class DLQEntry(PersistedDeadLetterEntry):
    """A tracked DLQ entry with retry state and full error history."""

    retry_count: int = Field(default=0, ge=0)
    last_attempt_at: datetime
    error_history: list[ErrorHistoryEntry] = Field(default_factory=list)

    def to_persisted(self) -> PersistedDeadLetterEntry:
        """Snapshot this entry into its storage record."""
        data = self.model_dump(include=set(PersistedDeadLetterEntry.model_fields))
        data["attempts"] = self.retry_count + 1
        return PersistedDeadLetterEntry.model_validate(data)

    @property
    def recent_error_messages(self) -> list[str]:
        """Messages of the last three recorded failures."""
        return [record.message for record in self.error_history[-3:]]


class DLQEventType(str, Enum):
    """Types of events emitted by the dead-letter queue."""

    RETRY_STARTED = "retry_started"
    RETRY_SUCCEEDED = "retry_succeeded"
    RETRY_FAILED = "retry_failed"
    PERMANENT_FAILURE = "permanent_failure"
    POISON_PILL_DETECTED = "poison_pill_detected"


@dataclass
class DLQEvent:
    """Event delivered to the DLQ observer callback."""

    type: DLQEventType
    entry_id: str
    task_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "entry_id": self.entry_id,
            "task_id": self.task_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class DLQStats:
    """Aggregate counts over the entries currently held in memory."""

    total_entries: int = 0
    pending_retry: int = 0
    retrying: int = 0
    permanent_failures: int = 0
    recovered: int = 0
    poison_pills: int = 0
    quarantined: int = 0
    skipped: int = 0

    recovery_rate: float = 0.0
    """recovered / (recovered + permanent_failures) * 100, 0 when both are 0."""

    average_poison_pill_similarity: float = 0.0
    """Mean similarity score over poison-pill entries, 0 when there are none."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_entries": self.total_entries,
            "pending_retry": self.pending_retry,
            "retrying": self.retrying,
            "permanent_failures": self.permanent_failures,
            "recovered": self.recovered,
            "poison_pills": self.poison_pills,
            "quarantined": self.quarantined,
            "skipped": self.skipped,
            "recovery_rate": round(self.recovery_rate, 2),
            "average_poison_pill_similarity": round(self.average_poison_pill_similarity, 4),
        }


__all__ = [
    "DLQEntry",
    "DLQEntryStatus",
    "DLQEvent",
    "DLQEventType",
    "DLQStats",
    "ErrorHistoryEntry",
    "PersistedDeadLetterEntry",
    "Task",
    "TaskError",
    "TaskResult",
]
