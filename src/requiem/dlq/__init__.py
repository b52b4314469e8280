"""Dead-letter queue: retry scheduling, poison-pill detection and the engine."""

from requiem.dlq.engine import DeadLetterQueue, EventCallback, TaskExecutor
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
from requiem.dlq.registry import (
    get_global_dlq,
    initialize_global_dlq,
    is_global_dlq_initialized,
    shutdown_global_dlq,
)
from requiem.dlq.scheduler import RetryScheduler
from requiem.dlq.similarity import (
    calculate_error_similarity,
    levenshtein_distance,
    string_similarity,
)

__all__ = [
    "DLQEntry",
    "DLQEntryStatus",
    "DLQEvent",
    "DLQEventType",
    "DLQStats",
    "DeadLetterQueue",
    "ErrorHistoryEntry",
    "EventCallback",
    "PersistedDeadLetterEntry",
    "PoisonPillClassifier",
    "RetryScheduler",
    "Task",
    "TaskError",
    "TaskExecutor",
    "TaskResult",
    "calculate_error_similarity",
    "get_global_dlq",
    "initialize_global_dlq",
    "is_global_dlq_initialized",
    "levenshtein_distance",
    "shutdown_global_dlq",
    "string_similarity",
]
