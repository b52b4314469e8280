"""Shared test helpers for Requiem tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from requiem.dlq.models import PersistedDeadLetterEntry, Task, TaskError, TaskResult

EPOCH = datetime(2025, 1, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock, injected wherever the code asks for utc_now."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: float) -> datetime:
        self.now = self.now + timedelta(milliseconds=ms)
        return self.now


def make_task(task_id: str = "task-1", task_type: str = "generic", **kwargs: Any) -> Task:
    return Task(id=task_id, type=task_type, prompt=f"run {task_id}", **kwargs)


def make_error(message: str = "Connection timed out", code: str = "TIMEOUT") -> TaskError:
    return TaskError(code=code, message=message)


def failed_result(message: str = "Connection timed out", code: str = "TIMEOUT") -> TaskResult:
    return TaskResult(success=False, output=message, errors=[make_error(message, code)])


def ok_result(output: str = "done") -> TaskResult:
    return TaskResult(success=True, output=output)


def make_record(
    entry_id: str = "dlq-task-1",
    *,
    task_id: str = "task-1",
    first_failed_at: datetime = EPOCH,
    **kwargs: Any,
) -> PersistedDeadLetterEntry:
    """Persisted record as a storage adapter would hold it."""
    fields: dict[str, Any] = {
        "task": make_task(task_id),
        "error": make_error(),
        "attempts": 1,
        "last_failed_at": first_failed_at,
        "expires_at": first_failed_at + timedelta(days=1),
    }
    fields.update(kwargs)
    return PersistedDeadLetterEntry(id=entry_id, first_failed_at=first_failed_at, **fields)
