"""Helpers for asyncio.Task lifecycle.

Provides ``log_task_exception`` for done-callbacks on background tasks, so
an exception escaping a retry pass or timer loop is logged instead of lost.
"""

from __future__ import annotations

import asyncio
from typing import Any


def log_task_exception(
    task: asyncio.Task[Any],
    logger: Any,
    event: str,
) -> BaseException | None:
    """Extract and log an exception from a completed task.

    Args:
        task: The completed task to inspect.
        logger: A RequiemLogger (or anything with ``.error()``).
        event: Structlog-style event name (e.g. ``"scheduler.pass_died"``).

    Returns:
        The exception if one was found, ``None`` if the task completed
        normally or was cancelled.
    """
    if task.cancelled():
        return None
    exc = task.exception()
    if exc is not None:
        logger.error(event, error=str(exc), task_name=task.get_name())
    return exc
