"""Process-wide shared DLQ instance.

Prefer passing a DeadLetterQueue explicitly. When several components need
the same queue without a common owner, initialize it once at startup and
shut it down once at exit:

    dlq = initialize_global_dlq(storage, config, executor=run_task)
    await dlq.start()
    ...
    await shutdown_global_dlq()

``get_global_dlq()`` never creates an instance on its own.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from requiem.core.config import DLQConfig
from requiem.core.errors import DLQAlreadyInitializedError, DLQNotInitializedError
from requiem.core.logging import get_logger
from requiem.dlq.engine import DeadLetterQueue

if TYPE_CHECKING:
    from requiem.state.base import DLQStorageAdapter

_logger = get_logger("dlq.registry")

_global_dlq: DeadLetterQueue | None = None


def initialize_global_dlq(
    storage: DLQStorageAdapter | None = None,
    config: DLQConfig | None = None,
    **kwargs: Any,
) -> DeadLetterQueue:
    """Construct the shared queue.

    Keyword arguments are passed through to DeadLetterQueue.

    Raises:
        DLQAlreadyInitializedError: If a shared queue already exists.
    """
    global _global_dlq
    if _global_dlq is not None:
        raise DLQAlreadyInitializedError(
            "Global DLQ is already initialized; call shutdown_global_dlq() first"
        )
    _global_dlq = DeadLetterQueue(storage, config, **kwargs)
    _logger.info("registry.initialized", has_storage=storage is not None)
    return _global_dlq


def get_global_dlq() -> DeadLetterQueue:
    """Return the shared queue.

    Raises:
        DLQNotInitializedError: If initialize_global_dlq() has not been called.
    """
    if _global_dlq is None:
        raise DLQNotInitializedError(
            "Global DLQ is not initialized; call initialize_global_dlq() at startup"
        )
    return _global_dlq


def is_global_dlq_initialized() -> bool:
    return _global_dlq is not None


async def shutdown_global_dlq() -> None:
    """Shut down the shared queue and clear the slot. No-op if not initialized."""
    global _global_dlq
    dlq = _global_dlq
    if dlq is None:
        return
    _global_dlq = None
    await dlq.shutdown()
    _logger.info("registry.shutdown")


__all__ = [
    "get_global_dlq",
    "initialize_global_dlq",
    "is_global_dlq_initialized",
    "shutdown_global_dlq",
]
