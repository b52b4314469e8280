"""Pytest fixtures for Requiem tests."""

import logging
from collections.abc import Generator
from pathlib import Path

import pytest
import structlog

from requiem.cli import helpers as cli_helpers
from requiem.core.config import DLQConfig, PoisonPillConfig
from requiem.dlq.engine import DeadLetterQueue
from requiem.dlq.models import DLQEvent
from requiem.state.memory import InMemoryDLQStorage
from tests.helpers import FakeClock


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset logging and CLI state before and after each test.

    This ensures test isolation for logging configuration.
    """
    cli_helpers.reset_state()
    structlog.reset_defaults()

    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    for handler in original_handlers:
        root_logger.removeHandler(handler)

    yield

    cli_helpers.reset_state()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in original_handlers:
        root_logger.addHandler(handler)


@pytest.fixture
def clock() -> FakeClock:
    """A fake clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def storage() -> InMemoryDLQStorage:
    return InMemoryDLQStorage()


@pytest.fixture
def config() -> DLQConfig:
    """Default retry policy with the background timer off."""
    return DLQConfig(auto_retry_enabled=False)


@pytest.fixture
def no_poison_config() -> DLQConfig:
    """Retry policy with poison-pill detection disabled."""
    return DLQConfig(
        auto_retry_enabled=False,
        poison_pill=PoisonPillConfig(enabled=False),
    )


@pytest.fixture
def events() -> list[DLQEvent]:
    """Collects every event delivered to the observer."""
    return []


@pytest.fixture
def dlq(
    storage: InMemoryDLQStorage,
    config: DLQConfig,
    clock: FakeClock,
    events: list[DLQEvent],
) -> DeadLetterQueue:
    """Queue over in-memory storage with a fake clock and event collector."""
    return DeadLetterQueue(storage, config, on_event=events.append, clock=clock)


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Create a temporary workspace directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace
