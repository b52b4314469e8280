"""Time utilities for Requiem.

All schedule arithmetic in the DLQ is done on timezone-aware UTC datetimes,
with durations configured in milliseconds.
"""

from datetime import UTC, datetime, timedelta


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime.

    Returns:
        datetime: Current UTC time with tzinfo=UTC
    """
    return datetime.now(UTC)


def ms_to_timedelta(milliseconds: float) -> timedelta:
    """Convert a millisecond duration from configuration into a timedelta."""
    return timedelta(milliseconds=milliseconds)
