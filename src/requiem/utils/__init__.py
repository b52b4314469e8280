"""Shared utilities for Requiem.

Contains cross-cutting utilities used by multiple modules.
"""

from requiem.utils.tasks import log_task_exception
from requiem.utils.time import ms_to_timedelta, utc_now

__all__ = ["log_task_exception", "ms_to_timedelta", "utc_now"]
