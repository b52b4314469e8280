"""Requiem - dead-letter queue with automatic recovery and poison-pill detection."""

__version__ = "0.1.0"
