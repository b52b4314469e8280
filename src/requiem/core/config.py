"""Configuration models for Requiem.

Defines Pydantic v2 models for the dead-letter queue retry policy, poison-pill
detection, storage backend selection, and logging. All durations are in
milliseconds to match the retry schedule arithmetic.

Example YAML:
    dlq:
      max_retries: 5
      retry_delay_ms: 2000
      poison_pill:
        action: skip
    storage:
      backend: sqlite
      path: .requiem/dlq.db
    logging:
      level: DEBUG
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, model_validator

DEFAULT_STORAGE_DIR = Path(".requiem")


class PoisonPillConfig(BaseModel):
    """Configuration for poison-pill detection.

    A poison pill is an entry whose most recent failures have near-identical
    error messages, making further blind retries futile.
    """

    enabled: bool = Field(
        default=True,
        description="Enable similarity-based poison-pill detection",
    )
    min_failures: int = Field(
        default=3,
        ge=2,
        description="Number of recent errors compared; detection is skipped until "
        "the error history holds at least this many records",
    )
    error_similarity_threshold: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Average pairwise similarity (0-1, 1 = identical) at or above "
        "which an entry is flagged",
    )
    action: Literal["quarantine", "alert", "skip"] = Field(
        default="quarantine",
        description="quarantine: hold for manual release; skip: drop from retries; "
        "alert: log loudly and leave status unchanged",
    )


class DLQConfig(BaseModel):
    """Retry policy for the dead-letter queue."""

    max_retries: int = Field(
        default=3,
        ge=0,
        description="Maximum retry attempts before an entry is a permanent failure",
    )
    retry_delay_ms: float = Field(
        default=5000,
        gt=0,
        description="Initial delay between retries (ms)",
    )
    backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="Exponential backoff multiplier",
    )
    max_retry_delay_ms: float = Field(
        default=60000,
        gt=0,
        description="Upper bound on the delay between retries (ms)",
    )
    auto_retry_enabled: bool = Field(
        default=True,
        description="Run retry passes on a periodic background timer",
    )
    auto_retry_interval_ms: float = Field(
        default=30000,
        gt=0,
        description="Interval between background retry passes (ms)",
    )
    permanent_failure_retention_ms: float = Field(
        default=24 * 60 * 60 * 1000,
        gt=0,
        description="How long an entry is retained before purge_expired() removes it (ms)",
    )
    persistence_failures_fatal: bool = Field(
        default=False,
        description="Raise StorageError when the storage adapter fails instead of "
        "logging and continuing with the in-memory operation",
    )
    poison_pill: PoisonPillConfig = Field(default_factory=PoisonPillConfig)

    @model_validator(mode="after")
    def _validate_delay_range(self) -> DLQConfig:
        if self.retry_delay_ms > self.max_retry_delay_ms:
            raise ValueError(
                f"retry_delay_ms ({self.retry_delay_ms}) must not exceed "
                f"max_retry_delay_ms ({self.max_retry_delay_ms})"
            )
        return self

    def merged(self, **overrides: Any) -> DLQConfig:
        """Return a validated copy with overrides applied.

        A ``poison_pill`` override may be partial: it is merged field by field
        into the current poison-pill settings instead of replacing them.
        """
        data = self.model_dump()
        poison_pill = overrides.pop("poison_pill", None)
        if isinstance(poison_pill, PoisonPillConfig):
            poison_pill = poison_pill.model_dump()
        if poison_pill:
            data["poison_pill"] = {**data["poison_pill"], **poison_pill}
        data.update(overrides)
        return DLQConfig.model_validate(data)


class StorageConfig(BaseModel):
    """Storage backend selection for persisted DLQ entries."""

    backend: Literal["memory", "json", "sqlite"] = Field(
        default="sqlite",
        description="memory: non-persistent; json: one file per entry; sqlite: single database",
    )
    path: Path | None = Field(
        default=None,
        description="Database file (sqlite) or directory (json). Defaults under .requiem/",
    )

    def get_path(self) -> Path:
        """Get the resolved storage path for file-backed backends."""
        if self.path is not None:
            return self.path
        if self.backend == "json":
            return DEFAULT_STORAGE_DIR / "dlq"
        return DEFAULT_STORAGE_DIR / "dlq.db"


class LogConfig(BaseModel):
    """Configuration for structured logging."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Minimum log level to capture",
    )
    format: Literal["json", "console", "both"] = Field(
        default="console",
        description="Output format: json for structured, console for human-readable, "
        "both for console to stderr and JSON to file",
    )
    file_path: Path | None = Field(
        default=None,
        description="Path for log file output (required if format='both')",
    )
    max_file_size_mb: int = Field(default=50, gt=0, le=1000)
    backup_count: int = Field(default=5, ge=0, le=100)
    include_timestamps: bool = Field(default=True)
    include_context: bool = Field(
        default=True,
        description="Include retry context (pass_id, entry_id, task_id) in log entries",
    )

    @model_validator(mode="after")
    def _check_file_path_required(self) -> LogConfig:
        if self.format == "both" and self.file_path is None:
            raise ValueError(
                f"file_path is required when format='{self.format}'"
            )
        return self


class RequiemConfig(BaseModel):
    """Top-level Requiem configuration file."""

    dlq: DLQConfig = Field(default_factory=DLQConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LogConfig = Field(default_factory=LogConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> RequiemConfig:
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data or {})

    @classmethod
    def from_yaml_string(cls, yaml_str: str) -> RequiemConfig:
        """Load configuration from a YAML string."""
        data = yaml.safe_load(yaml_str)
        return cls.model_validate(data or {})


__all__ = [
    "DLQConfig",
    "LogConfig",
    "PoisonPillConfig",
    "RequiemConfig",
    "StorageConfig",
]
