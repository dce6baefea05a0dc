# src/config/settings.py - v1
"""Typed configuration loaded from .env via pydantic-settings.

Single source of truth for backends, planner thresholds, worker and merge
tuning, and logging. Cross-field rules raise ConfigurationError.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_PART_SIZE_MB = 5
MAX_PART_SIZE_MB = 5 * 1024


class ConfigurationError(Exception):
    """Raised when configuration is internally inconsistent."""


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # === Object store ===
    object_store: Literal["memory", "s3"] = "memory"
    s3_bucket: str = ""
    s3_region: str = ""
    s3_endpoint_url: str = ""
    s3_max_pool_connections: int = 50
    storage_root: str = "galleries"

    # === Generation state store ===
    state_store: Literal["memory", "redis"] = "memory"
    redis_url: str = ""
    redis_key_prefix: str = "chunkzip:order"

    # === Orchestrator ===
    orchestrator: Literal["local", "stepfunctions", "none"] = "local"
    state_machine_arn: str = ""
    state_machine_marker: str = "ZipChunkedStateMachine"
    orchestrator_max_concurrency: int = 20
    merge_attempts: int = 2

    # === Planner ===
    chunk_threshold: int = 100
    max_workers: int = 20
    single_path_inline: bool = True

    # === Chunk worker ===
    copy_concurrency: int = 16
    chunk_missing_tolerance: float = 0.10
    transient_max_retries: int = 3
    transient_base_delay_s: float = 1.0
    transient_max_delay_s: float = 30.0

    # === Merge assembler ===
    part_size_mb: int = 15
    max_parts: int = 10_000
    merge_read_concurrency: int = 12
    part_upload_concurrency: int = 4
    part_queue_depth: int = 4
    merge_failure_tolerance: float = 0.05
    object_read_timeout_s: float = 120.0
    read_chunk_size_kb: int = 1024

    # === Progress ===
    progress_every_files: int = 50
    progress_min_interval_s: float = 5.0

    # === Idempotency ===
    hash_head_concurrency: int = 10

    # === Sweeper ===
    archive_retention_hours: float = 2.0

    # === Metrics ===
    metrics_file: Path | None = None

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Path | None = None
    log_rotation: str = "10MB"
    log_retention: int = 30

    # --- Validators ---

    @field_validator(
        "copy_concurrency",
        "merge_read_concurrency",
        "part_upload_concurrency",
        "part_queue_depth",
        "hash_head_concurrency",
        "orchestrator_max_concurrency",
        "max_workers",
        "merge_attempts",
        "max_parts",
        "read_chunk_size_kb",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("chunk_missing_tolerance", "merge_failure_tolerance")
    @classmethod
    def validate_tolerance(cls, v: float) -> float:
        """Tolerances are ratios in [0, 1)."""
        if not 0.0 <= v < 1.0:
            raise ValueError("tolerance must be within [0, 1)")
        return v

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Validate cross-field consistency rules."""
        errors: list[str] = []

        if not MIN_PART_SIZE_MB <= self.part_size_mb <= MAX_PART_SIZE_MB:
            errors.append(
                f"PART_SIZE_MB must be within {MIN_PART_SIZE_MB}..{MAX_PART_SIZE_MB}"
            )
        if self.object_store == "s3" and not self.s3_bucket:
            errors.append("OBJECT_STORE=s3 requires S3_BUCKET")
        if self.state_store == "redis" and not self.redis_url:
            errors.append("STATE_STORE=redis requires REDIS_URL")
        if self.orchestrator == "stepfunctions" and not self.state_machine_arn:
            errors.append("ORCHESTRATOR=stepfunctions requires STATE_MACHINE_ARN")
        if self.chunk_threshold < 0:
            errors.append("CHUNK_THRESHOLD must be >= 0")
        if not self.storage_root.strip("/"):
            errors.append("STORAGE_ROOT must not be empty")

        if errors:
            raise ConfigurationError("; ".join(errors))

        return self

    # --- Helpers ---

    @property
    def part_size_bytes(self) -> int:
        return self.part_size_mb * 1024 * 1024

    @property
    def read_chunk_size(self) -> int:
        return self.read_chunk_size_kb * 1024

    @property
    def archive_retention_s(self) -> float:
        return self.archive_retention_hours * 3600


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Args:
        **overrides: Field-level overrides (for testing or per-deployment config).

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
