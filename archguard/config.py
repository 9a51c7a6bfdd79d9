"""Application configuration via Pydantic Settings.

All configuration is driven by environment variables.  Every field carries a
documented fallback so a development worker starts without a ``.env`` file;
production deployments are expected to set the archive limits and scanner
parameters explicitly.

Usage::

    from archguard.config import get_settings

    settings = get_settings()
    print(settings.scan_timeout_seconds)

The ``get_settings`` function is cached with ``functools.lru_cache``. To override
settings in tests, patch ``archguard.config.get_settings`` or set the relevant
environment variables and call ``get_settings.cache_clear()``.
"""
from __future__ import annotations

import functools
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_MIB = 1024 * 1024


class Settings(BaseSettings):
    """ArchGuard application settings.

    Environment variables are read case-insensitively. A ``.env`` file in the
    working directory is loaded automatically when present.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Antivirus engine
    scanner_backend: Literal["clamdscan", "clamd"] = Field(
        default="clamdscan",
        description="clamdscan subprocess per file, or the clamd control socket",
    )
    clamd_socket_path: str | None = Field(
        default=None,
        description="clamd Unix socket; when unset the TCP host/port are used",
    )
    clamd_host: str = Field(default="localhost", description="clamd TCP host")
    clamd_port: int = Field(default=3310, description="clamd TCP port")
    scanner_command: str = Field(
        default="clamdscan",
        description="Executable invoked once per scanned file",
    )
    scanner_args: list[str] = Field(
        default_factory=lambda: ["--no-summary", "--fdpass", "--stream"],
        description="Arguments placed before the file path on the scanner command line",
    )
    scan_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Hard deadline for one scanner subprocess; the process is killed afterwards",
    )
    max_scan_file_size: int = Field(
        default=100 * _MIB,
        ge=1,
        description="Largest file (bytes) handed to the scanner",
    )
    allowed_scan_roots: list[str] = Field(
        default_factory=lambda: ["./uploads", "./tmp"],
        description="Directories a scanned path must resolve into",
    )
    max_concurrent_scans: int = Field(
        default=4,
        ge=1,
        description="Upper bound on simultaneously running scanner subprocesses",
    )

    # Archive extraction limits
    max_archive_total_size: int = Field(
        default=500 * _MIB,
        ge=1,
        description="Maximum aggregate uncompressed size of one archive",
    )
    max_entry_size: int = Field(
        default=100 * _MIB,
        ge=1,
        description="Maximum uncompressed size of a single archive entry",
    )
    max_compression_ratio: float = Field(
        default=100.0,
        gt=1,
        description="Maximum uncompressed/compressed ratio of a single entry",
    )
    max_entry_count: int = Field(
        default=1000,
        ge=1,
        description="Maximum number of entries in one archive",
    )

    # Workers and storage
    worker_pool_size: int = Field(
        default=2,
        ge=1,
        description="Number of ingestion jobs processed concurrently",
    )
    max_retained_jobs: int = Field(
        default=1000,
        ge=1,
        description="Finished jobs kept in memory for status queries; the oldest are evicted first",
    )
    upload_dir: Path = Field(
        default=Path("./uploads"),
        description="Directory where the upload front-end stores accepted archives",
    )
    work_dir: Path = Field(
        default=Path("./tmp/extracts"),
        description="Root under which each job gets its own extraction directory",
    )
    session_max_age_hours: int = Field(
        default=24,
        ge=1,
        description="Extraction directories older than this are removed by the maintenance task",
    )

    # Queue
    queue_backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Job intake queue: in-process memory queue or durable Redis lists",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis DSN used by the durable queue, progress relay and Celery",
    )

    # Detection
    custom_patterns_path: Path | None = Field(
        default=None,
        description="Optional JSON file with additional detection patterns",
    )
    detections_output_path: Path | None = Field(
        default=None,
        description="When set, completed job results are appended to this JSON file",
    )

    # AI re-scoring (optional collaborator)
    risk_scorer_url: str | None = Field(
        default=None,
        description="Endpoint of the external semantic risk classifier; disabled when unset",
    )
    risk_scorer_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Deadline for the whole re-scoring call; completion never waits longer",
    )

    # Environment
    log_level: str = Field(
        default="INFO",
        description="Root log level for process entry points",
    )
    environment: str = Field(
        default="production",
        description="Deployment environment: development, staging, or production",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode (never set True in production)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError("log_level must be a standard logging level name")
        return level

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: str) -> str:
        if not (v.startswith("redis://") or v.startswith("rediss://")):
            raise ValueError("redis_url must be a redis:// or rediss:// DSN")
        return v


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached application settings singleton.

    The first call reads environment variables (and ``.env``). Subsequent calls
    return the cached instance. Clear the cache with ``get_settings.cache_clear()``
    between tests.
    """
    return Settings()
