from __future__ import annotations

from dataclasses import dataclass, field

"""Config dataclasses for the device intake tool.

These are the typed form of config/intake.yml after schema validation; the
loader in device_intake/config/loader.py builds them and applies defaults.
"""

__all__ = [
    "DatabaseConfig",
    "ExtractionConfig",
    "DuplicateConfig",
    "RetryConfig",
    "IntakeConfig",
]


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection configuration.

    Used as fallback when environment variables are not set.
    Environment variables take precedence over these values.
    """
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    dsn: str | None = None


@dataclass(frozen=True)
class ExtractionConfig:
    header_scan_rows: int = 20  # ヘッダ探索行数 (先頭 N 行)
    identifier_prefix: str = "35"


@dataclass(frozen=True)
class DuplicateConfig:
    window_days: int = 90


@dataclass(frozen=True)
class RetryConfig:
    """Sync retry policy.

    The first retry is scheduled ``initial_delay_minutes`` after the failure;
    each further failure doubles the delay up to ``max_delay_minutes``.
    """
    max_retries: int = 5
    initial_delay_minutes: int = 5
    max_delay_minutes: int = 240


@dataclass(frozen=True)
class IntakeConfig:
    """Root configuration object."""
    source_directory: str  # CLI が走査するアップロードディレクトリ
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    duplicates: DuplicateConfig = field(default_factory=DuplicateConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
