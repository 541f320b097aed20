from __future__ import annotations

from dataclasses import dataclass, field

"""Config dataclasses for the property CSV importer.

ImportConfig is the root object loaded from ``config/import.yml``.
ImportSettings holds the batching/duplicate knobs the orchestrator uses, and
ImportOptions the per-run choices the operator makes.
"""


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
class ImportSettings:
    """Batching and reconciliation settings.

    Batch size is reduced for large files so no single batch runs long enough
    to hit the platform's request timeout.
    """
    batch_size: int = 50
    large_file_threshold: int = 300  # 行数がこれを超えたら小バッチ
    large_file_batch_size: int = 25
    inter_batch_delay_seconds: float = 1.0
    max_file_bytes: int = 10 * 1024 * 1024
    duplicate_radius_meters: float = 100.0
    skip_existing: bool = True
    lock_wait_seconds: float = 30.0
    timezone: str = "America/Sao_Paulo"


@dataclass(frozen=True)
class ImportOptions:
    """Per-run operator choices."""
    skip_existing: bool = True
    batch_size: int | None = None  # None -> settings から自動決定
    scope: str | None = None  # 組織スコープ (未指定なら大隊)


@dataclass(frozen=True)
class ImportConfig:
    """Root configuration object."""
    settings: ImportSettings = field(default_factory=ImportSettings)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logs_directory: str = "./logs"
    reports_directory: str = "./reports"
