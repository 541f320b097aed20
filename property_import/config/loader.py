from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from property_import.models.config_models import DatabaseConfig, ImportConfig, ImportSettings

"""Config loader.

Responsibilities:
- Load YAML config/import.yml
- Validate against config_schema.json (unknown keys rejected)
- Apply defaults for omitted keys
- Resolve the database DSN (environment first, YAML as fallback)
"""

SCHEMA_PATH = Path(__file__).with_name("config_schema.json")
DEFAULT_CONFIG_PATH = Path("config/import.yml")


class ConfigError(Exception):
    pass


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against JSON schema.

    Raises:
        ConfigError: If the schema file is missing or invalid, or the config
            data fails validation (wrong types, unknown keys, bad ranges).
    """
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")

    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"config validation failed: {e.message}") from e


def load_config(path: Path) -> ImportConfig:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("config validation failed: top-level mapping expected")

    _validate_config_schema(data)

    defaults = ImportSettings()
    imp = data.get("import", {}) or {}
    settings = ImportSettings(
        batch_size=imp.get("batch_size", defaults.batch_size),
        large_file_threshold=imp.get("large_file_threshold", defaults.large_file_threshold),
        large_file_batch_size=imp.get("large_file_batch_size", defaults.large_file_batch_size),
        inter_batch_delay_seconds=float(
            imp.get("inter_batch_delay_seconds", defaults.inter_batch_delay_seconds)
        ),
        max_file_bytes=imp.get("max_file_bytes", defaults.max_file_bytes),
        duplicate_radius_meters=float(
            imp.get("duplicate_radius_meters", defaults.duplicate_radius_meters)
        ),
        skip_existing=imp.get("skip_existing", defaults.skip_existing),
        lock_wait_seconds=float(imp.get("lock_wait_seconds", defaults.lock_wait_seconds)),
        timezone=data.get("timezone", defaults.timezone),
    )
    db_raw = data.get("database", {}) or {}
    db = DatabaseConfig(
        host=db_raw.get("host"),
        port=db_raw.get("port"),
        user=db_raw.get("user"),
        password=db_raw.get("password"),
        database=db_raw.get("database"),
        dsn=db_raw.get("dsn"),
    )
    return ImportConfig(
        settings=settings,
        database=db,
        logs_directory=data.get("logs_directory", "./logs"),
        reports_directory=data.get("reports_directory", "./reports"),
    )


def resolve_dsn(db_cfg: DatabaseConfig) -> str:
    """Build the libpq DSN.

    Priority:
        1. DATABASE_URL / PGDSN (already overridden by .env when loaded)
        2. PGHOST / PGPORT / PGUSER / PGPASSWORD / PGDATABASE
        3. the YAML ``database`` section
    """
    dsn_env = os.getenv("DATABASE_URL") or os.getenv("PGDSN") or db_cfg.dsn
    if dsn_env:
        return dsn_env
    host = os.getenv("PGHOST", db_cfg.host or "localhost")
    port = os.getenv("PGPORT", str(db_cfg.port) if db_cfg.port else "5432")
    user = os.getenv("PGUSER", db_cfg.user or "postgres")
    password = os.getenv("PGPASSWORD", db_cfg.password or "")
    database = os.getenv("PGDATABASE", db_cfg.database or "postgres")
    dsn = f"host={host} port={port} user={user} dbname={database}"
    if password:
        dsn += f" password={password}"
    return dsn
