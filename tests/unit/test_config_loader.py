from __future__ import annotations
import pytest
from pathlib import Path
from property_import.config.loader import ConfigError, load_config, resolve_dsn
from property_import.models.config_models import DatabaseConfig, ImportSettings


def test_load_config_success(write_config: Path):
    cfg = load_config(write_config)
    assert cfg.settings.batch_size == 50
    assert cfg.settings.large_file_batch_size == 25
    assert cfg.settings.inter_batch_delay_seconds == 0.0
    assert cfg.settings.timezone == "America/Sao_Paulo"
    assert cfg.database.host == "localhost"
    assert cfg.reports_directory == "./reports"


def test_load_config_defaults_for_omitted_keys(temp_workdir: Path):
    path = temp_workdir / "config" / "import.yml"
    path.write_text("import:\n  batch_size: 10\n", encoding="utf-8")
    cfg = load_config(path)
    defaults = ImportSettings()
    assert cfg.settings.batch_size == 10
    assert cfg.settings.duplicate_radius_meters == defaults.duplicate_radius_meters
    assert cfg.settings.skip_existing is True
    assert cfg.logs_directory == "./logs"
    assert cfg.database == DatabaseConfig()


def test_load_config_empty_file_is_all_defaults(temp_workdir: Path):
    path = temp_workdir / "config" / "import.yml"
    path.write_text("", encoding="utf-8")
    assert load_config(path).settings == ImportSettings()


def test_load_config_missing_file(temp_workdir: Path):
    missing = temp_workdir / "config" / "not_exists.yml"
    with pytest.raises(ConfigError):
        load_config(missing)


def test_load_config_invalid_yaml(temp_workdir: Path):
    path = temp_workdir / "config" / "import.yml"
    path.write_text("import: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="invalid yaml"):
        load_config(path)


def test_load_config_rejects_bad_values(write_config: Path):
    text = write_config.read_text(encoding="utf-8").replace("batch_size: 50", "batch_size: 0")
    write_config.write_text(text, encoding="utf-8")
    with pytest.raises(ConfigError) as e:
        load_config(write_config)
    assert "config validation failed" in str(e.value)


def test_load_config_rejects_zero_radius(write_config: Path):
    text = write_config.read_text(encoding="utf-8").replace(
        "duplicate_radius_meters: 100", "duplicate_radius_meters: 0"
    )
    write_config.write_text(text, encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(write_config)


def test_load_config_extra_field(write_config: Path):
    # additionalProperties: false で拒否される
    text = write_config.read_text(encoding="utf-8") + "\nextra_field: not_allowed\n"
    write_config.write_text(text, encoding="utf-8")
    with pytest.raises(ConfigError) as e:
        load_config(write_config)
    assert "config validation failed" in str(e.value)


def test_resolve_dsn_prefers_database_url(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db/app")
    assert resolve_dsn(DatabaseConfig(host="yaml-host")) == "postgresql://u:p@db/app"


def test_resolve_dsn_from_yaml_and_pg_env(monkeypatch):
    for var in ("DATABASE_URL", "PGDSN", "PGHOST", "PGPORT", "PGUSER", "PGPASSWORD", "PGDATABASE"):
        monkeypatch.delenv(var, raising=False)
    cfg = DatabaseConfig(host="yaml-host", port=6543, user="app", password="s3cret", database="props")
    assert resolve_dsn(cfg) == "host=yaml-host port=6543 user=app dbname=props password=s3cret"
    monkeypatch.setenv("PGHOST", "env-host")
    assert resolve_dsn(cfg).startswith("host=env-host port=6543")
