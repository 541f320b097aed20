# Shared pytest fixtures
from __future__ import annotations

import tempfile
from collections.abc import Callable
from pathlib import Path

import pytest

from property_import.csvio.reader import CsvTable, read_csv_file
from property_import.db.memory_store import InMemoryPropertyStore
from property_import.logging.init import reset_logging
from property_import.models.config_models import ImportSettings
from property_import.models.mapping import ColumnMapping
from property_import.models.property import UserProfile

ADMIN = UserProfile(id="u-admin", full_name="Ana Admin", role="admin", batalhao="1BPM")
OPERATOR = UserProfile(id="u-op", full_name="Otávio Operador", role="operator", batalhao="1BPM")

BASIC_HEADER = "nome,coordenadas,cidade,proprietario"


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        yield p


@pytest.fixture()
def sample_config_yaml() -> str:
    return """import:
  batch_size: 50
  large_file_threshold: 300
  large_file_batch_size: 25
  inter_batch_delay_seconds: 0
  duplicate_radius_meters: 100
  skip_existing: true
  lock_wait_seconds: 0
timezone: America/Sao_Paulo
logs_directory: ./logs
reports_directory: ./reports
database:
  host: localhost
  port: 5432
  user: appuser
  password: secret
  database: appdb
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "import.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


@pytest.fixture()
def write_csv(temp_workdir: Path) -> Callable[..., Path]:
    """Write ``lines`` (header first) to data/<name> and return the path."""
    def _write(lines: list[str], name: str = "props.csv", encoding: str = "utf-8") -> Path:
        path = temp_workdir / "data" / name
        path.write_text("\n".join(lines) + "\n", encoding=encoding)
        return path
    return _write


@pytest.fixture()
def make_table(write_csv) -> Callable[..., CsvTable]:
    def _make(lines: list[str]) -> CsvTable:
        return read_csv_file(write_csv(lines))
    return _make


@pytest.fixture()
def basic_mapping() -> ColumnMapping:
    return ColumnMapping.from_dict(
        {
            "nome": "name",
            "coordenadas": "coordinates_combined",
            "cidade": "cidade",
            "proprietario": "owner_name",
        }
    )


@pytest.fixture()
def make_store():
    """Factory for in-memory stores (or subclasses) seeded with ADMIN and OPERATOR."""
    created = []

    def _make(cls=InMemoryPropertyStore, **kwargs):
        s = cls(users=[ADMIN, OPERATOR], teams={"1BPM": ["Alpha", "Bravo"]}, **kwargs)
        created.append(s)
        return s

    yield _make
    for s in created:
        s.close()


@pytest.fixture()
def store(make_store) -> InMemoryPropertyStore:
    return make_store()


@pytest.fixture()
def fast_settings() -> ImportSettings:
    return ImportSettings(inter_batch_delay_seconds=0.0, lock_wait_seconds=0.0)


@pytest.fixture(autouse=True)
def _clean_logging():
    reset_logging()
    yield
    reset_logging()
