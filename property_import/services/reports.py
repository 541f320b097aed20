from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date, datetime
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pandas as pd

from ..models.error_record import RowError

"""Operator-facing CSV exports: the row error report and the import template."""

logger = logging.getLogger(__name__)

ERROR_REPORT_COLUMNS = [
    "Linha_CSV",
    "Nome_Propriedade",
    "Tipo_Erro",
    "Mensagem_Erro",
    "Dados_CSV_Brutos",
    "Campos_Processados",
    "Timestamp",
]

TEMPLATE_FILE_NAME = "template_propriedades.csv"
TEMPLATE_HEADER = [
    "data", "nome", "coordenadas", "cidade", "bairro", "proprietario",
    "telefone", "rg", "equipe", "placa", "descricao",
]
TEMPLATE_ROWS = [
    ["2025-01-09", "Propriedade Exemplo", "-25.4284,-49.2733", "Curitiba", "Centro",
     "João Silva", "41999999999", "123456789", "Alpha", "ABC1234", "Propriedade rural exemplo"],
    ["2025-01-09", "Fazenda Modelo", "-25.5284,-49.3733", "Curitiba", "Rural",
     "Maria Santos", "41888888888", "987654321", "Bravo", "XYZ5678", "Fazenda com gado"],
    ["2025-01-09", "Sítio Esperança", "-25.6284,-49.4733", "Araucária", "Cachoeira",
     "Pedro Costa", "41777777777", "456789123", "Charlie", "DEF9012", "Sítio para agricultura"],
]


def error_report_name(day: date | None = None) -> str:
    return f"relatorio_erros_importacao_{(day or date.today()).isoformat()}.csv"


def _local_timestamp(iso_utc: str, timezone: str) -> str:
    try:
        ts = datetime.fromisoformat(iso_utc.replace("Z", "+00:00"))
    except ValueError:
        return iso_utc
    try:
        ts = ts.astimezone(ZoneInfo(timezone))
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug("unknown timezone %r, report timestamps stay UTC", timezone)
    return ts.strftime("%d/%m/%Y %H:%M:%S")


def _processed_fields(error: RowError) -> str:
    data = error.to_dict()["mapped_data"]
    return "; ".join(f"{k}:{v}" for k, v in data.items())


def error_report_frame(errors: Sequence[RowError], timezone: str = "UTC") -> pd.DataFrame:
    records = [
        {
            "Linha_CSV": e.row_number,
            "Nome_Propriedade": e.property_name or "N/A",
            "Tipo_Erro": e.error_type.value,
            "Mensagem_Erro": e.error_message,
            "Dados_CSV_Brutos": e.raw_data,
            "Campos_Processados": _processed_fields(e),
            "Timestamp": _local_timestamp(e.timestamp, timezone),
        }
        for e in errors
    ]
    return pd.DataFrame(records, columns=ERROR_REPORT_COLUMNS)


def write_error_report(
    errors: Sequence[RowError],
    path: Path,
    timezone: str = "UTC",
) -> Path:
    """Write the error CSV; a ``path`` without a .csv suffix is a directory (default name)."""
    if path.suffix.lower() != ".csv":
        path = path / error_report_name()
    path.parent.mkdir(parents=True, exist_ok=True)
    # Excel で開けるよう BOM 付き UTF-8
    error_report_frame(errors, timezone).to_csv(path, index=False, encoding="utf-8-sig")
    logger.info("error report written: %s (%d rows)", path, len(errors))
    return path


def write_template(path: Path) -> Path:
    if path.is_dir():
        path = path / TEMPLATE_FILE_NAME
    path.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(TEMPLATE_ROWS, columns=TEMPLATE_HEADER).to_csv(path, index=False, encoding="utf-8")
    return path
