from __future__ import annotations

from pathlib import Path

import pandas as pd

from property_import.models.error_record import ErrorType, RowError
from property_import.services.reports import ERROR_REPORT_COLUMNS, write_error_report

"""Error report CSV contract: column names and order are read by operators' spreadsheets."""


def test_error_report_columns_fixed():
    assert ERROR_REPORT_COLUMNS == [
        "Linha_CSV",
        "Nome_Propriedade",
        "Tipo_Erro",
        "Mensagem_Erro",
        "Dados_CSV_Brutos",
        "Campos_Processados",
        "Timestamp",
    ]


def test_error_report_file_layout(tmp_path: Path):
    errors = [
        RowError.create(3, "Fazenda, Com Vírgula", ErrorType.DATABASE_ERROR, 'value too long "name"',
                        raw_data="Fazenda, Com Vírgula;-25, -49;Lapa;Ana"),
        RowError.create(-1, None, ErrorType.CRITICAL_ERROR, "outcome unknown, verify manually"),
    ]
    path = write_error_report(errors, tmp_path / "r.csv")
    raw = path.read_bytes()
    assert raw.startswith(b"\xef\xbb\xbf")  # Excel 用 BOM
    df = pd.read_csv(path, encoding="utf-8-sig", dtype=str, keep_default_na=False)
    assert list(df.columns) == ERROR_REPORT_COLUMNS
    assert df.iloc[0]["Nome_Propriedade"] == "Fazenda, Com Vírgula"
    assert df.iloc[0]["Mensagem_Erro"] == 'value too long "name"'
    assert df.iloc[1]["Linha_CSV"] == "-1"
    assert df.iloc[1]["Nome_Propriedade"] == "N/A"
