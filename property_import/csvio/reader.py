from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pandas as pd

from property_import.models.row_data import RawRow

"""CSV reader.

- First line is the header; following non-blank lines are data rows.
- Delimiter is ``;`` when the header has more semicolons than commas, else ``,``.
- Quoted fields are supported; every cell is read as a string (no NA coercion).
- A row with more cells than the header is truncated rather than dropped, so
  every data row is still accounted for; a short row reads as empty cells.

Structural problems (missing/empty/oversized/undecodable file, no header, no
data rows) raise CsvFileError: they are fatal to the run.
"""

logger = logging.getLogger(__name__)

FIRST_DATA_ROW = 2  # ヘッダ=1行目 (先頭の空行があればその分ずれる)


class CsvFileError(Exception):
    """Raised when the CSV cannot be used at all (fatal to the whole run)."""


@dataclass
class CsvTable:
    columns: list[str]
    rows: list[RawRow]
    separator: str

    @property
    def total_rows(self) -> int:
        return len(self.rows)

    def sample(self, n: int = 5) -> list[list[str]]:
        return [list(r.cells) for r in self.rows[:n]]


def detect_separator(header_line: str) -> str:
    return ";" if header_line.count(";") > header_line.count(",") else ","


def _first_line(path: Path) -> tuple[int, str]:
    """Index and text of the first non-blank line (the header)."""
    with path.open("r", encoding="utf-8-sig") as f:
        for index, line in enumerate(f):
            if line.strip():
                return index, line
    return 0, ""


def _cell(value: Any) -> str:
    if value is None:
        return ""
    try:
        if pd.isna(value):
            return ""
    except (TypeError, ValueError):  # pragma: no cover - non-scalar cell
        pass
    return str(value)


def read_csv_file(path: Path, max_bytes: int | None = None) -> CsvTable:
    """Read a CSV file into RawRows.

    Parameters
    ----------
    path: CSV ファイルパス
    max_bytes: サイズ上限 (None なら無制限)
    """
    if not path.exists() or not path.is_file():
        raise CsvFileError(f"file not found: {path}")
    size = path.stat().st_size
    if size == 0:
        raise CsvFileError(f"empty file: {path.name}")
    if max_bytes is not None and size > max_bytes:
        raise CsvFileError(
            f"file too large: {path.name} is {size} bytes (limit {max_bytes})"
        )

    try:
        header_index, header_line = _first_line(path)
    except UnicodeDecodeError as e:
        raise CsvFileError(f"file is not valid UTF-8: {e}") from e
    if not header_line.strip():
        raise CsvFileError(f"empty file: {path.name}")
    sep = detect_separator(header_line)

    expected_width = len(next(csv.reader([header_line], delimiter=sep)))

    try:
        df = pd.read_csv(
            path,
            sep=sep,
            dtype=str,
            keep_default_na=False,
            na_filter=False,
            skip_blank_lines=False,
            skiprows=header_index,
            encoding="utf-8-sig",
            index_col=False,
            engine="python",
            usecols=list(range(expected_width)),
        )
    except pd.errors.EmptyDataError as e:
        raise CsvFileError(f"empty file: {path.name}") from e
    except (pd.errors.ParserError, UnicodeDecodeError, ValueError) as e:
        raise CsvFileError(f"could not parse CSV {path.name}: {e}") from e

    columns = [str(c).strip() for c in df.columns]
    if not columns or all(not c for c in columns):
        raise CsvFileError(f"missing header row: {path.name}")

    col_tuple = tuple(columns)
    rows: list[RawRow] = []
    for i, raw in enumerate(df.itertuples(index=False, name=None)):
        cells = tuple(_cell(v) for v in raw)
        # 空行も読み込んで行番号をファイルの行と揃える
        if not any(c.strip() for c in cells):
            continue
        rows.append(RawRow(row_number=i + header_index + FIRST_DATA_ROW, cells=cells, columns=col_tuple))

    if not rows:
        raise CsvFileError(f"no data rows: {path.name}")

    logger.debug("read %s sep=%r columns=%s rows=%d", path.name, sep, columns, len(rows))
    return CsvTable(columns=columns, rows=rows, separator=sep)
