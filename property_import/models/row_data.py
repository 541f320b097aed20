from __future__ import annotations

from dataclasses import dataclass

"""RawRow model for the property CSV importer.

RawRow is one data row of the source CSV exactly as read: ordered string cells
plus the row number within the file. It is discarded after normalization, or
kept inside a RowError for diagnostics.
"""

__all__ = [
    "RawRow",
]


@dataclass(frozen=True)
class RawRow:
    """One CSV data row before normalization.

    ``row_number`` is 1-based within the source file; the header is line 1, so
    the first data row is 2 (the number operators see in a spreadsheet).
    """
    row_number: int  # ファイル内行番号 (ヘッダ=1)
    cells: tuple[str, ...]
    columns: tuple[str, ...]  # ヘッダ列名 (cells と同順)

    def get(self, column: str) -> str | None:
        """Cell for ``column``; None when the header is unknown or the row is short."""
        try:
            idx = self.columns.index(column)
        except ValueError:
            return None
        if idx >= len(self.cells):
            return None
        return self.cells[idx]

    @property
    def raw_text(self) -> str:
        return ";".join(self.cells)
