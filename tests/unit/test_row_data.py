from __future__ import annotations

from property_import.models.row_data import RawRow


def _row(cells) -> RawRow:
    return RawRow(row_number=2, cells=tuple(cells), columns=("nome", "cidade", "obs"))


def test_get_by_header():
    row = _row(["Fazenda", "Lapa", ""])
    assert row.get("nome") == "Fazenda"
    assert row.get("obs") == ""


def test_get_unknown_header():
    assert _row(["Fazenda", "Lapa", ""]).get("proprietario") is None


def test_get_short_row():
    assert _row(["Fazenda"]).get("cidade") is None


def test_raw_text_joins_cells():
    assert _row(["Fazenda", "Lapa", "x"]).raw_text == "Fazenda;Lapa;x"
