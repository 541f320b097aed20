from __future__ import annotations

import json
from datetime import date

from property_import.models.error_record import ErrorType, RowError

"""Unit tests for the RowError model."""

EXPECTED_KEYS = {
    "row_number", "property_name", "error_type", "error_message",
    "timestamp", "raw_data", "mapped_data",
}


def test_row_error_json_line_has_fixed_keys():
    """Test that the JSON line carries exactly the model fields."""
    rec = RowError.create(
        row_number=7,
        property_name="Fazenda Boa Vista",
        error_type=ErrorType.INVALID_COORDINATES,
        error_message="latitude out of range [-90, 90]: 91.0",
        raw_data="Fazenda Boa Vista;91, 10;Curitiba;João",
        mapped_data={"name": "Fazenda Boa Vista", "latitude": 91.0},
    )

    data = json.loads(rec.to_json_line())
    assert set(data.keys()) == EXPECTED_KEYS
    assert data["row_number"] == 7
    assert data["error_type"] == "INVALID_COORDINATES"
    assert data["mapped_data"] == {"name": "Fazenda Boa Vista", "latitude": 91.0}
    assert data["timestamp"].endswith("Z")


def test_row_error_unknown_row_and_name():
    """row_number -1 and a missing name are allowed for errors with no row context."""
    rec = RowError.create(-1, None, "CRITICAL_ERROR", "connection lost")
    assert rec.row_number == -1
    assert rec.property_name == ""
    assert rec.error_type is ErrorType.CRITICAL_ERROR
    assert rec.mapped_data == {}


def test_row_error_non_ascii_kept_verbatim():
    rec = RowError.create(2, "Sítio Esperança", ErrorType.MISSING_FIELDS, "missing required fields: owner_name")
    line = rec.to_json_line()
    assert "Sítio Esperança" in line


def test_row_error_mapped_dates_are_serialized():
    rec = RowError.create(
        3, "A", ErrorType.DATABASE_ERROR, "rejected", mapped_data={"cadastro_date": date(2025, 1, 9)}
    )
    assert json.loads(rec.to_json_line())["mapped_data"]["cadastro_date"] == "2025-01-09"


def test_row_error_mapped_data_is_copied():
    mapped = {"name": "A"}
    rec = RowError.create(2, "A", ErrorType.MISSING_FIELDS, "m", mapped_data=mapped)
    mapped["name"] = "changed"
    assert rec.mapped_data == {"name": "A"}
