from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

"""RowError model for per-row error reporting.

A RowError is created when normalization, duplicate detection or persistence
fails for a row. It is accumulated into the run's error report and the JSON
Lines error log, and never mutated once created.

The JSON Lines form adheres to ``property_import/logging/error_log_schema.json``.
"""

__all__ = [
    "ErrorType",
    "RowError",
]


class ErrorType(str, Enum):
    MISSING_FIELDS = "MISSING_FIELDS"
    INVALID_COORDINATES = "INVALID_COORDINATES"
    DATABASE_ERROR = "DATABASE_ERROR"
    CRITICAL_ERROR = "CRITICAL_ERROR"
    DUPLICATE = "DUPLICATE"


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class RowError:
    """Structured per-row error.

    Attributes:
        row_number: Row number in the source file (header = 1). -1 when unknown
        property_name: Best-effort property name, may be empty
        error_type: ErrorType value
        error_message: Human readable description
        timestamp: ISO8601 UTC timestamp with 'Z' suffix
        raw_data: Original row text, for diagnostics
        mapped_data: Partial field map computed before the failure
    """
    row_number: int
    property_name: str
    error_type: ErrorType
    error_message: str
    timestamp: str
    raw_data: str = ""
    mapped_data: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def create(
        row_number: int,
        property_name: str | None,
        error_type: ErrorType,
        error_message: str,
        raw_data: str = "",
        mapped_data: dict[str, Any] | None = None,
    ) -> RowError:
        """Create a new RowError stamped with the current UTC time."""
        return RowError(
            row_number=row_number,
            property_name=property_name or "",
            error_type=ErrorType(error_type),
            error_message=error_message,
            timestamp=_utc_now_iso(),
            raw_data=raw_data,
            mapped_data=dict(mapped_data or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["error_type"] = self.error_type.value
        # date 等は文字列化
        data["mapped_data"] = {k: _json_safe(v) for k, v in self.mapped_data.items()}
        return data

    def to_json_line(self) -> str:
        """Serialize to a single JSON line with exactly the dataclass keys."""
        return json.dumps(self.to_dict(), ensure_ascii=False)


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)
