from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..models.error_record import ErrorType, RowError
from ..models.mapping import ColumnMapping, TargetField
from ..models.property import LATITUDE_RANGE, LONGITUDE_RANGE, NormalizedProperty
from ..models.row_data import RawRow

"""Row normalizer.

normalize() turns one RawRow plus the confirmed ColumnMapping into either a
NormalizedProperty or a RowError. It never raises: every problem with the row
becomes a RowError carrying the raw row text and whatever fields were mapped
before the failure.

Checks run in this order, first failure wins:
1. required fields (name, cidade, owner_name and a coordinate pair) present
2. coordinates numeric
3. coordinates within range (never clamped)
"""

logger = logging.getLogger(__name__)

__all__ = [
    "normalize",
    "preview",
    "parse_coordinate",
    "split_coordinates",
    "parse_bool",
    "parse_count",
    "parse_date",
    "run_date_for",
    "NormalizationPreview",
]

AFFIRMATIVE = frozenset({"sim", "yes", "true", "1"})
COORD_SPLIT_RE = re.compile(r"[\s,;]+")
_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})")
_DAY_FIRST_RE = re.compile(r"^(\d{1,2})[/.\-](\d{1,2})[/.\-](\d{4}|\d{2})(?!\d)")

_STRING_FIELDS = (
    TargetField.NAME,
    TargetField.CIDADE,
    TargetField.BAIRRO,
    TargetField.OWNER_NAME,
    TargetField.OWNER_PHONE,
    TargetField.OWNER_RG,
    TargetField.EQUIPE,
    TargetField.NUMERO_PLACA,
    TargetField.DESCRIPTION,
    TargetField.CONTACT_NAME,
    TargetField.CONTACT_PHONE,
    TargetField.CONTACT_OBSERVATIONS,
    TargetField.OBSERVATIONS,
    TargetField.ACTIVITY,
    TargetField.WIFI_PASSWORD,
)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def parse_coordinate(text: str) -> float | None:
    """Float from ``text``; one decimal comma (``"-25,43"``) is accepted."""
    candidate = text.strip()
    if candidate.count(",") == 1 and "." not in candidate:
        candidate = candidate.replace(",", ".")
    try:
        value = float(candidate)
    except ValueError:
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def split_coordinates(text: str) -> tuple[float, float] | None:
    """``"lat, lng"`` / ``"lat;lng"`` / ``"lat lng"`` -> (lat, lng), else None."""
    tokens = [t for t in COORD_SPLIT_RE.split(text.strip()) if t]
    if len(tokens) != 2:
        return None
    lat = parse_coordinate(tokens[0])
    lng = parse_coordinate(tokens[1])
    if lat is None or lng is None:
        return None
    return lat, lng


def parse_bool(text: str | None) -> bool:
    return text is not None and text.strip().lower() in AFFIRMATIVE


def parse_count(text: str | None) -> int | None:
    """Non-negative integer or None; malformed values never fail the row."""
    if text is None:
        return None
    try:
        value = float(text.strip().replace(",", "."))
    except ValueError:
        return None
    if math.isnan(value) or math.isinf(value) or value < 0 or value != int(value):
        return None
    return int(value)


def parse_date(text: str | None) -> date | None:
    """ISO ``YYYY-MM-DD`` or day-first ``DD/MM/YYYY`` (``-`` and ``.`` too).

    Two-digit years are read as 20xx. A trailing time part is ignored.
    """
    if text is None:
        return None
    text = text.strip()
    m = _ISO_DATE_RE.match(text)
    if m:
        year, month, day = (int(g) for g in m.groups())
    else:
        m = _DAY_FIRST_RE.match(text)
        if not m:
            return None
        day, month = int(m.group(1)), int(m.group(2))
        year = int(m.group(3))
        if len(m.group(3)) == 2:
            year += 2000
    try:
        return date(year, month, day)
    except ValueError:
        return None


def run_date_for(timezone: str) -> date:
    """Today's date in ``timezone`` (local date when the zone is unknown)."""
    try:
        return datetime.now(ZoneInfo(timezone)).date()
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown timezone %r, using local date", timezone)
        return date.today()


def _first_value(row: RawRow, mapping: ColumnMapping, target: TargetField) -> str | None:
    # 同一ターゲットに複数列がある場合は最初の非空値
    for source in mapping.sources_for(target):
        value = _clean(row.get(source))
        if value is not None:
            return value
    return None


def normalize(
    row: RawRow,
    mapping: ColumnMapping,
    *,
    run_date: date | None = None,
) -> NormalizedProperty | RowError:
    """Normalize one row. Returns a RowError instead of raising."""
    mapped: dict[str, Any] = {}
    for target in TargetField:
        value = _first_value(row, mapping, target)
        if value is not None:
            mapped[target.value] = value
    name = mapped.get(TargetField.NAME.value) or ""

    def _error(error_type: ErrorType, message: str) -> RowError:
        return RowError.create(
            row_number=row.row_number,
            property_name=name,
            error_type=error_type,
            error_message=message,
            raw_data=row.raw_text,
            mapped_data=mapped,
        )

    lat_text = mapped.get(TargetField.LATITUDE.value)
    lng_text = mapped.get(TargetField.LONGITUDE.value)
    combined_text = mapped.get(TargetField.COORDINATES_COMBINED.value)

    missing = [
        f.value
        for f in (TargetField.NAME, TargetField.CIDADE, TargetField.OWNER_NAME)
        if f.value not in mapped
    ]
    use_pair = lat_text is not None and lng_text is not None
    if not use_pair and combined_text is None:
        missing.append("coordinates")
    if missing:
        return _error(
            ErrorType.MISSING_FIELDS,
            f"missing required fields: {', '.join(missing)}",
        )

    if use_pair:
        lat = parse_coordinate(lat_text)  # type: ignore[arg-type]
        lng = parse_coordinate(lng_text)  # type: ignore[arg-type]
        if lat is None or lng is None:
            return _error(
                ErrorType.INVALID_COORDINATES,
                f"coordinates are not numeric: latitude={lat_text!r} longitude={lng_text!r}",
            )
    else:
        pair = split_coordinates(combined_text)  # type: ignore[arg-type]
        if pair is None:
            return _error(
                ErrorType.INVALID_COORDINATES,
                f"expected 'latitude, longitude' but got {combined_text!r}",
            )
        lat, lng = pair
    mapped["latitude"] = lat
    mapped["longitude"] = lng

    if not LATITUDE_RANGE[0] <= lat <= LATITUDE_RANGE[1]:
        return _error(ErrorType.INVALID_COORDINATES, f"latitude out of range [-90, 90]: {lat}")
    if not LONGITUDE_RANGE[0] <= lng <= LONGITUDE_RANGE[1]:
        return _error(ErrorType.INVALID_COORDINATES, f"longitude out of range [-180, 180]: {lng}")

    cadastro = parse_date(mapped.get(TargetField.CADASTRO_DATE.value))
    if cadastro is None:
        cadastro = run_date or date.today()

    strings = {f.value: mapped.get(f.value) for f in _STRING_FIELDS}
    try:
        return NormalizedProperty(
            latitude=lat,
            longitude=lng,
            cadastro_date=cadastro,
            has_cameras=parse_bool(mapped.get(TargetField.HAS_CAMERAS.value)),
            cameras_count=parse_count(mapped.get(TargetField.CAMERAS_COUNT.value)),
            has_wifi=parse_bool(mapped.get(TargetField.HAS_WIFI.value)),
            residents_count=parse_count(mapped.get(TargetField.RESIDENTS_COUNT.value)),
            **strings,
        )
    except (TypeError, ValueError) as e:  # pragma: no cover - guarded by checks above
        return _error(ErrorType.CRITICAL_ERROR, str(e))


@dataclass(frozen=True)
class NormalizationPreview:
    """Dry normalization of every row, shown at analysis time."""
    total: int
    valid: int
    invalid: int
    by_error_type: dict[str, int] = field(default_factory=dict)

    @property
    def projected_success_rate(self) -> float:
        return round(self.valid / self.total * 100, 1) if self.total else 0.0


def preview(
    rows: Iterable[RawRow],
    mapping: ColumnMapping,
    *,
    run_date: date | None = None,
) -> NormalizationPreview:
    total = valid = 0
    by_type: dict[str, int] = {}
    for row in rows:
        total += 1
        result = normalize(row, mapping, run_date=run_date)
        if isinstance(result, RowError):
            key = result.error_type.value
            by_type[key] = by_type.get(key, 0) + 1
        else:
            valid += 1
    return NormalizationPreview(
        total=total,
        valid=valid,
        invalid=total - valid,
        by_error_type=by_type,
    )
