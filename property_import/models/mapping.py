from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum

"""Column mapping model for the property CSV importer.

A ColumnMapping ties arbitrary CSV header names to the fixed set of target
fields a property record understands. It is produced once per import (first by
inference, then by operator edit) and is immutable once the import starts.
"""

__all__ = [
    "TargetField",
    "ColumnMapping",
    "REQUIRED_FIELDS",
    "COORDINATE_FIELDS",
    "UnknownTargetFieldError",
]


class TargetField(str, Enum):
    """Target fields a CSV column can be mapped to."""
    NAME = "name"
    LATITUDE = "latitude"
    LONGITUDE = "longitude"
    COORDINATES_COMBINED = "coordinates_combined"
    CIDADE = "cidade"
    BAIRRO = "bairro"
    OWNER_NAME = "owner_name"
    OWNER_PHONE = "owner_phone"
    OWNER_RG = "owner_rg"
    EQUIPE = "equipe"
    NUMERO_PLACA = "numero_placa"
    DESCRIPTION = "description"
    CONTACT_NAME = "contact_name"
    CONTACT_PHONE = "contact_phone"
    CONTACT_OBSERVATIONS = "contact_observations"
    OBSERVATIONS = "observations"
    ACTIVITY = "activity"
    HAS_CAMERAS = "has_cameras"
    CAMERAS_COUNT = "cameras_count"
    HAS_WIFI = "has_wifi"
    WIFI_PASSWORD = "wifi_password"
    RESIDENTS_COUNT = "residents_count"
    CADASTRO_DATE = "cadastro_date"


REQUIRED_FIELDS: tuple[TargetField, ...] = (
    TargetField.NAME,
    TargetField.CIDADE,
    TargetField.OWNER_NAME,
)
COORDINATE_FIELDS: tuple[TargetField, ...] = (TargetField.LATITUDE, TargetField.LONGITUDE)


class UnknownTargetFieldError(ValueError):
    """Raised when a mapping names a target field outside TargetField."""


def _coerce_target(value: TargetField | str) -> TargetField:
    if isinstance(value, TargetField):
        return value
    try:
        return TargetField(str(value).strip())
    except ValueError as e:
        raise UnknownTargetFieldError(f"unknown target field: {value!r}") from e


@dataclass(frozen=True)
class ColumnMapping(Mapping[str, TargetField]):
    """Immutable source-column -> target-field mapping.

    Not required to be total or injective. Use ``validation_errors()`` (or
    ``services.column_mapper.validate_mapping``) to check it is importable.
    """
    entries: tuple[tuple[str, TargetField], ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: Mapping[str, TargetField | str | None]) -> ColumnMapping:
        return cls.from_pairs(data.items())

    @classmethod
    def from_pairs(cls, pairs: Iterable[tuple[str, TargetField | str | None]]) -> ColumnMapping:
        """Build from ordered ``(source_header, target | "")`` pairs.

        Empty / None targets mean "ignore this column". A repeated source
        header keeps the last assignment (operator edits win).
        """
        merged: dict[str, TargetField] = {}
        for source, target in pairs:
            source = str(source)
            if target is None or (isinstance(target, str) and not target.strip()):
                merged.pop(source, None)
                continue
            merged[source] = _coerce_target(target)
        return cls(entries=tuple(merged.items()))

    def __getitem__(self, key: str) -> TargetField:
        for source, target in self.entries:
            if source == key:
                return target
        raise KeyError(key)

    def __iter__(self) -> Iterator[str]:
        return (source for source, _ in self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def targets(self) -> set[TargetField]:
        return {target for _, target in self.entries}

    def sources_for(self, target: TargetField) -> list[str]:
        return [source for source, t in self.entries if t == target]

    def validation_errors(self) -> list[str]:
        """Operator-facing complaints; empty list means the mapping is importable."""
        targets = self.targets
        problems: list[str] = []
        missing = [f.value for f in REQUIRED_FIELDS if f not in targets]
        if missing:
            problems.append(f"required fields not mapped: {', '.join(missing)}")
        has_pair = all(f in targets for f in COORDINATE_FIELDS)
        if not has_pair and TargetField.COORDINATES_COMBINED not in targets:
            problems.append(
                "coordinates not mapped: map both latitude and longitude, "
                "or coordinates_combined"
            )
        return problems

    @property
    def is_valid(self) -> bool:
        return not self.validation_errors()

    def to_dict(self) -> dict[str, str]:
        return {source: target.value for source, target in self.entries}
