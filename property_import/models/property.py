from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date
from typing import Any

"""Property domain models.

NormalizedProperty is the canonical typed record produced by the row
normalizer; it is consumed by the duplicate detector and then persisted.
ExistingProperty is the slice of an already persisted property the duplicate
detector needs. UserProfile is what the importer learns about the operator
from the external auth collaborator.
"""

__all__ = [
    "NormalizedProperty",
    "ExistingProperty",
    "UserProfile",
    "LATITUDE_RANGE",
    "LONGITUDE_RANGE",
]

LATITUDE_RANGE = (-90.0, 90.0)
LONGITUDE_RANGE = (-180.0, 180.0)


@dataclass(frozen=True)
class NormalizedProperty:
    """Canonical property record.

    Never constructed with missing required fields or out-of-range coordinates:
    ``__post_init__`` raises ValueError in that case.
    """
    name: str
    cidade: str
    owner_name: str
    latitude: float
    longitude: float
    cadastro_date: date
    bairro: str | None = None
    owner_phone: str | None = None
    owner_rg: str | None = None
    equipe: str | None = None
    numero_placa: str | None = None
    description: str | None = None
    contact_name: str | None = None
    contact_phone: str | None = None
    contact_observations: str | None = None
    observations: str | None = None
    activity: str | None = None
    has_cameras: bool = False
    cameras_count: int | None = None
    has_wifi: bool = False
    wifi_password: str | None = None
    residents_count: int | None = None

    def __post_init__(self) -> None:
        missing = [f for f in ("name", "cidade", "owner_name") if not (getattr(self, f) or "").strip()]
        if missing:
            raise ValueError(f"missing required fields: {', '.join(missing)}")
        lat_lo, lat_hi = LATITUDE_RANGE
        lng_lo, lng_hi = LONGITUDE_RANGE
        if not lat_lo <= self.latitude <= lat_hi:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not lng_lo <= self.longitude <= lng_hi:
            raise ValueError(f"longitude out of range: {self.longitude}")
        for count_field in ("cameras_count", "residents_count"):
            value = getattr(self, count_field)
            if value is not None and value < 0:
                raise ValueError(f"{count_field} must be >= 0: {value}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ExistingProperty:
    """Already persisted (active) property, as seen by duplicate detection."""
    id: str
    name: str
    latitude: float
    longitude: float


@dataclass(frozen=True)
class UserProfile:
    """Operator profile as reported by the auth collaborator.

    crpm / batalhao / cia are opaque organisational scope values.
    """
    id: str
    full_name: str
    role: str
    crpm: str | None = None
    batalhao: str | None = None
    cia: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
