from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass

from ..models.property import ExistingProperty, NormalizedProperty

"""Duplicate detection.

A candidate duplicates an existing active property when the names match
(case-insensitive, trimmed) or when it lies strictly closer than the radius.
The existing set is whatever the store returns at check time, so rows
persisted earlier in the same run are seen too.
"""

__all__ = [
    "EARTH_RADIUS_M",
    "DEFAULT_RADIUS_M",
    "Classification",
    "haversine_m",
    "classify",
    "bounding_box",
    "lng_in_range",
]

EARTH_RADIUS_M = 6_371_000.0
DEFAULT_RADIUS_M = 100.0


@dataclass(frozen=True)
class Classification:
    is_duplicate: bool
    matched_on: tuple[str, ...] = ()  # "name" / "location"
    reference: ExistingProperty | None = None
    distance_m: float | None = None

    @property
    def reason(self) -> str:
        if not self.is_duplicate or self.reference is None:
            return ""
        parts = []
        if "name" in self.matched_on:
            parts.append(f"same name as {self.reference.name!r}")
        if "location" in self.matched_on and self.distance_m is not None:
            parts.append(f"{self.distance_m:.1f} m from {self.reference.name!r}")
        return "duplicate: " + ", ".join(parts)


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def _wrap_lng(lng: float) -> float:
    wrapped = (lng + 180.0) % 360.0 - 180.0
    # +180 はそのまま残す (-180 に折り返さない)
    return 180.0 if wrapped == -180.0 and lng > 0 else wrapped


def bounding_box(lat: float, lng: float, radius_m: float) -> tuple[float, float, float, float]:
    """(min_lat, max_lat, min_lng, max_lng) enclosing the radius; used to prefilter queries.

    Near the antimeridian the longitude range wraps and ``min_lng > max_lng``;
    test membership with :func:`lng_in_range`.
    """
    dlat = math.degrees(radius_m / EARTH_RADIUS_M)
    cos_lat = math.cos(math.radians(lat))
    dlng = 180.0 if cos_lat < 1e-9 else math.degrees(radius_m / (EARTH_RADIUS_M * cos_lat))
    if dlng >= 180.0:
        return lat - dlat, lat + dlat, -180.0, 180.0
    return lat - dlat, lat + dlat, _wrap_lng(lng - dlng), _wrap_lng(lng + dlng)


def lng_in_range(lng: float, min_lng: float, max_lng: float) -> bool:
    if min_lng <= max_lng:
        return min_lng <= lng <= max_lng
    return lng >= min_lng or lng <= max_lng


def _name_key(name: str) -> str:
    return name.strip().casefold()


def classify(
    candidate: NormalizedProperty,
    existing: Iterable[ExistingProperty],
    radius_m: float = DEFAULT_RADIUS_M,
) -> Classification:
    """Classify ``candidate`` against ``existing``.

    The first match in store order is reported. A name match outranks a
    proximity-only match.
    """
    key = _name_key(candidate.name)
    best: Classification | None = None
    for other in existing:
        matched: list[str] = []
        if _name_key(other.name) == key:
            matched.append("name")
        distance = haversine_m(candidate.latitude, candidate.longitude, other.latitude, other.longitude)
        if distance < radius_m:
            matched.append("location")
        if not matched:
            continue
        found = Classification(True, tuple(matched), other, distance)
        if "name" in matched:
            return found
        if best is None:
            best = found
    return best or Classification(False)
