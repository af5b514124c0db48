"""Great-circle distance helpers for proximity targeting."""

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

# Mean Earth radius (km)
EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class GeoPoint:
    """A latitude/longitude pair in decimal degrees."""
    lat: float
    lng: float

    @classmethod
    def from_dict(cls, value: Any) -> Optional["GeoPoint"]:
        """Build a point from ``{"lat": .., "lng": ..}`` (``lon`` also accepted).

        Returns None when the value is missing, not a mapping, or holds
        coordinates outside the valid range.
        """
        if isinstance(value, GeoPoint):
            return value
        if not isinstance(value, dict):
            return None
        lng = value.get("lng", value.get("lon"))
        try:
            lat_f = float(value.get("lat"))
            lng_f = float(lng)
        except (TypeError, ValueError):
            return None
        if math.isnan(lat_f) or math.isnan(lng_f):
            return None
        if not (-90.0 <= lat_f <= 90.0 and -180.0 <= lng_f <= 180.0):
            return None
        return cls(lat_f, lng_f)

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance between two points in kilometres."""
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat))
        * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def within_radius(center: GeoPoint, point: GeoPoint, radius_km: float) -> bool:
    return haversine_km(center, point) <= radius_km
