"""WGS84 coordinate helpers shared by the engine and the operator tools.

Geofence definitions and GPS data points carry coordinates as
[longitude, latitude] pairs; everything inside the engine uses
GeoPoint(lat, lon) so the axis order is fixed at the boundary.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

EARTH_RADIUS_M = 6_371_000.0
METERS_PER_DEG_LAT = 111_320.0


@dataclass(frozen=True, slots=True)
class GeoPoint:
    """WGS84 coordinate."""
    lat: float  # degrees, [-90, 90]
    lon: float  # degrees, [-180, 180]

    @classmethod
    def from_lnglat(cls, pair) -> GeoPoint:
        """Build from a [lng, lat] pair."""
        return cls(lat=float(pair[1]), lon=float(pair[0]))

    def to_lnglat(self) -> list[float]:
        return [self.lon, self.lat]

    @property
    def is_finite(self) -> bool:
        return math.isfinite(self.lat) and math.isfinite(self.lon)

    @property
    def in_range(self) -> bool:
        return self.is_finite and -90.0 <= self.lat <= 90.0 and -180.0 <= self.lon <= 180.0


def haversine_m(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance between two GPS points in meters."""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    dlat = lat2 - lat1
    dlon = math.radians(b.lon - a.lon)
    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def offset_point(origin: GeoPoint, north_m: float, east_m: float) -> GeoPoint:
    """Shift a point by a local north/east displacement in meters.

    Flat-earth approximation, fine for the few-kilometer offsets used
    when generating tracks around a geofence.
    """
    dlat = north_m / METERS_PER_DEG_LAT
    dlon = east_m / (METERS_PER_DEG_LAT * math.cos(math.radians(origin.lat)))
    return GeoPoint(lat=origin.lat + dlat, lon=origin.lon + dlon)


def destination_point(origin: GeoPoint, bearing_deg: float, distance_m: float) -> GeoPoint:
    """Point reached travelling distance_m along a great circle from origin."""
    delta = distance_m / EARTH_RADIUS_M
    theta = math.radians(bearing_deg)
    lat1 = math.radians(origin.lat)
    lon1 = math.radians(origin.lon)

    lat2 = math.asin(
        math.sin(lat1) * math.cos(delta)
        + math.cos(lat1) * math.sin(delta) * math.cos(theta)
    )
    lon2 = lon1 + math.atan2(
        math.sin(theta) * math.sin(delta) * math.cos(lat1),
        math.cos(delta) - math.sin(lat1) * math.sin(lat2),
    )
    lon_deg = (math.degrees(lon2) + 540.0) % 360.0 - 180.0
    return GeoPoint(lat=math.degrees(lat2), lon=lon_deg)
