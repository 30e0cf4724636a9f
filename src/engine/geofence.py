"""Point-in-geofence tests.

Circles use the haversine distance to the center with an inclusive
boundary. Polygons use the even-odd rule over the ring in plain
lon/lat space; a point exactly on an edge may resolve either way.

Every function here is pure and never raises on malformed geometry:
an unevaluable geofence simply contains nothing.
"""

from __future__ import annotations

import logging

import numpy as np

from engine.models import CircleGeometry, Geofence, PolygonGeometry
from shared.geo_math import GeoPoint, haversine_m

logger = logging.getLogger(__name__)


def point_in_circle(point: GeoPoint, circle: CircleGeometry) -> bool:
    """Check if a point lies within radius_m of the center."""
    if not circle.is_valid:
        return False
    return haversine_m(circle.center, point) <= circle.radius_m


def distance_to_boundary_m(point: GeoPoint, circle: CircleGeometry) -> float:
    """Distance from point to the circle boundary in meters.

    Positive = inside, negative = outside.
    """
    return circle.radius_m - haversine_m(circle.center, point)


def point_in_polygon(point: GeoPoint, polygon: PolygonGeometry) -> bool:
    """Even-odd ray casting along +lon from the point."""
    if not polygon.is_valid:
        return False

    ring = np.array([(p.lon, p.lat) for p in polygon.ring], dtype=np.float64)
    xi, yi = ring[:, 0], ring[:, 1]
    # previous vertex of each edge, closing the ring
    xj, yj = np.roll(xi, 1), np.roll(yi, 1)
    x, y = point.lon, point.lat

    straddles = (yi > y) != (yj > y)
    with np.errstate(divide="ignore", invalid="ignore"):
        x_cross = (xj - xi) * (y - yi) / (yj - yi) + xi
    crossings = np.count_nonzero(straddles & (x < x_cross))
    return bool(crossings % 2)


def contains_point(point: GeoPoint, geofence: Geofence) -> bool:
    """Containment test dispatching on the geofence geometry.

    Invalid or missing geometry yields False.
    """
    if not geofence.is_valid:
        logger.debug("Geofence %d has invalid geometry", geofence.geofence_id)
        return False

    geometry = geofence.geometry
    if isinstance(geometry, CircleGeometry):
        return point_in_circle(point, geometry)
    if isinstance(geometry, PolygonGeometry):
        return point_in_polygon(point, geometry)
    return False
