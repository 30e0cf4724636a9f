"""Synthetic vehicle tracks for offline engine testing.

Generates straight-line drives across a circular geofence and wraps
them into a replay trace (see fleetctl.replay) so rule behavior can
be checked without a fleet backend.

Usage:
    fleetctl simulate --center -6.2088,106.8456 --radius-m 500 \
        --rule FORBIDDEN --speed 12 --output trace.json
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from shared.geo_math import GeoPoint, destination_point

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TrackPoint:
    """A single position in a simulated drive."""
    t: float    # seconds from start
    lat: float
    lon: float
    speed: float  # m/s


def generate_line(
    start: GeoPoint,
    bearing_deg: float = 0.0,
    speed_mps: float = 10.0,
    duration: float = 600.0,
    dt: float = 15.0,
) -> list[TrackPoint]:
    """Generate a straight drive sampled every dt seconds.

    Args:
        start: starting position
        bearing_deg: direction of travel (0=north, 90=east)
        speed_mps: ground speed in m/s
        duration: total time in seconds
        dt: sample interval in seconds
    """
    if dt <= 0:
        raise ValueError(f"Sample interval must be positive: {dt}")
    points = []
    t = 0.0
    while t <= duration:
        p = destination_point(start, bearing_deg, speed_mps * t)
        points.append(TrackPoint(t=t, lat=p.lat, lon=p.lon, speed=speed_mps))
        t += dt
    return points


def generate_crossing(
    center: GeoPoint,
    radius_m: float,
    bearing_deg: float = 0.0,
    speed_mps: float = 10.0,
    margin_m: float = 300.0,
    dt: float = 15.0,
) -> list[TrackPoint]:
    """Drive straight through the middle of a circle.

    Starts margin_m outside the boundary, passes the center and ends
    margin_m outside on the far side.
    """
    if speed_mps <= 0:
        raise ValueError(f"Speed must be positive to cross the geofence: {speed_mps}")
    approach = radius_m + margin_m
    start = destination_point(center, (bearing_deg + 180.0) % 360.0, approach)
    duration = 2 * approach / speed_mps
    return generate_line(start, bearing_deg, speed_mps, duration, dt)


def make_trace(
    track: list[TrackPoint],
    geofence: dict,
    vehicle_id: int = 1,
    vehicle_name: str = "SIM-1",
    start_time: datetime | None = None,
) -> dict:
    """Wrap a track into a replay trace with one vehicle and one geofence."""
    if start_time is None:
        start_time = datetime.now(timezone.utc).replace(microsecond=0)

    ticks = []
    for p in track:
        at = start_time + timedelta(seconds=p.t)
        ticks.append({
            "at": at.isoformat(),
            "vehicles": [{
                "vehicle_id": vehicle_id,
                "name": vehicle_name,
                "geofence_id": geofence["geofence_id"],
                "lastPosition": {
                    "lat": p.lat,
                    "lng": p.lon,
                    "timestamp": at.isoformat(),
                    "speed": p.speed,
                },
            }],
        })
    return {"geofences": [geofence], "ticks": ticks}


def circle_geofence(
    center: GeoPoint,
    radius_m: float,
    rule_type: str = "FORBIDDEN",
    geofence_id: int = 1,
    name: str = "SIM-ZONE",
) -> dict:
    """Geofence roster record for a circle."""
    return {
        "geofence_id": geofence_id,
        "name": name,
        "rule_type": rule_type,
        "status": "active",
        "type": "circle",
        "definition": {"center": center.to_lnglat(), "radius": radius_m},
    }


def save_trace(trace: dict, output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        json.dump(trace, f, indent=2)
    logger.info("Trace with %d ticks saved to %s", len(trace["ticks"]), output_path)
