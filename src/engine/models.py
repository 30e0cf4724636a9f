"""Core records exchanged between the engine's stages.

Ids are canonical ints from the moment a roster record is parsed;
nothing downstream compares raw roster values.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from shared.geo_math import GeoPoint


class RuleType(str, Enum):
    """Which containment transitions count as violations."""
    FORBIDDEN = "FORBIDDEN"   # entering is a violation
    STAY_IN = "STAY_IN"       # leaving is a violation
    STANDARD = "STANDARD"     # any crossing is reported


class GeofenceKind(str, Enum):
    CIRCLE = "circle"
    POLYGON = "polygon"


class GeofenceStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ViolationKind(str, Enum):
    VIOLATION_ENTER = "violation_enter"
    VIOLATION_EXIT = "violation_exit"


class EventType(str, Enum):
    """Containment transitions recorded in the event log."""
    ENTER = "enter"
    EXIT = "exit"
    VIOLATION_ENTER = "violation_enter"
    VIOLATION_EXIT = "violation_exit"


class VehicleStatus(str, Enum):
    MOVING = "moving"
    PARKED = "parked"
    OFFLINE = "offline"


@dataclass(frozen=True, slots=True)
class CircleGeometry:
    """Circle defined by center + radius in meters."""
    center: GeoPoint | None
    radius_m: float | None

    @property
    def is_valid(self) -> bool:
        if self.center is None or self.radius_m is None:
            return False
        return (
            self.center.is_finite
            and math.isfinite(self.radius_m)
            and self.radius_m > 0
        )


@dataclass(frozen=True, slots=True)
class PolygonGeometry:
    """Polygon ring, implicitly closed (last vertex connects to first)."""
    ring: tuple[GeoPoint, ...]

    @property
    def is_valid(self) -> bool:
        if len(self.ring) < 3:
            return False
        if not all(p.is_finite for p in self.ring):
            return False
        return len(set(self.ring)) >= 3


Geometry = CircleGeometry | PolygonGeometry


@dataclass(frozen=True, slots=True)
class Geofence:
    """A named region with a containment rule."""
    geofence_id: int
    name: str
    rule_type: RuleType
    kind: GeofenceKind
    geometry: Geometry | None
    status: GeofenceStatus = GeofenceStatus.ACTIVE
    owner_id: int | None = None

    @property
    def is_active(self) -> bool:
        return self.status is GeofenceStatus.ACTIVE

    @property
    def is_valid(self) -> bool:
        """True when the geometry matches the kind and is well-formed."""
        if self.geometry is None:
            return False
        if self.kind is GeofenceKind.CIRCLE and not isinstance(self.geometry, CircleGeometry):
            return False
        if self.kind is GeofenceKind.POLYGON and not isinstance(self.geometry, PolygonGeometry):
            return False
        return self.geometry.is_valid

    @property
    def evaluable(self) -> bool:
        return self.is_active and self.is_valid


@dataclass(frozen=True, slots=True)
class PositionSample:
    """Latest GPS data point reported for a vehicle."""
    lat: float
    lon: float
    timestamp: datetime
    speed: float | None = None

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(lat=self.lat, lon=self.lon)

    def age_s(self, now: datetime) -> float:
        return (now - self.timestamp).total_seconds()


@dataclass(frozen=True, slots=True)
class Vehicle:
    """One roster entry as seen at the start of a tick."""
    vehicle_id: int
    name: str = ""
    geofence_id: int | None = None
    online: bool | None = None   # None: derive from sample freshness
    position: PositionSample | None = None
    gps_id: str | None = None
    owner_id: int | None = None

    @property
    def display_name(self) -> str:
        return self.name or f"Vehicle (ID: {self.vehicle_id})"


@dataclass(slots=True)
class FleetSnapshot:
    """Vehicles and geofences fetched for one tick."""
    vehicles: list[Vehicle] = field(default_factory=list)
    geofences: dict[int, Geofence] = field(default_factory=dict)
    fetched_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class Alert:
    """Append-only violation record handed to the sinks."""
    vehicle_id: int
    alert_type: ViolationKind
    message: str
    location: str
    timestamp: datetime
    geofence_id: int | None = None

    def to_dict(self) -> dict:
        data = {
            "vehicle_id": self.vehicle_id,
            "alert_type": self.alert_type.value,
            "message": self.message,
            "location": self.location,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.geofence_id is not None:
            data["geofence_id"] = self.geofence_id
        return data


@dataclass(frozen=True, slots=True)
class GeofenceEvent:
    """One containment transition, violating or not."""
    vehicle_id: int
    geofence_id: int
    event_type: EventType
    timestamp: datetime
    position: GeoPoint
    vehicle_name: str = ""
    geofence_name: str = ""
    rule_type: RuleType = RuleType.STANDARD

    @property
    def event_id(self) -> str:
        ms = int(self.timestamp.timestamp() * 1000)
        return f"{self.vehicle_id}-{self.geofence_id}-{self.event_type.value}-{ms}"

    @property
    def is_violation(self) -> bool:
        return self.event_type in (EventType.VIOLATION_ENTER, EventType.VIOLATION_EXIT)

    def to_dict(self) -> dict:
        return {
            "vehicle_id": self.vehicle_id,
            "geofence_id": self.geofence_id,
            "event": self.event_type.value,
            "event_timestamp": self.timestamp.isoformat(),
        }
