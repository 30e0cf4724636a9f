"""Vehicle and geofence rosters: parsing and sources.

Roster records arrive as JSON-shaped dicts from the fleet backend.
This module turns them into engine models once, at the boundary:
ids become ints, timestamps become aware datetimes, coordinates
become GeoPoints. A record that cannot be parsed is skipped with a
warning; a roster that cannot be fetched at all raises SnapshotError.

Accepted shapes:
    vehicle:  {vehicle_id, name, geofence_id, online, gps_id,
               lastPosition: {lat, lng, timestamp}}
    geofence: {geofence_id, name, rule_type, status, type|kind,
               definition|geometry: {center: [lng, lat], radius|radiusMeters}
                                   | {ring: [[lng, lat], ...]}
                                   | {coordinates: [[[lng, lat], ...]]}}
    position: {gps_id, latitude, longitude, timestamp, speed}
camelCase spellings of the same keys are accepted as well.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

import aiohttp

from engine.models import (
    CircleGeometry,
    FleetSnapshot,
    Geofence,
    GeofenceKind,
    GeofenceStatus,
    Geometry,
    PolygonGeometry,
    PositionSample,
    RuleType,
    Vehicle,
    VehicleStatus,
)
from shared.geo_math import GeoPoint

logger = logging.getLogger(__name__)

MOVING_SPEED_THRESHOLD = 2.0


class RosterError(ValueError):
    """A roster record is malformed."""


class SnapshotError(RuntimeError):
    """The roster could not be fetched for this tick."""


def _pick(record: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in record and record[key] is not None:
            return record[key]
    return default


def parse_id(value: Any, what: str = "id") -> int:
    """Canonical integer id from an int or a numeric string."""
    if isinstance(value, bool):
        raise RosterError(f"Invalid {what}: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise RosterError(f"Invalid {what}: {value!r}")


def parse_float(value: Any) -> float:
    """Finite float from a number or numeric string."""
    if isinstance(value, bool) or value is None:
        raise RosterError(f"Invalid number: {value!r}")
    try:
        result = float(value)
    except (TypeError, ValueError) as e:
        raise RosterError(f"Invalid number: {value!r}") from e
    if not math.isfinite(result):
        raise RosterError(f"Non-finite number: {value!r}")
    return result


def parse_flag(value: Any) -> bool | None:
    """Strict true/false/1/0; None for anything else."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("true", "1"):
            return True
        if text in ("false", "0"):
            return False
    return None


def parse_timestamp(value: Any) -> datetime:
    """Aware UTC datetime from ISO 8601 text; naive values are taken as UTC."""
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(text)
        except ValueError as e:
            raise RosterError(f"Invalid timestamp: {value!r}") from e
    else:
        raise RosterError(f"Invalid timestamp: {value!r}")

    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def parse_position(record: dict | None) -> PositionSample | None:
    """Position sample, or None when absent or unusable."""
    if not isinstance(record, dict):
        return None
    try:
        lat = parse_float(_pick(record, "lat", "latitude"))
        lon = parse_float(_pick(record, "lng", "lon", "longitude"))
        ts = parse_timestamp(_pick(record, "timestamp", "timestampISO8601", "time"))
    except RosterError as e:
        logger.debug("Unusable position %r: %s", record, e)
        return None

    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        logger.debug("Position out of range: %.6f, %.6f", lat, lon)
        return None

    speed = _pick(record, "speed")
    try:
        speed = parse_float(speed) if speed is not None else None
    except RosterError:
        speed = None
    return PositionSample(lat=lat, lon=lon, timestamp=ts, speed=speed)


def _parse_vertex(pair: Any) -> GeoPoint:
    # unusable vertices become NaN so the ring fails validation
    try:
        return GeoPoint(lat=parse_float(pair[1]), lon=parse_float(pair[0]))
    except (RosterError, TypeError, IndexError, KeyError):
        return GeoPoint(lat=math.nan, lon=math.nan)


def parse_geometry(kind: GeofenceKind, definition: Any) -> Geometry | None:
    """Geometry for the given kind, or None if the definition is unusable.

    The result may still be invalid (e.g. zero radius); callers check
    Geofence.is_valid.
    """
    if isinstance(definition, str):
        try:
            definition = json.loads(definition)
        except json.JSONDecodeError:
            return None
    if not isinstance(definition, dict):
        return None

    if kind is GeofenceKind.CIRCLE:
        center_raw = definition.get("center")
        center = None
        if isinstance(center_raw, (list, tuple)) and len(center_raw) >= 2:
            point = _parse_vertex(center_raw)
            center = point if point.is_finite else None
        radius = _pick(definition, "radiusMeters", "radius_meters", "radius")
        try:
            radius_m = parse_float(radius) if radius is not None else None
        except RosterError:
            radius_m = None
        return CircleGeometry(center=center, radius_m=radius_m)

    ring_raw = definition.get("ring")
    if ring_raw is None:
        coords = definition.get("coordinates")
        if isinstance(coords, list) and coords and isinstance(coords[0], list):
            ring_raw = coords[0]
    if not isinstance(ring_raw, list):
        return None

    ring = [_parse_vertex(pair) for pair in ring_raw]
    if len(ring) > 1 and ring[0] == ring[-1]:
        ring = ring[:-1]
    return PolygonGeometry(ring=tuple(ring))


def parse_geofence(record: dict) -> Geofence:
    if not isinstance(record, dict):
        raise RosterError(f"Geofence record is not an object: {record!r}")

    geofence_id = parse_id(_pick(record, "geofence_id", "geofenceId", "id"), "geofence id")

    rule_raw = _pick(record, "rule_type", "ruleType")
    try:
        rule_type = RuleType(str(rule_raw).upper())
    except ValueError as e:
        raise RosterError(f"Geofence {geofence_id}: unknown rule type {rule_raw!r}") from e

    kind_raw = _pick(record, "kind", "type")
    try:
        kind = GeofenceKind(str(kind_raw).lower())
    except ValueError as e:
        raise RosterError(f"Geofence {geofence_id}: unknown kind {kind_raw!r}") from e

    status_raw = str(_pick(record, "status", default="active")).lower()
    status = GeofenceStatus.ACTIVE if status_raw == "active" else GeofenceStatus.INACTIVE

    owner = _pick(record, "owner_id", "ownerId", "user_id")
    try:
        owner_id = parse_id(owner, "owner id") if owner is not None else None
    except RosterError:
        owner_id = None

    geometry = parse_geometry(kind, _pick(record, "geometry", "definition"))
    return Geofence(
        geofence_id=geofence_id,
        name=str(_pick(record, "name", default=f"Geofence {geofence_id}")),
        rule_type=rule_type,
        kind=kind,
        geometry=geometry,
        status=status,
        owner_id=owner_id,
    )


def parse_vehicle(record: dict) -> Vehicle:
    if not isinstance(record, dict):
        raise RosterError(f"Vehicle record is not an object: {record!r}")

    vehicle_id = parse_id(_pick(record, "vehicle_id", "vehicleId", "id"), "vehicle id")

    assigned = _pick(record, "geofence_id", "assignedGeofenceId", "geofenceId")
    geofence_id = None
    if assigned is not None and assigned != "":
        try:
            geofence_id = parse_id(assigned, "geofence id")
        except RosterError as e:
            logger.warning("Vehicle %d: %s, treating as unassigned", vehicle_id, e)

    online_raw = _pick(record, "online", "isOnline")
    online = parse_flag(online_raw)
    if online is None and online_raw is not None:
        logger.debug("Vehicle %d: unrecognised online flag %r, using sample age",
                     vehicle_id, online_raw)
    gps_id = _pick(record, "gps_id", "gpsId")
    owner = _pick(record, "owner_id", "user_id")
    try:
        owner_id = parse_id(owner, "owner id") if owner is not None else None
    except RosterError:
        owner_id = None

    return Vehicle(
        vehicle_id=vehicle_id,
        name=str(_pick(record, "name", default="")),
        geofence_id=geofence_id,
        online=online,
        position=parse_position(_pick(record, "lastPosition", "last_position", "position")),
        gps_id=str(gps_id) if gps_id is not None else None,
        owner_id=owner_id,
    )


def latest_positions(records: Iterable[dict]) -> dict[str, PositionSample]:
    """Newest usable sample per gps_id."""
    latest: dict[str, PositionSample] = {}
    for record in records:
        if not isinstance(record, dict):
            continue
        gps_id = _pick(record, "gps_id", "gpsId")
        if gps_id is None:
            continue
        sample = parse_position(record)
        if sample is None:
            continue
        key = str(gps_id)
        current = latest.get(key)
        if current is None or sample.timestamp > current.timestamp:
            latest[key] = sample
    return latest


def build_snapshot(
    vehicle_records: Iterable[dict],
    geofence_records: Iterable[dict],
    position_records: Iterable[dict] | None = None,
) -> FleetSnapshot:
    """Parse raw roster records, skipping malformed ones."""
    snapshot = FleetSnapshot()

    for record in geofence_records:
        try:
            geofence = parse_geofence(record)
        except RosterError as e:
            logger.warning("Skipping geofence record: %s", e)
            continue
        if not geofence.is_valid:
            logger.warning("Geofence %d (%s) has invalid geometry and will not be evaluated",
                           geofence.geofence_id, geofence.name)
        snapshot.geofences[geofence.geofence_id] = geofence

    positions = latest_positions(position_records) if position_records is not None else {}

    seen: set[int] = set()
    for record in vehicle_records:
        try:
            vehicle = parse_vehicle(record)
        except RosterError as e:
            logger.warning("Skipping vehicle record: %s", e)
            continue
        if vehicle.vehicle_id in seen:
            logger.warning("Duplicate vehicle id %d in roster, keeping first", vehicle.vehicle_id)
            continue
        seen.add(vehicle.vehicle_id)

        sample = positions.get(vehicle.gps_id) if vehicle.gps_id is not None else None
        if sample is not None and (
            vehicle.position is None or sample.timestamp > vehicle.position.timestamp
        ):
            vehicle = Vehicle(
                vehicle_id=vehicle.vehicle_id,
                name=vehicle.name,
                geofence_id=vehicle.geofence_id,
                online=vehicle.online,
                position=sample,
                gps_id=vehicle.gps_id,
                owner_id=vehicle.owner_id,
            )
        snapshot.vehicles.append(vehicle)

    return snapshot


def is_online(vehicle: Vehicle, now: datetime, freshness: timedelta) -> bool:
    """Online = not flagged offline and latest sample younger than freshness."""
    if vehicle.online is False or vehicle.position is None:
        return False
    return now - vehicle.position.timestamp < freshness


def classify_status(
    vehicle: Vehicle,
    now: datetime,
    freshness: timedelta,
    moving_speed: float = MOVING_SPEED_THRESHOLD,
) -> VehicleStatus:
    if not is_online(vehicle, now, freshness):
        return VehicleStatus.OFFLINE
    speed = vehicle.position.speed or 0.0
    return VehicleStatus.MOVING if speed > moving_speed else VehicleStatus.PARKED


def unwrap_items(payload: Any, what: str) -> list:
    """Accept a bare list or a {"data": [...]} envelope."""
    if isinstance(payload, dict) and "data" in payload:
        payload = payload["data"]
    if not isinstance(payload, list):
        raise SnapshotError(f"{what}: expected a list of records, got {type(payload).__name__}")
    return payload


class RosterSource(Protocol):
    async def fetch(self) -> FleetSnapshot: ...


class StaticRosterSource:
    """Serves fixed roster records; update() swaps them between ticks."""

    def __init__(
        self,
        vehicles: list[dict] | None = None,
        geofences: list[dict] | None = None,
        positions: list[dict] | None = None,
    ):
        self.vehicles = list(vehicles or [])
        self.geofences = list(geofences or [])
        self.positions = positions

    def update(
        self,
        vehicles: list[dict] | None = None,
        geofences: list[dict] | None = None,
        positions: list[dict] | None = None,
    ) -> None:
        if vehicles is not None:
            self.vehicles = list(vehicles)
        if geofences is not None:
            self.geofences = list(geofences)
        if positions is not None:
            self.positions = positions

    async def fetch(self) -> FleetSnapshot:
        return build_snapshot(self.vehicles, self.geofences, self.positions)


class FileRosterSource:
    """Reads {"vehicles": [...], "geofences": [...], "positions": [...]} each fetch."""

    def __init__(self, path: Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    async def fetch(self) -> FleetSnapshot:
        try:
            data = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise SnapshotError(f"Cannot read roster file {self._path}: {e}") from e
        if not isinstance(data, dict):
            raise SnapshotError(f"Roster file {self._path} must hold a JSON object")

        positions = data.get("positions")
        return build_snapshot(
            unwrap_items(data.get("vehicles", []), "vehicles"),
            unwrap_items(data.get("geofences", []), "geofences"),
            unwrap_items(positions, "positions") if positions is not None else None,
        )


class HttpRosterSource:
    """Fetches the rosters from the fleet backend over HTTP.

    All endpoints are requested concurrently; any failure fails the
    whole fetch so a partial snapshot is never evaluated.
    """

    def __init__(
        self,
        vehicles_url: str,
        geofences_url: str,
        positions_url: str | None = None,
        auth_token: str | None = None,
        timeout_s: float = 10.0,
    ):
        self._vehicles_url = vehicles_url
        self._geofences_url = geofences_url
        self._positions_url = positions_url
        self._auth_token = auth_token
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session: aiohttp.ClientSession | None = None

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        return headers

    async def _get_json(self, url: str) -> Any:
        async with self._session.get(url, headers=self._headers()) as resp:
            if resp.status != 200:
                raise SnapshotError(f"GET {url} returned HTTP {resp.status}")
            try:
                return await resp.json(content_type=None)
            except (json.JSONDecodeError, UnicodeDecodeError, aiohttp.ContentTypeError) as e:
                raise SnapshotError(f"GET {url} returned invalid JSON: {e}") from e

    async def fetch(self) -> FleetSnapshot:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)

        urls = [self._vehicles_url, self._geofences_url]
        if self._positions_url:
            urls.append(self._positions_url)

        try:
            payloads = await asyncio.gather(*(self._get_json(u) for u in urls))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SnapshotError(f"Roster fetch failed: {e or type(e).__name__}") from e

        positions = unwrap_items(payloads[2], "positions") if len(payloads) > 2 else None
        return build_snapshot(
            unwrap_items(payloads[0], "vehicles"),
            unwrap_items(payloads[1], "geofences"),
            positions,
        )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
