"""Per-vehicle position history and containment memory.

Each tracked vehicle keeps its last two positions and whether it was
inside its assigned geofence as of the previous evaluation. The
containment flag is only meaningful for the geofence it was computed
against, so a change of assignment resets the entry and the next
update is handled as a first observation.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from engine.geofence import contains_point
from engine.models import Geofence
from shared.geo_math import GeoPoint

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class VehiclePositionHistory:
    """State kept between ticks for one vehicle."""
    vehicle_id: int
    geofence_id: int | None = None
    previous_position: GeoPoint | None = None
    current_position: GeoPoint | None = None
    was_inside: bool | None = None   # None until the first containment check
    last_evaluated_at: datetime | None = None
    updates: int = 0


@dataclass(frozen=True, slots=True)
class ContainmentChange:
    """Result of one tracker update."""
    was_inside: bool
    is_inside: bool
    first_observation: bool = False

    @property
    def changed(self) -> bool:
        return self.was_inside != self.is_inside


class PositionTracker:
    """Owns the history table, keyed by canonical vehicle id.

    Usage:
        tracker = PositionTracker()
        change = tracker.update(vehicle_id, point, geofence, now)
        if change.changed:
            ...
    """

    def __init__(self):
        self._history: dict[int, VehiclePositionHistory] = {}

    def __len__(self) -> int:
        return len(self._history)

    def __contains__(self, vehicle_id: int) -> bool:
        return vehicle_id in self._history

    def get(self, vehicle_id: int) -> VehiclePositionHistory | None:
        return self._history.get(vehicle_id)

    def update(
        self,
        vehicle_id: int,
        position: GeoPoint,
        geofence: Geofence,
        now: datetime,
    ) -> ContainmentChange:
        """Record a fresh position and compare containment with last time.

        The returned was_inside is the value from before this call; the
        stored flag is then replaced by the new containment result.
        """
        history = self._history.get(vehicle_id)
        if history is None:
            history = VehiclePositionHistory(vehicle_id=vehicle_id)
            self._history[vehicle_id] = history
        elif history.geofence_id != geofence.geofence_id:
            logger.info(
                "Vehicle %d reassigned from geofence %s to %d, resetting history",
                vehicle_id, history.geofence_id, geofence.geofence_id,
            )
            history.was_inside = None
            history.previous_position = None
            history.current_position = None

        history.geofence_id = geofence.geofence_id
        history.previous_position = history.current_position
        history.current_position = position

        is_inside = contains_point(position, geofence)
        first = history.was_inside is None
        was_inside = is_inside if first else history.was_inside

        history.was_inside = is_inside
        history.last_evaluated_at = now
        history.updates += 1

        return ContainmentChange(was_inside=was_inside, is_inside=is_inside, first_observation=first)

    def reset(self, vehicle_id: int) -> None:
        """Forget a vehicle; its next update is a first observation."""
        self._history.pop(vehicle_id, None)

    def prune(self, active_ids: Iterable[int]) -> int:
        """Drop history for vehicles no longer in the roster.

        Returns the number of entries removed.
        """
        keep = set(active_ids)
        stale = [vid for vid in self._history if vid not in keep]
        for vid in stale:
            del self._history[vid]
        if stale:
            logger.debug("Pruned %d stale vehicle histories", len(stale))
        return len(stale)

    def clear(self) -> None:
        self._history.clear()
