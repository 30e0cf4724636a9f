"""Geofence event log.

Every containment transition is recorded, including crossings that
break no rule (entering a STAY_IN zone, leaving a FORBIDDEN one).
Events bypass the alert cooldown. They are kept in a bounded in-memory
window and, when event sinks are configured, posted to the backend's
geofence event collection.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, deque
from collections.abc import Sequence
from datetime import datetime

from engine.models import EventType, Geofence, GeofenceEvent, Vehicle
from engine.sinks import AlertSink, send_with_timeout
from shared.geo_math import GeoPoint

logger = logging.getLogger(__name__)


class EventLog:
    """Builds, keeps and forwards geofence events.

    Usage:
        events = EventLog([HttpSink(events_url, name="events-api")])
        event = events.record(vehicle, geofence, EventType.ENTER, point, now)
        await events.deliver(event)
    """

    def __init__(
        self,
        sinks: Sequence[AlertSink] = (),
        timeout_s: float = 5.0,
        keep: int = 1000,
    ):
        self._sinks = list(sinks)
        self._timeout_s = timeout_s
        self._recent: deque[GeofenceEvent] = deque(maxlen=keep)
        self._counts: Counter[EventType] = Counter()

    @property
    def has_sinks(self) -> bool:
        return bool(self._sinks)

    @property
    def recent(self) -> list[GeofenceEvent]:
        return list(self._recent)

    def count(self, event_type: EventType | None = None) -> int:
        if event_type is None:
            return sum(self._counts.values())
        return self._counts[event_type]

    def record(
        self,
        vehicle: Vehicle,
        geofence: Geofence,
        event_type: EventType,
        position: GeoPoint,
        now: datetime,
    ) -> GeofenceEvent:
        event = GeofenceEvent(
            vehicle_id=vehicle.vehicle_id,
            geofence_id=geofence.geofence_id,
            event_type=event_type,
            timestamp=now,
            position=position,
            vehicle_name=vehicle.display_name,
            geofence_name=geofence.name,
            rule_type=geofence.rule_type,
        )
        self._recent.append(event)
        self._counts[event_type] += 1
        logger.info("Event %s: vehicle %s %s geofence %s",
                    event.event_id, event.vehicle_name, event_type.value, event.geofence_name)
        return event

    async def deliver(self, event: GeofenceEvent) -> bool:
        """Post to every event sink. True if all accepted it."""
        if not self._sinks:
            return True
        label = f"event {event.event_id}"
        errors = await asyncio.gather(
            *(send_with_timeout(sink, event, self._timeout_s, label) for sink in self._sinks),
        )
        return all(error is None for error in errors)

    async def close(self) -> None:
        for sink in self._sinks:
            close = getattr(sink, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning("Error closing event sink %s: %s", sink.name, e)
