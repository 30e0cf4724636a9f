"""Alert construction and fan-out to sinks.

Building an alert is pure. Delivery sends it to every sink
concurrently, each bounded by a timeout; one sink failing never
stops the others and never raises to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from engine.models import Alert, RuleType, ViolationKind
from engine.rules import describe
from engine.sinks import AlertSink, send_with_timeout
from shared.geo_math import GeoPoint

logger = logging.getLogger(__name__)


_FOUR_PLACES = Decimal("0.0001")


def _fixed4(value: float) -> str:
    # exact binary value, ties away from zero
    if value == 0:
        value = 0.0
    return str(Decimal(value).quantize(_FOUR_PLACES, rounding=ROUND_HALF_UP))


def format_location(position: GeoPoint) -> str:
    """'lat, lng' with four decimals."""
    return f"{_fixed4(position.lat)}, {_fixed4(position.lon)}"


def format_message(
    vehicle_name: str,
    geofence_name: str,
    rule_type: RuleType,
    kind: ViolationKind,
) -> str:
    return (
        f"VIOLATION: Vehicle {vehicle_name} {describe(kind)} "
        f"geofence {geofence_name} ({rule_type.value})"
    )


@dataclass(slots=True)
class DeliveryReport:
    """Outcome of delivering one alert."""
    alert: Alert
    delivered: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class AlertEmitter:
    """Packages violations into alerts and hands them to the sinks."""

    def __init__(self, sinks: Sequence[AlertSink], timeout_s: float = 5.0):
        self._sinks = list(sinks)
        self._timeout_s = timeout_s

    @property
    def sinks(self) -> list[AlertSink]:
        return list(self._sinks)

    def build(
        self,
        vehicle_id: int,
        kind: ViolationKind,
        vehicle_name: str,
        geofence_name: str,
        rule_type: RuleType,
        position: GeoPoint,
        now: datetime,
        geofence_id: int | None = None,
    ) -> Alert:
        return Alert(
            vehicle_id=vehicle_id,
            alert_type=kind,
            message=format_message(vehicle_name, geofence_name, rule_type, kind),
            location=format_location(position),
            timestamp=now,
            geofence_id=geofence_id,
        )

    async def deliver(self, alert: Alert) -> DeliveryReport:
        """Send to all sinks. Failures are logged and reported, not raised."""
        report = DeliveryReport(alert=alert)
        if not self._sinks:
            return report

        results = await asyncio.gather(
            *(self._send_one(sink, alert) for sink in self._sinks),
        )
        for sink, error in zip(self._sinks, results):
            if error is None:
                report.delivered.append(sink.name)
            else:
                report.failed[sink.name] = error
        return report

    async def _send_one(self, sink: AlertSink, alert: Alert) -> str | None:
        label = f"{alert.alert_type.value} for vehicle {alert.vehicle_id}"
        return await send_with_timeout(sink, alert, self._timeout_s, label)

    async def emit(
        self,
        vehicle_id: int,
        kind: ViolationKind,
        vehicle_name: str,
        geofence_name: str,
        rule_type: RuleType,
        position: GeoPoint,
        now: datetime,
        geofence_id: int | None = None,
    ) -> Alert:
        """Build an alert and deliver it before returning it."""
        alert = self.build(vehicle_id, kind, vehicle_name, geofence_name,
                           rule_type, position, now, geofence_id)
        await self.deliver(alert)
        return alert

    async def close(self) -> None:
        """Close sinks that hold resources."""
        for sink in self._sinks:
            close = getattr(sink, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning("Error closing sink %s: %s", sink.name, e)
