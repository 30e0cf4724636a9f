"""Periodic geofence evaluation over the whole fleet.

Each tick:
1. Fetch a fresh roster snapshot (abort the tick if that fails)
2. For every online vehicle with an active, valid geofence and a
   usable position: tracker update -> rule -> cooldown -> alert
3. Hand alerts and geofence events to the sinks in the background;
   the tick does not wait for delivery

Ticks run strictly one after another. Within a tick there is no await
between a vehicle's tracker update and its cooldown decision, so the
history and cooldown tables need no locking.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Coroutine
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from engine import rules
from engine.alerts import AlertEmitter
from engine.clock import Clock, SystemClock
from engine.cooldown import CooldownManager
from engine.events import EventLog
from engine.health import HealthMonitor
from engine.models import (
    Alert,
    FleetSnapshot,
    Geofence,
    GeofenceEvent,
    Vehicle,
    ViolationKind,
)
from engine.roster import RosterSource, SnapshotError, is_online
from engine.tracker import PositionTracker

logger = logging.getLogger(__name__)

# Reasons a vehicle is not evaluated in a tick
SKIP_UNASSIGNED = "unassigned"
SKIP_OFFLINE = "offline"
SKIP_NO_POSITION = "no_position"
SKIP_UNKNOWN_GEOFENCE = "unknown_geofence"
SKIP_INACTIVE_GEOFENCE = "inactive_geofence"
SKIP_INVALID_GEOFENCE = "invalid_geofence"


@dataclass(slots=True)
class VehicleOutcome:
    """What happened to one vehicle in one tick."""
    vehicle_id: int
    evaluated: bool = False
    skip_reason: str = ""
    was_inside: bool | None = None
    is_inside: bool | None = None
    violation: ViolationKind | None = None
    suppressed: bool = False
    alert: Alert | None = None
    event: GeofenceEvent | None = None


@dataclass(slots=True)
class TickResult:
    """Summary of one tick."""
    at: datetime
    fetched: bool = True
    error: str = ""
    outcomes: list[VehicleOutcome] = field(default_factory=list)
    latency_ms: float = 0.0

    @property
    def alerts(self) -> list[Alert]:
        return [o.alert for o in self.outcomes if o.alert is not None]

    @property
    def events(self) -> list[GeofenceEvent]:
        return [o.event for o in self.outcomes if o.event is not None]

    @property
    def evaluated(self) -> int:
        return sum(1 for o in self.outcomes if o.evaluated)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if not o.evaluated)

    @property
    def suppressed(self) -> int:
        return sum(1 for o in self.outcomes if o.suppressed)


class Evaluator:
    """Runs one tick at a time over a roster source."""

    def __init__(
        self,
        source: RosterSource,
        emitter: AlertEmitter,
        clock: Clock | None = None,
        tracker: PositionTracker | None = None,
        cooldown: CooldownManager | None = None,
        health: HealthMonitor | None = None,
        events: EventLog | None = None,
        freshness: timedelta = timedelta(minutes=15),
        prune_every_ticks: int = 60,
    ):
        self._source = source
        self._emitter = emitter
        self._clock = clock if clock is not None else SystemClock()
        self._tracker = tracker if tracker is not None else PositionTracker()
        self._cooldown = cooldown if cooldown is not None else CooldownManager()
        self._health = health if health is not None else HealthMonitor()
        self._events = events if events is not None else EventLog()
        self._freshness = freshness
        self._prune_every = prune_every_ticks
        self._ticks = 0
        self._pending: set[asyncio.Task] = set()

    @property
    def tracker(self) -> PositionTracker:
        return self._tracker

    @property
    def cooldown(self) -> CooldownManager:
        return self._cooldown

    @property
    def health(self) -> HealthMonitor:
        return self._health

    @property
    def events(self) -> EventLog:
        return self._events

    @property
    def pending_deliveries(self) -> int:
        return len(self._pending)

    def evaluate_vehicle(
        self,
        vehicle: Vehicle,
        geofences: dict[int, Geofence],
        now: datetime,
    ) -> VehicleOutcome:
        """Run one vehicle through tracker, rules and cooldown.

        Builds the alert but does not deliver it. Skipped vehicles
        leave their history untouched.
        """
        outcome = VehicleOutcome(vehicle_id=vehicle.vehicle_id)

        if vehicle.geofence_id is None:
            outcome.skip_reason = SKIP_UNASSIGNED
            return outcome
        if vehicle.position is None:
            outcome.skip_reason = SKIP_NO_POSITION
            return outcome
        if not is_online(vehicle, now, self._freshness):
            outcome.skip_reason = SKIP_OFFLINE
            return outcome

        geofence = geofences.get(vehicle.geofence_id)
        if geofence is None:
            outcome.skip_reason = SKIP_UNKNOWN_GEOFENCE
            return outcome
        if not geofence.is_active:
            outcome.skip_reason = SKIP_INACTIVE_GEOFENCE
            return outcome
        if not geofence.is_valid:
            outcome.skip_reason = SKIP_INVALID_GEOFENCE
            return outcome

        position = vehicle.position.point
        change = self._tracker.update(vehicle.vehicle_id, position, geofence, now)
        outcome.evaluated = True
        outcome.was_inside = change.was_inside
        outcome.is_inside = change.is_inside

        if change.changed:
            event_type = rules.event_type(geofence.rule_type, change.was_inside, change.is_inside)
            outcome.event = self._events.record(vehicle, geofence, event_type, position, now)

        kind = rules.evaluate(geofence.rule_type, change.was_inside, change.is_inside)
        if kind is None:
            return outcome
        outcome.violation = kind

        if not self._cooldown.should_emit(vehicle.vehicle_id, kind, now):
            outcome.suppressed = True
            logger.info("Suppressed %s for vehicle %d (cooldown since %s)",
                        kind.value, vehicle.vehicle_id,
                        self._cooldown.last_emitted(vehicle.vehicle_id, kind))
            return outcome

        self._cooldown.record(vehicle.vehicle_id, kind, now)
        outcome.alert = self._emitter.build(
            vehicle_id=vehicle.vehicle_id,
            kind=kind,
            vehicle_name=vehicle.display_name,
            geofence_name=geofence.name,
            rule_type=geofence.rule_type,
            position=position,
            now=now,
            geofence_id=geofence.geofence_id,
        )
        logger.warning("%s", outcome.alert.message)
        return outcome

    def evaluate_snapshot(self, snapshot: FleetSnapshot, now: datetime) -> list[VehicleOutcome]:
        outcomes = []
        for vehicle in snapshot.vehicles:
            outcome = self.evaluate_vehicle(vehicle, snapshot.geofences, now)
            if not outcome.evaluated:
                logger.debug("Vehicle %d skipped: %s", vehicle.vehicle_id, outcome.skip_reason)
            outcomes.append(outcome)
        return outcomes

    async def tick(self) -> TickResult:
        """Fetch, evaluate, and dispatch alerts for one tick."""
        t0 = time.monotonic()
        now = self._clock.now()
        self._ticks += 1
        result = TickResult(at=now)

        try:
            snapshot = await self._source.fetch()
        except SnapshotError as e:
            logger.warning("Tick %d skipped, roster unavailable: %s", self._ticks, e)
            self._health.record_fetch_failure()
            result.fetched = False
            result.error = str(e)
            return result
        snapshot.fetched_at = now

        result.outcomes = self.evaluate_snapshot(snapshot, now)
        for alert in result.alerts:
            self._dispatch(self._deliver(alert))
        if self._events.has_sinks:
            for event in result.events:
                self._dispatch(self._deliver_event(event))

        if self._prune_every > 0 and self._ticks % self._prune_every == 0:
            self._housekeeping(snapshot, now)

        result.latency_ms = (time.monotonic() - t0) * 1000
        self._health.record_tick(
            evaluated=result.evaluated,
            skipped=result.skipped,
            alerts=len(result.alerts),
            suppressed=result.suppressed,
            latency_ms=result.latency_ms,
        )
        return result

    def _dispatch(self, delivery: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(delivery)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, alert: Alert) -> None:
        report = await self._emitter.deliver(alert)
        self._health.record_delivery(report.ok)

    async def _deliver_event(self, event: GeofenceEvent) -> None:
        if not await self._events.deliver(event):
            logger.warning("Event %s not stored", event.event_id)

    def _housekeeping(self, snapshot: FleetSnapshot, now: datetime) -> None:
        removed = self._tracker.prune(v.vehicle_id for v in snapshot.vehicles)
        expired = self._cooldown.prune(now)
        if removed or expired:
            logger.info("Housekeeping: pruned %d histories, %d cooldown entries", removed, expired)

    async def drain(self) -> None:
        """Wait for in-flight deliveries."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    async def close(self) -> None:
        await self.drain()
        await self._emitter.close()
        await self._events.close()
        close = getattr(self._source, "close", None)
        if close is not None:
            await close()


class Scheduler:
    """Drives the evaluator on a fixed cadence until cancelled.

    Usage:
        scheduler = Scheduler(evaluator, interval_s=15.0)
        await scheduler.run()              # forever
        await scheduler.run(max_ticks=5)   # tests
    """

    def __init__(
        self,
        evaluator: Evaluator,
        interval_s: float = 15.0,
        clock: Clock | None = None,
        health_log_every: int = 20,
    ):
        if interval_s <= 0:
            raise ValueError(f"Evaluation interval must be positive: {interval_s}")
        self._evaluator = evaluator
        self._interval_s = interval_s
        self._clock = clock if clock is not None else SystemClock()
        self._health_log_every = health_log_every
        self._ticks = 0
        self._stopping = False
        self._stop_event: asyncio.Event | None = None

    @property
    def ticks(self) -> int:
        return self._ticks

    def stop(self) -> None:
        """Finish the current tick and return from run(); cuts a pending sleep short."""
        self._stopping = True
        if self._stop_event is not None:
            self._stop_event.set()

    async def _sleep(self, seconds: float) -> None:
        """Clock sleep that returns early once stop() is called."""
        sleeper = asyncio.ensure_future(self._clock.sleep(seconds))
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, stopper):
                task.cancel()
            await asyncio.gather(sleeper, stopper, return_exceptions=True)

    async def run(self, max_ticks: int | None = None) -> None:
        logger.info("Evaluation loop running every %.1fs", self._interval_s)
        self._stop_event = asyncio.Event()
        if self._stopping:
            self._stop_event.set()
        try:
            while not self._stopping:
                started = self._clock.now()
                try:
                    await self._evaluator.tick()
                except Exception:
                    # keep the loop alive; the next tick starts from scratch
                    logger.exception("Tick %d failed", self._ticks + 1)
                self._ticks += 1

                if self._health_log_every > 0 and self._ticks % self._health_log_every == 0:
                    self._evaluator.health.log_status()

                if max_ticks is not None and self._ticks >= max_ticks:
                    break
                if self._stopping:
                    break

                elapsed = (self._clock.now() - started).total_seconds()
                remaining = self._interval_s - elapsed
                if remaining <= 0:
                    logger.debug("Tick %d took %.1fs (interval %.1fs)",
                                 self._ticks, elapsed, self._interval_s)
                await self._sleep(max(0.0, remaining))
        finally:
            await self._evaluator.drain()
            logger.info("Evaluation loop stopped after %d ticks", self._ticks)
