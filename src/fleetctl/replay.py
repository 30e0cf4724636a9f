"""Offline replay of recorded roster traces through the engine.

A trace is a JSON object:
    {"geofences": [...],
     "ticks": [{"at": ISO8601, "vehicles": [...], "geofences": [...]?}, ...]}

Each tick replaces the vehicle roster; a tick may also replace the
geofence roster, otherwise the previous one stays. The engine runs
with a fake clock set to each tick's "at", so cooldown and freshness
behave as they would have live.
"""

from __future__ import annotations

import asyncio
import json
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from engine.alerts import AlertEmitter
from engine.clock import FakeClock
from engine.cooldown import CooldownManager
from engine.loop import Evaluator, TickResult
from engine.models import Alert
from engine.roster import RosterError, StaticRosterSource, parse_timestamp
from engine.sinks import MemorySink


@dataclass(slots=True)
class ReplayStats:
    """Statistics from a replayed trace."""
    ticks: int = 0
    vehicles_evaluated: int = 0
    vehicles_skipped: int = 0
    alerts: int = 0
    suppressed: int = 0
    alerts_by_type: dict[str, int] = field(default_factory=dict)
    skip_reasons: dict[str, int] = field(default_factory=dict)
    events_by_type: dict[str, int] = field(default_factory=dict)

    def summary(self) -> str:
        lines = [
            f"Ticks: {self.ticks}",
            f"Vehicle evaluations: {self.vehicles_evaluated} (skipped {self.vehicles_skipped})",
            f"Alerts: {self.alerts} | Suppressed by cooldown: {self.suppressed}",
        ]
        if self.events_by_type:
            lines.append(f"Geofence events: {sum(self.events_by_type.values())}")
        for kind, n in sorted(self.alerts_by_type.items()):
            lines.append(f"  {kind}: {n}")
        for reason, n in sorted(self.skip_reasons.items()):
            lines.append(f"  skipped ({reason}): {n}")
        return "\n".join(lines)


@dataclass(slots=True)
class ReplayResult:
    alerts: list[Alert]
    ticks: list[TickResult]
    stats: ReplayStats


def load_trace(path: Path) -> dict:
    with open(path) as f:
        trace = json.load(f)
    if not isinstance(trace, dict) or not isinstance(trace.get("ticks"), list):
        raise ValueError(f"{path}: trace must be an object with a 'ticks' list")
    return trace


async def replay_trace_async(
    trace: dict,
    cooldown_window: timedelta = timedelta(minutes=5),
    freshness: timedelta = timedelta(minutes=15),
) -> ReplayResult:
    sink = MemorySink()
    source = StaticRosterSource(geofences=trace.get("geofences", []))
    clock = FakeClock()
    evaluator = Evaluator(
        source=source,
        emitter=AlertEmitter([sink]),
        clock=clock,
        cooldown=CooldownManager(window=cooldown_window),
        freshness=freshness,
        prune_every_ticks=0,
    )

    results = []
    for i, tick in enumerate(trace["ticks"]):
        try:
            clock.set(parse_timestamp(tick.get("at")))
        except RosterError as e:
            raise ValueError(f"Tick {i}: {e}") from e
        source.update(vehicles=tick.get("vehicles", []), geofences=tick.get("geofences"))
        results.append(await evaluator.tick())
    await evaluator.drain()

    stats = ReplayStats(ticks=len(results))
    types: Counter[str] = Counter()
    reasons: Counter[str] = Counter()
    events: Counter[str] = Counter()
    for r in results:
        stats.vehicles_evaluated += r.evaluated
        stats.vehicles_skipped += r.skipped
        stats.suppressed += r.suppressed
        for o in r.outcomes:
            if o.skip_reason:
                reasons[o.skip_reason] += 1
        for alert in r.alerts:
            types[alert.alert_type.value] += 1
        for event in r.events:
            events[event.event_type.value] += 1
    stats.alerts = len(sink.alerts)
    stats.alerts_by_type = dict(types)
    stats.skip_reasons = dict(reasons)
    stats.events_by_type = dict(events)

    return ReplayResult(alerts=sink.alerts, ticks=results, stats=stats)


def replay_trace(
    trace: dict,
    cooldown_window: timedelta = timedelta(minutes=5),
    freshness: timedelta = timedelta(minutes=15),
) -> ReplayResult:
    """Run every tick of a trace and collect the alerts."""
    return asyncio.run(replay_trace_async(trace, cooldown_window, freshness))


def alerts_to_geojson(alerts: list[Alert]) -> dict:
    """Alerts as a GeoJSON FeatureCollection of points."""
    features = []
    for a in alerts:
        lat_s, lng_s = a.location.split(",")
        features.append({
            "type": "Feature",
            "geometry": {"type": "Point", "coordinates": [float(lng_s), float(lat_s)]},
            "properties": a.to_dict(),
        })
    return {"type": "FeatureCollection", "features": features}


def save_alerts(alerts: list[Alert], output_path: Path, geojson: bool = False) -> None:
    data = alerts_to_geojson(alerts) if geojson else [a.to_dict() for a in alerts]
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        json.dump(data, f, indent=2)
