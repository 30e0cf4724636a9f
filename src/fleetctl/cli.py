"""Operator CLI for the geofence engine.

Usage:
    fleetctl run --config config.json
    fleetctl run --roster-file roster.json --interval 5
    fleetctl check roster.json
    fleetctl simulate --center -6.2088,106.8456 --radius-m 500 -o trace.json
    fleetctl replay trace.json --geojson -o alerts.geojson
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

import click

from engine.config import load_config
from engine.geofence import contains_point
from engine.main import build_engine, run_engine
from engine.roster import FileRosterSource, SnapshotError, classify_status
from fleetctl.replay import load_trace, replay_trace, save_alerts
from fleetctl.simulate import circle_geofence, generate_crossing, make_trace, save_trace
from shared.geo_math import GeoPoint


def _parse_latlon(value: str) -> GeoPoint:
    try:
        lat, lon = map(float, value.split(","))
    except ValueError as e:
        raise click.BadParameter(f"expected LAT,LON, got {value!r}") from e
    return GeoPoint(lat=lat, lon=lon)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """Geofence violation engine: run, inspect, replay."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


@cli.command()
@click.option("--config", "config_path", type=click.Path(path_type=Path),
              envvar="GEOFENCE_CONFIG", help="JSON config file")
@click.option("--roster-file", type=click.Path(exists=True, path_type=Path),
              help="Read rosters from a JSON file instead of the HTTP backend")
@click.option("--interval", type=float, help="Override evaluation interval (seconds)")
@click.option("--max-ticks", type=int, help="Stop after N ticks")
def run(config_path: Path | None, roster_file: Path | None, interval: float | None,
        max_ticks: int | None):
    """Run the evaluation loop."""
    config = load_config(config_path)
    if interval is not None:
        config.evaluation_interval_seconds = interval

    source = FileRosterSource(roster_file) if roster_file is not None else None
    evaluator, scheduler = build_engine(config, source=source)
    click.echo(f"Evaluating every {config.evaluation_interval_seconds:.0f}s "
               f"(cooldown {config.cooldown_window_minutes:.0f}min)")

    if max_ticks is None:
        asyncio.run(run_engine(evaluator, scheduler))
        return

    async def _bounded():
        try:
            await scheduler.run(max_ticks=max_ticks)
        finally:
            await evaluator.close()

    asyncio.run(_bounded())
    h = evaluator.health.status
    click.echo(f"Ran {h.ticks_total} ticks: {h.alerts_emitted} alerts, "
               f"{h.alerts_suppressed} suppressed, {h.ticks_skipped} skipped ticks")


@cli.command()
@click.argument("roster_file", type=click.Path(exists=True, path_type=Path))
@click.option("--freshness-min", type=float, default=15.0, help="Online freshness window (minutes)")
def check(roster_file: Path, freshness_min: float):
    """Show status and containment for every vehicle in a roster file."""
    try:
        snapshot = asyncio.run(FileRosterSource(roster_file).fetch())
    except SnapshotError as e:
        raise click.ClickException(str(e))

    now = datetime.now(timezone.utc)
    freshness = timedelta(minutes=freshness_min)

    for g in snapshot.geofences.values():
        state = "ok" if g.evaluable else ("inactive" if not g.is_active else "INVALID")
        click.echo(f"geofence {g.geofence_id} {g.name!r} {g.kind.value} {g.rule_type.value}: {state}")

    for v in snapshot.vehicles:
        status = classify_status(v, now, freshness)
        line = f"vehicle {v.vehicle_id} {v.display_name!r}: {status.value}"
        geofence = snapshot.geofences.get(v.geofence_id) if v.geofence_id is not None else None
        if geofence is None:
            line += ", no geofence"
        elif v.position is None:
            line += f", geofence {geofence.geofence_id}, no position"
        else:
            inside = contains_point(v.position.point, geofence)
            line += f", {'inside' if inside else 'outside'} geofence {geofence.geofence_id}"
        click.echo(line)


@cli.command()
@click.option("--center", required=True, help="Geofence center as LAT,LON")
@click.option("--radius-m", type=click.FloatRange(min=0, min_open=True), default=500.0,
              help="Geofence radius in meters")
@click.option("--rule", type=click.Choice(["FORBIDDEN", "STAY_IN", "STANDARD"]),
              default="FORBIDDEN", help="Geofence rule type")
@click.option("--bearing", type=float, default=0.0, help="Direction of travel in degrees")
@click.option("--speed", type=click.FloatRange(min=0, min_open=True), default=10.0,
              help="Speed in m/s")
@click.option("--interval", type=click.FloatRange(min=0, min_open=True), default=15.0,
              help="Sample interval in seconds")
@click.option("--output", "-o", type=click.Path(path_type=Path), default=Path("trace.json"))
def simulate(center: str, radius_m: float, rule: str, bearing: float, speed: float,
             interval: float, output: Path):
    """Generate a trace of one vehicle driving through a circular geofence."""
    center_pt = _parse_latlon(center)
    track = generate_crossing(center_pt, radius_m, bearing_deg=bearing,
                              speed_mps=speed, dt=interval)
    trace = make_trace(track, circle_geofence(center_pt, radius_m, rule_type=rule))
    save_trace(trace, output)
    click.echo(f"Generated {len(track)} ticks ({rule}, {radius_m:.0f}m) -> {output}")


@cli.command()
@click.argument("trace_file", type=click.Path(exists=True, path_type=Path))
@click.option("--cooldown-min", type=float, default=5.0, help="Cooldown window (minutes)")
@click.option("--freshness-min", type=float, default=15.0, help="Online freshness window (minutes)")
@click.option("--output", "-o", type=click.Path(path_type=Path), help="Write alerts to this file")
@click.option("--geojson", is_flag=True, help="Write alerts as GeoJSON")
def replay(trace_file: Path, cooldown_min: float, freshness_min: float,
           output: Path | None, geojson: bool):
    """Replay a recorded trace through the engine and report alerts."""
    try:
        trace = load_trace(trace_file)
        result = replay_trace(
            trace,
            cooldown_window=timedelta(minutes=cooldown_min),
            freshness=timedelta(minutes=freshness_min),
        )
    except ValueError as e:
        raise click.ClickException(str(e))

    for a in result.alerts:
        click.echo(f"{a.timestamp.isoformat()} {a.alert_type.value} [{a.location}] {a.message}")
    click.echo(result.stats.summary())

    if output is not None:
        save_alerts(result.alerts, output, geojson=geojson)
        click.echo(f"Alerts saved to {output}")


if __name__ == "__main__":
    cli()
