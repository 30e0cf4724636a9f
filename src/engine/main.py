"""Service entry point for the geofence violation engine.

Polls the fleet backend for vehicles, positions and geofences on a
fixed cadence, posts violation alerts back to it, and optionally
records every geofence crossing in its event log.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from pathlib import Path

from engine.alerts import AlertEmitter
from engine.clock import Clock, SystemClock
from engine.config import EngineConfig, load_config
from engine.cooldown import CooldownManager
from engine.events import EventLog
from engine.health import HealthMonitor
from engine.loop import Evaluator, Scheduler
from engine.roster import HttpRosterSource, RosterSource
from engine.sinks import AlertSink, CsvAlertLog, HttpSink, LogSink

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/geofence-engine/config.json")


def build_sinks(config: EngineConfig) -> list[AlertSink]:
    """Persistence sink plus a notification sink, and the CSV log if enabled."""
    ep = config.endpoints
    sinks: list[AlertSink] = [
        HttpSink(ep.alerts_url, name="alerts-api", auth_token=ep.auth_token,
                 timeout_s=config.sink_timeout_seconds),
    ]
    if ep.notify_url:
        sinks.append(HttpSink(ep.notify_url, name="notify", auth_token=ep.auth_token,
                              timeout_s=config.sink_timeout_seconds))
    else:
        sinks.append(LogSink(name="notify-log"))

    if config.alert_log_dir is not None:
        alert_log = CsvAlertLog(config.alert_log_dir)
        alert_log.start()
        sinks.append(alert_log)
    return sinks


def build_event_sinks(config: EngineConfig) -> list[AlertSink]:
    """Event log sink, when an events endpoint is configured."""
    ep = config.endpoints
    if not ep.events_url:
        return []
    return [HttpSink(ep.events_url, name="events-api", auth_token=ep.auth_token,
                     timeout_s=config.sink_timeout_seconds)]


def build_source(config: EngineConfig) -> HttpRosterSource:
    ep = config.endpoints
    return HttpRosterSource(
        vehicles_url=ep.vehicles_url,
        geofences_url=ep.geofences_url,
        positions_url=ep.positions_url,
        auth_token=ep.auth_token,
        timeout_s=ep.request_timeout_seconds,
    )


def build_engine(
    config: EngineConfig,
    source: RosterSource | None = None,
    sinks: list[AlertSink] | None = None,
    clock: Clock | None = None,
    event_sinks: list[AlertSink] | None = None,
) -> tuple[Evaluator, Scheduler]:
    """Wire the evaluator and its scheduler from configuration."""
    clock = clock or SystemClock()
    evaluator = Evaluator(
        source=source if source is not None else build_source(config),
        emitter=AlertEmitter(
            sinks if sinks is not None else build_sinks(config),
            timeout_s=config.sink_timeout_seconds,
        ),
        clock=clock,
        cooldown=CooldownManager(window=config.cooldown_window),
        health=HealthMonitor(max_tick_ms=config.evaluation_interval_seconds * 1000),
        events=EventLog(
            build_event_sinks(config) if event_sinks is None else event_sinks,
            timeout_s=config.sink_timeout_seconds,
        ),
        freshness=config.freshness,
        prune_every_ticks=config.prune_every_ticks,
    )
    scheduler = Scheduler(
        evaluator,
        interval_s=config.evaluation_interval_seconds,
        clock=clock,
        health_log_every=config.health_log_every_ticks,
    )
    return evaluator, scheduler


async def run_engine(evaluator: Evaluator, scheduler: Scheduler) -> None:
    """Run until SIGINT/SIGTERM, then flush deliveries and close resources."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, scheduler)
        except (NotImplementedError, RuntimeError):
            # not available off the main thread or on Windows
            pass

    try:
        await scheduler.run()
    finally:
        await evaluator.close()
        h = evaluator.health.status
        logger.info("Engine shutdown. Ticks: %d, alerts: %d, suppressed: %d",
                    h.ticks_total, h.alerts_emitted, h.alerts_suppressed)


def _request_stop(scheduler: Scheduler) -> None:
    logger.info("Shutdown signal received")
    scheduler.stop()


def main() -> None:
    """Entry point for the geofence engine service."""
    config_path = Path(os.environ.get("GEOFENCE_CONFIG", DEFAULT_CONFIG_PATH))
    config = load_config(config_path)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    evaluator, scheduler = build_engine(config)
    logger.info("Geofence engine starting (interval=%.0fs, freshness=%.0fmin, cooldown=%.0fmin)",
                config.evaluation_interval_seconds,
                config.online_freshness_minutes,
                config.cooldown_window_minutes)
    asyncio.run(run_engine(evaluator, scheduler))


if __name__ == "__main__":
    main()
