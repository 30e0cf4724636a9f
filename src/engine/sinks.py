"""Destinations for emitted alerts and geofence events.

A sink takes one record (an Alert, or a GeofenceEvent for event sinks)
and either delivers it or raises. Retrying is the sink's own business;
the engine logs a failure and moves on.

Sinks:
- HttpSink: POST the record as JSON (persistence API, webhook, event log)
- LogSink: write the alert to the log (live notification fallback)
- CsvAlertLog: append alerts to a CSV file per run
- MemorySink: keep records in a list (replay tool, tests)
"""

from __future__ import annotations

import asyncio
import csv
import logging
import time
from pathlib import Path
from typing import Protocol

import aiohttp

from engine.models import Alert, GeofenceEvent

logger = logging.getLogger(__name__)

FIELDS = [
    "timestamp",
    "vehicle_id",
    "geofence_id",
    "alert_type",
    "location",
    "message",
]


class SinkError(RuntimeError):
    """A sink could not deliver an alert."""


Record = Alert | GeofenceEvent


class AlertSink(Protocol):
    name: str

    async def send(self, record: Record) -> None: ...


async def send_with_timeout(
    sink: AlertSink,
    record: Record,
    timeout_s: float,
    label: str,
) -> str | None:
    """Send one record to one sink. Returns an error string, or None on success."""
    try:
        await asyncio.wait_for(sink.send(record), timeout=timeout_s)
    except asyncio.TimeoutError:
        logger.error("Sink %s timed out after %.1fs delivering %s", sink.name, timeout_s, label)
        return f"timeout after {timeout_s:.1f}s"
    except Exception as e:
        logger.error("Sink %s failed delivering %s: %s", sink.name, label, e)
        return str(e) or type(e).__name__
    return None


class MemorySink:
    """Collects records in memory."""

    def __init__(self, name: str = "memory"):
        self.name = name
        self.records: list[Record] = []

    @property
    def alerts(self) -> list[Record]:
        return self.records

    async def send(self, record: Record) -> None:
        self.records.append(record)


class LogSink:
    """Surfaces alerts through the logging system."""

    def __init__(self, name: str = "log", level: int = logging.WARNING):
        self.name = name
        self._level = level

    async def send(self, alert: Alert) -> None:
        logger.log(self._level, "ALERT %s at %s: %s",
                   alert.alert_type.value, alert.location, alert.message)


class HttpSink:
    """POSTs each record as JSON to an HTTP endpoint.

    The aiohttp session is created on first use and must be closed
    with close() on shutdown.
    """

    def __init__(
        self,
        url: str,
        name: str = "http",
        auth_token: str | None = None,
        timeout_s: float = 10.0,
    ):
        self.name = name
        self._url = url
        self._auth_token = auth_token
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session: aiohttp.ClientSession | None = None

    @property
    def url(self) -> str:
        return self._url

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        return headers

    async def send(self, record: Record) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)

        try:
            async with self._session.post(
                self._url, json=record.to_dict(), headers=self._headers(),
            ) as resp:
                if resp.status >= 300:
                    body = await resp.text()
                    raise SinkError(f"{self._url} returned HTTP {resp.status}: {body[:200]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SinkError(f"{self._url} unreachable: {e or type(e).__name__}") from e

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


class CsvAlertLog:
    """Writes alerts to a CSV log file, one file per run."""

    def __init__(self, log_dir: Path, prefix: str = "alerts", name: str = "csv"):
        self.name = name
        self._log_dir = log_dir
        self._prefix = prefix
        self._writer = None
        self._file = None
        self._count = 0
        self._path: Path | None = None

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def count(self) -> int:
        return self._count

    def start(self) -> Path:
        """Open a new log file. Returns the file path."""
        self._log_dir.mkdir(parents=True, exist_ok=True)
        ts = time.strftime("%Y%m%d_%H%M%S")
        path = self._log_dir / f"{self._prefix}_{ts}.csv"
        self._file = open(path, "w", newline="")
        self._writer = csv.writer(self._file)
        self._writer.writerow(FIELDS)
        self._count = 0
        self._path = path
        logger.info("Alert log at %s", path)
        return path

    async def send(self, alert: Alert) -> None:
        if self._writer is None:
            raise SinkError("Alert log not started")
        self._writer.writerow([
            alert.timestamp.isoformat(),
            alert.vehicle_id,
            alert.geofence_id if alert.geofence_id is not None else "",
            alert.alert_type.value,
            alert.location,
            alert.message,
        ])
        self._count += 1
        self._file.flush()

    async def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
            self._writer = None
            logger.info("Alert log closed. %d alerts logged.", self._count)
