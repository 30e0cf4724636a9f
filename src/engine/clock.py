"""Time sources for the evaluation loop.

The scheduler never calls datetime.now() or asyncio.sleep() directly,
so tests can step a FakeClock instead of waiting on wall time.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock UTC time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class FakeClock:
    """Manually advanced clock; sleep() advances time instantly.

    Usage:
        clock = FakeClock(datetime(2025, 6, 1, tzinfo=timezone.utc))
        clock.advance(30)
    """

    def __init__(self, start: datetime | None = None):
        if start is None:
            start = datetime(2025, 1, 1, tzinfo=timezone.utc)
        self._now = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now += timedelta(seconds=seconds)
        return self._now

    def set(self, when: datetime) -> None:
        self._now = when

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(max(0.0, seconds))
        # let pending deliveries run, as a real sleep would
        await asyncio.sleep(0)
