"""Alert suppression per (vehicle, violation kind).

After an alert fires, further alerts with the same key are suppressed
until the window has elapsed. Entries are never evicted for
correctness; prune() only reclaims memory for expired keys.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from engine.models import ViolationKind

DEFAULT_WINDOW = timedelta(minutes=5)


@dataclass(slots=True)
class CooldownStats:
    """Cooldown decision counters."""
    checks: int = 0
    allowed: int = 0
    suppressed: int = 0


class CooldownManager:
    """Keyed suppression store.

    Usage:
        cooldown = CooldownManager(window=timedelta(minutes=5))
        if cooldown.should_emit(vehicle_id, kind, now):
            cooldown.record(vehicle_id, kind, now)
            emit(...)
    """

    def __init__(self, window: timedelta = DEFAULT_WINDOW):
        if window < timedelta(0):
            raise ValueError(f"Cooldown window must not be negative: {window}")
        self._window = window
        self._last_emitted: dict[tuple[int, ViolationKind], datetime] = {}
        self._stats = CooldownStats()

    @property
    def window(self) -> timedelta:
        return self._window

    @property
    def stats(self) -> CooldownStats:
        return self._stats

    def __len__(self) -> int:
        return len(self._last_emitted)

    def last_emitted(self, vehicle_id: int, kind: ViolationKind) -> datetime | None:
        return self._last_emitted.get((vehicle_id, kind))

    def should_emit(
        self,
        vehicle_id: int,
        kind: ViolationKind,
        now: datetime,
        window: timedelta | None = None,
    ) -> bool:
        """True if no alert for this key fired within the window.

        A caller that goes on to emit must call record().
        """
        if window is None:
            window = self._window
        self._stats.checks += 1

        last = self._last_emitted.get((vehicle_id, kind))
        if last is None or now - last >= window:
            self._stats.allowed += 1
            return True

        self._stats.suppressed += 1
        return False

    def record(self, vehicle_id: int, kind: ViolationKind, now: datetime) -> None:
        """Start a new suppression window for this key."""
        self._last_emitted[(vehicle_id, kind)] = now

    def prune(self, now: datetime) -> int:
        """Drop entries whose window has elapsed. Returns count removed."""
        expired = [
            key for key, last in self._last_emitted.items()
            if now - last >= self._window
        ]
        for key in expired:
            del self._last_emitted[key]
        return len(expired)

    def reset(self) -> None:
        self._last_emitted.clear()
        self._stats = CooldownStats()
