"""Engine health monitoring.

Tracks tick and delivery counters and flags the engine as degraded when:
- the roster fetch has failed for several ticks in a row
- too many recent alert deliveries failed
- ticks take longer than their interval
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HealthStatus:
    """Snapshot of engine health."""
    ticks_total: int = 0
    ticks_skipped: int = 0
    vehicles_evaluated: int = 0
    vehicles_skipped: int = 0
    alerts_emitted: int = 0
    alerts_suppressed: int = 0
    deliveries_failed: int = 0
    delivery_failure_rate: float = 0.0
    avg_tick_ms: float = 0.0
    max_tick_ms: float = 0.0
    consecutive_fetch_failures: int = 0
    uptime_s: float = 0.0
    healthy: bool = True
    warnings: list[str] = field(default_factory=list)


class HealthMonitor:
    """Rolling engine health over the last window_size ticks/deliveries."""

    def __init__(
        self,
        window_size: int = 100,
        max_fetch_failures: int = 3,
        max_delivery_failure_rate: float = 0.5,
        max_tick_ms: float = 10_000.0,
    ):
        self._max_fetch_failures = max_fetch_failures
        self._max_delivery_failure_rate = max_delivery_failure_rate
        self._max_tick_ms = max_tick_ms

        self._tick_ms: deque[float] = deque(maxlen=window_size)
        self._deliveries: deque[bool] = deque(maxlen=window_size)
        self._ticks_total = 0
        self._ticks_skipped = 0
        self._vehicles_evaluated = 0
        self._vehicles_skipped = 0
        self._alerts_emitted = 0
        self._alerts_suppressed = 0
        self._deliveries_failed = 0
        self._consecutive_fetch_failures = 0
        self._start_time = time.monotonic()

    def record_tick(
        self,
        evaluated: int,
        skipped: int,
        alerts: int,
        suppressed: int,
        latency_ms: float,
    ) -> None:
        """Record a completed tick."""
        self._ticks_total += 1
        self._consecutive_fetch_failures = 0
        self._vehicles_evaluated += evaluated
        self._vehicles_skipped += skipped
        self._alerts_emitted += alerts
        self._alerts_suppressed += suppressed
        self._tick_ms.append(latency_ms)

    def record_fetch_failure(self) -> None:
        """Record a tick abandoned because the roster could not be fetched."""
        self._ticks_total += 1
        self._ticks_skipped += 1
        self._consecutive_fetch_failures += 1

    def record_delivery(self, ok: bool) -> None:
        self._deliveries.append(ok)
        if not ok:
            self._deliveries_failed += 1

    @property
    def status(self) -> HealthStatus:
        warnings = []
        healthy = True

        if self._consecutive_fetch_failures >= self._max_fetch_failures:
            warnings.append(f"Roster unavailable: {self._consecutive_fetch_failures} failed fetches")
            healthy = False

        if self._deliveries:
            failure_rate = 1.0 - sum(self._deliveries) / len(self._deliveries)
        else:
            failure_rate = 0.0
        if len(self._deliveries) >= 5 and failure_rate > self._max_delivery_failure_rate:
            warnings.append(f"Alert delivery failing: {failure_rate:.0%} of recent deliveries")
            healthy = False

        if self._tick_ms:
            avg_ms = sum(self._tick_ms) / len(self._tick_ms)
            max_ms = max(self._tick_ms)
        else:
            avg_ms = 0.0
            max_ms = 0.0
        if avg_ms > self._max_tick_ms:
            warnings.append(f"Slow ticks: {avg_ms:.0f}ms avg (max {self._max_tick_ms:.0f}ms)")
            healthy = False

        return HealthStatus(
            ticks_total=self._ticks_total,
            ticks_skipped=self._ticks_skipped,
            vehicles_evaluated=self._vehicles_evaluated,
            vehicles_skipped=self._vehicles_skipped,
            alerts_emitted=self._alerts_emitted,
            alerts_suppressed=self._alerts_suppressed,
            deliveries_failed=self._deliveries_failed,
            delivery_failure_rate=failure_rate,
            avg_tick_ms=avg_ms,
            max_tick_ms=max_ms,
            consecutive_fetch_failures=self._consecutive_fetch_failures,
            uptime_s=time.monotonic() - self._start_time,
            healthy=healthy,
            warnings=warnings,
        )

    def log_status(self) -> None:
        s = self.status
        level = logging.INFO if s.healthy else logging.WARNING
        logger.log(
            level,
            "Health: ticks=%d skipped=%d evaluated=%d alerts=%d suppressed=%d "
            "delivery_failures=%d tick=%.0fms%s",
            s.ticks_total,
            s.ticks_skipped,
            s.vehicles_evaluated,
            s.alerts_emitted,
            s.alerts_suppressed,
            s.deliveries_failed,
            s.avg_tick_ms,
            f" WARNINGS: {'; '.join(s.warnings)}" if s.warnings else "",
        )
