"""Progress, throughput and ETA derived from queue counters."""

import math
import time
from collections import deque

from .models import QueueCounters, StatusReport, TaskKind

# Assumed rates until real completions have been observed
DEFAULT_RATES_PER_MINUTE = {TaskKind.ADDRESS: 7500.0, TaskKind.SCAN: 12000.0}


def percent(part: int, whole: int) -> float:
    """Percentage capped at 100; a zero denominator yields 0."""
    if whole <= 0:
        return 0.0
    return round(min(part / whole * 100.0, 100.0), 2)


def eta_minutes(pending: int, rate_per_minute: float) -> int | None:
    """Minutes to drain ``pending`` at ``rate_per_minute``; None when the rate is zero."""
    if pending <= 0:
        return 0
    if rate_per_minute <= 0:
        return None
    return math.ceil(pending / rate_per_minute)


class ThroughputMeter:
    """Rolling window of task completions per kind."""

    def __init__(self, window_seconds: float = 300.0):
        self.window_seconds = window_seconds
        self._events: dict[TaskKind, deque[tuple[float, int]]] = {
            kind: deque() for kind in TaskKind
        }

    def record(self, kind: TaskKind, count: int, now: float | None = None) -> None:
        if count <= 0:
            return
        now = now if now is not None else time.time()
        self._events[kind].append((now, count))
        self._trim(kind, now)

    def _trim(self, kind: TaskKind, now: float) -> None:
        events = self._events[kind]
        while events and now - events[0][0] > self.window_seconds:
            events.popleft()

    def rate_per_minute(self, kind: TaskKind, now: float | None = None) -> float:
        """Observed completions per minute, or the assumed default with no data."""
        now = now if now is not None else time.time()
        self._trim(kind, now)
        events = self._events[kind]
        if not events:
            return DEFAULT_RATES_PER_MINUTE[kind]
        total = sum(count for _, count in events)
        # Measure from the first event; at least one second to avoid spikes
        elapsed = max(now - events[0][0], 1.0)
        return total / elapsed * 60.0


def build_report(
    counters: QueueCounters,
    address_rate: float = DEFAULT_RATES_PER_MINUTE[TaskKind.ADDRESS],
    scan_rate: float = DEFAULT_RATES_PER_MINUTE[TaskKind.SCAN],
) -> StatusReport:
    """Derive progress percentages and ETAs.

    Args:
        counters: Current queue counters
        address_rate: Address lookups completed per minute
        scan_rate: Scans completed per minute

    Returns:
        StatusReport; never divides by zero
    """
    return StatusReport(
        counters=counters,
        address_progress=percent(counters.with_address, counters.total_servers),
        scan_progress=percent(counters.scanned, counters.with_address),
        address_rate_per_minute=round(address_rate, 1),
        scan_rate_per_minute=round(scan_rate, 1),
        eta_address_minutes=eta_minutes(
            counters.pending_address + counters.processing_address, address_rate
        ),
        eta_scan_minutes=eta_minutes(counters.pending_scan + counters.processing_scan, scan_rate),
    )
