"""
Utility functions for healthsync.

Provides the millisecond clock shared by breakers, caches and the queue.
Components accept a ``clock`` callable so tests can drive time by hand.
"""

import time
from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], float]


def now_ms() -> float:
    """Current wall-clock time in epoch milliseconds."""
    return time.time() * 1000.0


def iso_from_ms(timestamp_ms: float | None) -> str | None:
    """Render an epoch-milliseconds timestamp as an ISO-8601 UTC string."""
    if timestamp_ms is None:
        return None
    return datetime.fromtimestamp(timestamp_ms / 1000.0, tz=UTC).isoformat()


class ManualClock:
    """Clock whose time only moves when told to.

    Example:
        clock = ManualClock(start=0)
        breaker = CircuitBreakerManager(clock=clock)
        clock.advance(30_000)
    """

    def __init__(self, start: float = 0.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> float:
        self.now += ms
        return self.now
