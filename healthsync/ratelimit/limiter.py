"""
Per-action attempt limiting.

A sliding-window log keyed by ``"<subject>:<action>"`` caps how many times an
action may be attempted in a window (default 5 attempts per minute). It runs
independently of the circuit breaker: the limiter is consulted first and
every admitted attempt consumes budget whatever its outcome.

Example:
    limiter = AttemptLimiter(limit=5, window_ms=60_000)

    info = limiter.check("user-123:login")
    if limiter.allow("user-123:login"):
        ...
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Any

from healthsync.errors import RateLimitExceeded
from healthsync.logging_config import get_logger
from healthsync.utils import Clock, now_ms

logger = get_logger(__name__)


@dataclass
class RateLimitInfo:
    """Current limit status for a key."""

    allowed: bool
    remaining: int
    limit: int
    window_ms: float
    reset_at_ms: float
    retry_after_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": max(0, self.remaining),
            "limit": self.limit,
            "window_ms": self.window_ms,
            "reset_at_ms": self.reset_at_ms,
            "retry_after_ms": self.retry_after_ms,
        }


class AttemptLimiter:
    """
    Sliding-window attempt limiter.

    Args:
        limit: Default attempts per window
        window_ms: Default window length
        rules: Per-action overrides ``{action: (limit, window_ms)}``; the action
            is the part of the key after the last ``:``
        clock: Millisecond clock
    """

    def __init__(
        self,
        limit: int = 5,
        window_ms: float = 60000,
        rules: dict[str, tuple[int, float]] | None = None,
        clock: Clock = now_ms,
    ):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_ms <= 0:
            raise ValueError("window_ms must be > 0")
        self.limit = limit
        self.window_ms = window_ms
        self.rules = dict(rules or {})
        self.clock = clock
        self._timestamps: dict[str, list[float]] = defaultdict(list)

    def _rule(self, key: str) -> tuple[int, float]:
        action = key.rsplit(":", 1)[-1]
        return self.rules.get(action, (self.limit, self.window_ms))

    def _clean(self, key: str, window_ms: float) -> list[float]:
        cutoff = self.clock() - window_ms
        stamps = [ts for ts in self._timestamps[key] if ts > cutoff]
        self._timestamps[key] = stamps
        return stamps

    def allow(self, key: str) -> bool:
        """Record an attempt if the budget allows it."""
        limit, window_ms = self._rule(key)
        stamps = self._clean(key, window_ms)
        if len(stamps) < limit:
            stamps.append(self.clock())
            return True
        logger.info("rate_limited", key=key, limit=limit, window_ms=window_ms)
        return False

    def check(self, key: str) -> RateLimitInfo:
        """Status without consuming budget."""
        limit, window_ms = self._rule(key)
        stamps = self._clean(key, window_ms)
        remaining = limit - len(stamps)
        now = self.clock()
        reset_at = stamps[0] + window_ms if stamps else now
        retry_after = max(0.0, reset_at - now) if remaining <= 0 else 0.0
        return RateLimitInfo(
            allowed=remaining > 0,
            remaining=remaining,
            limit=limit,
            window_ms=window_ms,
            reset_at_ms=reset_at,
            retry_after_ms=retry_after,
        )

    def acquire(self, key: str) -> None:
        """Consume one attempt or raise RateLimitExceeded."""
        if not self.allow(key):
            info = self.check(key)
            raise RateLimitExceeded(
                key, info.limit, info.window_ms / 1000.0, info.retry_after_ms / 1000.0
            )

    def reset(self, key: str | None = None):
        if key is None:
            self._timestamps.clear()
        else:
            self._timestamps.pop(key, None)
