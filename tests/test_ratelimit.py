"""Tests for the attempt limiter."""
import pytest

from healthsync.errors import RateLimitExceeded
from healthsync.ratelimit import AttemptLimiter
from healthsync.utils import ManualClock


class TestAttemptLimiter:
    """Test sliding-window attempt limiting."""

    def test_allows_up_to_limit(self):
        limiter = AttemptLimiter(limit=3, window_ms=60000, clock=ManualClock())
        assert [limiter.allow("u1:login") for _ in range(4)] == [True, True, True, False]

    def test_window_slides(self):
        clock = ManualClock()
        limiter = AttemptLimiter(limit=2, window_ms=1000, clock=clock)
        limiter.allow("u1:login")
        clock.advance(500)
        limiter.allow("u1:login")
        assert not limiter.allow("u1:login")
        clock.advance(501)
        assert limiter.allow("u1:login")

    def test_check_does_not_consume(self):
        clock = ManualClock()
        limiter = AttemptLimiter(limit=2, window_ms=1000, clock=clock)
        limiter.allow("k")
        info = limiter.check("k")
        assert info.allowed and info.remaining == 1
        assert limiter.check("k").remaining == 1

    def test_acquire_raises_with_retry_after(self):
        clock = ManualClock()
        limiter = AttemptLimiter(limit=1, window_ms=60000, clock=clock)
        limiter.acquire("u1:password-reset")
        clock.advance(15000)
        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.acquire("u1:password-reset")
        assert exc_info.value.retry_after == 45.0
        assert not exc_info.value.retryable

    def test_per_action_rules(self):
        limiter = AttemptLimiter(limit=5, rules={"login": (1, 60000)}, clock=ManualClock())
        assert limiter.allow("u1:login")
        assert not limiter.allow("u1:login")
        assert limiter.allow("u1:sync")
        assert limiter.allow("u2:login")

    def test_reset(self):
        limiter = AttemptLimiter(limit=1, clock=ManualClock())
        limiter.allow("a:x")
        limiter.allow("b:x")
        limiter.reset("a:x")
        assert limiter.allow("a:x")
        assert not limiter.allow("b:x")
        limiter.reset()
        assert limiter.allow("b:x")

    @pytest.mark.parametrize("kwargs", [{"limit": 0}, {"window_ms": 0}])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            AttemptLimiter(**kwargs)
