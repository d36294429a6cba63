"""Tests for retry with exponential backoff."""
import asyncio

import pytest
from hypothesis import given
from hypothesis import strategies as st

from healthsync.errors import NetworkError, ValidationError
from healthsync.resilience.retry import RetryPolicy, compute_delay, retry_with_backoff


class Flaky:
    """Fails ``failures`` times, then returns ``value``."""

    def __init__(self, failures: int, error=None, value="ok"):
        self.failures = failures
        self.error = error or NetworkError("connection reset")
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


# =============================================================================
# RetryPolicy Tests
# =============================================================================

class TestRetryPolicy:
    """Test policy validation and retry decisions."""

    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_retries == 3
        assert policy.base_delay_ms == 1000
        assert policy.backoff_factor == 2.0
        assert policy.jitter is True

    @pytest.mark.parametrize("kwargs", [
        {"max_retries": -1},
        {"base_delay_ms": -5},
        {"backoff_factor": 0.5},
        {"base_delay_ms": 1000, "max_delay_ms": 10},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_validation_error_not_retried(self):
        policy = RetryPolicy()
        assert not policy.should_retry(ValidationError("bad"), 1)

    def test_retry_condition_consulted(self):
        policy = RetryPolicy(retry_condition=lambda e, n: "reset" in str(e))
        assert policy.should_retry(NetworkError("connection reset"), 1)
        assert not policy.should_retry(NetworkError("dns failure"), 1)


# =============================================================================
# compute_delay Tests
# =============================================================================

class TestComputeDelay:
    """Test backoff delay computation."""

    def test_exponential_without_jitter(self):
        policy = RetryPolicy(base_delay_ms=1000, backoff_factor=2, jitter=False)
        assert [compute_delay(policy, i) for i in range(4)] == [1000, 2000, 4000, 8000]

    def test_capped(self):
        policy = RetryPolicy(base_delay_ms=1000, backoff_factor=10, jitter=False,
                             max_delay_ms=5000)
        assert compute_delay(policy, 3) == 5000

    def test_jitter_bounds(self):
        policy = RetryPolicy(base_delay_ms=1000, jitter=True)
        assert compute_delay(policy, 0, rng=lambda: 0.0) == 500
        assert compute_delay(policy, 0, rng=lambda: 1.0) == 1000


@given(
    base=st.floats(min_value=1, max_value=5000),
    factor=st.floats(min_value=1, max_value=4),
    index=st.integers(min_value=0, max_value=8),
    r=st.floats(min_value=0, max_value=1),
)
def test_jittered_delay_within_half_to_full(base, factor, index, r):
    policy = RetryPolicy(base_delay_ms=base, backoff_factor=factor, jitter=True,
                         max_delay_ms=10**9)
    nominal = base * factor ** index
    delay = compute_delay(policy, index, rng=lambda: r)
    assert nominal * 0.5 - 1e-6 <= delay <= nominal + 1e-6


@given(retries=st.integers(min_value=0, max_value=6))
def test_always_failing_action_makes_retries_plus_one_attempts(retries):
    action = Flaky(failures=100)
    delays = []

    async def sleep(seconds):
        delays.append(seconds)

    async def run():
        with pytest.raises(NetworkError) as exc_info:
            await retry_with_backoff(
                action,
                RetryPolicy(max_retries=retries, base_delay_ms=10, jitter=False,
                            max_delay_ms=10**6),
                sleep=sleep,
            )
        return exc_info.value

    error = asyncio.run(run())
    assert action.calls == retries + 1
    assert error.attempts == retries + 1
    assert delays == [10 * 2 ** i / 1000 for i in range(retries)]


# =============================================================================
# retry_with_backoff Tests
# =============================================================================

class TestRetryWithBackoff:
    """Test the retry loop."""

    async def test_success_first_try(self, sleep):
        action = Flaky(failures=0)
        assert await retry_with_backoff(action, RetryPolicy(), sleep=sleep) == "ok"
        assert action.calls == 1
        assert sleep.delays == []

    async def test_recovers_after_transient_failures(self, sleep):
        action = Flaky(failures=2)
        policy = RetryPolicy(max_retries=3, base_delay_ms=1000, jitter=False)
        assert await retry_with_backoff(action, policy, sleep=sleep) == "ok"
        assert action.calls == 3
        assert sleep.delays == [1.0, 2.0]

    async def test_non_retryable_raised_immediately(self, sleep):
        action = Flaky(failures=5, error=ValidationError("missing mood", field="mood"))
        with pytest.raises(ValidationError) as exc_info:
            await retry_with_backoff(action, RetryPolicy(), sleep=sleep)
        assert action.calls == 1
        assert exc_info.value.attempts == 1
        assert sleep.delays == []

    async def test_untyped_errors_are_retried(self, sleep):
        action = Flaky(failures=1, error=RuntimeError("boom"))
        assert await retry_with_backoff(action, RetryPolicy(jitter=False), sleep=sleep) == "ok"
        assert action.calls == 2

    async def test_gave_up_note(self, sleep):
        action = Flaky(failures=10)
        with pytest.raises(NetworkError) as exc_info:
            await retry_with_backoff(action, RetryPolicy(max_retries=1), sleep=sleep)
        assert "gave up after 2 attempts" in exc_info.value.__notes__
