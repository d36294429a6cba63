"""Tests for the protected-call entrypoint."""
import asyncio

import pytest

from healthsync.errors import (
    CircuitOpenError,
    NetworkError,
    RateLimitExceeded,
    ServiceUnavailableError,
    ValidationError,
)
from healthsync.resilience import CallOptions, CircuitState, RetryPolicy


class Script:
    """Async action returning or raising the queued outcomes in turn."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class TestExecute:
    """Test composition of limiter, breaker, retry and timeout."""

    async def test_success(self, caller):
        assert await caller.execute("api", Script("ok")) == "ok"

    async def test_transient_failure_retried(self, caller, sleep):
        action = Script(NetworkError("reset"), "ok")
        assert await caller.execute("api", action) == "ok"
        assert action.calls == 2
        assert sleep.delays == [0.1]

    async def test_exhausted_retries_count_once_against_circuit(self, caller, breakers, error_log):
        action = Script(NetworkError("offline"))
        with pytest.raises(NetworkError) as exc_info:
            await caller.execute("api", action)
        assert action.calls == 3
        assert exc_info.value.attempts == 3
        assert breakers.get("api").record.failure_count == 1
        assert error_log.entries()[0].context["service"] == "api"

    async def test_validation_error_not_retried_or_counted(self, caller, breakers):
        action = Script(ValidationError("mood must be 1-5", field="mood"))
        with pytest.raises(ValidationError):
            await caller.execute("api", action, CallOptions(fallback=lambda: "unused"))
        assert action.calls == 1
        assert breakers.get("api").record.failure_count == 0

    async def test_untyped_error_wrapped(self, caller):
        with pytest.raises(ServiceUnavailableError) as exc_info:
            await caller.execute("api", Script(KeyError("missing")),
                                 CallOptions(retry=RetryPolicy(max_retries=0)))
        assert isinstance(exc_info.value.__cause__, KeyError)
        assert exc_info.value.context["cause"] == "KeyError"

    async def test_timeout_is_network_error(self, caller):
        async def hang():
            await asyncio.sleep(10)

        with pytest.raises(NetworkError):
            await caller.execute("ai", hang, CallOptions(
                timeout_ms=10, retry=RetryPolicy(max_retries=0)))

    async def test_open_circuit_fails_fast(self, caller, breakers):
        await breakers.force_open("ai")
        action = Script("insight")
        with pytest.raises(CircuitOpenError):
            await caller.execute("ai", action)
        assert action.calls == 0

    async def test_fallback_after_failure(self, caller):
        result = await caller.execute_result(
            "ai", Script(NetworkError("offline")),
            CallOptions(fallback=lambda: "Stay hydrated"),
        )
        assert result.ok and result.from_fallback
        assert result.value == "Stay hydrated"
        assert result.meta["error"]["type"] == "NETWORK_ERROR"

    async def test_async_fallback(self, caller, breakers):
        await breakers.force_open("ai")

        async def cached():
            return {"cached": True}

        value = await caller.execute("ai", Script("x"), CallOptions(fallback=cached))
        assert value == {"cached": True}

    async def test_execute_result_failure(self, caller):
        result = await caller.execute_result("api", Script(NetworkError("offline")))
        assert not result.ok
        assert isinstance(result.error, NetworkError)
        assert result.unwrap_or("default") == "default"

    async def test_rate_limit_checked_first(self, caller, breakers):
        caller.limiter.rules["login"] = (1, 60000)
        opts = CallOptions(rate_limit_key="u1:login")
        await caller.execute("auth", Script("token"), opts)

        action = Script("token")
        with pytest.raises(RateLimitExceeded):
            await caller.execute("auth", action, opts)
        assert action.calls == 0
        assert breakers.get("auth").state == CircuitState.CLOSED

    async def test_circuit_opens_after_threshold_calls(self, caller, breakers):
        for _ in range(3):
            with pytest.raises(NetworkError):
                await caller.execute("api", Script(NetworkError("down")))
        assert breakers.get("api").state == CircuitState.OPEN
