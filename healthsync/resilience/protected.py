"""
Protected-call entrypoint.

Composes the pieces around a real call, outermost first:

    attempt limiter -> circuit breaker gate -> retry with backoff -> timed attempt

Every failure that leaves ``execute`` is a ResilienceError and has been
recorded to the error log. ``execute_result`` returns the same outcome as an
explicit ``CallResult`` instead of raising.
"""

from __future__ import annotations

import asyncio
import inspect
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from healthsync.errors import (
    CallResult,
    NetworkError,
    ResilienceError,
    ServiceUnavailableError,
    ValidationError,
)
from healthsync.events.error_log import ErrorLog
from healthsync.logging_config import get_logger
from healthsync.ratelimit.limiter import AttemptLimiter
from healthsync.resilience.circuit_breaker import CircuitBreakerManager
from healthsync.resilience.retry import RetryPolicy, Sleep, retry_with_backoff

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class CallOptions:
    """
    Per-call overrides.

    Attributes:
        retry: Retry policy; the caller's default when None
        timeout_ms: Bound on each attempt; the caller's default when None
        fallback: Produces substitute output after a terminal failure
            (not used for ValidationError)
        rate_limit_key: Attempt-limiter key; no limiting when None
        context: Extra fields for the error log
    """

    retry: RetryPolicy | None = None
    timeout_ms: float | None = None
    fallback: Callable[[], Any] | None = None
    rate_limit_key: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


class ProtectedCaller:
    """
    Runs actions against unreliable dependencies.

    Example:
        caller = ProtectedCaller(breakers, error_log=log)
        insight = await caller.execute(
            "ai",
            lambda: client.fetch(Request("/api/ai/insight")),
            CallOptions(fallback=lambda: resolver.get_fallback("ai_content")),
        )
    """

    def __init__(
        self,
        breakers: CircuitBreakerManager,
        *,
        error_log: ErrorLog | None = None,
        limiter: AttemptLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout_ms: float = 10000,
        sleep: Sleep = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.breakers = breakers
        self.error_log = error_log
        self.limiter = limiter
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout_ms = timeout_ms
        self.sleep = sleep
        self.rng = rng

    async def execute(
        self,
        service_name: str,
        action: Callable[[], Awaitable[T]],
        options: CallOptions | None = None,
    ) -> T:
        """
        Run ``action`` under limiter, breaker, retry and timeout.

        Raises:
            RateLimitExceeded: Attempt budget spent
            CircuitOpenError: Circuit rejected the call and no fallback given
            NetworkError / ServiceUnavailableError: Retries exhausted
            ValidationError / SyncConflictError: Raised by the action, not retried
        """
        result = await self._run(service_name, action, options or CallOptions())
        return result.unwrap()

    async def execute_result(
        self,
        service_name: str,
        action: Callable[[], Awaitable[T]],
        options: CallOptions | None = None,
    ) -> CallResult[T]:
        """Like ``execute`` but returns a CallResult instead of raising."""
        return await self._run(service_name, action, options or CallOptions())

    async def _run(
        self,
        service_name: str,
        action: Callable[[], Awaitable[T]],
        opts: CallOptions,
    ) -> CallResult[T]:
        timeout_s = (opts.timeout_ms or self.timeout_ms) / 1000.0

        async def attempt() -> T:
            try:
                return await asyncio.wait_for(action(), timeout_s)
            except TimeoutError as e:
                raise NetworkError(
                    f"'{service_name}' did not answer within {timeout_s * 1000:.0f}ms",
                    context={"service": service_name},
                ) from e

        async def with_retry() -> T:
            return await retry_with_backoff(
                attempt,
                opts.retry or self.retry_policy,
                sleep=self.sleep,
                rng=self.rng,
                label=service_name,
            )

        try:
            if opts.rate_limit_key and self.limiter is not None:
                self.limiter.acquire(opts.rate_limit_key)
            value = await self.breakers.execute(service_name, with_retry)
            return CallResult.success(value)
        except ResilienceError as e:
            error = e
        except Exception as e:
            error = ServiceUnavailableError(
                service_name,
                f"'{service_name}' failed: {e}",
                context={"cause": type(e).__name__},
            )
            error.attempts = getattr(e, "attempts", None)
            error.__cause__ = e

        await self._record(service_name, error, opts)

        if opts.fallback is not None and not isinstance(error, ValidationError):
            substitute = opts.fallback()
            if inspect.isawaitable(substitute):
                substitute = await substitute
            logger.info("fallback_served", service=service_name, error_type=error.error_type)
            result = CallResult.success(substitute, from_fallback=True)
            result.meta["error"] = error.to_dict()
            return result

        return CallResult.failure(error)

    async def _record(self, service_name: str, error: ResilienceError, opts: CallOptions) -> None:
        if self.error_log is None:
            return
        await self.error_log.record(None, error, {"service": service_name, **opts.context})
