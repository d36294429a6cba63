"""
Retry with bounded exponential backoff.

The engine knows nothing about circuit state: it re-runs an async action
until it succeeds, the error is not retryable, or the budget is spent.
Sleep and randomness are injectable so tests never wait on real time.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from healthsync.errors import is_retryable
from healthsync.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RetryCondition = Callable[[BaseException, int], bool]
Sleep = Callable[[float], Awaitable[Any]]

JITTER_MIN = 0.5
JITTER_MAX = 1.0


@dataclass
class RetryPolicy:
    """
    Backoff configuration.

    Args:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1)
        base_delay_ms: Delay before the first retry
        backoff_factor: Multiplier applied per retry
        jitter: Scale each delay by a random factor in [0.5, 1.0]
        max_delay_ms: Upper bound on any single delay
        retry_condition: ``(error, attempts_so_far) -> bool``; None retries everything retryable
    """

    max_retries: int = 3
    base_delay_ms: float = 1000
    backoff_factor: float = 2.0
    jitter: bool = True
    max_delay_ms: float = 30000
    retry_condition: RetryCondition | None = None

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")

    def should_retry(self, error: BaseException, attempts: int) -> bool:
        if attempts > self.max_retries or not is_retryable(error):
            return False
        if self.retry_condition is not None:
            return self.retry_condition(error, attempts)
        return True


def compute_delay(
    policy: RetryPolicy,
    retry_index: int,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Delay in milliseconds before retry number ``retry_index + 1``.

    ``base_delay_ms * backoff_factor ** retry_index`` capped at
    ``max_delay_ms``, then scaled into [0.5, 1.0] of itself when jitter is on.
    """
    delay = min(
        policy.base_delay_ms * policy.backoff_factor ** retry_index,
        policy.max_delay_ms,
    )
    if policy.jitter:
        delay *= JITTER_MIN + (JITTER_MAX - JITTER_MIN) * rng()
    return delay


async def retry_with_backoff(
    action: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    sleep: Sleep = asyncio.sleep,
    rng: Callable[[], float] = random.random,
    label: str = "",
) -> T:
    """
    Run ``action`` until it succeeds or retries are exhausted.

    Args:
        action: Zero-argument coroutine factory
        policy: Backoff policy (defaults apply when None)
        sleep: Awaitable sleep taking seconds
        rng: Uniform [0, 1) source for jitter
        label: Name used in log records

    Returns:
        The action's result

    Raises:
        The last error, with ``attempts`` set to the number of attempts made
    """
    policy = policy or RetryPolicy()
    attempts = 0

    while True:
        attempts += 1
        try:
            return await action()
        except Exception as e:
            if not policy.should_retry(e, attempts):
                e.attempts = attempts
                if attempts > 1:
                    e.add_note(f"gave up after {attempts} attempts")
                logger.debug(
                    "retry_gave_up",
                    label=label,
                    attempts=attempts,
                    error=str(e),
                )
                raise

            delay_ms = compute_delay(policy, attempts - 1, rng)
            logger.debug(
                "retry_scheduled",
                label=label,
                attempt=attempts,
                delay_ms=round(delay_ms, 1),
                error=str(e),
            )
            await sleep(delay_ms / 1000.0)
