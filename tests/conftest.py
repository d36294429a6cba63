"""Pytest configuration and shared fixtures."""
from __future__ import annotations

from collections import defaultdict

import pytest

from healthsync.core import InMemoryStore, NetworkClient, Request, Response
from healthsync.errors import NetworkError
from healthsync.events import ErrorLog, EventBus
from healthsync.ratelimit import AttemptLimiter
from healthsync.resilience import (
    CircuitBreakerConfig,
    CircuitBreakerManager,
    ProtectedCaller,
    RetryPolicy,
)
from healthsync.utils import ManualClock


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "slow: mark test as slow running")


# =============================================================================
# Fakes
# =============================================================================


class FakeNetworkClient(NetworkClient):
    """Scripted network.

    ``route(path, *outcomes)`` queues Responses or exceptions for a path;
    the last outcome repeats once the others are used up.
    """

    def __init__(self):
        self.routes: dict[str, list] = {}
        self.requests: list[Request] = []
        self.calls: dict[str, int] = defaultdict(int)
        self.closed = False

    def route(self, path: str, *outcomes) -> None:
        self.routes[path] = list(outcomes)

    def count(self, path: str) -> int:
        return self.calls[path]

    async def fetch(self, request: Request, timeout_ms: float | None = None) -> Response:
        self.requests.append(request)
        key = request.url if request.url in self.routes else request.path
        self.calls[key] += 1
        outcomes = self.routes.get(key)
        if not outcomes:
            raise NetworkError(f"no route for {request.url}")
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(request)
        return outcome

    async def close(self) -> None:
        self.closed = True


class RecordingSleep:
    """Stand-in for asyncio.sleep that returns at once and records delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def json_response(body, status: int = 200) -> Response:
    return Response(status=status, body=body, headers={"content-type": "application/json"})


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return ManualClock(start=1_700_000_000_000)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def network():
    return FakeNetworkClient()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def error_log(store, clock):
    return ErrorLog(max_size=100, store=store, clock=clock)


@pytest.fixture
def breakers(store, bus, clock):
    config = CircuitBreakerConfig(failure_threshold=3, open_timeout_ms=30000,
                                  half_open_success_threshold=2)
    return CircuitBreakerManager(config, store=store, bus=bus, clock=clock)


@pytest.fixture
def caller(breakers, error_log, clock, sleep):
    return ProtectedCaller(
        breakers,
        error_log=error_log,
        limiter=AttemptLimiter(clock=clock),
        retry_policy=RetryPolicy(max_retries=2, base_delay_ms=100, jitter=False),
        sleep=sleep,
        rng=lambda: 1.0,
    )
