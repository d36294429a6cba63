"""
Circuit breakers for upstream dependencies.

Prevents hammering a failing service by blocking calls until it has had
time to recover. One breaker per dependency name, created lazily on the
first protected call and owned by a ``CircuitBreakerManager``.

States:
- CLOSED: calls run; consecutive failures are counted
- OPEN: calls fail fast until ``open_timeout_ms`` has passed since the last failure
- HALF_OPEN: exactly one probe in flight; enough probe successes close the
  circuit, any probe failure re-opens it

Example:
    manager = CircuitBreakerManager(bus=bus, store=store)
    insight = await manager.execute("insight-service", fetch_insight)
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from healthsync.core.store import DurableStore, Regions
from healthsync.errors import (
    CircuitOpenError,
    StorageError,
    SyncConflictError,
    ValidationError,
)
from healthsync.events.bus import EventBus, EventTypes
from healthsync.logging_config import get_logger
from healthsync.utils import Clock, iso_from_ms, now_ms

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerConfig:
    """
    Configuration for circuit breaker behavior.

    Args:
        failure_threshold: Consecutive failures before opening
        open_timeout_ms: Time since the last failure before a probe is allowed
        half_open_success_threshold: Probe successes needed to close
        exclude_exceptions: Exceptions that say nothing about service health
    """

    failure_threshold: int = 5
    open_timeout_ms: float = 60000
    half_open_success_threshold: int = 3
    exclude_exceptions: tuple[type[BaseException], ...] = (ValidationError, SyncConflictError)

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.half_open_success_threshold < 1:
            raise ValueError("half_open_success_threshold must be >= 1")
        if self.open_timeout_ms <= 0:
            raise ValueError("open_timeout_ms must be > 0")


@dataclass
class CircuitBreakerStats:
    """Counters for monitoring; not persisted."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_calls": self.total_calls,
            "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls,
            "rejected_calls": self.rejected_calls,
            "state_changes": self.state_changes,
            "success_rate": (
                self.successful_calls / self.total_calls if self.total_calls > 0 else 0.0
            ),
        }


@dataclass
class ServiceHealthRecord:
    """Persisted health state of one dependency."""

    service_name: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    failure_threshold: int = 5
    success_count_in_half_open: int = 0
    half_open_success_threshold: int = 3
    last_failure_timestamp: float | None = None
    open_timeout_ms: float = 60000

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_name": self.service_name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "success_count_in_half_open": self.success_count_in_half_open,
            "half_open_success_threshold": self.half_open_success_threshold,
            "last_failure_timestamp": self.last_failure_timestamp,
            "open_timeout_ms": self.open_timeout_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServiceHealthRecord:
        return cls(
            service_name=data["service_name"],
            state=CircuitState(data.get("state", "CLOSED")),
            failure_count=data.get("failure_count", 0),
            failure_threshold=data.get("failure_threshold", 5),
            success_count_in_half_open=data.get("success_count_in_half_open", 0),
            half_open_success_threshold=data.get("half_open_success_threshold", 3),
            last_failure_timestamp=data.get("last_failure_timestamp"),
            open_timeout_ms=data.get("open_timeout_ms", 60000),
        )


class CircuitBreaker:
    """
    State machine for a single dependency.

    Pure bookkeeping: it never awaits. ``CircuitBreakerManager`` drives it
    and turns recorded transitions into events and persisted records.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Clock = now_ms,
        record: ServiceHealthRecord | None = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.clock = clock
        self.record = record or ServiceHealthRecord(
            service_name=name,
            failure_threshold=self.config.failure_threshold,
            half_open_success_threshold=self.config.half_open_success_threshold,
            open_timeout_ms=self.config.open_timeout_ms,
        )
        self.stats = CircuitBreakerStats()
        self._probe_in_flight = False
        self._changes: list[tuple[CircuitState, CircuitState]] = []
        self._dirty = False

    @property
    def state(self) -> CircuitState:
        return self.record.state

    @property
    def probe_in_flight(self) -> bool:
        return self._probe_in_flight

    def _transition_to(self, new_state: CircuitState):
        old_state = self.record.state
        if old_state == new_state:
            return
        self.record.state = new_state
        self.stats.state_changes += 1
        self._changes.append((old_state, new_state))
        self._dirty = True
        if new_state == CircuitState.HALF_OPEN:
            self.record.success_count_in_half_open = 0
        logger.info(
            "circuit_state_change",
            service=self.name,
            old=old_state.value,
            new=new_state.value,
        )

    def _open_elapsed(self) -> bool:
        last = self.record.last_failure_timestamp
        if last is None:
            return True
        return self.clock() - last >= self.record.open_timeout_ms

    def remaining_open_ms(self) -> float:
        """Time until an OPEN circuit admits a probe."""
        if self.record.state != CircuitState.OPEN or self.record.last_failure_timestamp is None:
            return 0.0
        elapsed = self.clock() - self.record.last_failure_timestamp
        return max(0.0, self.record.open_timeout_ms - elapsed)

    def allow_request(self) -> bool:
        """
        Admit or reject a call. An admitted call in HALF_OPEN holds the probe
        slot until ``record_success``/``record_failure``/``release``.
        """
        if self.record.state == CircuitState.CLOSED:
            return True

        if self.record.state == CircuitState.OPEN:
            if not self._open_elapsed():
                self.stats.rejected_calls += 1
                return False
            self._transition_to(CircuitState.HALF_OPEN)

        if self._probe_in_flight:
            self.stats.rejected_calls += 1
            return False
        self._probe_in_flight = True
        return True

    def record_success(self):
        self.stats.total_calls += 1
        self.stats.successful_calls += 1

        if self.record.state == CircuitState.HALF_OPEN:
            self._probe_in_flight = False
            self.record.success_count_in_half_open += 1
            self._dirty = True
            if self.record.success_count_in_half_open >= self.record.half_open_success_threshold:
                self.record.failure_count = 0
                self.record.success_count_in_half_open = 0
                self._transition_to(CircuitState.CLOSED)
        elif self.record.failure_count:
            self.record.failure_count = 0
            self._dirty = True

    def record_failure(self, exception: BaseException | None = None):
        if exception is not None and isinstance(exception, self.config.exclude_exceptions):
            self.stats.total_calls += 1
            self.release()
            return

        self.stats.total_calls += 1
        self.stats.failed_calls += 1
        self.record.failure_count += 1
        self.record.last_failure_timestamp = self.clock()
        self._dirty = True

        if self.record.state == CircuitState.HALF_OPEN:
            self._probe_in_flight = False
            self.record.success_count_in_half_open = 0
            self._transition_to(CircuitState.OPEN)
        elif (
            self.record.state == CircuitState.CLOSED
            and self.record.failure_count >= self.record.failure_threshold
        ):
            self._transition_to(CircuitState.OPEN)

    def release(self):
        """Free the probe slot without judging the service (cancelled call)."""
        self._probe_in_flight = False

    def reset(self):
        self.record.failure_count = 0
        self.record.success_count_in_half_open = 0
        self.record.last_failure_timestamp = None
        self._probe_in_flight = False
        self._dirty = True
        self._transition_to(CircuitState.CLOSED)
        self.stats = CircuitBreakerStats()

    def force_open(self):
        self.record.last_failure_timestamp = self.clock()
        self._probe_in_flight = False
        self._dirty = True
        self._transition_to(CircuitState.OPEN)

    def take_changes(self) -> tuple[list[tuple[CircuitState, CircuitState]], bool]:
        """Pop pending transitions and whether the record needs persisting."""
        changes, dirty = self._changes, self._dirty
        self._changes, self._dirty = [], False
        return changes, dirty

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            **self.record.to_dict(),
            "last_failure_at": iso_from_ms(self.record.last_failure_timestamp),
            "remaining_open_ms": self.remaining_open_ms(),
            "probe_in_flight": self._probe_in_flight,
            "stats": self.stats.to_dict(),
        }


class CircuitBreakerManager:
    """
    Owner of every dependency's breaker.

    Passed explicitly to the components that make protected calls; there is
    no process-wide registry. State changes publish ``circuit-opened`` /
    ``circuit-closed`` and persist the record in the ``serviceHealth`` region.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        store: DurableStore | None = None,
        bus: EventBus | None = None,
        clock: Clock = now_ms,
    ):
        """
        Initialize manager.

        Args:
            config: Default config for new breakers
            store: Where health records are persisted
            bus: Where state changes are announced
            clock: Millisecond clock
        """
        self.config = config or CircuitBreakerConfig()
        self.store = store
        self.bus = bus
        self.clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    def get_or_create(self, name: str, config: CircuitBreakerConfig | None = None) -> CircuitBreaker:
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(name, config or self.config, self.clock)
            logger.debug("circuit_created", service=name)
        return self._breakers[name]

    def list_names(self) -> list[str]:
        return list(self._breakers)

    def __iter__(self):
        return iter(self._breakers.values())

    async def execute(
        self,
        service_name: str,
        action: Callable[[], Awaitable[T]],
        fallback: Callable[[], Any] | None = None,
    ) -> T:
        """
        Run ``action`` behind the dependency's breaker.

        Args:
            service_name: Dependency name
            action: Zero-argument coroutine factory
            fallback: Called instead of raising when the circuit rejects the call

        Returns:
            Action result, or fallback result when rejected

        Raises:
            CircuitOpenError: Rejected and no fallback given
        """
        breaker = self.get_or_create(service_name)

        if not breaker.allow_request():
            await self._flush(breaker)
            logger.debug("circuit_rejected", service=service_name, state=breaker.state.value)
            if fallback is not None:
                result = fallback()
                if inspect.isawaitable(result):
                    result = await result
                return result
            raise CircuitOpenError(service_name, breaker.state.value)

        await self._flush(breaker)
        try:
            result = await action()
        except asyncio.CancelledError:
            breaker.release()
            raise
        except Exception as e:
            breaker.record_failure(e)
            await self._flush(breaker)
            raise

        breaker.record_success()
        await self._flush(breaker)
        return result

    async def _flush(self, breaker: CircuitBreaker) -> None:
        changes, dirty = breaker.take_changes()
        if dirty:
            await self.persist(breaker.name)

        if self.bus is None:
            return
        for _old, new in changes:
            if new == CircuitState.OPEN:
                logger.warning(
                    "circuit_opened",
                    service=breaker.name,
                    failures=breaker.record.failure_count,
                )
                await self.bus.publish_async(
                    EventTypes.CIRCUIT_OPENED,
                    {
                        "service": breaker.name,
                        "failure_count": breaker.record.failure_count,
                        "last_failure_timestamp": breaker.record.last_failure_timestamp,
                        "open_timeout_ms": breaker.record.open_timeout_ms,
                    },
                    source="resilience",
                )
            elif new == CircuitState.CLOSED:
                await self.bus.publish_async(
                    EventTypes.CIRCUIT_CLOSED,
                    {"service": breaker.name},
                    source="resilience",
                )

    async def persist(self, name: str) -> None:
        breaker = self._breakers.get(name)
        if self.store is None or breaker is None:
            return
        try:
            await self.store.put(Regions.SERVICE_HEALTH, name, breaker.record.to_dict())
        except StorageError as e:
            # The store has already reported the failure; in-memory state stays authoritative.
            logger.error("circuit_persist_failed", service=name, error=e.message)

    async def load(self) -> int:
        """Restore persisted health records. Returns how many were loaded."""
        if self.store is None:
            return 0
        loaded = 0
        for name, data in await self.store.items(Regions.SERVICE_HEALTH):
            try:
                record = ServiceHealthRecord.from_dict(data)
            except (KeyError, ValueError) as e:
                logger.warning("circuit_record_invalid", service=name, error=str(e))
                continue
            self._breakers[name] = CircuitBreaker(name, self.config, self.clock, record=record)
            loaded += 1
        logger.info("circuits_loaded", count=loaded)
        return loaded

    def status(self, name: str) -> dict[str, Any] | None:
        breaker = self._breakers.get(name)
        return breaker.status() if breaker else None

    def status_all(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.status() for name, breaker in self._breakers.items()}

    async def reset(self, name: str) -> bool:
        breaker = self._breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        logger.info("circuit_reset", service=name)
        await self._flush(breaker)
        return True

    async def force_open(self, name: str) -> None:
        breaker = self.get_or_create(name)
        breaker.force_open()
        logger.warning("circuit_forced_open", service=name)
        await self._flush(breaker)

    async def reset_all(self) -> None:
        for name in list(self._breakers):
            await self.reset(name)
