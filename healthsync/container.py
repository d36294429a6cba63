"""Engine settings and component wiring for healthsync.

``ResilienceEngine`` owns every component and hands each one its
collaborators explicitly; there are no module-level singletons.

Usage:
    engine = ResilienceEngine(EngineSettings(data_dir=Path("~/.healthsync")))
    async with engine:
        response = await engine.handle(Request("/api/moods"))
        await engine.enqueue("create", "moods", {"mood": 4})
"""

from __future__ import annotations

import asyncio
import os
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from types import TracebackType
from typing import Any, TypeVar

from healthsync.cache import DEFAULT_TTL_BY_CATEGORY, CacheStrategyEngine
from healthsync.core import (
    AiohttpNetworkClient,
    DurableStore,
    Environment,
    InMemoryStore,
    JsonFileStore,
    NetworkClient,
    Regions,
    Request,
    ResilientStore,
    Response,
    SqliteStore,
    detect_environment,
)
from healthsync.errors import CallResult, StorageError
from healthsync.events import ErrorLog, EventBus, EventTypes
from healthsync.health import HealthCheck, HealthReport, HealthStatus, disk_check
from healthsync.logging_config import configure_from_settings, get_logger
from healthsync.queue import (
    DrainReport,
    HttpOperationReplayer,
    OfflineOperationQueue,
    OperationStatus,
    QueuedOperation,
)
from healthsync.ratelimit import AttemptLimiter
from healthsync.resilience import (
    CallOptions,
    CircuitBreakerConfig,
    CircuitBreakerManager,
    CircuitState,
    FallbackResolver,
    ProtectedCaller,
    RetryPolicy,
)
from healthsync.resilience.retry import Sleep
from healthsync.utils import Clock, now_ms

logger = get_logger(__name__)

T = TypeVar("T")

_ENV_PREFIX = "HEALTHSYNC_"


def _env(name: str) -> str | None:
    value = os.environ.get(_ENV_PREFIX + name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_bool(value: str) -> bool:
    return value.lower() in ("1", "true", "yes", "on")


@dataclass
class EngineSettings:
    """Engine configuration.

    Defaults follow the production client: a circuit opens after 5
    consecutive failures and probes again after 60 s, calls are retried 3
    times from a 1 s base delay, queued writes get 3 drain attempts.
    """

    # Circuit breaker
    failure_threshold: int = 5
    open_timeout_ms: float = 60000
    half_open_success_threshold: int = 3

    # Retry
    max_retries: int = 3
    base_delay_ms: float = 1000
    backoff_factor: float = 2.0
    jitter: bool = True
    max_delay_ms: float = 30000

    # Cache
    ttl_by_category: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_TTL_BY_CATEGORY)
    )
    sweep_interval_s: float = 3600

    # Queue
    max_queue_attempts: int = 3
    synced_grace_ms: float = 60000
    drain_interval_s: float = 30

    # Timeouts
    network_timeout_ms: float = 10000
    store_timeout_ms: float = 5000

    # Error log
    max_log_size: int = 100

    # Environment
    data_dir: Path | None = None
    api_base_url: str | None = None
    log_level: str = "INFO"
    log_json: bool = False

    def __post_init__(self):
        if isinstance(self.data_dir, str):
            self.data_dir = Path(self.data_dir).expanduser()
        for name in ("failure_threshold", "half_open_success_threshold",
                     "max_queue_attempts", "max_log_size"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        for name in ("open_timeout_ms", "base_delay_ms", "max_delay_ms",
                     "network_timeout_ms", "store_timeout_ms"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.synced_grace_ms < 0:
            raise ValueError("synced_grace_ms must be >= 0")
        for category, ttl in self.ttl_by_category.items():
            if ttl <= 0:
                raise ValueError(f"TTL for '{category}' must be > 0")
        missing = set(DEFAULT_TTL_BY_CATEGORY) - set(self.ttl_by_category)
        if missing:
            raise ValueError(f"ttl_by_category missing: {', '.join(sorted(missing))}")

    @classmethod
    def from_env(cls) -> EngineSettings:
        """Load settings from ``HEALTHSYNC_*`` environment variables.

        Unset variables keep their defaults. TTLs are overridden per
        category with ``HEALTHSYNC_TTL_<CATEGORY>_MS`` where the category
        name is upper-cased and ``/`` becomes ``_`` (``TTL_API_JSON_MS``).

        Raises:
            ValueError: A variable does not parse or fails validation
        """
        kwargs: dict[str, Any] = {}
        converters: dict[str, Callable[[str], Any]] = {
            "failure_threshold": int,
            "open_timeout_ms": float,
            "half_open_success_threshold": int,
            "max_retries": int,
            "base_delay_ms": float,
            "backoff_factor": float,
            "jitter": _env_bool,
            "max_delay_ms": float,
            "sweep_interval_s": float,
            "max_queue_attempts": int,
            "synced_grace_ms": float,
            "drain_interval_s": float,
            "network_timeout_ms": float,
            "store_timeout_ms": float,
            "max_log_size": int,
            "data_dir": Path,
            "api_base_url": str,
            "log_level": str.upper,
            "log_json": _env_bool,
        }
        for name, convert in converters.items():
            raw = _env(name.upper())
            if raw is None:
                continue
            try:
                kwargs[name] = convert(raw)
            except ValueError as e:
                raise ValueError(f"{_ENV_PREFIX}{name.upper()}={raw!r}: {e}") from e

        ttl = dict(DEFAULT_TTL_BY_CATEGORY)
        for category in DEFAULT_TTL_BY_CATEGORY:
            var = "TTL_" + category.upper().replace("/", "_") + "_MS"
            raw = _env(var)
            if raw is not None:
                ttl[category] = float(raw)
        kwargs["ttl_by_category"] = ttl

        return cls(**kwargs)

    def circuit_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            open_timeout_ms=self.open_timeout_ms,
            half_open_success_threshold=self.half_open_success_threshold,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay_ms=self.base_delay_ms,
            backoff_factor=self.backoff_factor,
            jitter=self.jitter,
            max_delay_ms=self.max_delay_ms,
        )


class ResilienceEngine:
    """Owner of every healthsync component.

    Attributes:
        settings: Engine configuration
        environment: Capabilities detected at construction
        bus: Event bus all components publish to
        store: Resilient durable store
        error_log: Bounded error log
        breakers: Circuit breaker manager
        limiter: Attempt limiter
        caller: Protected-call entrypoint
        resolver: Fallback content resolver
        cache: Cache strategy engine
        queue: Offline operation queue
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        network: NetworkClient | None = None,
        store: DurableStore | None = None,
        clock: Clock = now_ms,
        sleep: Sleep = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        """Wire the components.

        Args:
            settings: Configuration (defaults when None)
            network: Network client; an aiohttp client on ``api_base_url`` when None
            store: Primary durable store; chosen from the environment when None
            clock: Millisecond clock shared by every component
            sleep: Retry sleep (seconds)
            rng: Jitter source
        """
        self.settings = settings or EngineSettings()
        self.clock = clock
        self.environment: Environment = detect_environment(self.settings.data_dir)
        self.bus = EventBus()
        self.error_log = ErrorLog(max_size=self.settings.max_log_size, clock=clock)

        self.store = self._build_store(store)
        self.error_log.store = self.store

        self._owns_network = network is None
        self.network = network or AiohttpNetworkClient(
            self.settings.api_base_url,
            default_timeout_ms=self.settings.network_timeout_ms,
        )

        retry_policy = self.settings.retry_policy()
        self.breakers = CircuitBreakerManager(
            self.settings.circuit_config(), store=self.store, bus=self.bus, clock=clock
        )
        self.limiter = AttemptLimiter(clock=clock)
        self.caller = ProtectedCaller(
            self.breakers,
            error_log=self.error_log,
            limiter=self.limiter,
            retry_policy=retry_policy,
            timeout_ms=self.settings.network_timeout_ms,
            sleep=sleep,
            rng=rng,
        )
        self.resolver = FallbackResolver(clock=clock)
        self.cache = CacheStrategyEngine(
            self.store,
            self.network,
            self.caller,
            self.resolver,
            ttl_by_category=self.settings.ttl_by_category,
            network_timeout_ms=self.settings.network_timeout_ms,
            retry_policy=retry_policy,
            clock=clock,
        )
        self.replayer = HttpOperationReplayer(
            self.network, timeout_ms=self.settings.network_timeout_ms
        )
        self.queue = OfflineOperationQueue(
            self.store,
            self.caller,
            self.replayer,
            bus=self.bus,
            max_attempts=self.settings.max_queue_attempts,
            synced_grace_ms=self.settings.synced_grace_ms,
            retry_policy=retry_policy,
            collections=self.replayer.collections,
            clock=clock,
        )
        self._started = False

    @classmethod
    def from_env(cls, **kwargs: Any) -> ResilienceEngine:
        """Build an engine from ``HEALTHSYNC_*`` variables and configure logging."""
        settings = EngineSettings.from_env()
        configure_from_settings(settings)
        return cls(settings, **kwargs)

    def _build_store(self, store: DurableStore | None) -> ResilientStore:
        if isinstance(store, ResilientStore):
            store.on_failure = store.on_failure or self._on_storage_failure
            return store

        env = self.environment
        alternate: DurableStore | None = None
        if store is None:
            if env.store_backend == "sqlite" and env.data_dir is not None:
                store = SqliteStore(env.data_dir / "healthsync.db")
            else:
                store = InMemoryStore()
        if env.alternate_store and env.data_dir is not None:
            alternate = JsonFileStore(env.data_dir / "healthsync-fallback.json")

        logger.info(
            "store_selected",
            primary=store.name,
            alternate=alternate.name if alternate else None,
        )
        return ResilientStore(
            store,
            alternate=alternate,
            timeout_ms=self.settings.store_timeout_ms,
            on_failure=self._on_storage_failure,
        )

    async def _on_storage_failure(self, error: StorageError) -> None:
        await self.error_log.record(None, error, {"backend": self.store.active.name})
        if error.fatal:
            await self.bus.publish_async(
                EventTypes.STORAGE_UNSAFE,
                {
                    "message": "Your data may not be safe: changes could not be saved",
                    "region": error.region,
                    "error": error.to_dict(),
                },
                source="store",
            )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Load persisted state and start background timers."""
        if self._started:
            return
        await self.store.recover()
        await self.error_log.load()
        await self.breakers.load()
        await self.queue.load()
        if self.settings.sweep_interval_s > 0:
            self.cache.start_sweeper(self.settings.sweep_interval_s)
        if self.settings.drain_interval_s > 0:
            self.queue.start_periodic(self.settings.drain_interval_s)
        self._started = True
        logger.info(
            "engine_started",
            store=self.store.name,
            circuits=len(self.breakers.list_names()),
            pending=await self.queue.pending_count(),
        )

    async def stop(self) -> None:
        """Cancel timers and release the network client and store."""
        await self.queue.stop_periodic()
        await self.cache.stop()
        await self.bus.drain()
        if self._owns_network:
            await self.network.close()
        await self.store.close()
        self._started = False
        logger.info("engine_stopped")

    async def __aenter__(self) -> ResilienceEngine:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    # -------------------------------------------------------------------------
    # Entrypoints
    # -------------------------------------------------------------------------

    async def call(
        self,
        service_name: str,
        action: Callable[[], Awaitable[T]],
        options: CallOptions | None = None,
    ) -> T:
        return await self.caller.execute(service_name, action, options)

    async def call_result(
        self,
        service_name: str,
        action: Callable[[], Awaitable[T]],
        options: CallOptions | None = None,
    ) -> CallResult[T]:
        return await self.caller.execute_result(service_name, action, options)

    async def handle(self, request: Request) -> Response:
        return await self.cache.handle(request)

    async def install(self, urls: list[str] | None = None) -> dict[str, Any]:
        """Precache the app shell and static assets."""
        return await self.cache.precache(urls)

    async def enqueue(
        self,
        kind: str,
        target_collection: str,
        payload: dict[str, Any] | None = None,
        *,
        record_id: str | None = None,
    ) -> QueuedOperation:
        return await self.queue.enqueue(kind, target_collection, payload, record_id=record_id)

    async def drain(self) -> DrainReport | None:
        return await self.queue.drain()

    async def get_operation_status(self, operation_id: str) -> QueuedOperation | None:
        return await self.queue.get_status(operation_id)

    async def set_online(self, online: bool) -> DrainReport | None:
        return await self.queue.on_connectivity_change(online)

    def get_fallback(self, content_type: str, context: dict[str, Any] | None = None) -> Any:
        return self.resolver.get_fallback(content_type, context)

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    async def health_check(self) -> HealthReport:
        """Report store, circuit, queue and disk health."""
        checks = [
            await self._check_store(),
            self._check_circuits(),
            await self._check_queue(),
        ]
        if self.environment.data_dir is not None:
            checks.append(
                disk_check(self.environment.disk_percent_used, self.environment.disk_free_bytes)
            )
        report = HealthReport(checks=checks)
        logger.debug("health_checked", status=report.status.value)
        return report

    async def _check_store(self) -> HealthCheck:
        details = {"backend": self.store.active.name, "degraded": self.store.degraded}
        try:
            await self.store.get(Regions.SYNC_METADATA, "__probe__")
        except StorageError as e:
            return HealthCheck(
                name="store",
                status=HealthStatus.UNHEALTHY,
                message=f"Durable store unavailable: {e.message}",
                details=details,
            )
        if self.store.degraded:
            return HealthCheck(
                name="store",
                status=HealthStatus.DEGRADED,
                message="Using alternate persistence",
                details=details,
            )
        if not self.environment.persistent and self.store.primary.name == "memory":
            return HealthCheck(
                name="store",
                status=HealthStatus.DEGRADED,
                message="Data is kept in memory only",
                details=details,
            )
        return HealthCheck(name="store", status=HealthStatus.HEALTHY, message="OK", details=details)

    def _check_circuits(self) -> HealthCheck:
        statuses = self.breakers.status_all()
        not_closed = sorted(
            name for name, s in statuses.items() if s["state"] != CircuitState.CLOSED.value
        )
        if not_closed:
            return HealthCheck(
                name="circuits",
                status=HealthStatus.DEGRADED,
                message=f"Circuits not closed: {', '.join(not_closed)}",
                details=statuses,
            )
        return HealthCheck(
            name="circuits",
            status=HealthStatus.HEALTHY,
            message=f"{len(statuses)} circuit(s) closed",
            details=statuses,
        )

    async def _check_queue(self) -> HealthCheck:
        try:
            operations = await self.queue.list_operations()
        except StorageError as e:
            return HealthCheck(
                name="queue",
                status=HealthStatus.UNHEALTHY,
                message=f"Queue unreadable: {e.message}",
            )
        counts = {status.value: 0 for status in OperationStatus}
        for op in operations:
            counts[op.status.value] += 1
        details = {**counts, "online": self.queue.online}
        if counts[OperationStatus.FAILED.value]:
            return HealthCheck(
                name="queue",
                status=HealthStatus.DEGRADED,
                message=f"{counts[OperationStatus.FAILED.value]} operation(s) failed to sync",
                details=details,
            )
        return HealthCheck(
            name="queue",
            status=HealthStatus.HEALTHY,
            message=f"{counts[OperationStatus.PENDING.value]} operation(s) pending",
            details=details,
        )
