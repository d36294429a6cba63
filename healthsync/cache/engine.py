"""
Cache strategy engine.

Classifies each outbound request and serves it with the matching strategy:

- critical / static: stale-while-revalidate
- api: network first, TTL-honoring cache fallback, then contextual fallback
- image: cache first (responses under 1 MiB are cached)
- navigation: network first, cached app shell when offline
- other: network first, cache fallback, degraded payload

The network leg always goes through the ProtectedCaller, so breakers,
retries and timeouts apply to cache fills as well.

Example:
    engine = CacheStrategyEngine(store, network, caller, resolver)
    response = await engine.handle(Request("/api/moods"))
"""

from __future__ import annotations

import asyncio
from typing import Any

from healthsync.cache.entries import (
    DEFAULT_TTL_BY_CATEGORY,
    CacheEntry,
    CacheRegion,
    CacheRules,
    CacheStats,
    ResourceClass,
    TTLCategory,
    entry_key,
)
from healthsync.core.network import NetworkClient, Request, Response, service_for
from healthsync.core.store import DurableStore, Regions
from healthsync.errors import ResilienceError, StorageError
from healthsync.logging_config import get_logger
from healthsync.resilience.fallback import FallbackResolver
from healthsync.resilience.protected import CallOptions, ProtectedCaller
from healthsync.resilience.retry import RetryPolicy
from healthsync.utils import Clock, now_ms

logger = get_logger(__name__)

SWR = "stale-while-revalidate"
NETWORK_FIRST = "network-first"
CACHE_FIRST = "cache-first"
OFFLINE_SHELL = "network-with-offline-shell"
NETWORK_FIRST_CACHE = "network-first-with-cache"

OFFLINE_PAGE = """<!DOCTYPE html>
<html>
<head>
  <title>Offline</title>
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body>
  <div class="offline-message">
    <h1>You're Offline</h1>
    <p>The app is not available right now. Please check your connection and try again.</p>
    <button onclick="location.reload()">Retry</button>
  </div>
</body>
</html>
"""

_JSON_HEADERS = {"content-type": "application/json"}


class CacheStrategyEngine:
    """
    Multi-strategy response cache over the durable store.

    Entries live in the ``cacheEntries`` store region under
    ``"<cache region>:<normalized url>"`` keys.
    """

    def __init__(
        self,
        store: DurableStore,
        network: NetworkClient,
        caller: ProtectedCaller,
        resolver: FallbackResolver | None = None,
        *,
        rules: CacheRules | None = None,
        ttl_by_category: dict[str, float] | None = None,
        network_timeout_ms: float = 10000,
        retry_policy: RetryPolicy | None = None,
        clock: Clock = now_ms,
    ):
        """
        Initialize the engine.

        Args:
            store: Durable store holding the cacheEntries region
            network: Client performing the actual fetches
            caller: Protected-call path for every network leg
            resolver: Terminal fallback content
            rules: Classification rules
            ttl_by_category: TTL overrides merged over the defaults
            network_timeout_ms: Bound on each fetch attempt
            retry_policy: Retry policy for fetches (caller default when None)
            clock: Millisecond clock
        """
        self.store = store
        self.network = network
        self.caller = caller
        self.resolver = resolver or FallbackResolver(clock)
        self.rules = rules or CacheRules()
        self.ttl_by_category = {**DEFAULT_TTL_BY_CATEGORY, **(ttl_by_category or {})}
        self.network_timeout_ms = network_timeout_ms
        self.retry_policy = retry_policy
        self.clock = clock
        self._stats = CacheStats()
        self._background: dict[str, asyncio.Task] = {}
        self._sweeper: asyncio.Task | None = None

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def classify(self, request: Request) -> ResourceClass:
        return self.rules.classify(request)

    async def handle(self, request: Request) -> Response:
        """
        Serve a request with the strategy for its resource class.

        GET requests always yield a Response (cached, live or substitute).
        Other methods bypass the cache and surface typed errors.
        """
        if request.method.upper() != "GET":
            return await self._fetch(request)

        resource_class = self.classify(request)
        self._stats.count_class(resource_class)
        logger.debug("cache_handle", url=request.url, resource_class=resource_class.value)

        if resource_class in (ResourceClass.CRITICAL, ResourceClass.STATIC):
            return await self.stale_while_revalidate(request)
        if resource_class == ResourceClass.API:
            return await self.network_first_with_intelligent_fallback(request)
        if resource_class == ResourceClass.IMAGE:
            return await self.cache_first(request)
        if resource_class == ResourceClass.NAVIGATION:
            return await self.network_with_offline_shell(request)
        return await self.network_first_with_cache(request)

    # -------------------------------------------------------------------------
    # Strategies
    # -------------------------------------------------------------------------

    async def stale_while_revalidate(self, request: Request) -> Response:
        entry = await self._lookup(request.url, (CacheRegion.STATIC, CacheRegion.PERFORMANCE))
        if entry is not None:
            self._stats.hits += 1
            self._schedule_revalidation(request, entry.region)
            return entry.to_response(self.clock(), {"x-cache-strategy": SWR})

        self._stats.misses += 1
        try:
            response = await self._fetch(request)
        except ResilienceError:
            self._stats.fallbacks += 1
            return Response(
                status=503,
                body=self.resolver.unavailable_payload(),
                headers={**_JSON_HEADERS, "x-offline-fallback": "true"},
            )
        if response.ok:
            await self._save(request, response, CacheRegion.STATIC, TTLCategory.STATIC, SWR)
        return response

    async def network_first_with_intelligent_fallback(self, request: Request) -> Response:
        # Anything past its TTL is gone before the network is even tried.
        await self._purge_if_expired(request.url, (CacheRegion.DYNAMIC,))

        try:
            response = await self._fetch(request)
        except ResilienceError as e:
            logger.info("api_fetch_failed", url=request.url, error=e.error_type)
        else:
            if response.ok:
                category = TTLCategory.API_JSON if response.is_json else TTLCategory.API_OTHER
                await self._save(request, response, CacheRegion.DYNAMIC, category, NETWORK_FIRST)
            return response

        entry = await self._lookup(request.url, (CacheRegion.DYNAMIC,), honor_ttl=True)
        if entry is not None:
            self._stats.hits += 1
            return entry.to_response(
                self.clock(),
                {"x-cache-strategy": NETWORK_FIRST, "x-offline-mode": "true"},
            )

        self._stats.misses += 1
        self._stats.fallbacks += 1
        if service_for(request) == "ai":
            return Response(
                status=503,
                body=self.resolver.api_fallback(request.path),
                headers={**_JSON_HEADERS, "x-ai-fallback": "true", "x-offline-mode": "true"},
            )
        return Response(
            status=503,
            body=self.resolver.degraded_payload(),
            headers={**_JSON_HEADERS, "x-offline-mode": "true"},
        )

    async def cache_first(self, request: Request) -> Response:
        regions = (CacheRegion.IMAGE, CacheRegion.STATIC)
        entry = await self._lookup(request.url, regions, honor_ttl=True)
        if entry is not None:
            self._stats.hits += 1
            return entry.to_response(self.clock(), {"x-cache-strategy": CACHE_FIRST})

        self._stats.misses += 1
        try:
            response = await self._fetch(request)
        except ResilienceError:
            placeholder = await self._lookup(self.rules.image_placeholder, regions)
            self._stats.fallbacks += 1
            if placeholder is not None:
                return placeholder.to_response(self.clock(), {"x-offline-mode": "true"})
            return Response(status=404, body=b"", headers={"x-offline-mode": "true"})

        size = response.content_length
        if response.ok and (size is None or size < self.rules.image_size_limit):
            await self._save(request, response, CacheRegion.IMAGE, TTLCategory.IMAGE, CACHE_FIRST)
        return response

    async def network_with_offline_shell(self, request: Request) -> Response:
        try:
            return await self._fetch(request)
        except ResilienceError:
            self._stats.fallbacks += 1

        shell = await self._lookup(self.rules.app_shell, (CacheRegion.STATIC,))
        if shell is not None:
            return shell.to_response(
                self.clock(), {"x-offline-mode": "true", "x-cache-strategy": OFFLINE_SHELL}
            )
        return Response(
            status=503,
            body=OFFLINE_PAGE,
            headers={"content-type": "text/html", "x-offline-mode": "true"},
        )

    async def network_first_with_cache(self, request: Request) -> Response:
        try:
            response = await self._fetch(request)
        except ResilienceError:
            pass
        else:
            if response.ok:
                await self._save(
                    request, response, CacheRegion.DYNAMIC, TTLCategory.OTHER, NETWORK_FIRST_CACHE
                )
            return response

        entry = await self._lookup(request.url, (CacheRegion.DYNAMIC,), honor_ttl=True)
        if entry is not None:
            self._stats.hits += 1
            return entry.to_response(
                self.clock(),
                {"x-cache-strategy": NETWORK_FIRST_CACHE, "x-offline-mode": "true"},
            )
        self._stats.misses += 1
        self._stats.fallbacks += 1
        return Response(
            status=503,
            body=self.resolver.degraded_payload(),
            headers={**_JSON_HEADERS, "x-offline-mode": "true"},
        )

    # -------------------------------------------------------------------------
    # Network leg
    # -------------------------------------------------------------------------

    async def _fetch(self, request: Request) -> Response:
        return await self.caller.execute(
            service_for(request),
            lambda: self.network.fetch(request, self.network_timeout_ms),
            CallOptions(
                retry=self.retry_policy,
                timeout_ms=self.network_timeout_ms,
                context={"url": request.url, "method": request.method},
            ),
        )

    def _schedule_revalidation(self, request: Request, region: CacheRegion) -> None:
        key = entry_key(region, request.url)
        if key in self._background and not self._background[key].done():
            return
        task = asyncio.get_running_loop().create_task(self._revalidate(request, region))
        self._background[key] = task
        task.add_done_callback(lambda _t, k=key: self._background.pop(k, None))

    async def _revalidate(self, request: Request, region: CacheRegion) -> None:
        try:
            response = await self._fetch(request)
        except ResilienceError as e:
            # Already recorded by the protected caller; the stale copy stays.
            self._stats.revalidation_failures += 1
            logger.debug("revalidation_failed", url=request.url, error=e.error_type)
            return
        if response.ok:
            await self._save(request, response, region, TTLCategory.STATIC, SWR)
            self._stats.revalidations += 1

    async def wait_for_background(self) -> None:
        """Wait for pending revalidations."""
        while self._background:
            await asyncio.gather(*list(self._background.values()), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Store access
    # -------------------------------------------------------------------------

    async def _lookup(
        self,
        url: str,
        regions: tuple[CacheRegion, ...],
        honor_ttl: bool = False,
    ) -> CacheEntry | None:
        for region in regions:
            key = entry_key(region, url)
            try:
                raw = await self.store.get(Regions.CACHE_ENTRIES, key)
            except StorageError as e:
                logger.warning("cache_read_failed", key=key, error=e.message)
                return None
            if raw is None:
                continue
            entry = CacheEntry.from_dict(raw)
            if honor_ttl and entry.is_expired(self.clock()):
                await self._delete(key)
                self._stats.expirations += 1
                logger.debug("cache_entry_expired", key=key)
                continue
            return entry
        return None

    async def _purge_if_expired(self, url: str, regions: tuple[CacheRegion, ...]) -> None:
        await self._lookup(url, regions, honor_ttl=True)

    async def _save(
        self,
        request: Request,
        response: Response,
        region: CacheRegion,
        category: str,
        strategy_tag: str,
    ) -> None:
        key = entry_key(region, request.url)
        entry = CacheEntry(
            key=key,
            url=request.url,
            body=response.body,
            status=response.status,
            headers=dict(response.headers),
            cached_at=self.clock(),
            ttl_ms=self.ttl_by_category.get(category, self.ttl_by_category[TTLCategory.OTHER]),
            region=region,
            strategy_tag=strategy_tag,
        )
        try:
            await self.store.put(Regions.CACHE_ENTRIES, key, entry.to_dict())
        except StorageError as e:
            logger.warning("cache_write_failed", key=key, error=e.message)
            return
        self._stats.stores += 1

    async def _delete(self, key: str) -> bool:
        try:
            return await self.store.delete(Regions.CACHE_ENTRIES, key)
        except StorageError as e:
            logger.warning("cache_delete_failed", key=key, error=e.message)
            return False

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def sweep_expired(self) -> int:
        """Remove every entry older than its TTL. Returns number removed."""
        now = self.clock()
        removed = 0
        for key, raw in await self.store.items(Regions.CACHE_ENTRIES):
            try:
                entry = CacheEntry.from_dict(raw)
            except (KeyError, ValueError, TypeError):
                await self._delete(key)
                removed += 1
                continue
            if entry.is_expired(now) and await self._delete(key):
                removed += 1
        self._stats.expirations += removed
        if removed:
            logger.info("cache_swept", removed=removed)
        return removed

    def start_sweeper(self, interval_s: float = 3600) -> None:
        """Run ``sweep_expired`` periodically on the running loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop(interval_s))

    async def _sweep_loop(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                await self.sweep_expired()
            except StorageError as e:
                logger.error("cache_sweep_failed", error=e.message)

    async def stop(self) -> None:
        """Cancel the sweeper and pending revalidations."""
        tasks = [t for t in [self._sweeper, *self._background.values()] if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._sweeper = None
        self._background.clear()

    async def precache(self, urls: list[str] | None = None) -> dict[str, Any]:
        """
        Populate the static and performance regions.

        Returns:
            {"cached": [...], "failed": [...]}
        """
        cached: list[str] = []
        failed: list[str] = []
        for url in urls if urls is not None else self.rules.precache_urls():
            request = Request(url)
            region = (
                CacheRegion.PERFORMANCE
                if request.path in self.rules.performance_critical
                else CacheRegion.STATIC
            )
            try:
                response = await self._fetch(request)
            except ResilienceError:
                failed.append(url)
                continue
            if not response.ok:
                failed.append(url)
                continue
            await self._save(request, response, region, TTLCategory.STATIC, SWR)
            cached.append(url)
        logger.info("precache_complete", cached=len(cached), failed=len(failed))
        return {"cached": cached, "failed": failed}

    async def invalidate(self, url: str) -> int:
        """Drop ``url`` from every cache region."""
        removed = 0
        for region in CacheRegion:
            if await self._delete(entry_key(region, url)):
                removed += 1
        return removed

    async def clear(self, region: CacheRegion | None = None) -> int:
        """Remove every entry, or only those of one cache region."""
        if region is None:
            return await self.store.clear(Regions.CACHE_ENTRIES)
        prefix = f"{region.value}:"
        removed = 0
        for key, _ in await self.store.items(Regions.CACHE_ENTRIES):
            if key.startswith(prefix) and await self._delete(key):
                removed += 1
        return removed

    async def entry_count(self) -> int:
        return len(await self.store.items(Regions.CACHE_ENTRIES))

    def stats(self) -> CacheStats:
        return self._stats
