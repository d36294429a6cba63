"""Tests for request classification and caching strategies."""
import pytest

from conftest import FakeNetworkClient, json_response
from healthsync.cache import (
    DEFAULT_TTL_BY_CATEGORY,
    CacheEntry,
    CacheRegion,
    CacheRules,
    CacheStrategyEngine,
    ResourceClass,
    TTLCategory,
    entry_key,
    normalize_url,
)
from healthsync.cache.entries import DAY_MS
from healthsync.core import Regions, Request, Response
from healthsync.errors import NetworkError, ServiceUnavailableError, ValidationError
from healthsync.resilience import RetryPolicy


@pytest.fixture
def engine(store, network, caller, clock):
    return CacheStrategyEngine(
        store,
        network,
        caller,
        retry_policy=RetryPolicy(max_retries=0, base_delay_ms=1, jitter=False),
        clock=clock,
    )


def html(body="<html>app</html>", status=200):
    return Response(status=status, body=body, headers={"content-type": "text/html"})


# =============================================================================
# Classification Tests
# =============================================================================

class TestClassification:
    """Test resource classification rules."""

    @pytest.mark.parametrize("url,hint,expected", [
        ("/", None, ResourceClass.CRITICAL),
        ("/index.html", None, ResourceClass.CRITICAL),
        ("/styles/components.css", None, ResourceClass.STATIC),
        ("/js/module-loader.js", None, ResourceClass.STATIC),
        ("/api/moods", None, ResourceClass.API),
        ("https://generativelanguage.googleapis.com/v1/models", None, ResourceClass.API),
        ("/icons/icon-192x192.png", None, ResourceClass.IMAGE),
        ("/uploads/avatar", "image", ResourceClass.IMAGE),
        ("/dashboard", "navigate", ResourceClass.NAVIGATION),
        ("/data/report.csv", None, ResourceClass.OTHER),
    ])
    def test_classify(self, url, hint, expected):
        assert CacheRules().classify(Request(url, resource_hint=hint)) == expected

    def test_normalize_url_sorts_query_and_drops_fragment(self):
        assert normalize_url("HTTPS://Example.com/a?b=2&a=1#top") == "https://example.com/a?a=1&b=2"
        assert normalize_url("/api/moods") == "/api/moods"

    def test_entry_key(self):
        assert entry_key(CacheRegion.DYNAMIC, "/api/moods") == "dynamic:/api/moods"

    def test_precache_urls_unique(self):
        urls = CacheRules().precache_urls()
        assert len(urls) == len(set(urls))
        assert "/index.html" in urls


class TestCacheEntry:
    """Test entry freshness and serialization."""

    def test_expiry_boundary(self):
        entry = CacheEntry(key="k", body={}, status=200, headers={}, cached_at=0,
                           ttl_ms=1000, region=CacheRegion.DYNAMIC, strategy_tag="t")
        assert not entry.is_expired(1000)
        assert entry.is_expired(1001)

    def test_bytes_body_survives_dict(self):
        entry = CacheEntry(key="k", body=b"\x89PNG", status=200, headers={}, cached_at=0,
                           ttl_ms=1, region=CacheRegion.IMAGE, strategy_tag="t")
        assert CacheEntry.from_dict(entry.to_dict()).body == b"\x89PNG"

    def test_to_response_marks_cache(self):
        entry = CacheEntry(key="k", body="x", status=200, headers={"a": "b"}, cached_at=100,
                           ttl_ms=1, region=CacheRegion.STATIC, strategy_tag="t")
        response = entry.to_response(600)
        assert response.from_cache
        assert response.headers["x-served-from-cache"] == "true"
        assert response.headers["x-cache-age"] == "500"


# =============================================================================
# API strategy Tests
# =============================================================================

class TestNetworkFirst:
    """Test network-first with TTL-honoring fallback for API calls."""

    async def test_success_is_cached_with_json_ttl(self, engine, network, store, clock):
        network.route("/api/moods", json_response([{"mood": 4}]))
        response = await engine.handle(Request("/api/moods"))
        assert response.status == 200
        assert response.body == [{"mood": 4}]

        saved = await store.get(Regions.CACHE_ENTRIES, "dynamic:/api/moods")
        assert saved["ttl_ms"] == DEFAULT_TTL_BY_CATEGORY[TTLCategory.API_JSON] == DAY_MS
        assert saved["cached_at"] == clock()

    async def test_offline_serves_fresh_copy(self, engine, network, clock):
        network.route("/api/moods", json_response([{"mood": 4}]))
        await engine.handle(Request("/api/moods"))

        network.route("/api/moods", NetworkError("offline"))
        clock.advance(60_000)
        response = await engine.handle(Request("/api/moods"))
        assert response.status == 200
        assert response.from_cache
        assert response.headers["x-offline-mode"] == "true"
        assert response.body == [{"mood": 4}]

    async def test_expired_entry_purged_and_treated_as_miss(self, engine, network, store, clock):
        network.route("/api/moods", json_response([{"mood": 4}]))
        await engine.handle(Request("/api/moods"))
        assert await store.get(Regions.CACHE_ENTRIES, "dynamic:/api/moods") is not None

        network.route("/api/moods", NetworkError("offline"))
        clock.advance(90_000_000)
        response = await engine.handle(Request("/api/moods"))

        assert network.count("/api/moods") == 2
        assert await store.get(Regions.CACHE_ENTRIES, "dynamic:/api/moods") is None
        assert response.status == 503
        assert not response.from_cache
        assert response.body["offline"] is True
        assert engine.stats().expirations == 1

    async def test_expired_entry_replaced_by_network(self, engine, network, store, clock):
        network.route("/api/moods", json_response([{"mood": 1}]))
        await engine.handle(Request("/api/moods"))
        clock.advance(90_000_000)
        network.route("/api/moods", json_response([{"mood": 5}]))

        response = await engine.handle(Request("/api/moods"))
        assert response.body == [{"mood": 5}]
        saved = await store.get(Regions.CACHE_ENTRIES, "dynamic:/api/moods")
        assert saved["cached_at"] == clock()

    async def test_ai_route_gets_contextual_fallback(self, engine, network):
        network.route("/api/ai/risk-insight", ServiceUnavailableError("ai", status=502))
        response = await engine.handle(Request("/api/ai/risk-insight"))
        assert response.status == 503
        assert response.headers["x-ai-fallback"] == "true"
        assert response.body["error"] == "AI risk analysis unavailable"

    async def test_non_json_api_uses_other_ttl(self, engine, network, store):
        network.route("/api/export", Response(status=200, body="a,b",
                                              headers={"content-type": "text/csv"}))
        await engine.handle(Request("/api/export"))
        saved = await store.get(Regions.CACHE_ENTRIES, "dynamic:/api/export")
        assert saved["ttl_ms"] == DEFAULT_TTL_BY_CATEGORY[TTLCategory.API_OTHER]

    async def test_client_error_not_cached(self, engine, network, store):
        network.route("/api/moods/9", json_response({"error": "not found"}, status=404))
        response = await engine.handle(Request("/api/moods/9"))
        assert response.status == 404
        assert await store.get(Regions.CACHE_ENTRIES, "dynamic:/api/moods/9") is None


# =============================================================================
# Static, image, navigation Tests
# =============================================================================

class TestStaleWhileRevalidate:
    """Test stale-while-revalidate for critical and static assets."""

    async def test_miss_fetches_and_stores(self, engine, network, store):
        network.route("/styles/main.css", Response(200, "body{}", {"content-type": "text/css"}))
        response = await engine.handle(Request("/styles/main.css"))
        assert response.body == "body{}"
        assert await store.get(Regions.CACHE_ENTRIES, "static:/styles/main.css") is not None

    async def test_hit_served_then_refreshed(self, engine, network, store):
        network.route("/styles/main.css", Response(200, "v1", {"content-type": "text/css"}))
        await engine.handle(Request("/styles/main.css"))

        network.route("/styles/main.css", Response(200, "v2", {"content-type": "text/css"}))
        response = await engine.handle(Request("/styles/main.css"))
        assert response.body == "v1"
        assert response.from_cache

        await engine.wait_for_background()
        saved = await store.get(Regions.CACHE_ENTRIES, "static:/styles/main.css")
        assert saved["body"] == "v2"
        assert engine.stats().revalidations == 1

    async def test_revalidation_failure_keeps_copy(self, engine, network, store):
        network.route("/js/app.js", Response(200, "app", {"content-type": "text/javascript"}))
        await engine.handle(Request("/js/app.js"))
        network.route("/js/app.js", NetworkError("offline"))

        response = await engine.handle(Request("/js/app.js"))
        await engine.wait_for_background()
        assert response.body == "app"
        assert (await store.get(Regions.CACHE_ENTRIES, "static:/js/app.js"))["body"] == "app"
        assert engine.stats().revalidation_failures == 1

    async def test_miss_while_offline(self, engine, network):
        network.route("/js/auth.js", NetworkError("offline"))
        response = await engine.handle(Request("/js/auth.js"))
        assert response.status == 503
        assert response.headers["x-offline-fallback"] == "true"


class TestCacheFirst:
    """Test cache-first for images."""

    async def test_small_image_cached(self, engine, network):
        network.route("/img/meal.png", Response(200, b"png", {"content-type": "image/png"}))
        await engine.handle(Request("/img/meal.png"))
        response = await engine.handle(Request("/img/meal.png"))
        assert response.from_cache
        assert network.count("/img/meal.png") == 1

    async def test_large_image_not_cached(self, engine, network):
        network.route("/img/big.jpg", Response(
            200, b"jpg", {"content-type": "image/jpeg", "content-length": str(2 * 1024 * 1024)}
        ))
        await engine.handle(Request("/img/big.jpg"))
        await engine.handle(Request("/img/big.jpg"))
        assert network.count("/img/big.jpg") == 2

    async def test_offline_without_copy_is_404(self, engine, network):
        network.route("/img/x.png", NetworkError("offline"))
        response = await engine.handle(Request("/img/x.png"))
        assert response.status == 404


class TestNavigation:
    """Test network with offline app shell."""

    async def test_offline_serves_app_shell(self, engine, network):
        network.route("/index.html", html("<html>shell</html>"))
        await engine.precache(["/index.html"])

        network.route("/dashboard", NetworkError("offline"))
        response = await engine.handle(Request("/dashboard", resource_hint="navigate"))
        assert response.body == "<html>shell</html>"
        assert response.headers["x-offline-mode"] == "true"

    async def test_offline_without_shell(self, engine, network):
        network.route("/dashboard", NetworkError("offline"))
        response = await engine.handle(Request("/dashboard", resource_hint="navigate"))
        assert response.status == 503
        assert "You're Offline" in response.body


class TestOther:
    """Test network-first-with-cache for everything else."""

    async def test_degraded_payload_when_nothing_cached(self, engine, network):
        network.route("/data/report.csv", NetworkError("offline"))
        response = await engine.handle(Request("/data/report.csv"))
        assert response.status == 503
        assert response.body["capabilities"]["unavailable"]


# =============================================================================
# Non-GET and maintenance Tests
# =============================================================================

class TestMaintenance:
    """Test non-GET passthrough, precache, sweep and invalidation."""

    async def test_non_get_bypasses_cache(self, engine, network, store):
        network.route("/api/moods", json_response({"id": "m1"}, status=201))
        response = await engine.handle(Request("/api/moods", method="POST", body={"mood": 3}))
        assert response.status == 201
        assert await engine.entry_count() == 0

    async def test_non_get_surfaces_errors(self, engine, network):
        network.route("/api/moods", NetworkError("offline"))
        with pytest.raises(NetworkError):
            await engine.handle(Request("/api/moods", method="POST", body={}))

    async def test_precache_regions(self, engine, network, store):
        network.route("/index.html", html())
        network.route("/js/module-loader.js", Response(200, "ml", {}))
        network.route("/js/auth.js", NetworkError("offline"))
        result = await engine.precache(["/index.html", "/js/module-loader.js", "/js/auth.js"])
        assert result == {"cached": ["/index.html", "/js/module-loader.js"],
                          "failed": ["/js/auth.js"]}
        assert await store.get(Regions.CACHE_ENTRIES, "performance:/js/module-loader.js")

    async def test_sweep_removes_expired(self, engine, network, clock):
        network.route("/api/moods", json_response([]))
        network.route("/styles/main.css", Response(200, "css", {}))
        await engine.handle(Request("/api/moods"))
        await engine.handle(Request("/styles/main.css"))
        clock.advance(2 * DAY_MS)
        assert await engine.sweep_expired() == 1
        assert await engine.entry_count() == 1

    async def test_invalidate_and_clear(self, engine, network):
        network.route("/api/moods", json_response([]))
        network.route("/api/assessments", json_response([]))
        await engine.handle(Request("/api/moods"))
        await engine.handle(Request("/api/assessments"))
        assert await engine.invalidate("/api/moods") == 1
        assert await engine.clear(CacheRegion.DYNAMIC) == 1
        assert await engine.entry_count() == 0

    async def test_validation_errors_from_network_surface(self, store, caller, clock):
        network = FakeNetworkClient()
        network.route("/api/moods", ValidationError("bad request"))
        engine = CacheStrategyEngine(store, network, caller, clock=clock)
        with pytest.raises(ValidationError):
            await engine.handle(Request("/api/moods", method="PUT", body={}))
