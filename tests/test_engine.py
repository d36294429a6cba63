"""Tests for engine settings, wiring and health reporting."""
from pathlib import Path

import pytest

from conftest import FakeNetworkClient, json_response
from healthsync.cache.entries import DAY_MS, TTLCategory
from healthsync.container import EngineSettings, ResilienceEngine
from healthsync.core import InMemoryStore, Request
from healthsync.errors import NetworkError, StorageError, ValidationError
from healthsync.events import EventTypes
from healthsync.health import HealthCheck, HealthReport, HealthStatus, disk_check
from healthsync.queue import OperationStatus
from healthsync.resilience import CallOptions, CircuitState


class UnwritableStore(InMemoryStore):
    name = "unwritable"

    async def put(self, region, key, value):
        raise StorageError("attempt to write a readonly database")


def quiet_settings(**overrides):
    return EngineSettings(sweep_interval_s=0, drain_interval_s=0, **overrides)


@pytest.fixture
def engine(network, clock, sleep):
    return ResilienceEngine(
        quiet_settings(failure_threshold=3, max_retries=1, jitter=False),
        network=network,
        store=InMemoryStore(),
        clock=clock,
        sleep=sleep,
    )


# =============================================================================
# EngineSettings Tests
# =============================================================================

class TestEngineSettings:
    """Test defaults, validation and environment loading."""

    def test_defaults(self):
        settings = EngineSettings()
        assert settings.failure_threshold == 5
        assert settings.open_timeout_ms == 60000
        assert settings.half_open_success_threshold == 3
        assert settings.max_retries == 3
        assert settings.base_delay_ms == 1000
        assert settings.max_queue_attempts == 3
        assert settings.max_log_size == 100
        assert settings.ttl_by_category[TTLCategory.API_JSON] == DAY_MS
        assert settings.data_dir is None

    @pytest.mark.parametrize("kwargs", [
        {"failure_threshold": 0},
        {"max_retries": -1},
        {"backoff_factor": 0.5},
        {"network_timeout_ms": 0},
        {"max_log_size": 0},
        {"ttl_by_category": {"image": 1}},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            EngineSettings(**kwargs)

    def test_data_dir_string_becomes_path(self, tmp_path):
        assert EngineSettings(data_dir=str(tmp_path)).data_dir == tmp_path

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HEALTHSYNC_FAILURE_THRESHOLD", "7")
        monkeypatch.setenv("HEALTHSYNC_JITTER", "false")
        monkeypatch.setenv("HEALTHSYNC_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("HEALTHSYNC_LOG_LEVEL", "debug")
        monkeypatch.setenv("HEALTHSYNC_TTL_API_JSON_MS", "3600000")

        settings = EngineSettings.from_env()
        assert settings.failure_threshold == 7
        assert settings.jitter is False
        assert settings.data_dir == tmp_path
        assert settings.log_level == "DEBUG"
        assert settings.ttl_by_category[TTLCategory.API_JSON] == 3600000
        assert settings.ttl_by_category[TTLCategory.IMAGE] == 7 * DAY_MS

    def test_from_env_rejects_garbage(self, monkeypatch):
        monkeypatch.setenv("HEALTHSYNC_MAX_RETRIES", "three")
        with pytest.raises(ValueError, match="HEALTHSYNC_MAX_RETRIES"):
            EngineSettings.from_env()

    def test_derived_configs(self):
        settings = EngineSettings(failure_threshold=2, base_delay_ms=50, jitter=False)
        assert settings.circuit_config().failure_threshold == 2
        policy = settings.retry_policy()
        assert policy.base_delay_ms == 50 and policy.jitter is False


# =============================================================================
# ResilienceEngine Tests
# =============================================================================

class TestResilienceEngine:
    """Test the wired engine end to end."""

    async def test_api_request_cached_then_served_offline(self, engine, network):
        network.route("/api/moods", json_response([{"mood": 4}]))
        async with engine:
            await engine.handle(Request("/api/moods"))
            network.route("/api/moods", NetworkError("offline"))
            response = await engine.handle(Request("/api/moods"))
        assert response.from_cache
        assert response.body == [{"mood": 4}]

    async def test_offline_write_replayed_on_reconnect(self, engine, network):
        network.route("/api/moods", json_response({"id": "m1"}, status=201))
        async with engine:
            await engine.set_online(False)
            op = await engine.enqueue("create", "moods", {"mood": 3})
            assert await engine.drain() is None

            report = await engine.set_online(True)
            assert report.synced == [op.id]
            status = await engine.get_operation_status(op.id)
        assert status.status == OperationStatus.SYNCED
        [request] = network.requests
        assert request.method == "POST"
        assert request.body == {"mood": 3}

    async def test_unknown_collection_rejected(self, engine):
        with pytest.raises(ValidationError):
            await engine.enqueue("create", "workouts", {"minutes": 30})

    async def test_protected_call_and_fallback(self, engine):
        async def failing():
            raise NetworkError("offline")

        tip = await engine.call(
            "ai", failing,
            CallOptions(fallback=lambda: engine.get_fallback("ai_mood_support", {"mood": 2})),
        )
        assert "strength" in tip
        result = await engine.call_result("ai", failing)
        assert not result.ok
        assert len(engine.error_log) == 2

    async def test_storage_unsafe_announced(self, network, clock):
        engine = ResilienceEngine(quiet_settings(), network=network,
                                  store=UnwritableStore(), clock=clock)
        seen = []
        engine.bus.subscribe(EventTypes.STORAGE_UNSAFE, lambda e: seen.append(e.data))

        with pytest.raises(StorageError) as exc_info:
            await engine.enqueue("create", "moods", {"mood": 1})

        assert exc_info.value.fatal
        assert seen and "may not be safe" in seen[0]["message"]
        assert engine.error_log.counts().get("STORAGE_ERROR", 0) >= 1

    async def test_state_survives_restart(self, tmp_path, clock):
        network = FakeNetworkClient()
        network.route("/api/moods", NetworkError("offline"))
        settings = quiet_settings(data_dir=tmp_path, failure_threshold=1, max_retries=0)

        async with ResilienceEngine(settings, network=network, clock=clock) as engine:
            assert engine.store.primary.name == "sqlite"
            op = await engine.enqueue("create", "moods", {"mood": 5})
            await engine.handle(Request("/api/moods"))
            assert engine.breakers.get("api").state == CircuitState.OPEN

        async with ResilienceEngine(settings, network=network, clock=clock) as restarted:
            assert restarted.breakers.get("api").state == CircuitState.OPEN
            assert (await restarted.get_operation_status(op.id)).status == OperationStatus.PENDING
            assert len(restarted.error_log) >= 1

    async def test_from_env(self, monkeypatch, network):
        monkeypatch.setenv("HEALTHSYNC_MAX_LOG_SIZE", "5")
        monkeypatch.setenv("HEALTHSYNC_SWEEP_INTERVAL_S", "0")
        monkeypatch.setenv("HEALTHSYNC_DRAIN_INTERVAL_S", "0")
        engine = ResilienceEngine.from_env(network=network)
        assert engine.error_log.max_size == 5
        await engine.stop()

    async def test_stop_closes_owned_network_only(self, engine, network):
        await engine.start()
        await engine.stop()
        assert not network.closed

    async def test_install_precaches(self, engine, network):
        network.route("/index.html", json_response({}, status=200))
        result = await engine.install(["/index.html"])
        assert result["cached"] == ["/index.html"]


# =============================================================================
# Health Tests
# =============================================================================

class TestHealth:
    """Test aggregated health reporting."""

    async def test_memory_store_reported_degraded(self, engine):
        report = await engine.health_check()
        assert report.get("store").status == HealthStatus.DEGRADED
        assert report.get("circuits").status == HealthStatus.HEALTHY
        assert report.get("queue").status == HealthStatus.HEALTHY
        assert report.get("disk") is None
        assert report.status == HealthStatus.DEGRADED

    async def test_open_circuit_and_failed_operation(self, engine):
        await engine.breakers.force_open("ai")
        op = await engine.enqueue("update", "moods", {"mood": 2}, record_id="m1")
        engine.network.route("/api/moods/m1", json_response({"error": "bad"}, status=400))
        await engine.drain()

        report = await engine.health_check()
        assert report.get("circuits").status == HealthStatus.DEGRADED
        assert "ai" in report.get("circuits").message
        queue_check = report.get("queue")
        assert queue_check.status == HealthStatus.DEGRADED
        assert queue_check.details["failed"] == 1
        assert (await engine.get_operation_status(op.id)).status == OperationStatus.FAILED

    async def test_sqlite_store_healthy(self, tmp_path, network):
        engine = ResilienceEngine(quiet_settings(data_dir=tmp_path), network=network)
        report = await engine.health_check()
        assert report.get("store").status == HealthStatus.HEALTHY
        assert report.get("disk") is not None
        assert report.to_dict()["checks"]
        await engine.stop()

    @pytest.mark.parametrize("percent,expected", [
        (50.0, HealthStatus.HEALTHY),
        (85.0, HealthStatus.DEGRADED),
        (95.0, HealthStatus.UNHEALTHY),
        (None, HealthStatus.UNKNOWN),
    ])
    def test_disk_thresholds(self, percent, expected):
        assert disk_check(percent, 10 * 1024**3).status == expected

    def test_worst_status_wins(self):
        report = HealthReport(checks=[
            HealthCheck("a", HealthStatus.HEALTHY),
            HealthCheck("b", HealthStatus.UNHEALTHY),
            HealthCheck("c", HealthStatus.DEGRADED),
        ])
        assert report.status == HealthStatus.UNHEALTHY
        assert HealthReport(checks=[]).status == HealthStatus.UNKNOWN


def test_settings_path_type():
    assert isinstance(EngineSettings(data_dir="~/x").data_dir, Path)
