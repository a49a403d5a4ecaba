"""
Unit tests for the shared metrics, logging and error helpers.
"""

import pytest
from prometheus_client import CollectorRegistry

from shared.errors import CodecError, StoreUnavailableError, ValidationError
from shared.logging import add_component, add_run_id, add_trace_ids, run_id_var, set_run_id
from shared.metrics import MetricsCollector
from service_cache.app.caching.cache_service import CacheService


@pytest.fixture
def registry():
    return CollectorRegistry()


class TestMetricsCollector:
    """Test cases for MetricsCollector."""

    def test_counters_and_gauges(self, registry):
        metrics = MetricsCollector("cache", registry)

        metrics.increment_counter("cache_hits_total", namespace="users")
        metrics.increment_counter("cache_invalidated_keys_total", 5, namespace="domains")
        metrics.set_gauge("cache_health", 1.0)

        assert registry.get_sample_value("cache_hits_total", {"namespace": "users"}) == 1.0
        assert registry.get_sample_value("cache_invalidated_keys_total", {"namespace": "domains"}) == 5.0
        assert registry.get_sample_value("cache_health") == 1.0

    def test_time_operation(self, registry):
        metrics = MetricsCollector("cache", registry)

        with metrics.time_operation("get"):
            pass

        assert registry.get_sample_value("cache_operation_duration_seconds_count", {"operation": "get"}) == 1.0

    def test_unknown_metric_is_ignored(self):
        metrics = MetricsCollector("cache")
        metrics.increment_counter("does_not_exist")
        assert metrics.get_metric("does_not_exist") is None
        assert metrics.get_metric("cache_health") is not None

    @pytest.mark.asyncio
    async def test_cache_service_reports_to_registry(self, registry, store, settings):
        cache = CacheService(store, settings, metrics=MetricsCollector("cache", registry))

        await cache.set("users:u1:profile", {"id": "u1"}, 60)
        await cache.get("users:u1:profile")
        await cache.get("users:u2:profile")

        assert registry.get_sample_value("cache_hits_total", {"namespace": "users"}) == 1.0
        assert registry.get_sample_value("cache_misses_total", {"namespace": "users"}) == 1.0
        assert registry.get_sample_value(
            "cache_operations_total", {"operation": "set", "result": "stored"}
        ) == 1.0
        assert registry.get_sample_value("cache_operation_duration_seconds_count", {"operation": "get"}) == 2.0


class TestLoggingProcessors:
    """Test cases for the structlog processors."""

    @pytest.fixture(autouse=True)
    def reset_run_id(self):
        token = run_id_var.set(None)
        yield
        run_id_var.reset(token)

    def test_component_from_logger_name(self):
        assert add_component(None, "info", {"logger": "cache.service"})["service"] == "cache"
        assert "service" not in add_component(None, "info", {"logger": "root"})

    def test_run_id(self):
        run_id = set_run_id()
        assert add_run_id(None, "info", {})["run_id"] == run_id
        assert set_run_id("cli-1") == "cli-1"

    def test_no_run_id(self):
        assert "run_id" not in add_run_id(None, "info", {})

    def test_no_active_span(self):
        assert "trace_id" not in add_trace_ids(None, "info", {})


class TestErrors:
    """Test cases for cache layer exceptions."""

    @pytest.mark.parametrize("error,code", [
        (StoreUnavailableError(), "STORE_UNAVAILABLE"),
        (CodecError(), "CODEC_ERROR"),
        (ValidationError("user_id is required"), "VALIDATION_ERROR"),
    ])
    def test_to_response(self, error, code):
        response = error.to_response()
        assert response.code == code
        assert response.message == error.message
        assert response.trace_id is None
