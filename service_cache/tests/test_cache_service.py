"""
Unit tests for the cache service.
"""

import asyncio
from contextlib import contextmanager

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from redis.exceptions import ConnectionError as RedisConnectionError

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.config import CacheSettings
from shared.errors import ConfigurationError, StoreUnavailableError
from service_cache.app.caching.cache_service import CacheService, DELETE_BATCH_SIZE
from service_cache.app.caching.codec import StrictJsonCodec
from service_cache.app.caching.memory_store import InMemoryStore
from service_cache.app.caching.results import CacheEntry, CacheStats, CacheStatus
from service_cache.app.caching.ttl_policy import MAX_TTL, TTL


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.counters = []
        self.histograms = []
        self.gauges = []

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        self.counters.append((metric_name, amount, labels))

    def observe_histogram(self, metric_name: str, value: float, **labels):
        self.histograms.append((metric_name, value, labels))

    def set_gauge(self, metric_name: str, value: float, **labels):
        self.gauges.append((metric_name, value, labels))

    @contextmanager
    def time_operation(self, operation: str):
        yield
        self.histograms.append(("cache_operation_duration_seconds", 0.0, {"operation": operation}))


@pytest.fixture
def mock_redis():
    """AsyncMock standing in for a redis.asyncio client."""
    client = AsyncMock()
    client.ping.return_value = True
    return client


class TestCacheServiceLifecycle:
    """Test cases for starting and stopping the service."""

    @pytest.mark.asyncio
    async def test_start_pings_store(self, cache_service, store):
        await cache_service.start()
        assert store.calls_to("ping") == [()]

    @pytest.mark.asyncio
    async def test_start_fails_when_store_is_down(self, cache_service, store):
        store.fail("ping")
        with pytest.raises(StoreUnavailableError) as exc_info:
            await cache_service.start()
        assert exc_info.value.code == "STORE_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_owned_client_is_closed_when_ping_fails(self, settings):
        store = InMemoryStore()
        store.fail("ping")
        cache = CacheService(settings=settings)

        with patch("service_cache.app.caching.cache_service.create_redis_client", return_value=store):
            with pytest.raises(StoreUnavailableError):
                await cache.start()

        assert store.closed
        assert await cache.get("users:u1:profile") is None

    @pytest.mark.asyncio
    async def test_injected_store_survives_failed_start(self, cache_service, store):
        store.fail("ping")
        with pytest.raises(StoreUnavailableError):
            await cache_service.start()
        assert not store.closed

    @pytest.mark.asyncio
    async def test_injected_store_is_not_closed(self, cache_service, store):
        async with cache_service:
            pass
        assert not store.closed

    @pytest.mark.asyncio
    async def test_owned_client_is_closed(self, settings):
        store = InMemoryStore()
        with patch("service_cache.app.caching.cache_service.create_redis_client", return_value=store) as factory:
            async with CacheService(settings=settings):
                pass
        factory.assert_called_once_with(settings)
        assert store.closed

    @pytest.mark.asyncio
    async def test_invalid_redis_url(self):
        cache = CacheService(settings=CacheSettings(redis_url="memcached://localhost:11211"))
        with pytest.raises(ConfigurationError):
            await cache.start()

    @pytest.mark.asyncio
    async def test_operations_before_start_fail_open(self, settings):
        cache = CacheService(settings=settings)
        assert await cache.get("users:u1:profile") is None
        assert await cache.set("users:u1:profile", {"id": 1}) is False
        assert (await cache.lookup("users:u1:profile")).status is CacheStatus.UNAVAILABLE


class TestCacheServiceReadWrite:
    """Test cases for get and set."""

    @pytest.mark.asyncio
    async def test_set_uses_setex_with_encoded_value(self, mock_redis, settings):
        cache = CacheService(mock_redis, settings)

        assert await cache.set("test-key", {"id": 1, "name": "test"}, 3600) is True
        mock_redis.setex.assert_called_once_with("test-key", 3600, '{"id":1,"name":"test"}')

    @pytest.mark.asyncio
    async def test_permanent_ttl_uses_plain_set(self, cache_service, store):
        assert await cache_service.set("config:flags", {"beta": True}, TTL.PERMANENT)
        assert store.calls_to("set") == [("config:flags", '{"beta":true}')]
        assert store.calls_to("setex") == []
        assert store.ttl_of("config:flags") == -1

    @pytest.mark.asyncio
    async def test_ttl_tier_name(self, cache_service, store):
        await cache_service.set("users:u1:profile", {"id": "u1"}, "short")
        assert store.ttl_of("users:u1:profile") == 300

    @pytest.mark.asyncio
    async def test_get_decodes_json(self, cache_service, store):
        await store.set("domains:d1:info", '{"id":"d1","price":10}')
        assert await cache_service.get("domains:d1:info") == {"id": "d1", "price": 10}

    @pytest.mark.asyncio
    async def test_get_returns_plain_strings(self, cache_service, store):
        await store.set("search:tech:{}", "not json at all")
        assert await cache_service.get("search:tech:{}") == "not json at all"

    @pytest.mark.asyncio
    async def test_get_missing_key(self, cache_service):
        assert await cache_service.get("users:nobody:profile") is None

    @pytest.mark.asyncio
    async def test_lookup_tells_miss_from_outage(self, cache_service, store):
        miss = await cache_service.lookup("users:u1:profile")
        assert miss.status is CacheStatus.MISS
        assert miss.ok

        store.fail("get")
        outage = await cache_service.lookup("users:u1:profile")
        assert outage.status is CacheStatus.UNAVAILABLE
        assert outage.degraded
        assert "simulated get failure" in outage.error

    @pytest.mark.asyncio
    async def test_get_fails_open(self, cache_service, store):
        store.fail("get")
        assert await cache_service.get("users:u1:profile") is None

    @pytest.mark.asyncio
    async def test_set_fails_open(self, cache_service, store):
        store.fail("setex")
        assert await cache_service.set("users:u1:profile", {"id": 1}) is False

    @pytest.mark.asyncio
    async def test_decode_error_with_strict_codec(self, cache_service, store):
        await store.set("users:u1:profile", "garbage")
        result = await cache_service.lookup("users:u1:profile", codec=StrictJsonCodec())
        assert result.status is CacheStatus.DECODE_ERROR
        assert await cache_service.get("users:u1:profile", codec=StrictJsonCodec()) is None

    @pytest.mark.asyncio
    async def test_encode_error_is_reported(self, cache_service, store):
        result = await cache_service.store("users:u1:profile", {"bad": object()})
        assert result.status is CacheStatus.ENCODE_ERROR
        assert store.calls_to("setex") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ttl", [-1, "-5", "forever"])
    async def test_invalid_ttl_is_rejected(self, cache_service, store, ttl):
        result = await cache_service.store("users:u1:profile", {"id": 1}, ttl)
        assert result.status is CacheStatus.INVALID
        assert store.calls_to("setex") == []
        assert store.calls_to("set") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ttl", [MAX_TTL + 1, 30 * 86400])
    async def test_long_ttl_is_written(self, cache_service, store, ttl):
        assert await cache_service.set("users:u1:profile", {"id": 1}, ttl) is True
        assert store.calls_to("setex") == [("users:u1:profile", ttl, '{"id":1}')]
        assert store.ttl_of("users:u1:profile") == ttl

    @pytest.mark.asyncio
    async def test_delete(self, cache_service, store):
        await store.set("users:u1:profile", "x")
        assert await cache_service.delete("users:u1:profile") is True
        assert await cache_service.delete("users:u1:profile") is False


class TestCacheServiceBatches:
    """Test cases for mget and mset."""

    @pytest.mark.asyncio
    async def test_mget_preserves_order(self, cache_service, store):
        await store.set("a", '{"n":1}')
        await store.set("c", "plain")

        assert await cache_service.mget(["a", "b", "c"]) == [{"n": 1}, None, "plain"]

    @pytest.mark.asyncio
    async def test_mget_empty_skips_store(self, cache_service, store):
        assert await cache_service.mget([]) == []
        assert store.calls_to("mget") == []

    @pytest.mark.asyncio
    async def test_mget_fails_open(self, cache_service, store):
        store.fail("mget")
        assert await cache_service.mget(["a", "b"]) == [None, None]
        results = await cache_service.lookup_many(["a", "b"])
        assert [result.status for result in results] == [CacheStatus.UNAVAILABLE] * 2

    @pytest.mark.asyncio
    async def test_mset_writes_in_one_pipeline(self, cache_service, store):
        ok = await cache_service.mset([
            CacheEntry("users:u1:profile", {"id": "u1"}, 300),
            ("users:u2:profile", {"id": "u2"}, 0),
            {"key": "users:u3:profile", "value": "raw", "ttl": 60},
        ])

        assert ok is True
        assert store.calls_to("pipeline") == [(True,)]
        assert store.calls_to("execute") == [(3,)]
        assert store.ttl_of("users:u1:profile") == 300
        assert store.ttl_of("users:u2:profile") == -1
        assert await cache_service.get("users:u3:profile") == "raw"

    @pytest.mark.asyncio
    async def test_mset_empty_returns_false(self, cache_service, store):
        assert await cache_service.mset([]) is False
        assert store.calls_to("pipeline") == []

    @pytest.mark.asyncio
    async def test_mset_rejects_whole_batch_on_bad_entry(self, cache_service, store):
        ok = await cache_service.mset([
            CacheEntry("a", {"id": 1}, 60),
            CacheEntry("b", {"bad": object()}, 60),
        ])
        assert ok is False
        assert store.calls_to("pipeline") == []
        assert await store.get("a") is None

    @pytest.mark.asyncio
    async def test_mset_pipeline_failure(self, cache_service, store):
        store.fail("execute")
        assert await cache_service.mset([CacheEntry("a", 1, 60)]) is False
        assert await store.get("a") is None

    @pytest.mark.asyncio
    async def test_mset_with_mocked_pipeline(self, settings):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[True, True])
        client = MagicMock()
        client.pipeline.return_value.__aenter__.return_value = pipe
        cache = CacheService(client, settings)

        assert await cache.mset([CacheEntry("a", {"x": 1}, 60), CacheEntry("b", "y", 0)])
        client.pipeline.assert_called_once_with(transaction=True)
        pipe.setex.assert_called_once_with("a", 60, '{"x":1}')
        pipe.set.assert_called_once_with("b", "y")
        pipe.execute.assert_awaited_once()


class TestCacheServiceDeletePattern:
    """Test cases for pattern deletion."""

    @pytest.mark.asyncio
    async def test_deletes_in_batches(self, mock_redis, settings):
        keys = [f"domains:{i}:info" for i in range(250)]
        mock_redis.keys.return_value = keys
        mock_redis.delete.side_effect = lambda *batch: len(batch)
        cache = CacheService(mock_redis, settings)

        deleted = await cache.delete_pattern("domains:*")

        assert deleted == 250
        assert mock_redis.delete.call_count == 3
        sizes = sorted(len(call.args) for call in mock_redis.delete.call_args_list)
        assert sizes == [50, DELETE_BATCH_SIZE, DELETE_BATCH_SIZE]

    @pytest.mark.asyncio
    async def test_no_matches_issues_no_delete(self, cache_service, store):
        assert await cache_service.delete_pattern("domains:*") == 0
        assert store.calls_to("delete") == []

    @pytest.mark.asyncio
    async def test_only_matching_keys_are_removed(self, cache_service, store):
        await store.set("domains:d1:info", "1")
        await store.set("domains:d2:info", "2")
        await store.set("users:u1:profile", "3")

        assert await cache_service.delete_pattern("domains:*") == 2
        assert await store.dbsize() == 1

    @pytest.mark.asyncio
    async def test_failed_batch_counts_zero(self, mock_redis, settings):
        mock_redis.keys.return_value = [f"domains:{i}:info" for i in range(250)]

        def delete(*batch):
            if len(batch) < DELETE_BATCH_SIZE:
                raise RedisConnectionError("down")
            return len(batch)

        mock_redis.delete.side_effect = delete
        cache = CacheService(mock_redis, settings)

        assert await cache.delete_pattern("domains:*") == 200

    @pytest.mark.asyncio
    async def test_scan_failure_returns_zero(self, cache_service, store):
        store.fail("keys")
        assert await cache_service.delete_pattern("domains:*") == 0

    @pytest.mark.asyncio
    async def test_records_invalidated_keys(self, store, settings):
        metrics = DummyMetrics()
        cache = CacheService(store, settings, metrics=metrics)
        await store.set("users:u1:profile", "1")

        await cache.delete_pattern("users:u1:*")
        assert ("cache_invalidated_keys_total", 1, {"namespace": "users"}) in metrics.counters


class TestCacheServiceWarming:
    """Test cases for cache warming."""

    @pytest.mark.asyncio
    async def test_warm_stores_fetched_values(self, cache_service, store):
        async def fetch(key):
            return {"key": key}

        summary = await cache_service.warm_cache(["domains:a:info", "domains:b:info"], fetch, TTL.LONG)

        assert summary.warmed == 2
        assert summary.failed == 0
        assert await cache_service.get("domains:a:info") == {"key": "domains:a:info"}
        assert store.ttl_of("domains:b:info") == 86400

    @pytest.mark.asyncio
    async def test_failing_fetch_does_not_stop_others(self, cache_service):
        async def fetch(key):
            if key == "bad":
                raise RuntimeError("upstream down")
            return key

        summary = await cache_service.warm_cache(["good-1", "bad", "good-2"], fetch, 60)

        assert summary.planned == 3
        assert summary.warmed == 2
        assert summary.failed == 1
        assert "upstream down" in summary.errors[0]
        assert await cache_service.get("good-2") == "good-2"

    @pytest.mark.asyncio
    async def test_none_is_a_miss(self, cache_service, store):
        async def fetch(key):
            return None

        summary = await cache_service.warm_cache(["k"], fetch, 60)
        assert summary.misses == 1
        assert store.calls_to("setex") == []

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, store):
        cache = CacheService(store, CacheSettings(warm_concurrency=2))
        running = 0
        peak = 0

        async def fetch(key):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return key

        summary = await cache.warm_cache([f"k{i}" for i in range(8)], fetch, 60)
        assert summary.warmed == 8
        assert peak == 2

    @pytest.mark.asyncio
    async def test_sync_fetch_is_accepted(self, cache_service):
        summary = await cache_service.warm_cache(["k"], lambda key: key.upper(), 60)
        assert summary.warmed == 1
        assert await cache_service.get("k") == "K"

    @pytest.mark.asyncio
    async def test_fetch_timeout(self, store):
        cache = CacheService(store, CacheSettings(warm_fetch_timeout=0.01))

        async def fetch(key):
            await asyncio.sleep(1)
            return key

        summary = await cache.warm_cache(["slow"], fetch, 60)
        assert summary.failed == 1
        assert await store.get("slow") is None

    @pytest.mark.asyncio
    async def test_disabled_warming_skips_fetch(self, store):
        cache = CacheService(store, CacheSettings(warming_enabled=False))
        fetch = AsyncMock(return_value="v")

        summary = await cache.warm_cache(["k"], fetch, 60)
        assert summary.planned == 1
        assert summary.warmed == 0
        fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_failure_counts_as_error(self, cache_service, store):
        store.fail("setex")
        summary = await cache_service.warm_cache(["k"], AsyncMock(return_value="v"), 60)
        assert summary.failed == 1

    @pytest.mark.asyncio
    async def test_warm_metrics(self, store, settings):
        metrics = DummyMetrics()
        cache = CacheService(store, settings, metrics=metrics)

        await cache.warm_cache(["k"], AsyncMock(return_value="v"), 60)
        assert ("cache_warm_total", 1, {"result": "hit"}) in metrics.counters
        assert "cache_warm_duration_seconds" in [name for name, _, _ in metrics.histograms]
        assert ("cache_operation_duration_seconds", 0.0, {"operation": "set"}) in metrics.histograms


class TestCacheServiceIntrospection:
    """Test cases for stats and health."""

    @pytest.mark.asyncio
    async def test_stats_from_store(self, cache_service, store):
        await cache_service.set("users:u1:profile", {"id": 1}, 60)
        await cache_service.get("users:u1:profile")
        await cache_service.get("users:u2:profile")

        stats = await cache_service.get_stats()

        assert stats.keys == 1
        assert stats.memory.endswith("B")
        assert stats.hit_rate == 0.5
        assert stats.operations == 3

    @pytest.mark.asyncio
    async def test_stats_from_raw_info_text(self, mock_redis, settings):
        mock_redis.info.return_value = "# Memory\r\nused_memory:1048576\r\nused_memory_human:1.00M\r\n"
        mock_redis.dbsize.return_value = 42
        cache = CacheService(mock_redis, settings)

        stats = await cache.get_stats()
        assert stats.keys == 42
        assert stats.memory == "1.00M"
        mock_redis.info.assert_called_once_with("memory")

    @pytest.mark.asyncio
    async def test_stats_zeroed_on_error(self, cache_service, store):
        store.fail("info")
        assert await cache_service.get_stats() == CacheStats(keys=0, memory="0B", hit_rate=0.0, operations=0)

    @pytest.mark.asyncio
    async def test_health_check(self, store, settings):
        metrics = DummyMetrics()
        cache = CacheService(store, settings, metrics=metrics)

        assert await cache.health_check() is True
        store.fail("ping")
        assert await cache.health_check() is False
        assert [value for _, value, _ in metrics.gauges] == [1.0, 0.0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply,expected", [("PONG", True), (b"PONG", True), ("NOPE", False)])
    async def test_health_check_replies(self, mock_redis, settings, reply, expected):
        mock_redis.ping.return_value = reply
        cache = CacheService(mock_redis, settings)
        assert await cache.health_check() is expected

    @pytest.mark.asyncio
    async def test_hit_and_miss_metrics(self, store, settings):
        metrics = DummyMetrics()
        cache = CacheService(store, settings, metrics=metrics)
        await store.set("domains:d1:info", "1")

        await cache.get("domains:d1:info")
        await cache.get("search:x:{}")

        assert ("cache_hits_total", 1, {"namespace": "domains"}) in metrics.counters
        assert ("cache_misses_total", 1, {"namespace": "search"}) in metrics.counters
        assert ("cache_operations_total", 1, {"operation": "get", "result": "hit"}) in metrics.counters

    @pytest.mark.asyncio
    async def test_broken_metrics_do_not_break_cache(self, store, settings):
        metrics = MagicMock()
        metrics.increment_counter.side_effect = RuntimeError("registry gone")
        cache = CacheService(store, settings, metrics=metrics)

        assert await cache.set("k", "v", 60) is True
        assert await cache.get("k") == "v"
