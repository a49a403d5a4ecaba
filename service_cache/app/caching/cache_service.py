"""
Cache service over the Redis backing store.
"""

import asyncio
import inspect
import re
import time
from contextlib import nullcontext
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from shared.config import CacheSettings, get_settings
from shared.errors import CodecError, StoreUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from .backend import BackingStore, create_redis_client
from .codec import Codec, DEFAULT_CODEC
from .keys import namespace_of
from .results import (
    CacheEntry,
    CacheResult,
    CacheStats,
    CacheStatus,
    FetchFn,
    WarmSummary,
    WarmTask,
)
from .singleflight import SingleFlight
from .ttl_policy import TTL, resolve_ttl, validate_ttl


DELETE_BATCH_SIZE = 100

TTLSpec = Union[TTL, int, str]
EntryLike = Union[CacheEntry, Sequence[Any], Mapping[str, Any]]

_MEMORY_FIELD = re.compile(r"^used_memory_human:(\S+)", re.MULTILINE)


class CacheService:
    """Read, write, batch, invalidate and introspect cached values.

    Data-path methods never raise on store failures: they log and return a
    safe default (``None``, ``False``, a list of ``None``, ``0`` or zeroed
    stats). ``lookup``, ``lookup_many`` and ``store`` return a ``CacheResult``
    for callers that need to tell a miss from an unreachable store.
    """

    def __init__(
        self,
        store: Optional[BackingStore] = None,
        settings: Optional[CacheSettings] = None,
        *,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.settings = settings or get_settings()
        self.logger = get_logger("cache.service")
        self.metrics = metrics
        self._store = store
        self._owns_store = store is None
        self._warm_semaphore = asyncio.Semaphore(max(1, self.settings.warm_concurrency))
        self._warm_registry: Dict[str, WarmTask] = {}
        self.inflight = SingleFlight(on_shared=self._record_shared_fetch)

        self._hits = 0
        self._misses = 0
        self._operations = 0

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Connect (when no store was injected) and verify the store answers."""
        if self._store is None:
            self._store = create_redis_client(self.settings)
            self._owns_store = True

        try:
            await self._store.ping()
        except Exception as exc:
            self.logger.error("Failed to start cache service", error=str(exc))
            if self._owns_store:
                await self._discard_owned_store()
            raise StoreUnavailableError(f"Backing store did not answer ping: {exc}") from exc

        self.logger.info("Cache service started")

    async def _discard_owned_store(self) -> None:
        store, self._store = self._store, None
        try:
            await store.aclose()
        except Exception as exc:
            self.logger.debug("Failed to close unreachable store", error=str(exc))

    async def stop(self) -> None:
        """Close the store connection if this service created it."""
        if self._store is not None and self._owns_store:
            await self._store.aclose()
            self._store = None
        self.logger.info("Cache service stopped")

    async def __aenter__(self) -> "CacheService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        await self.stop()

    def _client(self) -> BackingStore:
        if self._store is None:
            raise StoreUnavailableError("Cache service is not started")
        return self._store

    # -- single keys --------------------------------------------------------

    async def lookup(self, key: str, codec: Optional[Codec] = None) -> CacheResult:
        """Fetch and decode one key."""
        codec = codec or DEFAULT_CODEC
        try:
            with self._timed("get"):
                raw = await self._client().get(key)
        except Exception as exc:
            self.logger.error("Cache get error", key=key, error=str(exc))
            self._observe("get", "error")
            return CacheResult.unavailable(exc)

        if raw is None:
            self._record_access(key, hit=False)
            self._observe("get", "miss")
            return CacheResult.missing()

        self._record_access(key, hit=True)
        self._observe("get", "hit")
        return self._decode(key, raw, codec)

    async def get(self, key: str, codec: Optional[Codec] = None) -> Any:
        """Return the cached value or None when absent, undecodable or unreachable."""
        result = await self.lookup(key, codec)
        return result.value if result.hit else None

    async def store(
        self,
        key: str,
        value: Any,
        ttl: TTLSpec = TTL.MEDIUM,
        codec: Optional[Codec] = None,
    ) -> CacheResult:
        """Encode and write one key; ``ttl`` 0 writes without expiry."""
        codec = codec or DEFAULT_CODEC
        prepared = self._prepare(key, value, ttl, codec)
        if isinstance(prepared, CacheResult):
            self._observe("set", prepared.status.value)
            return prepared

        seconds, payload = prepared
        try:
            client = self._client()
            with self._timed("set"):
                if seconds > 0:
                    await client.setex(key, seconds, payload)
                else:
                    await client.set(key, payload)
        except Exception as exc:
            self.logger.error("Cache set error", key=key, error=str(exc))
            self._observe("set", "error")
            return CacheResult.unavailable(exc)

        self.logger.debug("Cached value", key=key, ttl=seconds)
        self._observe("set", "stored")
        return CacheResult.stored()

    async def set(
        self,
        key: str,
        value: Any,
        ttl: TTLSpec = TTL.MEDIUM,
        codec: Optional[Codec] = None,
    ) -> bool:
        """Write one key. True on success, False on any failure."""
        result = await self.store(key, value, ttl, codec)
        return result.status is CacheStatus.STORED

    async def delete(self, key: str) -> bool:
        """Delete one key. True when a key was removed."""
        try:
            removed = await self._client().delete(key)
        except Exception as exc:
            self.logger.error("Cache delete error", key=key, error=str(exc))
            self._observe("delete", "error")
            return False

        self._observe("delete", "ok")
        return int(removed) > 0

    # -- batches ------------------------------------------------------------

    async def lookup_many(self, keys: Iterable[str], codec: Optional[Codec] = None) -> List[CacheResult]:
        """Fetch several keys in one round trip; results follow the input order."""
        keys = list(keys)
        if not keys:
            return []

        codec = codec or DEFAULT_CODEC
        try:
            with self._timed("mget"):
                raw_values = await self._client().mget(keys)
        except Exception as exc:
            self.logger.error("Cache mget error", keys_count=len(keys), error=str(exc))
            self._observe("mget", "error")
            return [CacheResult.unavailable(exc) for _ in keys]

        results: List[CacheResult] = []
        for key, raw in zip(keys, raw_values):
            if raw is None:
                self._record_access(key, hit=False)
                results.append(CacheResult.missing())
            else:
                self._record_access(key, hit=True)
                results.append(self._decode(key, raw, codec))

        self._observe("mget", "ok")
        return results

    async def mget(self, keys: Iterable[str], codec: Optional[Codec] = None) -> List[Any]:
        """Values for ``keys`` in order, None where absent. Empty input skips the store."""
        results = await self.lookup_many(keys, codec)
        return [result.value if result.hit else None for result in results]

    async def mset(self, entries: Iterable[EntryLike], codec: Optional[Codec] = None) -> bool:
        """Write all entries in one atomic pipeline.

        Returns False for an empty batch, for an entry that cannot be encoded
        (nothing is written) and when the pipeline fails.
        """
        batch = [self._as_entry(entry) for entry in entries]
        if not batch:
            return False

        codec = codec or DEFAULT_CODEC
        prepared = []
        for entry in batch:
            outcome = self._prepare(entry.key, entry.value, entry.ttl, codec)
            if isinstance(outcome, CacheResult):
                self.logger.error("Cache mset rejected entry", key=entry.key, status=outcome.status.value)
                self._observe("mset", outcome.status.value)
                return False
            prepared.append((entry.key, *outcome))

        try:
            with self._timed("mset"):
                async with self._client().pipeline(transaction=True) as pipe:
                    for key, seconds, payload in prepared:
                        if seconds > 0:
                            pipe.setex(key, seconds, payload)
                        else:
                            pipe.set(key, payload)
                    await pipe.execute()
        except Exception as exc:
            self.logger.error("Cache mset error", keys_count=len(prepared), error=str(exc))
            self._observe("mset", "error")
            return False

        self.logger.debug("Cached batch", keys_count=len(prepared))
        self._observe("mset", "stored")
        return True

    # -- invalidation -------------------------------------------------------

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching ``pattern``; returns how many were removed.

        Matches are deleted in batches of ``DELETE_BATCH_SIZE`` keys so no single
        command carries an unbounded argument list. A failed batch is logged and
        counts as zero; the other batches still apply.
        """
        try:
            client = self._client()
            keys = await client.keys(pattern)
        except Exception as exc:
            self.logger.error("Cache pattern lookup error", pattern=pattern, error=str(exc))
            self._observe("delete_pattern", "error")
            return 0

        if not keys:
            self._observe("delete_pattern", "empty")
            return 0

        batches = [keys[i:i + DELETE_BATCH_SIZE] for i in range(0, len(keys), DELETE_BATCH_SIZE)]
        outcomes = await asyncio.gather(
            *(client.delete(*batch) for batch in batches),
            return_exceptions=True,
        )

        deleted = 0
        failed = 0
        for batch, outcome in zip(batches, outcomes):
            if isinstance(outcome, BaseException):
                failed += 1
                self.logger.error(
                    "Cache batch delete error",
                    pattern=pattern,
                    batch_size=len(batch),
                    error=str(outcome),
                )
                continue
            deleted += int(outcome)

        self.logger.info(
            "Cleared cache pattern",
            pattern=pattern,
            matched=len(keys),
            deleted=deleted,
            batches=len(batches),
            failed_batches=failed,
        )
        namespace = namespace_of(pattern)
        self._record_metric(
            "cache_invalidated_keys_total",
            amount=deleted,
            namespace=namespace.label if namespace else "other",
        )
        self._observe("delete_pattern", "partial" if failed else "ok")
        return deleted

    # -- warming ------------------------------------------------------------

    async def warm_cache(self, keys: Iterable[str], fetch_fn: FetchFn, ttl: TTLSpec = TTL.MEDIUM) -> WarmSummary:
        """Fetch and store each key with bounded concurrency.

        A failing fetch is logged and skipped; the call returns once every key
        has settled and never raises.
        """
        tasks = [WarmTask(key, fetch_fn, ttl) for key in keys]
        return await self._run_warm(tasks)

    def register_warm_task(self, task: WarmTask) -> None:
        """Remember a key so ``warm_registered`` can refresh it later."""
        self._warm_registry[task.key] = task
        self.logger.debug("Registered warm task", key=task.key)

    @property
    def warm_tasks(self) -> List[WarmTask]:
        return list(self._warm_registry.values())

    async def warm_registered(self) -> WarmSummary:
        """Re-run every registered warm task."""
        return await self._run_warm(self.warm_tasks)

    async def _run_warm(self, tasks: List[WarmTask]) -> WarmSummary:
        summary = WarmSummary(planned=len(tasks))
        if not tasks:
            return summary

        if not self.settings.warming_enabled:
            self.logger.info("Cache warming disabled; skipping", planned=len(tasks))
            return summary

        outcomes = await asyncio.gather(*(self._warm_entry(task) for task in tasks), return_exceptions=True)
        for task, outcome in zip(tasks, outcomes):
            if isinstance(outcome, BaseException):
                summary.errors.append(f"{task.key}: {outcome!r}")
                continue

            result, error = outcome
            if result == "hit":
                summary.warmed += 1
            elif result == "miss":
                summary.misses += 1
            else:
                summary.errors.append(f"{task.key}: {error}")

        self.logger.info(
            "Cache warm completed",
            planned=summary.planned,
            warmed=summary.warmed,
            misses=summary.misses,
            errors=summary.failed,
        )
        return summary

    async def _warm_entry(self, task: WarmTask):
        """Warm one key; returns ``(result, error)`` with result hit/miss/error."""
        async with self._warm_semaphore:
            start = time.perf_counter()
            result = "miss"
            error: Optional[str] = None

            try:
                value = await self._fetch_for_warm(task)
                if value is not None:
                    stored = await self.store(task.key, value, task.ttl)
                    if stored.status is CacheStatus.STORED:
                        result = "hit"
                    else:
                        result = "error"
                        error = stored.error or stored.status.value
            except Exception as exc:
                result = "error"
                error = str(exc) or type(exc).__name__
                self.logger.error("Failed to warm cache entry", key=task.key, error=error)
            finally:
                self._record_warm_metrics(result, time.perf_counter() - start)

            if result == "miss":
                self.logger.debug("Cache warm miss", key=task.key)

            return result, error

    async def _fetch_for_warm(self, task: WarmTask) -> Any:
        value = task.fetch(task.key)
        if not inspect.isawaitable(value):
            return value
        timeout = self.settings.warm_fetch_timeout
        if timeout:
            return await asyncio.wait_for(value, timeout)
        return await value

    # -- introspection ------------------------------------------------------

    @property
    def hit_rate(self) -> float:
        total = self._hits + self._misses
        return self._hits / total if total else 0.0

    async def get_stats(self) -> CacheStats:
        """Key count and memory from the store, hit rate and operations from this client."""
        try:
            client = self._client()
            info = await client.info("memory")
            key_count = await client.dbsize()
        except Exception as exc:
            self.logger.error("Cache stats error", error=str(exc))
            return CacheStats.zeroed()

        return CacheStats(
            keys=int(key_count),
            memory=self._parse_memory(info),
            hit_rate=self.hit_rate,
            operations=self._operations,
        )

    async def health_check(self) -> bool:
        """True only when the store answers the ping with PONG."""
        try:
            reply = await self._client().ping()
        except Exception as exc:
            self.logger.warning("Cache health check failed", error=str(exc))
            self._set_health(False)
            return False

        healthy = reply is True or reply in ("PONG", b"PONG")
        if not healthy:
            self.logger.warning("Unexpected ping reply", reply=repr(reply))
        self._set_health(healthy)
        return healthy

    # -- helpers ------------------------------------------------------------

    def _prepare(self, key: str, value: Any, ttl: TTLSpec, codec: Codec):
        """Resolve the TTL and encode; a ``CacheResult`` signals rejection."""
        try:
            seconds = resolve_ttl(ttl)
        except (TypeError, ValueError) as exc:
            self.logger.error("Invalid TTL", key=key, ttl=repr(ttl), error=str(exc))
            return CacheResult(CacheStatus.INVALID, error=str(exc))
        if seconds < 0:
            self.logger.error("Negative TTL", key=key, ttl=seconds)
            return CacheResult(CacheStatus.INVALID, error=f"ttl {seconds} is negative")
        if not validate_ttl(seconds):
            self.logger.warning("TTL above recommended maximum", key=key, ttl=seconds)

        try:
            payload = codec.encode(value)
        except CodecError as exc:
            self.logger.error("Cache encode error", key=key, error=exc.message)
            return CacheResult(CacheStatus.ENCODE_ERROR, error=exc.message)

        return seconds, payload

    def _decode(self, key: str, raw: Any, codec: Codec) -> CacheResult:
        try:
            return CacheResult.found(codec.decode(raw))
        except CodecError as exc:
            self.logger.warning("Cached payload could not be decoded", key=key, error=exc.message)
            return CacheResult(CacheStatus.DECODE_ERROR, error=exc.message)

    @staticmethod
    def _as_entry(entry: EntryLike) -> CacheEntry:
        if isinstance(entry, CacheEntry):
            return entry
        if isinstance(entry, Mapping):
            return CacheEntry(entry["key"], entry["value"], entry.get("ttl", 0))
        return CacheEntry(*entry)

    @staticmethod
    def _parse_memory(info: Any) -> str:
        if isinstance(info, Mapping):
            memory = info.get("used_memory_human")
            return str(memory) if memory is not None else "0B"
        if isinstance(info, bytes):
            info = info.decode("utf-8", "replace")
        if isinstance(info, str):
            match = _MEMORY_FIELD.search(info)
            if match:
                return match.group(1)
        return "0B"

    def _record_access(self, key: str, hit: bool) -> None:
        if hit:
            self._hits += 1
        else:
            self._misses += 1
        namespace = namespace_of(key)
        self._record_metric(
            "cache_hits_total" if hit else "cache_misses_total",
            namespace=namespace.label if namespace else "other",
        )

    def _timed(self, operation: str):
        if not self.metrics:
            return nullcontext()
        return self.metrics.time_operation(operation)

    def _observe(self, operation: str, result: str) -> None:
        self._operations += 1
        self._record_metric("cache_operations_total", operation=operation, result=result)

    def _record_shared_fetch(self, key: str) -> None:
        self.logger.debug("Joined in-flight fetch", key=key)
        self._record_metric("cache_singleflight_shared_total")

    def _record_warm_metrics(self, result: str, duration: float) -> None:
        self._record_metric("cache_warm_total", result=result)
        if not self.metrics:
            return
        try:
            self.metrics.observe_histogram("cache_warm_duration_seconds", duration)
        except Exception as exc:  # pragma: no cover - metrics failures should never break warming
            self.logger.debug("Failed to record warm metrics", error=str(exc))

    def _set_health(self, healthy: bool) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.set_gauge("cache_health", 1.0 if healthy else 0.0)
        except Exception as exc:  # pragma: no cover
            self.logger.debug("Failed to record health metric", error=str(exc))

    def _record_metric(self, name: str, amount: float = 1, **labels) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.increment_counter(name, amount, **labels)
        except Exception as exc:  # pragma: no cover - metrics failures should never break caching
            self.logger.debug("Failed to record cache metric", metric=name, error=str(exc))
