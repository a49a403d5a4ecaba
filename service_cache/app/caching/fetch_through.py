"""
Fetch-through helpers: read from the cache, compute on a miss, write back.
"""

import functools
import inspect
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from shared.logging import get_logger

from .cache_service import CacheService, TTLSpec
from .codec import Codec
from .results import WarmTask
from .ttl_policy import TTL

T = TypeVar("T")

logger = get_logger("cache.fetch_through")

ComputeFn = Callable[[], Union[Awaitable[T], T]]


async def _call(compute: ComputeFn) -> Any:
    value = compute()
    if inspect.isawaitable(value):
        value = await value
    return value


async def with_cache(
    cache: CacheService,
    key: str,
    compute: ComputeFn,
    ttl: TTLSpec = TTL.MEDIUM,
    *,
    force_refresh: bool = False,
    warm_cache: bool = False,
    codec: Optional[Codec] = None,
) -> Any:
    """Return the cached value for ``key`` or compute, store and return it.

    Concurrent misses for the same key share one ``compute`` call. The write
    back is best effort and never changes what the caller receives; ``None``
    results are returned but not stored. ``force_refresh`` skips the lookup.
    ``warm_cache`` registers the key with the service so
    ``CacheService.warm_registered`` refreshes it.
    """
    if not force_refresh:
        cached = await cache.get(key, codec=codec)
        if cached is not None:
            logger.debug("Fetch-through hit", key=key)
            return cached

    if warm_cache:
        logger.info("Cache warming enabled for key", key=key)

        async def _refresh(_key: str) -> Any:
            return await _call(compute)

        cache.register_warm_task(WarmTask(key, _refresh, ttl))

    async def _fetch_and_store() -> Any:
        value = await _call(compute)
        if value is not None:
            await cache.set(key, value, ttl, codec=codec)
        return value

    return await cache.inflight.do(key, _fetch_and_store)


def cached(
    cache: CacheService,
    key_builder: Callable[..., str],
    ttl: TTLSpec = TTL.MEDIUM,
    *,
    codec: Optional[Codec] = None,
) -> Callable:
    """Decorate an async function so its results are cached under ``key_builder(*args, **kwargs)``."""
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            key = key_builder(*args, **kwargs)
            return await with_cache(cache, key, lambda: func(*args, **kwargs), ttl, codec=codec)

        return wrapper
    return decorator
