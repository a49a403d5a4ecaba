"""
Marketplace caching package.

Cache primitives shared by application code: tiered TTLs, namespaced keys,
a fail-open cache service over Redis, fetch-through with call coalescing and
pattern-based invalidation helpers.
"""

from .cache_service import CacheService, DELETE_BATCH_SIZE
from .codec import Codec, JsonCodec, ModelCodec, StrictJsonCodec
from .fetch_through import cached, with_cache
from .invalidation import CacheInvalidation, invalidates
from .keys import Namespace, PREFIXES, build_key
from .results import CacheEntry, CacheResult, CacheStats, CacheStatus, WarmSummary, WarmTask
from .ttl_policy import DEFAULT_TTL, TTL

__all__ = [
    "CacheEntry",
    "CacheInvalidation",
    "CacheResult",
    "CacheService",
    "CacheStats",
    "CacheStatus",
    "Codec",
    "DEFAULT_TTL",
    "DELETE_BATCH_SIZE",
    "JsonCodec",
    "ModelCodec",
    "Namespace",
    "PREFIXES",
    "StrictJsonCodec",
    "TTL",
    "WarmSummary",
    "WarmTask",
    "build_key",
    "cached",
    "invalidates",
    "with_cache",
]
