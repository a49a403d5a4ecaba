"""
Backing-store adapter.

The cache talks to Redis through ``redis.asyncio``; ``BackingStore`` names the
subset of that client the cache relies on so tests and alternative stores can
stand in for it.
"""

from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

import redis.asyncio as redis

from shared.config import CacheSettings
from shared.errors import ConfigurationError


class StorePipeline(Protocol):
    """Queued commands executed as one MULTI/EXEC batch."""

    def set(self, name: str, value: str) -> Any:
        ...

    def setex(self, name: str, time: int, value: str) -> Any:
        ...

    async def execute(self) -> List[Any]:
        ...

    async def __aenter__(self) -> "StorePipeline":
        ...

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        ...


class BackingStore(Protocol):
    """Commands the cache issues against the store."""

    async def get(self, name: str) -> Optional[str]:
        ...

    async def set(self, name: str, value: str) -> Any:
        ...

    async def setex(self, name: str, time: int, value: str) -> Any:
        ...

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        ...

    def pipeline(self, transaction: bool = True) -> StorePipeline:
        ...

    async def keys(self, pattern: str) -> List[str]:
        ...

    async def delete(self, *names: str) -> int:
        ...

    async def ping(self) -> Union[bool, str, bytes]:
        ...

    async def info(self, section: Optional[str] = None) -> Union[Dict[str, Any], str]:
        ...

    async def dbsize(self) -> int:
        ...

    async def aclose(self) -> None:
        ...


def create_redis_client(settings: CacheSettings) -> redis.Redis:
    """Build the Redis client used in production."""
    try:
        return redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=settings.socket_connect_timeout,
            socket_timeout=settings.socket_timeout,
            retry_on_timeout=True,
            health_check_interval=settings.health_check_interval,
        )
    except ValueError as exc:
        raise ConfigurationError(f"Invalid Redis URL: {exc}", {"redis_url": settings.redis_url}) from exc
