"""
Result and value types passed across the cache API.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, List, Optional, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class CacheStatus(str, Enum):
    """Outcome of a single cache operation."""
    HIT = "hit"
    MISS = "miss"
    STORED = "stored"
    UNAVAILABLE = "unavailable"
    DECODE_ERROR = "decode_error"
    ENCODE_ERROR = "encode_error"
    INVALID = "invalid"


@dataclass(frozen=True)
class CacheResult(Generic[T]):
    """Value plus the reason it is (or is not) there.

    ``MISS`` means the key is absent; ``UNAVAILABLE`` means the store failed,
    which the plain ``get``/``set`` API cannot tell apart.
    """

    status: CacheStatus
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def hit(self) -> bool:
        return self.status is CacheStatus.HIT

    @property
    def ok(self) -> bool:
        return self.status in (CacheStatus.HIT, CacheStatus.MISS, CacheStatus.STORED)

    @property
    def degraded(self) -> bool:
        return self.status is CacheStatus.UNAVAILABLE

    @classmethod
    def found(cls, value: T) -> "CacheResult[T]":
        return cls(CacheStatus.HIT, value)

    @classmethod
    def missing(cls) -> "CacheResult[T]":
        return cls(CacheStatus.MISS)

    @classmethod
    def stored(cls) -> "CacheResult[T]":
        return cls(CacheStatus.STORED)

    @classmethod
    def unavailable(cls, error: BaseException) -> "CacheResult[T]":
        return cls(CacheStatus.UNAVAILABLE, error=str(error))


@dataclass(frozen=True)
class CacheEntry:
    """One key/value/ttl triple of a batch write. ``ttl == 0`` writes without expiry."""
    key: str
    value: Any
    ttl: int = 0


FetchFn = Callable[[str], Awaitable[Any]]


@dataclass(frozen=True)
class WarmTask:
    """A key to pre-load, the coroutine function that produces it and its TTL."""
    key: str
    fetch: FetchFn
    ttl: int


@dataclass
class WarmSummary:
    """Tally of a warm run."""
    planned: int = 0
    warmed: int = 0
    misses: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.errors)

    def as_dict(self) -> dict:
        return {
            "planned": self.planned,
            "warmed": self.warmed,
            "misses": self.misses,
            "failed": self.failed,
            "errors": list(self.errors),
        }


class CacheStats(BaseModel):
    """Point-in-time view of the store and this client's counters."""

    keys: int = 0
    memory: str = "0B"
    hit_rate: float = 0.0
    operations: int = 0

    @classmethod
    def zeroed(cls) -> "CacheStats":
        return cls()
