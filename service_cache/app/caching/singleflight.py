"""
Per-key call coalescing.
"""

import asyncio
from typing import Awaitable, Callable, Dict, Optional, TypeVar

T = TypeVar("T")


class SingleFlight:
    """Run at most one call per key at a time; concurrent callers share its outcome.

    The first caller for a key (the leader) runs ``fn``. Callers arriving while
    it is in flight wait on the same future and get the same value or exception.
    A waiter being cancelled does not cancel the leader.
    """

    def __init__(self, on_shared: Optional[Callable[[str], None]] = None):
        self._inflight: Dict[str, "asyncio.Future"] = {}
        self._on_shared = on_shared

    def __contains__(self, key: str) -> bool:
        return key in self._inflight

    def __len__(self) -> int:
        return len(self._inflight)

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        pending = self._inflight.get(key)
        if pending is not None:
            if self._on_shared is not None:
                self._on_shared(key)
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # mark retrieved: the leader re-raises it below
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            if self._inflight.get(key) is future:
                del self._inflight[key]
