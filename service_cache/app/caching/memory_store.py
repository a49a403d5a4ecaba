"""
In-process stand-in for the Redis backing store.

Implements the ``BackingStore`` surface with expiry, Redis glob matching and an
all-or-nothing pipeline. Every command is journaled in ``calls`` and any command
can be made to fail with ``fail()``, which is what the tests rely on. The CLI
also uses it for ``--memory`` dry runs.
"""

import re
import time
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError


def compile_glob(pattern: str) -> Pattern[str]:
    """Translate a Redis KEYS pattern (``* ? [abc] [^a] [a-z] \\x``) to a regex."""
    out: List[str] = []
    i, n = 0, len(pattern)
    while i < n:
        char = pattern[i]
        if char == "\\" and i + 1 < n:
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if char == "*":
            out.append(".*")
        elif char == "?":
            out.append(".")
        elif char == "[":
            j = i + 1
            negate = j < n and pattern[j] == "^"
            if negate:
                j += 1
            members: List[str] = []
            while j < n and pattern[j] != "]":
                if pattern[j] == "\\" and j + 1 < n:
                    members.append(re.escape(pattern[j + 1]))
                    j += 2
                elif j + 2 < n and pattern[j + 1] == "-" and pattern[j + 2] != "]":
                    members.append(f"{re.escape(pattern[j])}-{re.escape(pattern[j + 2])}")
                    j += 3
                else:
                    members.append(re.escape(pattern[j]))
                    j += 1
            if j >= n:
                # unterminated class, Redis treats "[" literally
                out.append(re.escape(char))
                i += 1
                continue
            if members:
                out.append(("[^" if negate else "[") + "".join(members) + "]")
            else:
                out.append("." if negate else "(?!)")
            i = j + 1
            continue
        else:
            out.append(re.escape(char))
        i += 1
    return re.compile("".join(out), re.DOTALL)


def _human_bytes(size: int) -> str:
    for unit, scale in (("G", 1024 ** 3), ("M", 1024 ** 2), ("K", 1024)):
        if size >= scale:
            return f"{size / scale:.2f}{unit}"
    return f"{size}B"


class InMemoryPipeline:
    """Commands queued against an ``InMemoryStore`` and applied together."""

    def __init__(self, store: "InMemoryStore", transaction: bool = True):
        self._store = store
        self.transaction = transaction
        self._queued: List[Tuple[str, tuple]] = []

    async def __aenter__(self) -> "InMemoryPipeline":
        return self

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        self._queued.clear()

    def set(self, name: str, value: Any) -> "InMemoryPipeline":
        self._store._record("pipeline.set", name, value)
        self._queued.append(("set", (name, value)))
        return self

    def setex(self, name: str, time: int, value: Any) -> "InMemoryPipeline":
        self._store._record("pipeline.setex", name, time, value)
        self._queued.append(("setex", (name, time, value)))
        return self

    async def execute(self) -> List[Any]:
        self._store._record("execute", len(self._queued))
        for command, args in self._queued:
            if command == "setex" and int(args[1]) <= 0:
                self._queued.clear()
                raise ResponseError("EXECABORT Transaction discarded because of previous errors.")
        results = []
        for command, args in self._queued:
            if command == "set":
                self._store._write(args[0], args[1], None)
            else:
                self._store._write(args[0], args[2], int(args[1]))
            results.append(True)
        self._queued.clear()
        return results


class InMemoryStore:
    """Async in-memory store speaking the subset of redis-py the cache uses."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._data: Dict[str, str] = {}
        self._expires_at: Dict[str, float] = {}
        self._failures: Dict[str, BaseException] = {}
        self.calls: List[Tuple[str, tuple]] = []
        self.closed = False

    # -- test hooks ---------------------------------------------------------

    def fail(self, command: str, error: Optional[BaseException] = None) -> None:
        """Make ``command`` raise until ``recover`` is called."""
        self._failures[command] = error or RedisConnectionError(f"simulated {command} failure")

    def recover(self, command: Optional[str] = None) -> None:
        if command is None:
            self._failures.clear()
        else:
            self._failures.pop(command, None)

    def calls_to(self, command: str) -> List[tuple]:
        return [args for name, args in self.calls if name == command]

    def reset_calls(self) -> None:
        self.calls.clear()

    def ttl_of(self, key: str) -> Optional[int]:
        """Remaining seconds for a key, ``-1`` when it never expires, None when absent."""
        if not self._alive(key):
            return None
        if key not in self._expires_at:
            return -1
        return max(0, int(round(self._expires_at[key] - self._clock())))

    def _record(self, command: str, *args: Any) -> None:
        self.calls.append((command, args))
        failure = self._failures.get(command)
        if failure is not None:
            raise failure

    def _alive(self, key: str) -> bool:
        if key not in self._data:
            return False
        expires_at = self._expires_at.get(key)
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            del self._expires_at[key]
            return False
        return True

    def _write(self, key: str, value: Any, ttl: Optional[int]) -> None:
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        self._data[key] = value if isinstance(value, str) else str(value)
        if ttl is None:
            self._expires_at.pop(key, None)
        else:
            self._expires_at[key] = self._clock() + ttl

    # -- commands -----------------------------------------------------------

    async def get(self, name: str) -> Optional[str]:
        self._record("get", name)
        return self._data[name] if self._alive(name) else None

    async def set(self, name: str, value: Any) -> bool:
        self._record("set", name, value)
        self._write(name, value, None)
        return True

    async def setex(self, name: str, time: int, value: Any) -> bool:
        self._record("setex", name, time, value)
        if int(time) <= 0:
            raise ResponseError("invalid expire time in 'setex' command")
        self._write(name, value, int(time))
        return True

    async def mget(self, keys: Sequence[str], *args: str) -> List[Optional[str]]:
        names = ([keys] if isinstance(keys, str) else list(keys)) + list(args)
        self._record("mget", *names)
        return [self._data[name] if self._alive(name) else None for name in names]

    def pipeline(self, transaction: bool = True) -> InMemoryPipeline:
        self._record("pipeline", transaction)
        return InMemoryPipeline(self, transaction)

    async def keys(self, pattern: str = "*") -> List[str]:
        self._record("keys", pattern)
        matcher = compile_glob(pattern)
        return [key for key in list(self._data) if self._alive(key) and matcher.fullmatch(key)]

    async def delete(self, *names: str) -> int:
        self._record("delete", *names)
        removed = 0
        for name in names:
            if self._alive(name):
                del self._data[name]
                self._expires_at.pop(name, None)
                removed += 1
        return removed

    async def ping(self) -> bool:
        self._record("ping")
        return True

    async def info(self, section: Optional[str] = None) -> Dict[str, Any]:
        self._record("info", section)
        used = sum(len(key) + len(value) for key, value in self._data.items())
        return {
            "used_memory": used,
            "used_memory_human": _human_bytes(used),
            "used_memory_peak_human": _human_bytes(used),
        }

    async def dbsize(self) -> int:
        self._record("dbsize")
        return sum(1 for key in list(self._data) if self._alive(key))

    async def aclose(self) -> None:
        self._record("aclose")
        self.closed = True
