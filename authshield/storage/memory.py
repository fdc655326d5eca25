from __future__ import annotations

import threading
from fnmatch import fnmatchcase
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple, Union

from authshield.clock import Clock, SystemClock, now_ms
from authshield.logging import get_logger
from authshield.storage.common import BatchOp, CacheBase
from authshield.storage.models import Increment

logger = get_logger(__name__)

_Value = Union[str, Set[str]]


class MemoryCache(CacheBase):
    """Process-local stand-in for Redis used in tests and dev fallback.

    Mirrors the Redis semantics the services rely on: INCR keeps an
    existing TTL, SET without a TTL clears it, expired keys vanish on
    access. State is not shared across processes.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        # key -> (value, expires_at_ms or None)
        self._data: Dict[str, Tuple[_Value, Optional[int]]] = {}
        self._lock = threading.Lock()

    def _now(self) -> int:
        return now_ms(self._clock)

    def _live(self, key: str) -> Optional[Tuple[_Value, Optional[int]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._now():
            del self._data[key]
            return None
        return entry

    def _set_member(self, key: str) -> Optional[Set[str]]:
        entry = self._live(key)
        if entry is None:
            return None
        value, _ = entry
        if not isinstance(value, set):
            raise TypeError(f"key {key!r} does not hold a set")
        return value

    # Synchronous primitives, always called with the lock held

    def _incr(self, key: str) -> Increment:
        entry = self._live(key)
        if entry is None:
            self._data[key] = ("1", None)
            return Increment(1)
        value, expires_at = entry
        if isinstance(value, set):
            raise TypeError(f"key {key!r} does not hold an integer")
        new_value = int(value) + 1
        self._data[key] = (str(new_value), expires_at)
        return Increment(new_value)

    def _get(self, key: str) -> Optional[str]:
        entry = self._live(key)
        if entry is None:
            return None
        value, _ = entry
        if isinstance(value, set):
            raise TypeError(f"key {key!r} does not hold a string")
        return value

    def _set(self, key: str, value: str, ttl_ms: Optional[int] = None, xx: bool = False) -> bool:
        if xx and self._live(key) is None:
            return False
        expires_at = self._now() + max(1, int(ttl_ms)) if ttl_ms is not None else None
        self._data[key] = (str(value), expires_at)
        return True

    def _delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                del self._data[key]
                removed += 1
        return removed

    def _ttl_ms(self, key: str) -> Optional[int]:
        entry = self._live(key)
        if entry is None or entry[1] is None:
            return None
        return max(0, entry[1] - self._now())

    def _expire(self, key: str, ttl_ms: int) -> bool:
        entry = self._live(key)
        if entry is None:
            return False
        self._data[key] = (entry[0], self._now() + max(1, int(ttl_ms)))
        return True

    def _sadd(self, key: str, *members: str) -> int:
        current = self._set_member(key)
        if current is None:
            current = set()
            self._data[key] = (current, None)
        before = len(current)
        current.update(members)
        return len(current) - before

    def _srem(self, key: str, *members: str) -> int:
        current = self._set_member(key)
        if current is None:
            return 0
        before = len(current)
        current.difference_update(members)
        removed = before - len(current)
        if not current:
            del self._data[key]
        return removed

    def _scard(self, key: str) -> int:
        current = self._set_member(key)
        return len(current) if current else 0

    def _smembers(self, key: str) -> Set[str]:
        current = self._set_member(key)
        return set(current) if current else set()

    # Async API

    async def incr(self, key: str) -> Increment:
        with self._lock:
            return self._incr(key)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._get(key)

    async def set(
        self, key: str, value: str, *, ttl_ms: Optional[int] = None, xx: bool = False
    ) -> bool:
        with self._lock:
            return self._set(key, value, ttl_ms, xx)

    async def delete(self, *keys: str) -> int:
        with self._lock:
            return self._delete(*keys)

    async def ttl_ms(self, key: str) -> Optional[int]:
        with self._lock:
            return self._ttl_ms(key)

    async def expire(self, key: str, ttl_ms: int) -> bool:
        with self._lock:
            return self._expire(key, ttl_ms)

    async def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            return self._sadd(key, *members)

    async def srem(self, key: str, *members: str) -> int:
        with self._lock:
            return self._srem(key, *members)

    async def scard(self, key: str) -> int:
        with self._lock:
            return self._scard(key)

    async def smembers(self, key: str) -> Set[str]:
        with self._lock:
            return self._smembers(key)

    async def scan_keys(self, pattern: str) -> List[str]:
        with self._lock:
            return [
                key
                for key in list(self._data)
                if fnmatchcase(key, pattern) and self._live(key) is not None
            ]

    async def batch(self, ops: Sequence[BatchOp]) -> List[Any]:
        results: List[Any] = []
        with self._lock:
            for batch_op in ops:
                handler = getattr(self, f"_{batch_op.command}")
                try:
                    results.append(handler(*batch_op.args, **batch_op.kwargs))
                except (TypeError, ValueError) as exc:
                    logger.warning(
                        "memory_batch_op_failed",
                        command=batch_op.command,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    results.append(None)
        return results

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._data.clear()
