"""Shared pieces of the counter store backends.

Both :class:`~authshield.storage.redis_cache.RedisCache` and
:class:`~authshield.storage.memory.MemoryCache` expose the same coroutine
API so the service layer never needs to know which one it is talking to.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Set

from authshield.storage.models import Increment

# Commands accepted inside a batch, named after the store methods they mirror
BATCH_COMMANDS = frozenset(
    {"incr", "get", "set", "delete", "ttl_ms", "expire", "sadd", "srem", "scard", "smembers"}
)


@dataclass(frozen=True)
class BatchOp:
    command: str
    args: tuple = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.command not in BATCH_COMMANDS:
            raise ValueError(f"unsupported batch command: {self.command}")


def op(command: str, *args: Any, **kwargs: Any) -> BatchOp:
    """Build a batch operation, e.g. ``op("incr", key)``."""
    return BatchOp(command, tuple(args), dict(kwargs))


class CounterStore(Protocol):
    """Contract shared by every counter store backend.

    Every method raises ``StoreUnavailable`` when the backing store cannot
    be reached. ``batch`` is pipelined, not transactional: each operation is
    atomic on its own and a failed operation yields ``None`` in its slot.
    """

    async def incr(self, key: str) -> Increment: ...

    async def expire_if_first(self, key: str, increment: Increment, ttl_ms: int) -> bool: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def set(
        self, key: str, value: str, *, ttl_ms: Optional[int] = None, xx: bool = False
    ) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def ttl_ms(self, key: str) -> Optional[int]: ...

    async def expire(self, key: str, ttl_ms: int) -> bool: ...

    async def sadd(self, key: str, *members: str) -> int: ...

    async def srem(self, key: str, *members: str) -> int: ...

    async def scard(self, key: str) -> int: ...

    async def smembers(self, key: str) -> Set[str]: ...

    async def scan_keys(self, pattern: str) -> List[str]: ...

    async def batch(self, ops: Sequence[BatchOp]) -> List[Any]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class CacheBase:
    """Behaviour shared by the concrete backends."""

    async def expire(self, key: str, ttl_ms: int) -> bool:  # pragma: no cover - overridden
        raise NotImplementedError

    async def expire_if_first(self, key: str, increment: Increment, ttl_ms: int) -> bool:
        """Apply ``ttl_ms`` only when ``increment`` created the key.

        Not atomic with the increment itself. A process dying between the
        two calls leaves the key without expiry.
        """
        if not increment.first:
            return False
        return await self.expire(key, ttl_ms)


def normalize_ttl(raw: Optional[int]) -> Optional[int]:
    """Map Redis PTTL sentinels (-2 missing, -1 persistent) to None."""
    if raw is None:
        return None
    value = int(raw)
    if value < 0:
        return None
    return value


def decode_members(members: Iterable[Any]) -> Set[str]:
    return {m.decode() if isinstance(m, bytes) else str(m) for m in members}


__all__ = [
    "BATCH_COMMANDS",
    "BatchOp",
    "op",
    "CounterStore",
    "CacheBase",
    "normalize_ttl",
    "decode_members",
]
