from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional, Sequence, Set

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authshield.logging import get_logger, mask_url_password
from authshield.storage.common import BatchOp, CacheBase, decode_members, normalize_ttl
from authshield.storage.errors import StoreUnavailable
from authshield.storage.models import Increment

logger = get_logger(__name__)


class RedisCache(CacheBase):
    """Thin Redis wrapper for counters, sessions and lockout state."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.warning(
                "redis_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
                redis_url=mask_url_password(self.redis_url),
            )
            raise StoreUnavailable(
                f"redis {operation} failed", operation=operation
            ) from exc

    async def incr(self, key: str) -> Increment:
        async with self._guard("incr"):
            value = await self.client.incr(key)
        return Increment(int(value))

    async def get(self, key: str) -> Optional[str]:
        async with self._guard("get"):
            return await self.client.get(key)

    async def set(
        self, key: str, value: str, *, ttl_ms: Optional[int] = None, xx: bool = False
    ) -> bool:
        """SET with optional PX; ``xx`` only overwrites an existing key."""
        async with self._guard("set"):
            return bool(await self.client.set(key, value, px=ttl_ms, xx=xx))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        async with self._guard("delete"):
            return int(await self.client.delete(*keys))

    async def ttl_ms(self, key: str) -> Optional[int]:
        async with self._guard("pttl"):
            raw = await self.client.pttl(key)
        return normalize_ttl(raw)

    async def expire(self, key: str, ttl_ms: int) -> bool:
        async with self._guard("pexpire"):
            return bool(await self.client.pexpire(key, max(1, int(ttl_ms))))

    async def sadd(self, key: str, *members: str) -> int:
        async with self._guard("sadd"):
            return int(await self.client.sadd(key, *members))

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        async with self._guard("srem"):
            return int(await self.client.srem(key, *members))

    async def scard(self, key: str) -> int:
        async with self._guard("scard"):
            return int(await self.client.scard(key))

    async def smembers(self, key: str) -> Set[str]:
        async with self._guard("smembers"):
            members = await self.client.smembers(key)
        return decode_members(members or ())

    async def scan_keys(self, pattern: str) -> List[str]:
        keys: List[str] = []
        async with self._guard("scan"):
            async for key in self.client.scan_iter(match=pattern, count=500):
                keys.append(key.decode() if isinstance(key, bytes) else key)
        return keys

    @staticmethod
    def _queue(pipe: Any, batch_op: BatchOp) -> None:
        args = batch_op.args
        if batch_op.command == "ttl_ms":
            pipe.pttl(*args)
        elif batch_op.command == "expire":
            key, ttl_ms = args
            pipe.pexpire(key, max(1, int(ttl_ms)))
        elif batch_op.command == "set":
            key, value = args
            pipe.set(key, value, px=batch_op.kwargs.get("ttl_ms"), xx=batch_op.kwargs.get("xx", False))
        else:
            getattr(pipe, batch_op.command)(*args)

    @staticmethod
    def _normalize(batch_op: BatchOp, value: Any) -> Any:
        if isinstance(value, Exception):
            logger.warning(
                "redis_batch_op_failed",
                command=batch_op.command,
                error_type=type(value).__name__,
                error=str(value),
            )
            return None
        if batch_op.command == "incr":
            return Increment(int(value))
        if batch_op.command == "ttl_ms":
            return normalize_ttl(value)
        if batch_op.command == "smembers":
            return decode_members(value or ())
        if batch_op.command in {"expire", "set"}:
            return bool(value)
        if batch_op.command in {"delete", "sadd", "srem", "scard"}:
            return int(value)
        return value

    async def batch(self, ops: Sequence[BatchOp]) -> List[Any]:
        """Pipeline ``ops`` without MULTI/EXEC; each result is normalized."""
        if not ops:
            return []
        async with self._guard("batch"):
            pipe = self.client.pipeline(transaction=False)
            for batch_op in ops:
                self._queue(pipe, batch_op)
            raw = await pipe.execute(raise_on_error=False)
        return [self._normalize(batch_op, value) for batch_op, value in zip(ops, raw)]

    async def ping(self) -> bool:
        async with self._guard("ping"):
            return bool(await self.client.ping())

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
