from __future__ import annotations

import math
from datetime import timedelta
from typing import Iterable, List, NamedTuple, Optional, Sequence, Union

from authshield.clock import Clock, SystemClock, now_utc
from authshield.logging import get_logger
from authshield.service.errors import AccountLockedError
from authshield.storage.common import CounterStore, op
from authshield.storage.errors import StoreUnavailable
from authshield.storage.models import Increment, LockStatus

logger = get_logger(__name__)

LOCKOUT_KEY_PREFIX = "lockout"


class LockoutIdentifier(NamedTuple):
    """One dimension of a principal, e.g. ``("email", "a@test.com")``."""

    namespace: str
    value: str

    @property
    def key(self) -> str:
        return f"{LOCKOUT_KEY_PREFIX}:{self.namespace}:{self.value}"

    @classmethod
    def email(cls, email: str) -> "LockoutIdentifier":
        return cls("email", email.strip().lower())

    @classmethod
    def ip(cls, ip: str) -> "LockoutIdentifier":
        return cls("ip", ip.strip())

    @classmethod
    def parse(cls, raw: str) -> "LockoutIdentifier":
        """Parse ``"namespace:value"``; IPv6 values keep their colons."""
        namespace, sep, value = raw.partition(":")
        if not sep or not namespace or not value:
            raise ValueError(f"lockout identifier must look like 'namespace:value': {raw!r}")
        if namespace == "email":
            return cls.email(value)
        return cls(namespace, value)


IdentifierLike = Union[LockoutIdentifier, str]


def _coerce(identifiers: Iterable[IdentifierLike]) -> List[LockoutIdentifier]:
    seen: dict[str, LockoutIdentifier] = {}
    for identifier in identifiers:
        parsed = identifier if isinstance(identifier, LockoutIdentifier) else LockoutIdentifier.parse(identifier)
        seen.setdefault(parsed.key, parsed)
    return list(seen.values())


def identifiers_for(ip: Optional[str] = None, email: Optional[str] = None) -> List[LockoutIdentifier]:
    """Identifiers for a credential attempt: the caller IP and, if known, the email."""
    identifiers = []
    if ip:
        identifiers.append(LockoutIdentifier.ip(ip))
    if email:
        identifiers.append(LockoutIdentifier.email(email))
    return identifiers


class LockoutTracker:
    """Brute-force failure counters with a lockout-duration TTL.

    Identifiers are independent keys checked disjunctively: the principal is
    locked as soon as any one of them reaches ``max_failed_attempts``.
    The lock check must run before the credential check itself.
    """

    def __init__(
        self,
        store: CounterStore,
        *,
        max_failed_attempts: int = 5,
        lockout_duration_minutes: int = 15,
        enabled: bool = True,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.max_failed_attempts = max_failed_attempts
        self.lockout_duration_ms = lockout_duration_minutes * 60 * 1000
        self.enabled = enabled
        self.clock = clock or SystemClock()

    def _unlocked(self) -> LockStatus:
        return LockStatus(locked=False, attempts_remaining=self.max_failed_attempts)

    async def record_failure(self, identifiers: Sequence[IdentifierLike]) -> int:
        """Increment every identifier's counter; returns the highest count.

        The TTL is applied only to keys this call created, so repeated
        failures never extend an existing lockout window.
        """
        idents = _coerce(identifiers)
        if not self.enabled or not idents:
            return 0
        try:
            increments: List[Optional[Increment]] = await self.store.batch(
                [op("incr", ident.key) for ident in idents]
            )
            first_writes = [
                op("expire", ident.key, self.lockout_duration_ms)
                for ident, increment in zip(idents, increments)
                if increment is not None and increment.first
            ]
            if first_writes:
                await self.store.batch(first_writes)
        except StoreUnavailable as exc:
            logger.warning("lockout_record_failed", operation=exc.operation, error=exc.message)
            return 0

        highest = max((inc.value for inc in increments if inc is not None), default=0)
        logger.warning(
            "auth_failure_recorded",
            identifiers=[ident.namespace for ident in idents],
            attempts_remaining=max(0, self.max_failed_attempts - highest),
        )
        return highest

    async def is_locked(self, identifiers: Sequence[IdentifierLike]) -> LockStatus:
        """Read every identifier's count and TTL in one batch.

        Fails open when the store is unreachable.
        """
        idents = _coerce(identifiers)
        if not self.enabled or not idents:
            return self._unlocked()
        ops = []
        for ident in idents:
            ops.append(op("get", ident.key))
            ops.append(op("ttl_ms", ident.key))
        try:
            results = await self.store.batch(ops)
        except StoreUnavailable as exc:
            logger.warning("lockout_check_failed", operation=exc.operation, error=exc.message)
            return self._unlocked()

        highest = 0
        max_ttl_ms = 0
        for raw_count, ttl in zip(results[0::2], results[1::2]):
            try:
                count = int(raw_count) if raw_count is not None else 0
            except (TypeError, ValueError):
                count = 0
            highest = max(highest, count)
            if ttl is not None:
                max_ttl_ms = max(max_ttl_ms, ttl)

        attempts_remaining = max(0, self.max_failed_attempts - highest)
        if highest < self.max_failed_attempts:
            return LockStatus(locked=False, attempts_remaining=attempts_remaining)

        lock_until = now_utc(self.clock) + timedelta(milliseconds=max_ttl_ms) if max_ttl_ms else None
        return LockStatus(
            locked=True,
            attempts_remaining=0,
            lock_until=lock_until,
            retry_after_seconds=max(1, math.ceil(max_ttl_ms / 1000)),
        )

    async def enforce(self, identifiers: Sequence[IdentifierLike]) -> LockStatus:
        """Raise ``AccountLockedError`` if any identifier is locked."""
        status = await self.is_locked(identifiers)
        if status.locked:
            raise AccountLockedError(
                "Account temporarily locked due to too many failed attempts. "
                f"Try again in {status.retry_after_seconds} seconds.",
                retry_after_seconds=status.retry_after_seconds,
            )
        return status

    async def clear(self, identifiers: Sequence[IdentifierLike]) -> None:
        """Reset the failure budget; call once after a confirmed successful login."""
        idents = _coerce(identifiers)
        if not self.enabled or not idents:
            return
        try:
            await self.store.delete(*(ident.key for ident in idents))
        except StoreUnavailable as exc:
            logger.warning("lockout_clear_failed", operation=exc.operation, error=exc.message)

    async def stats(self, limit: int = 10) -> dict:
        """Currently locked identifiers, highest failure counts first."""
        try:
            keys = await self.store.scan_keys(f"{LOCKOUT_KEY_PREFIX}:*")
            counts = await self.store.batch([op("get", key) for key in keys])
        except StoreUnavailable as exc:
            logger.warning("lockout_stats_failed", operation=exc.operation, error=exc.message)
            return {"total_locked": 0, "top_locked": []}

        locked = []
        for key, raw in zip(keys, counts):
            try:
                count = int(raw) if raw is not None else 0
            except (TypeError, ValueError):
                continue
            if count >= self.max_failed_attempts:
                _, namespace, value = key.split(":", 2)
                locked.append({"namespace": namespace, "identifier": value, "count": count})
        locked.sort(key=lambda item: item["count"], reverse=True)
        return {"total_locked": len(locked), "top_locked": locked[:limit]}
