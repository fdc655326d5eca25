from __future__ import annotations

import math
from typing import Dict, Iterable, Optional

from authshield.clock import Clock, SystemClock, from_ms, now_ms
from authshield.config import RateLimitRule
from authshield.logging import get_logger
from authshield.service.errors import RateLimitedError, RuleNotFoundError
from authshield.storage.common import CounterStore
from authshield.storage.errors import StoreUnavailable
from authshield.storage.models import RateLimitResult

logger = get_logger(__name__)

RATE_KEY_PREFIX = "rate"


def default_identity(ip: Optional[str], user_id: Optional[str] = None) -> str:
    """Default caller identity: ``"<ip>:<user id or anonymous>"``."""
    return f"{ip or 'unknown'}:{user_id or 'anonymous'}"


def window_start_ms(now: int, window_ms: int) -> int:
    return (now // window_ms) * window_ms


class FixedWindowRateLimiter:
    """Per-rule request counters bucketed into aligned time windows.

    Windows are fixed, not sliding: a caller can spend ``max_requests`` at
    the end of one window and again at the start of the next. Storage cost
    is one counter per identity per window.
    """

    def __init__(
        self,
        store: CounterStore,
        rules: Dict[str, RateLimitRule],
        *,
        enabled: bool = True,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.rules = dict(rules)
        self.enabled = enabled
        self.clock = clock or SystemClock()

    def rule(self, rule_name: str) -> RateLimitRule:
        try:
            return self.rules[rule_name]
        except KeyError:
            raise RuleNotFoundError(rule_name) from None

    def validate_rules(self, rule_names: Iterable[str]) -> None:
        """Fail fast at startup when a route references an unknown rule."""
        for name in rule_names:
            self.rule(name)

    @staticmethod
    def counter_key(rule_name: str, identity: str, window_start: int) -> str:
        return f"{RATE_KEY_PREFIX}:{rule_name}:{identity}:{window_start}"

    async def check_and_consume(self, rule_name: str, identity: str) -> RateLimitResult:
        """Count one request against ``rule_name`` for ``identity``.

        Fails open when the store is unreachable.
        """
        rule = self.rule(rule_name)
        now = now_ms(self.clock)
        window_start = window_start_ms(now, rule.window_ms)
        window_end = window_start + rule.window_ms
        reset_at = from_ms(window_end)

        if not self.enabled:
            return RateLimitResult(
                allowed=True,
                limit=rule.max_requests,
                remaining=rule.max_requests,
                reset_at=reset_at,
            )

        key = self.counter_key(rule_name, identity, window_start)
        try:
            increment = await self.store.incr(key)
            await self.store.expire_if_first(key, increment, rule.window_ms)
            if increment.value <= rule.max_requests:
                return RateLimitResult(
                    allowed=True,
                    limit=rule.max_requests,
                    remaining=rule.max_requests - increment.value,
                    reset_at=reset_at,
                )
            ttl = await self.store.ttl_ms(key)
        except StoreUnavailable as exc:
            logger.warning(
                "rate_limit_store_unavailable",
                rule=rule_name,
                operation=exc.operation,
                error=exc.message,
            )
            return RateLimitResult(
                allowed=True,
                limit=rule.max_requests,
                remaining=rule.max_requests,
                reset_at=reset_at,
            )

        if ttl is None:
            # Counter lost its TTL (crash between INCR and PEXPIRE); fall back to the window end
            ttl = max(0, window_end - now)
        retry_after = max(1, math.ceil(ttl / 1000))
        logger.warning(
            "rate_limit_exceeded",
            rule=rule_name,
            identity=identity,
            count=increment.value,
            retry_after=retry_after,
        )
        return RateLimitResult(
            allowed=False,
            limit=rule.max_requests,
            remaining=0,
            reset_at=reset_at,
            retry_after_seconds=retry_after,
            message=rule.message,
        )

    async def enforce(self, rule_name: str, identity: str) -> RateLimitResult:
        """Like ``check_and_consume`` but raises ``RateLimitedError`` on denial."""
        result = await self.check_and_consume(rule_name, identity)
        if not result.allowed:
            raise RateLimitedError(
                result.message or "Rate limit exceeded",
                retry_after_seconds=result.retry_after_seconds,
                detail={"limit": result.limit, "rule": rule_name},
                result=result,
            )
        return result

    def stats(self) -> dict:
        return {
            "enabled": self.enabled,
            "active_rules": sorted(self.rules),
        }
