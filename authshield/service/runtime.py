from __future__ import annotations

import asyncio
import threading
from typing import Optional

from authshield.clock import Clock, SystemClock
from authshield.config import Settings, get_settings, reset_settings_cache
from authshield.logging import get_logger, mask_url_password
from authshield.service.csrf import CSRFTokenStore
from authshield.service.heuristics import SuspiciousActivityDetector
from authshield.service.lockout import LockoutTracker
from authshield.service.rate_limit import FixedWindowRateLimiter
from authshield.service.sessions import SessionRegistry
from authshield.storage.common import CounterStore
from authshield.storage.memory import MemoryCache
from authshield.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class Runtime:
    """Holds the store client and the auth-defense components for the app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        cache: Optional[CounterStore] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_cache=self.settings.use_memory_cache,
            test_mode=self.settings.test_mode,
        )
        self.cache = cache if cache is not None else self._init_cache()

        self.csrf = CSRFTokenStore(self.settings.csrf_token_ttl_minutes, clock=self.clock)
        self.rate_limiter = FixedWindowRateLimiter(
            self.cache,
            self.settings.rate_limit_rules,
            enabled=self.settings.rate_limiting_enabled,
            clock=self.clock,
        )
        self.lockout = LockoutTracker(
            self.cache,
            max_failed_attempts=self.settings.max_failed_attempts,
            lockout_duration_minutes=self.settings.lockout_duration_minutes,
            enabled=self.settings.brute_force_protection_enabled,
            clock=self.clock,
        )
        self.detector = SuspiciousActivityDetector(self.cache, clock=self.clock)
        # CSRF tokens die with their session
        self.sessions = SessionRegistry(
            self.cache,
            session_duration_seconds=self.settings.session_duration_seconds,
            max_sessions_per_user=self.settings.max_sessions_per_user,
            clock=self.clock,
            on_revoke=self.csrf.revoke,
        )
        logger.info(
            "runtime_initialized",
            cache=type(self.cache).__name__,
            rate_limiting_enabled=self.settings.rate_limiting_enabled,
            brute_force_protection_enabled=self.settings.brute_force_protection_enabled,
            rules=sorted(self.settings.rate_limit_rules),
        )

    def _init_cache(self) -> CounterStore:
        if self.settings.use_memory_cache:
            logger.info("runtime_cache_initialized", cache_type="memory")
            return MemoryCache(clock=self.clock)

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.redis_socket_timeout,
                )
                cache.verify_connection()
                logger.info("runtime_cache_initialized", cache_type="redis")
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for rate limits, lockouts and sessions; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; counters and sessions "
                "are process-local and lost on restart."
            ),
            mode=fallback_mode,
        )
        return MemoryCache(clock=self.clock)

    async def start(self) -> None:
        await self.csrf.start_sweeper(self.settings.csrf_sweep_interval_seconds)

    async def close(self) -> None:
        await self.csrf.stop_sweeper()
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")

        if runtime is not None:
            try:
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    asyncio.run(runtime.close())
                else:
                    loop.create_task(runtime.close())
            except Exception as exc:
                # connection may already be closed or bound to a finished loop
                logger.warning("runtime_reset_close_failed", error=str(exc))
        runtime = Runtime(settings)
        return runtime
