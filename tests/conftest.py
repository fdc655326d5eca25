import asyncio
import inspect
import os
import sys
from pathlib import Path

# Runtime must never reach for a real Redis during tests
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authshield.service.runtime import reset_runtime_for_tests  # noqa: E402
from authshield.storage.common import CacheBase  # noqa: E402
from authshield.storage.errors import StoreUnavailable  # noqa: E402
from authshield.storage.memory import MemoryCache  # noqa: E402

# Aligned to the minute, the 15-minute window and the hour
EPOCH = 1_699_999_200.0


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: float = EPOCH):
        self.now = start

    def time(self) -> float:
        return self.now

    def advance(self, seconds: float = 0, *, ms: int = 0) -> None:
        self.now += seconds + ms / 1000


class UnavailableCache(CacheBase):
    """Store double whose every call fails like an unreachable Redis."""

    def __init__(self):
        self.calls = []

    def _fail(self, operation):
        self.calls.append(operation)
        raise StoreUnavailable(f"redis {operation} failed", operation=operation)

    async def incr(self, key):
        self._fail("incr")

    async def get(self, key):
        self._fail("get")

    async def set(self, key, value, *, ttl_ms=None, xx=False):
        self._fail("set")

    async def delete(self, *keys):
        self._fail("delete")

    async def ttl_ms(self, key):
        self._fail("pttl")

    async def expire(self, key, ttl_ms):
        self._fail("pexpire")

    async def sadd(self, key, *members):
        self._fail("sadd")

    async def srem(self, key, *members):
        self._fail("srem")

    async def scard(self, key):
        self._fail("scard")

    async def smembers(self, key):
        self._fail("smembers")

    async def scan_keys(self, pattern):
        self._fail("scan")

    async def batch(self, ops):
        self._fail("batch")

    async def ping(self):
        self._fail("ping")

    async def close(self):
        return None


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def unavailable_cache():
    return UnavailableCache()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
