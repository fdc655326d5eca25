"""Tests for the in-process counter store used in tests and dev fallback.

The services rely on Redis semantics, so these pin the behaviours that
matter: INCR keeps the TTL, SET without TTL clears it, expired keys vanish.
"""

import pytest

from authshield.storage.common import op


class TestCounters:
    async def test_incr_reports_first_write(self, cache):
        first = await cache.incr("k")
        second = await cache.incr("k")
        assert first.value == 1 and first.first
        assert second.value == 2 and not second.first

    async def test_incr_keeps_existing_ttl(self, cache, clock):
        increment = await cache.incr("k")
        await cache.expire_if_first("k", increment, 1000)
        clock.advance(ms=400)
        await cache.incr("k")
        assert await cache.ttl_ms("k") == 600

    async def test_expire_if_first_skips_later_increments(self, cache):
        await cache.incr("k")
        second = await cache.incr("k")
        assert await cache.expire_if_first("k", second, 1000) is False
        assert await cache.ttl_ms("k") is None

    async def test_key_vanishes_after_ttl(self, cache, clock):
        await cache.set("k", "v", ttl_ms=1000)
        clock.advance(ms=999)
        assert await cache.get("k") == "v"
        clock.advance(ms=1)
        assert await cache.get("k") is None
        assert await cache.ttl_ms("k") is None

    async def test_incr_after_expiry_starts_over(self, cache, clock):
        await cache.incr("k")
        await cache.expire("k", 10)
        clock.advance(ms=10)
        assert (await cache.incr("k")).first

    async def test_set_without_ttl_clears_expiry(self, cache):
        await cache.set("k", "v", ttl_ms=1000)
        await cache.set("k", "w")
        assert await cache.ttl_ms("k") is None
        assert await cache.get("k") == "w"

    async def test_set_xx_only_overwrites_live_keys(self, cache, clock):
        assert await cache.set("k", "v", ttl_ms=1000, xx=True) is False
        assert await cache.get("k") is None

        await cache.set("k", "v", ttl_ms=1000)
        assert await cache.set("k", "w", ttl_ms=5000, xx=True) is True
        assert await cache.get("k") == "w"

        clock.advance(5)
        results = await cache.batch([op("set", "k", "x", ttl_ms=1000, xx=True)])
        assert results == [False]

    async def test_delete_counts_only_live_keys(self, cache):
        await cache.set("a", "1")
        await cache.set("b", "2")
        assert await cache.delete("a", "b", "missing") == 2


class TestSets:
    async def test_sadd_srem_scard(self, cache):
        assert await cache.sadd("s", "x", "y") == 2
        assert await cache.sadd("s", "x") == 0
        assert await cache.scard("s") == 2
        assert await cache.srem("s", "x") == 1
        assert await cache.smembers("s") == {"y"}

    async def test_empty_set_is_removed(self, cache):
        await cache.sadd("s", "x")
        await cache.srem("s", "x")
        assert await cache.scan_keys("s") == []

    async def test_smembers_returns_copy(self, cache):
        await cache.sadd("s", "x")
        members = await cache.smembers("s")
        members.add("y")
        assert await cache.scard("s") == 1

    async def test_get_on_set_raises_type_error(self, cache):
        await cache.sadd("s", "x")
        with pytest.raises(TypeError):
            await cache.get("s")


class TestBatch:
    async def test_batch_runs_every_op_in_order(self, cache):
        results = await cache.batch(
            [
                op("incr", "c"),
                op("expire", "c", 5000),
                op("ttl_ms", "c"),
                op("set", "k", "v", ttl_ms=100),
                op("get", "k"),
            ]
        )
        assert results[0].value == 1
        assert results[1] is True
        assert results[2] == 5000
        assert results[3] is True
        assert results[4] == "v"

    async def test_failed_op_yields_none_without_aborting(self, cache):
        await cache.sadd("s", "x")
        results = await cache.batch([op("incr", "s"), op("incr", "c")])
        assert results[0] is None
        assert results[1].value == 1

    def test_unknown_command_rejected(self):
        with pytest.raises(ValueError):
            op("flushall")


class TestScan:
    async def test_scan_keys_matches_glob(self, cache, clock):
        await cache.set("session:a", "1")
        await cache.set("session:meta:a", "1")
        await cache.set("other", "1")
        await cache.set("session:b", "1", ttl_ms=10)
        clock.advance(ms=10)
        keys = await cache.scan_keys("session:*")
        assert sorted(keys) == ["session:a", "session:meta:a"]

    async def test_close_drops_everything(self, cache):
        await cache.set("k", "v")
        await cache.close()
        assert await cache.get("k") is None
        assert await cache.ping() is True
