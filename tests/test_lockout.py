"""Tests for brute-force lockout tracking."""

from unittest.mock import patch

import pytest

from authshield.service.errors import AccountLockedError
from authshield.service.lockout import LockoutIdentifier, LockoutTracker, identifiers_for
from authshield.storage.common import op

IDENTIFIERS = ["email:a@test.com", "ip:1.2.3.4"]


@pytest.fixture
def tracker(cache, clock):
    return LockoutTracker(cache, max_failed_attempts=5, lockout_duration_minutes=15, clock=clock)


class TestThreshold:
    async def test_locked_after_max_failures_then_cleared(self, tracker):
        for _ in range(5):
            await tracker.record_failure(IDENTIFIERS)

        status = await tracker.is_locked(["email:a@test.com"])
        assert status.locked
        assert status.attempts_remaining == 0
        assert status.retry_after_seconds == 15 * 60

        await tracker.clear(IDENTIFIERS)
        status = await tracker.is_locked(["email:a@test.com"])
        assert not status.locked
        assert status.attempts_remaining == 5

    async def test_attempts_remaining_counts_down(self, tracker):
        await tracker.record_failure(IDENTIFIERS)
        await tracker.record_failure(IDENTIFIERS)
        status = await tracker.is_locked(IDENTIFIERS)
        assert not status.locked
        assert status.attempts_remaining == 3

    async def test_any_locked_identifier_locks_the_principal(self, tracker):
        for _ in range(5):
            await tracker.record_failure(["ip:1.2.3.4"])
        status = await tracker.is_locked(["email:fresh@test.com", "ip:1.2.3.4"])
        assert status.locked

    async def test_record_failure_returns_highest_count(self, tracker):
        await tracker.record_failure(["ip:1.2.3.4"])
        await tracker.record_failure(["ip:1.2.3.4"])
        assert await tracker.record_failure(IDENTIFIERS) == 3

    async def test_email_identifiers_are_case_insensitive(self, tracker):
        for _ in range(5):
            await tracker.record_failure(["email:A@Test.com "])
        assert (await tracker.is_locked(["email:a@test.com"])).locked


class TestLockWindow:
    async def test_lock_expires_after_duration(self, tracker, clock):
        for _ in range(5):
            await tracker.record_failure(IDENTIFIERS)
        clock.advance(15 * 60)
        assert not (await tracker.is_locked(IDENTIFIERS)).locked

    async def test_repeated_failures_do_not_extend_lock(self, tracker, cache, clock):
        for _ in range(5):
            await tracker.record_failure(IDENTIFIERS)
        clock.advance(10 * 60)
        await tracker.record_failure(IDENTIFIERS)

        assert await cache.ttl_ms("lockout:email:a@test.com") == 5 * 60 * 1000
        status = await tracker.is_locked(IDENTIFIERS)
        assert status.retry_after_seconds == 5 * 60
        assert status.lock_until is not None

    async def test_is_locked_reads_in_one_batch(self, tracker, cache):
        with patch.object(cache, "batch", wraps=cache.batch) as spy:
            await tracker.is_locked(IDENTIFIERS)
        spy.assert_called_once()
        assert spy.call_args[0][0] == [
            op("get", "lockout:email:a@test.com"),
            op("ttl_ms", "lockout:email:a@test.com"),
            op("get", "lockout:ip:1.2.3.4"),
            op("ttl_ms", "lockout:ip:1.2.3.4"),
        ]


class TestEnforce:
    async def test_enforce_raises_account_locked(self, tracker):
        for _ in range(5):
            await tracker.record_failure(IDENTIFIERS)
        with pytest.raises(AccountLockedError) as excinfo:
            await tracker.enforce(IDENTIFIERS)
        assert excinfo.value.status_code == 429
        assert excinfo.value.error_code == "account_locked"
        assert excinfo.value.detail == {"retry_after": 15 * 60}

    async def test_enforce_passes_when_unlocked(self, tracker):
        status = await tracker.enforce(IDENTIFIERS)
        assert status.attempts_remaining == 5


class TestDegraded:
    async def test_unreachable_store_fails_open(self, unavailable_cache, clock):
        tracker = LockoutTracker(unavailable_cache, clock=clock)
        assert await tracker.record_failure(IDENTIFIERS) == 0
        status = await tracker.is_locked(IDENTIFIERS)
        assert not status.locked
        assert status.attempts_remaining == 5
        await tracker.clear(IDENTIFIERS)

    async def test_disabled_tracker_skips_store(self, unavailable_cache, clock):
        tracker = LockoutTracker(unavailable_cache, enabled=False, clock=clock)
        await tracker.record_failure(IDENTIFIERS)
        assert not (await tracker.is_locked(IDENTIFIERS)).locked
        assert unavailable_cache.calls == []


class TestStats:
    async def test_stats_lists_locked_identifiers(self, tracker):
        for _ in range(6):
            await tracker.record_failure(["ip:9.9.9.9"])
        for _ in range(5):
            await tracker.record_failure(["email:a@test.com"])
        await tracker.record_failure(["ip:1.1.1.1"])

        stats = await tracker.stats()
        assert stats["total_locked"] == 2
        assert stats["top_locked"][0] == {"namespace": "ip", "identifier": "9.9.9.9", "count": 6}


class TestIdentifiers:
    def test_parse_keeps_ipv6_colons(self):
        ident = LockoutIdentifier.parse("ip:2001:db8::1")
        assert ident == LockoutIdentifier("ip", "2001:db8::1")
        assert ident.key == "lockout:ip:2001:db8::1"

    @pytest.mark.parametrize("raw", ["email", ":x", "ip:"])
    def test_parse_rejects_malformed(self, raw):
        with pytest.raises(ValueError):
            LockoutIdentifier.parse(raw)

    def test_identifiers_for_skips_missing_parts(self):
        assert identifiers_for(ip="1.2.3.4") == [LockoutIdentifier("ip", "1.2.3.4")]
        assert identifiers_for(ip="1.2.3.4", email="A@x.io") == [
            LockoutIdentifier("ip", "1.2.3.4"),
            LockoutIdentifier("email", "a@x.io"),
        ]
