"""Tests for CSRF token issuing and verification."""

import asyncio
from unittest.mock import patch

import pytest

from authshield.service.csrf import CSRFTokenStore
from authshield.service.errors import CSRFInvalidError


@pytest.fixture
def csrf(clock):
    return CSRFTokenStore(ttl_minutes=60, clock=clock)


class TestRoundTrip:
    def test_issue_then_verify(self, csrf):
        token = csrf.issue("s1")
        assert len(token) == 64
        assert csrf.verify("s1", token) is True
        # Verification does not consume the token
        assert csrf.verify("s1", token) is True

    def test_token_expires(self, csrf, clock):
        token = csrf.issue("s1")
        clock.advance(60 * 60 + 1)
        assert csrf.verify("s1", token) is False
        assert csrf.stats()["active_tokens"] == 0
        assert csrf.stats()["expired_tokens"] == 0

    def test_token_invalid_at_exact_expiry(self, csrf, clock):
        token = csrf.issue("s1")
        clock.advance(60 * 60 - 1)
        assert csrf.verify("s1", token) is True
        other = csrf.issue("s2")
        clock.advance(1)
        assert csrf.stats()["expired_tokens"] == 1
        assert csrf.verify("s1", token) is False
        clock.advance(60 * 60 - 1)
        assert csrf.sweep() == 1
        assert csrf.verify("s2", other) is False

    def test_wrong_token_of_equal_length_rejected(self, csrf):
        token = csrf.issue("s1")
        wrong = ("0" if token[0] != "0" else "1") + token[1:]
        assert len(wrong) == len(token)
        assert csrf.verify("s1", wrong) is False

    def test_comparison_is_constant_time(self, csrf):
        token = csrf.issue("s1")
        with patch("authshield.service.csrf.hmac.compare_digest", return_value=False) as compare:
            assert csrf.verify("s1", token[:-1] + "x") is False
        compare.assert_called_once_with(token.encode("utf-8"), (token[:-1] + "x").encode("utf-8"))

    def test_reissue_replaces_previous_token(self, csrf):
        first = csrf.issue("s1")
        second = csrf.issue("s1")
        assert csrf.verify("s1", first) is False
        assert csrf.verify("s1", second) is True

    def test_tokens_bound_to_session(self, csrf):
        token = csrf.issue("s1")
        csrf.issue("s2")
        assert csrf.verify("s2", token) is False

    @pytest.mark.parametrize("session_id, token", [(None, "t"), ("s1", None), ("", ""), ("unknown", "t")])
    def test_missing_inputs_rejected(self, csrf, session_id, token):
        assert csrf.verify(session_id, token) is False


class TestExpiredEntryCleanup:
    def test_expired_verify_does_not_drop_fresh_replacement(self, csrf, clock):
        stale = csrf.issue("s1")
        clock.advance(60 * 60 + 1)
        with csrf._lock:
            snapshot = csrf._tokens["s1"]
        fresh = csrf.issue("s1")

        csrf._discard(snapshot)
        assert csrf.verify("s1", fresh) is True
        assert csrf.verify("s1", stale) is False

    def test_sweep_removes_only_expired(self, csrf, clock):
        csrf.issue("old")
        clock.advance(30 * 60)
        young = csrf.issue("young")
        clock.advance(30 * 60 + 1)
        assert csrf.sweep() == 1
        assert csrf.verify("young", young) is True
        assert csrf.stats()["active_tokens"] == 1

    def test_revoke(self, csrf):
        token = csrf.issue("s1")
        assert csrf.revoke("s1") is True
        assert csrf.revoke("s1") is False
        assert csrf.verify("s1", token) is False


class TestEnforce:
    def test_enforce_raises_forbidden(self, csrf):
        csrf.issue("s1")
        with pytest.raises(CSRFInvalidError) as excinfo:
            csrf.enforce("s1", "bogus")
        assert excinfo.value.status_code == 403
        assert excinfo.value.error_code == "forbidden"

    def test_enforce_accepts_valid_token(self, csrf):
        csrf.enforce("s1", csrf.issue("s1"))


class TestSweeper:
    async def test_background_sweeper_runs_and_stops(self, csrf, clock):
        csrf.issue("s1")
        clock.advance(60 * 60 + 1)
        await csrf.start_sweeper(0.01)
        assert csrf.stats()["sweeper_running"] is True
        for _ in range(50):
            await asyncio.sleep(0.01)
            if not csrf._tokens:
                break
        await csrf.stop_sweeper()
        assert csrf._tokens == {}
        assert csrf.stats()["sweeper_running"] is False

    async def test_zero_interval_disables_sweeper(self, csrf):
        await csrf.start_sweeper(0)
        assert csrf.stats()["sweeper_running"] is False
        await csrf.stop_sweeper()
