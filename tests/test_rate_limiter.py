"""
tests/test_rate_limiter.py — Per-User Quota Tests
===================================================
Fixed windows, burst window, fail-closed behavior on store failure,
read-only quota snapshots, and admin resets.
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

from mentorguard.config import RateLimitSettings
from mentorguard.engine.errors import CounterStoreError, GovernanceValidationError
from mentorguard.engine.rate_limiter import DenialCode, RateLimiter
from mentorguard.engine.store import MemoryCounterStore


def _limiter(store, clock, **overrides) -> RateLimiter:
    settings = RateLimitSettings(**{"burst_limit": 0, **overrides})
    return RateLimiter(store, settings, clock=clock)


class TestCheckLimit:
    def test_allows_up_to_minute_limit_then_denies(self, store, clock):
        limiter = _limiter(store, clock, max_requests_per_minute=3)
        for expected_remaining in (2, 1, 0):
            decision = limiter.check_limit("u1")
            assert decision.allowed
            assert decision.remaining == expected_remaining

        denied = limiter.check_limit("u1")
        assert not denied.allowed
        assert denied.code == DenialCode.MINUTE_LIMIT
        assert "Minute limit exceeded" in denied.reason
        assert denied.remaining == 0
        # 10:00:05 → next minute boundary is 55s away
        assert denied.reset_at == datetime(2026, 3, 2, 10, 1, tzinfo=UTC)
        assert denied.retry_after == 55

    def test_new_minute_reopens_window(self, store, clock):
        limiter = _limiter(store, clock, max_requests_per_minute=1)
        assert limiter.check_limit("u1").allowed
        assert not limiter.check_limit("u1").allowed
        clock.advance(60)
        assert limiter.check_limit("u1").allowed

    def test_hour_limit(self, store, clock):
        limiter = _limiter(store, clock, max_requests_per_minute=10, max_requests_per_hour=2)
        limiter.check_limit("u1")
        limiter.check_limit("u1")
        denied = limiter.check_limit("u1")
        assert denied.code == DenialCode.HOUR_LIMIT
        assert denied.reset_at == datetime(2026, 3, 2, 11, 0, tzinfo=UTC)

    def test_daily_token_limit(self, store, clock):
        limiter = _limiter(store, clock, max_tokens_per_day=1000)
        assert limiter.check_limit("u1", tokens_requested=600).allowed
        denied = limiter.check_limit("u1", tokens_requested=600)
        assert denied.code == DenialCode.DAILY_TOKEN_LIMIT
        assert denied.reset_at == datetime(2026, 3, 3, tzinfo=UTC)

    def test_zero_token_request_only_counts_requests(self, store, clock):
        limiter = _limiter(store, clock, max_tokens_per_day=0)
        assert limiter.check_limit("u1").allowed

    def test_users_are_isolated(self, store, clock):
        limiter = _limiter(store, clock, max_requests_per_minute=1)
        limiter.check_limit("u1")
        assert not limiter.check_limit("u1").allowed
        assert limiter.check_limit("u2").allowed

    def test_burst_limit(self, store, clock):
        limiter = _limiter(
            store, clock, burst_limit=2, burst_window_seconds=5.0
        )
        assert limiter.check_limit("u1").allowed
        assert limiter.check_limit("u1").allowed
        denied = limiter.check_limit("u1")
        assert denied.code == DenialCode.BURST_LIMIT
        assert denied.retry_after == 5

        clock.advance(6)
        assert limiter.check_limit("u1").allowed

    def test_burst_disabled_at_zero(self, store, clock):
        limiter = _limiter(store, clock, burst_limit=0)
        for _ in range(10):
            assert limiter.check_limit("u1").allowed
        assert store.scan("ratelimit:u1:burst") == []

    @pytest.mark.parametrize("tokens", [-1, 1.5, True])
    def test_invalid_tokens_rejected(self, store, clock, tokens):
        with pytest.raises(GovernanceValidationError):
            _limiter(store, clock).check_limit("u1", tokens_requested=tokens)

    def test_empty_user_rejected(self, store, clock):
        with pytest.raises(GovernanceValidationError):
            _limiter(store, clock).check_limit("  ")


class TestFailClosed:
    def test_batch_failure_denies(self, clock):
        store = MagicMock()
        store.increment_many.side_effect = CounterStoreError("down")
        limiter = RateLimiter(store, RateLimitSettings(), clock=clock)

        decision = limiter.check_limit("u1")
        assert not decision.allowed
        assert decision.code == DenialCode.STORE_UNAVAILABLE
        assert decision.retry_after == RateLimitSettings().store_failure_retry_seconds

    def test_unexpected_error_also_denies(self, clock):
        store = MagicMock()
        store.increment_many.side_effect = RuntimeError("boom")
        decision = RateLimiter(store, clock=clock).check_limit("u1")
        assert decision.code == DenialCode.STORE_UNAVAILABLE

    def test_burst_failure_denies(self, clock):
        store = MagicMock()
        store.increment_many.return_value = [1, 1, 0]
        store.record_in_window.side_effect = CounterStoreError("down")
        decision = RateLimiter(store, clock=clock).check_limit("u1")
        assert decision.code == DenialCode.STORE_UNAVAILABLE


class TestRemainingQuota:
    def test_fresh_user_has_full_quota(self, store, clock):
        limiter = _limiter(store, clock)
        snapshot = limiter.get_remaining_quota("u1")
        s = limiter.settings
        assert snapshot.requests_per_minute.remaining == s.max_requests_per_minute
        assert snapshot.requests_per_hour.remaining == s.max_requests_per_hour
        assert snapshot.tokens_per_day.remaining == s.max_tokens_per_day

    def test_reflects_usage_without_counting(self, store, clock):
        limiter = _limiter(store, clock)
        limiter.check_limit("u1", tokens_requested=250)
        first = limiter.get_remaining_quota("u1")
        second = limiter.get_remaining_quota("u1")
        assert first == second
        assert first.requests_per_minute.used == 1
        assert first.tokens_per_day.used == 250

    def test_store_error_propagates(self, clock):
        store = MagicMock()
        store.get.side_effect = CounterStoreError("down")
        with pytest.raises(CounterStoreError):
            RateLimiter(store, clock=clock).get_remaining_quota("u1")


class TestResetUserLimits:
    def test_reset_restores_full_quota(self, store, clock):
        limiter = _limiter(store, clock, burst_limit=5)
        for _ in range(3):
            limiter.check_limit("u1", tokens_requested=10)

        summary = limiter.reset_user_limits("u1")
        assert summary.complete
        assert summary.keys_found == 4  # minute, hour, tokens, burst
        assert summary.keys_deleted == 4

        snapshot = limiter.get_remaining_quota("u1")
        assert snapshot.requests_per_minute.remaining == limiter.settings.max_requests_per_minute
        assert snapshot.tokens_per_day.remaining == limiter.settings.max_tokens_per_day

    def test_reset_leaves_other_users(self, store, clock):
        limiter = _limiter(store, clock)
        limiter.check_limit("u1")
        limiter.check_limit("u10")
        limiter.reset_user_limits("u1")
        assert limiter.get_remaining_quota("u10").requests_per_minute.used == 1

    @pytest.mark.parametrize("other", ["bob:team", "bob:minute", "bob:burst"])
    def test_reset_leaves_users_sharing_a_colon_prefix(self, store, clock, other):
        limiter = _limiter(store, clock, burst_limit=5)
        limiter.check_limit("bob", 10)
        limiter.check_limit(other, 10)

        summary = limiter.reset_user_limits("bob")

        assert summary.keys_found == 4
        snapshot = limiter.get_remaining_quota(other)
        assert snapshot.requests_per_minute.used == 1
        assert snapshot.tokens_per_day.used == 10
        assert limiter.get_remaining_quota("bob").requests_per_minute.used == 0

    def test_partial_failure_reported(self, clock):
        store = MagicMock()
        store.scan.return_value = ["ratelimit:u1:minute:1", "ratelimit:u1:hour:1"]
        store.delete.side_effect = [1, CounterStoreError("down")]
        summary = RateLimiter(store, clock=clock).reset_user_limits("u1")
        assert not summary.complete
        assert summary.keys_deleted == 1
        assert summary.failed_keys == ("ratelimit:u1:hour:1",)
