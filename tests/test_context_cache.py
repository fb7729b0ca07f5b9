"""
tests/test_context_cache.py — Challenge Context Cache Tests
=============================================================
Cache-aside reads, refresh/invalidate, prewarm isolation, stats, and
degradation when the store is unavailable.
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from mentorguard.config import ContextCacheSettings
from mentorguard.database.models import Challenge
from mentorguard.engine.context_cache import (
    CACHE_PREFIX,
    CacheCounters,
    ChallengeContext,
    ChallengeContextCache,
    TargetMetrics,
)
from mentorguard.engine.errors import (
    ChallengeNotFoundError,
    CounterStoreError,
    GovernanceValidationError,
    InfrastructureError,
)


@pytest.fixture
def cache(db_engine, store, counters):
    return ChallengeContextCache(db_engine, store, counters=counters)


class TestTargetMetrics:
    def test_short_aliases(self):
        metrics = TargetMetrics.from_raw({"maxDI": 40, "minPR": 0.8, "minCS": 0.7})
        assert metrics == TargetMetrics(40.0, 0.8, 0.7)

    def test_snake_case_and_missing(self):
        metrics = TargetMetrics.from_raw({"min_pass_rate": 0.5})
        assert metrics.min_pass_rate == 0.5
        assert metrics.max_dependency_index is None

    def test_none(self):
        assert TargetMetrics.from_raw(None) == TargetMetrics()


class TestBuildContext:
    def test_derived_fields(self, cache, challenge_id):
        context = cache.get_challenge_context(challenge_id)
        assert context.challenge_id == challenge_id
        assert context.category == "BACKEND"
        assert context.difficulty == "MEDIUM"
        assert "jwt" in context.keywords
        assert "typescript" in context.keywords
        assert context.tech_stack == ("TypeScript", "SQL")
        assert "api design" in context.allowed_topics
        assert r"DROP\s+TABLE" in context.forbidden_patterns
        assert context.forbidden_patterns[-1] == r"give\s+me\s+the\s+(full|complete)\s+code"
        assert "hash passwords safely" in context.learning_objectives
        assert context.target_metrics.max_dependency_index == 40.0

    def test_round_trips_through_dict(self, cache, challenge_id):
        context = cache.get_challenge_context(challenge_id)
        assert ChallengeContext.from_dict(context.to_dict()) == context


class TestGetChallengeContext:
    def test_miss_then_hit(self, cache, challenge_id, counters, store):
        first = cache.get_challenge_context(challenge_id)
        assert counters.misses == 1
        assert store.get(f"{CACHE_PREFIX}{challenge_id}") is not None

        with patch.object(cache, "_load_and_build") as loader:
            second = cache.get_challenge_context(challenge_id)
            loader.assert_not_called()

        assert second == first
        assert counters.hits == 1
        assert counters.hit_rate() == 0.5

    def test_entry_expires_after_ttl(self, db_engine, store, store_clock, counters, challenge_id):
        cache = ChallengeContextCache(
            db_engine, store, counters=counters,
            settings=ContextCacheSettings(ttl_seconds=60),
        )
        cache.get_challenge_context(challenge_id)
        store_clock.advance(61)
        cache.get_challenge_context(challenge_id)
        assert counters.misses == 2

    def test_missing_challenge(self, cache):
        with pytest.raises(ChallengeNotFoundError) as excinfo:
            cache.get_challenge_context("nope")
        assert excinfo.value.challenge_id == "nope"

    def test_blank_id_rejected(self, cache):
        with pytest.raises(GovernanceValidationError):
            cache.get_challenge_context("")

    def test_unreadable_entry_rebuilt(self, cache, challenge_id, store, counters):
        store.set(f"{CACHE_PREFIX}{challenge_id}", "{not json", 60)
        context = cache.get_challenge_context(challenge_id)
        assert context.challenge_id == challenge_id
        assert counters.misses == 1
        assert json.loads(store.get(f"{CACHE_PREFIX}{challenge_id}"))["challenge_id"] == challenge_id

    def test_store_outage_degrades_to_rebuild(self, db_engine, challenge_id, counters):
        store = MagicMock()
        store.get.side_effect = CounterStoreError("down")
        store.set.side_effect = CounterStoreError("down")
        cache = ChallengeContextCache(db_engine, store, counters=counters)

        context = cache.get_challenge_context(challenge_id)
        assert context.challenge_id == challenge_id
        assert counters.misses == 1

    def test_database_error_is_infrastructure_error(self, store, counters):
        engine = MagicMock()
        with patch(
            "mentorguard.engine.context_cache.Session",
            side_effect=OperationalError("select", {}, Exception("db down")),
        ):
            cache = ChallengeContextCache(engine, store, counters=counters)
            with pytest.raises(InfrastructureError):
                cache.get_challenge_context("ch-1")


class TestRefreshAndInvalidate:
    def test_refresh_picks_up_changes_without_counting_miss(
        self, cache, db_engine, challenge_id, counters
    ):
        cache.get_challenge_context(challenge_id)
        with Session(db_engine) as session:
            session.get(Challenge, challenge_id).title = "Renamed challenge"
            session.commit()

        assert cache.get_challenge_context(challenge_id).title != "Renamed challenge"
        refreshed = cache.refresh_challenge_context(challenge_id)
        assert refreshed.title == "Renamed challenge"
        assert counters.misses == 1
        assert cache.get_challenge_context(challenge_id).title == "Renamed challenge"

    def test_refresh_missing_challenge(self, cache):
        with pytest.raises(ChallengeNotFoundError):
            cache.refresh_challenge_context("nope")

    def test_invalidate(self, cache, challenge_id):
        cache.get_challenge_context(challenge_id)
        assert cache.invalidate(challenge_id) is True
        assert cache.invalidate(challenge_id) is False


class TestPrewarm:
    def test_partial_failure_is_reported(self, cache, challenge_id, store):
        report = cache.prewarm_cache([challenge_id, "missing"])
        assert report.total == 2
        assert report.succeeded == (challenge_id,)
        assert set(report.failed) == {"missing"}
        assert store.scan(f"{CACHE_PREFIX}*") == [f"{CACHE_PREFIX}{challenge_id}"]

    def test_empty_list(self, cache):
        report = cache.prewarm_cache([])
        assert report.total == 0
        assert report.succeeded == ()


class TestContextStats:
    def test_empty_cache(self, cache):
        stats = cache.get_context_stats()
        assert stats.cached_contexts == 0
        assert stats.avg_keywords == 0.0
        assert stats.most_common_categories == ()
        assert stats.cache_hit_rate == 0.0

    def test_summarizes_cached_contexts(self, cache, add_challenge, challenge_id):
        add_challenge("ch-2", category="FRONTEND")
        add_challenge("ch-3", category="BACKEND")
        cache.prewarm_cache([challenge_id, "ch-2", "ch-3"])

        stats = cache.get_context_stats()
        assert stats.cached_contexts == 3
        assert stats.avg_keywords > 0
        assert stats.avg_forbidden_patterns > 0
        assert stats.most_common_categories[0] == ("BACKEND", 2)

    def test_unreadable_entries_skipped(self, cache, store, challenge_id):
        cache.get_challenge_context(challenge_id)
        store.set(f"{CACHE_PREFIX}garbage", "[]", 60)
        stats = cache.get_context_stats()
        assert stats.cached_contexts == 2
        expected = len(cache.get_challenge_context(challenge_id).keywords)
        assert stats.avg_keywords == expected

    def test_sample_size_limits_reads(self, db_engine, store, counters, add_challenge):
        cache = ChallengeContextCache(
            db_engine, store, counters=counters,
            settings=ContextCacheSettings(stats_sample_size=1),
        )
        for i in range(3):
            add_challenge(f"c{i}")
        cache.prewarm_cache(["c0", "c1", "c2"])

        with patch.object(store, "get", wraps=store.get) as get:
            stats = cache.get_context_stats()
        assert stats.cached_contexts == 3
        assert get.call_count == 1


def test_counters_reset():
    counters = CacheCounters()
    counters.record_hit()
    counters.record_miss()
    counters.record_miss()
    assert counters.hit_rate() == 0.33
    counters.reset()
    assert counters.hit_rate() == 0.0
