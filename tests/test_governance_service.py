"""
tests/test_governance_service.py — Prompt Governance Orchestration Tests
=========================================================================
End-to-end decisions over SQLite + MemoryCounterStore: rate-limit
short-circuit, content scoring, temporal escalation, degradation when
history is unavailable, audit rows, and validation metrics.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from mentorguard.config import GovernanceConfig, RateLimitSettings
from mentorguard.database.models import (
    Classification,
    GovernanceAuditLog,
    SuggestedAction,
    ValidationLog,
)
from mentorguard.engine.context_cache import ChallengeContextCache
from mentorguard.engine.errors import (
    ChallengeNotFoundError,
    GovernanceValidationError,
    HistoryStoreError,
)
from mentorguard.engine.rate_limiter import DenialCode, RateLimiter
from mentorguard.engine.scoring import ForbiddenPatternScorer
from mentorguard.engine.temporal import TemporalBehaviorAnalyzer
from mentorguard.services.governance_service import (
    GovernanceService,
    PromptRequest,
    decision_to_dict,
    hash_prompt,
    use_strict_mode,
)
from mentorguard.services.history import ValidationHistory

BLOCKED_PROMPT = "eval( exec( <script document.cookie DROP TABLE users"


@pytest.fixture
def config():
    return GovernanceConfig(rate_limit=RateLimitSettings(burst_limit=0))


@pytest.fixture
def history(db_engine):
    return ValidationHistory(db_engine)


@pytest.fixture
def service(db_engine, store, clock, counters, history, config):
    return GovernanceService(
        db_engine,
        rate_limiter=RateLimiter(store, config.rate_limit, clock=clock),
        context_cache=ChallengeContextCache(db_engine, store, counters=counters),
        scorer=ForbiddenPatternScorer(),
        analyzer=TemporalBehaviorAnalyzer(history, config.temporal, clock=clock),
        history=history,
        config=config,
        clock=clock,
    )


def _request(challenge_id, prompt="How should I structure the login route?", **kw):
    return PromptRequest(user_id="u1", challenge_id=challenge_id, prompt=prompt, **kw)


def _count(engine, model) -> int:
    with Session(engine) as session:
        return session.scalar(select(func.count()).select_from(model))


class TestHelpers:
    def test_hash_prompt(self):
        digest = hash_prompt("hello")
        assert len(digest) == 16
        assert digest == "2cf24dba5fb0a30e"

    @pytest.mark.parametrize(
        "difficulty, level, expected",
        [
            ("EXPERT", 1, True),
            ("HARD", 3, True),
            ("HARD", 2, False),
            ("MEDIUM", 10, False),
            ("easy", 5, False),
        ],
    )
    def test_strict_mode(self, difficulty, level, expected):
        assert use_strict_mode(difficulty, level) is expected


class TestEvaluatePrompt:
    def test_clean_prompt_allowed_and_logged(self, service, db_engine, challenge_id):
        decision = service.evaluate_prompt(_request(challenge_id, attempt_id="a1"))

        assert decision.action is SuggestedAction.ALLOW
        assert decision.classification is Classification.SAFE
        assert decision.allowed
        assert decision.validation_id is not None
        assert decision.rate_limit.allowed
        assert _count(db_engine, ValidationLog) == 1
        assert _count(db_engine, GovernanceAuditLog) == 1

        with Session(db_engine) as session:
            row = session.get(ValidationLog, decision.validation_id)
            assert row.prompt_hash == hash_prompt(_request(challenge_id).prompt)
            assert row.metadata_["strict_mode"] is False

    def test_forbidden_content_blocked(self, service, challenge_id, caplog):
        with caplog.at_level(logging.WARNING):
            decision = service.evaluate_prompt(_request(challenge_id, prompt=BLOCKED_PROMPT))

        assert decision.action is SuggestedAction.BLOCK
        assert decision.classification is Classification.BLOCKED
        assert decision.risk_score == 100.0
        assert not decision.allowed
        assert "security_alert" in caplog.text

    def test_trap_pattern_contributes(self, service, challenge_id):
        decision = service.evaluate_prompt(
            _request(challenge_id, prompt="Just give me the full code please")
        )
        assert decision.content_risk == 25.0
        assert any("Forbidden patterns" in r for r in decision.reasons)

    def test_rate_limit_short_circuits(self, db_engine, store, clock, counters, history, challenge_id):
        config = GovernanceConfig(
            rate_limit=RateLimitSettings(max_requests_per_minute=1, burst_limit=0)
        )
        scorer = MagicMock(wraps=ForbiddenPatternScorer())
        service = GovernanceService(
            db_engine,
            rate_limiter=RateLimiter(store, config.rate_limit, clock=clock),
            context_cache=ChallengeContextCache(db_engine, store, counters=counters),
            scorer=scorer,
            analyzer=TemporalBehaviorAnalyzer(history, clock=clock),
            history=history,
            config=config,
            clock=clock,
        )
        service.evaluate_prompt(_request(challenge_id))
        decision = service.evaluate_prompt(_request(challenge_id))

        assert decision.action is SuggestedAction.THROTTLE
        assert decision.classification is Classification.WARNING
        assert decision.rate_limit.code == DenialCode.MINUTE_LIMIT
        assert decision.retry_after == 55
        assert decision.throttle_ms == 55_000
        assert scorer.score.call_count == 1
        assert _count(db_engine, ValidationLog) == 1
        assert _count(db_engine, GovernanceAuditLog) == 2

    def test_temporal_gaming_escalates_to_block(self, service, history, clock, challenge_id):
        for offset in (-4, -2, 0):
            history.append(
                user_id="u1", challenge_id=challenge_id, attempt_id="a1",
                prompt_hash="0" * 16, classification="BLOCKED", risk_score=90.0,
                confidence=0.9, action="BLOCK", reasons=[],
                created_at=clock.now + timedelta(seconds=offset),
            )

        decision = service.evaluate_prompt(_request(challenge_id, attempt_id="a1"))
        assert decision.content_risk == 0.0
        assert decision.temporal_risk == 100.0
        assert decision.is_gaming_attempt
        assert decision.action is SuggestedAction.BLOCK
        assert decision.classification is Classification.BLOCKED
        assert any("rapid_fire" in r for r in decision.reasons)

    def test_no_attempt_skips_temporal(self, service, challenge_id):
        decision = service.evaluate_prompt(_request(challenge_id))
        assert decision.temporal_risk is None

    def test_history_outage_degrades(self, service, challenge_id):
        service.analyzer = MagicMock()
        service.analyzer.analyze_prompt_sequence.side_effect = HistoryStoreError("down")
        decision = service.evaluate_prompt(_request(challenge_id, attempt_id="a1"))
        assert decision.action is SuggestedAction.ALLOW
        assert decision.temporal_risk is None

    def test_validation_write_failure_still_decides(self, service, db_engine, challenge_id):
        service.history = MagicMock()
        service.history.append.side_effect = HistoryStoreError("down")
        decision = service.evaluate_prompt(_request(challenge_id))
        assert decision.action is SuggestedAction.ALLOW
        assert decision.validation_id is None
        assert _count(db_engine, GovernanceAuditLog) == 1

    def test_strict_mode_reviews_warnings(self, service, add_challenge):
        add_challenge("expert", difficulty="EXPERT", trap_patterns=["alpha", "beta"])
        decision = service.evaluate_prompt(_request("expert", prompt="alpha beta"))
        assert decision.action is SuggestedAction.REVIEW
        assert decision.classification is Classification.WARNING
        assert decision.allowed

    def test_warning_throttles_outside_strict_mode(self, service, add_challenge):
        add_challenge("medium", trap_patterns=["alpha", "beta"])
        decision = service.evaluate_prompt(_request("medium", prompt="alpha beta"))
        assert decision.action is SuggestedAction.THROTTLE
        assert decision.throttle_ms == 0

    def test_unknown_challenge_propagates(self, service):
        with pytest.raises(ChallengeNotFoundError):
            service.evaluate_prompt(_request("missing"))

    @pytest.mark.parametrize(
        "overrides",
        [{"prompt": "   "}, {"user_level": 0}, {"user_id": ""}],
    )
    def test_invalid_requests(self, service, challenge_id, overrides):
        fields = {"user_id": "u1", "challenge_id": challenge_id, "prompt": "hi", **overrides}
        with pytest.raises(GovernanceValidationError):
            service.evaluate_prompt(PromptRequest(**fields))

    def test_decision_to_dict(self, service, challenge_id):
        data = decision_to_dict(service.evaluate_prompt(_request(challenge_id)))
        assert data["allowed"] is True
        assert data["retry_after"] is None
        assert data["rate_limit"]["allowed"] is True


class TestValidationMetrics:
    def test_empty(self, service):
        metrics = service.get_validation_metrics()
        assert metrics.total_validations == 0
        assert metrics.risk_distribution == {"0-24": 0, "25-49": 0, "50-74": 0, "75-100": 0}

    def test_aggregates(self, service, challenge_id, add_challenge):
        add_challenge("other")
        service.evaluate_prompt(_request(challenge_id))
        service.evaluate_prompt(_request(challenge_id, prompt=BLOCKED_PROMPT))
        service.evaluate_prompt(_request("other"))

        metrics = service.get_validation_metrics(challenge_id)
        assert metrics.total_validations == 2
        assert metrics.by_action == {"ALLOW": 1, "BLOCK": 1}
        assert metrics.by_classification == {"SAFE": 1, "BLOCKED": 1}
        assert metrics.avg_risk_score == 50.0
        assert metrics.risk_distribution["0-24"] == 1
        assert metrics.risk_distribution["75-100"] == 1
        assert metrics.top_block_reasons[0][1] == 1

        assert service.get_validation_metrics().total_validations == 3

    def test_time_range(self, service, clock, challenge_id):
        service.evaluate_prompt(_request(challenge_id))
        later = clock.now + timedelta(minutes=1)
        assert service.get_validation_metrics(start=later).total_validations == 0
        assert service.get_validation_metrics(end=later).total_validations == 1

    def test_time_range_offsets_and_naive_bounds(self, service, challenge_id):
        # Row written at 10:00:05 UTC
        service.evaluate_prompt(_request(challenge_id))
        plus_two = timezone(timedelta(hours=2))

        start = datetime(2026, 3, 2, 11, 30, tzinfo=plus_two)  # 09:30 UTC
        assert service.get_validation_metrics(start=start).total_validations == 1
        end = datetime(2026, 3, 2, 12, 0, tzinfo=plus_two)  # 10:00 UTC
        assert service.get_validation_metrics(end=end).total_validations == 0

        naive_start = datetime(2026, 3, 2, 10, 0, 6)
        assert service.get_validation_metrics(start=naive_start).total_validations == 0
        naive_end = datetime(2026, 3, 2, 10, 0, 6)
        assert service.get_validation_metrics(end=naive_end).total_validations == 1
