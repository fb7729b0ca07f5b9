"""
mentorguard.services.governance_service — Per-prompt governance decision
=========================================================================

Composes the rate limiter, challenge context cache, content risk scorer
and temporal analyzer into one decision per AI-assistant prompt:

  1. Rate limit (a denial short-circuits to THROTTLE; nothing is scored)
  2. Load the challenge context (not-found propagates)
  3. Score the prompt content (strict mode for EXPERT, or HARD at level ≥ 3)
  4. Analyze the attempt's recent prompt sequence (history outage → 0 risk)
  5. Combine into action + classification
  6. Append validation_logs + governance_audit_log rows
  7. Log a security alert for near-certain BLOCKs

Every step after 1 runs for every allowed request, so the validation log
the temporal analyzer reads stays complete.
"""

from __future__ import annotations

import hashlib
import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mentorguard.config import GovernanceConfig
from mentorguard.database.engine import get_session
from mentorguard.database.models import (
    CLASSIFICATION_SEVERITY,
    Classification,
    Difficulty,
    GovernanceAuditLog,
    SuggestedAction,
    ValidationLog,
)
from mentorguard.engine.context_cache import ChallengeContextCache
from mentorguard.engine.errors import GovernanceValidationError, HistoryStoreError
from mentorguard.engine.rate_limiter import RateLimitDecision, RateLimiter
from mentorguard.engine.scoring import ContentRiskAssessment, ContentRiskScorer
from mentorguard.engine.temporal import TemporalAnalysisResult, TemporalBehaviorAnalyzer
from mentorguard.services.history import ValidationHistory, as_utc

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

TEMPORAL_BLOCK_RISK = 80.0
TEMPORAL_THROTTLE_RISK = 60.0
THROTTLE_MS_PER_RISK = 10
MAX_THROTTLE_MS = 5000
STRICT_HARD_LEVEL = 3
TOP_REASONS = 5

RISK_BUCKETS: tuple[tuple[str, float], ...] = (
    ("0-24", 25.0),
    ("25-49", 50.0),
    ("50-74", 75.0),
    ("75-100", float("inf")),
)

ACTION_CLASSIFICATION: dict[SuggestedAction, Classification] = {
    SuggestedAction.ALLOW: Classification.SAFE,
    SuggestedAction.THROTTLE: Classification.WARNING,
    SuggestedAction.REVIEW: Classification.WARNING,
    SuggestedAction.BLOCK: Classification.BLOCKED,
}


# ---------------------------------------------------------------------------
# Request / decision types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class PromptRequest:
    user_id: str
    challenge_id: str
    prompt: str
    attempt_id: str | None = None
    tokens_requested: int = 0
    user_level: int = 1


@dataclass(frozen=True, slots=True)
class GovernanceDecision:
    """What the caller should do with one prompt."""

    action: SuggestedAction
    classification: Classification
    risk_score: float
    confidence: float
    reasons: tuple[str, ...]
    rate_limit: RateLimitDecision
    content_risk: float | None = None
    temporal_risk: float | None = None
    is_gaming_attempt: bool = False
    throttle_ms: int = 0
    validation_id: int | None = None

    @property
    def allowed(self) -> bool:
        return self.action in (SuggestedAction.ALLOW, SuggestedAction.REVIEW)

    @property
    def retry_after(self) -> int | None:
        return self.rate_limit.retry_after


@dataclass(frozen=True, slots=True)
class ValidationMetrics:
    total_validations: int
    by_action: dict[str, int] = field(default_factory=dict)
    by_classification: dict[str, int] = field(default_factory=dict)
    avg_risk_score: float = 0.0
    avg_confidence: float = 0.0
    risk_distribution: dict[str, int] = field(default_factory=dict)
    top_block_reasons: tuple[tuple[str, int], ...] = ()


def hash_prompt(prompt: str) -> str:
    """First 16 hex chars of SHA-256; the prompt itself is never stored."""
    return hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:16]


def use_strict_mode(difficulty: str, user_level: int) -> bool:
    difficulty = str(difficulty).upper()
    if difficulty == Difficulty.EXPERT:
        return True
    return difficulty == Difficulty.HARD and user_level >= STRICT_HARD_LEVEL


def _clamp(value: float) -> float:
    return max(0.0, min(float(value), 100.0))


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------
class GovernanceService:
    def __init__(
        self,
        engine: Engine,
        *,
        rate_limiter: RateLimiter,
        context_cache: ChallengeContextCache,
        scorer: ContentRiskScorer,
        analyzer: TemporalBehaviorAnalyzer,
        history: ValidationHistory,
        config: GovernanceConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._engine = engine
        self.rate_limiter = rate_limiter
        self.context_cache = context_cache
        self.scorer = scorer
        self.analyzer = analyzer
        self.history = history
        self.config = config or GovernanceConfig()
        self._clock = clock

    # -------------------------------------------------------------------
    # Evaluate
    # -------------------------------------------------------------------
    @staticmethod
    def _validate(request: PromptRequest) -> None:
        if not request.user_id or not request.challenge_id:
            raise GovernanceValidationError("user_id and challenge_id are required")
        if not isinstance(request.prompt, str) or not request.prompt.strip():
            raise GovernanceValidationError("prompt must be a non-empty string")
        if (
            isinstance(request.user_level, bool)
            or not isinstance(request.user_level, int)
            or request.user_level < 1
        ):
            raise GovernanceValidationError("user_level must be an int >= 1")

    def evaluate_prompt(self, request: PromptRequest) -> GovernanceDecision:
        self._validate(request)

        rate = self.rate_limiter.check_limit(request.user_id, request.tokens_requested)
        if not rate.allowed:
            decision = GovernanceDecision(
                action=SuggestedAction.THROTTLE,
                classification=Classification.WARNING,
                risk_score=0.0,
                confidence=1.0,
                reasons=(rate.reason or "Rate limit exceeded",),
                rate_limit=rate,
                throttle_ms=(rate.retry_after or 0) * 1000,
            )
            self._write_audit(request, decision)
            return decision

        context = self.context_cache.get_challenge_context(request.challenge_id)
        strict = use_strict_mode(context.difficulty, request.user_level)
        content = self.scorer.score(
            request.prompt, context, request.user_level, strict_mode=strict
        )

        temporal = self._analyze(request)
        decision = self._combine(content, temporal, rate)

        validation_id = self._write_validation(request, decision, strict)
        if validation_id is not None:
            decision = replace(decision, validation_id=validation_id)
        self._write_audit(request, decision)

        if (
            decision.classification is Classification.BLOCKED
            and decision.risk_score >= self.config.security_alert_threshold
        ):
            logger.warning(
                "security_alert: user %s challenge %s blocked at risk %.0f: %s",
                request.user_id, request.challenge_id,
                decision.risk_score, "; ".join(decision.reasons),
            )

        logger.info(
            "Prompt governed for user %s challenge %s: %s/%s risk=%.1f",
            request.user_id, request.challenge_id,
            decision.action, decision.classification, decision.risk_score,
        )
        return decision

    def _analyze(self, request: PromptRequest) -> TemporalAnalysisResult | None:
        if not request.attempt_id:
            return None
        try:
            return self.analyzer.analyze_prompt_sequence(request.user_id, request.attempt_id)
        except HistoryStoreError as exc:
            logger.warning(
                "Temporal analysis unavailable for user %s attempt %s, "
                "adding no temporal risk: %s",
                request.user_id, request.attempt_id, exc,
            )
            return None

    @staticmethod
    def _combine(
        content: ContentRiskAssessment,
        temporal: TemporalAnalysisResult | None,
        rate: RateLimitDecision,
    ) -> GovernanceDecision:
        content_risk = _clamp(content.risk_score)
        temporal_risk = _clamp(temporal.overall_risk) if temporal else 0.0
        gaming = bool(temporal and temporal.is_gaming_attempt)
        risk = max(content_risk, temporal_risk)

        reasons = list(content.reasons)
        throttle_ms = 0
        if content.classification == Classification.BLOCKED or (
            gaming and temporal_risk > TEMPORAL_BLOCK_RISK
        ):
            action = SuggestedAction.BLOCK
        elif temporal_risk > TEMPORAL_THROTTLE_RISK or (
            content.suggested_action == SuggestedAction.THROTTLE
        ):
            action = SuggestedAction.THROTTLE
            if temporal_risk > TEMPORAL_THROTTLE_RISK:
                throttle_ms = int(min(temporal_risk * THROTTLE_MS_PER_RISK, MAX_THROTTLE_MS))
        elif content.suggested_action == SuggestedAction.REVIEW or gaming:
            action = SuggestedAction.REVIEW
        else:
            action = SuggestedAction.ALLOW

        if temporal and temporal.detected_patterns:
            reasons.append(
                "Temporal patterns detected: " + ", ".join(temporal.pattern_names)
            )

        classification = ACTION_CLASSIFICATION[action]
        scored = Classification(content.classification)
        if CLASSIFICATION_SEVERITY[scored] > CLASSIFICATION_SEVERITY[classification]:
            classification = scored

        return GovernanceDecision(
            action=action,
            classification=classification,
            risk_score=risk,
            confidence=content.confidence,
            reasons=tuple(reasons),
            rate_limit=rate,
            content_risk=content_risk,
            temporal_risk=temporal_risk if temporal else None,
            is_gaming_attempt=gaming,
            throttle_ms=throttle_ms,
        )

    # -------------------------------------------------------------------
    # Audit trail
    # -------------------------------------------------------------------
    def _write_validation(
        self, request: PromptRequest, decision: GovernanceDecision, strict: bool
    ) -> int | None:
        try:
            return self.history.append(
                user_id=request.user_id,
                challenge_id=request.challenge_id,
                attempt_id=request.attempt_id,
                prompt_hash=hash_prompt(request.prompt),
                classification=decision.classification,
                risk_score=decision.risk_score,
                confidence=decision.confidence,
                action=decision.action,
                reasons=list(decision.reasons),
                metadata={
                    "content_risk": decision.content_risk,
                    "temporal_risk": decision.temporal_risk,
                    "is_gaming_attempt": decision.is_gaming_attempt,
                    "strict_mode": strict,
                    "user_level": request.user_level,
                },
                created_at=self._clock(),
            )
        except HistoryStoreError:
            logger.exception("Failed to log validation for user %s", request.user_id)
            return None

    def _write_audit(self, request: PromptRequest, decision: GovernanceDecision) -> None:
        snapshot: dict[str, Any] = {
            "action": str(decision.action),
            "classification": str(decision.classification),
            "risk_score": decision.risk_score,
            "content_risk": decision.content_risk,
            "temporal_risk": decision.temporal_risk,
            "is_gaming_attempt": decision.is_gaming_attempt,
            "throttle_ms": decision.throttle_ms,
            "reasons": list(decision.reasons),
            "rate_limit": {
                "allowed": decision.rate_limit.allowed,
                "remaining": decision.rate_limit.remaining,
                "code": decision.rate_limit.code,
            },
            "validation_id": decision.validation_id,
        }
        try:
            with get_session(self._engine) as session:
                session.add(GovernanceAuditLog(
                    user_id=request.user_id,
                    challenge_id=request.challenge_id,
                    attempt_id=request.attempt_id,
                    action=decision.action,
                    classification=decision.classification,
                    risk_score=decision.risk_score,
                    snapshot=snapshot,
                    timestamp=self._clock(),
                ))
        except SQLAlchemyError:
            logger.exception("Failed to write governance audit row for user %s", request.user_id)

    # -------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------
    def get_validation_metrics(
        self,
        challenge_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ValidationMetrics:
        """Aggregate validation rows; naive *start*/*end* are taken as UTC."""
        stmt = select(
            ValidationLog.action,
            ValidationLog.classification,
            ValidationLog.risk_score,
            ValidationLog.confidence,
            ValidationLog.reasons,
        )
        if challenge_id:
            stmt = stmt.where(ValidationLog.challenge_id == challenge_id)
        if start is not None:
            stmt = stmt.where(ValidationLog.created_at >= as_utc(start))
        if end is not None:
            stmt = stmt.where(ValidationLog.created_at <= as_utc(end))

        try:
            with Session(self._engine) as session:
                rows = session.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise HistoryStoreError(f"Could not read validation metrics: {exc}") from exc

        if not rows:
            return ValidationMetrics(
                total_validations=0,
                risk_distribution={label: 0 for label, _ in RISK_BUCKETS},
            )

        by_action: Counter[str] = Counter()
        by_classification: Counter[str] = Counter()
        distribution = {label: 0 for label, _ in RISK_BUCKETS}
        block_reasons: Counter[str] = Counter()

        for action, classification, risk, _confidence, reasons in rows:
            by_action[action] += 1
            by_classification[classification] += 1
            for label, upper in RISK_BUCKETS:
                if risk < upper:
                    distribution[label] += 1
                    break
            if classification == Classification.BLOCKED:
                block_reasons.update(reasons or ())

        total = len(rows)
        return ValidationMetrics(
            total_validations=total,
            by_action=dict(by_action),
            by_classification=dict(by_classification),
            avg_risk_score=round(sum(r.risk_score for r in rows) / total, 2),
            avg_confidence=round(sum(r.confidence for r in rows) / total, 2),
            risk_distribution=distribution,
            top_block_reasons=tuple(block_reasons.most_common(TOP_REASONS)),
        )


def decision_to_dict(decision: GovernanceDecision) -> dict[str, Any]:
    """JSON-ready view of a decision for API responses."""
    data = asdict(decision)
    data["allowed"] = decision.allowed
    data["retry_after"] = decision.retry_after
    return data
