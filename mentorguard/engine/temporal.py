"""
mentorguard.engine.temporal — Prompt-sequence gaming detection
===============================================================

Looks at a user's recent validation outcomes for one attempt and scores
how much the sequence looks like someone extracting a solution instead
of learning.  Three detectors run over the time-ordered history:

* **rapid_fire** — consecutive prompts under 10 s apart
* **iterative_refinement** — risk climbing prompt after prompt
* **solution_building** — a large share of prompts already BLOCKED

Each fired pattern adds ``contribution × confidence / 100`` to the
overall risk, with flat bonuses for very short intervals and for an
increasing or erratic risk trend.  Results are computed fresh per call.

History errors propagate as :class:`HistoryStoreError`; the caller
decides how to degrade.
"""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from mentorguard.config import TemporalSettings
from mentorguard.database.models import Classification
from mentorguard.engine.errors import GovernanceValidationError

logger = logging.getLogger(__name__)

RAPID_FIRE_CONTRIBUTION = 30.0
REFINEMENT_CONTRIBUTION = 40.0
SOLUTION_BUILDING_CONTRIBUTION = 50.0

REFINEMENT_RATIO = 0.5
BLOCKED_RATIO = 0.3

FAST_INTERVAL_SECONDS = 5.0
FAST_INTERVAL_BONUS = 20.0
INCREASING_TREND_BONUS = 15.0
ERRATIC_TREND_BONUS = 10.0

TREND_DELTA = 20.0
ERRATIC_VARIANCE = 400.0
PLACEHOLDER_COHERENCE = 0.7
HIGH_RISK_NOTICE = 70.0
HEALTHY_RISK = 30.0


class PatternType(enum.StrEnum):
    RAPID_FIRE = "rapid_fire"
    ITERATIVE_REFINEMENT = "iterative_refinement"
    SOLUTION_BUILDING = "solution_building"


class Trend(enum.StrEnum):
    INCREASING = "increasing"
    STABLE = "stable"
    DECREASING = "decreasing"
    ERRATIC = "erratic"


RECOMMENDATIONS: dict[PatternType, str] = {
    PatternType.RAPID_FIRE: "Slow down and think more about each question",
    PatternType.ITERATIVE_REFINEMENT: (
        "Try reframing your approach instead of refining the same question"
    ),
    PatternType.SOLUTION_BUILDING: (
        "Focus on understanding concepts instead of obtaining the complete solution"
    ),
}
HIGH_RISK_MESSAGE = "High risk of gaming attempt detected"
HEALTHY_MESSAGE = "Healthy usage pattern - keep it up!"
INSUFFICIENT_DATA_MESSAGE = "Keep interacting to enable temporal analysis"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ValidationSample:
    """One recorded governance outcome, as the analyzer sees it."""

    timestamp: datetime
    risk_score: float
    classification: Classification | str


@dataclass(frozen=True, slots=True)
class PromptSample:
    """An ad-hoc prompt for :meth:`TemporalBehaviorAnalyzer.detect_gaming_patterns`."""

    content: str
    timestamp: datetime
    risk_score: float
    classification: Classification | str = Classification.SAFE


class OutcomeHistory(ABC):
    """Read access to the append-only validation-outcome log."""

    @abstractmethod
    def fetch_attempt_outcomes(
        self, user_id: str, attempt_id: str, start: datetime, end: datetime
    ) -> list[ValidationSample]:
        """Outcomes for one attempt in ``[start, end]``, oldest first."""

    @abstractmethod
    def fetch_user_outcomes(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[ValidationSample]:
        """All of a user's outcomes in ``[start, end]``, oldest first."""


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AnalysisWindow:
    start: datetime
    end: datetime
    prompt_count: int


@dataclass(frozen=True, slots=True)
class DetectedPattern:
    pattern: PatternType
    confidence: float
    risk_contribution: float
    prompt_indices: tuple[int, ...]


@dataclass(frozen=True, slots=True)
class BehaviorMetrics:
    avg_time_between_prompts: float
    semantic_coherence: float
    complexity_progression: Trend
    dependency_trend: Trend


@dataclass(frozen=True, slots=True)
class TemporalAnalysisResult:
    user_id: str
    attempt_id: str
    window_analyzed: AnalysisWindow
    detected_patterns: tuple[DetectedPattern, ...]
    behavior_metrics: BehaviorMetrics
    overall_risk: float
    is_gaming_attempt: bool
    recommendations: tuple[str, ...]

    @property
    def pattern_names(self) -> list[str]:
        return [str(p.pattern) for p in self.detected_patterns]


@dataclass(frozen=True, slots=True)
class GamingPatternReport:
    is_gaming: bool
    confidence: float
    patterns: tuple[str, ...]


# ---------------------------------------------------------------------------
# Pure scoring
# ---------------------------------------------------------------------------
def _is_blocked(classification: Classification | str) -> bool:
    return str(classification).upper() == Classification.BLOCKED


def _intervals(timestamps: Sequence[datetime]) -> list[float]:
    return [
        (timestamps[i] - timestamps[i - 1]).total_seconds()
        for i in range(1, len(timestamps))
    ]


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _variance(values: Sequence[float]) -> float:
    mean = _mean(values)
    return _mean([(v - mean) ** 2 for v in values])


def detect_patterns(
    samples: Sequence[ValidationSample | PromptSample],
    rapid_fire_seconds: float,
) -> list[DetectedPattern]:
    total = len(samples)
    if total == 0:
        return []
    patterns: list[DetectedPattern] = []
    intervals = _intervals([s.timestamp for s in samples])

    flagged: set[int] = set()
    for i, gap in enumerate(intervals, start=1):
        if gap < rapid_fire_seconds:
            flagged.update((i - 1, i))
    if flagged:
        patterns.append(DetectedPattern(
            pattern=PatternType.RAPID_FIRE,
            confidence=len(flagged) / total * 100,
            risk_contribution=RAPID_FIRE_CONTRIBUTION,
            prompt_indices=tuple(sorted(flagged)),
        ))

    increasing = [
        i for i in range(1, total)
        if samples[i].risk_score > samples[i - 1].risk_score
    ]
    if len(increasing) > (total - 1) * REFINEMENT_RATIO:
        patterns.append(DetectedPattern(
            pattern=PatternType.ITERATIVE_REFINEMENT,
            confidence=len(increasing) / total * 100,
            risk_contribution=REFINEMENT_CONTRIBUTION,
            prompt_indices=tuple(increasing),
        ))

    blocked = [i for i, s in enumerate(samples) if _is_blocked(s.classification)]
    if len(blocked) > total * BLOCKED_RATIO:
        patterns.append(DetectedPattern(
            pattern=PatternType.SOLUTION_BUILDING,
            confidence=len(blocked) / total * 100,
            risk_contribution=SOLUTION_BUILDING_CONTRIBUTION,
            prompt_indices=tuple(blocked),
        ))

    return patterns


def complexity_trend(risk_scores: Sequence[float]) -> Trend:
    if len(risk_scores) <= 2:
        return Trend.STABLE
    half = len(risk_scores) // 2
    first, second = _mean(risk_scores[:half]), _mean(risk_scores[half:])
    if second > first + TREND_DELTA:
        return Trend.INCREASING
    if second < first - TREND_DELTA:
        return Trend.DECREASING
    if _variance(risk_scores) > ERRATIC_VARIANCE:
        return Trend.ERRATIC
    return Trend.STABLE


def behavior_metrics(samples: Sequence[ValidationSample | PromptSample]) -> BehaviorMetrics:
    return BehaviorMetrics(
        avg_time_between_prompts=_mean(_intervals([s.timestamp for s in samples])),
        semantic_coherence=PLACEHOLDER_COHERENCE,
        complexity_progression=complexity_trend([s.risk_score for s in samples]),
        dependency_trend=Trend.STABLE,
    )


def overall_risk(patterns: Sequence[DetectedPattern], metrics: BehaviorMetrics) -> float:
    risk = sum(p.risk_contribution * p.confidence / 100 for p in patterns)
    if metrics.avg_time_between_prompts < FAST_INTERVAL_SECONDS:
        risk += FAST_INTERVAL_BONUS
    if metrics.complexity_progression is Trend.INCREASING:
        risk += INCREASING_TREND_BONUS
    elif metrics.complexity_progression is Trend.ERRATIC:
        risk += ERRATIC_TREND_BONUS
    return max(0.0, min(risk, 100.0))


def recommendations(patterns: Sequence[DetectedPattern], risk: float) -> list[str]:
    out: list[str] = []
    if risk > HIGH_RISK_NOTICE:
        out.append(HIGH_RISK_MESSAGE)
    fired = {p.pattern for p in patterns}
    out.extend(msg for pattern, msg in RECOMMENDATIONS.items() if pattern in fired)
    if not out and risk < HEALTHY_RISK:
        out.append(HEALTHY_MESSAGE)
    return out


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------
class TemporalBehaviorAnalyzer:
    """Score a user's recent prompt history for gaming patterns.

    Usage::

        analyzer = TemporalBehaviorAnalyzer(ValidationHistory(engine))
        result = analyzer.analyze_prompt_sequence("u1", "attempt-1")
        if result.is_gaming_attempt:
            ...
    """

    def __init__(
        self,
        history: OutcomeHistory,
        settings: TemporalSettings | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.history = history
        self.settings = settings or TemporalSettings()
        self._clock = clock

    def analyze_prompt_sequence(
        self,
        user_id: str,
        attempt_id: str,
        lookback_minutes: int | None = None,
    ) -> TemporalAnalysisResult:
        if not user_id or not attempt_id:
            raise GovernanceValidationError("user_id and attempt_id are required")
        if lookback_minutes is None:
            lookback_minutes = self.settings.lookback_minutes
        if lookback_minutes <= 0:
            raise GovernanceValidationError("lookback_minutes must be > 0")

        end = self._clock()
        start = end - timedelta(minutes=lookback_minutes)
        samples = self.history.fetch_attempt_outcomes(user_id, attempt_id, start, end)
        window = AnalysisWindow(start=start, end=end, prompt_count=len(samples))

        if len(samples) < self.settings.min_prompts:
            logger.info(
                "Insufficient prompts for temporal analysis: user %s attempt %s (%d < %d)",
                user_id, attempt_id, len(samples), self.settings.min_prompts,
            )
            return TemporalAnalysisResult(
                user_id=user_id,
                attempt_id=attempt_id,
                window_analyzed=window,
                detected_patterns=(),
                behavior_metrics=BehaviorMetrics(
                    avg_time_between_prompts=0.0,
                    semantic_coherence=1.0,
                    complexity_progression=Trend.STABLE,
                    dependency_trend=Trend.STABLE,
                ),
                overall_risk=0.0,
                is_gaming_attempt=False,
                recommendations=(INSUFFICIENT_DATA_MESSAGE,),
            )

        patterns = detect_patterns(samples, self.settings.rapid_fire_seconds)
        metrics = behavior_metrics(samples)
        risk = overall_risk(patterns, metrics)
        is_gaming = risk >= self.settings.gaming_threshold

        logger.info(
            "Temporal analysis for user %s attempt %s: risk=%.1f gaming=%s patterns=%s",
            user_id, attempt_id, risk, is_gaming, [str(p.pattern) for p in patterns],
        )
        return TemporalAnalysisResult(
            user_id=user_id,
            attempt_id=attempt_id,
            window_analyzed=window,
            detected_patterns=tuple(patterns),
            behavior_metrics=metrics,
            overall_risk=risk,
            is_gaming_attempt=is_gaming,
            recommendations=tuple(recommendations(patterns, risk)),
        )

    def detect_gaming_patterns(self, prompts: Sequence[PromptSample]) -> GamingPatternReport:
        """Score an in-memory prompt sequence the same way as stored history."""
        if not prompts:
            return GamingPatternReport(is_gaming=False, confidence=0.0, patterns=())
        ordered = sorted(prompts, key=lambda p: p.timestamp)
        patterns = detect_patterns(ordered, self.settings.rapid_fire_seconds)
        risk = overall_risk(patterns, behavior_metrics(ordered))
        return GamingPatternReport(
            is_gaming=risk >= self.settings.gaming_threshold,
            confidence=risk,
            patterns=tuple(str(p.pattern) for p in patterns),
        )

    def calculate_behavior_risk(self, user_id: str, start: datetime, end: datetime) -> float:
        """``min(blocked_ratio × 50 + avg_risk × 0.5, 100)`` over the window."""
        if start > end:
            raise GovernanceValidationError("start must not be after end")
        samples = self.history.fetch_user_outcomes(user_id, start, end)
        if not samples:
            return 0.0
        blocked_ratio = sum(_is_blocked(s.classification) for s in samples) / len(samples)
        avg_risk = _mean([s.risk_score for s in samples])
        return min(blocked_ratio * 50 + avg_risk * 0.5, 100.0)
