"""
mentorguard.engine.scoring — Content risk scorer contract
==========================================================

Semantic scoring of prompt content belongs to an upstream service.  The
governance service only depends on the :class:`ContentRiskScorer`
protocol below.  :class:`ForbiddenPatternScorer` is the baseline used
when no upstream scorer is wired in: it checks the prompt against the
challenge's forbidden regexes and nothing else.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol

from mentorguard.database.models import Classification, SuggestedAction
from mentorguard.engine.context_cache import ChallengeContext

logger = logging.getLogger(__name__)

PATTERN_RISK = 25.0
BLOCK_THRESHOLD = 80.0
WARN_THRESHOLD = 50.0
MAX_REPORTED_PATTERNS = 3


@dataclass(frozen=True, slots=True)
class ContentRiskAssessment:
    risk_score: float
    classification: Classification
    reasons: tuple[str, ...]
    confidence: float
    suggested_action: SuggestedAction


class ContentRiskScorer(Protocol):
    def score(
        self,
        prompt: str,
        context: ChallengeContext,
        user_level: int,
        *,
        strict_mode: bool = False,
    ) -> ContentRiskAssessment:
        ...


def classify(risk: float, *, strict_mode: bool) -> tuple[Classification, SuggestedAction]:
    """Map a risk score to (classification, action)."""
    if risk >= BLOCK_THRESHOLD:
        return Classification.BLOCKED, SuggestedAction.BLOCK
    if risk >= WARN_THRESHOLD:
        return Classification.WARNING, (
            SuggestedAction.REVIEW if strict_mode else SuggestedAction.THROTTLE
        )
    return Classification.SAFE, SuggestedAction.ALLOW


@lru_cache(maxsize=1024)
def _compile(pattern: str) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        logger.warning("Invalid forbidden pattern %r: %s", pattern, exc)
        return None


class ForbiddenPatternScorer:
    """Baseline scorer: 25 risk per forbidden pattern hit, capped at 100."""

    def score(
        self,
        prompt: str,
        context: ChallengeContext,
        user_level: int,
        *,
        strict_mode: bool = False,
    ) -> ContentRiskAssessment:
        violations = []
        for source in context.forbidden_patterns:
            regex = _compile(source)
            if regex is not None and regex.search(prompt):
                violations.append(source)

        risk = min(len(violations) * PATTERN_RISK, 100.0)
        classification, action = classify(risk, strict_mode=strict_mode)
        reasons: tuple[str, ...] = ()
        if violations:
            reasons = (
                "Forbidden patterns detected: "
                + ", ".join(violations[:MAX_REPORTED_PATTERNS]),
            )
        return ContentRiskAssessment(
            risk_score=risk,
            classification=classification,
            reasons=reasons,
            confidence=0.9 if violations else 0.6,
            suggested_action=action,
        )
