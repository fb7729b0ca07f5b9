"""
mentorguard.api.routes.governance — Governance REST endpoints
==============================================================

Authentication happens at the platform gateway; the acting user id
arrives in the path or body.  Engine calls block on Redis/Postgres, so
every handler ships them to a worker thread through ``run_db``.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import UTC, datetime, timedelta
from typing import Literal

from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from mentorguard.api.deps import (
    get_analyzer,
    get_context_cache,
    get_copy_paste,
    get_governance_service,
    get_rate_limiter,
)
from mentorguard.database.engine import run_db
from mentorguard.database.models import Classification
from mentorguard.engine.context_cache import ChallengeContextCache
from mentorguard.engine.copy_paste import CopyPasteCorrelator, CopyPasteEvent
from mentorguard.engine.rate_limiter import RateLimiter
from mentorguard.engine.temporal import PromptSample, TemporalBehaviorAnalyzer
from mentorguard.services.governance_service import (
    GovernanceService,
    PromptRequest,
    decision_to_dict,
)

router = APIRouter(prefix="/governance", tags=["governance"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class ValidateBody(BaseModel):
    user_id: str = Field(min_length=1)
    challenge_id: str = Field(min_length=1)
    prompt: str = Field(min_length=1)
    attempt_id: str | None = None
    tokens_requested: int = Field(0, ge=0)
    user_level: int = Field(1, ge=1, le=10)


class CopyPasteBody(BaseModel):
    user_id: str = Field(min_length=1)
    attempt_id: str = Field(min_length=1)
    action: Literal["copy", "paste"]
    content: str
    line_count: int | None = Field(None, ge=0)
    source_interaction_id: str | None = None


class PromptSampleBody(BaseModel):
    content: str
    timestamp: datetime
    risk_score: float = Field(ge=0, le=100)
    classification: Classification = Classification.SAFE


class DetectBody(BaseModel):
    prompts: list[PromptSampleBody] = Field(default_factory=list)


class PrewarmBody(BaseModel):
    challenge_ids: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Prompt validation
# ---------------------------------------------------------------------------
@router.post("/validate")
async def validate_prompt(
    body: ValidateBody,
    service: GovernanceService = Depends(get_governance_service),
):
    decision = await run_db(service.evaluate_prompt, PromptRequest(**body.model_dump()))
    payload = decision_to_dict(decision)
    if not decision.rate_limit.allowed:
        return JSONResponse(
            status_code=429,
            content=jsonable_encoder(payload),
            headers={"Retry-After": str(decision.retry_after or 1)},
        )
    return payload


@router.get("/metrics")
async def validation_metrics(
    challenge_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    service: GovernanceService = Depends(get_governance_service),
):
    metrics = await run_db(service.get_validation_metrics, challenge_id, start, end)
    return asdict(metrics)


# ---------------------------------------------------------------------------
# Copy / paste
# ---------------------------------------------------------------------------
@router.post("/copy-paste")
async def track_copy_paste(
    body: CopyPasteBody,
    correlator: CopyPasteCorrelator = Depends(get_copy_paste),
):
    event = CopyPasteEvent(
        attempt_id=body.attempt_id,
        action=body.action,
        content=body.content,
        line_count=body.line_count,
        source_interaction_id=body.source_interaction_id,
    )
    outcome = await run_db(correlator.track_copy_paste, body.user_id, event)
    return {**asdict(outcome), "from_ai": outcome.from_ai}


@router.get("/copy-paste/{attempt_id}/stats")
async def copy_paste_stats(
    attempt_id: str,
    correlator: CopyPasteCorrelator = Depends(get_copy_paste),
):
    return asdict(await run_db(correlator.get_copy_paste_stats, attempt_id))


# ---------------------------------------------------------------------------
# Temporal analysis
# ---------------------------------------------------------------------------
@router.get("/temporal/{user_id}/{attempt_id}")
async def temporal_analysis(
    user_id: str,
    attempt_id: str,
    lookback_minutes: int | None = Query(None, ge=1, le=1440),
    analyzer: TemporalBehaviorAnalyzer = Depends(get_analyzer),
):
    result = await run_db(
        analyzer.analyze_prompt_sequence, user_id, attempt_id, lookback_minutes
    )
    return asdict(result)


@router.post("/temporal/detect")
async def detect_gaming_patterns(
    body: DetectBody,
    analyzer: TemporalBehaviorAnalyzer = Depends(get_analyzer),
):
    prompts = [PromptSample(**p.model_dump()) for p in body.prompts]
    return asdict(analyzer.detect_gaming_patterns(prompts))


@router.get("/behavior-risk/{user_id}")
async def behavior_risk(
    user_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
    analyzer: TemporalBehaviorAnalyzer = Depends(get_analyzer),
):
    end = end or datetime.now(UTC)
    start = start or end - timedelta(minutes=analyzer.settings.lookback_minutes)
    risk = await run_db(analyzer.calculate_behavior_risk, user_id, start, end)
    return {"user_id": user_id, "start": start, "end": end, "risk_score": risk}


# ---------------------------------------------------------------------------
# Rate limits
# ---------------------------------------------------------------------------
@router.get("/limits/{user_id}")
async def remaining_quota(
    user_id: str,
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    return asdict(await run_db(limiter.get_remaining_quota, user_id))


@router.delete("/limits/{user_id}")
async def reset_limits(
    user_id: str,
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    summary = await run_db(limiter.reset_user_limits, user_id)
    logger.info("Admin reset of rate limits for user %s", user_id)
    return {**asdict(summary), "complete": summary.complete}


# ---------------------------------------------------------------------------
# Challenge contexts
# ---------------------------------------------------------------------------
@router.post("/contexts/prewarm")
async def prewarm_contexts(
    body: PrewarmBody,
    cache: ChallengeContextCache = Depends(get_context_cache),
):
    return asdict(await run_db(cache.prewarm_cache, body.challenge_ids))


@router.get("/contexts/stats")
async def context_stats(cache: ChallengeContextCache = Depends(get_context_cache)):
    return asdict(await run_db(cache.get_context_stats))


@router.get("/contexts/{challenge_id}")
async def get_context(
    challenge_id: str,
    cache: ChallengeContextCache = Depends(get_context_cache),
):
    context = await run_db(cache.get_challenge_context, challenge_id)
    return context.to_dict()


@router.post("/contexts/{challenge_id}/refresh")
async def refresh_context(
    challenge_id: str,
    cache: ChallengeContextCache = Depends(get_context_cache),
):
    context = await run_db(cache.refresh_challenge_context, challenge_id)
    return context.to_dict()


@router.delete("/contexts/{challenge_id}")
async def invalidate_context(
    challenge_id: str,
    cache: ChallengeContextCache = Depends(get_context_cache),
):
    removed = await run_db(cache.invalidate, challenge_id)
    return {"challenge_id": challenge_id, "invalidated": removed}
