"""
mentorguard.api.deps — FastAPI dependency injection
====================================================

Each governance component is built once per process and shared by every
request.  Tests replace any of them through ``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from sqlalchemy import Engine

from mentorguard.config import GovernanceConfig, load_config
from mentorguard.database.engine import create_db_engine
from mentorguard.engine.context_cache import ChallengeContextCache, default_counters
from mentorguard.engine.copy_paste import CopyPasteCorrelator
from mentorguard.engine.rate_limiter import RateLimiter
from mentorguard.engine.scoring import ForbiddenPatternScorer
from mentorguard.engine.store import CounterStore, create_counter_store
from mentorguard.engine.temporal import TemporalBehaviorAnalyzer
from mentorguard.services.governance_service import GovernanceService
from mentorguard.services.history import ValidationHistory

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> GovernanceConfig:
    path = os.getenv("MENTORGUARD_CONFIG")
    if path is None and not Path("config.yaml").exists():
        logger.warning("No config.yaml found; using built-in governance defaults")
        return GovernanceConfig()
    return load_config(path)


@lru_cache(maxsize=1)
def get_store() -> CounterStore:
    return create_counter_store()


@lru_cache(maxsize=1)
def get_rate_limiter() -> RateLimiter:
    return RateLimiter(get_store(), get_config().rate_limit)


@lru_cache(maxsize=1)
def get_context_cache() -> ChallengeContextCache:
    return ChallengeContextCache(
        get_engine(),
        get_store(),
        counters=default_counters,
        settings=get_config().context_cache,
    )


@lru_cache(maxsize=1)
def get_copy_paste() -> CopyPasteCorrelator:
    return CopyPasteCorrelator(get_engine(), get_store(), get_config().copy_paste)


@lru_cache(maxsize=1)
def get_history() -> ValidationHistory:
    return ValidationHistory(get_engine())


@lru_cache(maxsize=1)
def get_analyzer() -> TemporalBehaviorAnalyzer:
    return TemporalBehaviorAnalyzer(get_history(), get_config().temporal)


@lru_cache(maxsize=1)
def get_governance_service() -> GovernanceService:
    return GovernanceService(
        get_engine(),
        rate_limiter=get_rate_limiter(),
        context_cache=get_context_cache(),
        scorer=ForbiddenPatternScorer(),
        analyzer=get_analyzer(),
        history=get_history(),
        config=get_config(),
    )
