"""
mentorguard.engine.context_cache — Cache-aside challenge contexts
==================================================================

A :class:`ChallengeContext` is everything the prompt scorer needs to know
about a challenge: keywords, allowed topics, forbidden regexes, learning
objectives.  It is a pure function of the canonical ``challenges`` row, so
it is cached in the counter store at ``challenge_context:{id}`` for an
hour and rebuilt whenever it is missing.

Two concurrent misses for the same id may both rebuild and write; the
results are identical, so no lock is taken.

The cache is never required for correctness.  A store outage on read
degrades to a database rebuild, and a failed write only costs the next
caller another rebuild.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from mentorguard.config import ContextCacheSettings
from mentorguard.database.models import Challenge
from mentorguard.engine.errors import (
    ChallengeNotFoundError,
    CounterStoreError,
    GovernanceValidationError,
    InfrastructureError,
)
from mentorguard.engine.store import CounterStore, escape_pattern
from mentorguard.engine.vocabulary import ContextVocabulary, DefaultVocabulary, dedupe

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

CACHE_PREFIX = "challenge_context:"
TOP_CATEGORIES = 5

# Accepted spellings for target_metrics JSON keys
_METRIC_ALIASES: dict[str, tuple[str, ...]] = {
    "max_dependency_index": ("max_dependency_index", "maxDI"),
    "min_pass_rate": ("min_pass_rate", "minPR"),
    "min_checklist_score": ("min_checklist_score", "minCS"),
}


# ---------------------------------------------------------------------------
# Context value objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TargetMetrics:
    max_dependency_index: float | None = None
    min_pass_rate: float | None = None
    min_checklist_score: float | None = None

    @classmethod
    def from_raw(cls, raw: dict[str, Any] | None) -> TargetMetrics:
        if not raw:
            return cls()
        values: dict[str, float | None] = {}
        for name, aliases in _METRIC_ALIASES.items():
            for alias in aliases:
                if raw.get(alias) is not None:
                    values[name] = float(raw[alias])
                    break
        return cls(**values)

    def to_dict(self) -> dict[str, float | None]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class ChallengeContext:
    """Derived, read-mostly metadata for one challenge."""

    challenge_id: str
    title: str
    category: str
    difficulty: str
    keywords: tuple[str, ...] = ()
    allowed_topics: tuple[str, ...] = ()
    forbidden_patterns: tuple[str, ...] = ()
    target_metrics: TargetMetrics = field(default_factory=TargetMetrics)
    learning_objectives: tuple[str, ...] = ()
    tech_stack: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "challenge_id": self.challenge_id,
            "title": self.title,
            "category": self.category,
            "difficulty": self.difficulty,
            "keywords": list(self.keywords),
            "allowed_topics": list(self.allowed_topics),
            "forbidden_patterns": list(self.forbidden_patterns),
            "target_metrics": self.target_metrics.to_dict(),
            "learning_objectives": list(self.learning_objectives),
            "tech_stack": list(self.tech_stack),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChallengeContext:
        """Inverse of :meth:`to_dict`.  Raises KeyError/TypeError on bad data."""
        return cls(
            challenge_id=str(data["challenge_id"]),
            title=str(data["title"]),
            category=str(data["category"]),
            difficulty=str(data["difficulty"]),
            keywords=tuple(data["keywords"]),
            allowed_topics=tuple(data["allowed_topics"]),
            forbidden_patterns=tuple(data["forbidden_patterns"]),
            target_metrics=TargetMetrics.from_raw(data.get("target_metrics")),
            learning_objectives=tuple(data.get("learning_objectives", ())),
            tech_stack=tuple(data.get("tech_stack", ())),
        )


@dataclass(frozen=True, slots=True)
class PrewarmReport:
    total: int
    succeeded: tuple[str, ...] = ()
    failed: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ContextStats:
    cached_contexts: int
    avg_keywords: float
    avg_forbidden_patterns: float
    most_common_categories: tuple[tuple[str, int], ...]
    cache_hit_rate: float


# ---------------------------------------------------------------------------
# Hit/miss accounting
# ---------------------------------------------------------------------------
class CacheCounters:
    """Hit/miss tally for one cache instance or one process.

    Starts at zero on construction; :meth:`reset` zeroes it again.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def record_hit(self) -> None:
        with self._lock:
            self.hits += 1

    def record_miss(self) -> None:
        with self._lock:
            self.misses += 1

    def reset(self) -> None:
        with self._lock:
            self.hits = 0
            self.misses = 0

    def hit_rate(self) -> float:
        with self._lock:
            lookups = self.hits + self.misses
            return round(self.hits / lookups, 2) if lookups else 0.0


# Process-wide counters for production wiring
default_counters = CacheCounters()


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------
class ChallengeContextCache:
    """Cache-aside lookup of :class:`ChallengeContext` by challenge id.

    Usage::

        cache = ChallengeContextCache(engine, store)
        ctx = cache.get_challenge_context("c-123")
        report = cache.prewarm_cache(["c-1", "c-2"])
    """

    def __init__(
        self,
        engine: Engine,
        store: CounterStore,
        *,
        vocabulary: ContextVocabulary | None = None,
        counters: CacheCounters | None = None,
        settings: ContextCacheSettings | None = None,
    ) -> None:
        self._engine = engine
        self.store = store
        self.vocabulary = vocabulary or DefaultVocabulary()
        self.counters = counters if counters is not None else default_counters
        self.settings = settings or ContextCacheSettings()

    @staticmethod
    def cache_key(challenge_id: str) -> str:
        return f"{CACHE_PREFIX}{challenge_id}"

    # -------------------------------------------------------------------
    # Derivation
    # -------------------------------------------------------------------
    def build_context(self, challenge: Challenge) -> ChallengeContext:
        """Derive a context from a canonical record.  No I/O."""
        vocab = self.vocabulary
        tech_stack = tuple(challenge.languages or ())
        text = f"{challenge.title} {challenge.description} {challenge.instructions}"

        keywords = vocab.extract_keywords(text)
        keywords.extend(lang.lower() for lang in tech_stack)

        trap_patterns = [t.detection_pattern for t in challenge.traps if t.detection_pattern]

        return ChallengeContext(
            challenge_id=challenge.id,
            title=challenge.title,
            category=str(challenge.category),
            difficulty=str(challenge.difficulty),
            keywords=tuple(dedupe(keywords)),
            allowed_topics=tuple(
                vocab.allowed_topics(challenge.category, challenge.difficulty)
            ),
            forbidden_patterns=tuple(
                vocab.forbidden_patterns(challenge.category, trap_patterns)
            ),
            target_metrics=TargetMetrics.from_raw(challenge.target_metrics),
            learning_objectives=tuple(
                vocab.learning_objectives(challenge.instructions or "")
            ),
            tech_stack=tech_stack,
        )

    def _load_and_build(self, challenge_id: str) -> ChallengeContext:
        try:
            with Session(self._engine) as session:
                challenge = session.scalar(
                    select(Challenge)
                    .options(selectinload(Challenge.traps))
                    .where(Challenge.id == challenge_id)
                )
                if challenge is None:
                    raise ChallengeNotFoundError(challenge_id)
                return self.build_context(challenge)
        except SQLAlchemyError as exc:
            raise InfrastructureError(
                f"Challenge store unavailable while loading {challenge_id}: {exc}"
            ) from exc

    def _write(self, context: ChallengeContext) -> None:
        try:
            self.store.set(
                self.cache_key(context.challenge_id),
                json.dumps(context.to_dict()),
                self.settings.ttl_seconds,
            )
        except CounterStoreError as exc:
            logger.warning(
                "Could not cache context for challenge %s: %s",
                context.challenge_id, exc,
            )

    @staticmethod
    def _validate_id(challenge_id: str) -> None:
        if not isinstance(challenge_id, str) or not challenge_id.strip():
            raise GovernanceValidationError("challenge_id must be a non-empty string")

    # -------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------
    def get_challenge_context(self, challenge_id: str) -> ChallengeContext:
        """Return the cached context, rebuilding it on a miss.

        Raises
        ------
        ChallengeNotFoundError
            If no canonical record exists for *challenge_id*.
        """
        self._validate_id(challenge_id)
        key = self.cache_key(challenge_id)

        try:
            cached = self.store.get(key)
        except CounterStoreError as exc:
            logger.warning("Context cache read failed for %s, rebuilding: %s", key, exc)
            cached = None

        if cached is not None:
            try:
                context = ChallengeContext.from_dict(json.loads(cached))
            except (ValueError, KeyError, TypeError):
                logger.warning("Discarding unreadable cached context at %s", key)
            else:
                self.counters.record_hit()
                logger.debug("Context cache hit for challenge %s", challenge_id)
                return context

        self.counters.record_miss()
        context = self._load_and_build(challenge_id)
        self._write(context)
        logger.info(
            "Built context for challenge %s: %d keywords, %d topics, %d forbidden patterns",
            challenge_id,
            len(context.keywords),
            len(context.allowed_topics),
            len(context.forbidden_patterns),
        )
        return context

    def invalidate(self, challenge_id: str) -> bool:
        """Drop the cached context.  Returns True if one was present."""
        self._validate_id(challenge_id)
        removed = self.store.delete(self.cache_key(challenge_id)) == 1
        logger.info("Context cache invalidated for challenge %s (present=%s)", challenge_id, removed)
        return removed

    def refresh_challenge_context(self, challenge_id: str) -> ChallengeContext:
        """Evict and rebuild from the canonical record.

        The rebuild does not count as a miss.  Store errors on eviction
        propagate, since freshness cannot be guaranteed without it.
        """
        self._validate_id(challenge_id)
        self.store.delete(self.cache_key(challenge_id))
        context = self._load_and_build(challenge_id)
        self._write(context)
        logger.info("Challenge context refreshed: %s", challenge_id)
        return context

    def prewarm_cache(self, challenge_ids: list[str]) -> PrewarmReport:
        """Load each id in turn.  Per-id failures are reported, not raised."""
        logger.info("Starting context cache prewarm for %d challenges", len(challenge_ids))
        succeeded: list[str] = []
        failed: dict[str, str] = {}

        for challenge_id in challenge_ids:
            try:
                self.get_challenge_context(challenge_id)
            except Exception as exc:
                logger.warning("Failed to prewarm context for challenge %s: %s", challenge_id, exc)
                failed[str(challenge_id)] = str(exc)
            else:
                succeeded.append(challenge_id)

        logger.info(
            "Context cache prewarm completed: %d ok, %d failed",
            len(succeeded), len(failed),
        )
        return PrewarmReport(
            total=len(challenge_ids),
            succeeded=tuple(succeeded),
            failed=failed,
        )

    def get_context_stats(self) -> ContextStats:
        """Summarize up to ``stats_sample_size`` cached contexts.

        Averages are taken over the entries that could be read.  Scan
        errors propagate.
        """
        keys = self.store.scan(escape_pattern(CACHE_PREFIX) + "*")

        readable = 0
        total_keywords = 0
        total_patterns = 0
        categories: Counter[str] = Counter()

        for key in keys[: self.settings.stats_sample_size]:
            try:
                raw = self.store.get(key)
                if raw is None:
                    continue
                context = ChallengeContext.from_dict(json.loads(raw))
            except (CounterStoreError, ValueError, KeyError, TypeError) as exc:
                logger.debug("Skipping unreadable cached context %s: %s", key, exc)
                continue
            readable += 1
            total_keywords += len(context.keywords)
            total_patterns += len(context.forbidden_patterns)
            categories[context.category] += 1

        return ContextStats(
            cached_contexts=len(keys),
            avg_keywords=total_keywords / readable if readable else 0.0,
            avg_forbidden_patterns=total_patterns / readable if readable else 0.0,
            most_common_categories=tuple(categories.most_common(TOP_CATEGORIES)),
            cache_hit_rate=self.counters.hit_rate(),
        )
