"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import Engine, create_engine

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import Session

from mentorguard.database.models import Base, Challenge, ChallengeTrap
from mentorguard.engine.context_cache import CacheCounters
from mentorguard.engine.store import MemoryCounterStore

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent)."""
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------
class FakeClock:
    """Controllable wall clock (UTC datetimes) for engine components."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 10, 0, 5, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    """Controllable monotonic seconds for MemoryCounterStore expiry."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store_clock() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def store(store_clock: FakeMonotonic) -> MemoryCounterStore:
    return MemoryCounterStore(clock=store_clock)


@pytest.fixture
def counters() -> CacheCounters:
    return CacheCounters()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all mentorguard tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


def make_challenge(
    engine: Engine,
    challenge_id: str = "ch-1",
    *,
    title: str = "Build a REST API with authentication",
    description: str = "Create an express backend that stores users in postgresql.",
    instructions: str = (
        "Implement JWT authentication for the login route. "
        "Learn how to hash passwords safely."
    ),
    difficulty: str = "MEDIUM",
    category: str = "BACKEND",
    languages: list[str] | None = None,
    target_metrics: dict | None = None,
    trap_patterns: list[str] | None = None,
) -> str:
    """Insert a challenge (and optional traps) and return its id."""
    with Session(engine) as session:
        challenge = Challenge(
            id=challenge_id,
            slug=f"slug-{challenge_id}",
            title=title,
            description=description,
            instructions=instructions,
            difficulty=difficulty,
            category=category,
            languages=languages if languages is not None else ["TypeScript", "SQL"],
            target_metrics=target_metrics,
        )
        for i, pattern in enumerate(trap_patterns or ()):
            challenge.traps.append(ChallengeTrap(name=f"trap-{i}", detection_pattern=pattern))
        session.add(challenge)
        session.commit()
    return challenge_id


@pytest.fixture
def add_challenge(db_engine: Engine):
    """Factory fixture: ``add_challenge("ch-2", category="FRONTEND")``."""

    def _add(challenge_id: str, **kwargs) -> str:
        return make_challenge(db_engine, challenge_id, **kwargs)

    return _add


@pytest.fixture
def challenge_id(db_engine: Engine) -> str:
    return make_challenge(
        db_engine,
        target_metrics={"maxDI": 40, "minPR": 0.8, "minCS": 0.7},
        trap_patterns=[r"give\s+me\s+the\s+(full|complete)\s+code"],
    )
