"""
mentorguard.database.engine — Governance Store Connection
===========================================================

Validation logs, audit rows, challenges and copy/paste provenance all live
in PostgreSQL behind ``DATABASE_URL``.  The governance engine components are
plain synchronous code (SQLAlchemy sessions plus blocking Redis calls), and
the HTTP layer is async.  Route handlers therefore hand each component call
to :func:`run_db`, which runs it on the default thread pool.

Usage::

    from mentorguard.database.engine import create_db_engine, init_db, run_db

    engine = create_db_engine()
    init_db(engine)

    decision = await run_db(service.evaluate_prompt, request)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session

from mentorguard.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Engine for the governance database (*url*, else ``DATABASE_URL``).

    Every prompt evaluation writes one validation row and may write an
    audit row, so the pool holds a few warm connections and lets bursts
    overflow.  A request waiting more than 10 s for a connection fails
    instead of queueing behind the rate limiter's own deadline.

    Raises ``RuntimeError`` when neither a URL nor ``DATABASE_URL`` is set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and point it at the governance database."
        )

    engine = create_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_timeout=10,
        pool_recycle=3600,
    )
    logger.info("Governance database engine created → %s", engine.url.host)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create any missing governance tables.

    Deployed databases are migrated with ``alembic upgrade head``; this is
    for local runs against a fresh database.
    """
    Base.metadata.create_all(engine)
    logger.info("Governance tables verified / created.")


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Unit of work for one governance write: commit on exit, roll back on error.

    ::

        with get_session(engine) as session:
            session.add(ValidationLog(...))
    """
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Await a blocking governance call from an async route.

    ::

        decision = await run_db(limiter.check_limit, user_id, 350)
    """
    return await asyncio.to_thread(func, *args, **kwargs)
