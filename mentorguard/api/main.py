"""
mentorguard.api.main — FastAPI application entry point
=======================================================

Run with::

    uvicorn mentorguard.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from mentorguard.api.deps import get_engine, get_store  # noqa: E402
from mentorguard.api.routes.governance import router as governance_router  # noqa: E402
from mentorguard.engine.errors import (  # noqa: E402
    ChallengeNotFoundError,
    GovernanceError,
    GovernanceValidationError,
    InfrastructureError,
)

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from ``CORS_ALLOW_ORIGINS`` (comma-separated)."""
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]
    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine and counter store."""
    engine = get_engine()
    store = get_store()
    logger.info(
        "mentorguard API started — engine ready (%s), store reachable: %s",
        engine.url.database, store.ping(),
    )
    yield
    logger.info("mentorguard API shutting down")


app = FastAPI(
    title="mentorguard Governance API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(governance_router, prefix="/api")


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
def _status_for(exc: GovernanceError) -> int:
    if isinstance(exc, ChallengeNotFoundError):
        return 404
    if isinstance(exc, GovernanceValidationError):
        return 422
    if isinstance(exc, InfrastructureError):
        return 503
    return 500


@app.exception_handler(GovernanceError)
async def governance_error_handler(request: Request, exc: GovernanceError):
    code = _status_for(exc)
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content={"detail": exc.to_dict()})


@app.get("/api/health")
def health():
    return {"status": "ok"}
