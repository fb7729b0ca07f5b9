"""
mentorguard.services.history — validation_logs access
======================================================

SQLAlchemy implementation of the temporal analyzer's
:class:`~mentorguard.engine.temporal.OutcomeHistory`, plus the append
used by the governance service.  Database errors surface as
:class:`HistoryStoreError`.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mentorguard.database.engine import get_session
from mentorguard.database.models import ValidationLog
from mentorguard.engine.errors import HistoryStoreError
from mentorguard.engine.temporal import OutcomeHistory, ValidationSample

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def _to_sample(row: ValidationLog) -> ValidationSample:
    return ValidationSample(
        timestamp=as_utc(row.created_at),
        risk_score=float(row.risk_score),
        classification=row.classification,
    )


class ValidationHistory(OutcomeHistory):
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _fetch(self, *criteria) -> list[ValidationSample]:
        try:
            with Session(self._engine) as session:
                rows = session.scalars(
                    select(ValidationLog)
                    .where(*criteria)
                    .order_by(ValidationLog.created_at, ValidationLog.id)
                ).all()
                return [_to_sample(r) for r in rows]
        except SQLAlchemyError as exc:
            raise HistoryStoreError(f"Validation history unavailable: {exc}") from exc

    def fetch_attempt_outcomes(
        self, user_id: str, attempt_id: str, start: datetime, end: datetime
    ) -> list[ValidationSample]:
        return self._fetch(
            ValidationLog.user_id == user_id,
            ValidationLog.attempt_id == attempt_id,
            ValidationLog.created_at >= start,
            ValidationLog.created_at <= end,
        )

    def fetch_user_outcomes(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[ValidationSample]:
        return self._fetch(
            ValidationLog.user_id == user_id,
            ValidationLog.created_at >= start,
            ValidationLog.created_at <= end,
        )

    def append(
        self,
        *,
        user_id: str,
        challenge_id: str,
        attempt_id: str | None,
        prompt_hash: str,
        classification: str,
        risk_score: float,
        confidence: float,
        action: str,
        reasons: list[str],
        metadata: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> int:
        """Insert one outcome row and return its id."""
        try:
            with get_session(self._engine) as session:
                row = ValidationLog(
                    user_id=user_id,
                    challenge_id=challenge_id,
                    attempt_id=attempt_id,
                    prompt_hash=prompt_hash,
                    classification=classification,
                    risk_score=risk_score,
                    confidence=confidence,
                    action=action,
                    reasons=list(reasons),
                    metadata_=metadata,
                    created_at=created_at or datetime.now(UTC),
                )
                session.add(row)
                session.flush()
                return row.id
        except SQLAlchemyError as exc:
            raise HistoryStoreError(f"Could not append validation outcome: {exc}") from exc
