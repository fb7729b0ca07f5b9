"""
mentorguard.database.models — SQLAlchemy 2.0 Data Models
=========================================================

Tables:
- challenges           — Canonical challenge records (source of cached contexts)
- challenge_traps      — Per-challenge trap detection patterns
- challenge_attempts   — A user's attempt at a challenge (holds final code)
- ai_interactions      — AI assistant responses and their copy/paste provenance
- code_events          — Editor events; PASTED rows carry AI provenance
- validation_logs      — Append-only governance outcomes (temporal history)
- governance_audit_log — Append-only decision snapshots
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all mentorguard ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class Classification(enum.StrEnum):
    """Severity of a governance outcome, least to most severe."""
    SAFE = "SAFE"
    WARNING = "WARNING"
    BLOCKED = "BLOCKED"


class SuggestedAction(enum.StrEnum):
    ALLOW = "ALLOW"
    THROTTLE = "THROTTLE"
    BLOCK = "BLOCK"
    REVIEW = "REVIEW"


class Difficulty(enum.StrEnum):
    EASY = "EASY"
    MEDIUM = "MEDIUM"
    HARD = "HARD"
    EXPERT = "EXPERT"


class ChallengeCategory(enum.StrEnum):
    BACKEND = "BACKEND"
    FRONTEND = "FRONTEND"
    FULLSTACK = "FULLSTACK"
    DEVOPS = "DEVOPS"
    MOBILE = "MOBILE"
    DATA = "DATA"


class CodeEventType(enum.StrEnum):
    """Editor event kinds recorded in code_events."""
    TYPED = "TYPED"
    PASTED = "PASTED"
    DELETED = "DELETED"
    RUN = "RUN"
    SUBMITTED = "SUBMITTED"


CLASSIFICATION_SEVERITY: dict[Classification, int] = {
    Classification.SAFE: 0,
    Classification.WARNING: 1,
    Classification.BLOCKED: 2,
}


# ---------------------------------------------------------------------------
# Challenges — canonical content records
# ---------------------------------------------------------------------------
class Challenge(Base):
    __tablename__ = "challenges"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    slug: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    instructions: Mapped[str] = mapped_column(Text, nullable=False, default="")
    difficulty: Mapped[str] = mapped_column(
        String(20), nullable=False, default=Difficulty.MEDIUM
    )
    category: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ChallengeCategory.BACKEND
    )
    languages: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    # {"maxDI": 40, "minPR": 0.8, "minCS": 0.7}
    target_metrics: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    traps: Mapped[list[ChallengeTrap]] = relationship(
        back_populates="challenge",
        cascade="all, delete-orphan",
        order_by="ChallengeTrap.id",
    )

    def __repr__(self) -> str:
        return f"<Challenge id={self.id} slug={self.slug!r} {self.category}/{self.difficulty}>"


class ChallengeTrap(Base):
    __tablename__ = "challenge_traps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    challenge_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    # Regex source matched against prompts
    detection_pattern: Mapped[str | None] = mapped_column(Text, nullable=True)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)

    challenge: Mapped[Challenge] = relationship(back_populates="traps")

    __table_args__ = (
        Index("ix_challenge_traps_challenge", "challenge_id"),
    )


# ---------------------------------------------------------------------------
# Attempts & AI interactions
# ---------------------------------------------------------------------------
class ChallengeAttempt(Base):
    __tablename__ = "challenge_attempts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    challenge_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    final_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    submitted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_challenge_attempts_user", "user_id", "challenge_id"),
    )

    def __repr__(self) -> str:
        return f"<ChallengeAttempt id={self.id} user={self.user_id}>"


class AIInteraction(Base):
    __tablename__ = "ai_interactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    attempt_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("challenge_attempts.id", ondelete="CASCADE"),
        nullable=True,
    )
    response_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    was_copied: Mapped[bool] = mapped_column(Boolean, default=False)
    copy_timestamp: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    was_pasted: Mapped[bool] = mapped_column(Boolean, default=False)
    paste_timestamp: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    code_lines_generated: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_ai_interactions_attempt", "attempt_id", "was_copied"),
    )

    def __repr__(self) -> str:
        return f"<AIInteraction id={self.id} copied={self.was_copied}>"


class CodeEvent(Base):
    __tablename__ = "code_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    attempt_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("challenge_attempts.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    session_time: Mapped[int] = mapped_column(Integer, default=0)
    lines_added: Mapped[int] = mapped_column(Integer, default=0)
    total_lines: Mapped[int] = mapped_column(Integer, default=0)
    characters_changed: Mapped[int] = mapped_column(Integer, default=0)
    was_from_ai: Mapped[bool] = mapped_column(Boolean, default=False)
    ai_interaction_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("ai_interactions.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_code_events_attempt_type", "attempt_id", "type"),
    )

    def __repr__(self) -> str:
        return f"<CodeEvent id={self.id} attempt={self.attempt_id} type={self.type}>"


# ---------------------------------------------------------------------------
# Governance logs — append-only
# ---------------------------------------------------------------------------
class ValidationLog(Base):
    __tablename__ = "validation_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    challenge_id: Mapped[str] = mapped_column(String(64), nullable=False)
    attempt_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # First 16 hex chars of SHA-256; the prompt itself is never stored
    prompt_hash: Mapped[str] = mapped_column(String(16), nullable=False)
    classification: Mapped[str] = mapped_column(String(20), nullable=False)
    risk_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    reasons: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_validation_logs_user_attempt_time", "user_id", "attempt_id", "created_at"),
        Index("ix_validation_logs_challenge_time", "challenge_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ValidationLog id={self.id} user={self.user_id} "
            f"{self.classification} risk={self.risk_score:.0f}>"
        )


class GovernanceAuditLog(Base):
    __tablename__ = "governance_audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    challenge_id: Mapped[str] = mapped_column(String(64), nullable=False)
    attempt_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    classification: Mapped[str] = mapped_column(String(20), nullable=False)
    risk_score: Mapped[float] = mapped_column(Float, nullable=False)
    snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_governance_audit_user_time", "user_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<GovernanceAuditLog id={self.id} user={self.user_id} action={self.action}>"
