"""Create governance schema

Revision ID: 3f9c2a7e1b44
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9c2a7e1b44"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    """Challenges, attempts, provenance events and governance logs."""
    op.create_table(
        "challenges",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("slug", sa.String(200), nullable=False, unique=True),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("instructions", sa.Text(), nullable=False, server_default=""),
        sa.Column("difficulty", sa.String(20), nullable=False),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column(
            "languages",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("target_metrics", postgresql.JSONB(), nullable=True),
        _created_at(),
        _created_at("updated_at"),
    )

    op.create_table(
        "challenge_traps",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "challenge_id",
            sa.String(64),
            sa.ForeignKey("challenges.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("detection_pattern", sa.Text(), nullable=True),
        sa.Column("explanation", sa.Text(), nullable=True),
    )
    op.create_index("ix_challenge_traps_challenge", "challenge_traps", ["challenge_id"])

    op.create_table(
        "challenge_attempts",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column(
            "challenge_id",
            sa.String(64),
            sa.ForeignKey("challenges.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("final_code", sa.Text(), nullable=True),
        _created_at("started_at"),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_challenge_attempts_user", "challenge_attempts", ["user_id", "challenge_id"]
    )

    op.create_table(
        "ai_interactions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column(
            "attempt_id",
            sa.String(64),
            sa.ForeignKey("challenge_attempts.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("response_text", sa.Text(), nullable=True),
        sa.Column("was_copied", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("copy_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("was_pasted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("paste_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("code_lines_generated", sa.Integer(), nullable=False, server_default="0"),
        _created_at(),
    )
    op.create_index(
        "ix_ai_interactions_attempt", "ai_interactions", ["attempt_id", "was_copied"]
    )

    op.create_table(
        "code_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "attempt_id",
            sa.String(64),
            sa.ForeignKey("challenge_attempts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("session_time", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lines_added", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_lines", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("characters_changed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("was_from_ai", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "ai_interaction_id",
            sa.String(64),
            sa.ForeignKey("ai_interactions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _created_at(),
    )
    op.create_index("ix_code_events_attempt_type", "code_events", ["attempt_id", "type"])

    op.create_table(
        "validation_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("challenge_id", sa.String(64), nullable=False),
        sa.Column("attempt_id", sa.String(64), nullable=True),
        sa.Column("prompt_hash", sa.String(16), nullable=False),
        sa.Column("classification", sa.String(20), nullable=False),
        sa.Column("risk_score", sa.Float(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("action", sa.String(20), nullable=False),
        sa.Column(
            "reasons",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_validation_logs_user_attempt_time",
        "validation_logs",
        ["user_id", "attempt_id", "created_at"],
    )
    op.create_index(
        "ix_validation_logs_challenge_time",
        "validation_logs",
        ["challenge_id", "created_at"],
    )

    op.create_table(
        "governance_audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("challenge_id", sa.String(64), nullable=False),
        sa.Column("attempt_id", sa.String(64), nullable=True),
        sa.Column("action", sa.String(20), nullable=False),
        sa.Column("classification", sa.String(20), nullable=False),
        sa.Column("risk_score", sa.Float(), nullable=False),
        sa.Column("snapshot", postgresql.JSONB(), nullable=True),
        _created_at("timestamp"),
    )
    op.create_index(
        "ix_governance_audit_user_time", "governance_audit_log", ["user_id", "timestamp"]
    )


def downgrade() -> None:
    """Drop every governance table, children first."""
    op.drop_index("ix_governance_audit_user_time", table_name="governance_audit_log")
    op.drop_table("governance_audit_log")
    op.drop_index("ix_validation_logs_challenge_time", table_name="validation_logs")
    op.drop_index("ix_validation_logs_user_attempt_time", table_name="validation_logs")
    op.drop_table("validation_logs")
    op.drop_index("ix_code_events_attempt_type", table_name="code_events")
    op.drop_table("code_events")
    op.drop_index("ix_ai_interactions_attempt", table_name="ai_interactions")
    op.drop_table("ai_interactions")
    op.drop_index("ix_challenge_attempts_user", table_name="challenge_attempts")
    op.drop_table("challenge_attempts")
    op.drop_index("ix_challenge_traps_challenge", table_name="challenge_traps")
    op.drop_table("challenge_traps")
    op.drop_table("challenges")
