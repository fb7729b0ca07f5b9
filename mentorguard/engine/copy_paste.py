"""
mentorguard.engine.copy_paste — Copy/paste provenance correlation
==================================================================

The editor reports two kinds of clipboard event per attempt:

* **copy** — the user copied text, optionally out of an AI response.
  Recorded in the counter store for a minute at
  ``copypaste:{user}:{attempt}:copy:{ts_ms}``.
* **paste** — the user pasted text into their solution.  Recent copies
  for the same attempt are compared by normalized edit distance; the
  first one within 30 s at or above 0.85 similarity is the source.

Every paste on a known attempt becomes a durable ``code_events`` row
(``PASTED``); it is attributed to AI (``was_from_ai=True``) only when the
matched copy names an interaction that exists.  The dependency index and
copy/paste stats are computed from these rows.  Unknown attempts and
interactions are logged and skipped.

With ``claim_matches`` enabled a matched copy record is deleted as it is
accepted, so two racing pastes cannot both claim the same copy.
"""

from __future__ import annotations

import enum
import json
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from rapidfuzz.distance import Levenshtein
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mentorguard.config import CopyPasteSettings
from mentorguard.database.engine import get_session
from mentorguard.database.models import (
    AIInteraction,
    ChallengeAttempt,
    CodeEvent,
    CodeEventType,
)
from mentorguard.engine.errors import GovernanceValidationError, InfrastructureError
from mentorguard.engine.store import CounterStore, escape_pattern

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

KEY_PREFIX = "copypaste"
HIGH_DEPENDENCY_INDEX = 80.0
HIGH_AI_PASTE_RATE = 0.8


# ---------------------------------------------------------------------------
# Text similarity
# ---------------------------------------------------------------------------
def levenshtein(a: str, b: str, max_distance: int | None = None) -> int:
    """Edit distance (insert/delete/substitute, unit cost).

    With *max_distance*, any distance above it is reported as
    ``max_distance + 1`` and the computation stops early.
    """
    return Levenshtein.distance(a, b, score_cutoff=max_distance)


def similarity(a: str, b: str, threshold: float = 0.0) -> float:
    """``(max_len - distance) / max_len``; two empty strings are identical.

    A non-zero *threshold* bounds the edit distance that is computed.
    Scores at or above it are exact; scores below it are only known to be
    below it.
    """
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    max_distance = None
    if threshold > 0:
        max_distance = math.floor(round((1 - threshold) * longest, 9))
    return (longest - levenshtein(a, b, max_distance)) / longest


def count_lines(text: str) -> int:
    return len(text.split("\n"))


# ---------------------------------------------------------------------------
# Events and outcomes
# ---------------------------------------------------------------------------
class CopyAction(enum.StrEnum):
    COPY = "copy"
    PASTE = "paste"


@dataclass(frozen=True, slots=True)
class CopyPasteEvent:
    attempt_id: str
    action: CopyAction | str
    content: str
    line_count: int | None = None
    source_interaction_id: str | None = None


@dataclass(frozen=True, slots=True)
class PasteMatch:
    copy_key: str
    source_interaction_id: str | None
    similarity: float
    time_delta_seconds: float


@dataclass(frozen=True, slots=True)
class CopyPasteOutcome:
    action: CopyAction
    line_count: int
    copy_key: str | None = None
    match: PasteMatch | None = None
    dependency_index: float | None = None
    event_recorded: bool = False

    @property
    def from_ai(self) -> bool:
        return self.match is not None and self.match.source_interaction_id is not None


@dataclass(frozen=True, slots=True)
class CopyPasteStats:
    attempt_id: str
    total_pastes: int
    ai_pastes: int
    ai_paste_rate: float


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CopyPasteCorrelator:
    """Attribute pasted code to earlier copies of AI output.

    Usage::

        correlator = CopyPasteCorrelator(engine, store)
        correlator.track_copy_paste("u1", CopyPasteEvent("a1", "copy", code, source_interaction_id="i1"))
        outcome = correlator.track_copy_paste("u1", CopyPasteEvent("a1", "paste", code))
        outcome.from_ai   # True
    """

    def __init__(
        self,
        engine: Engine,
        store: CounterStore,
        settings: CopyPasteSettings | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._engine = engine
        self.store = store
        self.settings = settings or CopyPasteSettings()
        self._clock = clock

    @staticmethod
    def copy_prefix(user_id: str, attempt_id: str) -> str:
        return f"{KEY_PREFIX}:{user_id}:{attempt_id}:copy:"

    # -------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------
    @staticmethod
    def _validate(user_id: str, event: CopyPasteEvent) -> CopyAction:
        if not isinstance(user_id, str) or not user_id.strip():
            raise GovernanceValidationError("user_id must be a non-empty string")
        if not isinstance(event.attempt_id, str) or not event.attempt_id.strip():
            raise GovernanceValidationError("attempt_id must be a non-empty string")
        try:
            action = CopyAction(event.action)
        except ValueError:
            raise GovernanceValidationError(
                f"Unknown copy/paste action: {event.action!r}"
            ) from None
        if not isinstance(event.content, str):
            raise GovernanceValidationError("content must be a string")
        if event.line_count is not None and (
            isinstance(event.line_count, bool)
            or not isinstance(event.line_count, int)
            or event.line_count < 0
        ):
            raise GovernanceValidationError("line_count must be an int >= 0")
        return action

    # -------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------
    def track_copy_paste(self, user_id: str, event: CopyPasteEvent) -> CopyPasteOutcome:
        """Record a copy, or correlate a paste with recent copies.

        Store and database errors propagate.  The dependency-index update
        that follows never fails the call.
        """
        action = self._validate(user_id, event)
        line_count = (
            event.line_count if event.line_count is not None else count_lines(event.content)
        )
        now = self._clock()

        logger.info(
            "Tracking %s for user %s attempt %s (%d chars, %d lines)",
            action, user_id, event.attempt_id, len(event.content), line_count,
        )

        if action is CopyAction.COPY:
            outcome = self._handle_copy(user_id, event, line_count, now)
        else:
            outcome = self._handle_paste(user_id, event, line_count, now)

        dependency_index = self._update_dependency_index(user_id, event.attempt_id)
        return CopyPasteOutcome(
            action=outcome.action,
            line_count=outcome.line_count,
            copy_key=outcome.copy_key,
            match=outcome.match,
            dependency_index=dependency_index,
            event_recorded=outcome.event_recorded,
        )

    def _handle_copy(
        self, user_id: str, event: CopyPasteEvent, line_count: int, now: datetime
    ) -> CopyPasteOutcome:
        ts_ms = int(now.timestamp() * 1000)
        key = f"{self.copy_prefix(user_id, event.attempt_id)}{ts_ms}"
        record = {
            "content": event.content,
            "line_count": line_count,
            "timestamp_ms": ts_ms,
            "source_interaction_id": event.source_interaction_id,
        }
        self.store.set(key, json.dumps(record), self.settings.copy_ttl_seconds)

        if event.source_interaction_id:
            self._update_interaction(
                event.source_interaction_id,
                was_copied=True,
                copy_timestamp=now,
            )
            logger.info(
                "AI content copied by user %s (interaction %s, %d lines)",
                user_id, event.source_interaction_id, line_count,
            )

        return CopyPasteOutcome(action=CopyAction.COPY, line_count=line_count, copy_key=key)

    def _handle_paste(
        self, user_id: str, event: CopyPasteEvent, line_count: int, now: datetime
    ) -> CopyPasteOutcome:
        match = self._find_match(user_id, event.attempt_id, event.content, now)

        confirmed_interaction: str | None = None
        if match is not None and match.source_interaction_id:
            if self._update_interaction(
                match.source_interaction_id,
                was_pasted=True,
                paste_timestamp=now,
                code_lines_generated=line_count,
            ):
                confirmed_interaction = match.source_interaction_id
            logger.info(
                "AI paste matched for user %s attempt %s: interaction %s, "
                "similarity %.4f after %.1fs",
                user_id, event.attempt_id, match.source_interaction_id,
                match.similarity, match.time_delta_seconds,
            )
            if match.time_delta_seconds < self.settings.quick_paste_seconds:
                logger.warning(
                    "Very quick AI copy-paste by user %s attempt %s (%.1fs)",
                    user_id, event.attempt_id, match.time_delta_seconds,
                )

        recorded = self._record_paste_event(
            user_id, event, line_count, now, confirmed_interaction
        )

        if line_count > self.settings.large_paste_lines:
            logger.warning(
                "Large code paste by user %s attempt %s: %d lines (from AI: %s)",
                user_id, event.attempt_id, line_count,
                match is not None and match.source_interaction_id is not None,
            )

        return CopyPasteOutcome(
            action=CopyAction.PASTE,
            line_count=line_count,
            match=match,
            event_recorded=recorded,
        )

    def _find_match(
        self, user_id: str, attempt_id: str, content: str, now: datetime
    ) -> PasteMatch | None:
        """First copy record in the window at or above the threshold."""
        threshold = self.settings.similarity_threshold
        window = self.settings.match_window_seconds
        now_ms = int(now.timestamp() * 1000)

        keys = self.store.scan(escape_pattern(self.copy_prefix(user_id, attempt_id)) + "*")
        logger.debug("Evaluating %d copy records for attempt %s", len(keys), attempt_id)

        for key in keys:
            raw = self.store.get(key)
            if raw is None:
                continue
            try:
                record = json.loads(raw)
                copied = record["content"]
                delta = max(0, now_ms - int(record["timestamp_ms"])) / 1000
            except (ValueError, KeyError, TypeError):
                logger.warning("Skipping malformed copy record %s", key)
                continue

            if delta > window:
                continue

            # Edit distance is at least the length difference
            longest = max(len(copied), len(content))
            if longest and min(len(copied), len(content)) / longest < threshold:
                continue

            score = similarity(copied, content, threshold)
            logger.debug("Copy record %s: similarity=%.4f delta=%.1fs", key, score, delta)
            if score < threshold:
                continue

            if self.settings.claim_matches and self.store.delete(key) != 1:
                logger.debug("Copy record %s already claimed", key)
                continue

            return PasteMatch(
                copy_key=key,
                source_interaction_id=record.get("source_interaction_id"),
                similarity=score,
                time_delta_seconds=delta,
            )
        return None

    # -------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------
    def _update_interaction(self, interaction_id: str, **values) -> bool:
        """Apply *values* to the interaction; ``False`` if it does not exist."""
        try:
            with get_session(self._engine) as session:
                interaction = session.get(AIInteraction, interaction_id)
                if interaction is None:
                    logger.warning("Unknown AI interaction %s; provenance not updated", interaction_id)
                    return False
                for name, value in values.items():
                    setattr(interaction, name, value)
        except SQLAlchemyError as exc:
            raise InfrastructureError(
                f"Could not update AI interaction {interaction_id}: {exc}"
            ) from exc
        return True

    def _record_paste_event(
        self,
        user_id: str,
        event: CopyPasteEvent,
        line_count: int,
        now: datetime,
        interaction_id: str | None,
    ) -> bool:
        """Write the ``PASTED`` row; ``False`` if the attempt does not exist."""
        try:
            with get_session(self._engine) as session:
                if session.get(ChallengeAttempt, event.attempt_id) is None:
                    logger.warning(
                        "Unknown attempt %s for user %s; paste event not recorded",
                        event.attempt_id, user_id,
                    )
                    return False
                session.add(CodeEvent(
                    attempt_id=event.attempt_id,
                    user_id=user_id,
                    type=CodeEventType.PASTED,
                    session_time=int(now.timestamp()),
                    lines_added=line_count,
                    total_lines=0,
                    characters_changed=len(event.content),
                    was_from_ai=interaction_id is not None,
                    ai_interaction_id=interaction_id,
                ))
        except SQLAlchemyError as exc:
            raise InfrastructureError(f"Could not record paste event: {exc}") from exc
        return True

    def _update_dependency_index(self, user_id: str, attempt_id: str) -> float | None:
        """Percent of the attempt's final code attributable to copied AI output."""
        try:
            with Session(self._engine) as session:
                ai_lines = session.scalar(
                    select(func.coalesce(func.sum(AIInteraction.code_lines_generated), 0))
                    .where(
                        AIInteraction.attempt_id == attempt_id,
                        AIInteraction.was_copied.is_(True),
                    )
                )
                final_code = session.scalar(
                    select(ChallengeAttempt.final_code).where(ChallengeAttempt.id == attempt_id)
                )
        except Exception:
            logger.exception("Dependency index update failed for attempt %s", attempt_id)
            return None

        if not final_code:
            logger.debug("No final code for attempt %s; dependency index skipped", attempt_id)
            return None

        index = round(int(ai_lines or 0) / count_lines(final_code) * 100, 2)
        logger.info(
            "Dependency index for user %s attempt %s: %.2f (%d AI lines)",
            user_id, attempt_id, index, ai_lines,
        )
        if index > HIGH_DEPENDENCY_INDEX:
            logger.warning(
                "High AI dependency for user %s attempt %s: %.2f", user_id, attempt_id, index
            )
        return index

    def get_copy_paste_stats(self, attempt_id: str) -> CopyPasteStats:
        if not isinstance(attempt_id, str) or not attempt_id.strip():
            raise GovernanceValidationError("attempt_id must be a non-empty string")
        try:
            with Session(self._engine) as session:
                total, ai = session.execute(
                    select(
                        func.count(CodeEvent.id),
                        func.count(CodeEvent.id).filter(CodeEvent.was_from_ai.is_(True)),
                    ).where(
                        CodeEvent.attempt_id == attempt_id,
                        CodeEvent.type == CodeEventType.PASTED,
                    )
                ).one()
        except SQLAlchemyError as exc:
            raise InfrastructureError(f"Could not read code events: {exc}") from exc

        rate = round(ai / total, 2) if total else 0.0
        if rate > HIGH_AI_PASTE_RATE:
            logger.warning(
                "High AI paste rate for attempt %s: %.2f of %d pastes", attempt_id, rate, total
            )
        return CopyPasteStats(
            attempt_id=attempt_id,
            total_pastes=total,
            ai_pastes=ai,
            ai_paste_rate=rate,
        )
