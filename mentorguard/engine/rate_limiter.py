"""
mentorguard.engine.rate_limiter — Per-User Quotas & Burst Window
=================================================================

Three fixed windows per user, plus a short rolling burst window:

* requests per minute   — ``ratelimit:{user}:minute:{epoch // 60}``
* requests per hour     — ``ratelimit:{user}:hour:{epoch // 3600}``
* tokens per UTC day    — ``ratelimit:{user}:tokens:{epoch // 86400}``
* burst timestamps      — ``ratelimit:{user}:burst``

The three window counters are incremented in one atomic store batch, so
concurrent requests from the same user are each counted exactly once.

If that batch fails the request is **denied** (fail-closed).  An
unreachable store must never turn into unlimited AI usage.
"""

from __future__ import annotations

import enum
import logging
import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from mentorguard.config import RateLimitSettings
from mentorguard.engine.errors import CounterStoreError, GovernanceValidationError
from mentorguard.engine.store import CounterStore, Increment, escape_pattern

logger = logging.getLogger(__name__)

KEY_PREFIX = "ratelimit"

MINUTE_SECONDS = 60
HOUR_SECONDS = 3600
DAY_SECONDS = 86400

# Key suffixes owned by one user; anything else under the prefix belongs to
# a user id that itself contains ":".
_OWNED_SUFFIX = re.compile(r"(?:minute|hour|tokens):\d+|burst")


class DenialCode(enum.StrEnum):
    """Why a request was denied."""
    MINUTE_LIMIT = "minute_limit"
    HOUR_LIMIT = "hour_limit"
    DAILY_TOKEN_LIMIT = "daily_token_limit"
    BURST_LIMIT = "burst_limit"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    """Outcome of :meth:`RateLimiter.check_limit`.

    ``reason``, ``code`` and ``retry_after`` are set only on denials.
    """

    allowed: bool
    remaining: int
    reset_at: datetime
    reason: str | None = None
    code: DenialCode | None = None
    retry_after: int | None = None


@dataclass(frozen=True, slots=True)
class WindowQuota:
    limit: int
    used: int
    remaining: int
    reset_at: datetime


@dataclass(frozen=True, slots=True)
class QuotaSnapshot:
    """Read-only view of a user's remaining capacity in every window."""

    requests_per_minute: WindowQuota
    requests_per_hour: WindowQuota
    tokens_per_day: WindowQuota


@dataclass(frozen=True, slots=True)
class ResetSummary:
    """Result of an admin limit reset.  Partial completion is reported."""

    user_id: str
    keys_found: int
    keys_deleted: int
    failed_keys: tuple[str, ...] = ()

    @property
    def complete(self) -> bool:
        return not self.failed_keys


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _boundary(bucket: int, size: int) -> datetime:
    return datetime.fromtimestamp(bucket * size, UTC)


class RateLimiter:
    """Fixed-window quotas keyed by user ID, backed by a :class:`CounterStore`.

    Usage::

        limiter = RateLimiter(store, settings)
        decision = limiter.check_limit("user-1", tokens_requested=350)
        if not decision.allowed:
            return 429, decision.reason, decision.retry_after
    """

    def __init__(
        self,
        store: CounterStore,
        settings: RateLimitSettings | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.settings = settings or RateLimitSettings()
        self._clock = clock

    # -------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------
    @staticmethod
    def user_prefix(user_id: str) -> str:
        return f"{KEY_PREFIX}:{user_id}:"

    def _keys(self, user_id: str, now: datetime) -> dict[str, str]:
        epoch = now.timestamp()
        prefix = self.user_prefix(user_id)
        return {
            "minute": f"{prefix}minute:{int(epoch // MINUTE_SECONDS)}",
            "hour": f"{prefix}hour:{int(epoch // HOUR_SECONDS)}",
            "tokens": f"{prefix}tokens:{int(epoch // DAY_SECONDS)}",
            "burst": f"{prefix}burst",
        }

    @staticmethod
    def _resets(now: datetime) -> tuple[datetime, datetime, datetime]:
        epoch = now.timestamp()
        return (
            _boundary(int(epoch // MINUTE_SECONDS) + 1, MINUTE_SECONDS),
            _boundary(int(epoch // HOUR_SECONDS) + 1, HOUR_SECONDS),
            _boundary(int(epoch // DAY_SECONDS) + 1, DAY_SECONDS),
        )

    @staticmethod
    def _validate_user(user_id: str) -> None:
        if not isinstance(user_id, str) or not user_id.strip():
            raise GovernanceValidationError("user_id must be a non-empty string")

    # -------------------------------------------------------------------
    # Mutating check
    # -------------------------------------------------------------------
    def _deny(
        self,
        user_id: str,
        now: datetime,
        reset_at: datetime,
        code: DenialCode,
        reason: str,
    ) -> RateLimitDecision:
        retry_after = max(1, math.ceil((reset_at - now).total_seconds()))
        logger.warning(
            "Rate limit denied for user %s: %s (retry in %ds)",
            user_id, code, retry_after,
        )
        return RateLimitDecision(
            allowed=False,
            remaining=0,
            reset_at=reset_at,
            reason=reason,
            code=code,
            retry_after=retry_after,
        )

    def _deny_store_unavailable(self, user_id: str, now: datetime) -> RateLimitDecision:
        retry = self.settings.store_failure_retry_seconds
        return self._deny(
            user_id,
            now,
            now + timedelta(seconds=retry),
            DenialCode.STORE_UNAVAILABLE,
            "Rate limiting is temporarily unavailable. "
            f"Please retry in {retry} seconds.",
        )

    def check_limit(self, user_id: str, tokens_requested: int = 0) -> RateLimitDecision:
        """Count one request (and *tokens_requested* tokens) and decide.

        The request is counted even when denied, matching fixed-window
        semantics: a user hammering a closed window keeps it closed.
        """
        self._validate_user(user_id)
        if (
            isinstance(tokens_requested, bool)
            or not isinstance(tokens_requested, int)
            or tokens_requested < 0
        ):
            raise GovernanceValidationError("tokens_requested must be an int >= 0")

        s = self.settings
        now = self._clock()
        keys = self._keys(user_id, now)
        next_minute, next_hour, next_day = self._resets(now)

        try:
            minute_count, hour_count, day_tokens = self.store.increment_many([
                Increment(keys["minute"], 1, MINUTE_SECONDS),
                Increment(keys["hour"], 1, HOUR_SECONDS),
                Increment(keys["tokens"], tokens_requested, DAY_SECONDS),
            ])
        except Exception:
            # Any failure here denies; see module docstring.
            logger.exception(
                "Rate limit batch failed for user %s — failing closed", user_id
            )
            return self._deny_store_unavailable(user_id, now)

        if minute_count > s.max_requests_per_minute:
            return self._deny(
                user_id, now, next_minute, DenialCode.MINUTE_LIMIT,
                "Minute limit exceeded. "
                f"Max {s.max_requests_per_minute} requests per minute.",
            )

        if hour_count > s.max_requests_per_hour:
            return self._deny(
                user_id, now, next_hour, DenialCode.HOUR_LIMIT,
                f"Hour limit exceeded. Max {s.max_requests_per_hour} requests per hour.",
            )

        if day_tokens > s.max_tokens_per_day:
            return self._deny(
                user_id, now, next_day, DenialCode.DAILY_TOKEN_LIMIT,
                "Daily token limit exceeded. "
                f"Max {s.max_tokens_per_day} tokens per day.",
            )

        if s.burst_limit > 0:
            try:
                burst_count = self.store.record_in_window(
                    keys["burst"], now.timestamp(), s.burst_window_seconds
                )
            except Exception:
                logger.exception(
                    "Burst window update failed for user %s — failing closed", user_id
                )
                return self._deny_store_unavailable(user_id, now)

            if burst_count > s.burst_limit:
                return self._deny(
                    user_id,
                    now,
                    now + timedelta(seconds=s.burst_window_seconds),
                    DenialCode.BURST_LIMIT,
                    "Burst limit exceeded. Please wait a moment.",
                )

        remaining = max(
            0,
            min(
                s.max_requests_per_minute - minute_count,
                s.max_requests_per_hour - hour_count,
            ),
        )
        logger.debug(
            "Rate limit passed for user %s: minute=%d hour=%d tokens=%d remaining=%d",
            user_id, minute_count, hour_count, day_tokens, remaining,
        )
        return RateLimitDecision(allowed=True, remaining=remaining, reset_at=next_minute)

    # -------------------------------------------------------------------
    # Read-only
    # -------------------------------------------------------------------
    def _read_count(self, key: str) -> int:
        raw = self.store.get(key)
        if raw is None:
            return 0
        try:
            return int(raw)
        except (TypeError, ValueError) as exc:
            raise CounterStoreError(f"Counter {key} is not an integer: {raw!r}") from exc

    def get_remaining_quota(self, user_id: str) -> QuotaSnapshot:
        """Recompute remaining capacity without touching any counter.

        Store errors propagate as :class:`CounterStoreError`.
        """
        self._validate_user(user_id)
        s = self.settings
        now = self._clock()
        keys = self._keys(user_id, now)
        next_minute, next_hour, next_day = self._resets(now)

        def window(limit: int, used: int, reset_at: datetime) -> WindowQuota:
            return WindowQuota(
                limit=limit,
                used=used,
                remaining=max(0, limit - used),
                reset_at=reset_at,
            )

        return QuotaSnapshot(
            requests_per_minute=window(
                s.max_requests_per_minute, self._read_count(keys["minute"]), next_minute
            ),
            requests_per_hour=window(
                s.max_requests_per_hour, self._read_count(keys["hour"]), next_hour
            ),
            tokens_per_day=window(
                s.max_tokens_per_day, self._read_count(keys["tokens"]), next_day
            ),
        )

    # -------------------------------------------------------------------
    # Admin
    # -------------------------------------------------------------------
    def reset_user_limits(self, user_id: str) -> ResetSummary:
        """Delete every window and burst key belonging to the user.

        Enumeration errors propagate.  Individual delete failures are
        isolated and reported in the summary.
        """
        self._validate_user(user_id)
        prefix = self.user_prefix(user_id)
        keys = [
            key for key in self.store.scan(escape_pattern(prefix) + "*")
            if _OWNED_SUFFIX.fullmatch(key[len(prefix):])
        ]

        deleted = 0
        failed: list[str] = []
        for key in keys:
            try:
                deleted += self.store.delete(key)
            except Exception:
                logger.exception("Failed to delete rate limit key %s", key)
                failed.append(key)

        logger.info(
            "Rate limits reset for user %s: %d/%d keys deleted, %d failed",
            user_id, deleted, len(keys), len(failed),
        )
        return ResetSummary(
            user_id=user_id,
            keys_found=len(keys),
            keys_deleted=deleted,
            failed_keys=tuple(failed),
        )
