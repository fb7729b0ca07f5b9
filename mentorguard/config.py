"""
mentorguard.config — YAML Configuration Loader
================================================

Reads ``config.yaml`` for governance tuning: quota sizes, burst window,
cache TTLs, copy/paste matching thresholds, temporal analysis thresholds.
Infrastructure endpoints (``DATABASE_URL``, ``REDIS_URL``) come from the
environment instead, so the same YAML can ship to every deployment.

Usage::

    from mentorguard.config import load_config

    cfg = load_config()                          # ./config.yaml
    print(cfg.rate_limit.max_requests_per_minute)   # 20

Every section is optional; an absent section or key keeps its default.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

# The burst check is only meaningful as a sub-window of the minute quota.
MAX_BURST_WINDOW_SECONDS = 10.0


# ---------------------------------------------------------------------------
# Typed settings objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RateLimitSettings:
    """Per-user request/token quotas."""

    max_requests_per_minute: int = 20
    max_requests_per_hour: int = 100
    max_tokens_per_day: int = 100_000
    burst_limit: int = 5  # <= 0 disables the burst check
    burst_window_seconds: float = 5.0
    store_failure_retry_seconds: int = 5

    def __post_init__(self) -> None:
        if not 0 < self.burst_window_seconds < MAX_BURST_WINDOW_SECONDS:
            raise ValueError(
                "burst_window_seconds must be between 0 and "
                f"{MAX_BURST_WINDOW_SECONDS:g} (exclusive), "
                f"got {self.burst_window_seconds}"
            )
        for name in (
            "max_requests_per_minute",
            "max_requests_per_hour",
            "max_tokens_per_day",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.store_failure_retry_seconds < 1:
            raise ValueError("store_failure_retry_seconds must be >= 1")


@dataclass(frozen=True, slots=True)
class ContextCacheSettings:
    ttl_seconds: int = 3600
    stats_sample_size: int = 100


@dataclass(frozen=True, slots=True)
class CopyPasteSettings:
    similarity_threshold: float = 0.85
    match_window_seconds: float = 30.0
    copy_ttl_seconds: int = 60
    # Atomically consume a matched copy so concurrent pastes cannot share it
    claim_matches: bool = False
    large_paste_lines: int = 50
    quick_paste_seconds: float = 5.0

    def __post_init__(self) -> None:
        if not 0.0 < self.similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be in (0, 1]")


@dataclass(frozen=True, slots=True)
class TemporalSettings:
    lookback_minutes: int = 30
    min_prompts: int = 3
    rapid_fire_seconds: float = 10.0
    gaming_threshold: float = 70.0


@dataclass(frozen=True, slots=True)
class GovernanceConfig:
    """Immutable governance configuration loaded from ``config.yaml``."""

    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    context_cache: ContextCacheSettings = field(default_factory=ContextCacheSettings)
    copy_paste: CopyPasteSettings = field(default_factory=CopyPasteSettings)
    temporal: TemporalSettings = field(default_factory=TemporalSettings)

    # BLOCKED decisions at or above this risk raise a security alert log
    security_alert_threshold: float = 95.0


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def _section(cls: type, raw: Any, name: str):
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = set(raw) - known
    if unknown:
        raise ValueError(
            f"Unknown keys in config section '{name}': {sorted(unknown)}"
        )
    return cls(**raw)


def load_config(path: str | Path | None = None) -> GovernanceConfig:
    """Read *path* and return a :class:`GovernanceConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.  Defaults to the
        ``MENTORGUARD_CONFIG`` env var, then ``config.yaml`` in the
        current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a section is malformed, has unknown keys, or holds an
        out-of-range value.
    """
    if path is None:
        path = os.getenv("MENTORGUARD_CONFIG", "config.yaml")
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return GovernanceConfig(
        rate_limit=_section(RateLimitSettings, raw.get("rate_limit"), "rate_limit"),
        context_cache=_section(
            ContextCacheSettings, raw.get("context_cache"), "context_cache"
        ),
        copy_paste=_section(CopyPasteSettings, raw.get("copy_paste"), "copy_paste"),
        temporal=_section(TemporalSettings, raw.get("temporal"), "temporal"),
        security_alert_threshold=float(raw.get("security_alert_threshold", 95.0)),
    )
