"""
mentorguard.engine.store — Counter & cache store backends
==========================================================

Every time-windowed count and every cached derivation lives in a shared
key-value store with per-key expiry.  The engine talks to it only through
the :class:`CounterStore` primitives below, so the same rate limiter,
context cache, and copy/paste correlator run against:

* :class:`RedisCounterStore` — production; atomic batches via
  ``MULTI/EXEC`` pipelines, timestamp windows via sorted sets.
* :class:`MemoryCounterStore` — one process only (local development,
  tests).  Thread-safe; each batch is applied under a single lock.

Key patterns passed to :meth:`CounterStore.scan` use Redis glob syntax
(``*``, ``?``, ``[...]``, ``\\`` escapes) on both backends.
"""

from __future__ import annotations

import logging
import math
import os
import re
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from typing import NamedTuple

import redis

from mentorguard.engine.errors import CounterStoreError

logger = logging.getLogger(__name__)

DEFAULT_REDIS_TIMEOUT = 1.0

_GLOB_SPECIALS = re.compile(r"([*?\[\]\\])")


class Increment(NamedTuple):
    """One step of an atomic batch: add *amount* to *key*, then expire it."""

    key: str
    amount: int
    ttl_seconds: int


def escape_pattern(text: str) -> str:
    """Escape glob metacharacters so *text* matches literally in :meth:`scan`."""
    return _GLOB_SPECIALS.sub(r"\\\1", text)


class CounterStore(ABC):
    """Primitive operations the governance engine needs from its store."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the string value at *key*, or None if absent/expired."""

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store *value* at *key*, expiring after *ttl_seconds*."""

    @abstractmethod
    def delete(self, key: str) -> int:
        """Delete *key*.  Returns 1 if it existed, 0 otherwise.

        Only one of several concurrent callers can observe 1, which makes
        this usable as an atomic claim.
        """

    @abstractmethod
    def scan(self, pattern: str) -> list[str]:
        """Return every live key matching the glob *pattern*."""

    @abstractmethod
    def increment_many(self, steps: Sequence[Increment]) -> list[int]:
        """Apply all *steps* as one atomic batch.

        Each key's expiry is refreshed to its step's TTL.  Returns the
        post-increment value of each key, in step order.
        """

    @abstractmethod
    def record_in_window(
        self, key: str, timestamp: float, window_seconds: float
    ) -> int:
        """Append *timestamp* to the rolling list at *key*.

        Entries older than ``timestamp - window_seconds`` are pruned first.
        Returns the number of entries left in the window, including the
        one just recorded.
        """

    @abstractmethod
    def ping(self) -> bool:
        """Return True if the store is reachable."""


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------
class RedisCounterStore(CounterStore):
    """redis-py backed store.  All redis errors surface as CounterStoreError."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(
        cls, url: str, *, timeout: float = DEFAULT_REDIS_TIMEOUT
    ) -> RedisCounterStore:
        client = redis.from_url(
            url,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            decode_responses=True,
        )
        logger.info("Counter store → Redis at %s", url.rsplit("@", 1)[-1])
        return cls(client)

    def get(self, key: str) -> str | None:
        try:
            return self._client.get(key)
        except redis.RedisError as exc:
            raise CounterStoreError(f"GET {key} failed: {exc}") from exc

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self._client.set(key, value, ex=ttl_seconds)
        except redis.RedisError as exc:
            raise CounterStoreError(f"SET {key} failed: {exc}") from exc

    def delete(self, key: str) -> int:
        try:
            return int(self._client.delete(key))
        except redis.RedisError as exc:
            raise CounterStoreError(f"DEL {key} failed: {exc}") from exc

    def scan(self, pattern: str) -> list[str]:
        try:
            return list(self._client.scan_iter(match=pattern, count=500))
        except redis.RedisError as exc:
            raise CounterStoreError(f"SCAN {pattern} failed: {exc}") from exc

    def increment_many(self, steps: Sequence[Increment]) -> list[int]:
        try:
            pipe = self._client.pipeline(transaction=True)
            for step in steps:
                pipe.incrby(step.key, step.amount)
                pipe.expire(step.key, step.ttl_seconds)
            results = pipe.execute()
        except redis.RedisError as exc:
            raise CounterStoreError(f"Increment batch failed: {exc}") from exc

        # Results alternate INCRBY, EXPIRE
        try:
            return [int(v) for v in results[0::2]]
        except (TypeError, ValueError) as exc:
            raise CounterStoreError(
                f"Malformed increment batch response: {results!r}"
            ) from exc

    def record_in_window(
        self, key: str, timestamp: float, window_seconds: float
    ) -> int:
        member = f"{timestamp:.6f}:{uuid.uuid4().hex[:8]}"
        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.zremrangebyscore(key, "-inf", f"({timestamp - window_seconds}")
            pipe.zadd(key, {member: timestamp})
            pipe.zcard(key)
            pipe.expire(key, max(1, math.ceil(window_seconds)))
            results = pipe.execute()
        except redis.RedisError as exc:
            raise CounterStoreError(f"Window update for {key} failed: {exc}") from exc
        return int(results[2])

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------
def _glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a Redis glob into an anchored regex."""
    out: list[str] = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if ch == "*":
            out.append(".*")
        elif ch == "?":
            out.append(".")
        elif ch == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(ch))
            else:
                body = pattern[i + 1:end]
                if body.startswith("^"):
                    body = "^" + body[1:].replace("\\", "\\\\")
                else:
                    body = body.replace("\\", "\\\\")
                out.append(f"[{body}]")
                i = end
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out) + r"\Z", re.DOTALL)


class MemoryCounterStore(CounterStore):
    """Thread-safe in-process store with lazy TTL expiry.

    *clock* returns seconds on a monotonic scale and drives expiry only;
    tests pass a controllable clock to expire keys without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        # key → (value, expires_at); value is str or list[float]
        self._data: dict[str, tuple[str | list[float], float]] = {}

    def _live(self, key: str, now: float) -> str | list[float] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= now:
            del self._data[key]
            return None
        return value

    def get(self, key: str) -> str | None:
        with self._lock:
            value = self._live(key, self._clock())
        if isinstance(value, list):
            raise CounterStoreError(f"Key {key} holds a window, not a string")
        return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (value, self._clock() + ttl_seconds)

    def delete(self, key: str) -> int:
        with self._lock:
            if self._live(key, self._clock()) is None:
                return 0
            del self._data[key]
            return 1

    def scan(self, pattern: str) -> list[str]:
        regex = _glob_to_regex(pattern)
        with self._lock:
            now = self._clock()
            return [
                k for k in list(self._data)
                if regex.match(k) and self._live(k, now) is not None
            ]

    def increment_many(self, steps: Sequence[Increment]) -> list[int]:
        with self._lock:
            now = self._clock()
            # Validate the whole batch before mutating anything
            for step in steps:
                current = self._live(step.key, now)
                if isinstance(current, list):
                    raise CounterStoreError(
                        f"Key {step.key} holds a window, not a counter"
                    )
                if current is not None and not current.lstrip("-").isdigit():
                    raise CounterStoreError(f"Key {step.key} is not an integer")

            values: list[int] = []
            for step in steps:
                current = self._live(step.key, now)
                value = int(current or 0) + step.amount
                self._data[step.key] = (str(value), now + step.ttl_seconds)
                values.append(value)
            return values

    def record_in_window(
        self, key: str, timestamp: float, window_seconds: float
    ) -> int:
        cutoff = timestamp - window_seconds
        with self._lock:
            now = self._clock()
            current = self._live(key, now)
            if isinstance(current, str):
                raise CounterStoreError(f"Key {key} holds a string, not a window")
            stamps = [t for t in (current or []) if t >= cutoff]
            stamps.append(timestamp)
            self._data[key] = (stamps, now + max(1, math.ceil(window_seconds)))
            return len(stamps)

    def ping(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------
def create_counter_store(
    url: str | None = None, *, timeout: float = DEFAULT_REDIS_TIMEOUT
) -> CounterStore:
    """Build a store from *url* (default: ``REDIS_URL`` env var).

    ``memory://`` or an unset URL selects :class:`MemoryCounterStore`.
    """
    url = url if url is not None else os.getenv("REDIS_URL", "")
    if not url or url.startswith("memory://"):
        logger.warning(
            "Counter store → in-memory (single process only). "
            "Set REDIS_URL for shared limits."
        )
        return MemoryCounterStore()
    return RedisCounterStore.from_url(url, timeout=timeout)
