"""
ratelimit/limiter.py -- Fixed-window rate limiter over a shared counter store.

The counters live in a `limits` storage backend, the same layer slowapi sits
on. "memory://" keeps them in-process (single worker, tests); "redis://..."
shares them across every process serving the app.

Algorithm (fixed-window counter):
  One call to storage.incr(key, window) per request. The backend creates the
  counter with expiry=window on the first hit and increments it atomically on
  every later hit, returning the post-increment value:
    - memory: the increment runs without yielding to the event loop.
    - redis:  INCR + EXPIRE executed as one server-side script.
  There is no read-then-write anywhere, so concurrent requests can never push
  more than `limit` admissions through one window.

  A rejected request still counts. The counter is never rolled back: it
  records attempts, not outcomes, and a rollback would be a second round trip
  that could itself race.

Rule notation: "10/minute", "100/hour", "5 per 30 seconds" -- anything
limits.parse() accepts.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from limits import parse
from limits.storage import storage_from_string

logger = logging.getLogger("gatehouse.ratelimit")


@dataclass(frozen=True)
class RateLimitRule:
    """limit requests per window seconds."""

    limit: int
    window: int

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError("Rate limit must allow at least one request.")
        if self.window < 1:
            raise ValueError("Rate limit window must be at least one second.")

    @classmethod
    def parse(cls, text: str) -> RateLimitRule:
        """Build a rule from limits notation, e.g. RateLimitRule.parse("10/minute")."""
        item = parse(text)
        return cls(limit=item.amount, window=item.get_expiry())

    def __str__(self) -> str:
        return f"{self.limit} per {self.window}s"


@dataclass(frozen=True)
class Decision:
    admitted: bool
    remaining: int
    reset_at: float
    limit: int

    def retry_after(self, now: float) -> int:
        """Whole seconds until the window resets (at least 1 when rejected)."""
        wait = math.ceil(self.reset_at - now)
        return max(wait, 1 if not self.admitted else 0)


def build_storage(uri: str):
    """Return an async limits storage for uri ("memory://", "redis://...")."""
    if not uri.startswith("async+"):
        uri = f"async+{uri}"
    return storage_from_string(uri)


class RateLimiter:
    """Fixed-window limiter. One instance per process, built at startup.

    Usage:
        limiter = RateLimiter(build_storage("memory://"))
        decision = await limiter.allow("login:addr:10.0.0.7", limit=10, window=60)
    """

    def __init__(self, storage, namespace: str = "gatehouse", clock: Callable[[], float] = time.time) -> None:
        self._storage = storage
        self._namespace = namespace
        self._clock = clock

    def _bucket(self, key: str, limit: int, window: int) -> str:
        # limit and window are part of the bucket name so a route whose rule
        # changes across a deploy starts a fresh counter instead of inheriting one.
        return f"{self._namespace}/{limit}/{window}/{key}"

    async def allow(self, key: str, limit: int, window: int) -> Decision:
        """Count one request against key and decide whether it is admitted."""
        rule = RateLimitRule(limit, window)
        bucket = self._bucket(key, rule.limit, rule.window)
        count = await self._storage.incr(bucket, rule.window)
        reset_at = await self._storage.get_expiry(bucket)
        admitted = count <= rule.limit
        if not admitted:
            logger.warning("Rate limit exceeded: key=%s count=%d limit=%d", key, count, rule.limit)
        return Decision(
            admitted=admitted,
            remaining=max(rule.limit - count, 0),
            reset_at=reset_at,
            limit=rule.limit,
        )

    async def allow_rule(self, key: str, rule: RateLimitRule) -> Decision:
        return await self.allow(key, rule.limit, rule.window)

    async def ping(self) -> bool:
        """True if the backing store answers. Used by the health check."""
        return bool(await self._storage.check())

    def now(self) -> float:
        return self._clock()


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------


def address_key(scope: str, address: str) -> str:
    return f"{scope}:addr:{address}"


def subject_key(scope: str, subject_id: int) -> str:
    return f"{scope}:subject:{subject_id}"
