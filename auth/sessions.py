"""
auth/sessions.py -- Opaque server-side sessions with a fixed time-to-live.

Pattern: Repository interface with two adapters.
  InMemorySessionStore -- one process, tests, local dev. Lazy expiry on
      lookup plus purge_expired() for the background sweep in api/main.py.
  RedisSessionStore    -- shared across processes. SET ... EX ttl makes the
      write and the expiry one atomic command, so Redis drops the key itself.

Session ids come from secrets.token_urlsafe(32): 256 bits of entropy, no
structure, nothing for the client to interpret.

Cookie attributes (set_session_cookie):
  httponly=True: scripts cannot read the cookie.
  samesite="lax": sent on top-level navigation, withheld on cross-site POST.
  secure: only over HTTPS when SECURE_COOKIES=true (set in production).
  max_age: the store's TTL, so cookie and server entry expire together.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import asdict

from auth.models import Session

logger = logging.getLogger("gatehouse.auth")

SESSION_COOKIE = "session_id"


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


class SessionStore(ABC):
    """Async session repository. Every implementation shares one TTL for all entries."""

    def __init__(self, ttl: int, clock: Callable[[], float] = time.time) -> None:
        if ttl <= 0:
            raise ValueError("Session ttl must be positive.")
        self.ttl = ttl
        self._clock = clock

    def _new_session(self, subject_id: int) -> Session:
        now = self._clock()
        return Session(id=new_session_id(), subject_id=subject_id, created_at=now, expires_at=now + self.ttl)

    @abstractmethod
    async def create(self, subject_id: int) -> str:
        """Store a new session for subject_id and return its id."""

    @abstractmethod
    async def lookup(self, session_id: str) -> Session | None:
        """Return the live session, or None if absent or expired."""

    @abstractmethod
    async def destroy(self, session_id: str) -> None:
        """Remove the session. Destroying a missing session is not an error."""

    async def close(self) -> None:
        return None


class InMemorySessionStore(SessionStore):
    """Dict-backed store for a single process.

    Every method body runs without awaiting, so each call is atomic with
    respect to other requests on the same event loop.
    """

    def __init__(self, ttl: int, clock: Callable[[], float] = time.time) -> None:
        super().__init__(ttl, clock)
        self._sessions: dict[str, Session] = {}

    async def create(self, subject_id: int) -> str:
        session = self._new_session(subject_id)
        self._sessions[session.id] = session
        return session.id

    async def lookup(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if session.is_expired(self._clock()):
            self._sessions.pop(session_id, None)
            return None
        return session

    async def destroy(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
        for sid in expired:
            del self._sessions[sid]
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)


class RedisSessionStore(SessionStore):
    """Redis-backed store shared by every server process.

    Takes a redis.asyncio client built with decode_responses=True.
    """

    def __init__(self, redis, ttl: int, clock: Callable[[], float] = time.time, prefix: str = "gatehouse:session:") -> None:
        super().__init__(ttl, clock)
        self._redis = redis
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, ttl: int) -> RedisSessionStore:
        from redis.asyncio import from_url

        return cls(from_url(url, decode_responses=True), ttl)

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}{session_id}"

    async def create(self, subject_id: int) -> str:
        session = self._new_session(subject_id)
        await self._redis.set(self._key(session.id), json.dumps(asdict(session)), ex=self.ttl)
        return session.id

    async def lookup(self, session_id: str) -> Session | None:
        raw = await self._redis.get(self._key(session_id))
        if raw is None:
            return None
        try:
            session = Session(**json.loads(raw))
        except (TypeError, ValueError):
            logger.error("Discarding unreadable session entry %s", session_id[:8])
            await self.destroy(session_id)
            return None
        # Redis expiry has one-second granularity; the stored timestamp is exact.
        if session.is_expired(self._clock()):
            return None
        return session

    async def destroy(self, session_id: str) -> None:
        await self._redis.delete(self._key(session_id))

    async def close(self) -> None:
        await self._redis.aclose()


def build_session_store(url: str, ttl: int) -> SessionStore:
    """Return a Redis store for a redis:// URL, else an in-memory one."""
    if url:
        logger.info("Session store: redis")
        return RedisSessionStore.from_url(url, ttl)
    logger.info("Session store: in-memory")
    return InMemorySessionStore(ttl)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, session_id: str, max_age: int, secure: bool = False) -> None:
    """Write the session id as an httpOnly cookie on the response."""
    response.set_cookie(
        SESSION_COOKIE,
        value=session_id,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
    )


def clear_session_cookie(response, secure: bool = False) -> None:
    response.delete_cookie(SESSION_COOKIE, httponly=True, samesite="lax", secure=secure)
