"""
auth/guards.py -- Identity resolution and the guest/authenticated guards.

A request moves through three states:
    Unresolved -> Resolving identity -> Admitted | Rejected

IdentityResolver does the Resolving step for one identity source per route:
  session -- the session_id cookie, looked up in the SessionStore
  bearer  -- the Authorization: Bearer header, verified by the TokenService

Resolution never raises for bad credentials. It returns a Resolution holding
either an Identity or the Unauthorized subclass that explains why none was
found; the guard decides what that means:

  AuthenticatedGuard -- identity required. No identity -> the recorded error
      (TokenExpired, SessionExpired, ...) or plain Unauthorized.
  GuestGuard         -- identity forbidden. Any identity -> Forbidden
      ("already authenticated"). A stale or broken credential counts as no
      identity, so a user with an expired cookie can still reach /login.

Rejections are terminal for the request; there is no retry inside one request.

Layer rule: no imports from api/ or ratelimit/. Framework objects (Request)
stay in api/; this module only sees the raw cookie and header values.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from auth.models import Identity
from auth.sessions import SessionStore
from auth.tokens import TokenService, bearer_token
from core.errors import Forbidden, SessionExpired, TokenError, Unauthorized

logger = logging.getLogger("gatehouse.auth")


class IdentitySource(str, Enum):
    session = "session"
    bearer = "bearer"


@dataclass
class Resolution:
    identity: Identity | None = None
    error: Unauthorized | None = None

    @property
    def resolved(self) -> bool:
        return self.identity is not None


class IdentityResolver:
    """Turns a cookie or bearer header into an Identity."""

    def __init__(self, sessions: SessionStore, tokens: TokenService) -> None:
        self.sessions = sessions
        self.tokens = tokens

    async def resolve(
        self,
        source: IdentitySource,
        session_cookie: str | None = None,
        authorization: str | None = None,
    ) -> Resolution:
        if source is IdentitySource.session:
            return await self._from_session(session_cookie)
        return self._from_bearer(authorization)

    async def _from_session(self, session_id: str | None) -> Resolution:
        if not session_id:
            return Resolution()
        session = await self.sessions.lookup(session_id)
        if session is None:
            # A cookie was presented but the server no longer knows it: expired,
            # logged out elsewhere, or forged. All three read as an expired session.
            return Resolution(error=SessionExpired("Session is absent or expired."))
        return Resolution(identity=Identity(subject_id=session.subject_id, source="session", session_id=session.id))

    def _from_bearer(self, authorization: str | None) -> Resolution:
        token = bearer_token(authorization)
        if token is None:
            return Resolution()
        try:
            claims = self.tokens.verify(token)
        except TokenError as exc:
            return Resolution(error=exc)
        return Resolution(identity=Identity(subject_id=claims.subject_id, source="bearer", claims=claims.claims))


class AccessGuard:
    """Decision contract: decide() returns the admitted Identity (or None) or raises."""

    name = "open"

    def decide(self, resolution: Resolution) -> Identity | None:
        return resolution.identity


class AuthenticatedGuard(AccessGuard):
    name = "authenticated"

    def decide(self, resolution: Resolution) -> Identity:
        if resolution.identity is not None:
            return resolution.identity
        if resolution.error is not None:
            logger.info("Rejected (%s): %s", type(resolution.error).__name__, resolution.error.detail)
            raise resolution.error
        raise Unauthorized("No credentials presented.")


class GuestGuard(AccessGuard):
    name = "guest"

    def decide(self, resolution: Resolution) -> None:
        if resolution.identity is not None:
            logger.info("Rejected guest-only route for subject %s", resolution.identity.subject_id)
            raise Forbidden("already authenticated")
        return None


class GuardMode(str, Enum):
    none = "none"
    authenticated = "authenticated"
    guest = "guest"


_GUARDS: dict[GuardMode, AccessGuard] = {
    GuardMode.none: AccessGuard(),
    GuardMode.authenticated: AuthenticatedGuard(),
    GuardMode.guest: GuestGuard(),
}


def guard_for(mode: GuardMode) -> AccessGuard:
    return _GUARDS[mode]
