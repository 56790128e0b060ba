"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores, the token
service, and the guards do the work; these only own the shape.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Credential:
    """A registered subject's login credential.

    identifier is unique (username or email -- the store does not care).
    password_hash is a bcrypt digest and is never serialized to clients;
    api/models.py response models deliberately have no field for it.
    """

    identifier: str
    password_hash: str
    id: int | None = None
    created_at: str | None = None
    is_active: bool = True


@dataclass
class Session:
    """Server-side session state keyed by an opaque random id.

    expires_at is always created_at + the store's TTL. Both are UNIX
    timestamps (float seconds) so in-memory and Redis stores agree.
    """

    id: str
    subject_id: int
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


@dataclass
class TokenClaims:
    """The verified contents of a bearer token."""

    subject_id: int
    issued_at: float
    expires_at: float
    claims: dict[str, Any] = field(default_factory=dict)


@dataclass
class Identity:
    """A resolved caller, attached to the request for downstream handlers.

    source is "session" or "bearer". session_id is set only for session
    identities so logout can destroy the right entry.
    """

    subject_id: int
    source: str
    claims: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
