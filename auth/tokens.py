"""
auth/tokens.py -- Signed bearer token issuance and verification.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       the subject id (sub), issue time (iat), expiry (exp = iat + ttl) and
       a free-form claims object. Nothing is stored server-side.

  Verification is split into three checks so each failure has its own type:
       1. Parse the header and payload segments without verifying -- anything
          that does not decode to JSON objects with the required claims is
          MalformedToken. The signature segment is not looked at here.
       2. Verify the signature -- a signature segment that is not canonical
          unpadded base64url, or that does not match, is InvalidSignature
          (this includes alg substitution, since only the configured
          algorithm is accepted). Canonical means re-encoding the decoded
          bytes gives back the same text: base64 decoders ignore the unused
          low bits of the last character, so without this check a token
          edited in those bits would still verify.
       3. Compare exp against the service clock -- TokenExpired.
       Signature is checked before expiry, so a tampered expired token reports
       InvalidSignature.

  Expiry is evaluated against an injectable clock rather than jose's own
       utcnow() so tests and callers agree on "now" to sub-second precision.

  No revocation list: a token is valid until its natural expiry.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any

from jose import JWTError, jwt
from jose.utils import base64url_decode, base64url_encode

from auth.models import TokenClaims
from core.errors import InvalidSignature, MalformedToken, TokenExpired

logger = logging.getLogger("gatehouse.auth")

_ALGORITHM = "HS256"
_BEARER_PREFIX = "Bearer "


class TokenService:
    """Issues and verifies HS256 bearer tokens.

    Usage:
        tokens = TokenService(settings.secret_key, default_ttl=3600)
        raw = tokens.issue(42, {"identifier": "alice"})
        claims = tokens.verify(raw)   # TokenClaims(subject_id=42, ...)
    """

    def __init__(
        self,
        secret_key: str,
        default_ttl: int = 3600,
        algorithm: str = _ALGORITHM,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret_key:
            raise ValueError("TokenService requires a signing secret.")
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._clock = clock
        self.default_ttl = default_ttl

    def issue(self, subject_id: int, claims: dict[str, Any] | None = None, ttl: float | None = None) -> str:
        """Return a signed token for subject_id that expires ttl seconds from now.

        ttl defaults to the service's default_ttl. Non-positive ttl is refused;
        a token born expired is always a caller bug.
        """
        duration = self.default_ttl if ttl is None else ttl
        if duration <= 0:
            raise ValueError("Token ttl must be positive.")
        issued_at = self._clock()
        payload = {
            "sub": str(subject_id),
            "iat": issued_at,
            "exp": issued_at + duration,
            "claims": dict(claims or {}),
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def verify(self, token: str) -> TokenClaims:
        """Verify token and return its claims.

        Raises MalformedToken, InvalidSignature, or TokenExpired. All three
        are Unauthorized subclasses; the distinction is for logs.
        """
        if not isinstance(token, str) or not token:
            raise MalformedToken("Empty token.")

        # maxsplit=2: a stray "." inside the signature stays in the signature
        # segment and fails as a bad signature, not as a bad token shape.
        segments = token.split(".", 2)
        if len(segments) != 3:
            raise MalformedToken("Token must have three segments.")
        header_segment, payload_segment, signature_segment = segments

        header = _decode_json_segment(header_segment)
        if not isinstance(header, dict):
            raise MalformedToken("Token header is not an object.")
        parsed = _parse_claims(_decode_json_segment(payload_segment))

        if not _is_canonical_base64url(signature_segment):
            raise InvalidSignature("Signature segment is not canonical base64url.")
        try:
            jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise InvalidSignature(f"Signature verification failed: {exc}") from exc

        if self._clock() > parsed.expires_at:
            raise TokenExpired(f"Token for subject {parsed.subject_id} expired.")
        return parsed


def _decode_json_segment(segment: str) -> Any:
    try:
        return json.loads(base64url_decode(segment.encode("ascii")))
    except (UnicodeError, ValueError) as exc:
        raise MalformedToken(f"Token segment does not decode: {exc}") from exc


def _is_canonical_base64url(segment: str) -> bool:
    try:
        raw = segment.encode("ascii")
        return base64url_encode(base64url_decode(raw)) == raw
    except (UnicodeError, ValueError):
        return False


def _parse_claims(payload: Any) -> TokenClaims:
    """Map a raw JWT payload to TokenClaims or raise MalformedToken."""
    if not isinstance(payload, dict):
        raise MalformedToken("Token payload is not an object.")
    try:
        subject_id = int(payload["sub"])
        issued_at = float(payload["iat"])
        expires_at = float(payload["exp"])
    except (KeyError, TypeError, ValueError) as exc:
        raise MalformedToken(f"Token is missing a required claim: {exc}") from exc
    claims = payload.get("claims", {})
    if not isinstance(claims, dict):
        raise MalformedToken("Token claims must be an object.")
    return TokenClaims(subject_id=subject_id, issued_at=issued_at, expires_at=expires_at, claims=claims)


def bearer_token(authorization: str | None) -> str | None:
    """Extract <token> from an 'Authorization: Bearer <token>' header value.

    Returns None for a missing header or any other scheme.
    """
    if not authorization or not authorization.startswith(_BEARER_PREFIX):
        return None
    token = authorization[len(_BEARER_PREFIX) :].strip()
    return token or None
