"""
auth/csrf.py -- CSRF check for state changes made with the session cookie.

The browser attaches the session cookie to any request aimed at this origin,
including ones a sibling subdomain or an injected form triggers. SameSite=Lax
only stops cross-site posts. A route whose policy sets csrf=True therefore
also requires the X-CSRF-Token header to carry the session's CSRF token.

Token scheme (double submit, bound to the session):
  token = HMAC-SHA256(SECRET_KEY, "csrf:" + session_id), hex.
  Login hands it to the client in the readable csrf_token cookie; the client
  copies it into the X-CSRF-Token header. Only the header is trusted: it is
  compared against the token recomputed from the session, so a cookie planted
  by another origin cannot stand in for it. Nothing is stored server-side.

Bearer-token requests are exempt: a browser never attaches the Authorization
header on its own.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

import hashlib
import hmac

from core.errors import Forbidden

CSRF_COOKIE = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"


def csrf_token_for(secret_key: str, session_id: str) -> str:
    return hmac.new(secret_key.encode("utf-8"), f"csrf:{session_id}".encode("utf-8"), hashlib.sha256).hexdigest()


def verify_csrf(secret_key: str, session_id: str, presented: str | None) -> None:
    """Raise Forbidden unless presented is the CSRF token for session_id."""
    expected = csrf_token_for(secret_key, session_id)
    if not presented or not hmac.compare_digest(presented.strip().encode("utf-8"), expected.encode("utf-8")):
        raise Forbidden("invalid csrf token")


def set_csrf_cookie(response, token: str, max_age: int, secure: bool = False) -> None:
    """Readable by scripts on purpose: the client has to copy it into the header."""
    response.set_cookie(CSRF_COOKIE, value=token, httponly=False, samesite="lax", secure=secure, max_age=max_age)


def clear_csrf_cookie(response, secure: bool = False) -> None:
    response.delete_cookie(CSRF_COOKIE, httponly=False, samesite="lax", secure=secure)
