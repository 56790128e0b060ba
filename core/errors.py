"""
core/errors.py -- Error taxonomy for the admission pipeline.

Every admission stage either admits the request or raises exactly one of the
AdmissionError subclasses below. The error boundary in api/main.py maps each
one to the uniform JSON envelope using status_code and public_message.

Client-facing messages are deliberately coarse. The token and session
subclasses of Unauthorized exist so the logs can say *why* a request was
rejected; the client only ever sees "Unauthorized".

InvalidInput and CorruptDigest are internal to the credential verifier and
never cross the HTTP boundary on their own -- a CorruptDigest reaching the
boundary is a server fault and surfaces as a 500.

Layer rule: core/ is the kernel. No imports from api/, auth/, or ratelimit/.
"""

from __future__ import annotations

from typing import Any


class AdmissionError(Exception):
    """Base class for every rejection the pipeline can produce."""

    status_code: int = 500
    public_message: str = "Internal server error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message

    @property
    def message(self) -> Any:
        """What the client sees in the envelope's message field."""
        return self.public_message


class InvalidCredentials(AdmissionError):
    """Login failure. Never says which half of the credential was wrong."""

    status_code = 401
    public_message = "Invalid credentials"


class Unauthorized(AdmissionError):
    status_code = 401
    public_message = "Unauthorized"


class TokenError(Unauthorized):
    pass


class TokenExpired(TokenError):
    pass


class InvalidSignature(TokenError):
    pass


class MalformedToken(TokenError):
    pass


class SessionExpired(Unauthorized):
    pass


class Forbidden(AdmissionError):
    status_code = 403
    public_message = "Forbidden"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail)
        # Forbidden reasons are policy statements ("already authenticated"),
        # safe to show the client.
        if detail:
            self.public_message = detail


class RateLimitExceeded(AdmissionError):
    status_code = 429
    public_message = "rate limit exceeded"

    def __init__(self, key: str, limit: int, retry_after: int) -> None:
        super().__init__(f"rate limit exceeded for {key} ({limit} per window)")
        self.key = key
        self.limit = limit
        self.retry_after = retry_after


class ValidationFailed(AdmissionError):
    status_code = 400
    public_message = "Bad Request"

    def __init__(self, messages: list[str]) -> None:
        super().__init__("; ".join(messages))
        self.messages = messages

    @property
    def message(self) -> Any:
        return self.messages


# ---------------------------------------------------------------------------
# Credential verifier internals
# ---------------------------------------------------------------------------


class InvalidInput(ValueError):
    """Password is empty, not a string, or too long to hash."""


class CorruptDigest(ValueError):
    """Stored password digest is not a well-formed bcrypt hash."""
