"""
API request and response models for Gatehouse REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

No response model has a field for a password or its digest. A Credential can
only reach a client through CredentialResponse.from_credential(), which copies
the public fields.
"""

from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Credential

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

IDENTIFIER_MAX_LENGTH = 200
PASSWORD_MIN_LENGTH = 8
# bcrypt refuses more than 72 bytes; 72 characters of ASCII is the ceiling
# the API advertises. Multi-byte passwords that still exceed 72 bytes are
# rejected by the credential verifier.
PASSWORD_MAX_LENGTH = 72


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    identifier: str = Field(min_length=1, max_length=IDENTIFIER_MAX_LENGTH)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)


class LoginRequest(BaseModel):
    """Request body for POST /auth/login and POST /auth/token.

    No minimum length on password here: a login attempt with a short password
    is just a wrong password, and saying so would leak the policy.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    identifier: str = Field(min_length=1, max_length=IDENTIFIER_MAX_LENGTH)
    password: str = Field(min_length=1, max_length=255)


class TokenRequest(LoginRequest):
    """Request body for POST /api/v1/auth/token.

    ttl is optional and capped by the server's TOKEN_EXPIRE_SECONDS; the
    route clamps it, the model only rejects nonsense.
    """

    ttl: Optional[int] = Field(default=None, ge=1)


class PasswordChangeRequest(BaseModel):
    """Request body for PATCH /api/v1/user/password."""

    model_config = ConfigDict(extra="forbid")

    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("new_password")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class CredentialResponse(BaseModel):
    """Public view of a registered subject."""

    model_config = ConfigDict(frozen=True)

    id: int
    identifier: str
    created_at: str

    @classmethod
    def from_credential(cls, credential: Credential) -> "CredentialResponse":
        return cls(id=credential.id, identifier=credential.identifier, created_at=credential.created_at or "")


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    subject_id: int
    expires_in: int


class TokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    subject_id: int
    source: str
    claims: dict = Field(default_factory=dict)


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorEnvelope(BaseModel):
    """Uniform body for every 4xx/5xx response.

    Serialized with camelCase keys (statusCode) via model_dump(by_alias=True).
    message is a string, or a list of per-field messages for 400 validation
    failures.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    status_code: int = Field(alias="statusCode")
    timestamp: str
    path: str
    message: Union[str, list[str]]

    @classmethod
    def build(cls, status_code: int, path: str, message: Union[str, list[str]]) -> "ErrorEnvelope":
        return cls(
            status_code=status_code,
            timestamp=datetime.now(timezone.utc).isoformat(),
            path=path,
            message=message,
        )
