"""
auth/passwords.py -- Credential verifier: bcrypt hashing and timing-safe login.

bcrypt is used directly rather than through passlib: passlib's wrap-bug
detection feeds bcrypt a >72-byte password, which bcrypt 4.x+ rejects. Direct
usage has no compatibility shim and tracks the maintained library.

Inputs over 72 bytes are refused with InvalidInput instead of being silently
truncated, so two long passwords sharing a 72-byte prefix can never collide.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

import bcrypt

from core.errors import CorruptDigest, InvalidCredentials, InvalidInput

if TYPE_CHECKING:
    from auth.models import Credential
    from auth.store import CredentialStore

logger = logging.getLogger("gatehouse.auth")

_MAX_PASSWORD_BYTES = 72
_BCRYPT_DIGEST = re.compile(r"^\$2[abxy]\$\d{2}\$[./A-Za-z0-9]{53}$")


def _encode(password: str) -> bytes:
    if not isinstance(password, str) or not password:
        raise InvalidInput("Password must be a non-empty string.")
    encoded = password.encode("utf-8")
    if len(encoded) > _MAX_PASSWORD_BYTES:
        raise InvalidInput(f"Password must be at most {_MAX_PASSWORD_BYTES} bytes.")
    return encoded


def hash_password(password: str) -> str:
    """Return a salted bcrypt digest of password.

    Raises InvalidInput for empty, non-string, or over-long input.
    """
    return bcrypt.hashpw(_encode(password), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, digest: str) -> bool:
    """Return True if password matches digest.

    Mismatch (including a password that could never have been hashed) is
    False, never an exception. A digest that is not a bcrypt hash raises
    CorruptDigest -- that is a storage fault, not a login failure.
    """
    if not isinstance(digest, str) or not _BCRYPT_DIGEST.match(digest):
        raise CorruptDigest("Stored password digest is not a bcrypt hash.")
    try:
        encoded = _encode(password)
    except InvalidInput:
        return False
    try:
        return bcrypt.checkpw(encoded, digest.encode("utf-8"))
    except ValueError as exc:
        raise CorruptDigest(str(exc)) from exc


# Timing equalization dummy digest.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("gatehouse_timing_dummy")


def authenticate(store: CredentialStore, identifier: str, password: str) -> Credential:
    """Return the matching Credential or raise InvalidCredentials.

    bcrypt runs whether or not the identifier exists:
    - Unknown identifier: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    The raised error is identical in every failure case.
    """
    credential = store.find_credential_by_identifier(identifier)
    if credential is None:
        verify_password(password, _DUMMY_HASH)
        logger.info("Login failed: unknown identifier")
        raise InvalidCredentials()
    if not verify_password(password, credential.password_hash):
        logger.info("Login failed: bad password for subject %s", credential.id)
        raise InvalidCredentials()
    if not credential.is_active:
        logger.info("Login failed: subject %s is inactive", credential.id)
        raise InvalidCredentials()
    return credential
