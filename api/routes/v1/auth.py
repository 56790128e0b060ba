"""
api/routes/v1/auth.py -- Registration, login, token issuance, logout.

Routes:
  POST /api/v1/auth/register   -- create a credential (guest only)
  POST /api/v1/auth/login      -- password login; sets the session and CSRF cookies (guest only)
  POST /api/v1/auth/token      -- password login; returns a bearer token (guest only)
  POST /api/v1/auth/logout     -- destroys the session, clears both cookies (session + X-CSRF-Token)
  GET  /api/v1/auth/me         -- identity behind a bearer token (token required)

Admission:
  Guest routes share the "auth" rate rule (AUTH_RATE_LIMIT, 10/minute by
  default) per client address -- brute-force mitigation for password checks.
  /me is rate-limited per subject rather than per address.

Security:
  authenticate() provides timing equalization -- use it, never inline
      find_credential_by_identifier() + verify_password().
  Login and token responses carry Cache-Control: no-store.
  Every login failure is the same 401 "Invalid credentials".
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from starlette.concurrency import run_in_threadpool

from api.admission import AdmissionRoute, RateKey, RoutePolicy, admit
from api.models import (
    CredentialResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RegisterRequest,
    TokenRequest,
    TokenResponse,
)
from auth.csrf import clear_csrf_cookie, csrf_token_for, set_csrf_cookie
from auth.guards import GuardMode, IdentitySource
from auth.models import Identity
from auth.passwords import authenticate, hash_password
from auth.sessions import SessionStore, clear_session_cookie, set_session_cookie
from auth.store import CredentialStore
from auth.tokens import TokenService
from core.errors import InvalidInput, ValidationFailed

logger = logging.getLogger("gatehouse.auth")

# Route-group policy: every guest route here is throttled by the "auth" rule.
GUEST = RoutePolicy(guard=GuardMode.guest, source=IdentitySource.session, rate_limit="auth")

REGISTER = GUEST
LOGIN = GUEST
TOKEN = GUEST.override(source=IdentitySource.bearer)
LOGOUT = RoutePolicy(guard=GuardMode.authenticated, source=IdentitySource.session, csrf=True)
ME = RoutePolicy(guard=GuardMode.authenticated, source=IdentitySource.bearer, rate_key=RateKey.subject)

router = APIRouter(route_class=AdmissionRoute)


def _no_store(response: JSONResponse) -> JSONResponse:
    response.headers["Cache-Control"] = "no-store"
    return response


# ---------------------------------------------------------------------------
# Guest endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/auth/register",
    response_model=CredentialResponse,
    status_code=201,
    dependencies=[Depends(admit(REGISTER))],
)
async def register(request: Request, body: RegisterRequest) -> CredentialResponse:
    """Create a credential. The password is hashed before it reaches the store."""
    store: CredentialStore = request.app.state.credentials
    try:
        digest = await run_in_threadpool(hash_password, body.password)
    except InvalidInput as exc:
        raise ValidationFailed([f"password: {exc}"]) from exc
    try:
        subject_id = await run_in_threadpool(store.create_subject, body.identifier, digest)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Identifier is already registered.") from exc

    logger.info("Registered subject %s", subject_id)
    created = await run_in_threadpool(store.get_by_id, subject_id)
    if created is None:
        raise HTTPException(status_code=500, detail="Credential not found after write.")
    return CredentialResponse.from_credential(created)


@router.post("/auth/login", response_model=LoginResponse, dependencies=[Depends(admit(LOGIN))])
async def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with identifier and password; set the session cookie."""
    store: CredentialStore = request.app.state.credentials
    sessions: SessionStore = request.app.state.sessions
    settings = request.app.state.settings

    credential = await run_in_threadpool(authenticate, store, body.identifier, body.password)
    session_id = await sessions.create(credential.id)
    logger.info("Session opened for subject %s", credential.id)

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(subject_id=credential.id, expires_in=sessions.ttl).model_dump(),
    )
    set_session_cookie(resp, session_id, max_age=sessions.ttl, secure=settings.secure_cookies)
    set_csrf_cookie(
        resp,
        csrf_token_for(settings.secret_key, session_id),
        max_age=sessions.ttl,
        secure=settings.secure_cookies,
    )
    return _no_store(resp)


@router.post("/auth/token", response_model=TokenResponse, dependencies=[Depends(admit(TOKEN))])
async def issue_token(request: Request, body: TokenRequest) -> JSONResponse:
    """Authenticate with identifier and password; return a signed bearer token.

    A requested ttl longer than TOKEN_EXPIRE_SECONDS is clamped to it.
    """
    store: CredentialStore = request.app.state.credentials
    tokens: TokenService = request.app.state.tokens

    credential = await run_in_threadpool(authenticate, store, body.identifier, body.password)
    ttl = min(body.ttl or tokens.default_ttl, tokens.default_ttl)
    token = tokens.issue(credential.id, {"identifier": credential.identifier}, ttl=ttl)
    logger.info("Token issued for subject %s (ttl=%ds)", credential.id, ttl)

    resp = JSONResponse(
        status_code=200,
        content=TokenResponse(access_token=token, expires_in=ttl).model_dump(),
    )
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(request: Request, identity: Identity = Depends(admit(LOGOUT))) -> JSONResponse:
    """Destroy the server-side session and clear the session and CSRF cookies."""
    sessions: SessionStore = request.app.state.sessions
    settings = request.app.state.settings

    await sessions.destroy(identity.session_id)
    logger.info("Session closed for subject %s", identity.subject_id)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_session_cookie(resp, secure=settings.secure_cookies)
    clear_csrf_cookie(resp, secure=settings.secure_cookies)
    return resp


@router.get("/auth/me", response_model=MeResponse)
async def me(identity: Identity = Depends(admit(ME))) -> MeResponse:
    """Return the subject and claims carried by the caller's bearer token."""
    return MeResponse(subject_id=identity.subject_id, source=identity.source, claims=identity.claims)
