"""
api/routes/v1/users.py -- The signed-in subject's own account.

Routes:
  GET   /api/v1/user            -- public view of the current credential
  PATCH /api/v1/user/password   -- change password (current password required)

Both routes require a session cookie. The password change also requires the
X-CSRF-Token header (auth/csrf.py). The router carries no admission
dependency of its own; each route lists its policy so the order of stages
stays visible at the route definition.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from api.admission import AdmissionRoute, RoutePolicy, admit
from api.models import CredentialResponse, MessageResponse, PasswordChangeRequest
from auth.guards import GuardMode, IdentitySource
from auth.models import Identity
from auth.passwords import hash_password, verify_password
from auth.store import CredentialStore
from core.errors import InvalidCredentials, InvalidInput, ValidationFailed

# Route-group policy for the account routes.
ACCOUNT = RoutePolicy(guard=GuardMode.authenticated, source=IdentitySource.session)
# Password checks are brute-forceable from a stolen session; reuse the auth rule.
CHANGE_PASSWORD = ACCOUNT.override(rate_limit="auth", csrf=True)

router = APIRouter(route_class=AdmissionRoute)


async def _load(store: CredentialStore, subject_id: int):
    credential = await run_in_threadpool(store.get_by_id, subject_id)
    if credential is None:
        raise HTTPException(status_code=404, detail="User not found.")
    return credential


@router.get("/user", response_model=CredentialResponse)
async def get_user(request: Request, identity: Identity = Depends(admit(ACCOUNT))) -> CredentialResponse:
    store: CredentialStore = request.app.state.credentials
    return CredentialResponse.from_credential(await _load(store, identity.subject_id))


@router.patch("/user/password", response_model=MessageResponse)
async def change_password(
    request: Request,
    body: PasswordChangeRequest,
    identity: Identity = Depends(admit(CHANGE_PASSWORD)),
) -> MessageResponse:
    """Replace the password after re-checking the current one.

    A wrong current password is the same generic InvalidCredentials a failed
    login gets.
    """
    store: CredentialStore = request.app.state.credentials
    credential = await _load(store, identity.subject_id)

    if not await run_in_threadpool(verify_password, body.current_password, credential.password_hash):
        raise InvalidCredentials()
    try:
        digest = await run_in_threadpool(hash_password, body.new_password)
    except InvalidInput as exc:
        raise ValidationFailed([f"new_password: {exc}"]) from exc
    await run_in_threadpool(store.update_password, credential.id, digest)
    return MessageResponse(message="Password updated successfully")
