"""
tests/test_auth_routes.py -- Integration tests for /api/v1/auth/* and /api/v1/user*.

Covers:
  - register: 201, 409 on duplicate, 400 with per-field messages
  - login: session cookie attributes, no-store, uniform 401 on failure
  - guest-only routes return 403 once a session or token is present
  - logout destroys the server-side session
  - logout and password change require the X-CSRF-Token header
  - token issuance, ttl clamping, /me with valid / expired / tampered tokens
  - session expiry at the HTTP boundary
  - GET /user and PATCH /user/password
  - error envelope shape for 401, 403, 404, 409
"""

from __future__ import annotations

import asyncio
import time
from unittest.mock import patch

from auth.csrf import CSRF_COOKIE, CSRF_HEADER, csrf_token_for
from auth.sessions import SESSION_COOKIE
from auth.tokens import TokenService

ALICE = "alice@example.com"
ALICE_PASSWORD = "correct-horse-battery"


def _assert_envelope(resp, status: int, message):
    body = resp.json()
    assert set(body) == {"statusCode", "timestamp", "path", "message"}
    assert body["statusCode"] == status
    assert body["message"] == message
    assert body["path"] == resp.request.url.path


# ---------------------------------------------------------------------------
# Register
# ---------------------------------------------------------------------------


class TestRegister:
    def test_creates_credential(self, harness):
        resp = harness.client.post("/api/v1/auth/register", json={"identifier": "bob", "password": "hunter2-hunter2"})
        assert resp.status_code == 201
        data = resp.json()
        assert data["identifier"] == "bob"
        assert data["id"] != harness.subject_id
        assert "password" not in data
        assert "password_hash" not in data
        assert harness.store.find_credential_by_identifier("bob") is not None

    def test_registered_subject_can_log_in(self, harness):
        harness.client.post("/api/v1/auth/register", json={"identifier": "bob", "password": "hunter2-hunter2"})
        assert harness.login("bob", "hunter2-hunter2").status_code == 200

    def test_duplicate_identifier_is_409(self, harness):
        resp = harness.client.post("/api/v1/auth/register", json={"identifier": ALICE, "password": "another-password"})
        assert resp.status_code == 409
        _assert_envelope(resp, 409, "Identifier is already registered.")

    def test_validation_lists_each_field(self, harness):
        resp = harness.client.post("/api/v1/auth/register", json={"identifier": "", "password": "short"})
        assert resp.status_code == 400
        messages = resp.json()["message"]
        assert isinstance(messages, list)
        assert any(m.startswith("identifier:") for m in messages)
        assert any(m.startswith("password:") for m in messages)

    def test_unknown_field_rejected(self, harness):
        resp = harness.client.post(
            "/api/v1/auth/register",
            json={"identifier": "bob", "password": "hunter2-hunter2", "is_admin": True},
        )
        assert resp.status_code == 400
        assert any(m.startswith("is_admin:") for m in resp.json()["message"])

    def test_password_over_72_bytes_rejected(self, harness):
        resp = harness.client.post("/api/v1/auth/register", json={"identifier": "bob", "password": "é" * 40})
        assert resp.status_code == 400
        assert resp.json()["message"][0].startswith("password:")

    def test_forbidden_when_logged_in(self, harness):
        harness.login()
        resp = harness.client.post("/api/v1/auth/register", json={"identifier": "bob", "password": "hunter2-hunter2"})
        assert resp.status_code == 403
        _assert_envelope(resp, 403, "already authenticated")


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


class TestLogin:
    def test_sets_session_cookie(self, harness):
        resp = harness.login()
        assert resp.status_code == 200
        assert resp.json() == {"subject_id": harness.subject_id, "expires_in": 900}
        cookie = next(v for v in resp.headers.get_list("set-cookie") if v.startswith(f"{SESSION_COOKIE}=")).lower()
        assert "httponly" in cookie
        assert "samesite=lax" in cookie
        assert "max-age=900" in cookie
        assert resp.headers["Cache-Control"] == "no-store"

    def test_session_is_stored_server_side(self, harness):
        resp = harness.login()
        assert len(harness.sessions) == 1
        assert resp.cookies[SESSION_COOKIE]

    def test_wrong_password(self, harness):
        resp = harness.login(password="wrong-password")
        assert resp.status_code == 401
        _assert_envelope(resp, 401, "Invalid credentials")
        assert "set-cookie" not in resp.headers

    def test_unknown_identifier_looks_the_same(self, harness):
        unknown = harness.login(identifier="nobody@example.com")
        wrong = harness.login(password="wrong-password")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["message"] == wrong.json()["message"]

    def test_inactive_subject(self, harness):
        digest = harness.store.get_by_id(harness.subject_id).password_hash
        harness.store.create_subject("carol@example.com", digest, is_active=False)
        resp = harness.login(identifier="carol@example.com")
        assert resp.status_code == 401
        _assert_envelope(resp, 401, "Invalid credentials")

    def test_second_login_is_forbidden(self, harness):
        harness.login()
        resp = harness.login()
        assert resp.status_code == 403
        _assert_envelope(resp, 403, "already authenticated")

    def test_stale_cookie_does_not_block_login(self, harness):
        harness.client.cookies.set(SESSION_COOKIE, "no-such-session")
        assert harness.login().status_code == 200


class TestLogout:
    def test_destroys_session(self, harness):
        sid = harness.login().cookies[SESSION_COOKIE]
        resp = harness.client.post("/api/v1/auth/logout", headers=harness.csrf())
        assert resp.status_code == 200
        assert resp.json() == {"message": "Logged out."}
        assert len(harness.sessions) == 0

        harness.client.cookies.clear()
        replay = harness.client.get("/api/v1/user", headers={"Cookie": f"{SESSION_COOKIE}={sid}"})
        assert replay.status_code == 401

    def test_clears_cookie(self, harness):
        harness.login()
        resp = harness.client.post("/api/v1/auth/logout", headers=harness.csrf())
        cleared = resp.headers.get_list("set-cookie")
        assert any(v.startswith(f"{SESSION_COOKIE}=") and "max-age=0" in v.lower() for v in cleared)
        assert any(v.startswith(f"{CSRF_COOKIE}=") and "max-age=0" in v.lower() for v in cleared)
        assert harness.client.get("/api/v1/user").status_code == 401

    def test_requires_session(self, harness):
        resp = harness.client.post("/api/v1/auth/logout")
        assert resp.status_code == 401
        _assert_envelope(resp, 401, "Unauthorized")

    def test_bearer_token_is_not_a_session(self, harness):
        resp = harness.client.post("/api/v1/auth/logout", headers=harness.bearer())
        assert resp.status_code == 401

    def test_login_allowed_again_after_logout(self, harness):
        harness.login()
        assert harness.client.post("/api/v1/auth/logout", headers=harness.csrf()).status_code == 200
        assert harness.login().status_code == 200


class TestCsrf:
    def test_login_sets_readable_csrf_cookie(self, harness):
        resp = harness.login()
        cookie = next(v for v in resp.headers.get_list("set-cookie") if v.startswith(f"{CSRF_COOKIE}="))
        assert "httponly" not in cookie.lower()
        assert "samesite=lax" in cookie.lower()
        assert resp.cookies[CSRF_COOKIE] == csrf_token_for(harness.settings.secret_key, resp.cookies[SESSION_COOKIE])

    def test_logout_without_header(self, harness):
        harness.login()
        resp = harness.client.post("/api/v1/auth/logout")
        assert resp.status_code == 403
        _assert_envelope(resp, 403, "invalid csrf token")
        assert len(harness.sessions) == 1

    def test_logout_with_wrong_header(self, harness):
        harness.login()
        resp = harness.client.post("/api/v1/auth/logout", headers={CSRF_HEADER: "0" * 64})
        assert resp.status_code == 403
        assert len(harness.sessions) == 1

    def test_token_from_another_session(self, harness):
        other = csrf_token_for(harness.settings.secret_key, "some-other-session")
        harness.login()
        resp = harness.client.post("/api/v1/auth/logout", headers={CSRF_HEADER: other})
        assert resp.status_code == 403

    def test_password_change_without_header(self, harness):
        harness.login()
        resp = harness.client.patch(
            "/api/v1/user/password",
            json={"current_password": ALICE_PASSWORD, "new_password": "a-brand-new-password"},
        )
        assert resp.status_code == 403
        _assert_envelope(resp, 403, "invalid csrf token")
        assert harness.client.post("/api/v1/auth/logout", headers=harness.csrf()).status_code == 200
        assert harness.login().status_code == 200

    def test_reads_do_not_need_header(self, harness):
        harness.login()
        assert harness.client.get("/api/v1/user").status_code == 200


def test_expired_session_is_unauthorized(gatehouse):
    h = gatehouse(session_ttl_seconds=1)
    sid = h.login().cookies[SESSION_COOKIE]
    h.client.cookies.clear()
    time.sleep(1.1)
    resp = h.client.get("/api/v1/user", headers={"Cookie": f"{SESSION_COOKIE}={sid}"})
    assert resp.status_code == 401
    _assert_envelope(resp, 401, "Unauthorized")


# ---------------------------------------------------------------------------
# Bearer tokens
# ---------------------------------------------------------------------------


class TestToken:
    def test_issue_and_use(self, harness):
        resp = harness.client.post("/api/v1/auth/token", json={"identifier": ALICE, "password": ALICE_PASSWORD})
        assert resp.status_code == 200
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 3600
        assert resp.headers["Cache-Control"] == "no-store"

        me = harness.client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {data['access_token']}"})
        assert me.status_code == 200
        assert me.json() == {"subject_id": harness.subject_id, "source": "bearer", "claims": {"identifier": ALICE}}

    def test_shorter_ttl_honoured(self, harness):
        resp = harness.client.post(
            "/api/v1/auth/token", json={"identifier": ALICE, "password": ALICE_PASSWORD, "ttl": 60}
        )
        assert resp.json()["expires_in"] == 60

    def test_longer_ttl_clamped(self, harness):
        resp = harness.client.post(
            "/api/v1/auth/token", json={"identifier": ALICE, "password": ALICE_PASSWORD, "ttl": 10**6}
        )
        assert resp.json()["expires_in"] == 3600

    def test_wrong_password(self, harness):
        resp = harness.client.post("/api/v1/auth/token", json={"identifier": ALICE, "password": "wrong-password"})
        assert resp.status_code == 401
        _assert_envelope(resp, 401, "Invalid credentials")

    def test_forbidden_with_valid_bearer(self, harness):
        resp = harness.client.post(
            "/api/v1/auth/token",
            json={"identifier": ALICE, "password": ALICE_PASSWORD},
            headers=harness.bearer(),
        )
        assert resp.status_code == 403


class TestMe:
    def test_requires_token(self, harness):
        resp = harness.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        _assert_envelope(resp, 401, "Unauthorized")

    def test_session_cookie_is_not_a_token(self, harness):
        harness.login()
        assert harness.client.get("/api/v1/auth/me").status_code == 401

    def test_expired_token(self, harness):
        issued_earlier = TokenService(harness.settings.secret_key, clock=lambda: time.time() - 100)
        token = issued_earlier.issue(harness.subject_id, ttl=10)
        resp = harness.client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        _assert_envelope(resp, 401, "Unauthorized")

    def test_tampered_token(self, harness):
        token = harness.bearer()["Authorization"].removeprefix("Bearer ")
        header, payload, signature = token.split(".")
        flipped = ("B" if signature[0] == "A" else "A") + signature[1:]
        resp = harness.client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {header}.{payload}.{flipped}"})
        assert resp.status_code == 401
        assert resp.json()["message"] == "Unauthorized"

    def test_garbage_token(self, harness):
        resp = harness.client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not-a-token"})
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Account
# ---------------------------------------------------------------------------


class TestUser:
    def test_get_user(self, harness):
        harness.login()
        resp = harness.client.get("/api/v1/user")
        assert resp.status_code == 200
        data = resp.json()
        assert data["id"] == harness.subject_id
        assert data["identifier"] == ALICE
        assert data["created_at"]
        assert "password_hash" not in data

    def test_get_user_requires_session(self, harness):
        assert harness.client.get("/api/v1/user").status_code == 401

    def test_change_password(self, harness):
        harness.login()
        resp = harness.client.patch(
            "/api/v1/user/password",
            json={"current_password": ALICE_PASSWORD, "new_password": "a-brand-new-password"},
            headers=harness.csrf(),
        )
        assert resp.status_code == 200
        assert resp.json() == {"message": "Password updated successfully"}

        harness.client.post("/api/v1/auth/logout", headers=harness.csrf())
        assert harness.login(password=ALICE_PASSWORD).status_code == 401
        assert harness.login(password="a-brand-new-password").status_code == 200

    def test_change_password_wrong_current(self, harness):
        harness.login()
        resp = harness.client.patch(
            "/api/v1/user/password",
            json={"current_password": "not-my-password", "new_password": "a-brand-new-password"},
            headers=harness.csrf(),
        )
        assert resp.status_code == 401
        _assert_envelope(resp, 401, "Invalid credentials")

    def test_change_password_too_short(self, harness):
        harness.login()
        resp = harness.client.patch(
            "/api/v1/user/password",
            json={"current_password": ALICE_PASSWORD, "new_password": "short"},
            headers=harness.csrf(),
        )
        assert resp.status_code == 400
        assert resp.json()["message"][0].startswith("new_password:")

    def test_change_password_requires_session(self, harness):
        resp = harness.client.patch(
            "/api/v1/user/password",
            json={"current_password": ALICE_PASSWORD, "new_password": "a-brand-new-password"},
        )
        assert resp.status_code == 401


def test_unknown_route_uses_envelope(harness):
    resp = harness.client.get("/api/v1/does-not-exist")
    assert resp.status_code == 404
    _assert_envelope(resp, 404, "Not Found")


# ---------------------------------------------------------------------------
# Store calls stay off the event loop
# ---------------------------------------------------------------------------


def _record_thread(calls: list, method):
    """Wrap a store method to note whether it ran on the event loop thread."""

    def wrapper(*args, **kwargs):
        try:
            asyncio.get_running_loop()
            calls.append("loop")
        except RuntimeError:
            calls.append("worker")
        return method(*args, **kwargs)

    return wrapper


class TestStoreCallsRunInWorkerThreads:
    def test_get_user(self, harness):
        harness.login()
        calls = []
        with patch.object(harness.store, "get_by_id", _record_thread(calls, harness.store.get_by_id)):
            assert harness.client.get("/api/v1/user").status_code == 200
        assert calls == ["worker"]

    def test_register(self, harness):
        calls = []
        with patch.object(harness.store, "get_by_id", _record_thread(calls, harness.store.get_by_id)):
            resp = harness.client.post(
                "/api/v1/auth/register",
                json={"identifier": "bob@example.com", "password": "long-enough-password"},
            )
        assert resp.status_code == 201
        assert calls == ["worker"]

    def test_change_password(self, harness):
        harness.login()
        calls = []
        with patch.object(
            harness.store, "get_by_id", _record_thread(calls, harness.store.get_by_id)
        ), patch.object(harness.store, "update_password", _record_thread(calls, harness.store.update_password)):
            resp = harness.client.patch(
                "/api/v1/user/password",
                json={"current_password": ALICE_PASSWORD, "new_password": "a-brand-new-password"},
                headers=harness.csrf(),
            )
        assert resp.status_code == 200
        assert calls == ["worker", "worker"]
