"""
tests/conftest.py -- Shared test fixtures for Gatehouse integration tests.

This module provides:
  - make_settings(): Settings with a fixed secret and test-friendly limits
  - make_store(): isolated named shared-memory SQLite credential store
  - _patch_lifespan(): builds the real services inside the test event loop
    and wires them into app.state, bypassing the production lifespan
  - gatehouse: factory fixture returning a Harness (client + services)
  - harness: a Harness with default settings; Harness.csrf() returns the
    X-CSRF-Token header a browser client would send after login

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because route handlers run store calls in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.

Every test gets a fresh app state: rate-limit counters, sessions, and
credentials never leak between tests.

The DEBUG env var must be set before any core import so get_settings() can
auto-generate SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import ExitStack, asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set DEBUG before any core/auth import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.admission import build_pipeline
from api.main import app
from auth.csrf import CSRF_COOKIE, CSRF_HEADER
from auth.guards import IdentityResolver
from auth.passwords import hash_password
from auth.sessions import InMemorySessionStore
from auth.store import CredentialStore
from auth.tokens import TokenService
from core.config import Settings
from ratelimit.limiter import RateLimiter, build_storage

TEST_SECRET = "test-secret-key-" + "x" * 48
ALICE = "alice@example.com"
ALICE_PASSWORD = "correct-horse-battery"
# bcrypt is deliberately slow; hash once per session, not once per test.
ALICE_HASH = hash_password(ALICE_PASSWORD)


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": TEST_SECRET,
        "session_ttl_seconds": 900,
        "token_expire_seconds": 3600,
        "default_rate_limit": "60/minute",
        "auth_rate_limit": "10/minute",
        "rate_limit_storage_uri": "memory://",
        "session_store_url": "",
    }
    values.update(overrides)
    return Settings(**values)


def make_store() -> CredentialStore:
    name = uuid.uuid4().hex
    return CredentialStore(f"sqlite:///file:test_auth_{name}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(settings: Settings, store: CredentialStore):
    """Return a lifespan that builds real services inside the client's event loop.

    The limits memory storage and the session store are created here rather
    than in the fixture so they belong to the loop that serves requests.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.credentials = store
        app.state.sessions = InMemorySessionStore(settings.session_ttl_seconds)
        app.state.tokens = TokenService(settings.secret_key, default_ttl=settings.token_expire_seconds)
        app.state.limiter = RateLimiter(build_storage(settings.rate_limit_storage_uri))
        app.state.pipeline = build_pipeline(
            settings,
            app.state.limiter,
            IdentityResolver(app.state.sessions, app.state.tokens),
        )
        app.state.purge_task = None
        yield

    return test_lifespan


@dataclass
class Harness:
    client: TestClient
    settings: Settings
    store: CredentialStore
    subject_id: int

    @property
    def sessions(self) -> InMemorySessionStore:
        return self.client.app.state.sessions

    @property
    def tokens(self) -> TokenService:
        return self.client.app.state.tokens

    def login(self, identifier: str = ALICE, password: str = ALICE_PASSWORD):
        return self.client.post("/api/v1/auth/login", json={"identifier": identifier, "password": password})

    def csrf(self) -> dict[str, str]:
        """X-CSRF-Token header echoing the csrf_token cookie set at login."""
        return {CSRF_HEADER: self.client.cookies.get(CSRF_COOKIE, "")}

    def bearer(self, identifier: str = ALICE, password: str = ALICE_PASSWORD) -> dict[str, str]:
        resp = self.client.post("/api/v1/auth/token", json={"identifier": identifier, "password": password})
        assert resp.status_code == 200, resp.text
        return {"Authorization": f"Bearer {resp.json()['access_token']}"}


@pytest.fixture
def gatehouse() -> Generator:
    """Yield a factory: gatehouse(**settings_overrides) -> Harness.

    raise_server_exceptions=False lets a test see the 500 envelope an
    unhandled error turns into instead of the error itself. Each call builds an isolated credential store seeded with ALICE and a
    TestClient running the real app under a patched lifespan.
    """
    with ExitStack() as stack:

        def factory(raise_server_exceptions: bool = True, **overrides) -> Harness:
            settings = make_settings(**overrides)
            store = make_store()
            stack.callback(store.close)
            subject_id = store.create_subject(ALICE, ALICE_HASH)
            app.router.lifespan_context = _patch_lifespan(settings, store)
            client = stack.enter_context(TestClient(app, raise_server_exceptions=raise_server_exceptions))
            return Harness(client=client, settings=settings, store=store, subject_id=subject_id)

        yield factory


@pytest.fixture
def harness(gatehouse) -> Harness:
    return gatehouse()


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    """Isolated credential store seeded with ALICE (subject id 1)."""
    s = make_store()
    s.create_subject(ALICE, ALICE_HASH)
    yield s
    s.close()
