"""
tests/conftest.py -- Shared test fixtures for the SSO service.

This module provides:
  - make_store(): an isolated in-memory UserStore
  - OrcidSimulator: a fake ORCID token endpoint behind httpx.MockTransport
  - _patch_lifespan(): wires test collaborators into app.state, bypassing real startup
  - client: TestClient with follow_redirects=False for login and session tests
  - login: runs the two-stage ORCID login through the client

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool and the session
resolver calls the store through asyncio.to_thread(). Plain :memory: DBs are
per-connection and would present a blank schema to each worker thread.

DEBUG and ENVIRONMENT must be set before any api/auth/core import so
get_settings() auto-generates SECRET_KEY and cookies are not marked Secure
(TestClient talks plain http://testserver).
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from urllib.parse import parse_qs

# CRITICAL: Set before any api/auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ENVIRONMENT", "local")
os.environ.setdefault("ORCID_CLIENT_ID", "APP-TESTCLIENT0001")
os.environ.setdefault("ORCID_CLIENT_SECRET", "test-client-secret")

import httpx
import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, build_resolver
from auth.cookies import CookieBinding
from auth.oauth import OrcidExchange
from auth.store import UserStore
from auth.tokens import TokenCodec
from core.config import get_settings

ORCID_BASE = "https://orcid.test"

JANE_ORCID = "0000-0001-2345-6789"
BOB_ORCID = "0000-0002-1825-0097"

ORCID_USERS = {
    "code-jane": {"orcid": JANE_ORCID, "name": "Jane Doe"},
    "code-bob": {"orcid": BOB_ORCID, "given_name": "Bob", "family_name": "Smith"},
}


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_store() -> UserStore:
    """Create an isolated named shared-memory SQLite store.

    The uuid suffix keeps every test on its own database even though the
    shared cache lives for the whole process.
    """
    return UserStore(db_url=f"sqlite:///file:test_sso_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


# ---------------------------------------------------------------------------
# ORCID simulator
# ---------------------------------------------------------------------------


class OrcidSimulator:
    """Answers POST /oauth/token the way ORCID does, without the network.

    Known codes return the matching token response; anything else gets the
    OAuth error ORCID sends for a bad or reused code. Set `status` to make
    every call fail with that HTTP status.
    """

    def __init__(self, users: dict | None = None) -> None:
        self.users = dict(ORCID_USERS if users is None else users)
        self.requests: list[httpx.Request] = []
        self.status: int | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status is not None:
            return httpx.Response(self.status, text="ORCID is down for maintenance")
        if request.url.path != "/oauth/token":
            return httpx.Response(404)
        form = parse_qs(request.content.decode())
        code = form.get("code", [""])[0]
        user = self.users.get(code)
        if user is None:
            return httpx.Response(
                400,
                json={"error": "invalid_grant", "error_description": "Invalid authorization code"},
            )
        return httpx.Response(
            200,
            json={
                "access_token": f"access-{code}",
                "token_type": "bearer",
                "expires_in": 631138518,
                "scope": "/authenticate",
                **user,
            },
        )

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def exchange(self) -> OrcidExchange:
        return OrcidExchange(
            client_id="APP-TESTCLIENT0001",
            client_secret="test-client-secret",
            base_url=ORCID_BASE,
            transport=self.transport(),
        )


# ---------------------------------------------------------------------------
# App wiring
# ---------------------------------------------------------------------------


def _patch_lifespan(store: UserStore, orcid: OrcidSimulator):
    """Return an async context manager that replaces the real lifespan.

    Mirrors api.main.lifespan but with the in-memory store and the ORCID
    simulator, so no test touches sso.db or orcid.org.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        settings = get_settings()
        codec = TokenCodec(settings.secret_key, settings.token_ttl_seconds)
        app.state.user_store = store
        app.state.token_codec = codec
        app.state.cookie_binding = CookieBinding.from_settings(settings)
        app.state.resolver = build_resolver(store, orcid.exchange(), codec)
        yield

    return test_lifespan


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def orcid() -> OrcidSimulator:
    return OrcidSimulator()


@pytest.fixture
def client(store: UserStore, orcid: OrcidSimulator) -> Generator[TestClient, None, None]:
    """TestClient against the real app with isolated collaborators.

    follow_redirects=False is essential: login tests assert on redirect
    Location headers, which disappear once the client follows them.
    """
    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(store, orcid)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as c:
        yield c


@pytest.fixture
def login(client: TestClient) -> Callable[..., httpx.Response]:
    """Return a helper that runs stage1 then stage2 and returns the stage2 response."""

    def _login(code: str = "code-jane", redirect: str = "/home") -> httpx.Response:
        resp = client.get("/auth/v1/stage1", params={"redirect": redirect})
        assert resp.status_code == 302, resp.text
        state = parse_qs(httpx.URL(resp.headers["location"]).query.decode())["state"][0]
        return client.get("/auth/v1/stage2", params={"code": code, "state": state})

    return _login
