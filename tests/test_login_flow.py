"""
tests/test_login_flow.py -- Integration tests for the two-stage ORCID login.

These tests run stage1 -> stage2 through the real ASGI stack with the ORCID
simulator standing in for orcid.org. The client does not follow redirects so
Location headers and Set-Cookie values can be asserted directly.

Coverage:
  - stage1 redirects to ORCID with a state that stage2 must echo
  - stage2 sets the session cookie and redirects to the saved path
  - wrong, missing, or replayed state -> 400 and no ORCID call
  - ORCID rejection -> 401; ORCID outage -> 503; no cookie in either case
  - open-redirect prevention on the post-login target
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import httpx
from fastapi.testclient import TestClient

from auth.cookies import COOKIE_NAME


def _set_cookie_headers(resp: httpx.Response) -> list[str]:
    return resp.headers.get_list("set-cookie")


def _has_session_cookie(resp: httpx.Response) -> bool:
    return any(h.startswith(f"{COOKIE_NAME}=") for h in _set_cookie_headers(resp))


class TestStage1:
    def test_redirects_to_orcid_authorize(self, client: TestClient) -> None:
        resp = client.get("/auth/v1/stage1")
        assert resp.status_code == 302
        location = urlparse(resp.headers["location"])
        assert location.netloc == "orcid.test"
        assert location.path == "/oauth/authorize"
        params = parse_qs(location.query)
        assert params["redirect_uri"] == ["http://testserver/auth/v1/stage2"]
        assert params["state"][0]
        assert resp.headers["cache-control"] == "no-store"

    def test_each_login_gets_a_fresh_state(self, client: TestClient) -> None:
        states = set()
        for _ in range(3):
            location = client.get("/auth/v1/stage1").headers["location"]
            states.add(parse_qs(urlparse(location).query)["state"][0])
        assert len(states) == 3


class TestStage2:
    def test_successful_login_sets_cookie_and_redirects(self, client: TestClient, login) -> None:
        resp = login(redirect="/proposals/42")
        assert resp.status_code == 302, resp.text
        assert resp.headers["location"] == "/proposals/42"
        assert _has_session_cookie(resp)
        cookie = next(h for h in _set_cookie_headers(resp) if h.startswith(f"{COOKIE_NAME}="))
        assert "httponly" in cookie.lower()
        assert "samesite=lax" in cookie.lower()

        me = client.get("/api/v1/whoami")
        assert me.status_code == 200
        body = me.json()
        assert body["type"] == "standard"
        assert body["profile"]["orcidId"] == "0000-0001-2345-6789"
        assert body["profile"]["creditName"] == "Jane Doe"
        assert body["role"] == {"type": "standard", "scope": None}

    def test_repeat_login_keeps_the_same_account(self, client: TestClient, login) -> None:
        login()
        first = client.get("/api/v1/whoami").json()["id"]
        client.cookies.clear()
        login()
        assert client.get("/api/v1/whoami").json()["id"] == first

    def test_wrong_state_is_rejected_without_calling_orcid(self, client: TestClient, orcid) -> None:
        client.get("/auth/v1/stage1")
        resp = client.get("/auth/v1/stage2", params={"code": "code-jane", "state": "forged"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "csrf_mismatch"
        assert not _has_session_cookie(resp)
        assert orcid.requests == []

    def test_callback_without_stage1_is_rejected(self, client: TestClient, orcid) -> None:
        resp = client.get("/auth/v1/stage2", params={"code": "code-jane", "state": "anything"})
        assert resp.status_code == 400
        assert orcid.requests == []

    def test_state_is_single_use(self, client: TestClient) -> None:
        location = client.get("/auth/v1/stage1").headers["location"]
        state = parse_qs(urlparse(location).query)["state"][0]
        assert client.get("/auth/v1/stage2", params={"code": "code-jane", "state": state}).status_code == 302
        replay = client.get("/auth/v1/stage2", params={"code": "code-jane", "state": state})
        assert replay.status_code == 400

    def test_rejected_code_is_401(self, client: TestClient, login) -> None:
        resp = login(code="code-stolen")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "login_failed"
        assert not _has_session_cookie(resp)
        assert resp.headers["cache-control"] == "no-store"

    def test_orcid_outage_is_503(self, client: TestClient, orcid, login) -> None:
        orcid.status = 503
        resp = login()
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "provider_unavailable"
        assert not _has_session_cookie(resp)


class TestOpenRedirect:
    """Security: the post-login target is always a relative path."""

    def test_absolute_url_falls_back_to_root(self, client: TestClient, login) -> None:
        resp = login(redirect="https://evil.example.com/phish")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"

    def test_protocol_relative_url_falls_back_to_root(self, client: TestClient, login) -> None:
        resp = login(redirect="//evil.example.com")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
