"""
api/routes/v1/login.py -- ORCID login endpoints.

Routes:
  GET /auth/v1/stage1?redirect=/path  -- record state, 302 to ORCID
  GET /auth/v1/stage2?code=&state=    -- ORCID callback; set session cookie, 302 back

Security:
  The anti-CSRF state lives in the signed Starlette session cookie between the
  two stages. stage2 pops it before doing anything else, so every state value
  is single-use. A missing or different state is a 400 and no ORCID call is made.
  [C2] The post-login redirect only ever points at a relative path.
  [M5] Cache-Control: no-store on every response that sets or refuses a session.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.models import ErrorDetail, ErrorResponse
from auth.cookies import CookieBinding
from auth.session import LoginContext, SessionResolver

logger = logging.getLogger("sso.api.login")

# Auth policy: both endpoints are public -- they are how a session starts.
router = APIRouter()

_STATE_KEY = "oauth_state"
_NEXT_KEY = "post_login_redirect"


def _safe_next(next_url: Optional[str]) -> str:
    """Validate a post-login redirect target. Only accept relative paths. [C2]

    Rejects absolute URLs (https://attacker.com) and protocol-relative URLs
    (//attacker.com), both of which would send the browser off-site.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//"):
        return next_url
    return "/"


@router.get("/stage1", name="oauth_stage1")
async def stage1(request: Request, redirect: Optional[str] = None) -> RedirectResponse:
    """Start an ORCID login and redirect the browser to ORCID's authorize page."""
    resolver: SessionResolver = request.app.state.resolver
    login = resolver.begin(str(request.url_for("oauth_callback")))
    request.session[_STATE_KEY] = login.state
    request.session[_NEXT_KEY] = _safe_next(redirect)
    resp = RedirectResponse(login.url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/stage2", name="oauth_callback")
async def stage2(request: Request, code: Optional[str] = None, state: Optional[str] = None):
    """Handle the ORCID callback.

    Flow:
      1. Pop the recorded state; compare with ?state= (400 on mismatch).
      2. Exchange ?code= with ORCID server-to-server.
      3. Create or refresh the standard account.
      4. Sign a session token, set the cookie, 302 to the saved redirect.
    """
    resolver: SessionResolver = request.app.state.resolver
    cookies: CookieBinding = request.app.state.cookie_binding

    expected_state = request.session.pop(_STATE_KEY, None)
    next_url = _safe_next(request.session.pop(_NEXT_KEY, None))

    result = await resolver.complete(
        code=code,
        state=state,
        expected_state=expected_state,
        redirect_uri=str(request.url_for("oauth_callback")),
        now=datetime.now(timezone.utc),
        ctx=LoginContext(),
    )

    if not result.ok:
        outcome = result.outcome
        resp = JSONResponse(
            status_code=outcome.status_code,
            content=ErrorResponse(error=ErrorDetail(code=outcome.code, message=outcome.message)).model_dump(),
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    resp = RedirectResponse(next_url, status_code=302)
    cookies.write(resp, result.token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
