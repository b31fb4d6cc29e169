"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. Session cookie ("sso_session") -- set by the ORCID login flow.
  2. Authorization: Bearer <token> header -- services and API clients.

Both converge on a User after the token is verified and the claim is
resolved against the store.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_access(level) wraps get_current_user() and raises HTTP 403 when the
user's acting role is below `level`.

Responses never say WHY a session was rejected or WHICH role was missing.
The detail goes to the server log only.

Layer rule: may import from fastapi (Depends/HTTPException/Request) because
this module is part of the FastAPI dependency injection system. Collaborators
are read from app.state, wired by the lifespan in api/main.py.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from fastapi import HTTPException, Request

from auth.access import Access, verify_access
from auth.cookies import CookieBinding
from auth.models import User
from auth.session import SessionResolver
from auth.tokens import TokenCodec

logger = logging.getLogger("sso.auth")


def request_token(request: Request) -> str | None:
    """Return the raw session token from the cookie or Bearer header, if any."""
    cookies: CookieBinding = request.app.state.cookie_binding
    token = cookies.read(request.cookies)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip() or None
    return token


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request. Returns None for anonymous or invalid sessions; never raises 401."""
    codec: TokenCodec = request.app.state.token_codec
    resolver: SessionResolver = request.app.state.resolver

    claim = codec.verify_or_none(request_token(request), datetime.now(timezone.utc))
    if claim is None:
        return None
    return resolver.resolve_claim(claim)


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "session_invalid", "message": "Authentication required."},
        )
    return user


def require_access(required: Access) -> Callable[[Request], User]:
    """Build a dependency that admits users whose acting role grants at least `required`.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        async def route(user: User = Depends(require_access(Access.ADMIN))): ...
    """

    def dependency(request: Request) -> User:
        user = get_current_user(request)
        denied = verify_access(user, required)
        if denied is not None:
            logger.warning("Access denied on %s %s: %s", request.method, request.url.path, denied)
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Access denied."},
            )
        return user

    return dependency
