"""
api/routes/v1/auth.py -- Session and user endpoints.

Routes:
  GET  /api/v1/whoami                 -- identity JSON of the caller (requires auth)
  POST /api/v1/auth-as-guest          -- create a guest user and start a session
  POST /api/v1/set-role               -- switch acting role; re-issues the cookie
  POST /api/v1/refresh-token          -- re-issue a fresh token for the current session
  POST /api/v1/logout                 -- clear the session cookie
  PUT  /api/v1/users/{id}/roles       -- replace a standard user's roles (admin only)

Security:
  [H2] POST /auth-as-guest is rate-limited per IP; every call creates a row.
  [M5] Cache-Control: no-store on responses that carry or set a session.
  Logout only clears the cookie. There is no server-side revocation list; a
  copied token stays valid until its exp claim.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from api.limiter import limiter
from api.models import MessageResponse, RoleSelection
from auth.access import Access, InvalidRoleSelection, with_acting_role
from auth.codec import identity_codec
from auth.cookies import CookieBinding
from auth.dependencies import get_current_user, require_access
from auth.models import StandardId, StandardRole, StandardUser, User
from auth.session import SessionResolver
from core.config import get_settings

logger = logging.getLogger("sso.api.auth")

# Auth policy:
# - GET  /api/v1/whoami:             requires auth (get_current_user)
# - POST /api/v1/auth-as-guest:      public -- this is how anonymous callers get a session
# - POST /api/v1/set-role:           requires auth (get_current_user), standard users only
# - POST /api/v1/refresh-token:      requires auth (get_current_user)
# - POST /api/v1/logout:             public -- clearing a cookie needs no prior auth
# - PUT  /api/v1/users/{id}/roles:   requires Access.ADMIN
router = APIRouter()

_GUEST_RATE_LIMIT = get_settings().guest_rate_limit


class RoleAssignment(BaseModel):
    """Body for PUT /api/v1/users/{id}/roles."""

    model_config = ConfigDict(populate_by_name=True)

    role: RoleSelection
    other_roles: list[RoleSelection] = Field(default_factory=list, alias="otherRoles", max_length=20)


def _session_response(request: Request, user: User, status_code: int = 200) -> JSONResponse:
    """Identity JSON body plus a freshly signed session cookie."""
    resolver: SessionResolver = request.app.state.resolver
    cookies: CookieBinding = request.app.state.cookie_binding
    token = resolver.issue(user, datetime.now(timezone.utc))
    resp = JSONResponse(status_code=status_code, content=identity_codec.encode(user))
    cookies.write(resp, token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _invalid_role() -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={"code": "invalid_role", "message": "That role is not available to you."},
    )


def _user_not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_GUEST_RATE_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth-as-guest", status_code=201)
def auth_as_guest(request: Request) -> JSONResponse:
    """Create a new guest user and start a session for it."""
    resolver: SessionResolver = request.app.state.resolver
    guest = resolver.new_guest()
    logger.info("Created guest user %s", guest.id)
    return _session_response(request, guest, status_code=201)


@router.post("/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Clear the session cookie. The token itself stays valid until it expires."""
    cookies: CookieBinding = request.app.state.cookie_binding
    resp = JSONResponse(content={"message": "Logged out."})
    cookies.clear(resp)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/whoami")
def whoami(current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Return the identity JSON of the authenticated caller."""
    resp = JSONResponse(content=identity_codec.encode(current_user))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/set-role")
def set_role(request: Request, body: RoleSelection, current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Act as a different one of the caller's roles. Standard users only."""
    if not isinstance(current_user, StandardUser):
        raise _invalid_role()
    try:
        user = with_acting_role(current_user, StandardRole(body.type, body.scope))
    except InvalidRoleSelection as exc:
        logger.info("Rejected role switch: %s", exc)
        raise _invalid_role() from exc
    return _session_response(request, user)


@router.post("/refresh-token")
def refresh_token(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Re-issue the session token with a new expiry, keeping the acting role."""
    return _session_response(request, current_user)


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.put("/users/{user_id}/roles")
def assign_roles(
    request: Request,
    user_id: int,
    body: RoleAssignment,
    current_user: User = Depends(require_access(Access.ADMIN)),
) -> JSONResponse:
    """Replace a standard user's primary and other roles."""
    resolver: SessionResolver = request.app.state.resolver
    target = StandardId(user_id)
    primary = StandardRole(body.role.type, body.role.scope)
    others = [StandardRole(r.type, r.scope) for r in body.other_roles]
    if not resolver.store.set_roles(target, primary, others):
        raise _user_not_found()
    logger.info("%s set roles of standard user %s to %s + %s", current_user.id, target, primary, others)
    record = resolver.store.get_standard(target)
    if record is None:
        # Deleted between the update and the re-read.
        raise _user_not_found()
    return JSONResponse(content=identity_codec.encode(record.to_user()))
