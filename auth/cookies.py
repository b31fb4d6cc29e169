"""
auth/cookies.py -- Carries the session token in an HTTP cookie.

Cookie attributes:
  httponly=True: JS cannot read the cookie (XSS mitigation).
  samesite="lax": the browser comes back from ORCID via a top-level GET
      redirect, which Lax allows; Strict would drop the cookie on that hop.
  secure: on everywhere except the local environment.
  domain: COOKIE_DOMAIN. The CORS-allowed origin has to end with the same
      suffix or cross-origin callers never see the cookie. That agreement is
      deployment configuration and is not checked here.
  max_age: same as the token TTL so cookie and token expire together.

An absent cookie is not an error. read() returns None and the caller decides
whether an anonymous request is acceptable.

Layer rule: no imports from api/. Response is any Starlette response.
"""

from __future__ import annotations

from collections.abc import Mapping

from starlette.responses import Response

from core.config import Settings

COOKIE_NAME = "sso_session"


class CookieBinding:
    def __init__(self, domain: str, secure: bool, max_age: int) -> None:
        self.domain = domain or None
        self.secure = secure
        self.max_age = max_age

    @classmethod
    def from_settings(cls, settings: Settings) -> "CookieBinding":
        return cls(
            domain=settings.cookie_domain,
            secure=settings.secure_cookies,
            max_age=settings.token_ttl_seconds,
        )

    def write(self, response: Response, token: str) -> None:
        response.set_cookie(
            COOKIE_NAME,
            value=token,
            max_age=self.max_age,
            path="/",
            domain=self.domain,
            secure=self.secure,
            httponly=True,
            samesite="lax",
        )

    def read(self, cookies: Mapping[str, str]) -> str | None:
        return cookies.get(COOKIE_NAME) or None

    def clear(self, response: Response) -> None:
        # Domain and path must match the original Set-Cookie or the browser keeps it.
        response.delete_cookie(
            COOKIE_NAME,
            path="/",
            domain=self.domain,
            secure=self.secure,
            httponly=True,
            samesite="lax",
        )
