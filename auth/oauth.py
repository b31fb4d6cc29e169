"""
auth/oauth.py -- ORCID authorization-code exchange.

Flow (three-legged OAuth 2.0):
  1. build_authorization_url() -- the browser is sent to ORCID with an opaque
     `state` value the caller generated with new_state() and stored.
  2. ORCID redirects back with ?code=...&state=....
  3. The caller checks states_match() BEFORE calling exchange_code().
  4. exchange_code() posts the code to ORCID's token endpoint, server to
     server, and normalizes the response into an OrcidProfile.

Security notes:
  The profile always comes from the token endpoint response. Nothing the
  browser sends is trusted as identity data.

  State comparison uses hmac.compare_digest so a mismatch leaks no timing.

  ORCID returns the iD and name directly in the token response:
      {"access_token": "...", "token_type": "bearer", "scope": "/authenticate",
       "name": "Jane Doe", "orcid": "0000-0001-2345-6789"}

Failure kinds (ExchangeError.kind):
  INVALID_CODE         -- ORCID answered with an OAuth error (bad/expired/reused code).
  PROVIDER_UNAVAILABLE -- transport failure, 5xx, or the caller's deadline ran out.
                          The only kind a caller may retry; backoff is theirs.
  MALFORMED_RESPONSE   -- the response is not JSON or has no valid ORCID iD.

One outbound request per exchange_code() call. No retries here.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import secrets
from enum import Enum

import httpx
from authlib.integrations.base_client import OAuthError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.oauth2.rfc6749.parameters import prepare_grant_uri

from auth.models import OrcidProfile
from core.config import Settings

logger = logging.getLogger("sso.auth.oauth")

_SCOPE = "/authenticate"


class ExchangeErrorKind(str, Enum):
    INVALID_CODE = "invalid_code"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    MALFORMED_RESPONSE = "malformed_response"


class ExchangeError(Exception):
    def __init__(self, kind: ExchangeErrorKind, message: str) -> None:
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind is ExchangeErrorKind.PROVIDER_UNAVAILABLE


def new_state() -> str:
    """Return a fresh anti-CSRF state value (256 bits from the OS CSPRNG)."""
    return secrets.token_urlsafe(32)


def states_match(expected: str | None, received: str | None) -> bool:
    if not expected or not received:
        return False
    return hmac.compare_digest(expected.encode(), received.encode())


def _raise_for_server_error(resp: httpx.Response) -> httpx.Response:
    # authlib would try to parse a 5xx body as a token; surface it as a transport failure instead.
    if resp.status_code >= 500:
        resp.raise_for_status()
    return resp


class OrcidExchange:
    """Talks to ORCID's authorize and token endpoints.

    transport is only set by tests and the ORCID simulator; production uses
    httpx's default network transport.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str = "https://orcid.org",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._base_url = base_url.rstrip("/")
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> "OrcidExchange":
        return cls(
            client_id=settings.orcid_client_id,
            client_secret=settings.orcid_client_secret,
            base_url=settings.orcid_base_url,
            transport=transport,
        )

    @property
    def authorize_url(self) -> str:
        return f"{self._base_url}/oauth/authorize"

    @property
    def token_url(self) -> str:
        return f"{self._base_url}/oauth/token"

    def _client(self, redirect_uri: str) -> AsyncOAuth2Client:
        client = AsyncOAuth2Client(
            client_id=self._client_id,
            client_secret=self._client_secret,
            token_endpoint_auth_method="client_secret_post",
            scope=_SCOPE,
            redirect_uri=redirect_uri,
            transport=self._transport,
        )
        client.register_compliance_hook("access_token_response", _raise_for_server_error)
        return client

    def build_authorization_url(self, state: str, redirect_uri: str) -> str:
        """Return the ORCID authorize URL. Same inputs always give the same URL.

        Pure string formatting: no HTTP client is opened for stage1.
        """
        return prepare_grant_uri(
            self.authorize_url,
            client_id=self._client_id,
            response_type="code",
            redirect_uri=redirect_uri,
            scope=_SCOPE,
            state=state,
        )

    async def exchange_code(self, code: str, redirect_uri: str, timeout: float | None = None) -> OrcidProfile:
        """Trade an authorization code for the caller's ORCID profile.

        Args:
            code:         The ?code= value from the callback.
            redirect_uri: Must equal the redirect_uri used to build the authorize URL.
            timeout:      Deadline in seconds for the whole exchange. None means no deadline.

        Raises:
            ExchangeError: INVALID_CODE, PROVIDER_UNAVAILABLE, or MALFORMED_RESPONSE.
        """
        if not code:
            raise ExchangeError(ExchangeErrorKind.INVALID_CODE, "empty authorization code")

        try:
            async with self._client(redirect_uri) as client:
                token = await asyncio.wait_for(
                    client.fetch_token(self.token_url, code=code, redirect_uri=redirect_uri),
                    timeout=timeout,
                )
        except OAuthError as exc:
            logger.warning("ORCID rejected authorization code: %s", exc)
            raise ExchangeError(ExchangeErrorKind.INVALID_CODE, str(exc)) from exc
        except asyncio.TimeoutError as exc:
            logger.error("ORCID token exchange exceeded %.1fs deadline", timeout)
            raise ExchangeError(ExchangeErrorKind.PROVIDER_UNAVAILABLE, "deadline exceeded") from exc
        except httpx.HTTPError as exc:
            logger.error("ORCID token exchange failed: %s", exc)
            raise ExchangeError(ExchangeErrorKind.PROVIDER_UNAVAILABLE, str(exc)) from exc
        except ValueError as exc:
            logger.error("ORCID token response was not JSON: %s", exc)
            raise ExchangeError(ExchangeErrorKind.MALFORMED_RESPONSE, "response is not JSON") from exc

        return normalize_profile(token)


def normalize_profile(token: dict) -> OrcidProfile:
    """Build an OrcidProfile from ORCID's token response.

    Raises:
        ExchangeError: MALFORMED_RESPONSE if the iD is missing or invalid.
    """
    if not isinstance(token, dict):
        raise ExchangeError(ExchangeErrorKind.MALFORMED_RESPONSE, "token response is not an object")

    def _opt(key: str) -> str | None:
        value = token.get(key)
        if not isinstance(value, str):
            return None
        return value.strip() or None

    orcid_id = token.get("orcid")
    try:
        return OrcidProfile(
            orcid_id=orcid_id,
            given_name=_opt("given_name"),
            family_name=_opt("family_name"),
            credit_name=_opt("name"),
            primary_email=_opt("email"),
        )
    except ValueError as exc:
        raise ExchangeError(ExchangeErrorKind.MALFORMED_RESPONSE, f"bad orcid field {orcid_id!r}") from exc
