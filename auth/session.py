"""
auth/session.py -- Turns an ORCID callback into a signed session.

One login walks this state machine:

    START -> AWAITING_CALLBACK -> EXCHANGING -> RESOLVING -> ISSUING -> COMPLETE

and may stop early in one of four terminal failures:

    CSRF_MISMATCH       state from the callback != state recorded at begin()
    EXCHANGE_FAILED     ORCID rejected the code or could not be reached
    PERSISTENCE_FAILED  the store failed or missed its deadline
    ISSUANCE_FAILED     the token could not be signed

complete() never raises for these; it returns a LoginResult whose `outcome`
gives the HTTP status and error code for each failure. A token exists only
after the store has answered, so a callback abandoned mid-flight leaves
nothing behind except the recorded state, which dies with the browser session.

Blocking work: the ORCID call is awaited; the store call runs in a worker
thread. Both are bounded by caller-supplied deadlines and neither is retried
here.

Diagnostics that belong to one request carry an explicit LoginContext rather
than relying on any ambient global.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from jose.exceptions import JOSEError

from auth.access import with_acting_role
from auth.models import GuestUser, ServiceUser, StandardRole, StandardUser, User
from auth.oauth import ExchangeError, OrcidExchange, new_state, states_match
from auth.store import PersistenceError, UserStore
from auth.tokens import SessionClaim, TokenCodec

logger = logging.getLogger("sso.auth.session")


class SessionState(str, Enum):
    START = "start"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    RESOLVING = "resolving"
    ISSUING = "issuing"
    COMPLETE = "complete"
    CSRF_MISMATCH = "csrf_mismatch"
    EXCHANGE_FAILED = "exchange_failed"
    PERSISTENCE_FAILED = "persistence_failed"
    ISSUANCE_FAILED = "issuance_failed"


@dataclass(frozen=True)
class LoginOutcome:
    status_code: int
    code: str
    message: str


_FAILURE_OUTCOMES = {
    SessionState.CSRF_MISMATCH: LoginOutcome(400, "csrf_mismatch", "Login state did not match. Please try again."),
    SessionState.EXCHANGE_FAILED: LoginOutcome(401, "login_failed", "ORCID login failed. Please try again."),
    SessionState.PERSISTENCE_FAILED: LoginOutcome(503, "persistence_failed", "Login is temporarily unavailable."),
    SessionState.ISSUANCE_FAILED: LoginOutcome(500, "issuance_failed", "Could not start a session."),
}

_PROVIDER_UNAVAILABLE = LoginOutcome(503, "provider_unavailable", "ORCID is unavailable. Please try again later.")


@dataclass(frozen=True)
class LoginContext:
    """Request-scoped values for diagnostics."""

    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


@dataclass(frozen=True)
class LoginRedirect:
    state: str
    url: str


@dataclass(frozen=True)
class LoginResult:
    state: SessionState
    path: tuple[SessionState, ...]
    user: StandardUser | None = None
    token: str | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.state is SessionState.COMPLETE

    @property
    def outcome(self) -> LoginOutcome | None:
        """HTTP status and error code for a failed login; None on success."""
        if self.ok:
            return None
        if isinstance(self.error, ExchangeError) and self.error.retryable:
            return _PROVIDER_UNAVAILABLE
        return _FAILURE_OUTCOMES[self.state]


class SessionResolver:
    """Runs ORCID login and rebuilds users from verified session claims."""

    def __init__(
        self,
        exchange: OrcidExchange,
        store: UserStore,
        codec: TokenCodec,
        default_role: StandardRole | None = None,
        provider_timeout: float | None = None,
        persistence_timeout: float | None = None,
    ) -> None:
        self.exchange = exchange
        self.store = store
        self.codec = codec
        self.default_role = default_role or StandardRole()
        self.provider_timeout = provider_timeout
        self.persistence_timeout = persistence_timeout

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def begin(self, redirect_uri: str) -> LoginRedirect:
        """Start a login. The caller must record `state` and hand it back to complete()."""
        state = new_state()
        return LoginRedirect(state=state, url=self.exchange.build_authorization_url(state, redirect_uri))

    async def complete(
        self,
        code: str | None,
        state: str | None,
        expected_state: str | None,
        redirect_uri: str,
        now: datetime,
        ctx: LoginContext | None = None,
    ) -> LoginResult:
        ctx = ctx or LoginContext()
        path = [SessionState.START, SessionState.AWAITING_CALLBACK]

        def fail(terminal: SessionState, error: Exception | None = None) -> LoginResult:
            path.append(terminal)
            return LoginResult(state=terminal, path=tuple(path), error=error)

        if not states_match(expected_state, state):
            logger.warning("[%s] OAuth state mismatch on callback", ctx.request_id)
            return fail(SessionState.CSRF_MISMATCH)

        path.append(SessionState.EXCHANGING)
        try:
            profile = await self.exchange.exchange_code(code or "", redirect_uri, timeout=self.provider_timeout)
        except ExchangeError as exc:
            logger.warning("[%s] ORCID exchange failed (%s)", ctx.request_id, exc.kind.value)
            return fail(SessionState.EXCHANGE_FAILED, exc)

        path.append(SessionState.RESOLVING)
        try:
            record = await asyncio.wait_for(
                asyncio.to_thread(self.store.upsert, profile, self.default_role),
                timeout=self.persistence_timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("[%s] Store upsert for %s exceeded deadline", ctx.request_id, profile.orcid_id)
            return fail(SessionState.PERSISTENCE_FAILED, exc)
        except PersistenceError as exc:
            logger.error("[%s] Store upsert for %s failed: %s", ctx.request_id, profile.orcid_id, exc)
            return fail(SessionState.PERSISTENCE_FAILED, exc)

        user = record.to_user()
        path.append(SessionState.ISSUING)
        try:
            token = self.codec.issue(user, now)
        except (JOSEError, TypeError, ValueError) as exc:
            logger.exception("[%s] Could not sign session for standard user %s", ctx.request_id, user.id)
            return fail(SessionState.ISSUANCE_FAILED, exc)

        path.append(SessionState.COMPLETE)
        logger.info("[%s] Standard user %s logged in as %s", ctx.request_id, user.id, user.role)
        return LoginResult(state=SessionState.COMPLETE, path=tuple(path), user=user, token=token)

    # ------------------------------------------------------------------
    # Existing sessions
    # ------------------------------------------------------------------

    def resolve_claim(self, claim: SessionClaim) -> User | None:
        """Rebuild the caller from a verified claim, or None if the account is gone.

        Standard users are re-read from the store so role changes and profile
        refreshes take effect without re-login. A token whose acting role has
        since been taken away resolves to None.
        """
        if claim.type == "guest":
            return claim.to_user() if self.store.guest_exists(claim.user_id) else None
        if claim.type == "service":
            return claim.to_user()
        record = self.store.get_standard(claim.user_id)
        if record is None:
            return None
        user = record.to_user()
        if claim.role not in user.assumable_roles:
            logger.info("Standard user %s no longer holds role %s", user.id, claim.role)
            return None
        return with_acting_role(user, claim.role)

    def new_guest(self) -> GuestUser:
        return GuestUser(self.store.create_guest())

    def issue(self, user: GuestUser | ServiceUser | StandardUser, now: datetime) -> str:
        return self.codec.issue(user, now)
