"""
api/main.py -- FastAPI application for the SSO service.

Run with:  uvicorn asgi:app --reload

Request path through the middleware (outermost first):
  log_requests       one line per request: method, path, status, latency, client
  SessionMiddleware  signed cookie that carries the OAuth state from stage1 to stage2
  SlowAPIMiddleware  per-route limits declared with @limiter.limit()

The lifespan builds every collaborator once and parks it on app.state:
  user_store      auth.store.UserStore
  token_codec     auth.tokens.TokenCodec
  cookie_binding  auth.cookies.CookieBinding
  resolver        auth.session.SessionResolver
Tests swap the lifespan for one that injects an in-memory store and a
simulated ORCID (see tests/conftest.py).

Every error leaves through _error() so clients always see
{"error": {"code": ..., "message": ..., "detail": ...}}.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.login import router as login_router
from auth.cookies import CookieBinding
from auth.oauth import OrcidExchange
from auth.session import SessionResolver
from auth.store import PersistenceError, UserStore
from auth.tokens import TokenCodec
from core.config import get_settings

__version__ = "0.1.0"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sso.api")

_settings = get_settings()


def build_resolver(store: UserStore, exchange: OrcidExchange, codec: TokenCodec) -> SessionResolver:
    """SessionResolver with the configured provider and persistence deadlines."""
    return SessionResolver(
        exchange=exchange,
        store=store,
        codec=codec,
        provider_timeout=_settings.provider_timeout_seconds,
        persistence_timeout=_settings.persistence_timeout_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("Starting SSO service (environment=%s)", _settings.environment.value)
    if not _settings.orcid_client_id:
        logger.warning("ORCID_CLIENT_ID is empty; ORCID will reject every login")

    store = UserStore(_settings.database_url)
    codec = TokenCodec(_settings.secret_key, _settings.token_ttl_seconds)
    app.state.user_store = store
    app.state.token_codec = codec
    app.state.cookie_binding = CookieBinding.from_settings(_settings)
    app.state.resolver = build_resolver(store, OrcidExchange.from_settings(_settings), codec)
    try:
        yield
    finally:
        store.close()
        logger.info("SSO service stopped")


app = FastAPI(
    title="SSO API",
    description="ORCID single sign-on: login, session cookies, and access checks.",
    version=__version__,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    session_cookie="sso_login",
    max_age=600,  # a login that takes longer than ten minutes starts over
    same_site="lax",
    https_only=_settings.secure_cookies,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "%s %s -> %d in %.1fms (%s)",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000,
        request.client.host if request.client else "-",
    )
    return response


app.include_router(login_router, prefix="/auth/v1", tags=["Login"])
app.include_router(auth_router, prefix="/api/v1", tags=["Session"])


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: Optional[str] = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Routes raise HTTPException with a {"code", "message"} dict; pass it through as the error."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    resp = _error(429, "rate_limited", "Too many requests.", str(exc))
    resp.headers["Retry-After"] = str(int(getattr(exc, "retry_after", 60)))
    return resp


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    """The store failed mid-request. Fatal for this request; the client may retry later."""
    logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
    return _error(503, "persistence_failed", "The service is temporarily unavailable.")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort. The traceback goes to the log, never into the response."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Liveness plus a trivial database round trip. No authentication."""
    store: UserStore = request.app.state.user_store
    db_ok = store.ping()
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=__version__,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
