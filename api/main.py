"""
api/main.py -- FastAPI application entry point for the OpsDesk auth service.

Run with:  uvicorn asgi:app --reload
           python main.py serve

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins

Lifespan opens the credential store, seeds the bootstrap accounts on an
empty database, and builds the authenticators and flow coordinators once.
Route handlers reach them through request.app.state; nothing is global.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from api.models import ActionError, ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.device_flow import DeviceCodeFlowCoordinator
from auth.errors import AuthError, TotpRequired
from auth.federated import FederatedCredentialAdmin, FederatedPasswordAuthenticator
from auth.local import LocalAccountAdmin, LocalAuthenticator, bootstrap_accounts
from auth.oidc import AuthorizationCodeFlowCoordinator
from auth.session import SessionPersistence
from auth.store import CredentialStore
from auth.totp import TotpEnrollment
from core.config import get_settings

VERSION = "0.3.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("opsdesk.api")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def init_services(app: FastAPI, store: CredentialStore) -> None:
    """Attach the store and every service built on it to app.state.

    Split out of lifespan so tests can wire an isolated store the same way.
    """
    settings = get_settings()
    app.state.settings = settings
    app.state.store = store
    app.state.sessions = SessionPersistence(store, settings)
    app.state.local_auth = LocalAuthenticator(store)
    app.state.accounts = LocalAccountAdmin(store)
    app.state.totp = TotpEnrollment(store, settings.totp_issuer)
    app.state.federated = FederatedPasswordAuthenticator(store)
    app.state.federated_admin = FederatedCredentialAdmin(store)
    app.state.device_flow = DeviceCodeFlowCoordinator(store, settings)
    app.state.oidc = AuthorizationCodeFlowCoordinator(store, settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store on startup, close it on shutdown."""
    settings = get_settings()
    logger.info("OpsDesk auth service starting up")
    store = CredentialStore(settings.database_url)
    seeded = bootstrap_accounts(store, settings.bootstrap_admin_password, settings.bootstrap_user_password)
    init_services(app, store)
    logger.info(
        "Auth initialized (bootstrap_seeded=%s, device_flow=%s, oidc=%s)",
        seeded,
        bool(settings.microsoft_client_id),
        bool(settings.microsoft_client_id and settings.microsoft_client_secret and settings.microsoft_tenant_id),
    )

    yield

    app.state.store.close()
    logger.info("OpsDesk auth service shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="OpsDesk Auth API",
    description="Local, Microsoft Entra ID password, device-code and OIDC sign-in with optional TOTP.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://localhost:8080", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render domain failures as {"success": false, "error": message}.

    TotpRequired adds "requires_totp": true so the login form can show the
    code field without a second round of guessing.
    """
    body = ActionError(error=exc.message, requires_totp=True if isinstance(exc, TotpRequired) else None)
    resp = JSONResponse(status_code=exc.status_code, content=body.model_dump(exclude_none=True))
    resp.headers["Cache-Control"] = "no-store"
    return resp


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness, version and whether the credential store answers."""
    store: CredentialStore | None = getattr(request.app.state, "store", None)
    database = "ok" if store is not None and store.ping() else "unavailable"
    return HealthResponse(version=VERSION, database=database)
