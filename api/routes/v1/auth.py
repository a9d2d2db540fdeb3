"""
api/routes/v1/auth.py -- Sign-in, session and two-factor endpoints.

Routes:
  POST /api/v1/auth/login          -- local username/password (+ TOTP); sets local_auth
  POST /api/v1/auth/logout         -- revokes the presented session tokens, clears the cookies
  GET  /api/v1/auth/me             -- current principal (requires auth)
  GET  /api/v1/auth/providers      -- sign-in methods that are configured (public)
  POST /api/v1/auth/totp/setup     -- new pending secret + otpauth URI
  POST /api/v1/auth/totp/enable    -- confirm with a code from the new secret
  POST /api/v1/auth/totp/disable   -- turn 2FA off
  POST /api/v1/auth/federated      -- action "login"; sets federated_auth
  POST /api/v1/auth/device         -- actions "start_device_flow", "poll_token"
  POST /api/v1/auth/oidc           -- actions "initiate", "callback"

Failures raised as AuthError are rendered by the handler in api/main.py as
{"success": false, "error": "..."} with the error's status code. Device-flow
poll outcomes other than Completed are values, returned with 200.

Security:
  Timing equalization lives in the authenticators -- never inline a lookup
  plus verify_password() here.
  Cache-Control: no-store on every response that carries a session token.
  TOTP changes are allowed for an admin on any account, or for a local
  principal on its own account.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.models import (
    ActionError,
    DeviceActionRequest,
    DeviceStartResponse,
    DeviceUserInfo,
    FederatedActionRequest,
    FederatedUserInfo,
    LoginRequest,
    LoginResponse,
    MeResponse,
    OidcActionRequest,
    OidcInitiateResponse,
    OidcUserInfo,
    ProviderInfo,
    SuccessResponse,
    TotpAccountRequest,
    TotpEnableRequest,
    TotpSetupResponse,
)
from auth.dependencies import get_current_principal
from auth.device_flow import Completed, DeviceCodeFlowCoordinator, Pending
from auth.federated import FederatedPasswordAuthenticator
from auth.identity import (
    Principal,
    effective_role,
    from_account,
    from_federated_credential,
    is_admin,
    owns_local_account,
)
from auth.local import LocalAuthenticator
from auth.oauth import get_enabled_providers
from auth.oidc import AuthorizationCodeFlowCoordinator
from auth.session import SessionPersistence
from auth.totp import TotpEnrollment

logger = logging.getLogger("opsdesk.api.auth")

router = APIRouter()


def _invalid_action() -> JSONResponse:
    return JSONResponse(status_code=400, content=ActionError(error="Invalid action").model_dump(exclude_none=True))


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Local login and session
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate a local account.

    401 bodies: {"success": false, "error": ...}, plus "requires_totp": true
    when the password was right and a second factor is needed.
    """
    authenticator: LocalAuthenticator = request.app.state.local_auth
    sessions: SessionPersistence = request.app.state.sessions

    account = authenticator.authenticate(body.username, body.password, body.totp_token)
    principal = from_account(account)
    token = sessions.create_token(principal)
    resp = JSONResponse(
        content=LoginResponse(
            id=account.id,
            username=account.username,
            role=account.role,
            totp_enabled=account.totp_enabled,
            access_token=token,
        ).model_dump()
    )
    sessions.issue(resp, principal, token)
    logger.info("Local sign-in for account %d", account.id)
    return _no_store(resp)


@router.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    sessions: SessionPersistence = request.app.state.sessions
    sessions.revoke(request)
    resp = JSONResponse(content=SuccessResponse().model_dump())
    sessions.clear(resp)
    return resp


@router.get("/auth/me", response_model=MeResponse)
async def me(principal: Principal = Depends(get_current_principal)) -> MeResponse:
    return MeResponse.from_principal(principal, effective_role(principal), is_admin(principal))


@router.get("/auth/providers", response_model=list[ProviderInfo])
async def list_providers(request: Request) -> list[ProviderInfo]:
    """Public -- the login page calls this to decide which buttons to render."""
    return [ProviderInfo(**p) for p in get_enabled_providers(request.app.state.settings)]


# ---------------------------------------------------------------------------
# Two-factor enrollment
# ---------------------------------------------------------------------------


def _require_totp_access(principal: Principal, account_id: int) -> None:
    if not (is_admin(principal) or owns_local_account(principal, account_id)):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "You may only change two-factor settings on your own account."},
        )


@router.post("/auth/totp/setup", response_model=TotpSetupResponse)
def totp_setup(
    request: Request,
    body: TotpAccountRequest,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    _require_totp_access(principal, body.user_id)
    enrollment: TotpEnrollment = request.app.state.totp
    setup = enrollment.setup(body.user_id)
    return _no_store(
        JSONResponse(content=TotpSetupResponse(secret=setup.secret, qr_code_url=setup.enrollment_uri).model_dump())
    )


@router.post("/auth/totp/enable", response_model=SuccessResponse)
def totp_enable(
    request: Request,
    body: TotpEnableRequest,
    principal: Principal = Depends(get_current_principal),
) -> SuccessResponse:
    _require_totp_access(principal, body.user_id)
    request.app.state.totp.enable(body.user_id, body.token)
    return SuccessResponse()


@router.post("/auth/totp/disable", response_model=SuccessResponse)
def totp_disable(
    request: Request,
    body: TotpAccountRequest,
    principal: Principal = Depends(get_current_principal),
) -> SuccessResponse:
    # No code is asked for here; disabling is unconditional for an authorized caller.
    _require_totp_access(principal, body.user_id)
    request.app.state.totp.disable(body.user_id)
    return SuccessResponse()


# ---------------------------------------------------------------------------
# Federated sign-in (action-based)
# ---------------------------------------------------------------------------


@router.post("/auth/federated")
def federated(request: Request, body: FederatedActionRequest) -> JSONResponse:
    if body.action != "login":
        return _invalid_action()
    if not body.email or not body.password:
        return JSONResponse(
            status_code=400,
            content=ActionError(error="Email and password are required").model_dump(exclude_none=True),
        )

    authenticator: FederatedPasswordAuthenticator = request.app.state.federated
    credential = authenticator.authenticate(body.email, body.password)
    principal = from_federated_credential(credential)
    content = {
        "success": True,
        "user": FederatedUserInfo(
            id=credential.id, email=credential.email, role=credential.role, is_active=credential.is_active
        ).model_dump(),
    }
    resp = JSONResponse(content=content)
    request.app.state.sessions.issue(resp, principal)
    logger.info("Federated password sign-in for credential %d", credential.id)
    return _no_store(resp)


@router.post("/auth/device")
def device(request: Request, body: DeviceActionRequest) -> JSONResponse:
    coordinator: DeviceCodeFlowCoordinator = request.app.state.device_flow

    if body.action == "start_device_flow":
        flow = coordinator.start()
        return _no_store(
            JSONResponse(
                content=DeviceStartResponse(
                    device_code=flow.device_code,
                    user_code=flow.user_code,
                    verification_uri=flow.verification_uri,
                    expires_in=flow.expires_in_seconds,
                    interval=flow.poll_interval_seconds,
                    message=flow.message,
                ).model_dump(exclude_none=True)
            )
        )

    if body.action == "poll_token":
        outcome = coordinator.poll(body.device_code or "")
        if isinstance(outcome, Pending):
            content = ActionError(error="authorization_pending", pending=True).model_dump(exclude_none=True)
            if outcome.interval:
                content["interval"] = outcome.interval
            return JSONResponse(content=content)
        if isinstance(outcome, Completed):
            profile = outcome.profile
            resp = JSONResponse(
                content={
                    "success": True,
                    "user": DeviceUserInfo(
                        id=profile.id,
                        email=profile.email,
                        display_name=profile.display_name,
                        microsoft_user_id=profile.external_subject_id,
                        role=effective_role(outcome.principal),
                    ).model_dump(),
                }
            )
            request.app.state.sessions.issue(resp, outcome.principal)
            return _no_store(resp)
        # Declined, Expired, PollError -- all carry a user-facing message.
        return JSONResponse(content=ActionError(error=outcome.message).model_dump(exclude_none=True))

    return _invalid_action()


@router.post("/auth/oidc")
def oidc(request: Request, body: OidcActionRequest) -> JSONResponse:
    coordinator: AuthorizationCodeFlowCoordinator = request.app.state.oidc
    fallback_redirect = _callback_url(request)

    if body.action == "initiate":
        url, redirect_uri = coordinator.build_authorization_url(fallback_redirect)
        return _no_store(JSONResponse(content=OidcInitiateResponse(authUrl=url, redirectUri=redirect_uri).model_dump()))

    if body.action == "callback":
        principal = coordinator.complete_login(body.code or "", body.state or "", fallback_redirect)
        resp = JSONResponse(
            content={
                "success": True,
                "user": OidcUserInfo(
                    id=int(principal.id),
                    email=principal.email,
                    display_name=principal.display_name,
                    role=effective_role(principal),
                ).model_dump(),
            }
        )
        request.app.state.sessions.issue(resp, principal)
        return _no_store(resp)

    return _invalid_action()


def _callback_url(request: Request) -> str:
    """The page the provider redirects back to, used when none is configured."""
    origin = request.headers.get("origin") or str(request.base_url).rstrip("/")
    return f"{origin.rstrip('/')}/auth/callback"
