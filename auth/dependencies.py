"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Identity is restored once per request by app.state.sessions (see
auth/session.py), in priority order:
  1. "local_auth" cookie     -- local username/password sign-in.
  2. "federated_auth" cookie -- Microsoft password, device code or OIDC sign-in.
  3. Authorization: Bearer <session token> -- API clients.

get_auth_context() is the soft variant: always returns an AuthContext, whose
principal is None when nothing restored.
get_current_principal() raises HTTP 401 if unauthenticated.
require_admin() raises HTTP 403 unless the effective role is admin.
require_local_admin() additionally requires the admin to be a local account;
  federated credentials may only be managed by a local administrator.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.identity import AuthContext, Principal, Provenance, is_admin


def get_auth_context(request: Request) -> AuthContext:
    """Build the request's AuthContext. Never raises."""
    return AuthContext(principal=request.app.state.sessions.restore(request))


def get_current_principal(context: AuthContext = Depends(get_auth_context)) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    if context.principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return context.principal


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not is_admin(principal):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return principal


def require_local_admin(principal: Principal = Depends(require_admin)) -> Principal:
    if principal.provenance is not Provenance.local:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Local admin access required."},
        )
    return principal
