"""
api/routes/v1/users.py -- Account administration endpoints.

Routes:
  GET    /api/v1/auth/users                 -- list local accounts (admin)
  POST   /api/v1/auth/users                 -- create local account (admin)
  PATCH  /api/v1/auth/users/{id}            -- update username/password/role/is_active (admin)
  DELETE /api/v1/auth/users/{id}            -- hard delete (admin)
  GET    /api/v1/auth/federated/users       -- list federated credentials (local admin)
  POST   /api/v1/auth/federated/users       -- create federated credential (local admin)
  PATCH  /api/v1/auth/federated/users/{id}  -- update password/role/is_active (local admin)
  DELETE /api/v1/auth/federated/users/{id}  -- hard delete (local admin)

Self-lockout and last-admin guards live in LocalAccountAdmin, not here.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    FederatedUserCreate,
    FederatedUserPatch,
    FederatedUserResponse,
    UserCreate,
    UserPatch,
    UserResponse,
)
from auth.dependencies import require_admin, require_local_admin
from auth.federated import FederatedCredentialAdmin
from auth.identity import Principal
from auth.local import LocalAccountAdmin

router = APIRouter()


# ---------------------------------------------------------------------------
# Local accounts
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=list[UserResponse])
async def list_users(request: Request, admin: Principal = Depends(require_admin)) -> list[UserResponse]:
    accounts: LocalAccountAdmin = request.app.state.accounts
    return [UserResponse.from_account(a) for a in accounts.list_all()]


@router.post("/auth/users", response_model=UserResponse, status_code=201)
def create_user(request: Request, body: UserCreate, admin: Principal = Depends(require_admin)) -> UserResponse:
    accounts: LocalAccountAdmin = request.app.state.accounts
    return UserResponse.from_account(accounts.create(body.username, body.password, body.role.value))


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    admin: Principal = Depends(require_admin),
) -> UserResponse:
    accounts: LocalAccountAdmin = request.app.state.accounts
    updated = accounts.update(
        admin,
        user_id,
        username=body.username,
        password=body.password,
        role=body.role.value if body.role else None,
        is_active=body.is_active,
    )
    return UserResponse.from_account(updated)


@router.delete("/auth/users/{user_id}", status_code=204)
async def delete_user(request: Request, user_id: int, admin: Principal = Depends(require_admin)) -> Response:
    accounts: LocalAccountAdmin = request.app.state.accounts
    accounts.delete(admin, user_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Federated credentials
# ---------------------------------------------------------------------------


@router.get("/auth/federated/users", response_model=list[FederatedUserResponse])
async def list_federated_users(
    request: Request, admin: Principal = Depends(require_local_admin)
) -> list[FederatedUserResponse]:
    federated: FederatedCredentialAdmin = request.app.state.federated_admin
    return [FederatedUserResponse.from_credential(c) for c in federated.list_all(admin)]


@router.post("/auth/federated/users", response_model=FederatedUserResponse, status_code=201)
def create_federated_user(
    request: Request,
    body: FederatedUserCreate,
    admin: Principal = Depends(require_local_admin),
) -> FederatedUserResponse:
    federated: FederatedCredentialAdmin = request.app.state.federated_admin
    created = federated.create(admin, body.email, body.password, body.role.value)
    return FederatedUserResponse.from_credential(created)


@router.patch("/auth/federated/users/{credential_id}", response_model=FederatedUserResponse)
def update_federated_user(
    request: Request,
    credential_id: int,
    body: FederatedUserPatch,
    admin: Principal = Depends(require_local_admin),
) -> FederatedUserResponse:
    federated: FederatedCredentialAdmin = request.app.state.federated_admin
    updated = federated.update(
        admin,
        credential_id,
        password=body.password,
        role=body.role.value if body.role else None,
        is_active=body.is_active,
    )
    return FederatedUserResponse.from_credential(updated)


@router.delete("/auth/federated/users/{credential_id}", status_code=204)
async def delete_federated_user(
    request: Request, credential_id: int, admin: Principal = Depends(require_local_admin)
) -> Response:
    federated: FederatedCredentialAdmin = request.app.state.federated_admin
    federated.delete(admin, credential_id)
    return Response(status_code=204)
