"""
API request and response models for the OpsDesk auth service.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

The federated, device and OIDC endpoints are action-based: one POST body with
an "action" field selects the operation, and the remaining fields are
optional at the schema level and checked per action in the route.
"""

from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator

from auth.identity import Principal
from auth.models import Account, FederatedCredential

# bcrypt ignores input past 72 bytes; keep passwords well inside that.
_PASSWORD_MAX = 64
_TOTP_MAX = 16

# Passwords are compared exactly as sent. Models carrying one strip only
# their name fields, never the whole body.
_Username = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=150)]
_Password = Annotated[str, Field(min_length=1, max_length=_PASSWORD_MAX)]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    user = "user"


# ---------------------------------------------------------------------------
# Local login and 2FA
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    username: _Username
    password: _Password
    totp_token: Optional[str] = None

    @field_validator("totp_token", mode="before")
    @classmethod
    def _lenient_totp(cls, value: Any) -> Optional[str]:
        """A code of the wrong shape counts as no code.

        Accounts without 2FA sign in whatever is sent here; accounts with 2FA
        get the usual "code required" answer instead of a validation error.
        """
        if isinstance(value, int) and not isinstance(value, bool):
            value = str(value)
        if not isinstance(value, str):
            return None
        value = value.strip()
        if not value or len(value) > _TOTP_MAX:
            return None
        return value


class LoginResponse(BaseModel):
    """Successful local login.

    access_token is the same signed session token stored in the local_auth
    cookie, for clients that send Authorization: Bearer instead.
    """

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: str
    totp_enabled: bool
    access_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- token type, not a password


class TotpAccountRequest(BaseModel):
    """Request body for POST /auth/totp/setup and /auth/totp/disable."""

    user_id: int


class TotpEnableRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: int
    token: str = Field(min_length=1, max_length=_TOTP_MAX)


class TotpSetupResponse(BaseModel):
    """The secret is shown once, for manual entry; qr_code_url is the otpauth:// URI."""

    model_config = ConfigDict(frozen=True)

    secret: str
    qr_code_url: str


class SuccessResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True


# ---------------------------------------------------------------------------
# Action-based federated endpoints
# ---------------------------------------------------------------------------


class FederatedActionRequest(BaseModel):
    """Request body for POST /api/v1/auth/federated (action "login")."""

    action: Annotated[str, StringConstraints(strip_whitespace=True)]
    email: Optional[Annotated[str, StringConstraints(strip_whitespace=True, max_length=254)]] = None
    password: Optional[str] = Field(default=None, max_length=_PASSWORD_MAX)


class DeviceActionRequest(BaseModel):
    """Request body for POST /api/v1/auth/device (start_device_flow, poll_token)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    action: str
    device_code: Optional[str] = Field(default=None, max_length=2048)


class OidcActionRequest(BaseModel):
    """Request body for POST /api/v1/auth/oidc (initiate, callback)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    action: str
    code: Optional[str] = Field(default=None, max_length=4096)
    state: Optional[str] = Field(default=None, max_length=2048)


class FederatedUserInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    role: str
    is_active: bool


class DeviceUserInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: Optional[str]
    display_name: Optional[str]
    microsoft_user_id: str
    role: str


class DeviceStartResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int
    message: Optional[str] = None


class OidcInitiateResponse(BaseModel):
    """camelCase keys are part of the wire contract used by the login page."""

    model_config = ConfigDict(frozen=True)

    authUrl: str
    redirectUri: str


class OidcUserInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: Optional[str]
    display_name: Optional[str]
    role: str


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    id: str
    provenance: str
    role: str
    is_admin: bool
    username: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None

    @classmethod
    def from_principal(cls, principal: Principal, role: str, is_admin: bool) -> "MeResponse":
        return cls(
            id=principal.id,
            provenance=principal.provenance.value,
            role=role,
            is_admin=is_admin,
            username=principal.username,
            email=principal.email,
            display_name=principal.display_name,
        )


class ProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


# ---------------------------------------------------------------------------
# Local account administration
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/users."""

    username: _Username
    password: _Password
    role: RoleEnum = RoleEnum.user


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id}. Omitted fields are unchanged."""

    username: Optional[_Username] = None
    password: Optional[_Password] = None
    role: Optional[RoleEnum] = None
    is_active: Optional[bool] = None


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: str
    is_active: bool
    totp_enabled: bool
    created_at: str

    @classmethod
    def from_account(cls, account: Account) -> "UserResponse":
        return cls(
            id=account.id,
            username=account.username,
            role=account.role,
            is_active=account.is_active,
            totp_enabled=account.totp_enabled,
            created_at=account.created_at or "",
        )


# ---------------------------------------------------------------------------
# Federated credential administration
# ---------------------------------------------------------------------------


class FederatedUserCreate(BaseModel):
    email: Annotated[
        str, StringConstraints(strip_whitespace=True, min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+$")
    ]
    password: _Password
    role: RoleEnum = RoleEnum.user


class FederatedUserPatch(BaseModel):
    password: Optional[_Password] = None
    role: Optional[RoleEnum] = None
    is_active: Optional[bool] = None


class FederatedUserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    role: str
    is_active: bool
    created_at: str

    @classmethod
    def from_credential(cls, credential: FederatedCredential) -> "FederatedUserResponse":
        return cls(
            id=credential.id,
            email=credential.email,
            role=credential.role,
            is_active=credential.is_active,
            created_at=credential.created_at or "",
        )


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class ActionError(BaseModel):
    """Error body for login and action-based endpoints: {success: false, error: "..."}."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: str
    requires_totp: Optional[bool] = None
    pending: Optional[bool] = None


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
