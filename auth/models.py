"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and
authenticators do the work; these only own the shape.

Three independent record spaces:
  Account             -- local username/password accounts (+ TOTP state).
  FederatedCredential -- email/password records and the OIDC allow-list.
  FederatedProfile    -- upserted on device-flow login, keyed by the
                         provider's stable subject id.

There is no foreign key between them. The same person may have a row in each.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Account:
    """A local account.

    secret_hash is a bcrypt hash and never leaves the auth layer.
    totp_enabled implies totp_secret is set; the store enforces this by only
    flipping totp_enabled inside a compare-and-swap on the secret.
    """

    username: str
    role: str  # "admin" or "user"
    id: int | None = None
    secret_hash: str = field(default="", repr=False)
    is_active: bool = True
    totp_secret: str | None = field(default=None, repr=False)  # base32, opaque
    totp_enabled: bool = False
    created_at: str | None = None

    @property
    def totp_state(self) -> str:
        """One of "disabled", "pending", "enabled"."""
        if self.totp_enabled:
            return "enabled"
        if self.totp_secret:
            return "pending"
        return "disabled"


@dataclass
class FederatedCredential:
    """A pre-provisioned federated identity.

    Doubles as the allow-list for the authorization-code flow: a provider-
    authenticated email must match an active row here to be let in.
    """

    email: str
    role: str
    id: int | None = None
    password_hash: str = field(default="", repr=False)
    is_active: bool = True
    created_at: str | None = None


@dataclass
class FederatedProfile:
    """Profile captured from the identity provider on device-flow login.

    external_subject_id is the upsert key -- exactly one row per value.
    """

    external_subject_id: str
    email: str | None = None
    display_name: str | None = None
    tenant_id: str | None = None
    access_token: str | None = field(default=None, repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    token_expires_at: str | None = None
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class DeviceFlowSession:
    """Envelope returned by the device authorization endpoint.

    device_code is for the poller only. Show user_code and verification_uri.
    """

    device_code: str = field(repr=False)
    user_code: str
    verification_uri: str
    expires_in_seconds: int
    poll_interval_seconds: int
    message: str | None = None
