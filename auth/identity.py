"""
auth/identity.py -- The normalized Principal and the builders that produce it.

Every authenticator hands its own record type (Account, FederatedCredential,
FederatedProfile, or verified OIDC claims) to one of the from_* builders
below. The rest of the application only ever sees Principal, and role
decisions go through effective_role() / is_admin().

Principal is a tagged variant: provenance says which scheme produced it.
Device-flow principals carry role=None (that flow has no role source);
effective_role() maps that to "user", never to "admin".

AuthContext is the explicit per-request identity object. Handlers receive
it through a FastAPI dependency instead of reading ambient state.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum

from auth.models import Account, FederatedCredential, FederatedProfile

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = (ROLE_ADMIN, ROLE_USER)


class Provenance(str, Enum):
    local = "local"
    federated_password = "federatedPassword"
    device_flow = "deviceFlow"
    oidc = "oidc"


@dataclass(frozen=True)
class Principal:
    id: str
    provenance: Provenance
    role: str | None = None
    username: str | None = None
    email: str | None = None
    display_name: str | None = None

    @property
    def label(self) -> str:
        """Best human-readable name for this principal."""
        return self.display_name or self.username or self.email or self.id

    def to_claims(self) -> dict:
        claims = asdict(self)
        claims["provenance"] = self.provenance.value
        return claims

    @classmethod
    def from_claims(cls, claims: dict) -> Principal | None:
        """Rebuild a Principal from stored claims; None if they are malformed."""
        try:
            provenance = Provenance(claims["provenance"])
            principal_id = str(claims["id"])
        except (KeyError, ValueError):
            return None
        return cls(
            id=principal_id,
            provenance=provenance,
            role=claims.get("role"),
            username=claims.get("username"),
            email=claims.get("email"),
            display_name=claims.get("display_name"),
        )


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def from_account(account: Account) -> Principal:
    return Principal(
        id=str(account.id),
        provenance=Provenance.local,
        role=account.role,
        username=account.username,
    )


def from_federated_credential(credential: FederatedCredential) -> Principal:
    return Principal(
        id=str(credential.id),
        provenance=Provenance.federated_password,
        role=credential.role,
        email=credential.email,
    )


def from_device_profile(profile: FederatedProfile) -> Principal:
    return Principal(
        id=str(profile.id),
        provenance=Provenance.device_flow,
        role=None,
        email=profile.email,
        display_name=profile.display_name,
    )


def from_oidc(credential: FederatedCredential, display_name: str | None) -> Principal:
    """The allow-list row supplies id and role; the ID token supplies the name."""
    return Principal(
        id=str(credential.id),
        provenance=Provenance.oidc,
        role=credential.role,
        email=credential.email,
        display_name=display_name,
    )


# ---------------------------------------------------------------------------
# Role gating
# ---------------------------------------------------------------------------


def effective_role(principal: Principal) -> str:
    """Resolve the role used for authorization decisions.

    Local, federated-password and OIDC principals carry the role from their
    record. Device-flow principals have none and are treated as plain users.
    """
    provenance = principal.provenance
    if provenance is Provenance.device_flow:
        return ROLE_USER
    if provenance in (Provenance.local, Provenance.federated_password, Provenance.oidc):
        return principal.role if principal.role in ROLES else ROLE_USER
    raise ValueError(f"Unhandled provenance: {provenance!r}")


def is_admin(principal: Principal | None) -> bool:
    return principal is not None and effective_role(principal) == ROLE_ADMIN


def owns_local_account(principal: Principal, account_id: int) -> bool:
    """True if principal is the local account with this id."""
    return principal.provenance is Provenance.local and principal.id == str(account_id)


@dataclass(frozen=True)
class AuthContext:
    """Identity for one request. principal is None when unauthenticated."""

    principal: Principal | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.principal is not None

    @property
    def is_admin(self) -> bool:
        return is_admin(self.principal)
