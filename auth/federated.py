"""
auth/federated.py -- Federated email/password login and its admin interface.

Federated credentials live in their own table with no link to local accounts.
Lookup and password check happen together: an inactive row, a missing row
and a wrong password all end in the same InvalidCredentials, and all three
paths cost one bcrypt comparison.

FederatedCredentialAdmin is the management surface. Every method takes the
acting Principal and refuses unless it is a local admin, matching the rule
that federated records are managed by an existing local administrator.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.errors import AccountConflict, AccountNotFound, AdminRequired, InvalidCredentials
from auth.identity import ROLE_USER, Principal, Provenance, from_federated_credential, is_admin
from auth.models import FederatedCredential
from auth.store import CredentialStore
from auth.tokens import burn_password_check, hash_password, verify_password

logger = logging.getLogger("opsdesk.auth.federated")

_INVALID_FEDERATED = "Invalid Microsoft Entra ID credentials"


class FederatedPasswordAuthenticator:
    def __init__(self, store: CredentialStore) -> None:
        self._store = store

    def authenticate(self, email: str, password: str) -> FederatedCredential:
        credential = self._store.get_federated_by_email(email, active_only=True)
        if credential is None:
            burn_password_check(password)
            raise InvalidCredentials(_INVALID_FEDERATED)
        if not verify_password(password, credential.password_hash):
            raise InvalidCredentials(_INVALID_FEDERATED)
        return credential

    def login(self, email: str, password: str) -> Principal:
        return from_federated_credential(self.authenticate(email, password))


class FederatedCredentialAdmin:
    """Admin-gated CRUD over federated credentials."""

    def __init__(self, store: CredentialStore) -> None:
        self._store = store

    @staticmethod
    def _require_local_admin(actor: Principal | None) -> None:
        if actor is None or actor.provenance is not Provenance.local or not is_admin(actor):
            raise AdminRequired()

    def list_all(self, actor: Principal | None) -> list[FederatedCredential]:
        self._require_local_admin(actor)
        return self._store.list_federated_credentials()

    def create(self, actor: Principal | None, email: str, password: str, role: str | None = None) -> FederatedCredential:
        self._require_local_admin(actor)
        credential = FederatedCredential(
            email=email,
            role=role or ROLE_USER,
            password_hash=hash_password(password),
        )
        try:
            credential_id = self._store.create_federated_credential(credential)
        except IntegrityError as exc:
            raise AccountConflict("A federated user with that email already exists.") from exc
        logger.info("Federated credential %d created by %s", credential_id, actor.label)
        created = self._store.get_federated_credential(credential_id)
        if created is None:
            raise AccountNotFound()
        return created

    def update(
        self,
        actor: Principal | None,
        credential_id: int,
        password: str | None = None,
        role: str | None = None,
        is_active: bool | None = None,
    ) -> FederatedCredential:
        self._require_local_admin(actor)
        fields: dict = {}
        if password:
            fields["password_hash"] = hash_password(password)
        if role:
            fields["role"] = role
        if is_active is not None:
            fields["is_active"] = is_active
        if not self._store.update_federated_credential(credential_id, **fields):
            raise AccountNotFound()
        updated = self._store.get_federated_credential(credential_id)
        if updated is None:
            raise AccountNotFound()
        return updated

    def delete(self, actor: Principal | None, credential_id: int) -> None:
        self._require_local_admin(actor)
        if not self._store.delete_federated_credential(credential_id):
            raise AccountNotFound()
        logger.info("Federated credential %d deleted by %s", credential_id, actor.label)
