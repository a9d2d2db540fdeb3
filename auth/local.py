"""
auth/local.py -- Local username/password login with optional TOTP.

Order of checks inside one attempt is fixed:
  1. account lookup (active accounts only)
  2. bcrypt comparison -- always runs, against a dummy hash if no account
  3. second factor, only after the password has been accepted

A wrong password therefore never reveals whether the account has 2FA, and an
unknown username and a wrong password produce the same InvalidCredentials
error at the same cost.

No lockout or backoff is applied here.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth import totp
from auth.errors import AccountConflict, AccountNotFound, AdminLockout, InvalidCredentials, InvalidTotp, TotpRequired
from auth.identity import ROLE_ADMIN, ROLE_USER, Principal, from_account, owns_local_account
from auth.models import Account
from auth.store import CredentialStore
from auth.tokens import burn_password_check, hash_password, verify_password

logger = logging.getLogger("opsdesk.auth.local")


class LocalAuthenticator:
    def __init__(self, store: CredentialStore) -> None:
        self._store = store

    def authenticate(self, username: str, password: str, totp_token: str | None = None) -> Account:
        """Verify credentials and return the Account (used by login and the API's totp_enabled flag)."""
        account = self._store.get_account_by_username(username, active_only=True)
        if account is None:
            burn_password_check(password)
            raise InvalidCredentials()
        if not verify_password(password, account.secret_hash):
            raise InvalidCredentials()

        if account.totp_enabled:
            if not totp_token:
                raise TotpRequired()
            if not totp.verify(account.totp_secret, totp_token):
                logger.info("Rejected TOTP code for account %d", account.id)
                raise InvalidTotp()
        # totp_token is ignored for accounts without 2FA.
        return account

    def login(self, username: str, password: str, totp_token: str | None = None) -> Principal:
        return from_account(self.authenticate(username, password, totp_token))


def bootstrap_accounts(store: CredentialStore, admin_password: str, user_password: str) -> bool:
    """Seed the first-run "admin" and "user" accounts into an empty store.

    Returns True if the accounts were created, False if the store already
    had accounts.
    """
    seeded = store.seed_accounts(
        [
            Account(username="admin", role=ROLE_ADMIN, secret_hash=hash_password(admin_password)),
            Account(username="user", role=ROLE_USER, secret_hash=hash_password(user_password)),
        ]
    )
    if seeded:
        logger.warning("Seeded bootstrap accounts 'admin' and 'user'. Change their passwords.")
    return bool(seeded)


class LocalAccountAdmin:
    """Admin management of local accounts.

    Two guards keep the deployment administrable: an admin may not deactivate
    or delete their own account, and the last active admin may not be
    deactivated, demoted or deleted by anyone.
    """

    def __init__(self, store: CredentialStore) -> None:
        self._store = store

    def list_all(self) -> list[Account]:
        return self._store.list_accounts()

    def create(self, username: str, password: str, role: str = ROLE_USER) -> Account:
        account = Account(username=username, role=role, secret_hash=hash_password(password))
        try:
            account_id = self._store.create_account(account)
        except IntegrityError as exc:
            raise AccountConflict() from exc
        logger.info("Local account %d (%s) created", account_id, role)
        created = self._store.get_account(account_id)
        if created is None:
            raise AccountNotFound()
        return created

    def update(
        self,
        actor: Principal,
        account_id: int,
        username: str | None = None,
        password: str | None = None,
        role: str | None = None,
        is_active: bool | None = None,
    ) -> Account:
        account = self._store.get_account(account_id)
        if account is None:
            raise AccountNotFound()

        if is_active is False and owns_local_account(actor, account_id):
            raise AdminLockout("You cannot deactivate your own account.")
        losing_admin = account.role == ROLE_ADMIN and account.is_active and (
            is_active is False or (role is not None and role != ROLE_ADMIN)
        )
        if losing_admin and self._store.count_active_admins() <= 1:
            raise AdminLockout()

        fields: dict = {}
        if username:
            fields["username"] = username
        if password:
            fields["secret_hash"] = hash_password(password)
        if role:
            fields["role"] = role
        if is_active is not None:
            fields["is_active"] = is_active
        try:
            if not self._store.update_account(account_id, **fields):
                raise AccountNotFound()
        except IntegrityError as exc:
            raise AccountConflict() from exc
        updated = self._store.get_account(account_id)
        if updated is None:
            raise AccountNotFound()
        return updated

    def delete(self, actor: Principal, account_id: int) -> None:
        account = self._store.get_account(account_id)
        if account is None:
            raise AccountNotFound()
        if owns_local_account(actor, account_id):
            raise AdminLockout("You cannot delete your own account.")
        if account.role == ROLE_ADMIN and account.is_active and self._store.count_active_admins() <= 1:
            raise AdminLockout()
        self._store.delete_account(account_id)
        logger.info("Local account %d deleted by %s", account_id, actor.label)
