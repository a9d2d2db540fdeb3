"""
auth/store.py -- SQLAlchemy Core persistence layer for identity records.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_account / _row_to_federated / _row_to_profile are the mappers.
Authenticators and routes never touch SQL directly.

Tables:
  accounts              -- local accounts, including TOTP secret and flag
  federated_credentials -- email/password federated records (also the OIDC allow-list)
  federated_profiles    -- device-flow profiles, one row per external_subject_id
  revoked_sessions      -- ids of logged-out session tokens, kept until they expire

Ids of accounts and federated credentials are never reused after a delete
(sqlite_autoincrement), so an id in an old session token cannot name a
different record later.

Concurrency:
  Logins are read-only. Every write is a single-row UPDATE/INSERT/DELETE.
  TOTP transitions use compare-and-swap predicates in the WHERE clause so
  that concurrent setup/enable calls for the same account cannot lose an
  update: enable only succeeds while the stored secret is still the one the
  token was checked against.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import Account, FederatedCredential, FederatedProfile

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("secret_hash", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("totp_secret", Text),
    Column("totp_enabled", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
    sqlite_autoincrement=True,
)

_federated_credentials = Table(
    "federated_credentials",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    sqlite_autoincrement=True,
)

_federated_profiles = Table(
    "federated_profiles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("external_subject_id", String(255), nullable=False, unique=True),
    Column("email", String(320)),
    Column("display_name", String(255)),
    Column("tenant_id", String(64)),
    Column("access_token", Text),
    Column("refresh_token", Text),
    Column("token_expires_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_revoked_sessions = Table(
    "revoked_sessions",
    _metadata,
    Column("jti", String(64), primary_key=True),
    Column("expires_at", Integer, nullable=False),
)

# Columns an admin may change through update_account(). TOTP columns are
# deliberately absent -- only the begin/enable/disable methods touch them.
_ACCOUNT_MUTABLE = frozenset({"username", "secret_hash", "role", "is_active"})
_FEDERATED_MUTABLE = frozenset({"password_hash", "role", "is_active"})


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for Account, FederatedCredential and FederatedProfile.

    Usage:
        store = CredentialStore("sqlite:///opsdesk_auth.db")
        store.create_account(Account(username="admin", role="admin", secret_hash=hash_password("x")))
        account = store.get_account_by_username("admin")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def has_accounts(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_accounts)).scalar()
        return (result or 0) > 0

    def seed_accounts(self, accounts: list[Account]) -> int:
        """Insert the given accounts only if the table is empty.

        Count and inserts run in one transaction, so two processes starting
        at once cannot both seed. Returns the number of rows inserted (0 when
        the table already had data).
        """
        now = _now_iso()
        try:
            with self.engine.begin() as conn:
                existing = conn.execute(select(func.count()).select_from(_accounts)).scalar() or 0
                if existing:
                    return 0
                for account in accounts:
                    conn.execute(_accounts.insert().values(**_account_values(account), created_at=now))
        except IntegrityError:
            # Another process seeded first; the usernames are already taken.
            return 0
        return len(accounts)

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its id.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        with self.engine.begin() as conn:
            result = conn.execute(_accounts.insert().values(**_account_values(account), created_at=_now_iso()))
            return result.inserted_primary_key[0]

    def get_account(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_account_by_username(self, username: str, active_only: bool = False) -> Account | None:
        """Look up an account by exact username (case-sensitive)."""
        query = _accounts.select().where(_accounts.c.username == username)
        if active_only:
            query = query.where(_accounts.c.is_active == 1)
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self) -> list[Account]:
        with self.engine.connect() as conn:
            rows = conn.execute(_accounts.select().order_by(_accounts.c.created_at.desc(), _accounts.c.id)).fetchall()
        return [_row_to_account(r) for r in rows]

    def update_account(self, account_id: int, **fields) -> bool:
        """Update admin-mutable fields (username, secret_hash, role, is_active).

        Unknown keys raise ValueError rather than being silently ignored.
        Returns True if a row was updated, False if account_id was not found.
        """
        unknown = set(fields) - _ACCOUNT_MUTABLE
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        if not fields:
            return self.get_account(account_id) is not None
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.id == account_id).values(**fields, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def delete_account(self, account_id: int) -> bool:
        """Hard delete. Callers check last-admin invariants first."""
        with self.engine.begin() as conn:
            result = conn.execute(_accounts.delete().where(_accounts.c.id == account_id))
        return result.rowcount > 0

    def count_active_admins(self) -> int:
        query = (
            select(func.count())
            .select_from(_accounts)
            .where((_accounts.c.role == "admin") & (_accounts.c.is_active == 1))
        )
        with self.engine.connect() as conn:
            result = conn.execute(query).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # TOTP state (compare-and-swap updates)
    # ------------------------------------------------------------------

    def begin_totp_setup(self, account_id: int, secret: str) -> bool:
        """Store a new pending secret. Refused while 2FA is enabled.

        Overwrites any earlier not-yet-enabled secret. Returns False if the
        account does not exist or already has 2FA enabled.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & (_accounts.c.totp_enabled == 0))
                .values(totp_secret=secret, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def enable_totp(self, account_id: int, expected_secret: str) -> bool:
        """Flip totp_enabled on, but only if the pending secret is unchanged.

        A concurrent setup that replaced the secret after the caller verified
        its token makes this a no-op (returns False).
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(
                    (_accounts.c.id == account_id)
                    & (_accounts.c.totp_secret == expected_secret)
                    & (_accounts.c.totp_enabled == 0)
                )
                .values(totp_enabled=1, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def disable_totp(self, account_id: int) -> bool:
        """Turn 2FA off and clear the secret. Returns False if not found."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(totp_enabled=0, totp_secret=None, updated_at=_now_iso())
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Federated credentials
    # ------------------------------------------------------------------

    def create_federated_credential(self, credential: FederatedCredential) -> int:
        """Insert a federated credential. IntegrityError if the email exists."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _federated_credentials.insert().values(
                    email=credential.email,
                    password_hash=credential.password_hash,
                    role=credential.role,
                    is_active=1 if credential.is_active else 0,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_federated_credential(self, credential_id: int) -> FederatedCredential | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _federated_credentials.select().where(_federated_credentials.c.id == credential_id)
            ).fetchone()
        return _row_to_federated(row) if row is not None else None

    def get_federated_by_email(self, email: str, active_only: bool = False) -> FederatedCredential | None:
        query = _federated_credentials.select().where(_federated_credentials.c.email == email)
        if active_only:
            query = query.where(_federated_credentials.c.is_active == 1)
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_federated(row) if row is not None else None

    def list_federated_credentials(self) -> list[FederatedCredential]:
        with self.engine.connect() as conn:
            rows = conn.execute(_federated_credentials.select().order_by(_federated_credentials.c.email)).fetchall()
        return [_row_to_federated(r) for r in rows]

    def update_federated_credential(self, credential_id: int, **fields) -> bool:
        """Update password_hash, role or is_active. Unknown keys raise ValueError."""
        unknown = set(fields) - _FEDERATED_MUTABLE
        if unknown:
            raise ValueError(f"Unknown federated credential fields: {unknown!r}")
        if not fields:
            return self.get_federated_credential(credential_id) is not None
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self.engine.begin() as conn:
            result = conn.execute(
                _federated_credentials.update().where(_federated_credentials.c.id == credential_id).values(**fields)
            )
        return result.rowcount > 0

    def delete_federated_credential(self, credential_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_federated_credentials.delete().where(_federated_credentials.c.id == credential_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Federated profiles (device flow)
    # ------------------------------------------------------------------

    def upsert_federated_profile(self, profile: FederatedProfile) -> FederatedProfile:
        """Update-or-insert keyed on external_subject_id; returns the stored row.

        The update path refreshes email, display_name, tokens and expiry.
        tenant_id is only written on insert. If a concurrent insert for the
        same subject wins the race, the UNIQUE constraint fires and the
        retry takes the update path.
        """
        try:
            with self.engine.begin() as conn:
                self._upsert_profile(conn, profile)
        except IntegrityError:
            with self.engine.begin() as conn:
                self._upsert_profile(conn, profile)
        stored = self.get_profile_by_subject(profile.external_subject_id)
        if stored is None:
            raise RuntimeError("Federated profile missing after upsert")
        return stored

    def _upsert_profile(self, conn: Connection, profile: FederatedProfile) -> None:
        now = _now_iso()
        subject = profile.external_subject_id
        existing = conn.execute(
            select(_federated_profiles.c.id).where(_federated_profiles.c.external_subject_id == subject)
        ).fetchone()
        if existing is not None:
            conn.execute(
                _federated_profiles.update()
                .where(_federated_profiles.c.external_subject_id == subject)
                .values(
                    email=profile.email,
                    display_name=profile.display_name,
                    access_token=profile.access_token,
                    refresh_token=profile.refresh_token,
                    token_expires_at=profile.token_expires_at,
                    updated_at=now,
                )
            )
        else:
            conn.execute(
                _federated_profiles.insert().values(
                    external_subject_id=subject,
                    email=profile.email,
                    display_name=profile.display_name,
                    tenant_id=profile.tenant_id,
                    access_token=profile.access_token,
                    refresh_token=profile.refresh_token,
                    token_expires_at=profile.token_expires_at,
                    created_at=now,
                    updated_at=now,
                )
            )

    def get_profile_by_subject(self, external_subject_id: str) -> FederatedProfile | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _federated_profiles.select().where(_federated_profiles.c.external_subject_id == external_subject_id)
            ).fetchone()
        return _row_to_profile(row) if row is not None else None

    def count_profiles(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_federated_profiles)).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Revoked sessions
    # ------------------------------------------------------------------

    def revoke_session(self, jti: str, expires_at: int) -> None:
        """Record a logged-out session token id until its expiry (epoch seconds).

        Rows whose token has expired on its own are pruned on the way.
        """
        now = int(datetime.now(timezone.utc).timestamp())
        try:
            with self.engine.begin() as conn:
                conn.execute(_revoked_sessions.delete().where(_revoked_sessions.c.expires_at < now))
                conn.execute(_revoked_sessions.insert().values(jti=jti, expires_at=expires_at))
        except IntegrityError:
            # Already revoked by an earlier logout.
            return

    def is_session_revoked(self, jti: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_revoked_sessions.c.jti).where(_revoked_sessions.c.jti == jti)).fetchone()
        return row is not None

    def ping(self) -> bool:
        """Cheap connectivity check for the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except SQLAlchemyError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _account_values(account: Account) -> dict:
    return {
        "username": account.username,
        "secret_hash": account.secret_hash,
        "role": account.role,
        "is_active": 1 if account.is_active else 0,
        "totp_secret": account.totp_secret,
        "totp_enabled": 1 if account.totp_enabled else 0,
    }


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        username=row.username,
        secret_hash=row.secret_hash,
        role=row.role,
        is_active=bool(row.is_active),
        totp_secret=row.totp_secret,
        totp_enabled=bool(row.totp_enabled),
        created_at=row.created_at,
    )


def _row_to_federated(row) -> FederatedCredential:
    return FederatedCredential(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        role=row.role,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_profile(row) -> FederatedProfile:
    return FederatedProfile(
        id=row.id,
        external_subject_id=row.external_subject_id,
        email=row.email,
        display_name=row.display_name,
        tenant_id=row.tenant_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        token_expires_at=row.token_expires_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
