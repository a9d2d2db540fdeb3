"""
tests/conftest.py -- Shared test fixtures for the OpsDesk auth service.

This module provides:
  - make_store(): isolated named shared-memory CredentialStore
  - make_settings(): Settings with Microsoft identity values filled in
  - oauth_response() / session_factory_for(): fakes for authlib OAuth2Session
  - api_client: TestClient with an admin session token, cookies cleared per test
  - api_store: the CredentialStore behind api_client

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app, init_services
from auth.identity import from_account
from auth.models import Account
from auth.store import CredentialStore
from auth.tokens import create_session_token, hash_password
from core.config import Settings

TEST_CLIENT_ID = "11111111-2222-3333-4444-555555555555"
TEST_TENANT_ID = "99999999-8888-7777-6666-555555555555"


# ---------------------------------------------------------------------------
# Store and settings helpers
# ---------------------------------------------------------------------------


def make_store(name: str | None = None) -> CredentialStore:
    """Create an isolated store. Each name is its own in-memory database."""
    name = name or uuid.uuid4().hex[:12]
    return CredentialStore(f"sqlite:///file:test_auth_{name}?mode=memory&cache=shared&uri=true")


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "microsoft_client_id": TEST_CLIENT_ID,
        "microsoft_client_secret": "test-client-secret",
        "microsoft_tenant_id": TEST_TENANT_ID,
        "microsoft_redirect_uri": "http://localhost:3000/auth/callback",
    }
    values.update(overrides)
    return Settings(**values)


def add_account(store: CredentialStore, username: str, password: str, role: str = "user", **fields) -> Account:
    account_id = store.create_account(
        Account(username=username, role=role, secret_hash=hash_password(password), **fields)
    )
    return store.get_account(account_id)


def bearer_for(account: Account) -> dict:
    token = create_session_token(from_account(account).to_claims(), expire_seconds=3600)
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# authlib session fakes
# ---------------------------------------------------------------------------


def oauth_response(payload: dict, status_code: int = 200) -> MagicMock:
    """A requests.Response stand-in whose .json() returns payload."""
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    resp.raise_for_status.return_value = None
    return resp


def session_factory_for(session: MagicMock):
    """Return a SessionFactory that always hands back session and records its arguments."""
    calls: list[tuple] = []

    def factory(client_id, client_secret=None, redirect_uri=None, scope=None):
        calls.append((client_id, client_secret, redirect_uri, scope))
        return session

    factory.calls = calls
    return factory


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(store: CredentialStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store into app.state the same way the real lifespan does,
    minus bootstrap seeding, so each module controls its own accounts.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_services(app, store)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def _api_env() -> Generator[tuple[TestClient, str, int, CredentialStore], None, None]:
    """One TestClient per test module, with its own store and admin account.

    base_url uses localhost so TrustedHostMiddleware accepts the requests.
    """
    store = make_store()
    admin = add_account(store, "testadmin", "testpass123", role="admin")
    token = create_session_token(from_account(admin).to_claims(), expire_seconds=3600)

    app.router.lifespan_context = _patch_lifespan(store)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, token, admin.id, store

    store.close()


@pytest.fixture
def api_client(_api_env) -> tuple[TestClient, str, int]:
    """Yield (client, admin_token, admin_id) with an empty cookie jar.

    Login responses set session cookies on the shared client; clearing them
    keeps one test's sign-in from authenticating the next test.
    """
    client, token, uid, _store = _api_env
    client.cookies.clear()
    return client, token, uid


@pytest.fixture
def api_store(_api_env) -> CredentialStore:
    return _api_env[3]
