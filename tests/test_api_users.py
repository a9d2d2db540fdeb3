"""
tests/test_api_users.py -- Integration tests for account administration.

Coverage:
  - /auth/users CRUD as admin; 401 unauthenticated, 403 for plain users
  - duplicate username is 409; unknown id is 404
  - an admin may not deactivate or delete their own account (400)
  - /auth/federated/users is for local admins only; a federated admin gets 403
  - deactivating a federated credential blocks its next password sign-in
  - a deleted account's token never resolves to an account created after it
"""

from __future__ import annotations

from auth.identity import from_federated_credential
from auth.models import FederatedCredential
from auth.tokens import create_session_token
from conftest import add_account, bearer_for


def _admin(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestLocalUsers:
    def test_list_requires_auth(self, api_client) -> None:
        client, _, _ = api_client
        assert client.get("/api/v1/auth/users").status_code == 401

    def test_plain_user_forbidden(self, api_client, api_store) -> None:
        client, _, _ = api_client
        plain = add_account(api_store, "users_plain", "pw")
        resp = client.get("/api/v1/auth/users", headers=bearer_for(plain))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_create_list_update_delete(self, api_client) -> None:
        client, token, _ = api_client
        headers = _admin(token)

        created = client.post(
            "/api/v1/auth/users", json={"username": "users_crud", "password": "pw"}, headers=headers
        )
        assert created.status_code == 201
        body = created.json()
        assert body["role"] == "user"
        assert body["is_active"] is True
        assert body["totp_enabled"] is False
        assert "secret_hash" not in body
        user_id = body["id"]

        listed = client.get("/api/v1/auth/users", headers=headers).json()
        assert "users_crud" in [u["username"] for u in listed]

        patched = client.patch(
            f"/api/v1/auth/users/{user_id}",
            json={"username": "users_crud2", "role": "admin", "is_active": False},
            headers=headers,
        )
        assert patched.status_code == 200
        assert patched.json()["username"] == "users_crud2"
        assert patched.json()["role"] == "admin"
        assert patched.json()["is_active"] is False

        assert client.delete(f"/api/v1/auth/users/{user_id}", headers=headers).status_code == 204
        assert client.delete(f"/api/v1/auth/users/{user_id}", headers=headers).status_code == 404

    def test_new_password_works_for_login(self, api_client, api_store) -> None:
        client, token, _ = api_client
        target = add_account(api_store, "users_repass", "old")
        client.patch(f"/api/v1/auth/users/{target.id}", json={"password": "new"}, headers=_admin(token))
        resp = client.post("/api/v1/auth/login", json={"username": "users_repass", "password": "new"})
        assert resp.status_code == 200

    def test_duplicate_username(self, api_client) -> None:
        client, token, _ = api_client
        payload = {"username": "users_dup", "password": "pw"}
        assert client.post("/api/v1/auth/users", json=payload, headers=_admin(token)).status_code == 201
        resp = client.post("/api/v1/auth/users", json=payload, headers=_admin(token))
        assert resp.status_code == 409
        assert resp.json()["success"] is False

    def test_invalid_role_rejected(self, api_client) -> None:
        client, token, _ = api_client
        resp = client.post(
            "/api/v1/auth/users",
            json={"username": "users_role", "password": "pw", "role": "superuser"},
            headers=_admin(token),
        )
        assert resp.status_code == 422

    def test_cannot_deactivate_self(self, api_client) -> None:
        client, token, uid = api_client
        resp = client.patch(f"/api/v1/auth/users/{uid}", json={"is_active": False}, headers=_admin(token))
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "You cannot deactivate your own account."}

    def test_cannot_delete_self(self, api_client) -> None:
        client, token, uid = api_client
        resp = client.delete(f"/api/v1/auth/users/{uid}", headers=_admin(token))
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "You cannot delete your own account."}

    def test_update_unknown(self, api_client) -> None:
        client, token, _ = api_client
        resp = client.patch("/api/v1/auth/users/999999", json={"role": "user"}, headers=_admin(token))
        assert resp.status_code == 404

    def test_deactivated_user_session_ends(self, api_client, api_store) -> None:
        client, token, _ = api_client
        target = add_account(api_store, "users_kicked", "pw")
        headers = bearer_for(target)
        assert client.get("/api/v1/auth/me", headers=headers).status_code == 200
        client.patch(f"/api/v1/auth/users/{target.id}", json={"is_active": False}, headers=_admin(token))
        assert client.get("/api/v1/auth/me", headers=headers).status_code == 401

    def test_deleted_user_token_not_inherited_by_new_account(self, api_client, api_store) -> None:
        client, token, _ = api_client
        departed = add_account(api_store, "users_departed", "pw")
        stale = bearer_for(departed)
        assert client.delete(f"/api/v1/auth/users/{departed.id}", headers=_admin(token)).status_code == 204

        created = client.post(
            "/api/v1/auth/users",
            json={"username": "users_successor", "password": "pw", "role": "admin"},
            headers=_admin(token),
        ).json()
        assert created["id"] != departed.id
        assert client.get("/api/v1/auth/me", headers=stale).status_code == 401


class TestFederatedUsers:
    def test_crud_as_local_admin(self, api_client) -> None:
        client, token, _ = api_client
        headers = _admin(token)

        created = client.post(
            "/api/v1/auth/federated/users",
            json={"email": "crud@contoso.com", "password": "pw", "role": "admin"},
            headers=headers,
        )
        assert created.status_code == 201
        assert created.json()["role"] == "admin"
        assert "password_hash" not in created.json()
        credential_id = created.json()["id"]

        emails = [c["email"] for c in client.get("/api/v1/auth/federated/users", headers=headers).json()]
        assert "crud@contoso.com" in emails

        patched = client.patch(
            f"/api/v1/auth/federated/users/{credential_id}", json={"role": "user"}, headers=headers
        )
        assert patched.json()["role"] == "user"

        assert client.delete(f"/api/v1/auth/federated/users/{credential_id}", headers=headers).status_code == 204
        assert client.delete(f"/api/v1/auth/federated/users/{credential_id}", headers=headers).status_code == 404

    def test_duplicate_email(self, api_client) -> None:
        client, token, _ = api_client
        payload = {"email": "twice@contoso.com", "password": "pw"}
        client.post("/api/v1/auth/federated/users", json=payload, headers=_admin(token))
        resp = client.post("/api/v1/auth/federated/users", json=payload, headers=_admin(token))
        assert resp.status_code == 409

    def test_malformed_email(self, api_client) -> None:
        client, token, _ = api_client
        resp = client.post(
            "/api/v1/auth/federated/users", json={"email": "not-an-email", "password": "pw"}, headers=_admin(token)
        )
        assert resp.status_code == 422

    def test_federated_admin_forbidden(self, api_client, api_store) -> None:
        client, _, _ = api_client
        credential_id = api_store.create_federated_credential(
            FederatedCredential(email="fedadmin@contoso.com", role="admin", password_hash="x")
        )
        principal = from_federated_credential(api_store.get_federated_credential(credential_id))
        headers = {"Authorization": f"Bearer {create_session_token(principal.to_claims(), 3600)}"}

        assert client.get("/api/v1/auth/me", headers=headers).json()["is_admin"] is True
        assert client.get("/api/v1/auth/federated/users", headers=headers).status_code == 403
        # Local account administration only needs the admin role.
        assert client.get("/api/v1/auth/users", headers=headers).status_code == 200

    def test_deactivated_credential_cannot_sign_in(self, api_client) -> None:
        client, token, _ = api_client
        created = client.post(
            "/api/v1/auth/federated/users",
            json={"email": "leaver@contoso.com", "password": "pw"},
            headers=_admin(token),
        ).json()
        client.patch(
            f"/api/v1/auth/federated/users/{created['id']}", json={"is_active": False}, headers=_admin(token)
        )
        resp = client.post(
            "/api/v1/auth/federated",
            json={"action": "login", "email": "leaver@contoso.com", "password": "pw"},
        )
        assert resp.status_code == 401
