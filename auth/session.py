"""
auth/session.py -- Persisting and restoring the Principal across requests.

A signed session token (see auth/tokens.py) holds the Principal's claims. It
travels in one of two httpOnly cookies, or in an Authorization header for
API clients:

  local_auth      -- principals from local username/password login
  federated_auth  -- principals from any of the three Microsoft schemes
  Bearer <token>  -- the same token, returned in the login response body

restore() checks them in exactly that order and returns the first that
decodes. Records behind local and federated-credential principals are
re-read so that a deactivated row ends the session and a role change takes
effect on the next request. The row must still carry the username or email
the token was issued for, so a rename also ends the session. Device-flow
principals have no such row.

Every token carries a jti. revoke() records the jti of each token presented
with a request, and a revoked token no longer restores.
"""

from __future__ import annotations

import logging

from fastapi import Request, Response

from auth.identity import Principal, Provenance
from auth.store import CredentialStore
from auth.tokens import create_session_token, decode_session_token
from core.config import Settings

logger = logging.getLogger("opsdesk.auth.session")

LOCAL_COOKIE = "local_auth"
FEDERATED_COOKIE = "federated_auth"
SESSION_COOKIES = (LOCAL_COOKIE, FEDERATED_COOKIE)


def cookie_name_for(principal: Principal) -> str:
    return LOCAL_COOKIE if principal.provenance is Provenance.local else FEDERATED_COOKIE


class SessionPersistence:
    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self._store = store
        self._settings = settings

    def create_token(self, principal: Principal) -> str:
        return create_session_token(principal.to_claims(), self._settings.session_expire_seconds)

    def issue(self, response: Response, principal: Principal, token: str | None = None) -> str:
        """Set the session cookie for principal and return the token.

        The cookie of the other kind is cleared, otherwise a stale local_auth
        cookie would win over a fresh federated login.
        """
        token = token or self.create_token(principal)
        name = cookie_name_for(principal)
        response.set_cookie(
            key=name,
            value=token,
            httponly=True,
            samesite="lax",
            secure=self._settings.secure_cookies,
            max_age=self._settings.session_expire_seconds,
        )
        for other in SESSION_COOKIES:
            if other != name:
                response.delete_cookie(other, httponly=True, samesite="lax", secure=self._settings.secure_cookies)
        return token

    def restore(self, request: Request) -> Principal | None:
        for name in SESSION_COOKIES:
            token = request.cookies.get(name)
            if token:
                principal = self._load(token)
                if principal is not None:
                    return principal

        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            return self._load(auth_header[7:])
        return None

    def revoke(self, request: Request) -> None:
        """Revoke every session token presented with request (cookies and Bearer)."""
        tokens = [request.cookies.get(name) for name in SESSION_COOKIES]
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            tokens.append(auth_header[7:])
        for token in tokens:
            if not token:
                continue
            claims = decode_session_token(token)
            if claims is None or not claims.get("jti"):
                continue
            self._store.revoke_session(claims["jti"], int(claims.get("exp", 0)))
            logger.info("Revoked session for %s principal %s", claims.get("provenance"), claims.get("id"))

    def clear(self, response: Response) -> None:
        for name in SESSION_COOKIES:
            response.delete_cookie(name, httponly=True, samesite="lax", secure=self._settings.secure_cookies)

    def _load(self, token: str) -> Principal | None:
        claims = decode_session_token(token)
        if claims is None:
            return None
        jti = claims.get("jti")
        if not jti or self._store.is_session_revoked(jti):
            return None
        principal = Principal.from_claims(claims)
        if principal is None:
            return None
        return self._refresh(principal)

    def _refresh(self, principal: Principal) -> Principal | None:
        if principal.provenance is Provenance.device_flow:
            return principal
        try:
            record_id = int(principal.id)
        except ValueError:
            return None

        if principal.provenance is Provenance.local:
            account = self._store.get_account(record_id)
            if account is None or not account.is_active or account.username != principal.username:
                return None
            return Principal(
                id=principal.id,
                provenance=principal.provenance,
                role=account.role,
                username=account.username,
            )

        credential = self._store.get_federated_credential(record_id)
        if credential is None or not credential.is_active or credential.email != principal.email:
            return None
        return Principal(
            id=principal.id,
            provenance=principal.provenance,
            role=credential.role,
            email=credential.email,
            display_name=principal.display_name,
        )
