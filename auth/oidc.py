"""
auth/oidc.py -- OpenID Connect authorization-code sign-in.

Two steps, no server-side session between them:

  build_authorization_url() -- mint a signed state (carrying a nonce) and
                               return the provider's authorize URL
  complete_login(code, state) -- check the state, redeem the code, verify the
                               ID token and match the email against the
                               federated allow-list

The ID token is verified against the tenant's published JWKS (RS256, audience
= client id, issuer = tenant v2.0 issuer) and its nonce must equal the one in
the state. OIDC_VERIFY_SIGNATURE=false skips the signature check only; the
nonce is still compared.

Only users that already exist as active federated credentials may sign in.
The allow-list row supplies id and role; the token supplies the display name.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

import requests
from authlib.integrations.requests_client import OAuthError
from jose import JWTError, jwt

from auth.errors import InvalidState, NotAuthorized, NotConfigured, UpstreamProtocolError
from auth.identity import Principal, from_oidc
from auth.oauth import SessionFactory, create_oauth_session
from auth.store import CredentialStore
from auth.tokens import create_state_token, decode_state_token
from core.config import Settings

logger = logging.getLogger("opsdesk.auth.oidc")

_JWKS_TTL_SECONDS = 3600
_ID_TOKEN_ALGORITHMS = ["RS256"]


class AuthorizationCodeFlowCoordinator:
    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        session_factory: SessionFactory = create_oauth_session,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._settings = settings
        self._session_factory = session_factory
        self._clock = clock
        self._jwks: dict | None = None
        self._jwks_fetched_at = 0.0
        self._jwks_lock = threading.Lock()

    def _redirect_uri(self, fallback: str | None) -> str:
        redirect_uri = self._settings.microsoft_redirect_uri or fallback
        if not redirect_uri:
            raise NotConfigured("Microsoft redirect URI is not configured.")
        return redirect_uri

    def build_authorization_url(self, fallback_redirect_uri: str | None = None) -> tuple[str, str]:
        """Return (authorization_url, redirect_uri).

        fallback_redirect_uri is used when MICROSOFT_REDIRECT_URI is unset;
        the API passes its own callback URL.
        """
        cfg = self._settings
        if not cfg.microsoft_client_id or not cfg.microsoft_tenant_id:
            logger.error("OIDC sign-in requested but client ID or tenant ID is not set")
            raise NotConfigured("Microsoft Entra ID configuration missing")
        redirect_uri = self._redirect_uri(fallback_redirect_uri)

        state, nonce = create_state_token(cfg.oidc_state_ttl_seconds)
        session = self._session_factory(cfg.microsoft_client_id, None, redirect_uri, cfg.oidc_scope)
        url, _ = session.create_authorization_url(
            cfg.authorize_url,
            state=state,
            nonce=nonce,
            response_mode="query",
        )
        logger.info("OIDC authorization URL issued (client %s...)", cfg.microsoft_client_id[:8])
        return url, redirect_uri

    def complete_login(self, code: str, state: str, fallback_redirect_uri: str | None = None) -> Principal:
        cfg = self._settings
        if not cfg.microsoft_client_id or not cfg.microsoft_client_secret or not cfg.microsoft_tenant_id:
            logger.error("OIDC callback received but the confidential client is not configured")
            raise NotConfigured("Microsoft Entra ID configuration missing")
        if not code:
            raise UpstreamProtocolError("Authorization code is required")

        nonce = decode_state_token(state) if state else None
        if nonce is None:
            logger.warning("OIDC callback rejected: state missing, forged or expired")
            raise InvalidState()

        redirect_uri = self._redirect_uri(fallback_redirect_uri)
        session = self._session_factory(
            cfg.microsoft_client_id, cfg.microsoft_client_secret, redirect_uri, cfg.oidc_scope
        )
        try:
            token = session.fetch_token(
                cfg.token_url,
                grant_type="authorization_code",
                code=code,
                redirect_uri=redirect_uri,
                timeout=cfg.http_timeout_seconds,
            )
        except OAuthError as exc:
            logger.warning("Authorization code exchange rejected: %s", exc.error)
            raise UpstreamProtocolError("Failed to exchange authorization code") from exc
        except requests.RequestException as exc:
            logger.warning("Authorization code exchange failed: %s", type(exc).__name__)
            raise UpstreamProtocolError("Failed to exchange authorization code") from exc

        id_token = token.get("id_token")
        if not id_token:
            raise UpstreamProtocolError("No ID token received")
        claims = self._id_token_claims(session, id_token, token.get("access_token"))

        if claims.get("nonce") != nonce:
            logger.warning("OIDC callback rejected: ID token nonce does not match state")
            raise InvalidState()

        email = claims.get("email") or claims.get("preferred_username")
        if not email:
            raise UpstreamProtocolError("ID token carries no email address")

        credential = self._store.get_federated_by_email(email, active_only=True)
        if credential is None:
            logger.info("OIDC sign-in refused: identity is not on the federated allow-list")
            raise NotAuthorized()
        logger.info("OIDC sign-in for federated credential %d", credential.id)
        return from_oidc(credential, claims.get("name"))

    # ------------------------------------------------------------------
    # ID token
    # ------------------------------------------------------------------

    def _id_token_claims(self, session, id_token: str, access_token: str | None) -> dict:
        cfg = self._settings
        if not cfg.oidc_verify_signature:
            logger.warning("ID token signature verification is disabled (OIDC_VERIFY_SIGNATURE=false)")
            try:
                return jwt.get_unverified_claims(id_token)
            except JWTError as exc:
                raise UpstreamProtocolError("Malformed ID token") from exc

        jwks = self._get_jwks(session)
        try:
            return jwt.decode(
                id_token,
                jwks,
                algorithms=_ID_TOKEN_ALGORITHMS,
                audience=cfg.microsoft_client_id,
                issuer=cfg.oidc_issuer,
                access_token=access_token,
            )
        except JWTError as exc:
            logger.warning("ID token failed verification: %s", exc)
            raise UpstreamProtocolError("ID token failed verification") from exc

    def _get_jwks(self, session) -> dict:
        with self._jwks_lock:
            now = self._clock()
            if self._jwks is not None and now - self._jwks_fetched_at < _JWKS_TTL_SECONDS:
                return self._jwks
            try:
                resp = session.get(
                    self._settings.jwks_url,
                    timeout=self._settings.http_timeout_seconds,
                    withhold_token=True,
                )
                resp.raise_for_status()
                jwks = resp.json()
            except (requests.RequestException, ValueError) as exc:
                logger.warning("Could not fetch signing keys: %s", type(exc).__name__)
                raise UpstreamProtocolError("Could not fetch identity provider signing keys") from exc
            if not isinstance(jwks, dict) or not jwks.get("keys"):
                raise UpstreamProtocolError("Identity provider returned no signing keys")
            self._jwks = jwks
            self._jwks_fetched_at = now
            return jwks
