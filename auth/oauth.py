"""
auth/oauth.py -- Authlib OAuth2 client sessions and provider metadata.

Both federated flows talk to the Microsoft identity platform through an
authlib OAuth2Session (a requests.Session subclass):

  device code flow   -- public client, client_id only, no client auth
  authorization code -- confidential client, client_secret sent in the body

A fresh session is built per operation. Sessions hold the token from the
last fetch_token() call, so sharing one across users would mix identities.

get_enabled_providers() tells the login surface which buttons to render.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from typing import Callable

from authlib.integrations.requests_client import OAuth2Session

from core.config import Settings, get_settings

logger = logging.getLogger("opsdesk.auth.oauth")

# (client_id, client_secret, redirect_uri, scope) -> session
SessionFactory = Callable[[str, "str | None", "str | None", "str | None"], OAuth2Session]


def create_oauth_session(
    client_id: str,
    client_secret: str | None = None,
    redirect_uri: str | None = None,
    scope: str | None = None,
) -> OAuth2Session:
    """Build an authlib session for one flow step.

    Public clients (no secret) use token_endpoint_auth_method="none", which
    puts client_id in the token request body as the device flow requires.
    """
    auth_method = "client_secret_post" if client_secret else "none"
    session = OAuth2Session(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
        scope=scope,
        token_endpoint_auth_method=auth_method,
    )
    # Identity endpoints are fixed URLs; a long redirect chain is never legitimate.
    session.max_redirects = 3
    return session


def device_flow_configured(cfg: Settings) -> bool:
    return bool(cfg.microsoft_client_id)


def oidc_configured(cfg: Settings) -> bool:
    return bool(cfg.microsoft_client_id and cfg.microsoft_client_secret and cfg.microsoft_tenant_id)


def get_enabled_providers(cfg: Settings | None = None) -> list[dict]:
    """Return metadata for every sign-in method that can currently work.

    Local and federated-password sign-in need no external configuration and
    are always listed. Returns list of {"name": str, "label": str} dicts.
    """
    cfg = cfg or get_settings()
    providers: list[dict] = [
        {"name": "local", "label": "Username"},
        {"name": "federatedPassword", "label": "Microsoft Entra ID"},
    ]
    if device_flow_configured(cfg):
        providers.append({"name": "deviceFlow", "label": "Microsoft (device code)"})
    if oidc_configured(cfg):
        providers.append({"name": "oidc", "label": "Microsoft (single sign-on)"})
    return providers
