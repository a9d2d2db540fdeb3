"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for OpsDesk happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. microsoft_client_id -> MICROSOFT_CLIENT_ID).

  @model_validator(mode="after"): DEBUG-conditional SECRET_KEY logic. Dev mode
      generates a key with a warning, production mode refuses to start without one.

Identity provider settings:
  Device flow needs only MICROSOFT_CLIENT_ID (public client).
  The authorization-code flow additionally needs MICROSOFT_CLIENT_SECRET and
  MICROSOFT_TENANT_ID. Empty string means "not configured"; the coordinators
  turn that into NotConfigured rather than a generic failure.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("opsdesk.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'opsdesk_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_expire_seconds: int = 8 * 3600

    # ------------------------------------------------------------------
    # Local accounts
    # ------------------------------------------------------------------

    # Seed passwords for the two first-run accounts. Change them after setup.
    bootstrap_admin_password: str = "123"
    bootstrap_user_password: str = "user"
    totp_issuer: str = "JeffFromIT"

    # ------------------------------------------------------------------
    # Microsoft identity platform (empty string means not configured)
    # ------------------------------------------------------------------

    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    microsoft_tenant_id: str = ""
    microsoft_redirect_uri: str = ""

    # "common" accepts work/school and personal accounts for the device flow.
    device_flow_tenant: str = "common"
    device_flow_scope: str = "openid profile email User.Read"
    oidc_scope: str = "openid profile email"
    # Setting this to false restores decode-only ID token handling. Never do
    # that outside a lab environment.
    oidc_verify_signature: bool = True
    oidc_state_ttl_seconds: int = 600

    identity_authority: str = "https://login.microsoftonline.com"
    graph_me_url: str = "https://graph.microsoft.com/v1.0/me"

    # Bound on every single identity-provider round trip, in seconds.
    http_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if SECRET_KEY is missing. Session
            cookies and OIDC state values are signed with this key.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    # ------------------------------------------------------------------
    # Derived endpoints
    # ------------------------------------------------------------------

    @property
    def device_code_url(self) -> str:
        return f"{self.identity_authority}/{self.device_flow_tenant}/oauth2/v2.0/devicecode"

    @property
    def device_token_url(self) -> str:
        return f"{self.identity_authority}/{self.device_flow_tenant}/oauth2/v2.0/token"

    @property
    def authorize_url(self) -> str:
        return f"{self.identity_authority}/{self.microsoft_tenant_id}/oauth2/v2.0/authorize"

    @property
    def token_url(self) -> str:
        return f"{self.identity_authority}/{self.microsoft_tenant_id}/oauth2/v2.0/token"

    @property
    def jwks_url(self) -> str:
        return f"{self.identity_authority}/{self.microsoft_tenant_id}/discovery/v2.0/keys"

    @property
    def oidc_issuer(self) -> str:
        return f"{self.identity_authority}/{self.microsoft_tenant_id}/v2.0"


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
