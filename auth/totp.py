"""
auth/totp.py -- TOTP second factor: engine functions and enrollment state machine.

RFC 6238 via pyotp: 6 digits, 30-second step, HMAC-SHA1, base32 secret.
Compatible with Google Authenticator, Microsoft Authenticator, Authy, Aegis.

Per-account state machine:

    disabled --setup--> pending --enable(valid token)--> enabled
    pending  --setup--> pending      (new secret replaces the old one)
    enabled  --disable-> disabled    (secret cleared, no token needed)

Enabling requires a token that verifies against the secret stored by the
latest setup, so 2FA cannot be switched on with a secret that was never
loaded into an authenticator app. The store's compare-and-swap makes the
check-then-enable sequence safe against a concurrent setup.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import pyotp

from auth.errors import AccountNotFound, InvalidTotp, TotpStateError
from auth.store import CredentialStore

logger = logging.getLogger("opsdesk.auth.totp")

_DIGITS = 6
_VALID_WINDOW = 1  # accept the previous and next 30s step for clock skew


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def generate_secret() -> str:
    """Return a new random base32 secret (32 chars, 160 bits)."""
    return pyotp.random_base32()


def build_enrollment_uri(label: str, issuer: str, secret: str) -> str:
    """Return the otpauth:// URI that authenticator apps scan as a QR code.

    Format: otpauth://totp/{issuer}:{label}?secret={secret}&issuer={issuer}
    """
    return pyotp.TOTP(secret).provisioning_uri(name=label, issuer_name=issuer)


def verify(secret: str | None, token: str | None) -> bool:
    """True if token is the current code for secret, within one step of skew.

    Malformed input (empty values, non-digits, wrong length, bad base32)
    returns False and never raises.
    """
    if not secret or not token:
        return False
    token = token.strip().replace(" ", "")
    if len(token) != _DIGITS or not token.isdigit():
        return False
    try:
        return pyotp.TOTP(secret).verify(token, valid_window=_VALID_WINDOW)
    except (ValueError, TypeError):
        # binascii.Error from a bad base32 secret is a ValueError subclass.
        return False


def generate(secret: str) -> str:
    """Return the current 6-digit code. For tests and automation only."""
    return pyotp.TOTP(secret).now()


# ---------------------------------------------------------------------------
# Enrollment
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TotpSetup:
    secret: str
    enrollment_uri: str


class TotpEnrollment:
    """setup / enable / disable for one account at a time."""

    def __init__(self, store: CredentialStore, issuer: str) -> None:
        self._store = store
        self._issuer = issuer

    def setup(self, account_id: int) -> TotpSetup:
        """Generate and store a pending secret.

        Raises AccountNotFound, or TotpStateError if 2FA is already enabled.
        """
        account = self._store.get_account(account_id)
        if account is None:
            raise AccountNotFound()
        secret = generate_secret()
        if not self._store.begin_totp_setup(account_id, secret):
            # Either enabled meanwhile or deleted meanwhile.
            if self._store.get_account(account_id) is None:
                raise AccountNotFound()
            raise TotpStateError("Two-factor authentication is already enabled. Disable it first.")
        logger.info("TOTP setup started for account %d", account_id)
        return TotpSetup(secret=secret, enrollment_uri=build_enrollment_uri(account.username, self._issuer, secret))

    def enable(self, account_id: int, token: str) -> None:
        """Enable 2FA if token verifies against the pending secret.

        Raises AccountNotFound, TotpStateError (nothing pending / already on),
        or InvalidTotp. On any failure the account is left unchanged.
        """
        account = self._store.get_account(account_id)
        if account is None:
            raise AccountNotFound()
        if account.totp_enabled:
            raise TotpStateError("Two-factor authentication is already enabled.")
        if not account.totp_secret:
            raise TotpStateError("Start two-factor setup before enabling it.")
        if not verify(account.totp_secret, token):
            raise InvalidTotp()
        if not self._store.enable_totp(account_id, account.totp_secret):
            # A concurrent setup replaced the secret after we read it; the
            # token was checked against a secret that is no longer pending.
            logger.warning("TOTP enable for account %d lost a race with a concurrent setup", account_id)
            raise InvalidTotp()
        logger.info("TOTP enabled for account %d", account_id)

    def disable(self, account_id: int) -> None:
        """Disable 2FA and clear the secret. No token required."""
        if not self._store.disable_totp(account_id):
            raise AccountNotFound()
        logger.info("TOTP disabled for account %d", account_id)
