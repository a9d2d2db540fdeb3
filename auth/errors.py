"""
auth/errors.py -- Typed authentication failures.

Every authenticator raises one of these instead of returning None so the API
layer can map each failure to a distinct user-facing message:

  InvalidCredentials    -- wrong username/email or password (never says which)
  TotpRequired          -- credentials were fine, second factor missing
  InvalidTotp           -- second factor present but wrong
  NotConfigured         -- operator has not supplied required settings
  NotAuthorized         -- provider vouched for the user, but they are not
                           on this application's allow-list
  UpstreamProtocolError -- identity provider call failed or answered oddly;
                           safe to retry the same operation

The remaining classes cover account administration: AccountNotFound,
TotpStateError, AdminRequired, AccountConflict and AdminLockout.

Messages are fixed strings. Never interpolate hashes, TOTP secrets, device
codes or provider tokens into them.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. code is machine-readable, message is safe to show users."""

    code = "auth_error"
    message = "Authentication failed."
    status_code = 401

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid username or password."


class TotpRequired(AuthError):
    code = "totp_required"
    message = "Two-factor authentication code required."


class InvalidTotp(AuthError):
    code = "invalid_totp"
    message = "Invalid two-factor authentication code."


class NotConfigured(AuthError):
    code = "not_configured"
    message = "Sign-in method is not configured. Contact your administrator."
    status_code = 503


class NotAuthorized(AuthError):
    code = "not_authorized"
    message = "User not found or not authorized for this application."


class UpstreamProtocolError(AuthError):
    code = "upstream_error"
    message = "The identity provider could not complete the request. Please try again."
    status_code = 502


class InvalidState(UpstreamProtocolError):
    code = "invalid_state"
    message = "Sign-in session is invalid or has expired. Please start again."
    status_code = 400


class AccountNotFound(AuthError):
    code = "not_found"
    message = "User not found."
    status_code = 404


class TotpStateError(AuthError):
    """A 2FA transition was requested from a state that does not allow it."""

    code = "totp_state"
    message = "Two-factor authentication is not in a state that allows this change."
    status_code = 409


class AdminRequired(AuthError):
    code = "forbidden"
    message = "Admin access required."
    status_code = 403


class AccountConflict(AuthError):
    """Duplicate name, or a change that would lock administrators out."""

    code = "conflict"
    message = "A user with that name already exists."
    status_code = 409


class AdminLockout(AuthError):
    """Change refused because it would leave no usable administrator."""

    code = "admin_lockout"
    message = "Cannot remove the last active admin."
    status_code = 400
