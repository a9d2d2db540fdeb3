"""
auth/tokens.py -- Password hashing, timing equalization, and signed tokens.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper) with a fixed work factor of
       10, so hashes created here match those seeded by earlier deployments.
       _DUMMY_HASH lets authenticators run one bcrypt comparison even when
       the username or email does not exist, so response time does not reveal
       which field was wrong.

  Session tokens: python-jose HS256 JWTs signed with SECRET_KEY. They carry the
       normalized principal claims and an expiry. Decoding returns None on any
       failure; callers treat None as "no session".

  OIDC state: also an HS256 JWT, with a short TTL and a random nonce. The
       authorization-code flow is stateless between its two steps, so the
       signature is what proves a callback's state value was minted here.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

logger = logging.getLogger("opsdesk.auth")

_settings = get_settings()

_ALGORITHM = "HS256"
_BCRYPT_ROUNDS = 10

_SESSION_TYPE = "session"
_STATE_TYPE = "oidc_state"


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash (work factor 10) of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps password
    length well below the point where that matters for realistic input.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=_BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed or empty stored hash.
        return False


# Computed once at module load so the first failed login is not measurably
# slower than later ones.
_DUMMY_HASH: str = hash_password("opsdesk_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run one bcrypt comparison against a throwaway hash.

    Call this on every "no such user" path before returning, so that path
    costs the same as a wrong-password check.
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def create_session_token(claims: dict, expire_seconds: int = 0) -> str:
    """Sign a session token carrying the given principal claims.

    Args:
        claims:         JSON-serializable principal fields (id, role, provenance, ...).
        expire_seconds: Lifetime; 0 uses Settings.session_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.session_expire_seconds
    payload = dict(claims)
    payload["typ"] = _SESSION_TYPE
    payload["jti"] = secrets.token_urlsafe(16)
    payload["exp"] = datetime.now(timezone.utc) + timedelta(seconds=duration)
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_session_token(token: str) -> dict | None:
    """Verify a session token. Returns its claims or None on any failure.

    The claims keep "jti" and "exp" (epoch seconds) so that a logout can
    revoke exactly this token until it would have expired anyway.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("typ") != _SESSION_TYPE or "id" not in payload or "provenance" not in payload:
        return None
    payload.pop("typ", None)
    return payload


# ---------------------------------------------------------------------------
# OIDC state
# ---------------------------------------------------------------------------


def create_state_token(ttl_seconds: int = 0) -> tuple[str, str]:
    """Return (state, nonce).

    The nonce goes into the authorization request and must come back inside
    the ID token; the state carries it so the callback can compare.
    """
    duration = ttl_seconds if ttl_seconds > 0 else _settings.oidc_state_ttl_seconds
    nonce = secrets.token_urlsafe(24)
    payload = {
        "typ": _STATE_TYPE,
        "nonce": nonce,
        "jti": secrets.token_urlsafe(12),
        "exp": datetime.now(timezone.utc) + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM), nonce


def decode_state_token(state: str) -> str | None:
    """Return the nonce bound to a state value, or None if forged or expired."""
    try:
        payload = jwt.decode(state, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("typ") != _STATE_TYPE:
        return None
    return payload.get("nonce")
