"""
auth/tokens.py -- JWT, password hashing, and legacy hash utilities.

Decisions:
  JWT: python-jose with HS256, two token types distinguished by a "typ" claim
       so one can never be replayed as the other:
         "claims"  -- issued by the identity provider; carries the provider's
                      custom claims (notably "role"). Short-lived; callers that
                      care about freshness force a refresh instead of reusing it.
         "session" -- the web session cookie; carries the SessionRecord fields.
                      It identifies the caller but is never trusted for a role.
       Verification returns None on any failure -- callers treat that as
       "no identity".

  Passwords: bcrypt directly (no passlib wrapper). _DUMMY_HASH enables timing
       equalization so response time does not reveal whether an account
       exists [C1].

  Legacy hashes: older managed accounts store hex SHA-256(salt + password).
       They are still accepted at login and compared with hmac.compare_digest.

Layer rule: imports core/ only, never api/, web/, docstore/ or cache/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import bcrypt
from jose import JWTError, jwt

from auth.models import SessionRecord
from core.config import get_settings

logger = logging.getLogger("schoolgate.auth")

# ---------------------------------------------------------------------------
# Settings [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

SESSION_COOKIE = "access_token"

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """bcrypt check of a plaintext password against its stored hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except Exception:
        return False


def is_bcrypt_hash(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.startswith(_BCRYPT_PREFIXES)


def legacy_hash(password: str, salt: str = "") -> str:
    """Hex SHA-256 of salt + password, the format of pre-bcrypt account records."""
    return hashlib.sha256((salt + password).encode("utf-8")).hexdigest()


def verify_stored_password(plain: str, stored_hash: str, salt: Optional[str] = None) -> bool:
    """Check a password against either a bcrypt hash or a legacy salted SHA-256 hex digest."""
    if is_bcrypt_hash(stored_hash):
        return verify_password(plain, stored_hash)
    return hmac.compare_digest(legacy_hash(plain, salt or ""), stored_hash)


# Timing equalization dummy hash [C1]. Computed once at module load.
_DUMMY_HASH: str = hash_password("schoolgate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt check that always fails, so a miss costs as much as a hit [C1]."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Provider claims tokens
# ---------------------------------------------------------------------------


def create_claims_token(uid: str, email: Optional[str], claims: dict[str, Any], ttl_seconds: int = 0) -> str:
    """Encode a provider-issued claims token.

    Custom claims are merged in first so they can never overwrite the
    registered claims (sub, typ, iat, exp).
    """
    duration = ttl_seconds if ttl_seconds > 0 else _settings.claims_token_ttl_seconds
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = dict(claims)
    payload.update(
        {
            "sub": uid,
            "email": email,
            "typ": "claims",
            "iat": now,
            "exp": now + timedelta(seconds=duration),
        }
    )
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_claims_token(token: str) -> Optional[dict[str, Any]]:
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("typ") != "claims" or "sub" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# Session tokens (web cookie / Bearer)
# ---------------------------------------------------------------------------


def create_session_token(record: SessionRecord, expire_seconds: int = 0) -> str:
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    payload: dict[str, Any] = {
        "sub": record.uid,
        "typ": "session",
        "session": record.to_dict(),
        "exp": datetime.now(timezone.utc) + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_session_token(token: str) -> Optional[SessionRecord]:
    """Decode a session token. Returns None for anything invalid, expired or malformed."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("typ") != "session" or not isinstance(payload.get("session"), dict):
        return None
    try:
        return SessionRecord.from_dict(payload["session"])
    except (KeyError, ValueError, TypeError):
        logger.warning("Session token with malformed session payload ignored")
        return None


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: page scripts never see the cookie.
    samesite="lax": CSRF mitigation for cross-site POSTs.
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )
