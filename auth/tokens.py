"""
auth/tokens.py -- Access tokens, refresh token material, and password hashing.

Security design decisions:
  Access tokens: python-jose with HS256. Stateless and short-lived
       (ACCESS_TOKEN_TTL_SECONDS). They carry sub (user id), email, role and
       exp. Verification returns None on any failure -- the route layer turns
       that into a 401.

  Refresh tokens: secrets.token_urlsafe(48) -- 384 bits of entropy. Only
       SHA-256(token) is persisted, so a leaked database does not leak usable
       tokens. A plain digest (not bcrypt) is enough for high-entropy secrets
       and keeps the lookup O(1) through the UNIQUE index.

  Passwords: bcrypt, used directly (no passlib wrapper). The _DUMMY_HASH
       constant enables timing equalization in authenticate() so response time
       does not reveal whether an email is registered. bcrypt is CPU-bound:
       callers on an event loop must dispatch it to a worker thread (FastAPI
       sync routes already run in the thread pool).

Layer rule: no imports from api/ or artemis/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import AuditEventType
from core.config import get_settings
from core.errors import AuthenticationError

if TYPE_CHECKING:
    from auth.audit import AuditRecorder
    from auth.models import ClientContext, Credential
    from auth.store import UserStore

logger = logging.getLogger("accessbridge.auth")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input past 72 bytes; the API layer caps password length
    well below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Not a bcrypt hash (corrupt row). Treat as a mismatch.
        return False


# Computed once at module load so the first login is not measurably slower.
_DUMMY_HASH: str = hash_password("accessbridge_timing_dummy")


# ---------------------------------------------------------------------------
# Access tokens (JWT)
# ---------------------------------------------------------------------------


def create_access_token(user_id: int, email: str, role: str, expire_seconds: int = 0) -> str:
    """Encode a signed JWT. expire_seconds=0 uses ACCESS_TOKEN_TTL_SECONDS."""
    duration = expire_seconds if expire_seconds > 0 else get_settings().access_token_ttl_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": str(user_id),
        "user_id": user_id,
        "email": email,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(payload, get_settings().signing_key(), algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, get_settings().signing_key(), algorithms=[_ALGORITHM])
        if "user_id" not in payload or "role" not in payload:
            return None
        return payload
    except JWTError:
        return None


# ---------------------------------------------------------------------------
# Refresh token material
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(48)


def hash_refresh_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_session_id() -> str:
    return secrets.token_hex(16)


# ---------------------------------------------------------------------------
# Credential match (constant-time)
# ---------------------------------------------------------------------------


def authenticate(
    store: UserStore,
    email: str,
    password: str,
    recorder: AuditRecorder | None = None,
    client: ClientContext | None = None,
) -> Credential:
    """Match an email/password pair with timing equalization.

    Always runs bcrypt whether or not the email exists. Raises
    AuthenticationError with one generic message for every failure and, when
    a recorder is given, appends a login_failed event naming the reason.
    """
    credential = store.get_by_email(email)
    if credential is None:
        verify_password(password, _DUMMY_HASH)
        reason = "user_not_found"
    elif not verify_password(password, credential.password_hash):
        reason = "invalid_password"
    else:
        return credential

    if recorder is not None:
        recorder.record(
            None,
            AuditEventType.login_failed,
            {"email": email, "reason": reason},
            user_id=credential.id if credential is not None else None,
            user_email=email,
            client=client,
        )
    logger.info("Login failed (%s)", reason)
    raise AuthenticationError("Invalid email or password.")
