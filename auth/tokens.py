"""
auth/tokens.py -- Password hashing, OTP code hashing, and session JWTs.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       the account id (sub), email, role, optional profile id, and expiry.
       Verification returns None on any failure -- the route layer turns that
       into a 401. The issuer is stateless: nothing about a token is stored.

  Passwords: bcrypt with a fresh per-account salt from bcrypt.gensalt(). The
       salt is persisted next to the hash so hash_password(plain, salt) can be
       recomputed. The _DUMMY_HASH constant enables timing equalization for
       unknown emails [C1].

  OTP codes: HMAC-SHA256(SECRET_KEY, code). A 6-digit code has ~20 bits of
       entropy, so a plain SHA-256 of it is trivially reversible; keying the
       hash with SECRET_KEY means a DB dump alone does not reveal live codes.
       The deterministic digest lets validation compare with
       hmac.compare_digest instead of storing the code.

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is
the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

logger = logging.getLogger("tripauth.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


_BCRYPT_MAX_BYTES = 72


def _pw_bytes(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def generate_salt() -> str:
    return bcrypt.gensalt().decode("utf-8")


def hash_password(plain: str, salt: str) -> str:
    """Return the bcrypt hash of plain under the given salt.

    bcrypt only reads the first 72 bytes, and bcrypt 5 raises instead of
    truncating, so the input is cut to 72 bytes here and in verify_password().
    """
    return bcrypt.hashpw(_pw_bytes(plain), salt.encode("utf-8")).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(_pw_bytes(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# Timing equalization dummy hash [C1]. Computed once at module load.
_DUMMY_HASH: str = hash_password("tripauth_timing_dummy", generate_salt())


def burn_password_check(plain: str) -> None:
    """Run one bcrypt comparison against a dummy hash and discard the result.

    Called when no account matches an email so the response time of an
    unknown email equals that of a wrong password.
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# OTP code hashing
# ---------------------------------------------------------------------------


def hash_otp_code(account_id: int, code: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, "<account_id>:<code>") as a hex string.

    Binding the account id into the message means the same code issued to two
    accounts never produces the same digest.
    """
    message = f"{account_id}:{code}".encode()
    return hmac.new(_settings.secret_key.encode(), message, hashlib.sha256).hexdigest()


def otp_hashes_match(expected_hash: str, account_id: int, submitted_code: str) -> bool:
    return hmac.compare_digest(expected_hash, hash_otp_code(account_id, submitted_code.strip()))


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


@dataclass
class SessionClaims:
    """Claims carried by a session token. profile_id is None until the profile exists."""

    account_id: int
    email: str
    role: str
    profile_id: str | None = None


def create_access_token(claims: SessionClaims, expire_seconds: int = 0) -> str:
    """Encode a signed JWT for the given claims.

    Args:
        claims:         Identity to embed. account_id becomes the subject.
        expire_seconds: Session duration in seconds. If 0 (default), uses
                        Settings.token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = asdict(claims)
    payload["sub"] = str(claims.account_id)
    payload["exp"] = expire
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
        if "account_id" not in payload or "role" not in payload:
            return None
        return payload
    except JWTError:
        return None


def issue_session_token(account) -> str:
    """Issue a session token for an Account (see auth.models.Account)."""
    return create_access_token(
        SessionClaims(
            account_id=account.id,
            email=account.email,
            role=account.role,
            profile_id=account.profile_id,
        )
    )


def set_auth_cookie(response, token: str) -> None:
    """Write the session token as an httpOnly cookie for browser clients.

    samesite="lax" keeps the cookie off cross-site POSTs. secure follows
    SECURE_COOKIES; max_age matches the JWT expiry so both lapse together.
    """
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.token_expire_seconds,
    )
