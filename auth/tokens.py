"""
auth/tokens.py -- Password hashing, reset tokens, and key generation.

Security design decisions:
  Passwords: bcrypt with a fixed cost factor of 10. The hash string embeds its
       own salt and cost, so verify_password() needs nothing but the stored
       value. The _DUMMY_HASH constant enables timing equalization in
       authenticate_user() so response time does not reveal whether an
       account exists.

  Reset tokens: secrets.token_hex(32) gives 256 bits of entropy. Only the
       SHA-256 digest is stored. The digest is unkeyed on purpose: the reset
       page recomputes it from the URL token, and a keyed hash would invalidate
       every outstanding token whenever SECRET_KEY rotates. Brute-forcing a
       256-bit preimage is infeasible, so bcrypt's slowness buys nothing here.

  API keys / license keys: random values generated for the admin CLI. They are
       opaque strings; nothing in the portal parses them.

Layer rule: no imports from api/ or web/. core/ is not needed here; callers
pass the TTL in.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import CredentialStore

logger = logging.getLogger("licenseportal.auth")

BCRYPT_ROUNDS = 10
# bcrypt only reads the first 72 bytes, and bcrypt >= 5 rejects anything longer.
MAX_PASSWORD_BYTES = 72
RESET_TOKEN_TTL_SECONDS = 3600

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError for passwords over MAX_PASSWORD_BYTES in UTF-8. The
    flows reject those as a field error before they get here.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise ValueError(f"password cannot be longer than {MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed hash, or a password bcrypt cannot accept, is a mismatch,
    not an error.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("licenseportal_timing_dummy")


# ---------------------------------------------------------------------------
# User authentication (constant-time)
# ---------------------------------------------------------------------------


def authenticate_user(store: CredentialStore, identifier: str, password: str) -> User | None:
    """Authenticate a username-or-email / password pair with timing equalization.

    Always runs bcrypt whether or not the account exists:
    - Unknown identifier or no stored hash: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the User on success, None on any failure. Store errors propagate.
    """
    user = store.get_by_username_or_email(identifier)
    if user is None or not user.password_hash:
        # Do NOT return early before running bcrypt.
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


# ---------------------------------------------------------------------------
# Reset tokens
# ---------------------------------------------------------------------------


def hash_reset_token(token: str) -> str:
    """Return the SHA-256 hex digest used to look up a reset token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue_reset_token() -> tuple[str, str]:
    """Generate a reset token.

    Returns (plaintext, lookup_hash). Persist only the lookup hash; deliver
    only the plaintext.
    """
    token = secrets.token_hex(32)
    return token, hash_reset_token(token)


def reset_token_expiry(now: datetime | None = None, ttl_seconds: int = RESET_TOKEN_TTL_SECONDS) -> datetime:
    """Return the absolute expiry for a token issued at now (UTC)."""
    issued = now or datetime.now(timezone.utc)
    return issued + timedelta(seconds=ttl_seconds)


def reset_token_is_live(user: User, now: datetime | None = None) -> bool:
    """Return True if the user's stored reset token has not yet expired.

    A missing or unparseable expiry counts as expired.
    """
    if not user.reset_password_token or not user.reset_password_expires:
        return False
    try:
        expires = datetime.fromisoformat(user.reset_password_expires)
    except ValueError:
        logger.warning("Unparseable reset expiry for user_id=%s", user.id)
        return False
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=timezone.utc)
    return (now or datetime.now(timezone.utc)) < expires


# ---------------------------------------------------------------------------
# Key generation (admin CLI)
# ---------------------------------------------------------------------------


def generate_api_key() -> str:
    """Generate a new API key in the format: lp_<64 hex chars>."""
    return f"lp_{secrets.token_hex(32)}"


def generate_license_key() -> str:
    """Generate a license key as five dash-separated groups of uppercase hex.

    Example: 3F9A1-0C7B2-D44E8-91AF0-6B2C5 (100 bits of entropy).
    """
    raw = secrets.token_hex(13)[:25].upper()
    return "-".join(raw[i : i + 5] for i in range(0, 25, 5))
