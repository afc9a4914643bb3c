"""
auth/credentials.py -- Password hashing, API key generation, input validation.

Security design decisions:
  Passwords: bcrypt, used directly (no passlib wrapper). Bcrypt is the right
       choice for low-entropy secrets because its cost factor makes brute-force
       expensive. The cost factor comes from Settings.bcrypt_rounds so tests
       can run with a cheap one. The _DUMMY_HASH constant enables timing
       equalization in UserStore.authenticate() so response time does not
       reveal whether a username exists.

  API keys: secrets.token_urlsafe(Settings.api_key_length) -- 256 bits of
       entropy with the default length. Keys are looked up by exact value in
       the users_by_api_key index table.

  Validation: username / email / password rules return an error message
       (str) or None. Routes turn messages into HTTP 400 responses; the CLI
       prints them.

Layer rule: no imports from api/ or sessions/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import re
import secrets

import bcrypt

from core.config import get_settings

logger = logging.getLogger("wikiauth.credentials")

_settings = get_settings()

_API_KEY_PREFIX = "wk_"

_USERNAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

USERNAME_MIN_LEN = 3
USERNAME_MAX_LEN = 32

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes; longer inputs are truncated here
    so bcrypt 4.x does not reject them.
    """
    pw_bytes = plain.encode("utf-8")[:72]
    return bcrypt.hashpw(pw_bytes, bcrypt.gensalt(rounds=_settings.bcrypt_rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    if not plain or not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Callers run verify_dummy() whenever there is
# no real hash to check, so "no such user" costs the same as "wrong password".
_DUMMY_HASH: str = hash_password("wikiauth_timing_dummy")


def verify_dummy(plain: str) -> None:
    """Burn one bcrypt verification against a throwaway hash."""
    verify_password(plain or "x", _DUMMY_HASH)


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


def generate_api_key() -> str:
    """Generate a new API key: wk_ followed by URL-safe random characters."""
    return f"{_API_KEY_PREFIX}{secrets.token_urlsafe(_settings.api_key_length)}"


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


def validate_username(username: str | None) -> str | None:
    if not username:
        return "Username is required"
    if not USERNAME_MIN_LEN <= len(username) <= USERNAME_MAX_LEN:
        return f"Username must be {USERNAME_MIN_LEN}-{USERNAME_MAX_LEN} characters"
    if not _USERNAME_RE.match(username):
        return "Username can only contain letters, numbers, underscores, and hyphens"
    return None


def validate_email(email: str | None) -> str | None:
    if not email:
        return "Email is required"
    if not _EMAIL_RE.match(email):
        return "Invalid email format"
    return None


def validate_password(password: str | None) -> str | None:
    """Check the password policy. Only a minimum length is enforced."""
    min_length = _settings.password_min_length
    if not password or len(password) < min_length:
        return f"Password must be at least {min_length} characters"
    return None
