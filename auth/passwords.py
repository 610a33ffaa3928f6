"""
auth/passwords.py -- Password hashing, verification, and random tokens.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). The cost factor comes
       from Settings.bcrypt_rounds and is embedded in every hash together with
       the salt, so verification needs nothing but the stored string. Changing
       BCRYPT_ROUNDS only affects newly created hashes.

  Verification never raises. A wrong password and a corrupt stored hash both
       come back as False, so callers cannot leak which of the two happened.

  _DUMMY_HASH enables timing equalization when an email is unknown: the login
       flow still runs one bcrypt comparison, so response time does not reveal
       whether an account exists.

  Tokens: secrets.token_hex(n) gives n bytes of entropy as 2n hex characters.
       Used for session ids, registration and password-reset tokens.

Layer rule: no imports from api/, sessions/, or cache/. Import from core/
is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
import secrets

import bcrypt

from core.config import get_settings

logger = logging.getLogger("gatehouse.auth")

_settings = get_settings()


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes of input; the API layer caps
    password length well below that.
    """
    salt = bcrypt.gensalt(rounds=rounds or _settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(hashed: str | None, plain: str) -> bool:
    """Return True only if ``plain`` matches the bcrypt hash ``hashed``."""
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        logger.warning("Password verification against a malformed hash")
        return False


# Computed once at module load so the first unknown-email login is not
# measurably slower than the rest.
_DUMMY_HASH: str = hash_password("gatehouse_timing_dummy")


def equalize_timing(plain: str) -> None:
    """Burn one bcrypt comparison. Call on every early-exit path of a login."""
    verify_password(_DUMMY_HASH, plain)


def generate_token(nbytes: int | None = None) -> str:
    """Return a random hex token of ``2 * nbytes`` characters."""
    return secrets.token_hex(nbytes or _settings.token_bytes)
