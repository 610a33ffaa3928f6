"""
core/errors.py -- Domain error taxonomy shared by every layer.

Each error carries a stable machine-readable ``code``. The HTTP layer maps
these classes to status codes; nothing else depends on the message text.

Login failures deliberately collapse "no such user" and "wrong password"
into Unauthorized so callers cannot enumerate registered emails.

Layer rule: core/ is the kernel. No imports from api/, auth/, sessions/, or cache/.
"""

from __future__ import annotations

from datetime import timedelta


class AuthError(Exception):
    """Base class for every expected auth/session failure."""

    code = "auth_error"
    message = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


# ---------------------------------------------------------------------------
# Credentials and identity
# ---------------------------------------------------------------------------


class Unauthorized(AuthError):
    code = "unauthorized"
    message = "Invalid email or password."


class UserExists(AuthError):
    code = "user_exists"
    message = "A user with that email already exists."


class UserNotFound(AuthError):
    code = "user_not_found"
    message = "User not found."


class GroupNotFound(AuthError):
    code = "group_not_found"
    message = "Group not found."


class PermissionNotFound(AuthError):
    code = "permission_not_found"
    message = "Permission not found."


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionNotFound(AuthError):
    code = "session_not_found"
    message = "Session not found."


class SessionExpired(AuthError):
    code = "session_expired"
    message = "Session expired."


# ---------------------------------------------------------------------------
# Registration / reset tokens
# ---------------------------------------------------------------------------


class InvalidToken(AuthError):
    code = "invalid_token"
    message = "Invalid token."


class TokenExpired(AuthError):
    code = "token_expired"
    message = "Token expired."


class TokenNotFound(AuthError):
    code = "token_not_found"
    message = "Token not found."


# ---------------------------------------------------------------------------
# Throttling
# ---------------------------------------------------------------------------


class LimitExceeded(AuthError):
    """Raised by RateLimiter.limit() once a key has used up its window.

    ttl is the time until the window reopens; limit is the attempt count
    that was reached. Clients should wait ttl before retrying.
    """

    code = "limit_exceeded"
    message = "Too many attempts."

    def __init__(self, ttl: timedelta, limit: int) -> None:
        super().__init__(f"max attempts: ttl {ttl}")
        self.ttl = ttl
        self.limit = limit

    @property
    def retry_after(self) -> int:
        """Whole seconds to wait, rounded up so clients never retry early."""
        seconds = self.ttl.total_seconds()
        whole = int(seconds)
        return whole + 1 if seconds > whole else whole


# ---------------------------------------------------------------------------
# Field validation
# ---------------------------------------------------------------------------


class FieldRequired(AuthError):
    code = "field_required"
    field = ""


class NameRequired(FieldRequired):
    code = "name_required"
    message = "Name is required."
    field = "name"


class EmailRequired(FieldRequired):
    code = "email_required"
    message = "Email is required."
    field = "email"


class PasswordRequired(FieldRequired):
    code = "password_required"
    message = "Password is required."
    field = "password"
