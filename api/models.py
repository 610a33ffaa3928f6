"""
API request and response models for the Gatehouse REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
sessions/models.py, which own the internal domain representation. Route
handlers map between the two.

Separation of concerns: auth/ and sessions/ models = domain truth;
api/ models = API contract. No response model carries a password hash.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# bcrypt ignores input past 72 bytes; cap well below so two passwords that
# differ only after byte 72 are never treated as equal.
_PASSWORD_MAX = 64


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    The email is normalised by the store; the password is taken verbatim,
    surrounding spaces included.
    """

    email: str = Field(min_length=1, max_length=1024)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX, json_schema_extra={"format": "password"})
    remember: bool = False


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Blank names and emails are left to the store (NameRequired, EmailRequired)
    so the error code is the same one every other caller of register() sees.
    """

    name: str = Field(max_length=255)
    email: str = Field(max_length=1024)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    phone: str = Field(default="", max_length=255)


class TokenRequest(BaseModel):
    """Request body for POST /api/v1/auth/register/confirm."""

    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=128)


class PasswordResetRequest(BaseModel):
    """Request body for POST /api/v1/auth/password-reset."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=1024)


class PasswordResetConfirm(BaseModel):
    """Request body for POST /api/v1/auth/password-reset/confirm."""

    token: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class GroupSummary(BaseModel):
    id: int
    name: str
    priority: int


class UserResponse(BaseModel):
    """Public view of a user."""

    id: int
    name: str
    email: str
    phone: str
    confirmed: bool
    last_login: Optional[datetime] = None


class FlashMessage(BaseModel):
    type: str
    message: str


class SessionResponse(BaseModel):
    """Current session as seen by its holder.

    flash is populated at most once per message: GET /auth/me clears it.
    """

    session_id: str
    authenticated: bool
    expires_at: Optional[datetime] = None
    user: Optional[UserResponse] = None
    groups: list[GroupSummary] = Field(default_factory=list)
    permissions: dict[str, int] = Field(default_factory=dict)
    flash: Optional[FlashMessage] = None


class SessionListItem(BaseModel):
    """One entry of GET /api/v1/auth/sessions. Ids are never listed in full."""

    id_prefix: str
    current: bool
    user_agent: str
    ip: str
    expires_at: Optional[datetime] = None


class RegisterResponse(BaseModel):
    """Response for POST /api/v1/auth/register.

    The confirmation token is delivered out of band. It is echoed here only
    when DEBUG is on.
    """

    user_id: int
    name: str
    email: str
    phone: str
    token: Optional[str] = None


class MessageResponse(BaseModel):
    message: str


class ResetRequestedResponse(BaseModel):
    """Response for POST /api/v1/auth/password-reset. token only when DEBUG is on."""

    message: str
    token: Optional[str] = None


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health.

    status is "healthy" when every component answers, "degraded" otherwise.
    """

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
