"""
api/routes/v1/auth.py -- Session, login, registration and password-reset endpoints.

Routes:
  POST /api/v1/auth/login                    -- password login; returns a new session id
  POST /api/v1/auth/logout                   -- deletes the session; returns a new anonymous one
  GET  /api/v1/auth/me                       -- current session; consumes the flash message
  GET  /api/v1/auth/sessions                 -- the user's live sessions (requires auth)
  POST /api/v1/auth/register                 -- create an unconfirmed account
  POST /api/v1/auth/register/confirm         -- confirm with the emailed token
  POST /api/v1/auth/password-reset           -- request a reset token; always 202
  POST /api/v1/auth/password-reset/confirm   -- set a new password with the token

Every response carries the (possibly new) session id in X-Session-ID.

Security:
  [H1] Login failures are one generic 401 whatever the cause (see core/errors.Unauthorized).
  [H2] Per-email attempt limits on login and reset live in AuthService (Redis);
       register and password-reset are also limited per IP by SlowAPI.
  [H3] Session ids rotate at login; logout issues a new anonymous id.
  [M1] password-reset answers 202 whether or not the account exists.
  [M5] Cache-Control: no-store on responses that hand out a session id.
Domain errors propagate to the handlers in api/main.py, which map them to
status codes.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter
from api.models import (
    FlashMessage,
    GroupSummary,
    LoginRequest,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    RegisterResponse,
    ResetRequestedResponse,
    SessionListItem,
    SessionResponse,
    TokenRequest,
    UserResponse,
)
from auth.dependencies import SESSION_HEADER, client_ip, get_auth_service, get_session, require_user
from auth.models import PasswordReset, RegistrationRequest, User
from auth.service import AuthService
from core.config import get_settings
from core.errors import UserNotFound
from sessions.models import Session

logger = logging.getLogger("gatehouse.api")

# Auth policy:
# - POST /api/v1/auth/login, /logout, /register*, /password-reset*: public
# - GET  /api/v1/auth/me:       public (anonymous sessions are reported as such)
# - GET  /api/v1/auth/sessions: requires auth (require_user)
router = APIRouter()

_settings = get_settings()


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        phone=user.phone,
        confirmed=user.is_confirmed,
        last_login=user.last_login,
    )


def _session_response(session: Session, flash: FlashMessage | None = None) -> SessionResponse:
    return SessionResponse(
        session_id=session.id,
        authenticated=session.is_authorized(),
        expires_at=session.expires_at,
        user=_user_response(session.user) if session.user is not None else None,
        groups=[GroupSummary(id=g.id, name=g.name, priority=g.priority) for g in session.groups],
        permissions=dict(session.permissions),
        flash=flash,
    )


def _attach(response: Response, session: Session) -> None:
    response.headers[SESSION_HEADER] = session.id
    response.headers["Cache-Control"] = "no-store"  # [M5]


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=SessionResponse)
def login(
    request: Request,
    body: LoginRequest,
    response: Response,
    session: Session = Depends(get_session),
    auth: AuthService = Depends(get_auth_service),
) -> SessionResponse:
    """Authenticate with email and password.

    The anonymous session presented in X-Session-ID is replaced; its
    metadata carries over to the new id [H3].
    """
    authenticated = auth.login(
        body.email,
        body.password,
        session=session,
        remember=body.remember,
        user_agent=request.headers.get("user-agent", ""),
        ip=client_ip(request),
    )
    _attach(response, authenticated)
    return _session_response(authenticated)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    response: Response,
    session: Session = Depends(get_session),
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """End the session. The response carries a fresh anonymous session id."""
    anonymous = auth.logout(session)
    _attach(response, anonymous)
    return MessageResponse(message="Logged out.")


@router.get("/auth/me", response_model=SessionResponse)
def me(
    response: Response,
    session: Session = Depends(get_session),
    auth: AuthService = Depends(get_auth_service),
) -> SessionResponse:
    """Describe the current session.

    A pending flash message is returned once, then cleared and the session
    saved, so the next call does not see it.
    """
    flash = None
    if session.has_flash():
        flash = FlashMessage(type=session.message_type, message=session.message)
        session.clear_flash()
        auth.sessions.save(session)
    _attach(response, session)
    return _session_response(session, flash)


@router.get("/auth/sessions", response_model=list[SessionListItem])
def list_sessions(
    response: Response,
    session: Session = Depends(require_user),
    auth: AuthService = Depends(get_auth_service),
) -> list[SessionListItem]:
    """List the signed-in user's live sessions, current one included."""
    _attach(response, session)
    return [
        SessionListItem(
            id_prefix=s.id[:8],
            current=s.id == session.id,
            user_agent=s.user_agent,
            ip=s.ip,
            expires_at=s.expires_at,
        )
        for s in auth.sessions.by_user_id(session.user_id)
    ]


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@limiter.limit(_settings.api_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(
    request: Request,
    body: RegisterRequest,
    auth: AuthService = Depends(get_auth_service),
) -> RegisterResponse:
    """Create an unconfirmed account and issue its confirmation token."""
    reg = auth.register(RegistrationRequest(name=body.name, email=body.email, password=body.password, phone=body.phone))
    return RegisterResponse(
        user_id=reg.user_id,
        name=reg.name,
        email=reg.email,
        phone=reg.phone,
        token=reg.token if _settings.debug else None,
    )


@router.post("/auth/register/confirm", response_model=UserResponse)
def confirm_registration(body: TokenRequest, auth: AuthService = Depends(get_auth_service)) -> UserResponse:
    return _user_response(auth.confirm_registration(body.token))


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(_settings.api_rate_limit)
@router.post("/auth/password-reset", response_model=ResetRequestedResponse, status_code=202)
def request_password_reset(
    request: Request,
    body: PasswordResetRequest,
    auth: AuthService = Depends(get_auth_service),
) -> ResetRequestedResponse:
    """Issue a reset token if the account exists. The answer is the same either way [M1]."""
    token = None
    try:
        issued = auth.request_password_reset(body.email)
        token = issued.token
    except UserNotFound:
        logger.info("Password reset requested for an unknown email")
    return ResetRequestedResponse(
        message="If the account exists, a reset link has been sent.",
        token=token if _settings.debug else None,
    )


@router.post("/auth/password-reset/confirm", response_model=UserResponse)
def confirm_password_reset(body: PasswordResetConfirm, auth: AuthService = Depends(get_auth_service)) -> UserResponse:
    """Set a new password. Every session of the account is signed out."""
    user = auth.confirm_password_reset(PasswordReset(token=body.token, password=body.password))
    return _user_response(user)
