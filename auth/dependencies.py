"""
auth/dependencies.py -- FastAPI Depends() helpers for sessions.

The session id travels in the X-Session-ID request header and is echoed
back in the same response header. There are no cookies.

get_session() is the soft variant: it always yields a session, creating and
saving a fresh anonymous one when the header is missing, unknown or expired.
require_user() wraps it and raises HTTP 401 if the session is anonymous.

Layer rule: no imports from api/. This module may import from fastapi
(for Depends/HTTPException/Request) because it is part of the FastAPI
dependency injection system.
"""

from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request

from auth.service import AuthService
from core.errors import SessionExpired, SessionNotFound
from sessions.models import Session, new_session

logger = logging.getLogger("gatehouse.auth")

SESSION_HEADER = "X-Session-ID"


def client_ip(request: Request) -> str:
    return request.client.host if request.client else ""


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth


def get_session(request: Request, auth: AuthService = Depends(get_auth_service)) -> Session:
    """Return the caller's live session, or a new saved anonymous one.

    An expired or unknown id is not an error here: the caller simply gets a
    new anonymous session (and a new id in the response header).
    """
    session_id = request.headers.get(SESSION_HEADER, "")
    if session_id:
        try:
            return auth.sessions.get(session_id)
        except SessionNotFound:
            logger.debug("Unknown session id presented")
        except SessionExpired:
            logger.debug("Expired session id presented")

    session = new_session(user_agent=request.headers.get("user-agent", ""), ip=client_ip(request))
    auth.sessions.save(session)
    return session


def require_user(session: Session = Depends(get_session)) -> Session:
    """Require an authenticated session. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(session: Session = Depends(require_user)): ...
    """
    if session.is_anonymous():
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={SESSION_HEADER: session.id},
        )
    return session
