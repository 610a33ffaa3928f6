"""
auth/service.py -- Orchestration of login, logout and session-aware account changes.

AuthService composes the stores; it owns no connections of its own. Every
dependency is injected, so tests hand it fakeredis-backed stores and a
temporary SQLite engine.

Login control flow:
    limiter.limit("login:<email>")      LimitExceeded after LOGIN_MAX_ATTEMPTS
    users.authenticate(email, password) Unauthorized (no hint which part was wrong)
    limiter.reset("login:<email>")
    resolve groups + permissions        cached in the session until refresh
    sessions.save(session)

Session ids are rotated at login: the anonymous session's metadata and flash
message carry over to a new id and the old id is deleted. An id handed out
before authentication therefore never becomes an authenticated id.

Layer rule: may import from auth/, cache/, sessions/ and core/; never api/.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable
from datetime import datetime, timezone

from auth.groups import GroupStore
from auth.models import PasswordReset, PasswordResetToken, RegistrationRequest, RegistrationResponse, User
from auth.permissions import resolve_permissions
from auth.store import UserStore, normalize_email
from cache.limiter import RateLimiter
from core.config import Settings, get_settings
from core.errors import UserNotFound
from sessions.models import Session, new_session
from sessions.store import SessionStore

logger = logging.getLogger("gatehouse.auth")


def login_key(email: str) -> str:
    return f"login:{normalize_email(email)}"


def reset_key(email: str) -> str:
    return f"reset:{normalize_email(email)}"


class AuthService:
    def __init__(
        self,
        users: UserStore,
        groups: GroupStore,
        sessions: SessionStore,
        limiter: RateLimiter,
        settings: Settings | None = None,
    ) -> None:
        self.users = users
        self.groups = groups
        self.sessions = sessions
        self.limiter = limiter
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    def login(
        self,
        email: str,
        password: str,
        session: Session | None = None,
        remember: bool = False,
        user_agent: str = "",
        ip: str = "",
    ) -> Session:
        """Authenticate and return a saved, authenticated session.

        ``session`` is the caller's current anonymous session, if any. Its
        metadata and flash message survive the login; its id does not.

        Raises LimitExceeded, Unauthorized, or a store error.
        """
        key = login_key(email)
        self.limiter.limit(key, self.settings.login_max_attempts, self.settings.login_window)
        user = self.users.authenticate(email, password)
        self.limiter.reset(key)

        authenticated = new_session(user_agent=user_agent, ip=ip)
        if session is not None:
            authenticated.meta = dict(session.meta)
            authenticated.message = session.message
            authenticated.message_type = session.message_type
            authenticated.user_agent = user_agent or session.user_agent
            authenticated.ip = ip or session.ip

        duration = self.settings.session_long_duration if remember else self.settings.session_duration
        authenticated.expires_at = datetime.now(timezone.utc) + duration
        authenticated.user = _summary(user)
        self._resolve(authenticated, user.id)
        self.sessions.save(authenticated)

        if session is not None and session.id:
            self.sessions.delete(session)

        logger.info("Login succeeded for user id=%s", user.id)
        return authenticated

    def logout(self, session: Session) -> Session:
        """Delete ``session`` and return a fresh anonymous one in its place."""
        self.sessions.delete(session)
        anonymous = new_session(user_agent=session.user_agent, ip=session.ip)
        self.sessions.save(anonymous)
        if session.user_id is not None:
            logger.info("Logout for user id=%s", session.user_id)
        return anonymous

    def refresh(self, session: Session) -> Session:
        """Reload the user summary, groups and permissions into ``session`` and save it.

        The expiry does not move. Raises UserNotFound if the account is gone.
        """
        if session.user_id is not None:
            user = self.users.get_by_id(session.user_id)
            if user is None:
                raise UserNotFound()
            session.user = _summary(user)
            self._resolve(session, user.id)
        self.sessions.save(session)
        return session

    # ------------------------------------------------------------------
    # Account changes that must reach live sessions
    # ------------------------------------------------------------------

    def assign_groups(self, user_id: int, group_ids: Iterable[int]) -> None:
        """Replace the user's groups and re-resolve every live session they hold."""
        self.groups.assign_groups(user_id, group_ids)
        live = self.sessions.by_user_id(user_id)
        for session in live:
            self._resolve(session, user_id)
            self.sessions.save(session)
        logger.info("Groups reassigned for user id=%s; %d live sessions refreshed", user_id, len(live))

    def delete_user(self, user_id: int) -> bool:
        """Delete the user and every session they hold (cache and durable)."""
        self.sessions.delete_by_user_id(user_id)
        deleted = self.users.delete_user(user_id)
        if deleted:
            logger.info("Deleted user id=%s", user_id)
        return deleted

    # ------------------------------------------------------------------
    # Registration and password reset
    # ------------------------------------------------------------------

    def register(self, req: RegistrationRequest) -> RegistrationResponse:
        return self.users.register(req)

    def confirm_registration(self, token: str) -> User:
        return self.users.confirm_registration(token)

    def request_password_reset(self, email: str) -> PasswordResetToken:
        """Issue a reset token, at most RESET_MAX_ATTEMPTS per window per email.

        Raises LimitExceeded or UserNotFound.
        """
        self.limiter.limit(reset_key(email), self.settings.reset_max_attempts, self.settings.reset_window)
        return self.users.request_password_reset(email)

    def confirm_password_reset(self, reset: PasswordReset) -> User:
        """Set the new password and sign the user out everywhere."""
        user = self.users.confirm_password_reset(reset)
        self.sessions.delete_by_user_id(user.id)
        return user

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve(self, session: Session, user_id: int) -> None:
        session.groups = self.groups.user_groups(user_id)
        session.permissions = resolve_permissions(
            self.groups.user_group_permissions(user_id),
            self.groups.list_permissions(),
        )


def _summary(user: User) -> User:
    """Copy of ``user`` safe to embed in a session payload."""
    return dataclasses.replace(user, password_hash=None)
