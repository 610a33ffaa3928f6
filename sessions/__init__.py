"""
sessions/ -- Session entity, payload format, and the session stores.
"""

from sessions.models import Session, generate_session_id, new_session
from sessions.store import RedisSessionStore, SessionStore, SqlSessionStore

__all__ = [
    "RedisSessionStore",
    "Session",
    "SessionStore",
    "SqlSessionStore",
    "generate_session_id",
    "new_session",
]
