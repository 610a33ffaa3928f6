"""
sessions/models.py -- The Session entity and its JSON payload.

A Session carries everything a request handler needs without touching SQL:
the user summary, the user's groups, and the permissions resolved from them
at login. The payload is what RedisSessionStore caches and what
SqlSessionStore keeps in sessions.payload.

Lifecycle:
  Anonymous      user is None. Created on first contact or by logout.
  Authenticated  user attached by AuthService.login().
  Expired        expires_at has passed. Stores refuse to save or return it.
  Deleted        removed by logout, delete_user, or an admin.

A session never goes back from Authenticated to Anonymous in place; logout
deletes it and hands out a new anonymous one.

Payload format (version 1):
  {"version": 1, "id": ..., "counter": ..., "user": {...} | null,
   "groups": [...], "permissions": {...}, "user_agent": ..., "ip": ...,
   "expires_at": ISO-8601 | null, "message": ..., "message_type": ...,
   "meta": {...}}

meta values must be JSON-serialisable.
"""

from __future__ import annotations

import json
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from auth.models import Group, User
from auth.permissions import Permissions
from auth.store import from_iso, to_iso
from core.config import get_settings

PAYLOAD_VERSION = 1


def generate_session_id(nbytes: int | None = None) -> str:
    """Return a random hex session id. Default length: SESSION_ID_BYTES (32) bytes."""
    return secrets.token_hex(nbytes or get_settings().session_id_bytes)


@dataclass
class Session:
    id: str = ""
    counter: int = 0
    user: User | None = None
    groups: list[Group] = field(default_factory=list)
    permissions: Permissions = field(default_factory=Permissions)
    user_agent: str = ""
    ip: str = ""
    expires_at: datetime | None = None
    message: str = ""
    message_type: str = ""
    meta: dict[str, Any] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or datetime.now(timezone.utc))

    def is_anonymous(self) -> bool:
        return self.user is None

    def is_authorized(self) -> bool:
        return not self.is_anonymous()

    @property
    def user_id(self) -> int | None:
        return self.user.id if self.user is not None else None

    def group_name(self) -> str:
        """Name of the user's highest-priority group, or "" with no groups."""
        if not self.groups:
            return ""
        top = min(self.groups, key=lambda g: (-g.priority, g.id or 0))
        return top.name

    def has_permission(self, name: str) -> bool:
        return self.permissions.has(name)

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        return self.meta.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.meta[key] = value

    # ------------------------------------------------------------------
    # Flash message (one-shot; the reader clears it and saves)
    # ------------------------------------------------------------------

    def flash(self, message_type: str, message: str) -> None:
        self.message = message
        self.message_type = message_type

    def has_flash(self) -> bool:
        return self.message != ""

    def clear_flash(self) -> None:
        self.message = ""
        self.message_type = ""

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": PAYLOAD_VERSION,
            "id": self.id,
            "counter": self.counter,
            "user": _user_to_dict(self.user),
            "groups": [_group_to_dict(g) for g in self.groups],
            "permissions": dict(self.permissions),
            "user_agent": self.user_agent,
            "ip": self.ip,
            "expires_at": to_iso(self.expires_at),
            "message": self.message,
            "message_type": self.message_type,
            "meta": self.meta,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        version = data.get("version")
        if version != PAYLOAD_VERSION:
            raise ValueError(f"Unsupported session payload version: {version!r}")
        return cls(
            id=data["id"],
            counter=data.get("counter", 0),
            user=_user_from_dict(data.get("user")),
            groups=[_group_from_dict(g) for g in data.get("groups") or []],
            permissions=Permissions(data.get("permissions") or {}),
            user_agent=data.get("user_agent", ""),
            ip=data.get("ip", ""),
            expires_at=from_iso(data.get("expires_at")),
            message=data.get("message", ""),
            message_type=data.get("message_type", ""),
            meta=data.get("meta") or {},
        )

    @classmethod
    def from_json(cls, payload: str) -> "Session":
        return cls.from_dict(json.loads(payload))


def new_session(user_agent: str = "", ip: str = "", duration: timedelta | None = None) -> Session:
    """Create an anonymous session with a fresh id, expiring after ``duration``."""
    duration = duration or get_settings().session_duration
    return Session(
        id=generate_session_id(),
        user_agent=user_agent,
        ip=ip,
        expires_at=datetime.now(timezone.utc) + duration,
    )


# ---------------------------------------------------------------------------
# Embedded entity mappers. The password hash never enters a payload.
# ---------------------------------------------------------------------------


def _user_to_dict(user: User | None) -> dict[str, Any] | None:
    if user is None:
        return None
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "phone": user.phone,
        "confirmed_at": to_iso(user.confirmed_at),
        "last_login": to_iso(user.last_login),
        "created_at": to_iso(user.created_at),
    }


def _user_from_dict(data: dict[str, Any] | None) -> User | None:
    if data is None:
        return None
    return User(
        id=data.get("id"),
        name=data.get("name", ""),
        email=data.get("email", ""),
        phone=data.get("phone", ""),
        confirmed_at=from_iso(data.get("confirmed_at")),
        last_login=from_iso(data.get("last_login")),
        created_at=from_iso(data.get("created_at")),
    )


def _group_to_dict(group: Group) -> dict[str, Any]:
    return {"id": group.id, "name": group.name, "priority": group.priority, "description": group.description}


def _group_from_dict(data: dict[str, Any]) -> Group:
    return Group(
        id=data.get("id"),
        name=data["name"],
        priority=data.get("priority", 1),
        description=data.get("description", ""),
    )
