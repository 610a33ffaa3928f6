"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores own the SQL,
auth/permissions.py owns resolution, sessions/ owns serialization.

Timestamps are timezone-aware UTC datetimes. The store layer converts them
to and from ISO 8601 text at the SQL boundary.

Layer rule: no imports from api/, sessions/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

ACCESS = "access"
QUANTITY = "quantity"


@dataclass
class User:
    """An identity record.

    email is always stored trimmed and lower-cased, which is what makes the
    UNIQUE constraint on users.email case-insensitive in practice.

    password_hash is None on copies that leave the store (e.g. the user
    summary embedded in a session payload).
    """

    name: str
    email: str
    phone: str = ""
    id: int | None = None
    password_hash: str | None = field(default=None, repr=False)
    confirmed_at: datetime | None = None
    last_login: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_confirmed(self) -> bool:
        return self.confirmed_at is not None


@dataclass
class Group:
    """Named collection of users. Higher priority wins permission conflicts."""

    name: str
    priority: int = 1
    description: str = ""
    id: int | None = None
    # Populated by GroupStore.group_by_id / group_by_name only.
    permissions: list = field(default_factory=list)


@dataclass
class Permission:
    """A named capability.

    type is "access" (0/1 values) or "quantity" (arbitrary integer).
    default_value applies to users whose groups carry no override.
    """

    name: str
    description: str = ""
    type: str = ACCESS
    default_value: int = 0
    id: int | None = None


@dataclass
class GroupPermission:
    """One group_permissions row, joined with its group priority and permission name.

    priority and name are read-only join columns; only (group_id,
    permission_id, value) are persisted.
    """

    group_id: int
    permission_id: int
    value: int = 0
    priority: int = 0
    name: str = ""


@dataclass
class RegistrationRequest:
    name: str
    email: str
    password: str = field(repr=False)
    phone: str = ""


@dataclass
class RegistrationResponse:
    """Returned by UserStore.register(). token is the confirmation secret to deliver out of band."""

    user_id: int
    name: str
    email: str
    phone: str
    token: str = field(repr=False)


@dataclass
class PasswordResetToken:
    user_id: int
    email: str
    token: str = field(repr=False)
    expires: datetime | None = None


@dataclass
class PasswordReset:
    token: str = field(repr=False)
    password: str = field(repr=False)
