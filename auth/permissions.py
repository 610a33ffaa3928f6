"""
auth/permissions.py -- Effective permission resolution.

A user can belong to several groups and each group can override any
permission. The effective value of a permission is the override carried by
the user's group with the highest priority.

Tie-break: when two groups share the top priority, the group with the lowest
id wins. Resolution therefore never depends on the order in which rows come
back from the database.

Resolution runs at login and whenever a user's group membership changes.
The resulting Permissions mapping is cached inside the session and is not
recomputed per request.

Layer rule: no imports from api/, sessions/, or cache/.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from auth.models import GroupPermission, Permission


def _rank(row: GroupPermission) -> tuple[int, int]:
    # max() on (priority, -group_id): higher priority first, then lower group id.
    return row.priority, -row.group_id


class GroupPermissions(list):
    """A list of GroupPermission rows with conflict-aware lookups."""

    def winner(self, name: str) -> GroupPermission | None:
        """Return the row that decides ``name``, or None when no group overrides it."""
        candidates = [row for row in self if row.name == name]
        if not candidates:
            return None
        return max(candidates, key=_rank)

    def value(self, name: str, default: int = 0) -> int:
        """Effective value of ``name``; ``default`` when no group overrides it."""
        row = self.winner(name)
        return default if row is None else row.value

    def has(self, name: str) -> bool:
        """True when at least one group carries an override for ``name``."""
        return any(row.name == name for row in self)

    def names(self) -> list[str]:
        seen: dict[str, None] = {}
        for row in self:
            seen.setdefault(row.name, None)
        return list(seen)


class Permissions(dict):
    """Resolved permission name -> effective value mapping.

    Access permissions use 0/1; quantity permissions carry any integer.
    """

    def has(self, name: str) -> bool:
        return self.get(name, 0) > 0

    def value(self, name: str, default: int = 0) -> int:
        return self.get(name, default)


def effective_permission(rows: Iterable[GroupPermission], name: str, default: int = 0) -> int:
    """Resolve a single permission across group overrides."""
    return GroupPermissions(rows).value(name, default)


def resolve_permissions(
    rows: Iterable[GroupPermission],
    catalog: Iterable[Permission] | None = None,
) -> Permissions:
    """Compute every effective permission for one user.

    rows are the user's group_permissions joined with group priority and
    permission name (GroupStore.user_group_permissions). When catalog is
    given, permissions with no override fall back to their default_value so
    the result lists every known permission.
    """
    group_permissions = GroupPermissions(rows)
    defaults: Mapping[str, int] = {p.name: p.default_value for p in catalog or ()}

    resolved = Permissions()
    for name, default in defaults.items():
        resolved[name] = default
    for name in group_permissions.names():
        resolved[name] = group_permissions.value(name, defaults.get(name, 0))
    return resolved
