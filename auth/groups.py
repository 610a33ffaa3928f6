"""
auth/groups.py -- Persistence for groups, permissions, and their joins.

Pattern: Repository + Data Mapper (same as auth/store.py). GroupStore covers
the groups, permissions, group_permissions and group_users tables.

Invariants enforced here:
  - At most one group_permissions row per (group, permission). The composite
    primary key guarantees it; add_group_permission() upserts so callers can
    change a value without deleting first.
  - Membership changes that touch several rows (assign_groups, create_group
    with permissions) run in one transaction.

Callers that change a user's membership must re-resolve that user's
permissions; AuthService.assign_groups() does this for live sessions.

Layer rule: no imports from api/, sessions/, or cache/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import Group, GroupPermission, Permission, User
from auth.permissions import GroupPermissions
from auth.store import _row_to_user, group_permissions, group_users, groups, permissions, users
from core.errors import GroupNotFound, PermissionNotFound

logger = logging.getLogger("gatehouse.auth")


def _joined_permissions_query():
    """group_permissions joined with group priority and permission name."""
    return (
        select(
            group_permissions.c.group_id,
            group_permissions.c.permission_id,
            group_permissions.c.value,
            groups.c.priority,
            permissions.c.name,
        )
        .select_from(
            group_permissions.join(permissions, permissions.c.id == group_permissions.c.permission_id).join(
                groups, groups.c.id == group_permissions.c.group_id
            )
        )
        .order_by(group_permissions.c.group_id, permissions.c.name)
    )


class GroupStore:
    """Repository for Group, Permission and the many-to-many joins."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def create_group(self, group: Group, overrides: Iterable[GroupPermission] = ()) -> int:
        """Insert a group and its permission overrides atomically; return the group id.

        Raises sqlalchemy.exc.IntegrityError if the name is taken or an
        override references an unknown permission.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                groups.insert().values(name=group.name, priority=group.priority, description=group.description)
            )
            group_id = result.inserted_primary_key[0]
            rows = [{"group_id": group_id, "permission_id": o.permission_id, "value": o.value} for o in overrides]
            if rows:
                conn.execute(group_permissions.insert(), rows)
        group.id = group_id
        logger.info("Created group id=%s name=%s", group_id, group.name)
        return group_id

    def update_group(self, group: Group) -> None:
        """Update name, priority and description."""
        with self.engine.begin() as conn:
            result = conn.execute(
                groups.update()
                .where(groups.c.id == group.id)
                .values(name=group.name, priority=group.priority, description=group.description)
            )
        if result.rowcount == 0:
            raise GroupNotFound()

    def delete_group(self, group_id: int) -> bool:
        """Delete a group. Memberships and overrides cascade."""
        with self.engine.begin() as conn:
            result = conn.execute(groups.delete().where(groups.c.id == group_id))
        if result.rowcount:
            logger.info("Deleted group id=%s", group_id)
        return result.rowcount > 0

    def group_by_id(self, group_id: int) -> Group:
        """Return a group with its permission overrides populated."""
        with self.engine.connect() as conn:
            row = conn.execute(groups.select().where(groups.c.id == group_id)).fetchone()
        if row is None:
            raise GroupNotFound()
        group = _row_to_group(row)
        group.permissions = self.group_permissions(group.id)
        return group

    def group_by_name(self, name: str) -> Group:
        """Return a group by its unique name with its overrides populated."""
        with self.engine.connect() as conn:
            row = conn.execute(groups.select().where(groups.c.name == name)).fetchone()
        if row is None:
            raise GroupNotFound()
        group = _row_to_group(row)
        group.permissions = self.group_permissions(group.id)
        return group

    def list_groups(self) -> list[Group]:
        """All groups, highest priority first."""
        with self.engine.connect() as conn:
            rows = conn.execute(groups.select().order_by(groups.c.priority.desc(), groups.c.id)).fetchall()
        return [_row_to_group(r) for r in rows]

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def join_group(self, user_id: int, group_id: int) -> None:
        """Add a user to a group. Joining a group twice is not an error."""
        try:
            with self.engine.begin() as conn:
                conn.execute(group_users.insert().values(user_id=user_id, group_id=group_id))
        except IntegrityError:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(group_users.c.user_id).where(
                        (group_users.c.user_id == user_id) & (group_users.c.group_id == group_id)
                    )
                ).fetchone()
            if row is None:
                # Not a duplicate: unknown user or group.
                raise

    def leave_group(self, user_id: int, group_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                group_users.delete().where((group_users.c.user_id == user_id) & (group_users.c.group_id == group_id))
            )
        return result.rowcount > 0

    def assign_groups(self, user_id: int, group_ids: Iterable[int]) -> None:
        """Replace a user's memberships with exactly ``group_ids``, atomically."""
        unique_ids = list(dict.fromkeys(group_ids))
        with self.engine.begin() as conn:
            conn.execute(group_users.delete().where(group_users.c.user_id == user_id))
            if unique_ids:
                conn.execute(group_users.insert(), [{"user_id": user_id, "group_id": gid} for gid in unique_ids])

    def user_groups(self, user_id: int) -> list[Group]:
        """Groups the user belongs to, highest priority first (ties by id)."""
        query = (
            select(groups)
            .select_from(groups.join(group_users, group_users.c.group_id == groups.c.id))
            .where(group_users.c.user_id == user_id)
            .order_by(groups.c.priority.desc(), groups.c.id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_group(r) for r in rows]

    def group_users(self, group_id: int) -> list[User]:
        """Members of a group, newest accounts first."""
        query = (
            select(users)
            .select_from(users.join(group_users, group_users.c.user_id == users.c.id))
            .where(group_users.c.group_id == group_id)
            .order_by(users.c.created_at.desc())
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_user(r) for r in rows]

    def group_user_count(self, group_id: int) -> int:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(group_users).where(group_users.c.group_id == group_id)
            ).scalar()
        return count or 0

    # ------------------------------------------------------------------
    # Group permission overrides
    # ------------------------------------------------------------------

    def group_permissions(self, group_id: int) -> GroupPermissions:
        """Overrides carried by one group, joined with priority and name."""
        query = _joined_permissions_query().where(group_permissions.c.group_id == group_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return GroupPermissions(_row_to_group_permission(r) for r in rows)

    def user_group_permissions(self, user_id: int) -> GroupPermissions:
        """Every override reaching the user through any of their groups.

        This is the input to auth.permissions.resolve_permissions().
        """
        query = (
            _joined_permissions_query()
            .join(group_users, group_users.c.group_id == groups.c.id)
            .where(group_users.c.user_id == user_id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return GroupPermissions(_row_to_group_permission(r) for r in rows)

    def add_group_permission(self, group_id: int, permission_id: int, value: int) -> None:
        """Set a group's override for a permission, replacing any existing value."""
        with self.engine.begin() as conn:
            result = conn.execute(
                group_permissions.update()
                .where((group_permissions.c.group_id == group_id) & (group_permissions.c.permission_id == permission_id))
                .values(value=value)
            )
            if result.rowcount == 0:
                conn.execute(
                    group_permissions.insert().values(group_id=group_id, permission_id=permission_id, value=value)
                )

    def remove_group_permission(self, group_id: int, permission_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                group_permissions.delete().where(
                    (group_permissions.c.group_id == group_id) & (group_permissions.c.permission_id == permission_id)
                )
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Permissions catalog
    # ------------------------------------------------------------------

    def seed_permissions(self, catalog: list[Permission]) -> None:
        """Insert any permission whose name is not present yet; fill in every id.

        Safe to call repeatedly (e.g. on every startup). Existing rows are
        left untouched.
        """
        names = [p.name for p in catalog]
        with self.engine.begin() as conn:
            existing = {
                row.name for row in conn.execute(select(permissions.c.name).where(permissions.c.name.in_(names)))
            }
            missing = [p for p in catalog if p.name not in existing]
            if missing:
                conn.execute(
                    permissions.insert(),
                    [
                        {
                            "name": p.name,
                            "description": p.description,
                            "type": p.type,
                            "default_value": p.default_value,
                        }
                        for p in missing
                    ],
                )
            ids = {
                row.name: row.id
                for row in conn.execute(select(permissions.c.id, permissions.c.name).where(permissions.c.name.in_(names)))
            }
        for p in catalog:
            p.id = ids[p.name]

    def list_permissions(self) -> list[Permission]:
        with self.engine.connect() as conn:
            rows = conn.execute(permissions.select().order_by(permissions.c.name)).fetchall()
        return [_row_to_permission(r) for r in rows]

    def permission_by_name(self, name: str) -> Permission:
        with self.engine.connect() as conn:
            row = conn.execute(permissions.select().where(permissions.c.name == name)).fetchone()
        if row is None:
            raise PermissionNotFound()
        return _row_to_permission(row)

    def add_permission(self, permission: Permission) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                permissions.insert().values(
                    name=permission.name,
                    description=permission.description,
                    type=permission.type,
                    default_value=permission.default_value,
                )
            )
        permission.id = result.inserted_primary_key[0]
        return permission.id

    def update_permission(self, permission: Permission) -> None:
        with self.engine.begin() as conn:
            result = conn.execute(
                permissions.update()
                .where(permissions.c.id == permission.id)
                .values(
                    name=permission.name,
                    description=permission.description,
                    type=permission.type,
                    default_value=permission.default_value,
                )
            )
        if result.rowcount == 0:
            raise PermissionNotFound()

    def remove_permission(self, permission_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(permissions.delete().where(permissions.c.id == permission_id))
        return result.rowcount > 0

    def remove_permission_by_name(self, name: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(permissions.delete().where(permissions.c.name == name))
        return result.rowcount > 0

    def clear_permissions(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(permissions.delete())


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_group(row) -> Group:
    return Group(id=row.id, name=row.name, priority=row.priority, description=row.description)


def _row_to_permission(row) -> Permission:
    return Permission(
        id=row.id,
        name=row.name,
        description=row.description,
        type=row.type,
        default_value=row.default_value,
    )


def _row_to_group_permission(row) -> GroupPermission:
    return GroupPermission(
        group_id=row.group_id,
        permission_id=row.permission_id,
        value=row.value,
        priority=row.priority,
        name=row.name,
    )
