"""
tests/test_permissions.py -- Unit tests for auth/permissions.py.

Covers:
  - highest group priority wins, whatever the row order
  - equal priorities resolve to the lowest group id
  - no override -> default (0 or the catalog default_value)
  - Permissions.has() is true only for positive effective values
"""

from __future__ import annotations

import itertools

from auth.models import QUANTITY, GroupPermission, Permission
from auth.permissions import GroupPermissions, Permissions, effective_permission, resolve_permissions


def _row(group_id: int, priority: int, value: int, name: str = "edit") -> GroupPermission:
    return GroupPermission(group_id=group_id, permission_id=1, value=value, priority=priority, name=name)


def test_highest_priority_wins_in_any_order():
    rows = [_row(1, 10, 1), _row(2, 5, 0)]
    for ordering in itertools.permutations(rows):
        assert effective_permission(ordering, "edit") == 1


def test_tie_breaks_on_lowest_group_id():
    rows = [_row(7, 5, 3), _row(2, 5, 9), _row(4, 1, 100)]
    for ordering in itertools.permutations(rows):
        assert GroupPermissions(ordering).value("edit") == 9
        assert GroupPermissions(ordering).winner("edit").group_id == 2


def test_missing_permission_returns_default():
    rows = GroupPermissions([_row(1, 10, 1)])
    assert rows.value("delete") == 0
    assert rows.value("delete", default=4) == 4
    assert rows.winner("delete") is None


def test_has_reports_any_override():
    rows = GroupPermissions([_row(1, 1, 0)])
    assert rows.has("edit")
    assert not rows.has("delete")


def test_names_in_first_seen_order():
    rows = GroupPermissions([_row(1, 1, 1, "b"), _row(2, 1, 1, "a"), _row(3, 1, 1, "b")])
    assert rows.names() == ["b", "a"]


def test_resolve_applies_catalog_defaults():
    catalog = [
        Permission(name="edit", default_value=0),
        Permission(name="view", default_value=1),
        Permission(name="uploads", type=QUANTITY, default_value=5),
    ]
    rows = [_row(1, 10, 50, "uploads"), _row(2, 1, 1, "edit")]

    resolved = resolve_permissions(rows, catalog)

    assert resolved == {"edit": 1, "view": 1, "uploads": 50}


def test_resolve_without_catalog_lists_only_overridden():
    resolved = resolve_permissions([_row(1, 10, 0, "edit"), _row(2, 20, 1, "view")])
    assert resolved == {"edit": 0, "view": 1}


def test_permissions_has_requires_positive_value():
    perms = Permissions({"edit": 1, "view": 0, "uploads": 10, "ban": -1})
    assert perms.has("edit")
    assert perms.has("uploads")
    assert not perms.has("view")
    assert not perms.has("ban")
    assert not perms.has("missing")
    assert perms.value("uploads") == 10
    assert perms.value("missing", 3) == 3
