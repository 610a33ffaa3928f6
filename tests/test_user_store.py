"""
tests/test_user_store.py -- Tests for auth/store.py (UserStore) on SQLite.

Covers:
  - registration normalises input and is atomic (user + token or neither)
  - duplicate email, case-insensitively, raises UserExists
  - confirmation: unknown, expired and consumed tokens
  - authenticate: success stamps last_login, failures are indistinguishable
  - password reset: token replacement, expiry, single use
  - profile update, administrative reset, delete cascade
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

import auth.store as store_module
from auth.models import PasswordReset, RegistrationRequest, User
from auth.store import UserStore, pass_tokens, registration_tokens, to_iso, users as users_table
from core.errors import (
    EmailRequired,
    InvalidToken,
    NameRequired,
    PasswordRequired,
    TokenExpired,
    TokenNotFound,
    Unauthorized,
    UserExists,
    UserNotFound,
)


def _count(engine, table) -> int:
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(table)).scalar()


def _expire(engine, table) -> None:
    past = to_iso(datetime.now(timezone.utc) - timedelta(minutes=1))
    with engine.begin() as conn:
        conn.execute(table.update().values(expires=past))


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def test_register_normalises_and_confirms(users: UserStore):
    reg = users.register(RegistrationRequest(name="  Alice ", email=" A@B.com ", password="secret", phone="555"))

    assert reg.name == "Alice"
    assert reg.email == "a@b.com"
    assert len(reg.token) == 32

    pending = users.get_by_id(reg.user_id)
    assert pending.email == "a@b.com"
    assert not pending.is_confirmed

    confirmed = users.confirm_registration(reg.token)
    assert confirmed.id == reg.user_id
    assert confirmed.confirmed_at is not None


def test_register_hashes_password(users: UserStore):
    reg = users.register(RegistrationRequest(name="Alice", email="a@b.com", password="secret"))
    stored = users.get_by_id(reg.user_id)
    assert stored.password_hash != "secret"
    assert stored.password_hash.startswith("$2b$")


def test_duplicate_email_is_rejected_case_insensitively(users: UserStore, engine):
    users.register(RegistrationRequest(name="Alice", email="a@b.com", password="secret"))
    with pytest.raises(UserExists):
        users.register(RegistrationRequest(name="Alice2", email="  A@B.COM", password="other"))
    assert _count(engine, users_table) == 1


@pytest.mark.parametrize(
    "req, error",
    [
        (RegistrationRequest(name="  ", email="a@b.com", password="x"), NameRequired),
        (RegistrationRequest(name="Alice", email="   ", password="x"), EmailRequired),
        (RegistrationRequest(name="Alice", email="a@b.com", password=""), PasswordRequired),
    ],
)
def test_register_requires_fields(users: UserStore, engine, req, error):
    with pytest.raises(error):
        users.register(req)
    assert _count(engine, users_table) == 0


def test_register_rolls_back_user_when_token_insert_fails(users: UserStore, engine, monkeypatch):
    first = users.register(RegistrationRequest(name="Alice", email="a@b.com", password="secret"))
    # Force a UNIQUE(token) collision on the second insert of the flow.
    monkeypatch.setattr(store_module, "generate_token", lambda *args: first.token)

    with pytest.raises(IntegrityError):
        users.register(RegistrationRequest(name="Bob", email="bob@example.com", password="secret"))

    assert users.get_by_email("bob@example.com") is None
    assert _count(engine, users_table) == 1
    assert _count(engine, registration_tokens) == 1


# ---------------------------------------------------------------------------
# Confirmation
# ---------------------------------------------------------------------------


def test_confirm_unknown_token(users: UserStore):
    users.register(RegistrationRequest(name="Alice", email="a@b.com", password="secret"))
    with pytest.raises(InvalidToken):
        users.confirm_registration("wrong-token")


def test_confirm_consumes_token(users: UserStore, engine):
    reg = users.register(RegistrationRequest(name="Alice", email="a@b.com", password="secret"))
    users.confirm_registration(reg.token)
    assert _count(engine, registration_tokens) == 0
    with pytest.raises(InvalidToken):
        users.confirm_registration(reg.token)


def test_confirm_expired_token(users: UserStore, engine):
    reg = users.register(RegistrationRequest(name="Alice", email="a@b.com", password="secret"))
    _expire(engine, registration_tokens)
    with pytest.raises(TokenExpired):
        users.confirm_registration(reg.token)
    assert not users.get_by_id(reg.user_id).is_confirmed


def test_renew_registration_replaces_token(users: UserStore, engine):
    reg = users.register(RegistrationRequest(name="Alice", email="a@b.com", password="secret"))
    _expire(engine, registration_tokens)

    fresh = users.renew_registration(reg.user_id)

    assert fresh != reg.token
    assert _count(engine, registration_tokens) == 1
    with pytest.raises(InvalidToken):
        users.confirm_registration(reg.token)
    assert users.confirm_registration(fresh).is_confirmed


def test_renew_registration_unknown_user(users: UserStore):
    with pytest.raises(UserNotFound):
        users.renew_registration(999)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


def test_authenticate_success_stamps_last_login(users: UserStore, make_user):
    user = make_user("alice@example.com", "secret")
    assert user.last_login is None

    authed = users.authenticate("  ALICE@example.com", "secret")

    assert authed.id == user.id
    assert authed.last_login is not None
    assert users.get_by_id(user.id).last_login == authed.last_login


def test_authenticate_failures_look_alike(users: UserStore, make_user):
    make_user("alice@example.com", "secret")
    with pytest.raises(Unauthorized) as wrong_password:
        users.authenticate("alice@example.com", "nope")
    with pytest.raises(Unauthorized) as unknown_user:
        users.authenticate("nobody@example.com", "secret")
    assert str(wrong_password.value) == str(unknown_user.value)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


def test_password_reset_flow(users: UserStore, make_user, engine):
    user = make_user("alice@example.com", "secret")
    reset = users.request_password_reset("Alice@Example.com")
    assert reset.user_id == user.id
    assert reset.email == "alice@example.com"

    updated = users.confirm_password_reset(PasswordReset(token=reset.token, password="new-secret"))

    assert updated.id == user.id
    assert _count(engine, pass_tokens) == 0
    users.authenticate("alice@example.com", "new-secret")
    with pytest.raises(Unauthorized):
        users.authenticate("alice@example.com", "secret")


def test_password_reset_token_is_single_use(users: UserStore, make_user):
    make_user()
    reset = users.request_password_reset("alice@example.com")
    users.confirm_password_reset(PasswordReset(token=reset.token, password="one"))
    with pytest.raises(TokenNotFound):
        users.confirm_password_reset(PasswordReset(token=reset.token, password="two"))


def test_new_reset_request_replaces_old_token(users: UserStore, make_user, engine):
    make_user()
    old = users.request_password_reset("alice@example.com")
    new = users.request_password_reset("alice@example.com")
    assert _count(engine, pass_tokens) == 1
    with pytest.raises(TokenNotFound):
        users.confirm_password_reset(PasswordReset(token=old.token, password="x"))
    users.confirm_password_reset(PasswordReset(token=new.token, password="x"))


def test_password_reset_expired(users: UserStore, make_user, engine):
    make_user()
    reset = users.request_password_reset("alice@example.com")
    _expire(engine, pass_tokens)
    with pytest.raises(TokenExpired):
        users.confirm_password_reset(PasswordReset(token=reset.token, password="x"))
    users.authenticate("alice@example.com", "secret")


def test_password_reset_requires_password(users: UserStore, make_user):
    make_user()
    reset = users.request_password_reset("alice@example.com")
    with pytest.raises(PasswordRequired):
        users.confirm_password_reset(PasswordReset(token=reset.token, password=""))


def test_password_reset_unknown_email(users: UserStore):
    with pytest.raises(UserNotFound):
        users.request_password_reset("nobody@example.com")


def test_admin_reset_password(users: UserStore, make_user):
    user = make_user()
    users.reset_password(user.id, "changed")
    users.authenticate("alice@example.com", "changed")
    with pytest.raises(PasswordRequired):
        users.reset_password(user.id, "")
    with pytest.raises(UserNotFound):
        users.reset_password(999, "x")


# ---------------------------------------------------------------------------
# Profile and deletion
# ---------------------------------------------------------------------------


def test_update_info(users: UserStore, make_user):
    user = make_user()
    user.name = " Alice Smith "
    user.email = "ALICE.SMITH@example.com"
    user.phone = "555-0100"
    users.update_info(user)

    stored = users.get_by_id(user.id)
    assert (stored.name, stored.email, stored.phone) == ("Alice Smith", "alice.smith@example.com", "555-0100")
    assert stored.password_hash == user.password_hash


def test_update_info_rejects_taken_email(users: UserStore, make_user):
    make_user("alice@example.com")
    bob = make_user("bob@example.com", name="Bob")
    bob.email = "Alice@example.com"
    with pytest.raises(UserExists):
        users.update_info(bob)


def test_update_info_unknown_user(users: UserStore):
    with pytest.raises(UserNotFound):
        users.update_info(User(id=999, name="Ghost", email="ghost@example.com"))


def test_delete_user_cascades_tokens(users: UserStore, engine):
    reg = users.register(RegistrationRequest(name="Alice", email="a@b.com", password="secret"))
    users.request_password_reset("a@b.com")

    assert users.delete_user(reg.user_id) is True

    assert users.get_by_id(reg.user_id) is None
    assert _count(engine, registration_tokens) == 0
    assert _count(engine, pass_tokens) == 0
    assert users.delete_user(reg.user_id) is False
