"""
auth/store.py -- SQLAlchemy Core schema and persistence for users and tokens.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Route and service code never touches SQL directly.

Every multi-step flow (register, confirm, reset) runs inside a single
engine.begin() block. Leaving the block by any exception -- a domain error,
a constraint violation, a dropped connection, or the caller abandoning the
flow -- rolls the whole transaction back, so a user row can never exist
without its confirmation token and a token can never outlive its use.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Emails are trimmed and lower-cased before every read and write, which is
  what makes UNIQUE(email) case-insensitive.

Timestamps are stored as ISO 8601 UTC text with fixed microsecond precision,
so lexical comparison in SQL matches chronological order.

Layer rule: no imports from api/, sessions/, or cache/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import PasswordReset, PasswordResetToken, RegistrationRequest, RegistrationResponse, User
from auth.passwords import equalize_timing, generate_token, hash_password, verify_password
from core.config import get_settings
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

logger = logging.getLogger("gatehouse.auth")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("email", String(1024), nullable=False, unique=True),
    Column("phone", String(255), nullable=False, server_default=""),
    Column("password_hash", String(1024), nullable=False),
    Column("confirmed_at", String(32)),  # NULL = unconfirmed
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
)

groups = Table(
    "groups",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("priority", Integer, nullable=False, server_default="1"),
    Column("description", Text, nullable=False, server_default=""),
)

permissions = Table(
    "permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
    Column("type", String(32), nullable=False, server_default="access"),
    Column("default_value", Integer, nullable=False, server_default="0"),
)

group_permissions = Table(
    "group_permissions",
    metadata,
    Column("group_id", Integer, ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
    Column("value", Integer, nullable=False, server_default="0"),
)

group_users = Table(
    "group_users",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("group_id", Integer, ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True),
)

sessions = Table(
    "sessions",
    metadata,
    Column("id", String(128), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE")),  # NULL = anonymous
    Column("user_agent", Text, nullable=False, server_default=""),
    Column("payload", Text, nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Index("ix_sessions_user_id", "user_id"),
    Index("ix_sessions_expires_at", "expires_at"),
)

pass_tokens = Table(
    "pass_tokens",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("token", String(64), nullable=False, unique=True),
    Column("email", String(1024), nullable=False),
    Column("expires", String(32), nullable=False),
)

registration_tokens = Table(
    "registration_tokens",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("token", String(64), nullable=False, unique=True),
    Column("email", String(1024), nullable=False),
    Column("expires", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys on every new SQLite connection.

    WAL lets readers proceed while a writer holds the database. foreign_keys
    is off by default in SQLite, and the ON DELETE CASCADE rules (user ->
    sessions, user -> tokens, group -> memberships) depend on it. Both are
    per-connection settings, so they are applied on connect.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(db_url: str | None = None) -> Engine:
    """Create the shared engine. One engine (and its pool) serves every store."""
    db_url = db_url or get_settings().database_url
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        # Stores are called from FastAPI's worker threads and from the
        # session store's background executor.
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


def init_db(engine: Engine) -> None:
    """Create every table that does not exist yet. Idempotent."""
    metadata.create_all(engine)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users plus the registration and password-reset flows.

    Usage:
        engine = create_db_engine()
        init_db(engine)
        store = UserStore(engine)
        reg = store.register(RegistrationRequest("Alice", "a@b.com", "secret"))
        store.confirm_registration(reg.token)
        user = store.authenticate("a@b.com", "secret")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._settings = get_settings()

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email, ignoring case and surrounding whitespace."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_info(self, user: User) -> None:
        """Update name, email and phone. The password is never touched here.

        Raises UserExists if the new email belongs to another account and
        UserNotFound if the user id does not exist.
        """
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    users.update()
                    .where(users.c.id == user.id)
                    .values(name=user.name.strip(), email=normalize_email(user.email), phone=user.phone.strip())
                )
                if result.rowcount == 0:
                    raise UserNotFound()
        except IntegrityError as exc:
            raise UserExists() from exc

    def delete_user(self, user_id: int) -> bool:
        """Delete a user. Memberships, tokens and durable session rows cascade.

        Cached sessions are the caller's concern: use AuthService.delete_user,
        which clears them from the session store first.
        """
        with self.engine.begin() as conn:
            result = conn.execute(users.delete().where(users.c.id == user_id))
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> datetime:
        """Stamp the current UTC time as last_login and return it."""
        now = _now()
        with self.engine.begin() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(last_login=to_iso(now)))
        return now

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate(self, email: str, password: str) -> User:
        """Verify credentials and stamp last_login.

        Raises Unauthorized for an unknown email and for a wrong password
        alike. bcrypt runs on both paths (against a dummy hash when the email
        is unknown) so response time does not reveal which one happened.
        """
        user = self.get_by_email(email)
        if user is None:
            equalize_timing(password)
            raise Unauthorized()
        if not verify_password(user.password_hash, password):
            raise Unauthorized()
        user.last_login = self.update_last_login(user.id)
        return user

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, req: RegistrationRequest) -> RegistrationResponse:
        """Create an unconfirmed user and its confirmation token atomically.

        Raises NameRequired / EmailRequired / PasswordRequired for blank
        fields and UserExists when the (normalised) email is taken, including
        when a concurrent registration wins the UNIQUE(email) race.
        """
        name = req.name.strip()
        email = normalize_email(req.email)
        phone = req.phone.strip()

        if not name:
            raise NameRequired()
        if not email:
            raise EmailRequired()
        if not req.password:
            raise PasswordRequired()

        if self.get_by_email(email) is not None:
            raise UserExists()

        password_hash = hash_password(req.password)
        token = generate_token()
        now = _now()
        expires = now + self._settings.registration_token_duration

        try:
            with self.engine.begin() as conn:
                existing = conn.execute(select(users.c.id).where(users.c.email == email)).fetchone()
                if existing is not None:
                    raise UserExists()
                result = conn.execute(
                    users.insert().values(
                        name=name,
                        email=email,
                        phone=phone,
                        password_hash=password_hash,
                        created_at=to_iso(now),
                    )
                )
                user_id = result.inserted_primary_key[0]
                conn.execute(
                    registration_tokens.insert().values(
                        user_id=user_id, token=token, email=email, expires=to_iso(expires)
                    )
                )
        except IntegrityError as exc:
            # A concurrent registration won the UNIQUE(email) race.
            if self.get_by_email(email) is not None:
                raise UserExists() from exc
            raise

        logger.info("Registered user id=%s", user_id)
        return RegistrationResponse(user_id=user_id, name=name, email=email, phone=phone, token=token)

    def confirm_registration(self, token: str) -> User:
        """Mark the token's user confirmed, consume the token, return the user.

        Raises InvalidToken for an unknown token and TokenExpired for a stale one.
        """
        with self.engine.begin() as conn:
            row = conn.execute(
                select(registration_tokens.c.user_id, registration_tokens.c.expires).where(
                    registration_tokens.c.token == token
                )
            ).fetchone()
            if row is None:
                raise InvalidToken()
            if from_iso(row.expires) < _now():
                raise TokenExpired()

            conn.execute(users.update().where(users.c.id == row.user_id).values(confirmed_at=to_iso(_now())))
            conn.execute(registration_tokens.delete().where(registration_tokens.c.user_id == row.user_id))
            user_row = conn.execute(users.select().where(users.c.id == row.user_id)).fetchone()

        logger.info("Confirmed registration for user id=%s", row.user_id)
        return _row_to_user(user_row)

    def renew_registration(self, user_id: int) -> str:
        """Replace the user's confirmation token with a fresh one and return it."""
        token = generate_token()
        expires = _now() + self._settings.registration_token_duration
        with self.engine.begin() as conn:
            row = conn.execute(select(users.c.id, users.c.email).where(users.c.id == user_id)).fetchone()
            if row is None:
                raise UserNotFound()
            conn.execute(registration_tokens.delete().where(registration_tokens.c.user_id == user_id))
            conn.execute(
                registration_tokens.insert().values(
                    user_id=user_id, token=token, email=row.email, expires=to_iso(expires)
                )
            )
        return token

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> PasswordResetToken:
        """Issue a reset token, replacing any outstanding one for that user.

        Raises UserNotFound. The HTTP layer hides this outcome from clients so
        the endpoint cannot be used to enumerate accounts.
        """
        email = normalize_email(email)
        token = generate_token()
        expires = _now() + self._settings.reset_token_duration
        with self.engine.begin() as conn:
            row = conn.execute(select(users.c.id).where(users.c.email == email)).fetchone()
            if row is None:
                raise UserNotFound()
            conn.execute(pass_tokens.delete().where(pass_tokens.c.user_id == row.id))
            conn.execute(
                pass_tokens.insert().values(user_id=row.id, token=token, email=email, expires=to_iso(expires))
            )
        return PasswordResetToken(user_id=row.id, email=email, token=token, expires=expires)

    def confirm_password_reset(self, reset: PasswordReset) -> User:
        """Set a new password using a reset token, consume the token, return the user.

        Raises TokenNotFound, TokenExpired or PasswordRequired.
        """
        if not reset.password:
            raise PasswordRequired()
        with self.engine.begin() as conn:
            row = conn.execute(
                select(pass_tokens.c.user_id, pass_tokens.c.expires).where(pass_tokens.c.token == reset.token)
            ).fetchone()
            if row is None:
                raise TokenNotFound()
            if from_iso(row.expires) < _now():
                raise TokenExpired()

            conn.execute(
                users.update().where(users.c.id == row.user_id).values(password_hash=hash_password(reset.password))
            )
            conn.execute(
                pass_tokens.delete().where((pass_tokens.c.user_id == row.user_id) & (pass_tokens.c.token == reset.token))
            )
            user_row = conn.execute(users.select().where(users.c.id == row.user_id)).fetchone()

        logger.info("Password reset completed for user id=%s", row.user_id)
        return _row_to_user(user_row)

    def reset_password(self, user_id: int, password: str) -> None:
        """Administrative reset: set a new password without a token."""
        if not password:
            raise PasswordRequired()
        with self.engine.begin() as conn:
            result = conn.execute(
                users.update().where(users.c.id == user_id).values(password_hash=hash_password(password))
            )
            if result.rowcount == 0:
                raise UserNotFound()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        phone=row.phone,
        password_hash=row.password_hash,
        confirmed_at=from_iso(row.confirmed_at),
        last_login=from_iso(row.last_login),
        created_at=from_iso(row.created_at),
    )
