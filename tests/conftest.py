"""
tests/conftest.py -- Shared test fixtures for Gatehouse.

This module provides:
  - engine: a fresh SQLite file per test (under tmp_path) with the schema
  - redis_client: a fakeredis client on its own FakeServer per test
  - users / groups / sql_sessions / redis_sessions / rate_limiter / auth_service
  - redis_sessions runs every dependent test twice, once per durability
    mode ("sync" and "async"), so the service and HTTP tests cover both
  - make_user: factory that registers and confirms a user
  - api_client: TestClient whose lifespan wires the stores above into app.state

Design: a file-backed SQLite database rather than shared-memory. Session
stores write from background threads, and a file database with WAL lets
those writers and the test thread proceed without "database is locked".

Environment must be set before any gatehouse import: get_settings() is
cached at first call and auth/passwords.py hashes its timing dummy at
import time. BCRYPT_ROUNDS=4 keeps every hash fast.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_STORAGE_URI", "memory://")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')

import fakeredis
import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter as ip_limiter
from api.main import app
from auth.groups import GroupStore
from auth.models import RegistrationRequest, User
from auth.service import AuthService
from auth.store import UserStore, create_db_engine, init_db
from cache.limiter import RateLimiter
from sessions.store import RedisSessionStore, SqlSessionStore

# ---------------------------------------------------------------------------
# Backing stores
# ---------------------------------------------------------------------------


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'gatehouse.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def redis_client():
    """fakeredis client with its own server, so tests never share keys."""
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    client.close()


# ---------------------------------------------------------------------------
# Repositories and services
# ---------------------------------------------------------------------------


@pytest.fixture
def users(engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture
def groups(engine) -> GroupStore:
    return GroupStore(engine)


@pytest.fixture
def sql_sessions(engine) -> Generator[SqlSessionStore, None, None]:
    store = SqlSessionStore(engine)
    yield store
    store.close()


@pytest.fixture(params=["sync", "async"])
def redis_sessions(request, redis_client, sql_sessions) -> Generator[RedisSessionStore, None, None]:
    store = RedisSessionStore(redis_client, durable=sql_sessions, durability=request.param)
    yield store
    store.wait_pending(timeout=5)
    store.close()


@pytest.fixture
def rate_limiter(redis_client) -> RateLimiter:
    return RateLimiter(redis_client)


@pytest.fixture
def auth_service(users, groups, redis_sessions, rate_limiter) -> AuthService:
    return AuthService(users=users, groups=groups, sessions=redis_sessions, limiter=rate_limiter)


@pytest.fixture
def make_user(users) -> Callable[..., User]:
    """Register and confirm a user; return the confirmed User (hash included)."""

    def _make(email: str = "alice@example.com", password: str = "secret", name: str = "Alice") -> User:
        reg = users.register(RegistrationRequest(name=name, email=email, password=password))
        users.confirm_registration(reg.token)
        return users.get_by_id(reg.user_id)

    return _make


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


def _patch_lifespan(engine, redis_client, auth: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    the per-test database and fakeredis server instead of real services.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.redis = redis_client
        app.state.auth = auth
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(engine, redis_client, auth_service) -> Generator[TestClient, None, None]:
    """TestClient over the real app with per-test stores.

    The SlowAPI per-IP counters are process-wide, so they are cleared for
    every test.
    """
    ip_limiter.reset()
    app.router.lifespan_context = _patch_lifespan(engine, redis_client, auth_service)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client
