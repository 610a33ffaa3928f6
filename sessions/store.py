"""
sessions/store.py -- Session persistence: one interface, two backends.

Pattern: Repository behind an abstract base class. Callers depend on
SessionStore; the API lifespan picks the implementation and injects it.

  SqlSessionStore    Durable record in the sessions table. Works alone (no
                     Redis) or as the durable side of RedisSessionStore.
  RedisSessionStore  Volatile cache and primary read path. Keys:
                       session:<id>         JSON payload, PX = time to expiry
                       session:user:<uid>   set of the user's session ids
                     Optionally backed by a SqlSessionStore.

Durability (SESSION_DURABILITY):
  sync   RedisSessionStore.save() writes the cache, then the durable row, and
         durable errors propagate to the caller.
  async  the durable row is written on the store's background executor; a
         failure is logged and the cache write stands.
The cache write never waits on the durable write in async mode.
A delete waits only for writes still pending on the ids it removes, and for
at most SESSION_WRITE_WAIT_SECONDS; writes for other sessions never hold it up.

Expired sessions are never returned. get() raises SessionExpired and hands
the purge to the background executor; by_user_id() skips them the same way.
Purge failures are logged, not raised: the caller already has its answer.

Layer rule: may import from auth/ and core/; never from api/.
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from datetime import datetime, timezone

import redis
from sqlalchemy import select
from sqlalchemy.engine import Engine

from auth.store import sessions, to_iso
from core.config import get_settings
from core.errors import SessionExpired, SessionNotFound
from sessions.models import Session, generate_session_id

logger = logging.getLogger("gatehouse.sessions")

SESSION_PREFIX = "session:"
USER_INDEX_PREFIX = "session:user:"


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Background work
# ---------------------------------------------------------------------------


class BackgroundTasks:
    """Executor for deferred store work, with failures logged on completion.

    The executor is created on first use, so a store that never defers work
    never starts a thread. Tasks submitted with a ``key`` can be waited on
    by that key alone.
    """

    def __init__(self, max_workers: int, name: str) -> None:
        self._max_workers = max_workers
        self._name = name
        self._executor: ThreadPoolExecutor | None = None
        self._pending: set[Future] = set()
        self._by_key: dict[str, set[Future]] = {}
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)

    def submit(self, description: str, fn, *args, key: str | None = None) -> Future:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix=self._name)
            future = self._executor.submit(fn, *args)
            self._pending.add(future)
            if key is not None:
                self._by_key.setdefault(key, set()).add(future)
        future.add_done_callback(lambda f: self._done(description, key, f))
        return future

    def _done(self, description: str, key: str | None, future: Future) -> None:
        if future.cancelled():
            logger.warning("Background %s cancelled", description)
        else:
            exc = future.exception()
            if exc is not None:
                logger.error("Background %s failed: %s", description, exc, exc_info=exc)
        with self._idle:
            self._pending.discard(future)
            if key is not None:
                keyed = self._by_key.get(key)
                if keyed is not None:
                    keyed.discard(future)
                    if not keyed:
                        del self._by_key[key]
            if not self._pending:
                self._idle.notify_all()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until every submitted task has finished and been logged.

        Returns False if ``timeout`` ran out first.
        """
        with self._idle:
            return self._idle.wait_for(lambda: not self._pending, timeout=timeout)

    def wait_for_keys(self, keys: Iterable[str], timeout: float | None = None) -> bool:
        """Block until the tasks submitted under ``keys`` have finished.

        Work under other keys is not waited on. Returns False, after logging
        a warning, if ``timeout`` ran out first.
        """
        with self._lock:
            futures = [f for key in keys for f in self._by_key.get(key, ())]
        if not futures:
            return True
        _, not_done = wait_futures(futures, timeout=timeout)
        if not_done:
            logger.warning("Gave up after %.1fs waiting on %d background task(s)", timeout, len(not_done))
            return False
        return True

    def shutdown(self) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class SessionStore(ABC):
    """What every session backend provides."""

    def __init__(self) -> None:
        self._settings = get_settings()
        self._background = BackgroundTasks(self._settings.session_background_workers, type(self).__name__)

    @abstractmethod
    def get(self, session_id: str) -> Session:
        """Return the live session or raise SessionNotFound / SessionExpired."""

    @abstractmethod
    def save(self, session: Session) -> None:
        """Assign an id if needed, bump the counter, and store the session."""

    @abstractmethod
    def delete(self, session: Session) -> None:
        ...

    @abstractmethod
    def by_user_id(self, user_id: int) -> list[Session]:
        """Live sessions of one user. Stale and expired entries are skipped."""

    @abstractmethod
    def delete_by_user_id(self, user_id: int) -> None:
        ...

    def delete_expired(self) -> int:
        """Sweep durable records past expiry. Returns the number removed."""
        return 0

    def wait_pending(self, timeout: float | None = None) -> None:
        """Block until deferred purges and writes have run."""
        self._background.wait(timeout)

    def close(self) -> None:
        self._background.shutdown()

    def _prepare(self, session: Session) -> None:
        """Common save() preamble: id, default expiry, expiry check, counter."""
        if not session.id:
            session.id = generate_session_id()
        if session.expires_at is None:
            session.expires_at = _now() + self._settings.session_duration
        if session.expired():
            raise SessionExpired()
        session.counter += 1


# ---------------------------------------------------------------------------
# SQL (durable)
# ---------------------------------------------------------------------------


class SqlSessionStore(SessionStore):
    """Sessions stored in the sessions table, one row per session id.

    expires_at is ISO 8601 UTC text with fixed precision, so the expiry
    comparisons below are plain string comparisons.
    """

    def __init__(self, engine: Engine) -> None:
        super().__init__()
        self.engine = engine

    def get(self, session_id: str) -> Session:
        with self.engine.connect() as conn:
            row = conn.execute(select(sessions.c.payload).where(sessions.c.id == session_id)).fetchone()
        if row is None:
            raise SessionNotFound()
        session = Session.from_json(row.payload)
        if session.expired():
            self._background.submit("expired session purge", self.delete, session)
            raise SessionExpired()
        return session

    def save(self, session: Session) -> None:
        self._prepare(session)
        self.persist(session)

    def persist(self, session: Session) -> None:
        """Write the row as-is (no counter bump). Used by RedisSessionStore."""
        now = to_iso(_now())
        values = {
            "user_id": session.user_id,
            "user_agent": session.user_agent,
            "payload": session.to_json(),
            "expires_at": to_iso(session.expires_at),
            "updated_at": now,
        }
        with self.engine.begin() as conn:
            result = conn.execute(sessions.update().where(sessions.c.id == session.id).values(**values))
            if result.rowcount == 0:
                conn.execute(sessions.insert().values(id=session.id, created_at=now, **values))

    def delete(self, session: Session) -> None:
        with self.engine.begin() as conn:
            conn.execute(sessions.delete().where(sessions.c.id == session.id))

    def by_user_id(self, user_id: int) -> list[Session]:
        query = (
            select(sessions.c.payload)
            .where((sessions.c.user_id == user_id) & (sessions.c.expires_at > to_iso(_now())))
            .order_by(sessions.c.created_at)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        found = [Session.from_json(r.payload) for r in rows]
        return [s for s in found if not s.expired()]

    def delete_by_user_id(self, user_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(sessions.delete().where(sessions.c.user_id == user_id))

    def delete_expired(self) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(sessions.delete().where(sessions.c.expires_at <= to_iso(_now())))
        if result.rowcount:
            logger.info("Purged %d expired durable sessions", result.rowcount)
        return result.rowcount


# ---------------------------------------------------------------------------
# Redis (volatile cache, primary read path)
# ---------------------------------------------------------------------------


def session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


def user_index_key(user_id: int) -> str:
    return f"{USER_INDEX_PREFIX}{user_id}"


class RedisSessionStore(SessionStore):
    """Redis-cached sessions, optionally mirrored to a durable SqlSessionStore.

    Usage:
        store = RedisSessionStore(create_redis(), durable=SqlSessionStore(engine))
        store.save(session)
        session = store.get(session.id)
    """

    def __init__(
        self,
        client: redis.Redis,
        durable: SqlSessionStore | None = None,
        durability: str | None = None,
        write_wait: float | None = None,
    ) -> None:
        super().__init__()
        self.redis = client
        self.durable = durable
        self.durability = durability or self._settings.session_durability
        self.write_wait = self._settings.session_write_wait_seconds if write_wait is None else write_wait
        if self.durability not in ("sync", "async"):
            raise ValueError(f"durability must be 'sync' or 'async', not {self.durability!r}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Session:
        payload = self.redis.get(session_key(session_id))
        if payload is None:
            return self._recover(session_id)
        session = Session.from_json(payload)
        if session.expired():
            self._schedule_purge(session)
            raise SessionExpired()
        return session

    def _recover(self, session_id: str) -> Session:
        """Cache miss: fall back to the durable record and re-cache it."""
        if self.durable is None:
            raise SessionNotFound()
        session = self.durable.get(session_id)
        self._cache(session)
        logger.debug("Session %s... restored to cache from durable store", session_id[:8])
        return session

    def by_user_id(self, user_id: int) -> list[Session]:
        index = user_index_key(user_id)
        ids = sorted(self.redis.smembers(index))
        if not ids:
            return []

        payloads = self.redis.mget([session_key(sid) for sid in ids])
        live: list[Session] = []
        stale: list[str] = []
        for sid, payload in zip(ids, payloads):
            if payload is None:
                stale.append(sid)
                continue
            session = Session.from_json(payload)
            if session.expired():
                self._schedule_purge(session)
                continue
            live.append(session)

        if stale:
            self.redis.srem(index, *stale)
        return live

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save(self, session: Session) -> None:
        self._prepare(session)
        self._cache(session)
        if self.durable is None:
            return
        if self.durability == "sync":
            self.durable.persist(session)
        else:
            self._background.submit(
                "durable session write", self.durable.persist, copy.deepcopy(session), key=session.id
            )

    def _cache(self, session: Session) -> None:
        ttl_ms = int((session.expires_at - _now()).total_seconds() * 1000)
        if ttl_ms <= 0:
            raise SessionExpired()
        self.redis.set(session_key(session.id), session.to_json(), px=ttl_ms)

        if session.user_id is not None:
            index = user_index_key(session.user_id)
            self.redis.sadd(index, session.id)
            # The index lives as long as the longest-lived session in it.
            if self.redis.pttl(index) < ttl_ms:
                self.redis.pexpire(index, ttl_ms)

    def delete(self, session: Session) -> None:
        self.redis.delete(session_key(session.id))
        if session.user_id is not None:
            self.redis.srem(user_index_key(session.user_id), session.id)
        if self.durable is not None:
            # A write still in flight for this id would resurrect the row.
            self._background.wait_for_keys([session.id], self.write_wait)
            self.durable.delete(session)

    def delete_by_user_id(self, user_id: int) -> None:
        index = user_index_key(user_id)
        ids = self.redis.smembers(index)
        keys = [session_key(sid) for sid in ids]
        self.redis.delete(index, *keys)
        if self.durable is not None:
            self._background.wait_for_keys(ids, self.write_wait)
            self.durable.delete_by_user_id(user_id)
        logger.info("Deleted %d cached sessions for user id=%s", len(keys), user_id)

    def delete_expired(self) -> int:
        if self.durable is None:
            return 0
        return self.durable.delete_expired()

    def wait_pending(self, timeout: float | None = None) -> None:
        super().wait_pending(timeout)
        if self.durable is not None:
            self.durable.wait_pending(timeout)

    def close(self) -> None:
        super().close()
        if self.durable is not None:
            self.durable.close()

    # ------------------------------------------------------------------
    # Purge
    # ------------------------------------------------------------------

    def _schedule_purge(self, session: Session) -> None:
        self._background.submit("expired session purge", self._purge, session)

    def _purge(self, session: Session) -> None:
        self.redis.delete(session_key(session.id))
        if session.user_id is not None:
            self.redis.srem(user_index_key(session.user_id), session.id)
        if self.durable is not None:
            self.durable.delete(session)
