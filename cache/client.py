"""
cache/client.py -- Redis client construction.

One client (and its connection pool) is created in the API lifespan or the
CLI and injected into RateLimiter and RedisSessionStore. Nothing in this
package keeps a module-level connection.

decode_responses=True: every value stored by Gatehouse is text (JSON session
payloads, integer counters, session ids), so callers get str, not bytes.
"""

from __future__ import annotations

import logging

import redis

from core.config import get_settings

logger = logging.getLogger("gatehouse.cache")


def create_redis(url: str | None = None, socket_timeout: float | None = None) -> redis.Redis:
    """Build a Redis client from REDIS_URL.

    socket_timeout bounds every round trip, so a stalled server raises
    redis.TimeoutError instead of hanging the request.
    """
    settings = get_settings()
    timeout = socket_timeout if socket_timeout is not None else settings.redis_socket_timeout
    client = redis.Redis.from_url(
        url or settings.redis_url,
        decode_responses=True,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
    )
    logger.debug("Redis client created (timeout=%ss)", timeout)
    return client
