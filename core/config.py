"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Gatehouse happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. redis_url -> REDIS_URL). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation once every field is
      resolved. Rejects values that would silently weaken auth (a bcrypt cost
      below 4, session ids shorter than 128 bits).

Durations are stored as integer seconds so they can be set from the
environment; the *_duration properties hand out timedelta objects.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, sessions/, or cache/.
"""

import logging
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatehouse.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parents[1] / 'gatehouse.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    log_level: str = "INFO"
    # Host headers accepted by TrustedHostMiddleware (JSON list in the environment).
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Backing stores
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    redis_url: str = "redis://localhost:6379/0"
    # Upper bound on every Redis round trip. This is the per-call deadline
    # for cache operations; a stalled server surfaces as redis.TimeoutError.
    redis_socket_timeout: float = 5.0

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 10

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_id_bytes: int = 32
    session_duration_seconds: int = 3 * 60 * 60
    session_long_duration_seconds: int = 30 * 24 * 60 * 60
    # "sync": the durable record is written before save() returns and its
    # errors propagate. "async": written on a background worker, errors logged.
    session_durability: Literal["sync", "async"] = "async"
    session_purge_interval_seconds: int = 60 * 60
    session_background_workers: int = 4
    # Upper bound on how long a delete waits for that session's own pending
    # durable write before going ahead anyway.
    session_write_wait_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Registration / password reset tokens
    # ------------------------------------------------------------------

    token_bytes: int = 16
    registration_token_seconds: int = 60 * 60
    reset_token_seconds: int = 3 * 60 * 60

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_max_attempts: int = 5
    login_window_seconds: int = 15 * 60
    reset_max_attempts: int = 3
    reset_window_seconds: int = 60 * 60
    # Coarse per-IP limit applied by SlowAPI on the registration endpoint.
    api_rate_limit: str = "20/minute"
    rate_limit_storage_uri: str = "memory://"

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def session_duration(self) -> timedelta:
        return timedelta(seconds=self.session_duration_seconds)

    @property
    def session_long_duration(self) -> timedelta:
        return timedelta(seconds=self.session_long_duration_seconds)

    @property
    def registration_token_duration(self) -> timedelta:
        return timedelta(seconds=self.registration_token_seconds)

    @property
    def reset_token_duration(self) -> timedelta:
        return timedelta(seconds=self.reset_token_seconds)

    @property
    def login_window(self) -> timedelta:
        return timedelta(seconds=self.login_window_seconds)

    @property
    def reset_window(self) -> timedelta:
        return timedelta(seconds=self.reset_window_seconds)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_security_floor(self) -> "Settings":
        """Refuse configurations that weaken credentials or session ids.

        bcrypt accepts cost factors 4..31. Session ids must carry at least
        128 bits of entropy; anything shorter is guessable at scale.
        """
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        if self.session_id_bytes < 16:
            raise ValueError("SESSION_ID_BYTES must be at least 16.")
        if self.token_bytes < 16:
            raise ValueError("TOKEN_BYTES must be at least 16.")
        if self.session_duration_seconds <= 0 or self.session_long_duration_seconds <= 0:
            raise ValueError("Session durations must be positive.")
        if self.login_max_attempts < 1 or self.reset_max_attempts < 1:
            raise ValueError("Rate limit attempt counts must be at least 1.")
        if self.bcrypt_rounds < 10 and not self.debug:
            logger.warning("BCRYPT_ROUNDS=%d is below the recommended cost of 10", self.bcrypt_rounds)
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
