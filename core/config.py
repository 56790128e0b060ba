"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Gatehouse happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. Services
      are built from it once, in the API lifespan, and handed to the admission
      pipeline explicitly.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): cross-field validation once every field is
      resolved. Enforces the SECRET_KEY policy and checks that the rate-limit
      strings parse.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. Token signing relies
  on key entropy -- a short key weakens every bearer token ever issued.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a hard
  startup failure. Processes behind a load balancer must share one key or
  tokens issued by one instance fail verification on the others.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or ratelimit/.
"""

import logging
import secrets
from functools import lru_cache

from limits import parse
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatehouse.config")


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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    auth_db_url: str = "sqlite:///gatehouse_auth.db"
    secure_cookies: bool = False
    token_expire_seconds: int = 3600
    # 15 minutes, same lifetime for the cookie max-age and the server-side entry.
    session_ttl_seconds: int = 900
    # Empty means in-process sessions (single worker / tests). Point at Redis
    # when more than one process serves the app.
    session_store_url: str = ""
    session_purge_interval_seconds: int = 300

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    # limits storage URI: "memory://" or "redis://host:6379/0".
    rate_limit_storage_uri: str = "memory://"
    default_rate_limit: str = "60/minute"
    auth_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions and tokens will not survive restart.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Tokens will not verify across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_rate_limits(self) -> "Settings":
        """Fail at startup, not on the first request, if a rate string is garbage."""
        for name in ("default_rate_limit", "auth_rate_limit"):
            try:
                parse(getattr(self, name))
            except ValueError as exc:
                raise ValueError(f"{name.upper()} is not a valid rate limit string: {exc}") from exc
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
