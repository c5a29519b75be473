"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Presensi happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. The session signing secret is a startup
      precondition: a process without JWT_SECRET never finishes loading.

Security notes:
  [M6] JWT_SECRET shorter than 32 chars is rejected outright. Session signing
       and the throttle key HMAC both rely on key entropy.

  [M7] A missing JWT_SECRET is a hard startup failure in every mode. There is
       no auto-generated fallback: sessions signed with a throwaway key would be
       silently invalidated on restart, and separate instances would reject
       each other's cookies.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("presensi.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'presensi_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Every field except jwt_secret has a default. The model_validator enforces
    the signing-secret rules at startup.
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
    # Empty string is the sentinel for "not configured"; the validator raises.
    jwt_secret: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Sessions and credentials
    # ------------------------------------------------------------------

    session_lifetime_seconds: int = Field(default=8 * 60 * 60, gt=0)
    # Cookies carry the secure flag unless explicitly running in debug over HTTP.
    secure_cookies: bool | None = None
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    min_token_length: int = Field(default=8, ge=1)

    # ------------------------------------------------------------------
    # Login throttle
    # ------------------------------------------------------------------

    throttle_max_attempts: int = Field(default=5, ge=1)
    throttle_window_seconds: int = Field(default=5 * 60, gt=0)
    throttle_lockout_seconds: int = Field(default=15 * 60, gt=0)
    throttle_backend: Literal["memory", "database"] = "memory"

    # Coarse per-IP limit applied by slowapi in front of the login throttle.
    login_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    # Socket peers allowed to set X-Forwarded-For / X-Real-IP / CF-Connecting-IP.
    # Empty: forwarded headers are ignored and the throttle keys on the peer.
    trusted_proxies: list[str] = []

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_jwt_secret(self) -> "Settings":
        """Enforce the JWT_SECRET startup invariant [M6][M7]."""
        if not self.jwt_secret:
            raise ValueError(
                "JWT_SECRET is required. Set JWT_SECRET in your environment or .env file "
                "before starting the application."
            )
        if len(self.jwt_secret) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters.")
        if self.secure_cookies is None:
            self.secure_cookies = not self.debug
        if self.debug and not self.secure_cookies:
            logger.warning("DEBUG is on: session cookies are sent without the Secure flag.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
