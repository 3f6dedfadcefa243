"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Tokenly happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, bcrypt_rounds -> BCRYPT_ROUNDS).

  @model_validator(mode="after"): DEBUG-conditional SECRET_KEY logic. Dev mode
      generates a key with a warning, production mode refuses to start without one.

Security notes:
  SECRET_KEY signs every JWT (client and end-user) and keys the HMAC used to
  store API keys and opaque tokens. It must be at least 32 characters.

  Hashing parameters (bcrypt rounds, argon2 costs, PBKDF2 iterations) are fixed
  per deployment. Tenants pick the algorithm; they never pick its cost.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or tenants/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tokenly.config")


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
    database_url: str = "sqlite:///tokenly.db"

    # ------------------------------------------------------------------
    # Tenant admin (client) tokens
    # ------------------------------------------------------------------

    client_token_expire_seconds: int = 8 * 3600

    # ------------------------------------------------------------------
    # Credential hashing -- fixed per deployment
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    argon2_time_cost: int = 3
    argon2_memory_cost: int = 65536  # KiB
    argon2_parallelism: int = 4
    pbkdf2_iterations: int = 310_000
    pbkdf2_salt_bytes: int = 16
    password_min_length: int = 8

    # ------------------------------------------------------------------
    # Ephemeral credential lifetimes
    # ------------------------------------------------------------------

    otp_ttl_minutes: int = 10
    magic_link_ttl_minutes: int = 15
    verification_token_ttl_hours: int = 24
    password_reset_ttl_hours: int = 1
    token_purge_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Links placed in outgoing email
    # ------------------------------------------------------------------

    frontend_base_url: str = "http://localhost:5173"
    backend_base_url: str = "http://localhost:8084"

    # ------------------------------------------------------------------
    # Email delivery -- SMTP when smtp_host is set, the log otherwise
    # ------------------------------------------------------------------

    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    # True: plain connection upgraded with STARTTLS. False: implicit TLS (SMTPS).
    smtp_use_tls: bool = True
    smtp_timeout_seconds: int = 30
    email_from_address: Optional[str] = None

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"
    otp_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens will not survive a restart.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Issued tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
