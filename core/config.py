"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AppPortal happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, encryption_key -> ENCRYPTION_KEY).

  @model_validator(mode="after"): cross-field validation after all fields are
      resolved. Dev mode (DEBUG=true) generates missing keys with a warning;
      production mode refuses to start without them.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. JWT signing relies
  on key entropy.

  ENCRYPTION_KEY must be a urlsafe-base64 Fernet key. It protects the
  per-assignment credentials stored in user_app_assignments. Losing it makes
  every stored credential unreadable, so production never auto-generates one.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or portal/.
"""

import logging
import secrets
from functools import lru_cache

from cryptography.fernet import Fernet
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("appportal.config")


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
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    encryption_key: str = ""

    # ------------------------------------------------------------------
    # Storage (empty string means "use the file next to the store module")
    # ------------------------------------------------------------------

    database_url: str = ""
    auth_database_url: str = ""

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    token_expire_seconds: int = 3600
    login_rate_limit: str = "10/minute"
    # Launch PIN lockout: this many failures for one (user, app) inside the
    # window locks further attempts until the oldest failure ages out.
    pin_max_failures: int = 5
    pin_lockout_minutes: int = 5

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Catalog sync
    # ------------------------------------------------------------------

    sync_workers: int = 2
    sync_schedule_enabled: bool = True
    # How often the scheduler wakes to compare last_run against the
    # configured frequency. The frequency itself lives in system_settings.
    sync_poll_seconds: int = 300
    sync_stale_after_hours: int = 24

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_keys(self) -> "Settings":
        """Enforce SECRET_KEY and ENCRYPTION_KEY policy.

        Dev mode (DEBUG=true): auto-generate missing keys with a warning.
            Tokens and stored credentials will not survive a restart.

        Production mode: refuse to start if either key is missing.

        Both modes: reject SECRET_KEY shorter than 32 characters and
            ENCRYPTION_KEY values Fernet cannot load.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")

        if not self.encryption_key:
            if self.debug:
                self.encryption_key = Fernet.generate_key().decode("ascii")
                logger.warning(
                    "Using auto-generated ENCRYPTION_KEY. Stored app credentials will be unreadable after restart."
                )
            else:
                raise ValueError(
                    "ENCRYPTION_KEY is required in production mode. "
                    "Generate one with: python -c 'from cryptography.fernet import Fernet; "
                    "print(Fernet.generate_key().decode())'"
                )
        try:
            Fernet(self.encryption_key.encode("ascii"))
        except ValueError as exc:
            raise ValueError("ENCRYPTION_KEY must be a 32-byte urlsafe base64 Fernet key.") from exc
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
