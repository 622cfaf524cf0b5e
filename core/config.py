"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Crewgate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() in the
app entry point and pass the Settings instance into services.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call. Only api/main.py calls it; services and the authorization chain
      receive the instance by constructor injection so tests can build their
      own Settings(...) without touching the environment.

  BaseSettings (pydantic-settings): field names map to env var names
      (e.g. session_lifetime_seconds -> SESSION_LIFETIME_SECONDS).

  @model_validator(mode="after"): DEBUG-conditional SECRET_KEY policy.

Security notes:
  SECRET_KEY keys the HMAC digest of password reset tokens. Shorter than 32
  chars is rejected. In production mode (DEBUG unset) a missing key is a hard
  startup failure.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("crewgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'crewgate.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Every field has a default so Settings() works in tests without a .env
    file once DEBUG=true is set (or a secret_key is passed explicitly).
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
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_cookie_name: str = "sessionId"
    session_lifetime_seconds: int = Field(default=24 * 60 * 60, gt=0)
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    password_history_size: int = Field(default=5, ge=0)
    reset_token_lifetime_seconds: int = Field(default=24 * 60 * 60, gt=0)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    admin_role_name: str = "Administrator"
    fallback_role_name: str = "User"
    # False keeps the session-lifetime staleness window for revoked grants.
    recheck_cached_permissions: bool = False

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    password_reset_rate_limit: str = "5/hour"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # First-run bootstrap (empty = disabled)
    # ------------------------------------------------------------------

    bootstrap_admin_email: str = ""
    bootstrap_admin_password: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Outstanding reset tokens stop verifying after a restart.

        Production mode: refuse to start without SECRET_KEY.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Reset tokens will not survive a restart.")
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
