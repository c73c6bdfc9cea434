"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for tokengate happen here. No module should
call os.getenv() or os.environ.get() directly -- the Settings instance is
built once by get_settings() at startup and handed to every component.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_secret -> ACCESS_SECRET). Type coercion and validation are
      built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates missing JWT secrets
      with a warning; production mode refuses to start without them.

Security notes:
  [M6] Every per-kind secret shorter than 32 chars is rejected outright.

  [M7] In production mode (DEBUG not set or false), a missing secret is a
       hard startup failure.

  [M8] Two token kinds sharing a secret is rejected. Kind separation is only
       real when a Confirmation token cannot verify under the Access key.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or cache/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tokengate.config")

# Secret field name -> display name used in error messages.
_SECRET_FIELDS = {
    "access_secret": "ACCESS_SECRET",
    "refresh_secret": "REFRESH_SECRET",
    "confirmation_secret": "CONFIRMATION_SECRET",
    "reset_secret": "RESET_SECRET",
    "state_secret": "STATE_SECRET",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings(debug=True) can be instantiated in
    test environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
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
    api_id: str = "tokengate"  # JWT issuer claim
    backend_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///tokengate.db"
    # Empty string selects the in-process session cache (dev/test only).
    redis_url: str = ""

    # ------------------------------------------------------------------
    # JWT -- one secret and one lifetime per token kind
    # ------------------------------------------------------------------

    access_secret: str = ""
    refresh_secret: str = ""
    confirmation_secret: str = ""
    reset_secret: str = ""
    state_secret: str = ""

    access_expiration: int = 600  # 10 minutes
    refresh_expiration: int = 7 * 24 * 3600  # 7 days
    confirmation_expiration: int = 3600  # 1 hour
    reset_expiration: int = 1800  # 30 minutes
    state_expiration: int = 600  # 10 minutes

    token_leeway_seconds: int = 5

    # ------------------------------------------------------------------
    # Cookies
    # ------------------------------------------------------------------

    refresh_cookie_name: str = "refresh_token"
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    facebook_client_id: str = ""
    facebook_client_secret: str = ""
    provider_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Email (SMTP). An empty email_host logs messages instead of sending.
    # ------------------------------------------------------------------

    email_host: str = ""
    email_port: int = 587
    email_user: str = ""
    email_password: str = ""
    email_from: str = ""
    email_use_tls: bool = True
    email_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Auth policy
    # ------------------------------------------------------------------

    two_factor_code_ttl: int = 300
    two_factor_max_attempts: int = 5
    two_factor_on_external_login: bool = True
    require_email_confirmation: bool = False

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    # JSON lists in the environment, e.g. ALLOWED_HOSTS='["api.example.com"]'
    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the JWT secret policy [M6] [M7] [M8].

        Dev mode (DEBUG=true): auto-generate any missing secret with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if any
            per-kind secret is missing.
        """
        for field_name, env_name in _SECRET_FIELDS.items():
            value = getattr(self, field_name)
            if not value:
                if self.debug:
                    setattr(self, field_name, secrets.token_hex(32))
                    logger.warning("Using auto-generated %s. Tokens will not survive restarts.", env_name)
                else:
                    raise ValueError(
                        f"{env_name} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            elif len(value) < 32:
                raise ValueError(f"{env_name} must be at least 32 characters.")

        values = [getattr(self, name) for name in _SECRET_FIELDS]
        if len(set(values)) != len(values):
            raise ValueError("Each token kind must use a distinct secret.")

        if not self.debug and not self.redis_url:
            raise ValueError("REDIS_URL is required in production mode.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    Components never call this themselves; api/main.py reads it during
    lifespan startup and passes the instance into each constructor.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
