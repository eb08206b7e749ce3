"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Enisi happen here. No module should call
os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): cross-field rules that must hold before the
      app accepts a single request (secret key policy, dynamic RP gating).

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Session token
       hashing and the OAuth state cookie both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  [RP1] ALLOW_DYNAMIC_RP derives the WebAuthn relying party from the request's
       Origin header. It exists for development tunnels only and is refused at
       startup unless DEBUG is also true.

Layer rule: core/ is the kernel. This module may not import from api/, auth/
or audit/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("enisi.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'enisi.db'}"


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
    # Include exception text in 500 responses. Never enable in production.
    debug_errors: bool = False
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    # Any SQLAlchemy URL: sqlite:///path.db or postgresql+psycopg://user:pw@host/db
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    # Server-side lifetime of a browser-session cookie (no "remember me").
    session_ttl_seconds: int = 12 * 3600
    # "Remember me" lifetime: 30 days.
    remember_me_seconds: int = 30 * 24 * 3600

    # ------------------------------------------------------------------
    # Login rate limiting
    # ------------------------------------------------------------------

    login_rate_limit_attempts: int = 100
    login_rate_limit_window_seconds: int = 15 * 60
    # limits storage URI: memory:// (per process) or redis://host:6379/0 (shared)
    rate_limit_storage_uri: str = "memory://"
    # Key clients by the first X-Forwarded-For hop. That header is client
    # controlled, so only enable this behind a reverse proxy that overwrites it;
    # when false the socket peer address is used.
    trust_proxy_headers: bool = True

    # ------------------------------------------------------------------
    # WebAuthn relying party
    # ------------------------------------------------------------------

    rp_id: str = "localhost"
    rp_origin: str = "http://localhost:3000"
    rp_name: str = "Enisi"
    allow_dynamic_rp: bool = False

    # ------------------------------------------------------------------
    # Google OAuth (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""

    # Where the browser lands after the Google callback.
    frontend_url: str = "http://localhost:3000"
    # Comma-separated list of browser origins allowed by CORS.
    cors_origins: str = ""

    # ------------------------------------------------------------------
    # Bootstrap administrator
    # ------------------------------------------------------------------

    bootstrap_admin_username: str = "admin"
    bootstrap_admin_password: str = "admin"

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    audit_max_rows: int = 1000

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def google_enabled(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if SECRET_KEY is missing.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
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
    def validate_dynamic_rp(self) -> "Settings":
        """Refuse header-derived relying party outside development [RP1]."""
        if self.allow_dynamic_rp and not self.debug:
            raise ValueError("ALLOW_DYNAMIC_RP is a development-only option and requires DEBUG=true.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
