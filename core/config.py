"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for tvcore happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode generates a signing key with a warning, production
      mode refuses to start without one.

Two deployment modes:
  storage_type="database"      multi-tenant. Users live in the credential
                               store; sessions are HMAC-signed per user.
  storage_type="localstorage"  single-tenant. One shared PASSWORD guards the
                               site; no per-user identity exists.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Session
       signatures are HMAC-SHA256 and rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key would invalidate every session on
       restart.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or cache/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tvcore.config")

DEFAULT_ANNOUNCEMENT = (
    "This site only provides video search. All content comes from third-party sites; "
    "nothing is stored here and no responsibility is taken for its accuracy or legality."
)


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

    storage_type: Literal["localstorage", "database"] = "database"
    database_url: str = "sqlite:///tvcore.db"

    # Path of the file-declared configuration document used on first run.
    config_file: str = ""

    allowed_hosts: list[str] = ["*"]

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    # Single-tenant deployment secret. Empty means the site is open.
    password: str = ""

    # Seeded owner account. Seeding is skipped while owner_password is empty.
    owner_username: str = "admin"
    owner_password: str = ""

    self_registration_enabled: bool = True
    secure_cookies: bool = False
    session_max_age_days: int = 7
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Site defaults (copied into SiteConfig on first-run initialization)
    # ------------------------------------------------------------------

    site_name: str = "TvCore"
    announcement: str = DEFAULT_ANNOUNCEMENT
    search_max_page: int = 5
    douban_proxy_type: str = "cmliussss-cdn-tencent"
    douban_proxy: str = ""
    douban_image_proxy_type: str = "cmliussss-cdn-tencent"
    douban_image_proxy: str = ""
    disable_yellow_filter: bool = False
    fluid_search: bool = True

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
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

    @property
    def session_max_age_seconds(self) -> int:
        return self.session_max_age_days * 24 * 60 * 60


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
