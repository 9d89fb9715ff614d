"""
core/config.py -- SchoolGate settings, read once from the environment.

Every tunable lives on Settings. Other modules call get_settings() and never
touch os.environ themselves.

  - Field names double as environment variable names, case-insensitive
    (cascade_batch_limit <- CASCADE_BATCH_LIMIT). A .env file in the working
    directory is read as well. List fields take JSON, e.g.
    ALLOWED_HOSTS='["school.example"]'.
  - get_settings() is wrapped in lru_cache, so the environment is parsed on
    the first call only. Tests that change the environment must call
    get_settings.cache_clear().

SECRET_KEY signs session tokens and provider claims tokens:
  [M6] anything under 32 characters is refused.
  [M7] with DEBUG off a missing key stops startup; with DEBUG on a throwaway
       key is generated and every session dies with the process.

Layer rule: core/ imports nothing from the other SchoolGate packages.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("schoolgate.config")

_ROOT = Path(__file__).resolve().parent.parent

_MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Runtime configuration. Every field has a usable default except secret_key in production."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # --- runtime mode -------------------------------------------------

    debug: bool = False
    secret_key: str = ""  # "" means unset; resolved by _resolve_secret_key

    # --- storage ------------------------------------------------------

    docstore_url: str = f"sqlite:///{_ROOT / 'docstore' / 'schoolgate_docs.db'}"
    accounts_db_url: str = f"sqlite:///{_ROOT / 'auth' / 'schoolgate_accounts.db'}"
    session_cache_path: Path = _ROOT / "cache" / "session_cache.db"

    # --- sign-in and sessions -----------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = 8 * 3600
    claims_token_ttl_seconds: int = 3600
    login_rate_limit: str = "10/minute"

    # --- role resolution ----------------------------------------------

    managed_collection: str = "appUsers"
    legacy_collection: str = "users"

    # --- web ----------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    login_path: str = "/login"
    unauthorized_path: str = "/unauthorized"

    # --- cascade deletion ---------------------------------------------

    # The backing store rejects batches above 500 writes.
    cascade_batch_limit: int = Field(default=400, ge=1, le=500)

    @model_validator(mode="after")
    def _resolve_secret_key(self) -> "Settings":
        """Fill in or reject SECRET_KEY [M6] [M7]."""
        if not self.secret_key:
            if not self.debug:
                raise ValueError("SECRET_KEY is not set. Provide it via the environment or .env, or set DEBUG=true.")
            self.secret_key = secrets.token_hex(_MIN_SECRET_LENGTH)
            logger.warning("DEBUG: generated a temporary SECRET_KEY; sessions end when the process exits.")
        if len(self.secret_key) < _MIN_SECRET_LENGTH:
            raise ValueError(f"SECRET_KEY must be at least {_MIN_SECRET_LENGTH} characters long.")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
