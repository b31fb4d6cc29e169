"""
core/config.py -- Settings for the SSO service, read once from the environment.

get_settings() is the only way in. It is wrapped in lru_cache, so the first
call parses environment variables (and .env, if present) and every later call
gets the same Settings object. Field names map to upper-case variables:
token_ttl_seconds <- TOKEN_TTL_SECONDS, orcid_client_id <- ORCID_CLIENT_ID.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. The session
       token HMAC relies on key entropy.

  [M7] Outside debug mode a missing SECRET_KEY is a hard startup failure.
       Every restart with a random key would silently log everybody out.

  ENVIRONMENT decides the Secure flag. Only `local` serves cookies over
       plain HTTP; review, staging, and production always set Secure.

  Cookie domain: the CORS-allowed origin must end with COOKIE_DOMAIN or the
       browser will never send the session cookie on cross-origin calls. This
       is a deployment concern; nothing here enforces it.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from enum import Enum
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sso.config")


class Environment(str, Enum):
    """Deployment environment. Only LOCAL may serve cookies without Secure."""

    local = "local"
    review = "review"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Every knob the service reads.

    Defaults let Settings() build with nothing but SECRET_KEY (or DEBUG=true)
    in the environment; validate_secret_key() refuses unsafe production setups.
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
    environment: Environment = Environment.production
    # "" means unset; validate_secret_key() replaces it or refuses to start.
    secret_key: str = ""
    database_url: str = "sqlite:///sso.db"

    # ------------------------------------------------------------------
    # Session cookie
    # ------------------------------------------------------------------

    cookie_domain: str = ""
    # Token and cookie share this lifetime; changing one without the other
    # leaves the browser holding a cookie the server will reject.
    token_ttl_seconds: int = 3600

    # ------------------------------------------------------------------
    # ORCID
    # ------------------------------------------------------------------

    orcid_client_id: str = ""
    orcid_client_secret: str = ""
    orcid_base_url: str = "https://orcid.org"

    # ------------------------------------------------------------------
    # Deadlines (seconds)
    # ------------------------------------------------------------------

    provider_timeout_seconds: float = 10.0
    persistence_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    guest_rate_limit: str = "10/minute"

    @property
    def secure_cookies(self) -> bool:
        return self.environment is not Environment.local

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M6][M7].

        Debug mode: auto-generate a random key with a warning. Sessions will
        not survive restart -- acceptable for local dev.

        Otherwise: refuse to start if SECRET_KEY is missing, and reject keys
        shorter than 32 characters in every mode.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required outside debug mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.token_ttl_seconds <= 0:
            raise ValueError("TOKEN_TTL_SECONDS must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
