"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for idgate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. bcrypt_rounds -> BCRYPT_ROUNDS). Type coercion and validation are
      built in.

  @model_validator(mode="after"): cross-field validation once every field is
      resolved. Used for the DEBUG-conditional SMTP policy below.

Security notes:
  The RSA key pair is referenced by path only. Key bytes never pass through
  Settings, so a settings dump (e.g. in a debugger) does not leak the private
  key.

  In production mode (DEBUG not set or false) with mail delivery enabled,
  missing SMTP credentials are a hard startup failure. Otherwise every
  verification code request would silently fail to reach the user.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
cache/, or mail/.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("idgate.config")

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


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
    database_url: str = f"sqlite:///{_PROJECT_ROOT / 'idgate.db'}"
    # Primary verification-code store. Kept separate from database_url so the
    # code cache can live on its own (remote) database server.
    code_cache_url: str = f"sqlite:///{_PROJECT_ROOT / 'idgate_codes.db'}"

    # ------------------------------------------------------------------
    # Transport cipher
    # ------------------------------------------------------------------

    rsa_public_key_path: Path = _PROJECT_ROOT / "keys" / "rsa-public.pem"
    rsa_private_key_path: Path = _PROJECT_ROOT / "keys" / "rsa-private.pem"

    # ------------------------------------------------------------------
    # Sessions and passwords
    # ------------------------------------------------------------------

    token_expire_seconds: int = 86400  # 24 hours
    session_expire_days: int = 7
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Verification codes
    # ------------------------------------------------------------------

    verification_code_ttl_seconds: int = 300
    code_sweep_interval_seconds: int = 300

    # ------------------------------------------------------------------
    # Mail (SMTP over SSL)
    # ------------------------------------------------------------------

    # False = development mode: codes are written to the log instead of mailed.
    mail_delivery_enabled: bool = False
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 465
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = ""
    smtp_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    allowed_hosts: list[str] = ["*"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("bcrypt_rounds")
    @classmethod
    def validate_bcrypt_rounds(cls, value: int) -> int:
        """bcrypt accepts log2 cost factors 4..31 only."""
        if not 4 <= value <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return value

    @model_validator(mode="after")
    def validate_mail(self) -> "Settings":
        """Enforce the SMTP credential policy.

        Dev mode (DEBUG=true): missing credentials only produce a warning;
            codes are still logged so local testing works.

        Production mode: refuse to start with delivery enabled and no
            credentials.
        """
        if self.mail_delivery_enabled and not (self.smtp_user and self.smtp_password):
            if self.debug:
                logger.warning("MAIL_DELIVERY_ENABLED is set but SMTP credentials are missing.")
            else:
                raise ValueError(
                    "SMTP_USER and SMTP_PASSWORD are required when MAIL_DELIVERY_ENABLED=true. "
                    "To run without mail delivery, set MAIL_DELIVERY_ENABLED=false."
                )
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
