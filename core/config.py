"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for TripAuth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. otp_ttl_seconds -> OTP_TTL_SECONDS).

  @model_validator(mode="after"): cross-field rules that depend on DEBUG:
      the SECRET_KEY policy and the OTP echo policy.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and
       the OTP code HMAC both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  [O1] OTP_ECHO_IN_RESPONSE returns the freshly issued code in the signup /
       resend response. It exists for local development against a device with
       no mailbox and is refused outright unless DEBUG=true.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tripauth.config")


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
    # Empty string means the SQLite file next to auth/store.py.
    database_url: str = ""

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    token_expire_seconds: int = 3600
    # Set true behind HTTPS so the session cookie is never sent in clear text.
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # OTP
    # ------------------------------------------------------------------

    otp_ttl_seconds: int = 600
    otp_echo_in_response: bool = False

    # ------------------------------------------------------------------
    # Passkeys (WebAuthn relying party)
    # ------------------------------------------------------------------

    webauthn_rp_id: str = "localhost"
    webauthn_rp_name: str = "TripAuth"
    webauthn_origin: str = "http://localhost:3000"
    # Enrollment / login challenges older than this are swept. Completing a
    # ceremony never depends on the sweep having run.
    challenge_sweep_seconds: int = 900

    # ------------------------------------------------------------------
    # Mail (SMTP)
    # ------------------------------------------------------------------

    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_starttls: bool = True
    mail_from: str = "no-reply@localhost"
    mail_from_name: str = "TripAuth"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions and OTPs will not survive restarts."
                )
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
    def validate_otp_echo(self) -> "Settings":
        """Refuse OTP echo outside development mode [O1]."""
        if self.otp_echo_in_response and not self.debug:
            raise ValueError("OTP_ECHO_IN_RESPONSE is only allowed when DEBUG=true.")
        if self.otp_ttl_seconds <= 0:
            raise ValueError("OTP_TTL_SECONDS must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
