"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Gatehouse happen here. No module should
call os.getenv() or os.environ.get() directly.

Design patterns used:
  Explicit injection: the api/ layer calls get_settings() once at startup and
      hands the resulting Settings instance to every auth component's
      constructor. Business logic never looks configuration up on its own,
      which is what lets tests build components with tiny windows and TTLs.

  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI pattern for config.

  Frozen model: Settings is immutable after validation. A component holding
      a reference can never observe a TTL changing underneath it.

  @model_validator(mode="after"): cross-field checks that run once all fields
      are resolved from the environment.

Security notes:
  [M6] Token secrets shorter than 32 chars are rejected outright. HMAC-SHA256
       signing relies on key entropy -- a short key weakens every token.

  [M7] There is no default for either token secret, in any mode. A random
       per-process key would silently invalidate every session on restart.

  [M8] Access and refresh secrets must differ, so a leaked access token key
       cannot be used to forge long-lived refresh tokens.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatehouse.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'gatehouse.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `access_token_secret` reads from ACCESS_TOKEN_SECRET.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_secret: str
    refresh_token_secret: str
    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 30 * 24 * 60 * 60
    # A refresh inside this window before session expiry slides the session
    # forward and mints a new refresh token.
    rotation_threshold_seconds: int = 24 * 60 * 60
    # Time allowed between the password step and the TOTP step of an MFA login.
    mfa_challenge_expire_seconds: int = 5 * 60

    # ------------------------------------------------------------------
    # Verification codes
    # ------------------------------------------------------------------

    email_verification_expire_seconds: int = 45 * 60
    password_reset_expire_seconds: int = 60 * 60
    reset_window_seconds: int = 3 * 60
    reset_max_attempts: int = 2

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    app_origin: str = "http://localhost:3000"
    # JSON list in the environment, e.g. ALLOWED_HOSTS='["auth.example.com"]'
    allowed_hosts: list[str] = ["*"]
    database_url: str = _DEFAULT_DB_URL
    secure_cookies: bool = False
    mfa_issuer: str = "Gatehouse"
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Mail (empty API key = log-only notifier)
    # ------------------------------------------------------------------

    mailer_sender: str = "Gatehouse <no-reply@localhost>"
    resend_api_key: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets_and_windows(self) -> "Settings":
        """Refuse to start with weak secrets or inconsistent lifetimes [M6][M7][M8]."""
        for name in ("access_token_secret", "refresh_token_secret"):
            if len(getattr(self, name)) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ.")

        lifetimes = (
            "access_token_expire_seconds",
            "refresh_token_expire_seconds",
            "rotation_threshold_seconds",
            "mfa_challenge_expire_seconds",
            "email_verification_expire_seconds",
            "password_reset_expire_seconds",
            "reset_window_seconds",
            "reset_max_attempts",
        )
        for name in lifetimes:
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be positive.")
        if self.rotation_threshold_seconds >= self.refresh_token_expire_seconds:
            raise ValueError("ROTATION_THRESHOLD_SECONDS must be smaller than REFRESH_TOKEN_EXPIRE_SECONDS.")
        return self

    @property
    def app_origin_stripped(self) -> str:
        """app_origin without a trailing slash, for building e-mail links."""
        return self.app_origin.rstrip("/")


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Only the api/ layer calls this. Everything under auth/ receives the
    instance through its constructor.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    settings = Settings()
    logger.info(
        "Settings loaded (access_ttl=%ds, refresh_ttl=%ds, rotation_threshold=%ds)",
        settings.access_token_expire_seconds,
        settings.refresh_token_expire_seconds,
        settings.rotation_threshold_seconds,
    )
    return settings
