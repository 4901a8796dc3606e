"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for TenantGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, otp_max_attempts -> OTP_MAX_ATTEMPTS).

  @model_validator(mode="after"): Cross-field validation once every field is
      resolved. Enforces the SECRET_KEY policy and sanity-checks the identity
      settings (prefix shape, state store backend).

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing
       relies on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. Tokens signed with a random per-process key would
       be invalidated on every restart.

Layer rule: core/ is the kernel. This module may not import from api/ or iam/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tenantgate.config")


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
    database_url: str = "sqlite:///tenantgate.db"

    # ------------------------------------------------------------------
    # Tokens and cookies
    # ------------------------------------------------------------------

    jwt_issuer: str = "tenantgate"
    jwt_audience: str = "tenantgate-api"
    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 3600

    access_cookie_name: str = "access_token"
    refresh_cookie_name: str = "refresh_token"
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    # Each prefix is exactly two underscore-separated words; the key format
    # check splits "{env_a}_{env_b}_{secret}" on the first two underscores.
    api_key_live_prefix: str = "tenantgate_live"
    api_key_test_prefix: str = "tenantgate_test"
    api_key_bytes: int = 32

    # ------------------------------------------------------------------
    # One-time codes
    # ------------------------------------------------------------------

    otp_code_length: int = 6
    otp_expire_seconds: int = 10 * 60
    otp_max_attempts: int = 5
    otp_rate_limit_seconds: int = 60
    # bcrypt cost for codes at rest. Tests lower this to keep the suite fast.
    otp_hash_rounds: int = 10

    # ------------------------------------------------------------------
    # Tenants and invitations
    # ------------------------------------------------------------------

    invitation_expire_days: int = 7
    invitation_token_bytes: int = 32
    tenant_trial_days: int = 30
    tenant_subscription_days: int = 365
    # Admins ("*" or "admin:*") of this tenant operate on every tenant; admins
    # of any other tenant are confined to their own. Empty: no platform tenant.
    platform_tenant_id: str = ""
    plan_max_users_trial: int = 5
    plan_max_users_basic: int = 5
    plan_max_users_professional: int = 50
    plan_max_users_enterprise: int = 500

    # ------------------------------------------------------------------
    # Background cleanup
    # ------------------------------------------------------------------

    cleanup_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # OAuth state store ("memory" or "redis")
    # ------------------------------------------------------------------

    state_store_backend: str = "memory"
    state_ttl_seconds: int = 10 * 60
    redis_url: str = "redis://localhost:6379/0"

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_url: str = "http://localhost:8000/api/v1/auth/callback/google"
    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    microsoft_redirect_url: str = "http://localhost:8000/api/v1/auth/callback/microsoft"

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    otp_rate_limit: str = "5/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

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
                    "WARNING: Using auto-generated SECRET_KEY. " "Issued tokens will not survive a restart."
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
    def validate_identity_settings(self) -> "Settings":
        """Reject API key prefixes and state backends the engine cannot honour."""
        for prefix in (self.api_key_live_prefix, self.api_key_test_prefix):
            parts = prefix.split("_")
            if len(parts) != 2 or not all(parts):
                raise ValueError(f"API key prefix {prefix!r} must look like 'word_word'.")
        if self.state_store_backend not in ("memory", "redis"):
            raise ValueError("STATE_STORE_BACKEND must be 'memory' or 'redis'.")
        return self

    @property
    def api_key_prefixes(self) -> tuple[str, str]:
        return (self.api_key_live_prefix, self.api_key_test_prefix)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
