"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AccessBridge happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. refresh_revoked_retention_days -> REFRESH_REVOKED_RETENTION_DAYS).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a SECRET_KEY with a
      warning. A missing production key is reported by signing_key(), which
      the API calls at startup and token code calls before signing, so CLI
      commands that never mint a token run without one.

Retention windows are plain floats here on purpose: auth/retention.py owns
their validation (negative / NaN / infinite -> ValidationError) so a bad value
is reported by the pruning run itself, before any row is touched.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or artemis/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import ConfigurationError

logger = logging.getLogger("accessbridge.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'accessbridge.db'}"


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

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    store_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    # Access tokens are stateless, so they must stay much shorter-lived than
    # the refresh sessions that mint them.
    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 60 * 60
    max_active_refresh_sessions: int = 5
    revoke_lineage_on_reuse: bool = True

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    refresh_revoked_retention_days: float = 30
    session_audit_retention_days: float = 90
    # 0 disables the in-process prune loop (use the CLI from cron instead).
    prune_interval_minutes: float = 60

    # ------------------------------------------------------------------
    # Admin bootstrap
    # ------------------------------------------------------------------

    admin_email: str = ""
    admin_password: str = ""
    admin_name: str = "Admin"
    admin_role: str = "ADMIN"
    admin_protected: bool = False

    # ------------------------------------------------------------------
    # Access platform (Artemis gateway)
    # ------------------------------------------------------------------

    artemis_base_url: str = ""
    artemis_app_key: str = ""
    artemis_app_secret: str = ""
    artemis_timeout_seconds: float = 10.0
    artemis_verify_tls: bool = True

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Security audit and metrics
    # ------------------------------------------------------------------

    # Client IP comes from the first X-Forwarded-For entry when true; set
    # false unless a trusted proxy overwrites that header.
    trust_forwarded_for: bool = True
    session_audit_export_max_limit: int = 20000
    security_metrics_window_hours: int = 24
    security_metrics_top_n: int = 10
    security_metrics_history_default_points: int = 96
    security_metrics_snapshot_retention_days: float = 30
    # 0 disables the in-process snapshot loop.
    security_metrics_snapshot_interval_minutes: float = 15

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: leave it unset; signing_key() refuses to hand it out.
        Both modes: reject configured keys shorter than 32 characters.
        """
        if not self.secret_key and self.debug:
            self.secret_key = secrets.token_hex(32)
            logger.warning("Using auto-generated SECRET_KEY. Access tokens will not survive a restart.")
        if self.secret_key and len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.access_token_ttl_seconds <= 0 or self.refresh_token_ttl_seconds <= 0:
            raise ValueError("Token TTLs must be positive.")
        if self.access_token_ttl_seconds >= self.refresh_token_ttl_seconds:
            raise ValueError("ACCESS_TOKEN_TTL_SECONDS must be shorter than REFRESH_TOKEN_TTL_SECONDS.")
        if self.store_timeout_seconds <= 0:
            raise ValueError("STORE_TIMEOUT_SECONDS must be positive.")
        if self.session_audit_export_max_limit < 1:
            raise ValueError("SESSION_AUDIT_EXPORT_MAX_LIMIT must be at least 1.")
        return self

    def signing_key(self) -> str:
        """Return SECRET_KEY, or raise ConfigurationError if it is not configured."""
        if not self.secret_key:
            raise ConfigurationError(
                "SECRET_KEY is required in production mode. "
                "Set SECRET_KEY in your environment or .env file. "
                "To run in development mode, set DEBUG=true."
            )
        return self.secret_key


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
