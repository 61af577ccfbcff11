from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from portal_access.logging import get_logger

logger = get_logger(__name__)

# Upper bound accepted for any per-tenant link lifetime setting
MAX_CONFIGURABLE_EXPIRY_DAYS = 365


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the portal access service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/portal_access", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/portal_access", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    persist_memory_state: bool = env_field(
        False,
        "PERSIST_MEMORY_STATE",
        description="Write the in-memory store to SHARED_FS_ROOT/state on every mutation",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )

    # Customer-facing URLs and credentials
    portal_base_url: str = env_field("http://localhost:3000", "CUSTOMER_PORTAL_URL")
    session_token_secret: str | None = env_field(None, "SESSION_TOKEN_SECRET")
    session_token_issuer: str = env_field("portal-access", "SESSION_TOKEN_ISSUER")
    session_token_ttl_days: int = env_field(
        90,
        "SESSION_TOKEN_TTL_DAYS",
        description="Advisory lifetime of signed session tokens; the session row is authoritative",
    )

    # Link lifetime defaults, overridden per tenant
    default_link_expiry_days: int = env_field(7, "DEFAULT_LINK_EXPIRY_DAYS", ge=1)
    max_link_expiry_days: int = env_field(90, "MAX_LINK_EXPIRY_DAYS", ge=1)
    default_cleanup_days: int = env_field(30, "DEFAULT_CLEANUP_DAYS", ge=1)
    expiring_soon_days: int = env_field(3, "EXPIRING_SOON_DAYS", ge=1)
    link_issue_max_retries: int = env_field(3, "LINK_ISSUE_MAX_RETRIES", ge=1)
    access_rate_limit_per_minute: int = env_field(
        30,
        "ACCESS_RATE_LIMIT_PER_MINUTE",
        description="Per-IP budget for token and code submissions on the public portal routes",
    )

    # One-time codes
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES", ge=1)
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS", ge=1)
    otp_rate_limit_count: int = env_field(3, "OTP_RATE_LIMIT_COUNT", ge=1)
    otp_rate_limit_window_seconds: int = env_field(
        300, "OTP_RATE_LIMIT_WINDOW_SECONDS", ge=1
    )
    otp_retention_hours: int = env_field(24, "OTP_RETENTION_HOURS", ge=1)

    # Retention sweep
    cleanup_enabled: bool = env_field(True, "CLEANUP_ENABLED")
    cleanup_interval_seconds: int = env_field(24 * 60 * 60, "CLEANUP_INTERVAL_SECONDS", ge=1)

    # Notification delivery (unset values fall back to logging the message)
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Customer Portal", "EMAIL_FROM_NAME")
    sms_gateway_url: str | None = env_field(None, "SMS_GATEWAY_URL")
    sms_gateway_token: str | None = env_field(None, "SMS_GATEWAY_TOKEN")
    sms_timeout_seconds: float = env_field(10.0, "SMS_TIMEOUT_SECONDS")

    # Contractor control surface
    admin_api_key: str | None = env_field(None, "ADMIN_API_KEY")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("portal_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _check_expiry_bounds(self) -> "Settings":
        if self.max_link_expiry_days < self.default_link_expiry_days:
            raise ValueError(
                "MAX_LINK_EXPIRY_DAYS must be greater than or equal to DEFAULT_LINK_EXPIRY_DAYS"
            )
        if self.max_link_expiry_days > MAX_CONFIGURABLE_EXPIRY_DAYS:
            raise ValueError(
                f"MAX_LINK_EXPIRY_DAYS cannot exceed {MAX_CONFIGURABLE_EXPIRY_DAYS}"
            )
        return self

    @model_validator(mode="after")
    def _ensure_session_token_secret(self) -> "Settings":
        if self.session_token_secret:
            return self
        if self.test_mode:
            self.session_token_secret = secrets.token_urlsafe(48)
            return self
        # Persist a generated secret so issued session tokens survive restarts
        fs_root = Path(self.shared_fs_root)
        secret_path = fs_root / ".session_token_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "session_secret_dir_setup_failed", error=str(exc), path=str(fs_root)
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
            except OSError as exc:
                logger.error(
                    "session_secret_read_failed", error=str(exc), path=str(secret_path)
                )
            else:
                if len(persisted) >= 32:
                    self.session_token_secret = persisted
                    return self

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".session_token_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "session_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist session token secret; set SESSION_TOKEN_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        self.session_token_secret = generated
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
