from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinauth.logging import get_logger

logger = get_logger(__name__)

OTP_PURPOSES = frozenset({"login", "password_reset", "email_change", "security"})


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service.

    Every value is read once from the environment (or ``.env``). Durations that
    differ across call sites in older deployments are pinned here so every
    endpoint sees the same policy.
    """

    database_url: str = env_field(
        "postgresql://localhost:5432/clinauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/clinauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (sync Redis client, relaxed fallbacks).",
    )
    secret_key: str = env_field(None, "SECRET_KEY", validate_default=True)
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    build_sha: str | None = env_field(None, "BUILD_SHA")

    # Second factor
    enable_mfa: bool = env_field(
        True,
        "ENABLE_MFA",
        description="Require an emailed one-time code for accounts with two-factor enabled",
    )
    otp_expiry_seconds: int = env_field(600, "OTP_EXPIRY_SECONDS", ge=60, le=3600)
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS", ge=1, le=20)
    otp_code_retention_seconds: int = env_field(
        86400,
        "OTP_CODE_RETENTION_SECONDS",
        description="How long spent or expired code rows are kept before cleanup",
    )

    # Sessions
    session_idle_timeout_seconds: int = env_field(1800, "SESSION_IDLE_TIMEOUT_SECONDS")
    session_idle_timeout_min_seconds: int = env_field(300, "SESSION_IDLE_TIMEOUT_MIN_SECONDS")
    session_idle_timeout_max_seconds: int = env_field(3600, "SESSION_IDLE_TIMEOUT_MAX_SECONDS")
    session_max_lifetime_seconds: int = env_field(3600, "SESSION_MAX_LIFETIME_SECONDS")
    session_expiring_threshold_seconds: int = env_field(
        300,
        "SESSION_EXPIRING_THRESHOLD_SECONDS",
        description="Remaining time below which session-status reports is_expiring",
    )
    session_retention_days: int = env_field(7, "SESSION_RETENTION_DAYS")
    session_cleanup_interval_seconds: int = env_field(900, "SESSION_CLEANUP_INTERVAL_SECONDS")
    session_cookie_name: str = env_field("session_id", "SESSION_COOKIE_NAME")
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")

    # Rate limit budgets, one per transition
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(300, "LOGIN_RATE_WINDOW_SECONDS")
    verify_rate_limit: int = env_field(10, "VERIFY_RATE_LIMIT")
    verify_rate_window_seconds: int = env_field(600, "VERIFY_RATE_WINDOW_SECONDS")
    resend_rate_limit: int = env_field(3, "RESEND_RATE_LIMIT")
    resend_rate_window_seconds: int = env_field(300, "RESEND_RATE_WINDOW_SECONDS")

    # HTTP surface
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000"],
        "CORS_ALLOW_ORIGINS",
    )
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    dashboard_url: str = env_field("/dashboard", "DASHBOARD_URL")

    # Email delivery of one-time codes
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Clinical Records", "EMAIL_FROM_NAME")

    # Audit forwarding
    audit_sink_url: str | None = env_field(
        None,
        "AUDIT_SINK_URL",
        description="When set, session and challenge events are POSTed here as JSON",
    )
    audit_sink_timeout_seconds: float = env_field(2.0, "AUDIT_SINK_TIMEOUT_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("secret_key", mode="before")
    @classmethod
    def _ensure_secret_key(cls, value: Any) -> str:
        if value:
            return value
        # Signed cookies must survive restarts, so a generated key is kept on disk
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/clinauth"))
        secret_path = fs_root / ".secret_key"
        fs_root.mkdir(parents=True, exist_ok=True)

        if secret_path.is_file() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
            except OSError as exc:
                logger.error("secret_key_read_failed", error=str(exc), path=str(secret_path))
            else:
                if len(persisted) >= 32:
                    return persisted

        generated = secrets.token_urlsafe(64)
        fd, tmp_name = tempfile.mkstemp(dir=str(fs_root), prefix=".secret_key_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(generated)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, secret_path)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            logger.error("secret_key_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist secret key; set SECRET_KEY or make SHARED_FS_ROOT writable"
            ) from exc
        logger.info("secret_key_generated", path=str(secret_path))
        return generated


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
