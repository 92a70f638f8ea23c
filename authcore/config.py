from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authcore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment and ``.env``."""

    database_url: str = env_field("postgresql://localhost:5432/authcore", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use the synchronous Redis client and deterministic defaults for CI.",
    )
    expose_tokens: bool = env_field(
        False,
        "EXPOSE_TOKENS",
        description="Return plaintext verify/reset tokens in API responses (dev and test only).",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    email_verify_ttl_hours: int = env_field(24, "EMAIL_VERIFY_TTL_HOURS", ge=1)
    password_reset_ttl_minutes: int = env_field(30, "PASSWORD_RESET_TTL_MINUTES", ge=1)
    opaque_token_bytes: int = env_field(48, "OPAQUE_TOKEN_BYTES", ge=32)

    # argon2id cost parameters
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST", ge=8)
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)

    # Per-endpoint rate limits (requests per window, keyed by client address)
    register_rate_limit: int = env_field(20, "REGISTER_RATE_LIMIT", ge=1)
    register_rate_window_seconds: int = env_field(600, "REGISTER_RATE_WINDOW_SECONDS", ge=1)
    login_rate_limit: int = env_field(30, "LOGIN_RATE_LIMIT", ge=1)
    login_rate_window_seconds: int = env_field(300, "LOGIN_RATE_WINDOW_SECONDS", ge=1)
    refresh_rate_limit: int = env_field(60, "REFRESH_RATE_LIMIT", ge=1)
    refresh_rate_window_seconds: int = env_field(300, "REFRESH_RATE_WINDOW_SECONDS", ge=1)
    password_rate_limit: int = env_field(20, "PASSWORD_RATE_LIMIT", ge=1)
    password_rate_window_seconds: int = env_field(600, "PASSWORD_RATE_WINDOW_SECONDS", ge=1)
    verify_rate_limit: int = env_field(10, "VERIFY_RATE_LIMIT", ge=1)
    verify_rate_window_seconds: int = env_field(300, "VERIFY_RATE_WINDOW_SECONDS", ge=1)

    # Login lockout with exponential backoff
    login_lockout_threshold: int = env_field(5, "LOGIN_LOCKOUT_THRESHOLD", ge=1)
    login_lockout_window_seconds: int = env_field(900, "LOGIN_LOCKOUT_WINDOW_SECONDS", ge=1)
    login_lockout_base_seconds: int = env_field(60, "LOGIN_LOCKOUT_BASE_SECONDS", ge=1)
    login_lockout_max_seconds: int = env_field(3600, "LOGIN_LOCKOUT_MAX_SECONDS", ge=1)

    # Cookie delivery of refresh tokens and the double-submit CSRF check
    enable_refresh_cookie: bool = env_field(True, "ENABLE_REFRESH_COOKIE")
    enable_csrf_for_refresh: bool = env_field(True, "ENABLE_CSRF_FOR_REFRESH")
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    csrf_cookie_name: str = env_field("csrf_token", "CSRF_COOKIE_NAME")
    csrf_header_name: str = env_field("X-CSRF-Token", "CSRF_HEADER_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Operator credentials for the basic-auth guarded endpoints
    ops_basic_auth_username: str | None = env_field(None, "OPS_BASIC_AUTH_USERNAME")
    ops_basic_auth_password: str | None = env_field(None, "OPS_BASIC_AUTH_PASSWORD")

    session_page_size: int = env_field(50, "SESSION_PAGE_SIZE", ge=1)
    admin_session_page_size: int = env_field(100, "ADMIN_SESSION_PAGE_SIZE", ge=1)

    token_retention_days: int = env_field(7, "TOKEN_RETENTION_DAYS", ge=0)
    token_sweep_interval_seconds: int = env_field(3600, "TOKEN_SWEEP_INTERVAL_SECONDS", ge=1)
    enable_token_sweep: bool = env_field(True, "ENABLE_TOKEN_SWEEP")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("authcore", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

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

    @field_validator("redis_url", "ops_basic_auth_username", "ops_basic_auth_password", "smtp_host")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not str(value).strip():
            return None
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so access tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authcore"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp")
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @model_validator(mode="after")
    def _validate_lockout(self) -> "Settings":
        if self.login_lockout_max_seconds < self.login_lockout_base_seconds:
            raise ValueError("LOGIN_LOCKOUT_MAX_SECONDS must be >= LOGIN_LOCKOUT_BASE_SECONDS")
        return self

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


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
