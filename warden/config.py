from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from warden.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments recognised by the service."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a persisted signing secret, generating one on first use."""
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/warden"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
    try:
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        tmp_file = Path(tmp_path)
        if tmp_file.exists():
            tmp_file.unlink()
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set it via the environment or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the credential service."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    version: str = env_field("1.0.0", "SERVICE_VERSION")
    shared_fs_root: str = env_field("/srv/warden", "SHARED_FS_ROOT")

    # Storage
    database_url: str = env_field("postgresql://localhost:5432/warden", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_persist: bool = env_field(
        False,
        "MEMORY_STORE_PERSIST",
        description="Snapshot the in-memory store to SHARED_FS_ROOT/state after each write",
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(True, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables runtime resets and exposes admin temp passwords in responses.",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    jwt_audience: str = env_field("warden-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(24 * 60, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )

    # Account security policy
    activation_token_ttl_hours: int = env_field(24, "ACTIVATION_TOKEN_TTL_HOURS", ge=1)
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", ge=1)
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES", ge=1)
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS", ge=1)
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", ge=1)
    require_otp: bool = env_field(
        False, "REQUIRE_OTP", description="Require an emailed one-time code after password login"
    )

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Warden", "EMAIL_FROM_NAME")
    site_url: str = env_field("http://localhost:3000", "SITE_URL")
    company_name: str = env_field("Warden", "COMPANY_NAME")
    contact_email: str = env_field("support@example.com", "CONTACT_EMAIL")

    # Rate limits
    rate_limit_enabled: bool = env_field(True, "RATE_LIMIT_ENABLED")
    api_rate_limit: int = env_field(100, "API_RATE_LIMIT")
    api_rate_window_seconds: int = env_field(15 * 60, "API_RATE_WINDOW_SECONDS")
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(60, "LOGIN_RATE_WINDOW_SECONDS")

    # Pagination
    default_page_size: int = env_field(10, "DEFAULT_PAGE_SIZE", ge=1)
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE", ge=1)

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Logging
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_dev_mode: bool = env_field(False, "LOG_DEV_MODE")

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

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            return Environment(value.strip().lower())
        return Environment(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_secret")

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_jwt_refresh_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_refresh_secret")

    @model_validator(mode="after")
    def _distinct_signing_secrets(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        if self.max_page_size < self.default_page_size:
            raise ValueError("MAX_PAGE_SIZE must be >= DEFAULT_PAGE_SIZE")
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
