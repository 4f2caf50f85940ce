from __future__ import annotations

import os
import secrets
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tablecode.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environment; production tightens cookies and secrets."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the tenant credential and lifecycle core."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/tablecode", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/tablecode", "SHARED_FS_ROOT")
    app_base_url: str = env_field("http://localhost:3000", "APP_URL")
    asset_public_url: str = env_field(
        "http://localhost:3000/assets",
        "ASSET_PUBLIC_URL",
        description="Public URL prefix of uploaded item images",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; permits runtime resets",
    )
    debug_errors: bool = env_field(
        False,
        "DEBUG_ERRORS",
        description="Expose sanitized internal error messages in API responses",
    )

    # Credentials
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("tablecode", "JWT_ISSUER")
    owner_token_ttl_hours: int = env_field(24, "OWNER_TOKEN_TTL_HOURS")
    admin_key: str | None = env_field(None, "ADMIN_KEY")
    cookie_secret: str | None = env_field(None, "COOKIE_SECRET")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    pin_hash_time_cost: int = env_field(
        3,
        "PIN_HASH_TIME_COST",
        description="argon2 iterations; fixed for interactive login latency",
    )
    pin_hash_memory_cost: int = env_field(65536, "PIN_HASH_MEMORY_COST")

    # Slugs / forgot-PIN
    slug_max_attempts: int = env_field(10, "SLUG_MAX_ATTEMPTS")
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS")
    reset_token_ttl_minutes: int = env_field(10, "RESET_TOKEN_TTL_MINUTES")
    collaborator_timeout_seconds: float = env_field(
        10.0,
        "COLLABORATOR_TIMEOUT_SECONDS",
        description="Upper bound for notification and object storage calls",
    )

    # Rate limits (max requests per window, window in milliseconds)
    rate_limit_max: int = env_field(1000, "RATE_LIMIT_MAX")
    rate_limit_window_ms: int = env_field(60_000, "RATE_LIMIT_WINDOW")
    admin_rate_limit_max: int = env_field(5, "ADMIN_RATE_LIMIT_MAX")
    admin_rate_limit_window_ms: int = env_field(900_000, "ADMIN_RATE_LIMIT_WINDOW")
    pin_reset_rate_limit_max: int = env_field(3, "PIN_RESET_RATE_LIMIT_MAX")
    pin_reset_rate_limit_window_ms: int = env_field(
        900_000, "PIN_RESET_RATE_LIMIT_WINDOW"
    )
    login_rate_limit_max: int = env_field(20, "LOGIN_RATE_LIMIT_MAX")
    login_rate_limit_window_ms: int = env_field(3_600_000, "LOGIN_RATE_LIMIT_WINDOW")
    forgot_pin_rate_limit_max: int = env_field(3, "FORGOT_PIN_RATE_LIMIT_MAX")
    forgot_pin_rate_limit_window_ms: int = env_field(
        900_000, "FORGOT_PIN_RATE_LIMIT_WINDOW"
    )
    forgot_pin_verify_rate_limit_max: int = env_field(
        10, "FORGOT_PIN_VERIFY_RATE_LIMIT_MAX"
    )
    forgot_pin_verify_rate_limit_window_ms: int = env_field(
        900_000, "FORGOT_PIN_VERIFY_RATE_LIMIT_WINDOW"
    )

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("TableCode", "EMAIL_FROM_NAME")

    cors_allow_origins: list[str] = env_field([], "CORS_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

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
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator("pin_hash_time_cost")
    @classmethod
    def _validate_time_cost(cls, value: int) -> int:
        if value < 1:
            raise ValueError("PIN_HASH_TIME_COST must be at least 1")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: Any) -> str:
        if value:
            return value
        # Persist a generated secret so owner tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/tablecode"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        try:
            secret_path.write_text(generated)
            os.chmod(secret_path, 0o600)
        except OSError as exc:
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    def missing_production_secrets(self) -> list[str]:
        """Names of secrets that must be set explicitly in production."""
        missing = []
        if "jwt_secret" not in self.model_fields_set:
            missing.append("JWT_SECRET")
        if not self.admin_key:
            missing.append("ADMIN_KEY")
        if not self.cookie_secret:
            missing.append("COOKIE_SECRET")
        return missing


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
