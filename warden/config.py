from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from warden.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core and its collaborators."""

    database_url: str = env_field(
        "postgresql://localhost:5432/warden", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    shared_fs_root: str = env_field("/srv/warden", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and the sync Redis client used by tests",
    )
    default_tenant_id: str = env_field("public", "DEFAULT_TENANT_ID")

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    jwt_audience: str = env_field("warden-clients", "JWT_AUDIENCE")

    # Session lifetimes
    session_ttl_hours: int = env_field(
        24, "SESSION_TTL_HOURS", description="Lifetime of a session without remember-me"
    )
    remembered_session_ttl_days: int = env_field(
        30, "REMEMBERED_SESSION_TTL_DAYS", description="Lifetime of a remember-me session"
    )
    max_concurrent_sessions: int = env_field(
        5,
        "MAX_CONCURRENT_SESSIONS",
        description="Active sessions kept per user; oldest are closed beyond this (0 disables)",
    )
    session_cleanup_enabled: bool = env_field(True, "SESSION_CLEANUP_ENABLED")
    session_cleanup_interval_seconds: int = env_field(
        3600,
        "SESSION_CLEANUP_INTERVAL_SECONDS",
        description="Interval between expired-session sweeps",
    )

    # One-time tokens
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")

    # Password policy and hashing
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", description="argon2 memory cost in KiB"
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    # Two-factor
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest (defaults to JWT secret)",
    )
    totp_issuer: str = env_field("Warden", "TOTP_ISSUER")
    totp_window: int = env_field(1, "TOTP_WINDOW")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")

    # HTTP surface
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(False, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")

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

    @field_validator(
        "session_ttl_hours",
        "remembered_session_ttl_days",
        "session_cleanup_interval_seconds",
        "password_reset_ttl_minutes",
        "email_verification_ttl_hours",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TTL values must be positive")
        return value

    @field_validator("max_concurrent_sessions", "totp_window")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must not be negative")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _check_password_bounds(self) -> "Settings":
        if self.password_min_length < 1 or self.password_min_length > self.password_max_length:
            raise ValueError("password_min_length must be between 1 and password_max_length")
        return self

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/warden"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except Exception as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except Exception as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except Exception as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
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
