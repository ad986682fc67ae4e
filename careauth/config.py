from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from careauth.logging import get_logger

logger = get_logger(__name__)


class PasswordHashAlgorithm(str, Enum):
    """Password hashing schemes accepted by the credential store."""

    PBKDF2 = "PBKDF2"
    ARGON2ID = "argon2id"


class RefreshReusePolicy(str, Enum):
    """Response to a refresh token presented after it was rotated away."""

    REJECT = "reject"
    REVOKE_SESSION = "revoke_session"
    REVOKE_ALL = "revoke_all"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and session core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/careauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Shared cache for the access-token revocation set; unset keeps it in-process",
    )
    shared_fs_root: str = env_field("/srv/careauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets.",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Signed access tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("HealthCareAI", "JWT_ISSUER")
    jwt_audience: str = env_field("HealthCareAI-Users", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    clock_skew_seconds: int = env_field(
        0,
        "CLOCK_SKEW_SECONDS",
        description="Allowance applied to every expiry comparison",
    )

    # Sessions
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS")
    session_refresh_ttl_days: int = env_field(30, "SESSION_REFRESH_TTL_DAYS")
    refresh_reuse_policy: RefreshReusePolicy = env_field(
        RefreshReusePolicy.REVOKE_SESSION,
        "REFRESH_REUSE_POLICY",
        description="What a replayed refresh token revokes: nothing, its session family, or every session of the user",
    )

    # Lockout and credentials
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES")
    password_hash_algorithm: PasswordHashAlgorithm = env_field(
        PasswordHashAlgorithm.PBKDF2, "PASSWORD_HASH_ALGORITHM"
    )
    pbkdf2_iterations: int = env_field(100_000, "PBKDF2_ITERATIONS")
    password_history_depth: int = env_field(
        5,
        "PASSWORD_HISTORY_DEPTH",
        description="Number of recent passwords (current included) a new password may not repeat",
    )
    password_history_retention_days: int = env_field(
        0,
        "PASSWORD_HISTORY_RETENTION_DAYS",
        description="Delete history rows older than this many days; 0 keeps them forever",
    )
    optimistic_retry_limit: int = env_field(5, "OPTIMISTIC_RETRY_LIMIT")

    # Verification tokens
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    two_factor_token_ttl_minutes: int = env_field(15, "TWO_FACTOR_TOKEN_TTL_MINUTES")
    trusted_device_ttl_days: int = env_field(30, "TRUSTED_DEVICE_TTL_DAYS")
    verification_token_retention_days: int = env_field(
        7, "VERIFICATION_TOKEN_RETENTION_DAYS"
    )
    maintenance_interval_minutes: int = env_field(60, "MAINTENANCE_INTERVAL_MINUTES")

    # Two-factor
    totp_issuer: str = env_field("HealthCareAI", "TOTP_ISSUER")
    totp_window: int = env_field(
        2, "TOTP_WINDOW", description="Accepted drift in 30 second steps either side"
    )
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("HealthCare AI", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # HTTP
    cors_allow_origins: str | None = env_field(
        None, "CORS_ALLOW_ORIGINS", description="Comma separated list of allowed origins"
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("refresh_reuse_policy")
    @classmethod
    def _validate_reuse_policy(cls, value: RefreshReusePolicy) -> RefreshReusePolicy:
        return RefreshReusePolicy(value)

    @field_validator("password_hash_algorithm")
    @classmethod
    def _validate_hash_algorithm(
        cls, value: PasswordHashAlgorithm
    ) -> PasswordHashAlgorithm:
        return PasswordHashAlgorithm(value)

    @field_validator(
        "lockout_threshold",
        "pbkdf2_iterations",
        "password_history_depth",
        "access_token_ttl_minutes",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/careauth"))
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
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
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
        except OSError as exc:
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
