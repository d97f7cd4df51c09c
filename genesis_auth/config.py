from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from genesis_auth.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Read a persisted signing secret, generating one on first use.

    Secrets live under ``SHARED_FS_ROOT`` so tokens stay valid across restarts
    when no explicit secret is configured.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/genesis-auth"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path is not None and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/genesis_auth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/genesis-auth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (sync Redis client, runtime resets).",
    )
    debug_errors: bool = env_field(
        False,
        "DEBUG_ERRORS",
        description="Include sanitized exception text in 500 responses",
    )
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound for acquiring a database connection and running a statement",
    )

    # Signing
    jwt_access_secret: str | None = env_field(
        None, "JWT_ACCESS_SECRET", validate_default=True
    )
    jwt_refresh_secret: str | None = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("genesis-auth-api", "JWT_ISSUER")
    jwt_audience: str = env_field("genesis-users", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")

    # Password hashing (argon2id)
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    # Lockout
    lockout_max_attempts: int = env_field(5, "LOCKOUT_MAX_ATTEMPTS")
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES")

    # Flow policy
    register_issues_tokens: bool = env_field(
        True,
        "REGISTER_ISSUES_TOKENS",
        description="Return an access/refresh pair from registration",
    )
    require_verified_email_for_login: bool = env_field(
        False,
        "REQUIRE_VERIFIED_EMAIL_FOR_LOGIN",
        description="Refuse token issuance at login until the email is verified",
    )
    refresh_rotation: bool = env_field(
        True,
        "REFRESH_ROTATION",
        description="Revoke and replace the refresh token on every refresh",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Genesis Auth", "EMAIL_FROM_NAME")
    email_retry_attempts: int = env_field(
        2, "EMAIL_RETRY_ATTEMPTS", description="SMTP delivery attempts per message"
    )
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    # HTTP
    cors_allow_origins: str = env_field(
        "http://localhost:3000,http://127.0.0.1:3000",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed CORS origins",
    )

    # Rate limits (requests per window, per client key)
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    register_rate_limit: int = env_field(5, "REGISTER_RATE_LIMIT")
    auth_rate_window_seconds: int = env_field(15 * 60, "AUTH_RATE_WINDOW_SECONDS")
    refresh_rate_limit: int = env_field(10, "REFRESH_RATE_LIMIT")
    token_action_rate_limit: int = env_field(5, "TOKEN_ACTION_RATE_LIMIT")
    email_rate_limit: int = env_field(3, "EMAIL_RATE_LIMIT")
    email_rate_window_seconds: int = env_field(60 * 60, "EMAIL_RATE_WINDOW_SECONDS")

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

    @field_validator("jwt_access_secret")
    @classmethod
    def _ensure_access_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_access_secret")

    @field_validator("jwt_refresh_secret")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_refresh_secret")

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "email_verification_ttl_hours",
        "password_reset_ttl_minutes",
        "lockout_max_attempts",
        "lockout_duration_minutes",
        "password_min_length",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @model_validator(mode="after")
    def _check_secrets(self) -> "Settings":
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")
        if len(self.jwt_access_secret) < _MIN_SECRET_LENGTH or len(
            self.jwt_refresh_secret
        ) < _MIN_SECRET_LENGTH:
            raise ValueError(
                f"JWT secrets must be at least {_MIN_SECRET_LENGTH} characters"
            )
        if self.password_max_length < self.password_min_length:
            raise ValueError("PASSWORD_MAX_LENGTH must be >= PASSWORD_MIN_LENGTH")
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
