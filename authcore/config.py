from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Redis for distributed rate limiting; in-process buckets when unset",
    )
    shared_fs_root: str = env_field("/srv/authcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors; enables runtime resets.",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    token_validity_seconds: int = env_field(
        3600,
        "TOKEN_VALIDITY_SECONDS",
        description="Lifetime of issued bearer tokens",
    )
    two_factor_token_ttl_seconds: int = env_field(
        300,
        "TWO_FACTOR_TOKEN_TTL_SECONDS",
        description="Lifetime of the temporary token handed out between password and second factor",
    )
    token_cache_max_per_subject: int = env_field(5, "TOKEN_CACHE_MAX_PER_SUBJECT")
    token_cache_sweep_interval_seconds: int = env_field(
        3600, "TOKEN_CACHE_SWEEP_INTERVAL_SECONDS"
    )

    # Sessions
    session_ttl_hours: int = env_field(24, "SESSION_TTL_HOURS")
    session_sweep_interval_seconds: int = env_field(
        3600, "SESSION_SWEEP_INTERVAL_SECONDS"
    )

    # Lockout
    lockout_threshold: int = env_field(
        5, "LOCKOUT_THRESHOLD", description="Failed logins before the account locks"
    )
    lockout_cooldown_minutes: int = env_field(30, "LOCKOUT_COOLDOWN_MINUTES")

    # Two-factor
    two_factor_issuer: str = env_field("AuthCore", "TWO_FACTOR_ISSUER")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    two_factor_encryption_key: str | None = env_field(
        None,
        "TWO_FACTOR_ENCRYPTION_KEY",
        description="Key material for encrypting stored TOTP secrets; defaults to JWT_SECRET",
    )

    # Rate limiting
    rate_limit_reset_interval_seconds: int = env_field(
        3600, "RATE_LIMIT_RESET_INTERVAL_SECONDS"
    )

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
        "token_validity_seconds",
        "two_factor_token_ttl_seconds",
        "token_cache_max_per_subject",
        "token_cache_sweep_interval_seconds",
        "session_ttl_hours",
        "session_sweep_interval_seconds",
        "lockout_threshold",
        "lockout_cooldown_minutes",
        "backup_code_count",
        "rate_limit_reset_interval_seconds",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authcore"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
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
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            # Write to a temp file then rename so readers never see a partial secret
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
