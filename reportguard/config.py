from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from reportguard.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_FS_ROOT = "/srv/reportguard"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str, *, min_length: int) -> str:
    """Read a persisted secret from SHARED_FS_ROOT or generate and persist one.

    Generated secrets must survive restarts: a lost pepper invalidates every
    stored password hash and a lost signing key invalidates every access token.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", _DEFAULT_FS_ROOT))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= min_length:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set it via environment or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the identity and session security core.

    Read once at startup; services receive the instance explicitly.
    """

    database_url: str = env_field(
        "postgresql://localhost:5432/reportguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field(_DEFAULT_FS_ROOT, "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for CI; tolerates a missing Redis.",
    )

    # Password hashing
    password_pepper: str = env_field(None, "PASSWORD_PEPPER", validate_default=True)
    argon2_time_cost: int = env_field(4, "ARGON2_TIME_COST")
    argon2_memory_cost_kib: int = env_field(
        64 * 1024, "ARGON2_MEMORY_COST_KIB", description="Argon2 memory cost in KiB"
    )
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")
    argon2_hash_length: int = env_field(32, "ARGON2_HASH_LENGTH")
    argon2_salt_length: int = env_field(16, "ARGON2_SALT_LENGTH")
    allow_legacy_password_hashes: bool = env_field(
        False,
        "ALLOW_LEGACY_PASSWORD_HASHES",
        description="Accept unsalted SHA-256 hashes for accounts not yet migrated",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("reportguard", "JWT_ISSUER")
    jwt_audience: str = env_field("reportguard-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    refresh_token_retention_days: int = env_field(
        30,
        "REFRESH_TOKEN_RETENTION_DAYS",
        description="Days an expired refresh token row is kept for forensics before purge",
    )

    # Sessions
    session_timeout_minutes: int = env_field(480, "SESSION_TIMEOUT_MINUTES")
    remember_me_timeout_minutes: int = env_field(1440, "REMEMBER_ME_TIMEOUT_MINUTES")
    session_sliding_window_minutes: int = env_field(30, "SESSION_SLIDING_WINDOW_MINUTES")
    max_concurrent_sessions: int = env_field(3, "MAX_CONCURRENT_SESSIONS")
    mfa_reverification_hours: int = env_field(24, "MFA_REVERIFICATION_HOURS")
    cleanup_interval_seconds: int = env_field(3600, "CLEANUP_INTERVAL_SECONDS")

    # MFA
    mfa_issuer: str = env_field("MultiDeptReportingTool", "MFA_ISSUER")
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets; falls back to JWT_SECRET",
    )
    mfa_lockout_threshold: int = env_field(5, "MFA_LOCKOUT_THRESHOLD")
    mfa_lockout_minutes: int = env_field(15, "MFA_LOCKOUT_MINUTES")
    mfa_backup_code_count: int = env_field(10, "MFA_BACKUP_CODE_COUNT")
    mfa_totp_window: int = env_field(
        1, "MFA_TOTP_WINDOW", description="Accepted time steps either side of now"
    )

    # Geolocation
    geoip_url: str | None = env_field(
        None,
        "GEOIP_URL",
        description="Lookup URL template containing {ip}; unset disables lookups",
    )
    geoip_timeout_seconds: float = env_field(2.0, "GEOIP_TIMEOUT_SECONDS")

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

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_secret", min_length=32)

    @field_validator("password_pepper")
    @classmethod
    def _ensure_pepper(cls, value: str | None) -> str:
        if value is None:
            return _load_or_create_secret(".password_pepper", min_length=16)
        if len(value) < 16:
            raise ValueError("PASSWORD_PEPPER must be at least 16 characters")
        return value

    @field_validator("argon2_salt_length")
    @classmethod
    def _validate_salt_length(cls, value: int) -> int:
        if value < 16:
            raise ValueError("ARGON2_SALT_LENGTH must be at least 16 bytes")
        return value

    @field_validator(
        "max_concurrent_sessions",
        "mfa_lockout_threshold",
        "mfa_backup_code_count",
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "session_timeout_minutes",
        "remember_me_timeout_minutes",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be positive")
        return value


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
