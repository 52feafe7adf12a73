from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatguard.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication and abuse-prevention layer."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/chatguard", "SHARED_FS_ROOT")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )

    # Tokens: one shared secret for every principal kind
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("chatguard", "JWT_ISSUER")
    jwt_audience: str = env_field("chatguard-clients", "JWT_AUDIENCE")
    user_token_ttl_days: int = env_field(30, "USER_TOKEN_TTL_DAYS")
    customer_service_token_ttl_days: int = env_field(7, "CUSTOMER_SERVICE_TOKEN_TTL_DAYS")
    admin_token_ttl_days: int = env_field(7, "ADMIN_TOKEN_TTL_DAYS")
    token_leeway_seconds: int = env_field(
        120,
        "TOKEN_LEEWAY_SECONDS",
        description="Allowance for small clock skew when checking token expiry",
    )
    admin_record_check: bool = env_field(
        False,
        "ADMIN_RECORD_CHECK",
        description="Re-validate admin tokens against a live admin record when the store supports it",
    )
    principal_lookup_timeout_seconds: float = env_field(
        5.0, "PRINCIPAL_LOOKUP_TIMEOUT_SECONDS"
    )

    # Human challenge
    captcha_length: int = env_field(4, "CAPTCHA_LENGTH", ge=3, le=8)
    captcha_ttl_seconds: int = env_field(300, "CAPTCHA_TTL_SECONDS", gt=0)
    captcha_width: int = env_field(120, "CAPTCHA_WIDTH")
    captcha_height: int = env_field(40, "CAPTCHA_HEIGHT")
    captcha_noise_lines: int = env_field(2, "CAPTCHA_NOISE_LINES", ge=0)

    # Address lockout
    failure_window_seconds: int = env_field(3600, "FAILURE_WINDOW_SECONDS", gt=0)
    failure_threshold: int = env_field(3, "FAILURE_THRESHOLD", ge=1)
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES", gt=0)
    login_rate_limit: int = env_field(
        10,
        "LOGIN_RATE_LIMIT",
        description="Login attempts allowed per address per window (0 disables)",
    )
    login_rate_limit_window_seconds: int = env_field(
        15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS"
    )
    sweep_interval_seconds: int = env_field(
        600,
        "SWEEP_INTERVAL_SECONDS",
        description="Interval between expired challenge/failure/block sweeps",
    )
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Resolve client address from X-Forwarded-For / X-Real-IP (only behind a trusted proxy)",
    )

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/chatguard"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
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
        import tempfile

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
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
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
