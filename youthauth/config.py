from __future__ import annotations

import json
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from youthauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, resolved from env vars and .env."""

    database_url: str = env_field(
        "postgresql://localhost:5432/youthauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/youthauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, sync Redis client).",
    )
    build_sha: str = env_field("dev", "BUILD_SHA")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Token codec
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_key_id: str = env_field("primary", "JWT_KEY_ID")
    jwt_previous_keys: dict[str, str] = env_field(
        {},
        "JWT_PREVIOUS_KEYS",
        description="Retired signing keys still accepted for verification, as kid:secret pairs",
    )
    jwt_issuer: str = env_field("youth-connect-auth-service", "JWT_ISSUER")
    jwt_audience: str = env_field("youth-connect-platform", "JWT_AUDIENCE")
    jwt_clock_skew_seconds: int = env_field(30, "JWT_CLOCK_SKEW_SECONDS", ge=0)
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)

    # Refresh token ledger
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)
    refresh_token_rotation: bool = env_field(
        False,
        "REFRESH_TOKEN_ROTATION",
        description="Issue a new refresh token and revoke the presented one on every refresh",
    )
    refresh_token_retention_days: int = env_field(7, "REFRESH_TOKEN_RETENTION_DAYS", ge=0)
    token_cleanup_interval_seconds: int = env_field(
        3600, "TOKEN_CLEANUP_INTERVAL_SECONDS", gt=0
    )

    # Credential store
    credential_store_url: str | None = env_field(None, "CREDENTIAL_STORE_URL")
    credential_store_api_key: str | None = env_field(None, "CREDENTIAL_STORE_API_KEY")
    credential_store_timeout_seconds: float = env_field(
        3.0, "CREDENTIAL_STORE_TIMEOUT_SECONDS", gt=0
    )
    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS", gt=0)
    account_lock_minutes: int = env_field(15, "ACCOUNT_LOCK_MINUTES", gt=0)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")

    # Password reset
    password_reset_token_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TOKEN_TTL_MINUTES", gt=0)
    password_reset_max_attempts: int = env_field(3, "PASSWORD_RESET_MAX_ATTEMPTS", gt=0)
    password_reset_rate_limit_per_hour: int = env_field(5, "PASSWORD_RESET_RATE_LIMIT_PER_HOUR")

    # Circuit breaker around the credential store
    breaker_failure_rate_threshold: float = env_field(
        0.5, "BREAKER_FAILURE_RATE_THRESHOLD", gt=0, le=1
    )
    breaker_minimum_calls: int = env_field(5, "BREAKER_MINIMUM_CALLS", gt=0)
    breaker_window_seconds: int = env_field(60, "BREAKER_WINDOW_SECONDS", gt=0)
    breaker_cooldown_seconds: int = env_field(30, "BREAKER_COOLDOWN_SECONDS", gt=0)
    breaker_half_open_max_calls: int = env_field(1, "BREAKER_HALF_OPEN_MAX_CALLS", gt=0)

    # Federation
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    google_jwks_url: str = env_field(
        "https://www.googleapis.com/oauth2/v3/certs", "GOOGLE_JWKS_URL"
    )
    google_jwks_refresh_seconds: int = env_field(3600, "GOOGLE_JWKS_REFRESH_SECONDS", gt=0)

    # Notification collaborator
    notification_service_url: str | None = env_field(None, "NOTIFICATION_SERVICE_URL")
    notification_timeout_seconds: float = env_field(
        5.0, "NOTIFICATION_TIMEOUT_SECONDS", gt=0
    )
    notification_queue_size: int = env_field(1000, "NOTIFICATION_QUEUE_SIZE", gt=0)

    # Trusted USSD gateway
    ussd_gateway_key: str | None = env_field(
        None,
        "USSD_GATEWAY_KEY",
        description="Shared secret presented by the telco gateway; USSD login is disabled when unset",
    )

    # Operator endpoints
    operator_api_key: str | None = env_field(
        None,
        "OPERATOR_API_KEY",
        description="Key expected in X-Operator-Key for operator endpoints; they are disabled when unset",
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

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_days * 24 * 60 * 60

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            if value.strip().startswith("["):
                return json.loads(value)
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_previous_keys", mode="before")
    @classmethod
    def _parse_previous_keys(cls, value: Any) -> Any:
        # Accepts "kid1:secret1,kid2:secret2"
        if isinstance(value, str):
            keys: dict[str, str] = {}
            for pair in value.split(","):
                kid, sep, secret = pair.strip().partition(":")
                if not pair.strip():
                    continue
                if not sep or not kid or not secret:
                    raise ValueError("JWT_PREVIOUS_KEYS entries must be kid:secret")
                keys[kid] = secret
            return keys
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated JWT secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/youthauth"))
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
            # Atomic write: temp file then rename
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
