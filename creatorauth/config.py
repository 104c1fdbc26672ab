from __future__ import annotations

import json
import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from creatorauth.logging import get_logger

logger = get_logger(__name__)


class FingerprintMismatchPolicy(str, Enum):
    """What a refresh does when the device fingerprint no longer matches.

    - STRICT: revoke the refresh token and reject (treated as token theft)
    - WARN: log a ``device_fingerprint_mismatch`` event and continue
    """

    STRICT = "strict"
    WARN = "warn"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth and session-security service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/creatorauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    secrets_dir: str = env_field("/srv/creatorauth", "SECRETS_DIR")
    environment: str = env_field(
        "development",
        "APP_ENV",
        description="development or production; production hardens cookie flags",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, relaxed Redis requirement).",
    )
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound for a single credential store round-trip",
    )

    # Token codec
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("creatorauth", "JWT_ISSUER")
    jwt_audience: str = env_field("creatorauth-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")

    # Session manager
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    max_sessions_per_user: int = env_field(5, "MAX_SESSIONS_PER_USER")
    session_inactivity_days: int = env_field(
        30,
        "SESSION_INACTIVITY_DAYS",
        description="Sessions idle for longer than this are removed by maintenance",
    )
    fingerprint_mismatch_policy: FingerprintMismatchPolicy = env_field(
        FingerprintMismatchPolicy.STRICT, "FINGERPRINT_MISMATCH_POLICY"
    )

    # Account lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES")
    reset_window_minutes: int = env_field(60, "RESET_WINDOW_MINUTES")

    # IP rate limiting
    rate_limit_rules: dict[str, dict[str, int]] = env_field(
        {},
        "RATE_LIMIT_RULES",
        description=(
            "JSON object keyed by endpoint class with window_ms/max_requests/"
            "block_duration_ms overrides, merged over the built-in table"
        ),
    )
    rate_limit_record_retention_days: int = env_field(
        7, "RATE_LIMIT_RECORD_RETENTION_DAYS"
    )
    trust_proxy_headers: bool = env_field(
        True,
        "TRUST_PROXY_HEADERS",
        description="Resolve client IPs from X-Forwarded-For and related headers",
    )

    # Audit + maintenance
    security_event_retention_days: int = env_field(90, "SECURITY_EVENT_RETENTION_DAYS")
    maintenance_interval_seconds: int = env_field(3600, "MAINTENANCE_INTERVAL_SECONDS")

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
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

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @field_validator("fingerprint_mismatch_policy")
    @classmethod
    def _validate_fingerprint_policy(
        cls, value: FingerprintMismatchPolicy
    ) -> FingerprintMismatchPolicy:
        return FingerprintMismatchPolicy(value)

    @field_validator("rate_limit_rules", mode="before")
    @classmethod
    def _parse_rate_limit_rules(cls, value: Any) -> Any:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError(f"RATE_LIMIT_RULES is not valid JSON: {exc}") from exc
        if not isinstance(value, dict):
            raise ValueError("RATE_LIMIT_RULES must be a JSON object")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "max_sessions_per_user",
        "max_login_attempts",
        "lockout_duration_minutes",
        "reset_window_minutes",
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        secrets_root = Path(os.getenv("SECRETS_DIR", "/srv/creatorauth"))
        secret_path = secrets_root / ".jwt_secret"

        try:
            secrets_root.mkdir(parents=True, exist_ok=True)
            os.chmod(secrets_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(secrets_root),
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
            fd, tmp_path = tempfile.mkstemp(
                dir=str(secrets_root), prefix=".jwt_secret_", suffix=".tmp"
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
                "Unable to persist JWT secret; set JWT_SECRET env var or make SECRETS_DIR writable"
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
