from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from backoffice_auth.logging import get_logger
from backoffice_auth.service.policy import STEP_UP_GRACE_SECONDS

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part).strip() for part in value if str(part).strip()]


class Settings(BaseModel):
    """Runtime settings for the auth core."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/backoffice", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviors; allows running without Redis.",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    app_name: str = env_field("Backoffice", "APP_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    # Secrets
    signing_secret: str = env_field(
        None,
        "AUTH_SIGNING_SECRET",
        description="HMAC key for capability tokens and verification-token hashes",
        validate_default=True,
    )
    encryption_key: str | None = env_field(
        None, "ENCRYPTION_KEY", description="Key material for secrets encrypted at rest"
    )
    encryption_keys_legacy: list[str] = env_field(
        [],
        "ENCRYPTION_KEYS_LEGACY",
        description="Comma-separated retired keys still accepted for decryption",
    )

    # Step-up and capability tokens
    step_up_grace_seconds: int = env_field(STEP_UP_GRACE_SECONDS, "STEP_UP_GRACE_SECONDS")
    capability_token_ttl_seconds: int = env_field(30, "CAPABILITY_TOKEN_TTL_SECONDS")
    pending_two_factor_ttl_seconds: int = env_field(5 * 60, "PENDING_2FA_TTL_SECONDS")

    # Sessions
    session_duration_days: int = env_field(30, "SESSION_DURATION_DAYS")
    session_absolute_lifetime_days: int = env_field(45, "SESSION_ABSOLUTE_LIFETIME_DAYS")
    login_history_retention_days: int = env_field(90, "LOGIN_HISTORY_RETENTION_DAYS")

    # Verification tokens
    password_reset_ttl_minutes: int = env_field(30, "PASSWORD_RESET_TTL_MINUTES")
    invite_ttl_days: int = env_field(7, "INVITE_TTL_DAYS")
    verification_code_ttl_minutes: int = env_field(10, "VERIFICATION_CODE_TTL_MINUTES")

    # Two-factor
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    backup_code_length: int = env_field(8, "BACKUP_CODE_LENGTH")
    totp_issuer: str = env_field("Backoffice", "TOTP_ISSUER")

    # WebAuthn
    webauthn_rp_id: str = env_field("localhost", "WEBAUTHN_RP_ID")
    webauthn_rp_name: str = env_field("Backoffice", "WEBAUTHN_RP_NAME")
    webauthn_origins: list[str] = env_field(
        ["http://localhost:3000", "https://localhost:3000"], "WEBAUTHN_ORIGINS"
    )
    passkey_challenge_ttl_seconds: int = env_field(5 * 60, "PASSKEY_CHALLENGE_TTL_SECONDS")

    # Geolocation
    geolocation_enabled: bool = env_field(True, "GEOLOCATION_ENABLED")
    geolocation_url: str = env_field("http://ip-api.com/json", "GEOLOCATION_URL")
    geolocation_timeout_seconds: float = env_field(5.0, "GEOLOCATION_TIMEOUT_SECONDS")

    # HTTP surface
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    maintenance_interval_seconds: int = env_field(
        15 * 60,
        "MAINTENANCE_INTERVAL_SECONDS",
        description="How often expired tokens, challenges and sessions are purged",
    )

    # Login protection
    lockout_threshold: int = env_field(10, "LOCKOUT_THRESHOLD")
    lockout_duration_seconds: int = env_field(15 * 60, "LOCKOUT_DURATION_SECONDS")
    lockout_window_seconds: int = env_field(60 * 60, "LOCKOUT_WINDOW_SECONDS")
    failure_delay_min_ms: int = env_field(100, "FAILURE_DELAY_MIN_MS")
    failure_delay_max_ms: int = env_field(200, "FAILURE_DELAY_MAX_MS")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")

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
        "webauthn_origins", "encryption_keys_legacy", "cors_allow_origins", mode="before"
    )
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("webauthn_origins")
    @classmethod
    def _require_origins(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("WEBAUTHN_ORIGINS must list at least one origin")
        return [origin.rstrip("/") for origin in value]

    @field_validator(
        "step_up_grace_seconds",
        "capability_token_ttl_seconds",
        "pending_two_factor_ttl_seconds",
        "session_duration_days",
        "session_absolute_lifetime_days",
        "login_history_retention_days",
        "backup_code_count",
        "backup_code_length",
        "lockout_threshold",
        "maintenance_interval_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @model_validator(mode="after")
    def _check_ranges(self) -> "Settings":
        if self.session_absolute_lifetime_days < self.session_duration_days:
            raise ValueError(
                "SESSION_ABSOLUTE_LIFETIME_DAYS must be >= SESSION_DURATION_DAYS"
            )
        if not 0 <= self.failure_delay_min_ms <= self.failure_delay_max_ms:
            raise ValueError("failure delay bounds must satisfy 0 <= min <= max")
        return self

    @field_validator("signing_secret", mode="before")
    @classmethod
    def _ensure_signing_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so hashed tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/backoffice"))
        secret_path = fs_root / ".auth_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "signing_secret_dir_setup",
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
                    "signing_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            import tempfile

            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".auth_secret_", suffix=".tmp"
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
                "signing_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist signing secret; set AUTH_SIGNING_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def redis_fallback_allowed(self) -> bool:
        return self.test_mode or self.allow_redis_fallback_dev


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
