from __future__ import annotations

import os
import secrets
import tempfile
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from authkernel.logging import get_logger

logger = get_logger(__name__)


class StoreBackend(str, Enum):
    """Account repository implementations selectable at runtime."""

    MEMORY = "memory"
    REDIS = "redis"
    POSTGRES = "postgres"


class LockStrategy(str, Enum):
    """When an account gets locked.

    - FAILED_ATTEMPTS: lock after ``maximum_attempts`` consecutive failed logins
    - NONE: never lock
    """

    FAILED_ATTEMPTS = "failed_attempts"
    NONE = "none"


class UnlockStrategy(str, Enum):
    """How a locked account gets unlocked."""

    TIME = "time"
    EMAIL = "email"
    BOTH = "both"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Immutable runtime configuration handed to the coordinator.

    Every window is expressed in minutes so it can be set from the
    environment; the ``*_expiration`` properties expose them as ``timedelta``.
    """

    # Sessions
    max_simultaneous_sessions: int = env_field(
        2,
        "MAX_SIMULTANEOUS_SESSIONS",
        description="0 disables session tokens (id payloads), 1 is single-session, N keeps a window of N",
    )
    # Confirmation / recovery / invitation windows
    confirmation_expiration_minutes: int = env_field(
        60 * 24, "CONFIRMATION_EXPIRATION_MINUTES"
    )
    reset_password_expiration_minutes: int = env_field(
        60, "RESET_PASSWORD_EXPIRATION_MINUTES"
    )
    invitation_expiration_minutes: int = env_field(
        60 * 24 * 2,
        "INVITATION_EXPIRATION_MINUTES",
        description="0 keeps invitations valid forever",
    )
    confirmation_required_for_recovery: bool = env_field(
        True, "CONFIRMATION_REQUIRED_FOR_RECOVERY"
    )
    # Notifications
    send_password_changed_notification: bool = env_field(
        True, "SEND_PASSWORD_CHANGED_NOTIFICATION"
    )
    send_email_change_requested_notification: bool = env_field(
        True, "SEND_EMAIL_CHANGE_REQUESTED_NOTIFICATION"
    )
    avoid_email_errors: bool = env_field(
        True,
        "AVOID_EMAIL_ERRORS",
        description="Report unknown email and wrong password with the same session error",
    )
    # Locking
    lock_strategy: LockStrategy = env_field(LockStrategy.NONE, "LOCK_STRATEGY")
    unlock_strategy: UnlockStrategy = env_field(UnlockStrategy.TIME, "UNLOCK_STRATEGY")
    maximum_attempts: int = env_field(3, "MAXIMUM_ATTEMPTS")
    unlock_in_minutes: int = env_field(60, "UNLOCK_IN_MINUTES")
    reset_attempts_in_minutes: int = env_field(60, "RESET_ATTEMPTS_IN_MINUTES")
    # Links embedded in notifications
    confirmations_url: str | None = env_field(None, "CONFIRMATIONS_URL")
    reset_passwords_url: str | None = env_field(None, "RESET_PASSWORDS_URL")
    invitations_url: str | None = env_field(None, "INVITATIONS_URL")
    unlock_url: str | None = env_field(None, "UNLOCK_URL")
    # Mailer
    mailer_sender: str = env_field(
        "no-reply@authkernel.local", "MAILER_SENDER", description="From address for notifications"
    )
    mailer_sender_name: str = env_field("AuthKernel", "MAILER_SENDER_NAME")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    # Storage
    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "STORE_BACKEND")
    database_url: str = env_field(
        "postgresql://localhost:5432/authkernel", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_root: str | None = env_field(
        None,
        "STATE_ROOT",
        description="Directory for the memory store state file and the persisted JWT secret",
    )
    # Bearer credential
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authkernel", "JWT_ISSUER")
    jwt_audience: str = env_field("authkernel-clients", "JWT_AUDIENCE")
    jwt_expiration_minutes: int = env_field(60 * 24 * 7, "JWT_EXPIRATION_MINUTES")

    model_config = ConfigDict(extra="ignore", frozen=True)

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
    def confirmation_expiration(self) -> timedelta:
        return timedelta(minutes=self.confirmation_expiration_minutes)

    @property
    def reset_password_expiration(self) -> timedelta:
        return timedelta(minutes=self.reset_password_expiration_minutes)

    @property
    def invitation_expiration(self) -> timedelta:
        return timedelta(minutes=self.invitation_expiration_minutes)

    @property
    def unlock_in(self) -> timedelta:
        return timedelta(minutes=self.unlock_in_minutes)

    @property
    def reset_attempts_in(self) -> timedelta:
        return timedelta(minutes=self.reset_attempts_in_minutes)

    @property
    def jwt_expiration(self) -> timedelta:
        return timedelta(minutes=self.jwt_expiration_minutes)

    @property
    def session_tokens_enabled(self) -> bool:
        return self.max_simultaneous_sessions > 0

    @field_validator(
        "max_simultaneous_sessions",
        "confirmation_expiration_minutes",
        "reset_password_expiration_minutes",
        "invitation_expiration_minutes",
        "unlock_in_minutes",
        "reset_attempts_in_minutes",
    )
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be zero or positive")
        return value

    @field_validator("maximum_attempts", "jwt_expiration_minutes")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be positive")
        return value

    @field_validator("store_backend")
    @classmethod
    def _validate_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("lock_strategy")
    @classmethod
    def _validate_lock_strategy(cls, value: LockStrategy) -> LockStrategy:
        return LockStrategy(value)

    @field_validator("unlock_strategy")
    @classmethod
    def _validate_unlock_strategy(cls, value: UnlockStrategy) -> UnlockStrategy:
        return UnlockStrategy(value)

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        state_root = info.data.get("state_root")
        if not state_root:
            logger.warning(
                "jwt_secret_ephemeral",
                message="JWT_SECRET and STATE_ROOT unset; bearer tokens will not survive a restart",
            )
            return secrets.token_urlsafe(64)

        # Persist a generated secret so bearer tokens remain valid across restarts
        root = Path(state_root)
        secret_path = root / ".jwt_secret"
        try:
            root.mkdir(parents=True, exist_ok=True)
            os.chmod(root, 0o700)
        except PermissionError:
            pass

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
                dir=str(root), prefix=".jwt_secret_", suffix=".tmp"
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
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_ROOT writable"
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
