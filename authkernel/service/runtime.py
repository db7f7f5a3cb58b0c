from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authkernel.config import Settings, StoreBackend, get_settings, reset_settings_cache
from authkernel.logging import get_logger
from authkernel.service.coordinator import AccountStateCoordinator
from authkernel.service.notifier import EmailNotifier
from authkernel.storage.common import AccountRepository
from authkernel.storage.memory import MemoryAccountRepository

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL before it is logged.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_repository(settings: Settings) -> AccountRepository:
    backend = settings.store_backend
    if backend is StoreBackend.MEMORY:
        return MemoryAccountRepository(state_root=settings.state_root)
    if backend is StoreBackend.REDIS:
        from authkernel.storage.redis_store import RedisAccountRepository

        repository = RedisAccountRepository.from_url(settings.redis_url)
        repository.verify_connection()
        return repository
    from authkernel.storage.postgres import PostgresAccountRepository

    return PostgresAccountRepository(settings.database_url)


class Runtime:
    """Holds the configured repository, notifier and coordinator."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        backend = self.settings.store_backend.value
        target = {
            "redis": _mask_url_password(self.settings.redis_url),
            "postgres": _mask_url_password(self.settings.database_url),
        }.get(backend, self.settings.state_root)
        logger.info("runtime_init_started", store_backend=backend, target=target)
        try:
            self.repository = build_repository(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_backend=backend,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.notifier = EmailNotifier(self.settings)
        if not self.notifier.is_configured:
            logger.warning("runtime_email_dev_mode", reason="SMTP_HOST not set")
        self.coordinator = AccountStateCoordinator(
            self.settings, self.repository, self.notifier
        )
        logger.info("runtime_init_completed", store_backend=backend)


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the cached runtime and settings so the next call re-reads the environment."""
    global runtime
    with _runtime_lock:
        runtime = None
        reset_settings_cache()


__all__ = ["Runtime", "build_repository", "get_runtime", "reset_runtime_for_tests"]
