from __future__ import annotations

from datetime import datetime
from typing import Callable, List

from authkernel.config import LockStrategy, Settings, UnlockStrategy
from authkernel.logging import get_logger
from authkernel.service.notifier import NotificationKind
from authkernel.service.tokens import generate_token
from authkernel.storage.common import ensure_aware, utcnow
from authkernel.storage.models import Account

logger = get_logger(__name__)


class LockFlow:
    """Failed sign-in counting and account locking.

    With ``lock_strategy`` set to ``none`` every method that would lock is a
    no-op, so the coordinator can call it unconditionally.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
        token_factory: Callable[[], str] = generate_token,
    ) -> None:
        self.settings = settings
        self._clock = clock
        self._token_factory = token_factory

    @property
    def enabled(self) -> bool:
        return self.settings.lock_strategy is LockStrategy.FAILED_ATTEMPTS

    @property
    def unlocks_by_time(self) -> bool:
        return self.settings.unlock_strategy in (UnlockStrategy.TIME, UnlockStrategy.BOTH)

    @property
    def unlocks_by_email(self) -> bool:
        return self.settings.unlock_strategy in (UnlockStrategy.EMAIL, UnlockStrategy.BOTH)

    def lock_expired(self, account: Account) -> bool:
        locked_at = ensure_aware(account.locked_at)
        if locked_at is None:
            return True
        if not self.unlocks_by_time:
            return False
        return locked_at < self._clock() - self.settings.unlock_in

    def is_locked(self, account: Account) -> bool:
        return account.locked_at is not None and not self.lock_expired(account)

    def _attempts_window_expired(self, account: Account) -> bool:
        first = ensure_aware(account.first_failed_attempt_at)
        return first is not None and first < self._clock() - self.settings.reset_attempts_in

    def failed_attempt(self, account: Account) -> List[NotificationKind]:
        if not self.enabled or self.is_locked(account):
            return []
        if account.locked_at is not None:
            # lock ran out on its own; start counting from scratch
            self.clean_lock(account)
        if self._attempts_window_expired(account):
            account.failed_attempts = 0
            account.first_failed_attempt_at = None

        account.failed_attempts = (account.failed_attempts or 0) + 1
        if account.first_failed_attempt_at is None:
            account.first_failed_attempt_at = self._clock()

        if account.failed_attempts >= self.settings.maximum_attempts:
            return self.lock(account)
        return []

    def lock(self, account: Account) -> List[NotificationKind]:
        account.locked_at = self._clock()
        logger.info("account_locked", account_id=account.id, attempts=account.failed_attempts)
        if self.unlocks_by_email:
            account.unlock_token = self._token_factory()
            return [NotificationKind.UNLOCK_INSTRUCTIONS]
        return []

    @staticmethod
    def clean_lock(account: Account) -> None:
        account.locked_at = None
        account.unlock_token = None
        account.failed_attempts = 0
        account.first_failed_attempt_at = None

    def unlock(self, account: Account) -> None:
        self.clean_lock(account)


__all__ = ["LockFlow"]
