from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Callable

from authkernel.config import Settings
from authkernel.service.results import ErrorKind, ErrorSet
from authkernel.service.tokens import generate_token
from authkernel.storage.common import ensure_aware, utcnow
from authkernel.storage.models import Account


class RecoveryState(str, Enum):
    NONE = "none"
    PENDING = "pending"
    EXPIRED = "expired"


class RecoveryFlow:
    """Password reset token lifecycle."""

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

    def token_expired(self, account: Account) -> bool:
        sent_at = ensure_aware(account.reset_password_sent_at)
        if sent_at is None:
            return True
        return sent_at < self._clock() - self.settings.reset_password_expiration

    def state(self, account: Account) -> RecoveryState:
        if not (account.reset_password_token and account.reset_password_sent_at):
            return RecoveryState.NONE
        if self.token_expired(account):
            return RecoveryState.EXPIRED
        return RecoveryState.PENDING

    def is_recovery_in_progress(self, account: Account) -> bool:
        return self.state(account) is RecoveryState.PENDING

    def send_recovery_instructions(self, account: Account) -> ErrorSet:
        errors = ErrorSet()
        if self.settings.confirmation_required_for_recovery and not account.is_confirmed:
            errors.add("email", ErrorKind.UNCONFIRMED)
            return errors
        account.reset_password_token = self._token_factory()
        account.reset_password_sent_at = self._clock()
        return errors

    @staticmethod
    def clear(account: Account) -> None:
        account.reset_password_token = None
        account.reset_password_sent_at = None

    def clear_if_credential_changed(self, account: Account) -> None:
        # a stale reset link must not outlive the secret it would replace
        if account.changed("password_hash"):
            self.clear(account)

    def validate_consumption(self, account: Account) -> ErrorSet:
        errors = ErrorSet()
        if self.token_expired(account):
            errors.add("reset_password_token", ErrorKind.RECOVERY_TOKEN_EXPIRED)
        return errors


__all__ = ["RecoveryFlow", "RecoveryState"]
