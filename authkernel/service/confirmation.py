"""Email confirmation and pending email changes.

The flow only mutates the account and reports which notifications the
change calls for; the coordinator decides when to persist and delivers the
notifications once the account has been saved.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Callable, List

from authkernel.config import Settings
from authkernel.service.notifier import NotificationKind
from authkernel.service.results import ErrorKind, ErrorSet
from authkernel.service.tokens import generate_token
from authkernel.storage.common import ensure_aware, utcnow
from authkernel.storage.models import Account


class ConfirmationState(str, Enum):
    UNCONFIRMED = "unconfirmed"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    EMAIL_CHANGE_PENDING = "email_change_pending"


class ConfirmationFlow:
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

    def _now(self) -> datetime:
        return self._clock()

    def token_expired(self, account: Account) -> bool:
        sent_at = ensure_aware(account.confirmation_sent_at)
        if sent_at is None:
            return False
        return sent_at < self._now() - self.settings.confirmation_expiration

    def state(self, account: Account) -> ConfirmationState:
        if account.is_confirmed:
            if account.unconfirmed_email:
                return ConfirmationState.EMAIL_CHANGE_PENDING
            return ConfirmationState.CONFIRMED
        if self.is_confirmation_in_progress(account):
            return ConfirmationState.PENDING
        return ConfirmationState.UNCONFIRMED

    def is_confirmation_in_progress(self, account: Account) -> bool:
        return bool(
            not account.is_confirmed
            and account.confirmation_token
            and account.confirmation_sent_at
            and not self.token_expired(account)
        )

    def start_cycle(self, account: Account) -> None:
        account.confirmation_token = self._token_factory()
        account.confirmation_sent_at = self._now()

    def send_confirmation_instructions(self, account: Account) -> ErrorSet:
        """Issue a fresh confirmation token unless there is nothing to confirm."""
        errors = ErrorSet()
        if account.is_confirmed and not account.unconfirmed_email:
            errors.add("email", ErrorKind.ALREADY_CONFIRMED)
            return errors
        self.start_cycle(account)
        return errors

    def confirm(self, account: Account) -> None:
        account.confirmed_at = self._now()
        if account.unconfirmed_email:
            account.email = account.unconfirmed_email
            account.unconfirmed_email = None

    def skip_confirmation(self, account: Account) -> None:
        account.confirmed_at = self._now()

    def is_user_email_change(self, account: Account) -> bool:
        """True when a write changes ``email`` on behalf of the user.

        A confirmation completing changes ``email`` and ``confirmed_at``
        together; only an email edit that leaves ``confirmed_at`` alone on a
        stored account with a previous address is diverted.
        """
        return bool(
            not account.is_new
            and account.changed("email")
            and account.email
            and account.was("email")
            and not account.changed("confirmed_at")
        )

    def intercept_email_change(self, account: Account) -> List[NotificationKind]:
        if not self.is_user_email_change(account):
            return []
        account.unconfirmed_email = account.email
        account.restore("email")
        self.start_cycle(account)
        queued = [NotificationKind.CONFIRMATION_INSTRUCTIONS]
        if self.settings.send_email_change_requested_notification:
            queued.append(NotificationKind.EMAIL_CHANGED)
        return queued

    def validate(self, account: Account) -> ErrorSet:
        """Check a ``confirmed_at`` transition.

        An email promoted in the same write is a legitimate completion of a
        change cycle and is not checked.
        """
        errors = ErrorSet()
        if not account.changed("confirmed_at") or not account.confirmed_at:
            return errors
        if account.changed("email"):
            return errors
        if account.was("confirmed_at"):
            errors.add("email", ErrorKind.ALREADY_CONFIRMED)
        elif self.token_expired(account):
            errors.add("confirmation_token", ErrorKind.CONFIRMATION_TOKEN_EXPIRED)
        return errors

    def needs_instructions_after_create(self, account: Account) -> bool:
        return not (
            account.confirmed_at or account.confirmation_sent_at or account.invitation_token
        )


__all__ = ["ConfirmationFlow", "ConfirmationState"]
