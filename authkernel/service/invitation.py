from __future__ import annotations

from datetime import datetime
from typing import Callable

from authkernel.config import Settings
from authkernel.service.results import ErrorKind, ErrorSet
from authkernel.service.tokens import generate_token
from authkernel.storage.common import ensure_aware, utcnow
from authkernel.storage.models import Account


class InvitationFlow:
    """Invitation issuance and acceptance.

    An ``invitation_expiration`` of zero keeps invitations valid until they
    are accepted.
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

    @staticmethod
    def is_invitation_pending(account: Account) -> bool:
        return bool(account.invitation_token) and account.invitation_accepted_at is None

    def token_expired(self, account: Account) -> bool:
        window = self.settings.invitation_expiration
        sent_at = ensure_aware(account.invitation_sent_at)
        if not window or sent_at is None:
            return False
        return sent_at < self._clock() - window

    def invite(self, account: Account) -> ErrorSet:
        errors = ErrorSet()
        if not account.is_new and not self.is_invitation_pending(account):
            errors.add("email", ErrorKind.REGISTERED)
            return errors
        account.invitation_token = self._token_factory()
        account.invitation_sent_at = self._clock()
        account.invitation_accepted_at = None
        return errors

    def validate_acceptance(self, account: Account) -> ErrorSet:
        errors = ErrorSet()
        if self.token_expired(account):
            errors.add("invitation_token", ErrorKind.INVITATION_TOKEN_EXPIRED)
        return errors

    def accept(self, account: Account) -> None:
        now = self._clock()
        account.invitation_accepted_at = now
        account.invitation_token = None
        account.invitation_sent_at = None
        if not account.is_confirmed:
            account.confirmed_at = now


__all__ = ["InvitationFlow"]
