from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from authkernel.config import Settings
from authkernel.logging import account_context, get_logger
from authkernel.service.bearer import BearerCodec
from authkernel.service.confirmation import ConfirmationFlow
from authkernel.service.credentials import CURRENT_SECRET_FIELD, CredentialVerifier
from authkernel.service.errors import (
    NotificationConfigurationError,
    NotificationDeliveryError,
)
from authkernel.service.invitation import InvitationFlow
from authkernel.service.lockable import LockFlow
from authkernel.service.notifier import NotificationKind, Notifier, dispatch
from authkernel.service.recovery import RecoveryFlow
from authkernel.service.results import ErrorKind, ErrorSet, OperationResult, Outcome
from authkernel.service.sessions import SessionMode, SessionTokenSet
from authkernel.service.tokens import generate_token
from authkernel.storage.common import AccountRepository, normalize_email, utcnow
from authkernel.storage.errors import (
    ConstraintViolation,
    StaleAccountError,
    StorageUnavailable,
)
from authkernel.storage.models import Account

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# fields a caller may change through update_credential alongside the password
_UPDATABLE_FIELDS = frozenset({"email"})


def _blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


class AccountStateCoordinator:
    """Entry point for every account state transition.

    Each operation mutates the account through one of the flows, then runs
    ``save``: before-save hooks, validation, persistence and finally the
    notifications the transition queued. Notifications are only delivered
    once the repository accepted the write.
    """

    def __init__(
        self,
        settings: Settings,
        repository: AccountRepository,
        notifier: Notifier,
        *,
        clock: Callable[[], datetime] = utcnow,
        token_factory: Callable[[], str] = generate_token,
        verifier: Optional[CredentialVerifier] = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.notifier = notifier
        self.logger = get_logger(__name__)
        self._clock = clock
        self.sessions = SessionTokenSet(token_factory)
        self.credentials = verifier or CredentialVerifier()
        self.confirmation = ConfirmationFlow(settings, clock=clock, token_factory=token_factory)
        self.recovery = RecoveryFlow(settings, clock=clock, token_factory=token_factory)
        self.locks = LockFlow(settings, clock=clock, token_factory=token_factory)
        self.invitations = InvitationFlow(settings, clock=clock, token_factory=token_factory)
        self._bearer: Optional[BearerCodec] = None

    @property
    def session_mode(self) -> SessionMode:
        return SessionMode.for_cap(self.settings.max_simultaneous_sessions)

    @property
    def bearer(self) -> BearerCodec:
        if self._bearer is None:
            self._bearer = BearerCodec(self.settings, clock=self._clock)
        return self._bearer

    # save pipeline
    def _validate(self, account: Account) -> ErrorSet:
        errors = ErrorSet()
        if _blank(account.email):
            errors.add("email", ErrorKind.BLANK)
        for field_name in ("email", "unconfirmed_email"):
            value = getattr(account, field_name)
            if _blank(value):
                continue
            if not _EMAIL_RE.match(value):
                errors.add("email", ErrorKind.INVALID_FORMAT)
                continue
            if not (account.is_new or account.changed(field_name)):
                continue
            owner = self.repository.find_by_email(value)
            if owner is not None and owner.id != account.id:
                errors.add("email", ErrorKind.TAKEN)
        errors.merge(self.confirmation.validate(account))
        return errors

    def save(
        self,
        account: Account,
        *,
        errors: Optional[ErrorSet] = None,
        notifications: Iterable[NotificationKind] = (),
        token: Optional[str] = None,
        with_payload: bool = False,
        rollback: Optional[Dict[str, Any]] = None,
    ) -> OperationResult:
        """Run hooks and validation, persist, then deliver queued notifications.

        When the save is rejected or the write fails, the account is reverted
        to ``rollback`` (its state on entry unless the caller took an earlier
        snapshot), so hook output such as a diverted email change never
        outlives the save that produced it.
        """
        if rollback is None:
            rollback = account.snapshot()
        with account_context(account.id):
            result = self._save(account, errors, notifications, token, with_payload)
        if result.outcome in (Outcome.INVALID, Outcome.PERSISTENCE_FAILED):
            account.revert_to(rollback)
        return result

    def _save(
        self,
        account: Account,
        errors: Optional[ErrorSet],
        notifications: Iterable[NotificationKind],
        token: Optional[str],
        with_payload: bool,
    ) -> OperationResult:
        collected = ErrorSet()
        if errors:
            collected.merge(errors)
        queued: List[NotificationKind] = list(notifications)
        creating = account.is_new

        account.email = normalize_email(account.email)
        account.unconfirmed_email = normalize_email(account.unconfirmed_email)
        self.recovery.clear_if_credential_changed(account)
        if not creating:
            queued.extend(self.confirmation.intercept_email_change(account))

        collected.merge(self._validate(account))
        if collected:
            self.logger.info("account_save_invalid", errors=collected.as_dict())
            return OperationResult.invalid(collected, account)

        if creating and self.confirmation.needs_instructions_after_create(account):
            self.confirmation.start_cycle(account)
            queued.append(NotificationKind.CONFIRMATION_INSTRUCTIONS)

        try:
            self.repository.save(account)
        except StaleAccountError as exc:
            self.logger.warning("account_save_stale", detail=exc.detail)
            return OperationResult.persistence_failed(account, exc.message)
        except (ConstraintViolation, StorageUnavailable) as exc:
            self.logger.error("account_save_failed", error=str(exc))
            return OperationResult.persistence_failed(account, str(exc))

        payload = self.to_session_payload(account) if with_payload else None
        failure = self._deliver(account, queued)
        if failure:
            return OperationResult.notification_failed(
                account, failure, token=token, payload=payload
            )
        return OperationResult.success(account, token=token, payload=payload)

    def _deliver(self, account: Account, queued: List[NotificationKind]) -> Optional[str]:
        failure: Optional[str] = None
        for kind in dict.fromkeys(queued):
            try:
                dispatch(self.notifier, kind, account.copy())
            except (NotificationConfigurationError, NotificationDeliveryError) as exc:
                self.logger.error(
                    "notification_failed",
                    kind=kind.value,
                    error_code=exc.error_code,
                    error=exc.message,
                )
                failure = failure or exc.message
        return failure

    # registration
    def register(
        self,
        email: Optional[str],
        password: Optional[str],
        password_confirmation: Optional[str] = None,
        *,
        skip_confirmation: bool = False,
    ) -> OperationResult:
        account = Account.new(email=normalize_email(email))
        errors = self.credentials.validate_new_secret(password, password_confirmation)
        if not errors:
            account.password_hash = self.credentials.hash(password)
        if skip_confirmation:
            self.confirmation.skip_confirmation(account)
        result = self.save(account, errors=errors)
        if result.ok:
            self.logger.info("account_registered", account_id=account.id)
        return result

    # sessions
    def _field_for_credentials_error(self, fallback: str) -> str:
        return "session" if self.settings.avoid_email_errors else fallback

    def authenticate(
        self, email: Optional[str], password: Optional[str], ip: Optional[str] = None
    ) -> OperationResult:
        errors = ErrorSet()
        if _blank(email):
            errors.add("email", ErrorKind.BLANK)
        if _blank(password):
            errors.add("password", ErrorKind.BLANK)
        if errors:
            return OperationResult.invalid(errors)

        account = self.repository.find_by_email(email)
        if account is None:
            return OperationResult.single_error(
                self._field_for_credentials_error("email"), ErrorKind.INVALID_CREDENTIALS
            )
        if not account.is_confirmed:
            return OperationResult.single_error("email", ErrorKind.UNCONFIRMED, account)
        if self.locks.is_locked(account):
            return OperationResult.single_error("email", ErrorKind.LOCKED, account)

        if not self.credentials.verify(account.password_hash, password):
            self.logger.info("authentication_failed", account_id=account.id)
            before = account.snapshot()
            queued = self.locks.failed_attempt(account)
            if account.has_changes():
                recorded = self.save(account, notifications=queued, rollback=before)
                if recorded.outcome is not Outcome.OK:
                    return recorded
            return OperationResult.single_error(
                self._field_for_credentials_error("password"),
                ErrorKind.INVALID_CREDENTIALS,
                account,
            )

        before = account.snapshot()
        self.recovery.clear(account)
        self.locks.clean_lock(account)
        account.last_sign_in_at = self._clock()
        account.last_sign_in_ip = ip
        if self.credentials.needs_rehash(account.password_hash):
            account.password_hash = self.credentials.hash(password)
        token = self._issue(account)
        result = self.save(account, token=token, with_payload=True, rollback=before)
        if result.ok:
            self.logger.info("authentication_succeeded", account_id=account.id)
        return result

    def _issue(self, account: Account, revoke: Optional[str] = None) -> Optional[str]:
        cap = self.settings.max_simultaneous_sessions
        if not self.settings.session_tokens_enabled:
            return None
        if revoke:
            token, account.auth_tokens = self.sessions.regenerate(account.auth_tokens, cap, revoke)
        else:
            token, account.auth_tokens = self.sessions.issue(account.auth_tokens, cap)
        return token

    def issue_token(self, account: Account) -> OperationResult:
        before = account.snapshot()
        token = self._issue(account)
        return self.save(account, token=token, with_payload=True, rollback=before)

    def regenerate_token(self, account: Account, token: Optional[str] = None) -> OperationResult:
        before = account.snapshot()
        new_token = self._issue(account, revoke=token)
        return self.save(account, token=new_token, with_payload=True, rollback=before)

    def destroy_token(self, account: Account, token: Optional[str]) -> OperationResult:
        before = account.snapshot()
        account.auth_tokens = self.sessions.logout(
            account.auth_tokens, token, self.settings.max_simultaneous_sessions
        )
        return self.save(account, rollback=before)

    def revoke_all_tokens(self, account: Account) -> OperationResult:
        before = account.snapshot()
        account.auth_tokens = self.sessions.revoke_all(account.auth_tokens)
        return self.save(account, rollback=before)

    def to_session_payload(self, account: Account) -> dict[str, Any]:
        if self.settings.session_tokens_enabled:
            return {"auth_token": account.auth_tokens[-1] if account.auth_tokens else None}
        return {"id": str(account.id)}

    def from_session_payload(self, payload: Mapping[str, Any]) -> Optional[Account]:
        if not payload:
            return None
        if self.settings.session_tokens_enabled:
            token = payload.get("auth_token")
            return self.repository.find_by_session_token(token) if token else None
        account_id = payload.get("id")
        return self.repository.find_by_id(str(account_id)) if account_id else None

    def issue_bearer(self, account: Account) -> str:
        return self.bearer.encode(self.to_session_payload(account))

    def authenticate_bearer(self, bearer: str) -> Optional[Account]:
        payload = self.bearer.decode(bearer)
        if payload is None:
            return None
        return self.from_session_payload(payload)

    # credentials
    def update_credential(self, account: Account, params: Mapping[str, Any]) -> OperationResult:
        """Change the password, optionally with other profile fields.

        Errors from the credential check and from validating the whole
        account are returned together; nothing is persisted unless the
        combined set is empty.
        """
        params = dict(params)
        current = params.pop("current_password", None)
        new_secret = params.pop("password", None)
        confirmation = params.pop("password_confirmation", None)
        unknown = set(params) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported fields: {', '.join(sorted(unknown))}")

        before = account.snapshot()
        errors = self.credentials.validate_update(
            account.password_hash, current, new_secret, confirmation
        )
        self.recovery.clear(account)
        for name, value in params.items():
            setattr(account, name, value)
        if not errors:
            account.password_hash = self.credentials.hash(new_secret)

        queued = []
        if self.settings.send_password_changed_notification:
            queued.append(NotificationKind.CREDENTIAL_CHANGED)
        return self.save(account, errors=errors, notifications=queued, rollback=before)

    def update_email(
        self, account: Account, email: Optional[str], password: Optional[str]
    ) -> OperationResult:
        before = account.snapshot()
        errors = ErrorSet()
        if _blank(password):
            errors.add(CURRENT_SECRET_FIELD, ErrorKind.CURRENT_SECRET_BLANK)
        elif not self.credentials.verify(account.password_hash, password):
            errors.add(CURRENT_SECRET_FIELD, ErrorKind.CURRENT_SECRET_INVALID)
        account.email = email
        return self.save(account, errors=errors, rollback=before)

    # confirmation
    def send_confirmation_instructions(self, account: Account) -> OperationResult:
        before = account.snapshot()
        errors = self.confirmation.send_confirmation_instructions(account)
        if errors:
            account.revert_to(before)
            return OperationResult.invalid(errors, account)
        return self.save(
            account,
            notifications=[NotificationKind.CONFIRMATION_INSTRUCTIONS],
            rollback=before,
        )

    def confirm(self, token: Optional[str]) -> OperationResult:
        account = self.repository.load(confirmation_token=token) if token else None
        if account is None:
            return OperationResult.single_error("confirmation_token", ErrorKind.NOT_FOUND)
        return self.confirm_account(account)

    def confirm_account(self, account: Account) -> OperationResult:
        before = account.snapshot()
        self.confirmation.confirm(account)
        return self.save(account, rollback=before)

    def skip_confirmation(self, account: Account) -> OperationResult:
        before = account.snapshot()
        self.confirmation.skip_confirmation(account)
        return self.save(account, rollback=before)

    # recovery
    def send_recovery_instructions(self, account: Account) -> OperationResult:
        before = account.snapshot()
        errors = self.recovery.send_recovery_instructions(account)
        if errors:
            account.revert_to(before)
            return OperationResult.invalid(errors, account)
        return self.save(
            account, notifications=[NotificationKind.RECOVERY_INSTRUCTIONS], rollback=before
        )

    def reset_password(
        self,
        token: Optional[str],
        password: Optional[str],
        password_confirmation: Optional[str] = None,
    ) -> OperationResult:
        account = self.repository.load(reset_password_token=token) if token else None
        if account is None:
            return OperationResult.single_error("reset_password_token", ErrorKind.NOT_FOUND)
        errors = self.recovery.validate_consumption(account)
        errors.merge(self.credentials.validate_new_secret(password, password_confirmation))
        if errors:
            return OperationResult.invalid(errors, account)

        account.password_hash = self.credentials.hash(password)
        account.auth_tokens = self.sessions.revoke_all(account.auth_tokens)
        queued = []
        if self.settings.send_password_changed_notification:
            queued.append(NotificationKind.CREDENTIAL_CHANGED)
        result = self.save(account, notifications=queued)
        if result.ok:
            self.logger.info("password_reset_completed", account_id=account.id)
        return result

    # invitations
    def invite(self, email: Optional[str]) -> OperationResult:
        normalized = normalize_email(email)
        account = self.repository.find_by_email(normalized) if normalized else None
        if account is None:
            account = Account.new(email=normalized)
        errors = self.invitations.invite(account)
        if errors:
            return OperationResult.invalid(errors, account)
        return self.save(account, notifications=[NotificationKind.INVITATION_INSTRUCTIONS])

    def accept_invitation(
        self,
        token: Optional[str],
        password: Optional[str],
        password_confirmation: Optional[str] = None,
    ) -> OperationResult:
        account = self.repository.load(invitation_token=token) if token else None
        if account is None:
            return OperationResult.single_error("invitation_token", ErrorKind.NOT_FOUND)
        errors = self.invitations.validate_acceptance(account)
        errors.merge(self.credentials.validate_new_secret(password, password_confirmation))
        if errors:
            return OperationResult.invalid(errors, account)
        account.password_hash = self.credentials.hash(password)
        self.invitations.accept(account)
        return self.save(account)

    # locking
    def unlock(self, token: Optional[str]) -> OperationResult:
        account = self.repository.load(unlock_token=token) if token else None
        if account is None:
            return OperationResult.single_error("unlock_token", ErrorKind.NOT_FOUND)
        return self.unlock_account(account)

    def unlock_account(self, account: Account) -> OperationResult:
        before = account.snapshot()
        self.locks.unlock(account)
        return self.save(account, rollback=before)

    def lock_account(self, account: Account) -> OperationResult:
        before = account.snapshot()
        queued = self.locks.lock(account)
        return self.save(account, notifications=queued, rollback=before)


__all__ = ["AccountStateCoordinator"]
