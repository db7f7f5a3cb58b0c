"""Tests for notification link building and the email notifier."""

import pytest

from authkernel.service.errors import (
    ConfirmationsUrlMissing,
    InvitationsUrlMissing,
    NotificationDeliveryError,
    ResetPasswordsUrlMissing,
    UnlockUrlMissing,
)
from authkernel.service.notifier import EmailNotifier, NotificationKind, build_link, dispatch
from authkernel.storage.models import Account


class CapturingEmailNotifier(EmailNotifier):
    def __init__(self, settings, succeed=True):
        super().__init__(settings)
        self.outbox = []
        self.succeed = succeed

    def _send_email(self, to_email, subject, text_body, html_body):
        self.outbox.append({"to": to_email, "subject": subject, "text": text_body, "html": html_body})
        return self.succeed


@pytest.fixture
def account():
    return Account.new(
        "user@example.com",
        confirmation_token="conf123",
        reset_password_token="reset123",
        invitation_token="inv123",
        unlock_token="unl123",
    )


class TestBuildLink:
    def test_plain_url_uses_question_mark(self):
        link = build_link("http://host/confirm", "confirmation_token", "abc", ConfirmationsUrlMissing)
        assert link == "http://host/confirm?confirmation_token=abc"

    def test_fragment_url_with_query_uses_ampersand(self):
        link = build_link(
            "http://www.host.com/#/url?param=value", "reset_password_token", "abc", ResetPasswordsUrlMissing
        )
        assert link == "http://www.host.com/#/url?param=value&reset_password_token=abc"

    def test_missing_url_raises_typed_error(self):
        with pytest.raises(UnlockUrlMissing) as excinfo:
            build_link(None, "unlock_token", "abc", UnlockUrlMissing)
        assert excinfo.value.error_code == "notification_not_configured"
        assert "unlock_url" in str(excinfo.value)


class TestEmailNotifier:
    def test_confirmation_link_in_body(self, settings, account):
        notifier = CapturingEmailNotifier(settings)
        notifier.notify_confirmation_instructions(account)
        (mail,) = notifier.outbox
        assert mail["to"] == "user@example.com"
        assert "http://app.test/confirm?confirmation_token=conf123" in mail["text"]

    def test_confirmation_goes_to_pending_address(self, settings, account):
        account.unconfirmed_email = "new@example.com"
        notifier = CapturingEmailNotifier(settings)
        notifier.notify_confirmation_instructions(account)
        assert notifier.outbox[0]["to"] == "new@example.com"

    def test_email_changed_goes_to_current_address(self, settings, account):
        account.unconfirmed_email = "new@example.com"
        notifier = CapturingEmailNotifier(settings)
        notifier.notify_email_changed(account)
        mail = notifier.outbox[0]
        assert mail["to"] == "user@example.com"
        assert mail["subject"] == "Email change"
        assert "new@example.com" in mail["text"]

    @pytest.mark.parametrize(
        "method,url_field,error",
        [
            ("notify_confirmation_instructions", "confirmations_url", ConfirmationsUrlMissing),
            ("notify_recovery_instructions", "reset_passwords_url", ResetPasswordsUrlMissing),
            ("notify_invitation_instructions", "invitations_url", InvitationsUrlMissing),
            ("notify_unlock_instructions", "unlock_url", UnlockUrlMissing),
        ],
    )
    def test_missing_urls(self, settings, account, method, url_field, error):
        notifier = CapturingEmailNotifier(settings.model_copy(update={url_field: None}))
        with pytest.raises(error):
            getattr(notifier, method)(account)
        assert notifier.outbox == []

    def test_hash_urls_for_each_link(self, settings, account):
        base = "http://www.host.com/#/url?param=value"
        notifier = CapturingEmailNotifier(
            settings.model_copy(
                update={"reset_passwords_url": base, "invitations_url": base, "unlock_url": base}
            )
        )
        notifier.notify_recovery_instructions(account)
        notifier.notify_invitation_instructions(account)
        notifier.notify_unlock_instructions(account)
        bodies = [mail["text"] for mail in notifier.outbox]
        assert f"{base}&reset_password_token=reset123" in bodies[0]
        assert f"{base}&invitation_token=inv123" in bodies[1]
        assert f"{base}&unlock_token=unl123" in bodies[2]

    def test_credential_changed(self, settings, account):
        notifier = CapturingEmailNotifier(settings)
        notifier.notify_credential_changed(account)
        assert notifier.outbox[0]["subject"] == "Password changed"

    def test_delivery_failure_raises(self, settings, account):
        notifier = CapturingEmailNotifier(settings, succeed=False)
        with pytest.raises(NotificationDeliveryError):
            notifier.notify_credential_changed(account)

    def test_dev_mode_logs_instead_of_sending(self, settings, account):
        notifier = EmailNotifier(settings)
        assert not notifier.is_configured
        notifier.notify_recovery_instructions(account)

    def test_dispatch_by_kind(self, settings, account):
        notifier = CapturingEmailNotifier(settings)
        dispatch(notifier, NotificationKind.INVITATION_INSTRUCTIONS, account)
        assert "invitation_token=inv123" in notifier.outbox[0]["text"]
