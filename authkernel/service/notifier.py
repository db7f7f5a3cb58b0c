from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import Optional, Protocol, Type
from urllib.parse import quote

from authkernel.config import Settings
from authkernel.logging import get_logger, redact_email
from authkernel.service.errors import (
    ConfirmationsUrlMissing,
    InvitationsUrlMissing,
    NotificationConfigurationError,
    NotificationDeliveryError,
    ResetPasswordsUrlMissing,
    UnlockUrlMissing,
)
from authkernel.storage.models import Account

logger = get_logger(__name__)


class Notifier(Protocol):
    def notify_confirmation_instructions(self, account: Account) -> None: ...

    def notify_recovery_instructions(self, account: Account) -> None: ...

    def notify_credential_changed(self, account: Account) -> None: ...

    def notify_email_changed(self, account: Account) -> None: ...

    def notify_invitation_instructions(self, account: Account) -> None: ...

    def notify_unlock_instructions(self, account: Account) -> None: ...


class NotificationKind(str, Enum):
    CONFIRMATION_INSTRUCTIONS = "confirmation_instructions"
    RECOVERY_INSTRUCTIONS = "recovery_instructions"
    CREDENTIAL_CHANGED = "credential_changed"
    EMAIL_CHANGED = "email_changed"
    INVITATION_INSTRUCTIONS = "invitation_instructions"
    UNLOCK_INSTRUCTIONS = "unlock_instructions"


def dispatch(notifier: Notifier, kind: NotificationKind, account: Account) -> None:
    """Deliver a notification queued during a save, once the account persisted."""
    getattr(notifier, f"notify_{kind.value}")(account)


def build_link(base_url: Optional[str], param: str, token: str, missing: Type[NotificationConfigurationError]) -> str:
    """Append ``param=token`` to ``base_url``.

    Front-end routes often carry their own query inside a ``#`` fragment
    (``http://host/#/confirm?lang=en``); any ``?`` already present means the
    token is joined with ``&``.
    """
    if not base_url:
        raise missing()
    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}{param}={quote(token, safe='')}"


def confirmation_recipient(account: Account) -> Optional[str]:
    # a pending email change is confirmed at the new address
    return account.unconfirmed_email or account.email


class EmailNotifier:
    """SMTP delivery for account notifications.

    Falls back to logging the message when SMTP is not configured, so a
    development setup works without a mail server.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_user = settings.smtp_user
        self.smtp_password = settings.smtp_password
        self.smtp_use_tls = settings.smtp_use_tls
        self.from_email = settings.mailer_sender or settings.smtp_user
        self.from_name = settings.mailer_sender_name

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _build_message(self, to_email: str, subject: str, text_body: str, html_body: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _send_email(self, to_email: str, subject: str, text_body: str, html_body: str) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        msg = self._build_message(to_email, subject, text_body, html_body)
        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=redact_email(to_email),
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def _deliver(self, to_email: Optional[str], subject: str, paragraphs: list[str], link: Optional[str] = None) -> None:
        if not to_email:
            raise NotificationDeliveryError(f"no recipient for '{subject}'")
        text_parts = list(paragraphs)
        html_parts = [f"<p>{html.escape(p)}</p>" for p in paragraphs]
        if link:
            text_parts.append(link)
            html_parts.append(f'<p><a href="{html.escape(link)}">{html.escape(link)}</a></p>')
        text_body = "\n\n".join(text_parts + ["---", self.from_name]) + "\n"
        html_body = (
            "<!DOCTYPE html>\n<html>\n<body>\n"
            + "\n".join(html_parts)
            + f"\n<p>{html.escape(self.from_name)}</p>\n</body>\n</html>\n"
        )
        if not self._send_email(to_email, subject, text_body, html_body):
            raise NotificationDeliveryError(
                f"failed to deliver '{subject}'", detail={"to": redact_email(to_email)}
            )

    def notify_confirmation_instructions(self, account: Account) -> None:
        link = build_link(
            self.settings.confirmations_url,
            "confirmation_token",
            account.confirmation_token or "",
            ConfirmationsUrlMissing,
        )
        self._deliver(
            confirmation_recipient(account),
            "Confirmation instructions",
            ["You can confirm your account email through the link below:"],
            link,
        )

    def notify_recovery_instructions(self, account: Account) -> None:
        link = build_link(
            self.settings.reset_passwords_url,
            "reset_password_token",
            account.reset_password_token or "",
            ResetPasswordsUrlMissing,
        )
        self._deliver(
            account.email,
            "Reset password instructions",
            [
                "Someone has requested a link to change your password. You can do this through the link below.",
                "If you didn't request this, please ignore this email.",
            ],
            link,
        )

    def notify_credential_changed(self, account: Account) -> None:
        self._deliver(
            account.email,
            "Password changed",
            ["We're contacting you to notify you that your password has been changed."],
        )

    def notify_email_changed(self, account: Account) -> None:
        self._deliver(
            account.email,
            "Email change",
            [
                "We're contacting you to notify you that your email is being changed "
                f"to {account.unconfirmed_email}."
            ],
        )

    def notify_invitation_instructions(self, account: Account) -> None:
        link = build_link(
            self.settings.invitations_url,
            "invitation_token",
            account.invitation_token or "",
            InvitationsUrlMissing,
        )
        self._deliver(
            account.email,
            "Someone has sent you an invitation!",
            ["You have been invited. You can accept it through the link below."],
            link,
        )

    def notify_unlock_instructions(self, account: Account) -> None:
        link = build_link(
            self.settings.unlock_url, "unlock_token", account.unlock_token or "", UnlockUrlMissing
        )
        self._deliver(
            account.email,
            "Unlock instructions",
            [
                "Your account has been locked due to an excessive number of unsuccessful sign in attempts.",
                "Click the link below to unlock your account:",
            ],
            link,
        )


__all__ = [
    "EmailNotifier",
    "NotificationKind",
    "Notifier",
    "build_link",
    "confirmation_recipient",
    "dispatch",
]
