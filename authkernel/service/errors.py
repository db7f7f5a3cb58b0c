from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for failures that are not input validation problems.

    Validation problems are reported through ``ErrorSet`` on an
    ``OperationResult``; exceptions are reserved for configuration and
    delivery failures that the caller has to decide how to surface.
    """

    error_code: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ConfigurationError(ServiceError):
    """Required configuration is missing or inconsistent."""
    error_code = "configuration_error"


class NotificationConfigurationError(ConfigurationError):
    """A notification cannot be built because its link URL is not configured."""
    error_code = "notification_not_configured"
    setting: str = ""

    def __init__(self, message: Optional[str] = None, **kwargs) -> None:
        super().__init__(message or f"{self.setting} is not configured", **kwargs)


class ConfirmationsUrlMissing(NotificationConfigurationError):
    setting = "confirmations_url"


class ResetPasswordsUrlMissing(NotificationConfigurationError):
    setting = "reset_passwords_url"


class InvitationsUrlMissing(NotificationConfigurationError):
    setting = "invitations_url"


class UnlockUrlMissing(NotificationConfigurationError):
    setting = "unlock_url"


class NotificationDeliveryError(ServiceError):
    """The notifier accepted the message but could not deliver it."""
    error_code = "notification_failed"


__all__ = [
    "ServiceError",
    "ConfigurationError",
    "NotificationConfigurationError",
    "ConfirmationsUrlMissing",
    "ResetPasswordsUrlMissing",
    "InvitationsUrlMissing",
    "UnlockUrlMissing",
    "NotificationDeliveryError",
]
