from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authkernel.logging import get_logger
from authkernel.service.results import ErrorKind, ErrorSet

logger = get_logger(__name__)

CURRENT_SECRET_FIELD = "current_password"
NEW_SECRET_FIELD = "password"
CONFIRMATION_FIELD = "password_confirmation"


def _blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


class CredentialVerifier:
    """Argon2id hashing plus the credential-update policy."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, secret: str) -> str:
        return self._pwd_hasher.hash(secret)

    def verify(self, stored_hash: Optional[str], candidate: Optional[str]) -> bool:
        if not stored_hash or candidate is None:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, candidate)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    def validate_update(
        self,
        stored_hash: Optional[str],
        current_secret: Optional[str],
        new_secret: Optional[str],
        new_secret_confirmation: Optional[str] = None,
    ) -> ErrorSet:
        """Collect every credential-update error instead of stopping at the first.

        The current secret is only required once a hash has been stored;
        a first-time set only needs a non-blank new secret.
        """
        errors = ErrorSet()
        if stored_hash:
            if _blank(current_secret):
                errors.add(CURRENT_SECRET_FIELD, ErrorKind.CURRENT_SECRET_BLANK)
            elif not self.verify(stored_hash, current_secret):
                errors.add(CURRENT_SECRET_FIELD, ErrorKind.CURRENT_SECRET_INVALID)
        errors.merge(self.validate_new_secret(new_secret, new_secret_confirmation))
        return errors

    @staticmethod
    def validate_new_secret(
        new_secret: Optional[str], new_secret_confirmation: Optional[str] = None
    ) -> ErrorSet:
        errors = ErrorSet()
        if _blank(new_secret):
            errors.add(NEW_SECRET_FIELD, ErrorKind.NEW_SECRET_BLANK)
        elif new_secret_confirmation is not None and new_secret_confirmation != new_secret:
            errors.add(CONFIRMATION_FIELD, ErrorKind.CONFIRMATION_MISMATCH)
        return errors


__all__ = [
    "CONFIRMATION_FIELD",
    "CURRENT_SECRET_FIELD",
    "CredentialVerifier",
    "NEW_SECRET_FIELD",
]
