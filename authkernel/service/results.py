"""Structured outcomes returned by every state-changing operation."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional

if TYPE_CHECKING:
    from authkernel.storage.models import Account


class ErrorKind(str, Enum):
    CURRENT_SECRET_BLANK = "current_secret_blank"
    CURRENT_SECRET_INVALID = "current_secret_invalid"
    NEW_SECRET_BLANK = "new_secret_blank"
    CONFIRMATION_MISMATCH = "confirmation_mismatch"
    ALREADY_CONFIRMED = "already_confirmed"
    CONFIRMATION_TOKEN_EXPIRED = "confirmation_token_expired"
    RECOVERY_TOKEN_EXPIRED = "recovery_token_expired"
    INVITATION_TOKEN_EXPIRED = "invitation_token_expired"
    UNCONFIRMED = "unconfirmed"
    LOCKED = "locked"
    INVALID_CREDENTIALS = "invalid_credentials"
    NOT_FOUND = "not_found"
    BLANK = "blank"
    INVALID_FORMAT = "invalid_format"
    TAKEN = "taken"
    REGISTERED = "registered"


class Outcome(str, Enum):
    OK = "ok"
    INVALID = "invalid"
    PERSISTENCE_FAILED = "persistence_failed"
    NOTIFICATION_FAILED = "notification_failed"


class ErrorSet:
    """Validation errors grouped by field, collected rather than raised."""

    def __init__(self) -> None:
        self._errors: Dict[str, List[ErrorKind]] = {}

    def add(self, field_name: str, kind: ErrorKind) -> None:
        kinds = self._errors.setdefault(field_name, [])
        if kind not in kinds:
            kinds.append(kind)

    def merge(self, other: "ErrorSet") -> None:
        for field_name, kinds in other._errors.items():
            for kind in kinds:
                self.add(field_name, kind)

    def for_field(self, field_name: str) -> List[ErrorKind]:
        return list(self._errors.get(field_name, []))

    def has(self, field_name: str, kind: Optional[ErrorKind] = None) -> bool:
        if kind is None:
            return bool(self._errors.get(field_name))
        return kind in self._errors.get(field_name, [])

    def kinds(self) -> List[ErrorKind]:
        return [kind for kinds in self._errors.values() for kind in kinds]

    def as_dict(self) -> Dict[str, List[str]]:
        return {name: [k.value for k in kinds] for name, kinds in self._errors.items()}

    def __contains__(self, kind: object) -> bool:
        return kind in self.kinds()

    def __iter__(self) -> Iterator[str]:
        return iter(self._errors)

    def __len__(self) -> int:
        return sum(len(kinds) for kinds in self._errors.values())

    def __bool__(self) -> bool:
        return len(self) > 0

    def __repr__(self) -> str:
        return f"ErrorSet({self.as_dict()!r})"


@dataclass
class OperationResult:
    """Outcome of a coordinator operation.

    ``outcome`` separates invalid input from failures to persist or notify,
    so callers never have to interpret a bare ``False``.
    """

    outcome: Outcome
    account: Optional["Account"] = None
    errors: ErrorSet = field(default_factory=ErrorSet)
    token: Optional[str] = None
    payload: Optional[dict] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK

    @classmethod
    def success(cls, account: Optional["Account"] = None, **kwargs) -> "OperationResult":
        return cls(Outcome.OK, account=account, **kwargs)

    @classmethod
    def invalid(cls, errors: ErrorSet, account: Optional["Account"] = None) -> "OperationResult":
        return cls(Outcome.INVALID, account=account, errors=errors)

    @classmethod
    def single_error(
        cls, field_name: str, kind: ErrorKind, account: Optional["Account"] = None
    ) -> "OperationResult":
        errors = ErrorSet()
        errors.add(field_name, kind)
        return cls.invalid(errors, account)

    @classmethod
    def persistence_failed(
        cls, account: Optional["Account"], detail: str
    ) -> "OperationResult":
        return cls(Outcome.PERSISTENCE_FAILED, account=account, detail=detail)

    @classmethod
    def notification_failed(
        cls, account: Optional["Account"], detail: str, **kwargs
    ) -> "OperationResult":
        return cls(Outcome.NOTIFICATION_FAILED, account=account, detail=detail, **kwargs)


__all__ = ["ErrorKind", "ErrorSet", "Outcome", "OperationResult"]
