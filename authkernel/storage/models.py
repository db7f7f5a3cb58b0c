from __future__ import annotations

import copy
import uuid
from dataclasses import MISSING, dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

# Fields whose values are indexed by repositories for token/email lookups.
LOOKUP_FIELDS = (
    "id",
    "email",
    "confirmation_token",
    "reset_password_token",
    "invitation_token",
    "unlock_token",
)


@dataclass
class Account:
    """The authenticable entity.

    Change tracking is explicit: the account keeps the values it was last
    loaded or saved with, and ``changed``/``was`` compare against that
    baseline. Hooks in the save pipeline rely on it to tell a user-initiated
    email edit apart from a confirmation completing.
    """

    id: str
    email: Optional[str] = None
    password_hash: Optional[str] = None
    auth_tokens: List[str] = field(default_factory=list)
    unconfirmed_email: Optional[str] = None
    confirmation_token: Optional[str] = None
    confirmation_sent_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    reset_password_token: Optional[str] = None
    reset_password_sent_at: Optional[datetime] = None
    invitation_token: Optional[str] = None
    invitation_sent_at: Optional[datetime] = None
    invitation_accepted_at: Optional[datetime] = None
    failed_attempts: int = 0
    first_failed_attempt_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    unlock_token: Optional[str] = None
    last_sign_in_at: Optional[datetime] = None
    last_sign_in_ip: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    lock_version: int = 0
    _baseline: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)
    _persisted: bool = field(default=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self._persisted and not self._baseline:
            self._baseline = _default_values()

    @classmethod
    def new(cls, email: Optional[str] = None, **attributes: Any) -> "Account":
        return cls(id=str(uuid.uuid4()), email=email, **attributes)

    @property
    def is_new(self) -> bool:
        return not self._persisted

    @property
    def is_confirmed(self) -> bool:
        return self.confirmed_at is not None

    def tracked_fields(self) -> Tuple[str, ...]:
        return _TRACKED_FIELDS

    def snapshot(self) -> Dict[str, Any]:
        return {name: copy.copy(getattr(self, name)) for name in _TRACKED_FIELDS}

    def mark_persisted(self) -> None:
        self._baseline = self.snapshot()
        self._persisted = True

    def was(self, name: str) -> Any:
        return copy.copy(self._baseline.get(name))

    def changed(self, name: str) -> bool:
        return getattr(self, name) != self._baseline.get(name)

    def changes(self) -> Dict[str, Tuple[Any, Any]]:
        return {
            name: (self._baseline.get(name), getattr(self, name))
            for name in _TRACKED_FIELDS
            if self.changed(name)
        }

    def has_changes(self) -> bool:
        return any(self.changed(name) for name in _TRACKED_FIELDS)

    def restore(self, name: str) -> None:
        setattr(self, name, self.was(name))

    def revert_to(self, snapshot: Dict[str, Any]) -> None:
        """Put every tracked field back to a value taken by ``snapshot()``."""
        for name, value in snapshot.items():
            setattr(self, name, copy.copy(value))

    def copy(self) -> "Account":
        return copy.deepcopy(self)


_TRACKED_FIELDS: Tuple[str, ...] = tuple(
    f.name for f in fields(Account) if not f.name.startswith("_")
)


def _default_values() -> Dict[str, Any]:
    defaults: Dict[str, Any] = {}
    for f in fields(Account):
        if f.name.startswith("_"):
            continue
        if f.default is not MISSING:
            defaults[f.name] = f.default
        elif f.default_factory is not MISSING:  # type: ignore[misc]
            defaults[f.name] = f.default_factory()  # type: ignore[misc]
        else:
            defaults[f.name] = None
    return defaults
