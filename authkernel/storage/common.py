"""Common storage utilities shared between the repository implementations.

Memory, Redis and Postgres repositories all serialize the same ``Account``
shape; the helpers here keep the conversion and lookup rules identical
across backends.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Protocol, Tuple

from authkernel.storage.models import LOOKUP_FIELDS, Account

_DATETIME_FIELDS = frozenset(
    {
        "confirmation_sent_at",
        "confirmed_at",
        "reset_password_sent_at",
        "invitation_sent_at",
        "invitation_accepted_at",
        "first_failed_attempt_at",
        "locked_at",
        "last_sign_in_at",
        "created_at",
        "updated_at",
    }
)


class AccountRepository(Protocol):
    """Persistence contract the coordinator depends on.

    ``save`` must be an atomic read-modify-write keyed on ``lock_version``:
    a concurrent writer that saved first makes this save raise
    ``StaleAccountError`` instead of silently losing its changes.
    """

    def load(self, **criteria: Any) -> Optional[Account]: ...

    def save(self, account: Account) -> Account: ...

    def find_by_id(self, account_id: str) -> Optional[Account]: ...

    def find_by_email(self, email: str) -> Optional[Account]: ...

    def find_by_session_token(self, token: str) -> Optional[Account]: ...

    def delete(self, account_id: str) -> bool: ...


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    normalized = email.strip().lower()
    return normalized or None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps coming back from a backend as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_criteria(criteria: Dict[str, Any]) -> Tuple[str, Any]:
    """Validate ``load`` criteria: exactly one supported lookup field."""
    provided = {k: v for k, v in criteria.items() if v is not None}
    if len(provided) != 1:
        raise ValueError("load() expects exactly one lookup criterion")
    ((name, value),) = provided.items()
    if name not in LOOKUP_FIELDS:
        raise ValueError(f"unsupported lookup field: {name}")
    if name == "email":
        value = normalize_email(value)
    return name, value


def account_to_document(account: Account) -> Dict[str, Any]:
    doc: Dict[str, Any] = {}
    for name in account.tracked_fields():
        value = getattr(account, name)
        if name in _DATETIME_FIELDS and value is not None:
            value = ensure_aware(value).isoformat()
        elif name == "auth_tokens":
            value = list(value or [])
        doc[name] = value
    return doc


def account_from_document(doc: Dict[str, Any]) -> Account:
    values: Dict[str, Any] = {}
    for name in Account.__dataclass_fields__:
        if name.startswith("_") or name not in doc:
            continue
        value = doc[name]
        if name in _DATETIME_FIELDS and isinstance(value, str):
            value = ensure_aware(datetime.fromisoformat(value))
        elif name in _DATETIME_FIELDS:
            value = ensure_aware(value)
        elif name == "auth_tokens":
            value = list(value or [])
        values[name] = value
    account = Account(**values)
    account.mark_persisted()
    return account


def dumps_document(account: Account) -> str:
    return json.dumps(account_to_document(account), separators=(",", ":"))


def loads_document(raw: Any) -> Account:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return account_from_document(json.loads(raw))


def index_values(account: Account, field_name: str, *, baseline: bool = False) -> Iterable[str]:
    """Return the lookup keys an account contributes for ``field_name``."""
    if field_name == "auth_tokens":
        tokens = account.was("auth_tokens") if baseline else account.auth_tokens
        return [t for t in (tokens or []) if t]
    value = account.was(field_name) if baseline else getattr(account, field_name)
    return [value] if value else []


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely get a value from a database row (dict-like or object)."""
    if row is None:
        return default
    if isinstance(row, dict):
        return row.get(key, default)
    if hasattr(row, "get"):
        return row.get(key, default)
    return getattr(row, key, default)
