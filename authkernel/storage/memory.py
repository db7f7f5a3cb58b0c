from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from authkernel.logging import get_logger
from authkernel.storage.common import (
    account_from_document,
    account_to_document,
    normalize_email,
    parse_criteria,
    utcnow,
)
from authkernel.storage.errors import (
    ConstraintViolation,
    StaleAccountError,
    StorageUnavailable,
)
from authkernel.storage.models import Account


class MemoryAccountRepository:
    """In-memory account repository, optionally mirrored to a JSON state file.

    Accounts are stored as documents; callers always receive copies so an
    unsaved mutation never leaks into the store.
    """

    def __init__(self, state_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # RLock so helpers can nest inside a locked save
        self._data_lock = threading.RLock()
        self.state_root = Path(state_root) if state_root else None
        if self.state_root is not None:
            self.state_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.state_root is not None
        state_dir = self.state_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accounts.json"

    def load(self, **criteria: Any) -> Optional[Account]:
        name, value = parse_criteria(criteria)
        with self._data_lock:
            if name == "id":
                found = self.accounts.get(value)
            else:
                found = next(
                    (a for a in self.accounts.values() if getattr(a, name) == value),
                    None,
                )
            return found.copy() if found else None

    def find_by_id(self, account_id: str) -> Optional[Account]:
        return self.load(id=account_id)

    def find_by_email(self, email: str) -> Optional[Account]:
        return self.load(email=email)

    def find_by_session_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        with self._data_lock:
            found = next(
                (a for a in self.accounts.values() if token in a.auth_tokens), None
            )
            return found.copy() if found else None

    def save(self, account: Account) -> Account:
        with self._data_lock:
            stored = self.accounts.get(account.id)
            if account.is_new and stored is not None:
                raise ConstraintViolation("account already exists", {"id": account.id})
            if not account.is_new:
                if stored is None:
                    raise StaleAccountError("account no longer exists", {"id": account.id})
                if stored.lock_version != account.lock_version:
                    raise StaleAccountError(
                        "account was modified concurrently",
                        {"id": account.id, "lock_version": account.lock_version},
                    )
            email = normalize_email(account.email)
            if email and any(
                other.id != account.id and other.email == email
                for other in self.accounts.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})

            now = utcnow()
            candidate = account.copy()
            candidate.email = email
            if candidate.created_at is None:
                candidate.created_at = now
            candidate.updated_at = now
            candidate.lock_version += 1
            candidate.mark_persisted()
            self.accounts[account.id] = candidate
            try:
                self._persist_state()
            except StorageUnavailable:
                if stored is None:
                    self.accounts.pop(account.id, None)
                else:
                    self.accounts[account.id] = stored
                raise

            account.email = candidate.email
            account.created_at = candidate.created_at
            account.updated_at = candidate.updated_at
            account.lock_version = candidate.lock_version
            account.mark_persisted()
            return account

    def delete(self, account_id: str) -> bool:
        with self._data_lock:
            if account_id not in self.accounts:
                return False
            self.accounts.pop(account_id, None)
            self._persist_state()
            return True

    def _persist_state(self) -> None:
        if self.state_root is None:
            return
        state = {"accounts": [account_to_document(a) for a in self.accounts.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StorageUnavailable(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            doc["id"]: account_from_document(doc) for doc in data.get("accounts", [])
        }
        self.logger.debug("memory_state_loaded", accounts=len(self.accounts))
        return True


__all__ = ["MemoryAccountRepository"]
