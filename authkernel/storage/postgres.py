from __future__ import annotations

from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authkernel.logging import get_logger
from authkernel.storage.common import (
    account_from_document,
    normalize_email,
    parse_criteria,
    safe_row_value,
    utcnow,
)
from authkernel.storage.errors import (
    ConstraintViolation,
    StaleAccountError,
    StorageUnavailable,
)
from authkernel.storage.models import Account

_TABLE = "auth_account"


class PostgresAccountRepository:
    """Relational account repository backed by a single ``auth_account`` table.

    Session tokens live in a ``TEXT[]`` column; updates are conditional on
    ``lock_version`` so a concurrent writer surfaces as ``StaleAccountError``.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_account_table()

    def _connect(self):
        return self.pool.connection()

    def _ensure_account_table(self) -> None:
        """Create the ``auth_account`` table and its lookup indexes if missing."""

        with self._connect() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {_TABLE} (
                    id TEXT PRIMARY KEY,
                    email TEXT UNIQUE,
                    password_hash TEXT,
                    auth_tokens TEXT[] NOT NULL DEFAULT '{{}}',
                    unconfirmed_email TEXT,
                    confirmation_token TEXT UNIQUE,
                    confirmation_sent_at TIMESTAMPTZ,
                    confirmed_at TIMESTAMPTZ,
                    reset_password_token TEXT UNIQUE,
                    reset_password_sent_at TIMESTAMPTZ,
                    invitation_token TEXT UNIQUE,
                    invitation_sent_at TIMESTAMPTZ,
                    invitation_accepted_at TIMESTAMPTZ,
                    failed_attempts INTEGER NOT NULL DEFAULT 0,
                    first_failed_attempt_at TIMESTAMPTZ,
                    locked_at TIMESTAMPTZ,
                    unlock_token TEXT UNIQUE,
                    last_sign_in_at TIMESTAMPTZ,
                    last_sign_in_ip TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    lock_version INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS {_TABLE}_auth_tokens_idx ON {_TABLE} USING GIN (auth_tokens)"
            )

    @staticmethod
    def _account_from_row(row: Any) -> Account:
        doc: Dict[str, Any] = {}
        for name in Account.__dataclass_fields__:
            if name.startswith("_"):
                continue
            doc[name] = safe_row_value(row, name)
        doc["id"] = str(doc["id"])
        doc["auth_tokens"] = list(doc.get("auth_tokens") or [])
        doc["failed_attempts"] = doc.get("failed_attempts") or 0
        doc["lock_version"] = doc.get("lock_version") or 0
        return account_from_document(doc)

    def _fetch_one(self, query: str, params: tuple) -> Optional[Account]:
        try:
            with self._connect() as conn:
                row = conn.execute(query, params).fetchone()
        except errors.OperationalError as exc:
            raise StorageUnavailable(f"postgres lookup failed: {exc}") from exc
        if not row:
            return None
        return self._account_from_row(row)

    def load(self, **criteria: Any) -> Optional[Account]:
        name, value = parse_criteria(criteria)
        # name is one of LOOKUP_FIELDS, never caller-controlled text
        return self._fetch_one(f"SELECT * FROM {_TABLE} WHERE {name} = %s", (value,))

    def find_by_id(self, account_id: str) -> Optional[Account]:
        return self.load(id=account_id)

    def find_by_email(self, email: str) -> Optional[Account]:
        return self.load(email=email)

    def find_by_session_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        return self._fetch_one(
            f"SELECT * FROM {_TABLE} WHERE %s = ANY(auth_tokens)", (token,)
        )

    def save(self, account: Account) -> Account:
        email = normalize_email(account.email)
        now = utcnow()
        created_at = account.created_at or now
        values: Dict[str, Any] = {
            name: getattr(account, name)
            for name in account.tracked_fields()
            if name not in ("id", "created_at", "updated_at", "lock_version")
        }
        values["email"] = email
        values["auth_tokens"] = list(account.auth_tokens)
        columns: List[str] = list(values)
        next_version = account.lock_version + 1

        try:
            with self._connect() as conn:
                if account.is_new:
                    placeholders = ", ".join(["%s"] * (len(columns) + 4))
                    conn.execute(
                        f"""
                        INSERT INTO {_TABLE} (id, {", ".join(columns)}, created_at, updated_at, lock_version)
                        VALUES ({placeholders})
                        """,
                        (account.id, *values.values(), created_at, now, next_version),
                    )
                else:
                    assignments = ", ".join(f"{name} = %s" for name in columns)
                    cur = conn.execute(
                        f"""
                        UPDATE {_TABLE}
                        SET {assignments}, updated_at = %s, lock_version = %s
                        WHERE id = %s AND lock_version = %s
                        """,
                        (*values.values(), now, next_version, account.id, account.lock_version),
                    )
                    if cur.rowcount == 0:
                        raise StaleAccountError(
                            "account was modified concurrently",
                            {"id": account.id, "lock_version": account.lock_version},
                        )
        except errors.UniqueViolation as exc:
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
            if constraint == f"{_TABLE}_pkey":
                raise ConstraintViolation("account already exists", {"id": account.id}) from exc
            if constraint and "email" not in constraint:
                raise ConstraintViolation(
                    "unique constraint violated", {"constraint": constraint}
                ) from exc
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        except errors.OperationalError as exc:
            raise StorageUnavailable(f"postgres save failed: {exc}") from exc

        account.email = email
        account.created_at = created_at
        account.updated_at = now
        account.lock_version = next_version
        account.mark_persisted()
        return account

    def delete(self, account_id: str) -> bool:
        try:
            with self._connect() as conn:
                cur = conn.execute(f"DELETE FROM {_TABLE} WHERE id = %s", (account_id,))
        except errors.OperationalError as exc:
            raise StorageUnavailable(f"postgres delete failed: {exc}") from exc
        return bool(cur.rowcount)


__all__ = ["PostgresAccountRepository"]
