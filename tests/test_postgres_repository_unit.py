from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from authkernel.storage.errors import ConstraintViolation, StaleAccountError, StorageUnavailable
from authkernel.storage.models import Account
from authkernel.storage.postgres import PostgresAccountRepository


class _Violation(errors.UniqueViolation):
    def __init__(self, constraint):
        super().__init__("duplicate key value violates unique constraint")
        self._constraint = constraint

    @property
    def diag(self):
        return SimpleNamespace(constraint_name=self._constraint)


class FakeCursor:
    def __init__(self, row=None, rowcount=1):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params=None):
        self.pool.queries.append((" ".join(query.split()), params))
        if self.pool.raises is not None:
            raise self.pool.raises
        return self.pool.cursor


class FakePool:
    def __init__(self, cursor=None, raises=None):
        self.queries = []
        self.cursor = cursor or FakeCursor()
        self.raises = raises

    def connection(self):
        return FakeConnection(self)


def _repo(pool):
    repo = PostgresAccountRepository.__new__(PostgresAccountRepository)
    repo.dsn = "postgresql://unused"
    repo.pool = pool
    repo.logger = None
    return repo


def _persisted(**attrs):
    account = Account.new("user@example.com", **attrs)
    account.lock_version = 3
    account.mark_persisted()
    return account


def test_insert_for_new_account():
    pool = FakePool()
    account = Account.new("  User@Example.com", auth_tokens=["t1"])
    _repo(pool).save(account)

    (query, params), = pool.queries
    assert query.startswith("INSERT INTO auth_account (id, email,")
    assert params[0] == account.id
    assert params[1] == "user@example.com"
    assert params[-1] == 1
    assert account.lock_version == 1
    assert not account.is_new


def test_update_is_conditional_on_lock_version():
    pool = FakePool()
    account = _persisted()
    account.failed_attempts = 2
    _repo(pool).save(account)

    (query, params), = pool.queries
    assert query.startswith("UPDATE auth_account SET")
    assert query.endswith("WHERE id = %s AND lock_version = %s")
    assert params[-2:] == (account.id, 3)
    assert account.lock_version == 4


def test_update_without_matching_row_is_stale():
    account = _persisted()
    with pytest.raises(StaleAccountError):
        _repo(FakePool(cursor=FakeCursor(rowcount=0))).save(account)
    assert account.lock_version == 3


@pytest.mark.parametrize(
    "constraint,message",
    [
        ("auth_account_pkey", "account already exists"),
        ("auth_account_email_key", "email already exists"),
        ("auth_account_unlock_token_key", "unique constraint violated"),
        (None, "email already exists"),
    ],
)
def test_unique_violations_are_mapped(constraint, message):
    repo = _repo(FakePool(raises=_Violation(constraint)))
    with pytest.raises(ConstraintViolation) as excinfo:
        repo.save(Account.new("user@example.com"))
    assert excinfo.value.message == message


def test_operational_error_is_storage_unavailable():
    repo = _repo(FakePool(raises=errors.OperationalError("server closed the connection")))
    with pytest.raises(StorageUnavailable):
        repo.find_by_email("user@example.com")
    with pytest.raises(StorageUnavailable):
        repo.save(_persisted())


def test_load_maps_row_to_account():
    sent_at = datetime(2024, 1, 15, 12, 0)
    row = {
        "id": "abc",
        "email": "user@example.com",
        "auth_tokens": None,
        "confirmation_token": "conf",
        "confirmation_sent_at": sent_at,
        "failed_attempts": None,
        "lock_version": 7,
    }
    pool = FakePool(cursor=FakeCursor(row=row))
    account = _repo(pool).load(confirmation_token="conf")

    assert pool.queries == [("SELECT * FROM auth_account WHERE confirmation_token = %s", ("conf",))]
    assert account.id == "abc"
    assert account.auth_tokens == []
    assert account.failed_attempts == 0
    assert account.lock_version == 7
    assert account.confirmation_sent_at == sent_at.replace(tzinfo=timezone.utc)
    assert not account.is_new
    assert not account.has_changes()


def test_session_token_lookup_uses_array_membership():
    pool = FakePool(cursor=FakeCursor(row=None))
    assert _repo(pool).find_by_session_token("tok") is None
    assert pool.queries == [("SELECT * FROM auth_account WHERE %s = ANY(auth_tokens)", ("tok",))]


def test_lookup_rejects_unknown_fields():
    repo = _repo(FakePool())
    with pytest.raises(ValueError):
        repo.load(password_hash="x")


def test_delete_reports_rowcount():
    assert _repo(FakePool(cursor=FakeCursor(rowcount=1))).delete("abc") is True
    assert _repo(FakePool(cursor=FakeCursor(rowcount=0))).delete("abc") is False
