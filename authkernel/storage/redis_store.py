from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

from redis import Redis
from redis.exceptions import RedisError, WatchError

from authkernel.logging import get_logger
from authkernel.storage.common import (
    dumps_document,
    index_values,
    loads_document,
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

# Account fields that get a reverse index key pointing back to the account id.
_INDEXED_FIELDS = (
    "email",
    "confirmation_token",
    "reset_password_token",
    "invitation_token",
    "unlock_token",
    "auth_tokens",
)


def _as_text(value: Any) -> Any:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class RedisAccountRepository:
    """Document-flavoured account repository on top of Redis.

    Each account is one JSON document under ``{prefix}:account:{id}``.
    Email and token lookups go through index keys
    ``{prefix}:idx:{field}:{value}`` holding the account id. Saves run inside
    WATCH/MULTI so a concurrent writer turns into ``StaleAccountError``.
    """

    def __init__(self, client: Redis, *, prefix: str = "authkernel") -> None:
        self.client = client
        self.prefix = prefix
        self.logger = get_logger(__name__)

    @classmethod
    def from_url(
        cls, redis_url: str, *, prefix: str = "authkernel", socket_timeout: float = 5.0
    ) -> "RedisAccountRepository":
        client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, prefix=prefix)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        self.client.ping()

    def _account_key(self, account_id: str) -> str:
        return f"{self.prefix}:account:{account_id}"

    def _index_key(self, field_name: str, value: str) -> str:
        # session tokens share one namespace regardless of list position
        name = "auth_token" if field_name == "auth_tokens" else field_name
        return f"{self.prefix}:idx:{name}:{value}"

    def _read(self, account_id: str) -> Optional[Account]:
        raw = self.client.get(self._account_key(account_id))
        if raw is None:
            return None
        return loads_document(raw)

    def _lookup(self, field_name: str, value: str) -> Optional[Account]:
        try:
            account_id = _as_text(self.client.get(self._index_key(field_name, value)))
            if account_id is None:
                return None
            account = self._read(account_id)
        except RedisError as exc:
            raise StorageUnavailable(f"redis lookup failed: {exc}") from exc
        if account is None:
            self.logger.warning("redis_index_dangling", field=field_name, account_id=account_id)
            return None
        # an index key can briefly outlive the value it pointed to
        if value not in index_values(account, field_name):
            return None
        return account

    def load(self, **criteria: Any) -> Optional[Account]:
        name, value = parse_criteria(criteria)
        if name == "id":
            try:
                return self._read(value)
            except RedisError as exc:
                raise StorageUnavailable(f"redis lookup failed: {exc}") from exc
        return self._lookup(name, value)

    def find_by_id(self, account_id: str) -> Optional[Account]:
        return self.load(id=account_id)

    def find_by_email(self, email: str) -> Optional[Account]:
        return self.load(email=email)

    def find_by_session_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        return self._lookup("auth_tokens", token)

    def _index_diff(
        self, previous: Account, current: Account, *, baseline: bool
    ) -> Tuple[List[str], Dict[str, str]]:
        """Return index keys to drop and keys to (re)write for a save."""
        drop: List[str] = []
        write: Dict[str, str] = {}
        for field_name in _INDEXED_FIELDS:
            old = set(index_values(previous, field_name, baseline=baseline))
            new = set(index_values(current, field_name))
            drop.extend(self._index_key(field_name, v) for v in old - new)
            write.update({self._index_key(field_name, v): current.id for v in new})
        return drop, write

    def save(self, account: Account) -> Account:
        account_key = self._account_key(account.id)
        email = normalize_email(account.email)
        watched: List[str] = [account_key]
        if email:
            watched.append(self._index_key("email", email))

        candidate = account.copy()
        candidate.email = email
        now = utcnow()
        if candidate.created_at is None:
            candidate.created_at = now
        candidate.updated_at = now
        candidate.lock_version = account.lock_version + 1

        try:
            with self.client.pipeline() as pipe:
                pipe.watch(*watched)
                stored_raw = pipe.get(account_key)
                if account.is_new and stored_raw is not None:
                    raise ConstraintViolation("account already exists", {"id": account.id})
                if not account.is_new:
                    if stored_raw is None:
                        raise StaleAccountError("account no longer exists", {"id": account.id})
                    stored = loads_document(stored_raw)
                    if stored.lock_version != account.lock_version:
                        raise StaleAccountError(
                            "account was modified concurrently",
                            {"id": account.id, "lock_version": account.lock_version},
                        )
                if email:
                    owner = _as_text(pipe.get(self._index_key("email", email)))
                    if owner is not None and owner != account.id:
                        raise ConstraintViolation("email already exists", {"field": "email"})

                drop, write = self._index_diff(account, candidate, baseline=True)
                pipe.multi()
                pipe.set(account_key, dumps_document(candidate))
                if drop:
                    pipe.delete(*drop)
                for key, value in write.items():
                    pipe.set(key, value)
                pipe.execute()
        except WatchError as exc:
            raise StaleAccountError(
                "account was modified concurrently", {"id": account.id}
            ) from exc
        except RedisError as exc:
            raise StorageUnavailable(f"redis save failed: {exc}") from exc

        account.email = candidate.email
        account.created_at = candidate.created_at
        account.updated_at = candidate.updated_at
        account.lock_version = candidate.lock_version
        account.mark_persisted()
        return account

    def delete(self, account_id: str) -> bool:
        try:
            account = self._read(account_id)
            if account is None:
                return False
            keys: Iterable[str] = [
                self._index_key(field_name, value)
                for field_name in _INDEXED_FIELDS
                for value in index_values(account, field_name)
            ]
            with self.client.pipeline() as pipe:
                pipe.delete(self._account_key(account_id), *keys)
                pipe.execute()
        except RedisError as exc:
            raise StorageUnavailable(f"redis delete failed: {exc}") from exc
        return True


__all__ = ["RedisAccountRepository"]
