"""Bounded, ordered session token sets.

Every function here is pure: it takes the current token sequence and returns
a new list, leaving the caller's sequence untouched. Persisting the result is
the coordinator's job.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from authkernel.service.tokens import generate_token


class SessionMode(str, Enum):
    STATELESS = "stateless"
    SINGLE = "single"
    SLIDING_WINDOW = "sliding_window"

    @classmethod
    def for_cap(cls, cap: int) -> "SessionMode":
        if cap <= 0:
            return cls.STATELESS
        if cap == 1:
            return cls.SINGLE
        return cls.SLIDING_WINDOW


def _dedupe(tokens: Sequence[str]) -> List[str]:
    seen = set()
    ordered: List[str] = []
    for token in tokens:
        if token in seen:
            continue
        seen.add(token)
        ordered.append(token)
    return ordered


class SessionTokenSet:
    """Sliding-window multi-session policy.

    ``cap`` is ``max_simultaneous_sessions``: ``0`` means sessions are
    identified by account id instead of tokens, ``1`` keeps only the newest
    token and ``N > 1`` keeps the ``N`` most recent ones, oldest evicted first.
    """

    def __init__(self, generator: Optional[Callable[[], str]] = None) -> None:
        self._generate = generator or generate_token

    @staticmethod
    def mode(cap: int) -> SessionMode:
        return SessionMode.for_cap(cap)

    def issue(self, existing: Optional[Sequence[str]], cap: int) -> Tuple[str, List[str]]:
        new_token = self._generate()
        if cap <= 1:
            return new_token, [new_token]
        kept = list(existing or [])[-(cap - 1):]
        return new_token, _dedupe(kept + [new_token])

    @staticmethod
    def revoke(existing: Optional[Sequence[str]], token: Optional[str]) -> List[str]:
        return [t for t in (existing or []) if t != token]

    @staticmethod
    def revoke_all(existing: Optional[Sequence[str]] = None) -> List[str]:
        return []

    @staticmethod
    def resolve(existing: Optional[Sequence[str]], token: Optional[str]) -> bool:
        if not token:
            return False
        return token in (existing or [])

    def logout(self, existing: Optional[Sequence[str]], token: Optional[str], cap: int) -> List[str]:
        # single-session accounts drop everything; windows only drop the presented token
        if cap > 1:
            return self.revoke(existing, token)
        return self.revoke_all(existing)

    def regenerate(
        self, existing: Optional[Sequence[str]], cap: int, token: Optional[str] = None
    ) -> Tuple[str, List[str]]:
        remaining = self.revoke(existing, token) if token else list(existing or [])
        return self.issue(remaining, cap)


__all__ = ["SessionMode", "SessionTokenSet"]
