from __future__ import annotations

import secrets

# Bitcoin-style base58 (no 0, O, I or l)
BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
DEFAULT_TOKEN_LENGTH = 24


class TokenGenerator:
    """Opaque URL-safe tokens for sessions, confirmation, recovery and invitations.

    24 base58 characters carry roughly 140 bits of entropy.
    """

    def __init__(self, length: int = DEFAULT_TOKEN_LENGTH) -> None:
        if length < 22:
            # below 22 characters base58 drops under 128 bits
            raise ValueError("token length must be at least 22")
        self.length = length

    def generate(self) -> str:
        return "".join(secrets.choice(BASE58_ALPHABET) for _ in range(self.length))

    __call__ = generate


_default_generator = TokenGenerator()


def generate_token() -> str:
    return _default_generator.generate()


__all__ = ["BASE58_ALPHABET", "DEFAULT_TOKEN_LENGTH", "TokenGenerator", "generate_token"]
