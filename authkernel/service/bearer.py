from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.storage.common import utcnow

logger = get_logger(__name__)

_RESERVED_CLAIMS = frozenset({"iss", "aud", "iat", "exp"})


class BearerCodec:
    """HS256 bearer credential carrying a session payload.

    The payload is whatever ``to_session_payload`` produced; ``decode`` hands
    back only those keys once signature, issuer, audience and expiry check
    out, and ``None`` otherwise.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
        leeway: timedelta = timedelta(seconds=30),
    ) -> None:
        if not settings.jwt_secret:
            raise ValueError("jwt_secret is required to sign bearer credentials")
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        self._clock = clock
        self._leeway = leeway

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        now = self._clock()
        claims = {
            **payload,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(now.timestamp()),
            "exp": int((now + self.settings.jwt_expiration).timestamp()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # only HS256 is accepted
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("bearer_header_decode_failed")
            return None
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("bearer_invalid_algorithm", alg=alg)
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            claims = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("bearer_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(claims, dict):
            return None
        if claims.get("iss") != self.settings.jwt_issuer:
            return None
        aud = claims.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(claims["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self._clock().timestamp() - self._leeway.total_seconds():
            return None
        return {k: v for k, v in claims.items() if k not in _RESERVED_CLAIMS}


__all__ = ["BearerCodec"]
