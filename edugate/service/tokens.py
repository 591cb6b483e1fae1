from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Callable, Optional

from edugate.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
RESET = "reset"
VERIFY = "verify"

TOKEN_TYPES = frozenset({ACCESS, REFRESH, RESET, VERIFY})


class TokenCodec:
    """Compact HS256 JWT signer and verifier.

    Every minted token carries ``iss``, ``aud``, ``iat`` (float seconds),
    ``exp``, a random ``jti`` and a ``token_type`` claim. ``decode`` returns
    ``None`` for any token that is malformed, signed with another key or
    algorithm, addressed to another issuer/audience, of the wrong type, or
    expired beyond the configured leeway.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: float = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must be set")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(
        self, claims: dict[str, Any], *, token_type: str, ttl_seconds: int
    ) -> str:
        """Sign ``claims`` as a token of ``token_type`` valid for ``ttl_seconds``."""
        if token_type not in TOKEN_TYPES:
            raise ValueError(f"unknown token type: {token_type}")
        now = self._clock()
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": int(now + ttl_seconds),
            "jti": str(uuid.uuid4()),
            "token_type": token_type,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(
        self, token: str, *, token_type: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion ("none", RS256).
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(
            self._sign(signing_input).encode(), sig_b64.encode()
        ):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        if token_type is not None and payload.get("token_type") != token_type:
            return None
        try:
            exp_ts = float(payload["exp"])
            float(payload["iat"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self._clock() - self.leeway_seconds:
            return None
        if not payload.get("sub"):
            return None
        return payload
