from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import Any, Optional

from clinauth.logging import get_logger

logger = get_logger(__name__)


class SignedTokenCodec:
    """Compact HS256 tokens for client-held state (cookies).

    Layout is ``header.payload.signature`` with base64url segments. Each token
    carries a ``typ`` so a token minted for one cookie cannot be replayed as
    another, and an ``exp`` checked against the caller's clock.
    """

    def __init__(self, secret_key: str, *, issuer: str = "clinauth") -> None:
        self._secret = secret_key.encode()
        self.issuer = issuer

    @staticmethod
    def _encode_segment(raw: bytes) -> str:
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padded = segment + "=" * (-len(segment) % 4)
        return base64.urlsafe_b64decode(padded.encode())

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, typ: str, payload: dict[str, Any], *, expires_at: float) -> str:
        header = {"alg": "HS256", "typ": typ}
        body = {**payload, "iss": self.issuer, "exp": int(expires_at)}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(body, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: Optional[str], typ: str, *, now: float) -> Optional[dict[str, Any]]:
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input).encode(), sig_b64.encode()):
            logger.warning("signed_token_bad_signature", typ=typ)
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("signed_token_decode_failed", typ=typ)
            return None
        if header.get("alg") != "HS256" or header.get("typ") != typ:
            return None
        if payload.get("iss") != self.issuer:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= now:
            return None
        return payload
