from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Optional

from gatehouse.logging import get_logger

logger = get_logger(__name__)


class SignedTokenCodec:
    """Compact HS256 tokens (``header.payload.signature``) keyed by a shared secret.

    Tokens carry an ``iss``, an absolute ``exp`` and a ``typ`` claim so one
    secret can sign several kinds of capability without them being swapped.
    """

    def __init__(self, secret: str, issuer: str) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer

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

    def encode(self, typ: str, claims: dict[str, Any], ttl_seconds: int) -> str:
        now = int(time.time())
        payload = {
            **claims,
            "iss": self.issuer,
            "typ": typ,
            "iat": now,
            "exp": now + ttl_seconds,
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

    def decode(self, token: str | None, typ: str) -> Optional[dict[str, Any]]:
        """Return the claims of a well-signed, unexpired token of kind ``typ``."""
        if not token or not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("signed_token_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("signed_token_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(
            self._sign(signing_input).encode(), sig_b64.encode("utf-8", "surrogatepass")
        ):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("signed_token_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer or payload.get("typ") != typ:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time():
            return None
        return payload


class SingleUseTokenIssuer:
    """Signs magic-link tokens bound to a subject email."""

    token_type = "magic_link"

    def __init__(self, codec: SignedTokenCodec) -> None:
        self.codec = codec

    def issue(self, subject_email: str, ttl_minutes: int) -> str:
        return self.codec.encode(
            self.token_type,
            {"sub": subject_email, "jti": secrets.token_urlsafe(16)},
            ttl_minutes * 60,
        )

    def verify(self, token: str, expected_subject: str) -> Optional[dict[str, Any]]:
        claims = self.codec.decode(token, self.token_type)
        if not claims:
            return None
        subject = claims.get("sub")
        if not isinstance(subject, str) or not hmac.compare_digest(
            subject.encode(), expected_subject.encode()
        ):
            return None
        return claims
