from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from portal_access.logging import get_logger
from portal_access.service.clock import Clock, SystemClock

logger = get_logger(__name__)

SESSION_TOKEN_TYPE = "customer_session"
OTP_MIN = 100000
OTP_MAX = 999999


class TokenGenerator:
    """Cryptographically secure link tokens and numeric one-time codes."""

    def __init__(self, link_token_bytes: int = 64) -> None:
        if link_token_bytes < 16:
            raise ValueError("link tokens need at least 128 bits of randomness")
        self.link_token_bytes = link_token_bytes

    def link_token(self) -> str:
        """Opaque lowercase hex token, two characters per random byte."""
        return secrets.token_hex(self.link_token_bytes)

    def otp_code(self) -> str:
        """Six digits drawn uniformly from 100000..999999 (never zero-padded)."""
        return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


@dataclass(frozen=True)
class SessionClaims:
    client_id: str
    tenant_id: str
    issued_at: int
    expires_at: int
    jti: str


class SessionTokenSigner:
    """HS256-signed, stateless session credentials.

    The full claim set is assembled before signing. Verification is a pure CPU
    check (shape, algorithm, signature, issuer, type, advisory expiry); whether
    the session is still live is decided by the stored session row.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "portal-access",
        ttl_days: int = 90,
        clock: Optional[Clock] = None,
    ) -> None:
        if not secret:
            raise ValueError("session token secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.ttl = timedelta(days=ttl_days)
        self.clock = clock or SystemClock()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(self, client_id: str, tenant_id: str) -> str:
        now = self.clock.now()
        payload = {
            "iss": self.issuer,
            "type": SESSION_TOKEN_TYPE,
            "client_id": client_id,
            "tenant_id": tenant_id,
            "iat": int(now.timestamp()),
            "exp": int((now + self.ttl).timestamp()),
            "jti": str(uuid.uuid4()),
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: Optional[str]) -> Optional[SessionClaims]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("session_token_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("session_token_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload: Any = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("session_token_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("type") != SESSION_TOKEN_TYPE or payload.get("iss") != self.issuer:
            return None
        client_id = payload.get("client_id")
        tenant_id = payload.get("tenant_id")
        if not isinstance(client_id, str) or not isinstance(tenant_id, str):
            return None
        try:
            issued_at = int(payload["iat"])
            expires_at = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if expires_at <= self.clock.now().timestamp():
            return None
        return SessionClaims(
            client_id=client_id,
            tenant_id=tenant_id,
            issued_at=issued_at,
            expires_at=expires_at,
            jti=str(payload.get("jti", "")),
        )
