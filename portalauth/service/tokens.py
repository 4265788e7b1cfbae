from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from portalauth.config import MIN_JWT_SECRET_BYTES
from portalauth.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

# Fields the codec adds on top of caller-supplied claims
STANDARD_CLAIMS = frozenset({"type", "iat", "exp", "jti"})


class TokenFailure(str, Enum):
    INVALID = "invalid"
    EXPIRED = "expired"
    MALFORMED_SIGNATURE = "malformed_signature"


@dataclass(frozen=True)
class TokenVerification:
    claims: Optional[Dict[str, Any]] = None
    failure: Optional[TokenFailure] = None

    @property
    def ok(self) -> bool:
        return self.claims is not None

    def of_type(self, token_type: str) -> Optional[Dict[str, Any]]:
        """Claims if verification succeeded and the type discriminator matches."""
        if self.claims is None or self.claims.get("type") != token_type:
            return None
        return self.claims


def token_hash(token: str) -> str:
    """One-way digest stored in place of a refresh token."""
    return hashlib.sha256(token.encode()).hexdigest()


class TokenCodec:
    """HS256 compact tokens for access and refresh credentials."""

    def __init__(
        self,
        secret: Optional[str],
        *,
        access_ttl_seconds: int = 24 * 60 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        clock_skew_seconds: int = 0,
    ) -> None:
        if not secret or len(secret.encode()) < MIN_JWT_SECRET_BYTES:
            raise ValueError(
                f"token signing secret must be at least {MIN_JWT_SECRET_BYTES} bytes"
            )
        self._secret = secret.encode()
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._clock_skew_seconds = clock_skew_seconds

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

    def _encode(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _issue(self, claims: Dict[str, Any], token_type: str, ttl_seconds: int) -> str:
        now = int(time.time())
        payload = {
            **{k: v for k, v in claims.items() if k not in STANDARD_CLAIMS},
            "type": token_type,
            "iat": now,
            "exp": now + ttl_seconds,
            # distinct tokens even when issued within the same second
            "jti": str(uuid.uuid4()),
        }
        return self._encode(payload)

    def issue_access(self, claims: Dict[str, Any]) -> str:
        return self._issue(claims, ACCESS, self.access_ttl_seconds)

    def issue_refresh(self, principal_id: str) -> str:
        return self._issue({"userId": principal_id}, REFRESH, self.refresh_ttl_seconds)

    def verify(self, token: Optional[str]) -> TokenVerification:
        """Verify an untrusted token. Never raises."""
        if not token or not isinstance(token, str):
            return TokenVerification(failure=TokenFailure.INVALID)
        parts = token.split(".")
        if len(parts) != 3:
            return TokenVerification(failure=TokenFailure.INVALID)
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return TokenVerification(failure=TokenFailure.INVALID)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return TokenVerification(failure=TokenFailure.INVALID)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return TokenVerification(failure=TokenFailure.MALFORMED_SIGNATURE)

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return TokenVerification(failure=TokenFailure.INVALID)
        if not isinstance(payload, dict):
            return TokenVerification(failure=TokenFailure.INVALID)
        if payload.get("type") not in {ACCESS, REFRESH} or not payload.get("userId"):
            return TokenVerification(failure=TokenFailure.INVALID)

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return TokenVerification(failure=TokenFailure.INVALID)
        if exp_ts <= time.time() - self._clock_skew_seconds:
            return TokenVerification(failure=TokenFailure.EXPIRED)
        return TokenVerification(claims=payload)
