from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, Optional

from unityauth.config import Settings
from unityauth.logging import get_logger

logger = get_logger(__name__)

REFRESH_TOKEN_BYTES = 48


@dataclass(frozen=True)
class AccessClaims:
    sub: str
    territory_code: str
    user_id: str
    username: str
    iat: int
    exp: int


def hash_refresh_token(raw_token: str) -> str:
    """One-way digest under which a refresh token is stored and looked up."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


class TokenCodec:
    """Signs and verifies HS256 access tokens and mints opaque refresh tokens."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        self.access_ttl = settings.access_token_ttl_seconds
        self._leeway = settings.jwt_leeway_seconds

    @property
    def expires_in(self) -> int:
        return self.access_ttl

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Only HS256 is accepted; anything else is an algorithm-confusion attempt
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, RecursionError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, RecursionError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        if exp <= time.time() - self._leeway:
            return None
        return payload

    def issue(
        self,
        subject: str,
        territory_code: str,
        user_id: str,
        username: str,
        *,
        now: Optional[int] = None,
    ) -> str:
        issued_at = int(now if now is not None else time.time())
        payload = {
            "sub": subject,
            "territory_code": territory_code,
            "user_id": user_id,
            "username": username,
            "iat": issued_at,
            "exp": issued_at + self.access_ttl,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "token_type": "access",
        }
        return self._encode_jwt(payload)

    def verify(self, token: str) -> Optional[AccessClaims]:
        """Return the claims of a valid access token, otherwise None."""
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        try:
            return AccessClaims(
                sub=str(payload["sub"]),
                territory_code=str(payload["territory_code"]),
                user_id=str(payload["user_id"]),
                username=str(payload["username"]),
                iat=int(payload["iat"]),
                exp=int(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("jwt_claims_incomplete")
            return None

    def issue_refresh(self) -> str:
        return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)

    def hash_refresh(self, raw_token: str) -> str:
        return hash_refresh_token(raw_token)
