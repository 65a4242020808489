from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import re
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from youthauth.config import Settings
from youthauth.logging import get_logger
from youthauth.service.errors import InvalidAccessToken, MalformedToken

logger = get_logger(__name__)

# 48 random bytes -> 64 url-safe characters
REFRESH_TOKEN_BYTES = 48
_REFRESH_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{43,128}$")
MAX_TOKEN_LENGTH = 4096


@dataclass(frozen=True)
class AccessClaims:
    subject_id: str
    role: str
    issued_at: int
    expires_at: int
    token_id: str


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """HS256 access tokens and opaque refresh tokens.

    Access tokens carry ``sub``, ``role``, ``iat``, ``exp`` and a ``jti`` used
    as the blacklist key. The header ``kid`` names the signing key; retired
    keys stay in ``previous_keys`` so tokens they signed verify until expiry.
    Refresh tokens are random strings with no embedded claims.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        key_id: str = "primary",
        previous_keys: Optional[Mapping[str, str]] = None,
        clock_skew_seconds: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self.issuer = issuer
        self.audience = audience
        self.key_id = key_id
        self._keys: dict[str, bytes] = {
            kid: value.encode() for kid, value in (previous_keys or {}).items()
        }
        self._keys[key_id] = secret.encode()
        self.clock_skew_seconds = clock_skew_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            key_id=settings.jwt_key_id,
            previous_keys=settings.jwt_previous_keys,
            clock_skew_seconds=settings.jwt_clock_skew_seconds,
        )

    def _sign(self, key: bytes, signing_input: str) -> str:
        return _encode_segment(hmac.new(key, signing_input.encode(), hashlib.sha256).digest())

    def issue_access(self, subject_id: str, role: str, ttl_seconds: int) -> str:
        now = int(self._clock())
        header = {"alg": "HS256", "typ": "JWT", "kid": self.key_id}
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject_id,
            "role": role,
            "token_type": "access",
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + int(ttl_seconds),
        }
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(self._keys[self.key_id], signing_input)}"

    def issue_refresh(self) -> str:
        return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)

    @staticmethod
    def is_refresh_format(value: Optional[str]) -> bool:
        return isinstance(value, str) and bool(_REFRESH_TOKEN_PATTERN.match(value))

    def _split(self, token: str) -> tuple[dict[str, Any], str, str, str]:
        if not isinstance(token, str) or not token or len(token) > MAX_TOKEN_LENGTH:
            raise MalformedToken("malformed token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedToken("malformed token")
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise MalformedToken("malformed token header")
        if not isinstance(header, dict):
            raise MalformedToken("malformed token header")
        return header, header_b64, payload_b64, sig_b64

    @staticmethod
    def _parse_payload(payload_b64: str) -> dict[str, Any]:
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise MalformedToken("malformed token payload")
        if not isinstance(payload, dict):
            raise MalformedToken("malformed token payload")
        return payload

    def _verified_payload(self, token: str) -> dict[str, Any]:
        header, header_b64, payload_b64, sig_b64 = self._split(token)
        # Reject anything but HS256 to block algorithm confusion
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidAccessToken("invalid token")
        key = self._keys.get(header.get("kid") or self.key_id)
        if key is None:
            logger.info("jwt_unknown_key_id", kid=header.get("kid"))
            raise InvalidAccessToken("invalid token")
        expected_sig = self._sign(key, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidAccessToken("invalid token")
        payload = self._parse_payload(payload_b64)
        if payload.get("iss") != self.issuer:
            raise InvalidAccessToken("invalid token")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud or payload.get("token_type") != "access":
            raise InvalidAccessToken("invalid token")
        return payload

    def decode_access(self, token: str) -> AccessClaims:
        payload = self._verified_payload(token)
        try:
            exp = int(payload["exp"])
            iat = int(payload.get("iat", 0))
            subject_id = str(payload["sub"])
            role = str(payload["role"])
            token_id = str(payload["jti"])
        except (KeyError, TypeError, ValueError):
            raise MalformedToken("malformed token claims")
        if exp <= self._clock() - self.clock_skew_seconds:
            raise InvalidAccessToken("token expired")
        return AccessClaims(
            subject_id=subject_id,
            role=role,
            issued_at=iat,
            expires_at=exp,
            token_id=token_id,
        )

    def peek_token_id(self, token: str) -> Optional[str]:
        """Read ``jti`` without verifying; only used as a blacklist lookup key."""
        try:
            _, _, payload_b64, _ = self._split(token)
            jti = self._parse_payload(payload_b64).get("jti")
        except MalformedToken:
            return None
        return jti if isinstance(jti, str) and jti else None

    def remaining_ttl(self, token: str) -> int:
        """Seconds until the codec stops accepting ``token``; 0 if it already would not."""
        try:
            claims = self.decode_access(token)
        except InvalidAccessToken:
            return 0
        return max(0, math.ceil(claims.expires_at + self.clock_skew_seconds - self._clock()))
