from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from warden.config import Settings
from warden.logging import get_logger
from warden.service.clock import Clock, utc_now
from warden.service.errors import TokenExpiredError, TokenInvalidError
from warden.storage.models import User

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"


def hash_token(raw: str) -> str:
    """SHA-256 hex digest used for session tokens and refresh tokens at rest."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class RefreshToken:
    raw: str
    hash: str


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    email: str
    token_type: str
    issued_at: datetime
    expires_at: datetime
    jti: str


class TokenIssuer:
    """Mints HS256 access tokens and opaque refresh tokens.

    Validation is structural only: signature, algorithm, issuer, audience,
    token type and expiry. Whether the session behind a token is still alive
    is the session ledger's call.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        clock: Clock = utc_now,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Clock = utc_now) -> "TokenIssuer":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock=clock,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue_access_token(self, user: User, ttl: timedelta) -> str:
        now = self.clock()
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user.id,
            "email": user.email,
            "token_type": ACCESS_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "jti": str(uuid.uuid4()),
        }
        return self._encode_jwt(payload)

    def issue_refresh_token(self) -> RefreshToken:
        raw = secrets.token_hex(64)
        return RefreshToken(raw=raw, hash=hash_token(raw))

    def validate_access_token(self, token: Optional[str]) -> AccessClaims:
        if not token:
            raise TokenInvalidError("missing token")
        if not token.isascii():
            raise TokenInvalidError("malformed token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError("malformed token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("malformed token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenInvalidError("unsupported token algorithm")

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            raise TokenInvalidError("invalid token signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("malformed token")
        if not isinstance(payload, dict):
            raise TokenInvalidError("malformed token")
        if payload.get("iss") != self.issuer:
            raise TokenInvalidError("invalid token issuer")
        aud = payload.get("aud")
        if not (aud == self.audience or (isinstance(aud, list) and self.audience in aud)):
            raise TokenInvalidError("invalid token audience")
        if payload.get("token_type") != ACCESS_TOKEN_TYPE:
            raise TokenInvalidError("wrong token type")
        if not payload.get("sub"):
            raise TokenInvalidError("token has no subject")
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError("token has no valid expiry")
        if exp_ts <= self.clock().timestamp():
            raise TokenExpiredError("token has expired")
        return AccessClaims(
            user_id=str(payload["sub"]),
            email=str(payload.get("email", "")),
            token_type=payload["token_type"],
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            jti=str(payload.get("jti", "")),
        )


__all__ = [
    "ACCESS_TOKEN_TYPE",
    "AccessClaims",
    "RefreshToken",
    "TokenIssuer",
    "hash_token",
]
