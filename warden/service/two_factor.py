from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from typing import List, Optional
from urllib.parse import quote, urlencode

from cryptography.fernet import Fernet, InvalidToken

from warden.config import Settings
from warden.logging import get_logger
from warden.service.clock import Clock, utc_now

logger = get_logger(__name__)

TOTP_DIGITS = 6
TOTP_INTERVAL = 30


class TwoFactorService:
    """RFC 6238 TOTP plus single-use backup codes.

    Secrets are stored Fernet-encrypted; the key is derived from
    ``MFA_SECRET_KEY`` or, when unset, the JWT secret.
    """

    def __init__(self, settings: Settings, *, clock: Clock = utc_now) -> None:
        self.settings = settings
        self.clock = clock
        self.issuer = settings.totp_issuer
        self.window = settings.totp_window
        self.backup_code_count = settings.backup_code_count
        self._cipher = self._build_cipher(settings.mfa_secret_key or settings.jwt_secret)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str) -> Fernet:
        try:
            return Fernet(self._derive_cipher_key(key_material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    def encrypt_secret(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode()).decode()

    def decrypt_secret(self, stored: str) -> Optional[str]:
        try:
            return self._cipher.decrypt(stored.encode()).decode()
        except InvalidToken:
            logger.warning("mfa_secret_decrypt_failed")
            return None

    @staticmethod
    def generate_secret() -> str:
        return base64.b32encode(secrets.token_bytes(20)).decode("utf-8").rstrip("=")

    def generate_backup_codes(self, count: Optional[int] = None) -> List[str]:
        return [secrets.token_hex(4).upper() for _ in range(count or self.backup_code_count)]

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        label = quote(f"{self.issuer}:{account_name}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    def generate_code(self, secret: str, timestamp: Optional[float] = None) -> str:
        if timestamp is None:
            timestamp = self.clock().timestamp()
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (ValueError, TypeError):
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // TOTP_INTERVAL).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**TOTP_DIGITS
        )
        return str(code_int).zfill(TOTP_DIGITS)

    def verify_code(self, secret: str, code: Optional[str]) -> bool:
        if not code:
            return False
        code = code.strip().replace(" ", "")
        if len(code) != TOTP_DIGITS or not (code.isascii() and code.isdigit()):
            return False
        now = self.clock().timestamp()
        for step in range(-self.window, self.window + 1):
            generated = self.generate_code(secret, now + step * TOTP_INTERVAL)
            if generated and hmac.compare_digest(generated.encode(), code.encode()):
                return True
        return False


__all__ = ["TOTP_DIGITS", "TOTP_INTERVAL", "TwoFactorService"]
