from __future__ import annotations

import re
import secrets
import unicodedata
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher as _Argon2, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.config import Settings
from warden.logging import get_logger
from warden.service.clock import Clock, utc_now
from warden.service.errors import (
    AccountLockedError,
    DuplicateKeyError,
    InvalidCredentialsError,
    TokenInvalidError,
    ValidationError,
)
from warden.service.lockout import LockoutPolicy
from warden.storage.errors import ConstraintViolation
from warden.storage.models import User

logger = get_logger(__name__)

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{3,30}$")
_SPECIAL_CHARS = set("@$!%*?&#^()_+-=[]{};:'\",.<>/\\|`~")


def normalize_email(value: str) -> str:
    """Lower-case, NFKC-normalize and syntax-check an email address."""
    if not isinstance(value, str):
        raise ValidationError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValidationError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValidationError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValidationError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValidationError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValidationError("invalid email address format")
    return normalized


def validate_username(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not _USERNAME_PATTERN.match(value):
        raise ValidationError(
            "username must be 3-30 characters of letters, digits, underscores or hyphens"
        )
    return value


def validate_password_strength(
    password: str, *, min_length: int = 8, max_length: int = 128
) -> str:
    """Reject passwords that miss the length bounds or a character class."""
    if not isinstance(password, str):
        raise ValidationError("password must be a string")
    problems: List[str] = []
    if len(password) < min_length:
        problems.append(f"at least {min_length} characters")
    if len(password) > max_length:
        problems.append(f"at most {max_length} characters")
    if not any(ch.islower() for ch in password):
        problems.append("a lowercase letter")
    if not any(ch.isupper() for ch in password):
        problems.append("an uppercase letter")
    if not any(ch.isdigit() for ch in password):
        problems.append("a digit")
    if not any(ch in _SPECIAL_CHARS for ch in password):
        problems.append("a special character")
    if problems:
        raise ValidationError(
            "password must contain " + ", ".join(problems),
            detail={"requirements": problems},
        )
    return password


class PasswordHasher(Protocol):
    def hash(self, password: str) -> str: ...

    def verify(self, password: str, password_hash: str) -> bool: ...


class Argon2PasswordHasher:
    """argon2id hashing with cost parameters from settings."""

    def __init__(
        self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4
    ) -> None:
        self._hasher = _Argon2(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Argon2PasswordHasher":
        return cls(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, password_hash: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False


class CredentialBackend(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        username: Optional[str] = None,
        *,
        tenant_id: str,
        email_verification_token: Optional[str],
        email_verification_expires: Optional[datetime],
        now: Optional[datetime],
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def register_failed_login(
        self,
        user_id: str,
        lock_for: Callable[[int, Optional[datetime]], Optional[datetime]],
        now: datetime,
    ) -> Optional[User]: ...

    def record_successful_login(
        self, user_id: str, now: datetime, ip_address: Optional[str] = None
    ) -> Optional[User]: ...

    def set_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> Optional[User]: ...

    def consume_password_reset_token(
        self, token: str, password_hash: str, now: datetime
    ) -> Optional[Tuple[User, List[str]]]: ...

    def set_email_verification_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> Optional[User]: ...

    def verify_email_token(self, token: str, now: datetime) -> Optional[User]: ...

    def update_password(
        self, user_id: str, password_hash: str, now: datetime
    ) -> Optional[User]: ...


class CredentialStore:
    """Identity records, password checks, lockout counters and one-time tokens."""

    def __init__(
        self,
        store: CredentialBackend,
        hasher: PasswordHasher,
        lockout: LockoutPolicy,
        settings: Settings,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.lockout = lockout
        self.settings = settings
        self.clock = clock

    def _check_strength(self, password: str) -> str:
        return validate_password_strength(
            password,
            min_length=self.settings.password_min_length,
            max_length=self.settings.password_max_length,
        )

    @staticmethod
    def _one_time_token() -> str:
        return secrets.token_hex(32)

    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        raw_password: str,
        username: Optional[str] = None,
        *,
        tenant_id: Optional[str] = None,
    ) -> User:
        normalized = normalize_email(email)
        username = validate_username(username)
        first_name = (first_name or "").strip()
        last_name = (last_name or "").strip()
        if not first_name or not last_name:
            raise ValidationError("first and last name are required")
        self._check_strength(raw_password)
        now = self.clock()
        try:
            user = self.store.create_user(
                normalized,
                self.hasher.hash(raw_password),
                first_name,
                last_name,
                username,
                tenant_id=tenant_id or self.settings.default_tenant_id,
                email_verification_token=self._one_time_token(),
                email_verification_expires=now
                + timedelta(hours=self.settings.email_verification_ttl_hours),
                now=now,
            )
        except ConstraintViolation as exc:
            field = exc.field or "email"
            raise DuplicateKeyError(
                f"{field} is already registered", detail={"field": field}
            )
        logger.info("user_created", user_id=user.id, tenant_id=user.tenant_id)
        return user

    def check_password(self, user: User, raw_password: str) -> bool:
        """Hash comparison only; no counters move."""
        return self.hasher.verify(raw_password, user.password_hash)

    def verify_password(self, user: User, raw_password: str) -> bool:
        """Check a login password; a mismatch advances the lockout state machine.

        A currently locked account raises ``AccountLockedError`` before the
        hasher runs, even when the password is right. A match moves nothing:
        the counters reset only once the whole login succeeds, through
        ``record_successful_login``.
        """
        now = self.clock()
        if self.lockout.is_locked(user, now):
            raise AccountLockedError(user.account_locked_until)

        if self.check_password(user, raw_password):
            return True

        updated = self.store.register_failed_login(
            user.id,
            lambda attempts, current: self.lockout.lock_until(attempts, now, current),
            now,
        )
        if updated is not None:
            user.failed_login_attempts = updated.failed_login_attempts
            user.account_locked_until = updated.account_locked_until
            if updated.account_locked_until and updated.account_locked_until > now:
                logger.warning(
                    "account_locked",
                    user_id=user.id,
                    attempts=updated.failed_login_attempts,
                    locked_until=updated.account_locked_until.isoformat(),
                )
        return False

    def record_successful_login(self, user: User, ip_address: Optional[str] = None) -> User:
        """Reset attempts, clear the lock and stamp the login time and address."""
        now = self.clock()
        updated = self.store.record_successful_login(user.id, now, ip_address)
        user.failed_login_attempts = 0
        user.account_locked_until = None
        user.last_login = now
        user.last_login_ip = ip_address
        if updated is None:
            logger.warning("login_state_update_missed", user_id=user.id)
        return user

    def generate_password_reset_token(self, user: User) -> str:
        token = self._one_time_token()
        expires = self.clock() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        self.store.set_password_reset_token(user.id, token, expires)
        return token

    def consume_password_reset_token(
        self, token: str, new_password: str
    ) -> Tuple[User, List[str]]:
        """Swap the password and close all of the user's sessions in one write.

        Returns the user and the session tokens that were deactivated so the
        caller can purge derived cache entries.
        """
        self._check_strength(new_password)
        if not token:
            raise TokenInvalidError("invalid or expired reset token")
        result = self.store.consume_password_reset_token(
            token, self.hasher.hash(new_password), self.clock()
        )
        if result is None:
            raise TokenInvalidError("invalid or expired reset token")
        return result

    def issue_email_verification(self, user: User) -> str:
        token = self._one_time_token()
        expires = self.clock() + timedelta(hours=self.settings.email_verification_ttl_hours)
        self.store.set_email_verification_token(user.id, token, expires)
        return token

    def verify_email(self, token: str) -> User:
        if not token:
            raise TokenInvalidError("invalid or expired verification token")
        user = self.store.verify_email_token(token, self.clock())
        if user is None:
            raise TokenInvalidError("invalid or expired verification token")
        return user

    def change_password(self, user: User, current_password: str, new_password: str) -> User:
        if not self.check_password(user, current_password):
            raise InvalidCredentialsError("current password is incorrect")
        if current_password == new_password:
            raise ValidationError("new password must differ from the current password")
        self._check_strength(new_password)
        updated = self.store.update_password(
            user.id, self.hasher.hash(new_password), self.clock()
        )
        return updated or user


__all__ = [
    "Argon2PasswordHasher",
    "CredentialBackend",
    "CredentialStore",
    "PasswordHasher",
    "normalize_email",
    "validate_password_strength",
    "validate_username",
]
