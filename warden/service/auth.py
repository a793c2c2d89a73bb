from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol

from warden.config import Settings
from warden.logging import get_logger
from warden.service.audit import AuditLogger
from warden.service.clock import Clock, utc_now
from warden.service.credentials import CredentialStore, normalize_email
from warden.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    SessionInvalidError,
    ServiceError,
    TokenInvalidError,
    TwoFactorRequiredError,
    ValidationError,
)
from warden.service.rbac import AuthorizationResolver
from warden.service.sessions import SessionLedger
from warden.service.tokens import AccessClaims, TokenIssuer
from warden.service.two_factor import TwoFactorService
from warden.storage.models import Session, User

logger = get_logger(__name__)

PASSWORD_RESET_MESSAGE = "If an account exists for that email, a password reset link has been sent."
VERIFICATION_RESENT_MESSAGE = "If the account exists and is unverified, a new verification email has been sent."


class UserDirectory(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...
    def get_user_by_email(self, email: str) -> Optional[User]: ...
    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...
    def set_two_factor(self, user_id: str, secret: str, backup_codes: List[str]) -> Optional[User]: ...
    def enable_two_factor(self, user_id: str) -> Optional[User]: ...
    def clear_two_factor(self, user_id: str) -> Optional[User]: ...
    def consume_backup_code(self, user_id: str, code: str) -> bool: ...


@dataclass
class AuthTokens:
    access_token: str
    refresh_token: str
    expires_at: datetime
    session_id: str
    token_type: str = "Bearer"


@dataclass
class LoginResult:
    user: User
    session: Session
    tokens: AuthTokens


@dataclass
class AuthContext:
    user: User
    session: Session
    claims: AccessClaims


@dataclass
class TwoFactorEnrollment:
    secret: str
    provisioning_uri: str
    backup_codes: List[str] = field(default_factory=list)


class AuthService:
    """Login orchestration over the credential store, tokens, sessions and RBAC.

    Every decision is reported through the audit logger. Unknown accounts and
    wrong passwords surface as the same ``InvalidCredentialsError``.
    """

    def __init__(
        self,
        store: UserDirectory,
        credentials: CredentialStore,
        tokens: TokenIssuer,
        sessions: SessionLedger,
        resolver: AuthorizationResolver,
        two_factor: TwoFactorService,
        audit: AuditLogger,
        settings: Settings,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.tokens = tokens
        self.sessions = sessions
        self.resolver = resolver
        self.two_factor = two_factor
        self.audit = audit
        self.settings = settings
        self.clock = clock

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def _lookup_by_email(self, email: str) -> Optional[User]:
        try:
            normalized = normalize_email(email)
        except ValidationError:
            return None
        return self.store.get_user_by_email(normalized)

    # registration and login
    async def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        username: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        try:
            user = self.credentials.create_user(email, first_name, last_name, password, username)
        except ServiceError as exc:
            self.audit.emit(
                "user_registration",
                "authentication",
                success=False,
                ip_address=ip_address,
                user_agent=user_agent,
                error_message=exc.message,
            )
            raise
        self.resolver.assign_default_roles(user.id)
        self.audit.emit(
            "user_registration",
            "authentication",
            success=True,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"username": user.username},
        )
        return user

    def _check_second_factor(self, user: User, code: str) -> bool:
        secret = self.two_factor.decrypt_secret(user.two_factor_secret) if user.two_factor_secret else None
        if secret and self.two_factor.verify_code(secret, code):
            return True
        normalized = code.strip().upper()
        if normalized in user.two_factor_backup_codes and self.store.consume_backup_code(user.id, normalized):
            logger.info("backup_code_used", user_id=user.id, remaining=len(user.two_factor_backup_codes) - 1)
            return True
        return False

    async def login(
        self,
        email: str,
        password: str,
        two_factor_code: Optional[str] = None,
        remember_me: bool = False,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_info: Optional[dict] = None,
    ) -> LoginResult:
        def _fail(reason: str, user_id: Optional[str] = None) -> None:
            self.audit.emit(
                "login_failed",
                "authentication",
                success=False,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                error_message=reason,
            )

        user = self._lookup_by_email(email)
        if user is None:
            _fail("user_not_found")
            raise InvalidCredentialsError()
        if not user.is_active:
            _fail("account_inactive", user.id)
            raise AccountDisabledError("account is deactivated")

        try:
            verified = self.credentials.verify_password(user, password)
        except AccountLockedError:
            _fail("account_locked", user.id)
            raise
        if not verified:
            _fail("invalid_password", user.id)
            raise InvalidCredentialsError()

        if user.two_factor_enabled:
            if not two_factor_code:
                _fail("two_factor_required", user.id)
                raise TwoFactorRequiredError("two-factor authentication code required")
            if not self._check_second_factor(user, two_factor_code):
                _fail("invalid_two_factor_code", user.id)
                raise InvalidCredentialsError("invalid two-factor code")

        self.credentials.record_successful_login(user, ip_address)
        ttl = self.sessions.session_ttl(remember_me)
        access_token = self.tokens.issue_access_token(user, ttl)
        refresh = self.tokens.issue_refresh_token()
        session = await self.sessions.create_session(
            user.id,
            access_token,
            refresh.hash,
            device_info=device_info,
            ip_address=ip_address,
            remembered=remember_me,
            user_agent=user_agent,
        )
        await self.sessions.enforce_session_limit(
            user.id, self.settings.max_concurrent_sessions, keep_session_id=session.id
        )
        self.audit.emit(
            "login_success",
            "authentication",
            success=True,
            user_id=user.id,
            session_id=session.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"remember_me": remember_me, "two_factor": user.two_factor_enabled},
        )
        tokens = AuthTokens(
            access_token=access_token,
            refresh_token=refresh.raw,
            expires_at=session.expires_at,
            session_id=session.id,
        )
        return LoginResult(user=user, session=session, tokens=tokens)

    async def refresh(self, raw_refresh_token: str, *, ip_address: Optional[str] = None) -> AuthTokens:
        """Mint a new access token for the session behind a refresh token.

        The refresh token itself is not rotated; the session now answers to
        the new access token only.
        """
        session = await self.sessions.verify_refresh_token(raw_refresh_token)
        if session is None:
            self.audit.emit(
                "token_refresh",
                "authentication",
                success=False,
                ip_address=ip_address,
                error_message="invalid_refresh_token",
            )
            raise TokenInvalidError("invalid or expired refresh token")
        user = self.store.get_user(session.user_id)
        if user is None or not user.is_active:
            self.audit.emit(
                "token_refresh",
                "authentication",
                success=False,
                user_id=session.user_id,
                session_id=session.id,
                ip_address=ip_address,
                error_message="account_unavailable",
            )
            raise AccountDisabledError("account is deactivated")
        remaining = session.expires_at - self.clock()
        access_token = self.tokens.issue_access_token(user, remaining)
        session = await self.sessions.replace_access_token(session, access_token)
        self.audit.emit(
            "token_refresh",
            "authentication",
            success=True,
            user_id=user.id,
            session_id=session.id,
            ip_address=ip_address,
        )
        return AuthTokens(
            access_token=access_token,
            refresh_token=raw_refresh_token,
            expires_at=session.expires_at,
            session_id=session.id,
        )

    async def authenticate(
        self, access_token: Optional[str], *, ip_address: Optional[str] = None
    ) -> AuthContext:
        claims = self.tokens.validate_access_token(access_token)
        session = await self.sessions.find_session_by_token(access_token or "")
        if session is None or session.user_id != claims.user_id:
            raise SessionInvalidError("session is no longer valid")
        user = self.store.get_user(claims.user_id)
        if user is None:
            raise SessionInvalidError("session is no longer valid")
        if not user.is_active:
            raise AccountDisabledError("account is deactivated")
        if self.credentials.lockout.is_locked(user, self.clock()):
            raise AccountLockedError(user.account_locked_until)
        await self.sessions.update_last_accessed(session.id, ip_address)
        return AuthContext(user=user, session=session, claims=claims)

    async def logout(self, access_token: str, *, ip_address: Optional[str] = None) -> bool:
        session = await self.sessions.find_session_by_token(access_token)
        if session is None:
            return False
        await self.sessions.invalidate_session(session.id)
        self.audit.emit(
            "logout",
            "authentication",
            success=True,
            user_id=session.user_id,
            session_id=session.id,
            ip_address=ip_address,
        )
        return True

    async def logout_other_sessions(self, context: AuthContext) -> int:
        closed = await self.sessions.invalidate_all_user_sessions_except(context.user.id, context.session.id)
        self.audit.emit(
            "logout_other_sessions",
            "session",
            success=True,
            user_id=context.user.id,
            session_id=context.session.id,
            metadata={"closed": closed},
        )
        return closed

    # password and email flows
    async def request_password_reset(self, email: str, *, ip_address: Optional[str] = None) -> str:
        user = self._lookup_by_email(email)
        if user is None or not user.is_active:
            self.audit.emit(
                "password_reset_requested",
                "account",
                success=False,
                user_id=user.id if user else None,
                ip_address=ip_address,
                error_message="account_inactive" if user else "user_not_found",
            )
            return PASSWORD_RESET_MESSAGE
        self.credentials.generate_password_reset_token(user)
        self.audit.emit(
            "password_reset_requested",
            "account",
            success=True,
            user_id=user.id,
            ip_address=ip_address,
        )
        return PASSWORD_RESET_MESSAGE

    async def reset_password(
        self, token: str, new_password: str, *, ip_address: Optional[str] = None
    ) -> User:
        try:
            user, closed = self.credentials.consume_password_reset_token(token, new_password)
        except TokenInvalidError as exc:
            self.audit.emit(
                "password_reset",
                "account",
                success=False,
                ip_address=ip_address,
                error_message=exc.message,
            )
            raise
        await self.sessions.purge(closed)
        self.audit.emit(
            "password_reset",
            "account",
            success=True,
            user_id=user.id,
            ip_address=ip_address,
            metadata={"sessions_closed": len(closed)},
        )
        return user

    async def verify_email(self, token: str, *, ip_address: Optional[str] = None) -> User:
        try:
            user = self.credentials.verify_email(token)
        except TokenInvalidError as exc:
            self.audit.emit(
                "email_verification",
                "account",
                success=False,
                ip_address=ip_address,
                error_message=exc.message,
            )
            raise
        self.audit.emit("email_verification", "account", success=True, user_id=user.id, ip_address=ip_address)
        return user

    async def resend_email_verification(self, email: str, *, ip_address: Optional[str] = None) -> str:
        user = self._lookup_by_email(email)
        if user is None or user.email_verified:
            self.audit.emit(
                "email_verification_resent",
                "account",
                success=False,
                user_id=user.id if user else None,
                ip_address=ip_address,
                error_message="already_verified" if user else "user_not_found",
            )
            return VERIFICATION_RESENT_MESSAGE
        self.credentials.issue_email_verification(user)
        self.audit.emit(
            "email_verification_resent", "account", success=True, user_id=user.id, ip_address=ip_address
        )
        return VERIFICATION_RESENT_MESSAGE

    async def change_password(
        self, context: AuthContext, current_password: str, new_password: str
    ) -> User:
        try:
            user = self.credentials.change_password(context.user, current_password, new_password)
        except ServiceError as exc:
            self.audit.emit(
                "password_change",
                "account",
                success=False,
                user_id=context.user.id,
                session_id=context.session.id,
                error_message=exc.message,
            )
            raise
        closed = await self.sessions.invalidate_all_user_sessions_except(user.id, context.session.id)
        self.audit.emit(
            "password_change",
            "account",
            success=True,
            user_id=user.id,
            session_id=context.session.id,
            metadata={"sessions_closed": closed},
        )
        return user

    # two-factor
    async def enable_two_factor(self, user_id: str) -> TwoFactorEnrollment:
        user = self._require_user(user_id)
        if user.two_factor_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        secret = self.two_factor.generate_secret()
        backup_codes = self.two_factor.generate_backup_codes()
        self.store.set_two_factor(user.id, self.two_factor.encrypt_secret(secret), backup_codes)
        self.audit.emit("two_factor_setup", "account", success=True, user_id=user.id)
        return TwoFactorEnrollment(
            secret=secret,
            provisioning_uri=self.two_factor.provisioning_uri(secret, user.email),
            backup_codes=backup_codes,
        )

    async def confirm_two_factor(self, user_id: str, code: str) -> User:
        user = self._require_user(user_id)
        if user.two_factor_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        if not user.two_factor_secret:
            raise ValidationError("two-factor setup has not been started")
        secret = self.two_factor.decrypt_secret(user.two_factor_secret)
        if not secret or not self.two_factor.verify_code(secret, code):
            self.audit.emit(
                "two_factor_enabled", "account", success=False, user_id=user.id, error_message="invalid_code"
            )
            raise ValidationError("invalid verification code")
        updated = self.store.enable_two_factor(user.id) or user
        self.audit.emit("two_factor_enabled", "account", success=True, user_id=user.id)
        return updated

    async def disable_two_factor(self, user_id: str, password: str) -> User:
        user = self._require_user(user_id)
        if not self.credentials.check_password(user, password):
            self.audit.emit(
                "two_factor_disabled", "account", success=False, user_id=user.id, error_message="invalid_password"
            )
            raise InvalidCredentialsError("password is incorrect")
        updated = self.store.clear_two_factor(user.id) or user
        self.audit.emit("two_factor_disabled", "account", success=True, user_id=user.id)
        return updated

    # session administration
    async def list_sessions(self, user_id: str) -> List[Session]:
        return await self.sessions.list_user_sessions(user_id)

    async def revoke_session(self, user_id: str, session_id: str) -> None:
        session = await self.sessions.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        await self.sessions.invalidate_session(session_id)
        self.audit.emit("session_revoked", "session", success=True, user_id=user_id, session_id=session_id)

    async def force_logout_session(self, session_id: str, *, actor_id: Optional[str] = None) -> None:
        session = await self.sessions.get_session(session_id)
        if session is None:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        await self.sessions.force_logout(session_id)
        self.audit.emit(
            "force_logout",
            "session",
            success=True,
            user_id=actor_id,
            session_id=session_id,
            resource_type="user",
            resource_id=session.user_id,
        )

    async def force_logout_user(self, user_id: str, *, actor_id: Optional[str] = None) -> int:
        self._require_user(user_id)
        sessions = await self.sessions.list_user_sessions(user_id)
        for session in sessions:
            await self.sessions.force_logout(session.id)
        self.audit.emit(
            "force_logout",
            "session",
            success=True,
            user_id=actor_id,
            resource_type="user",
            resource_id=user_id,
            metadata={"sessions": len(sessions)},
        )
        return len(sessions)

    async def set_user_active(self, user_id: str, is_active: bool, *, actor_id: Optional[str] = None) -> User:
        self._require_user(user_id)
        user = self.store.set_user_active(user_id, is_active)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        closed = 0
        if not is_active:
            closed = await self.sessions.invalidate_all_user_sessions(user_id)
        self.audit.emit(
            "user_activated" if is_active else "user_deactivated",
            "account",
            success=True,
            user_id=actor_id,
            resource_type="user",
            resource_id=user_id,
            metadata={"sessions_closed": closed},
        )
        return user


__all__ = [
    "AuthContext",
    "AuthService",
    "AuthTokens",
    "LoginResult",
    "PASSWORD_RESET_MESSAGE",
    "TwoFactorEnrollment",
    "UserDirectory",
    "VERIFICATION_RESENT_MESSAGE",
]
