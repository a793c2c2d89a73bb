from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    first_name: str
    last_name: str
    password_hash: str
    username: Optional[str] = None
    tenant_id: str = "public"
    email_verified: bool = False
    email_verification_token: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    last_password_change: Optional[datetime] = None
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    two_factor_backup_codes: List[str] = field(default_factory=list)
    failed_login_attempts: int = 0
    account_locked_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    is_system: bool = False
    is_default: bool = False
    parent_role_id: Optional[str] = None
    level: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    created_by: Optional[str] = None


@dataclass
class Permission:
    id: str
    name: str
    resource: str
    action: str
    description: Optional[str] = None
    category: Optional[str] = None
    is_system: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class RolePermission:
    role_id: str
    permission_id: str
    granted: bool = True
    granted_at: datetime = field(default_factory=_utcnow)
    granted_by: Optional[str] = None


@dataclass
class UserRole:
    user_id: str
    role_id: str
    is_active: bool = True
    expires_at: Optional[datetime] = None
    assigned_at: datetime = field(default_factory=_utcnow)
    assigned_by: Optional[str] = None

    def is_effective(self, now: datetime) -> bool:
        return self.is_active and (self.expires_at is None or self.expires_at > now)


@dataclass
class Session:
    id: str
    user_id: str
    session_token: str
    expires_at: datetime
    refresh_token_hash: Optional[str] = None
    device_info: Dict | None = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    last_accessed: datetime = field(default_factory=_utcnow)
    is_active: bool = True
    is_remembered: bool = False
    force_logout: bool = False

    def is_valid(self, now: datetime) -> bool:
        return self.is_active and not self.force_logout and self.expires_at > now


@dataclass
class AuditEvent:
    event_type: str
    event_category: str
    success: bool
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
