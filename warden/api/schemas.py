from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from warden.storage.models import Permission, Role, Session, User

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "conflict",
    "duplicate_key",
    "unauthorized",
    "invalid_credentials",
    "account_locked",
    "account_disabled",
    "two_factor_required",
    "token_invalid",
    "token_expired",
    "session_invalid",
    "insufficient_permission",
    "forbidden",
    "not_found",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# requests
class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    username: Optional[str] = Field(default=None, max_length=30)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)
    two_factor_code: Optional[str] = Field(default=None, max_length=16)
    remember_me: bool = False
    device_info: Optional[Dict[str, Any]] = None


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=512)


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=254)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=256)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=256)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., max_length=256)


class ResendVerificationRequest(BaseModel):
    email: str = Field(..., max_length=254)


class TwoFactorConfirmRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=6)


class TwoFactorDisableRequest(BaseModel):
    password: str = Field(..., max_length=256)


class RoleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=500)
    parent_role_id: Optional[str] = None
    is_default: bool = False


class RoleUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=500)
    is_default: Optional[bool] = None


class PermissionCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    resource: str = Field(..., min_length=1, max_length=50)
    action: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=500)
    category: Optional[str] = Field(default=None, max_length=50)


class PermissionUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    resource: Optional[str] = Field(default=None, min_length=1, max_length=50)
    action: Optional[str] = Field(default=None, min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=500)
    category: Optional[str] = Field(default=None, max_length=50)


class RoleAssignRequest(BaseModel):
    role_id: str
    expires_at: Optional[datetime] = None


class UserStatusRequest(BaseModel):
    is_active: bool


# responses
class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    username: Optional[str] = None
    first_name: str
    last_name: str
    tenant_id: str
    email_verified: bool
    two_factor_enabled: bool
    is_active: bool
    last_login: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls.model_validate(user)


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    device_info: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    last_accessed: datetime
    expires_at: datetime
    is_remembered: bool
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, *, current_id: Optional[str] = None) -> "SessionResponse":
        resp = cls.model_validate(session)
        resp.current = session.id == current_id
        return resp


class RoleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    is_system: bool
    is_default: bool
    parent_role_id: Optional[str] = None
    level: int


class PermissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    resource: str
    action: str
    description: Optional[str] = None
    category: Optional[str] = None
    is_system: bool


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_at: datetime
    session_id: str


class LoginResponse(BaseModel):
    user: UserResponse
    tokens: TokenResponse


class TwoFactorSetupResponse(BaseModel):
    secret: str
    provisioning_uri: str
    backup_codes: List[str]


class ProfileResponse(BaseModel):
    user: UserResponse
    roles: List[str]
    permissions: List[str]


class AuthorizationCheckResponse(BaseModel):
    permission: str
    allowed: bool


def roles_to_response(roles: List[Role]) -> List[RoleResponse]:
    return [RoleResponse.model_validate(r) for r in roles]


def permissions_to_response(permissions: List[Permission]) -> List[PermissionResponse]:
    return [PermissionResponse.model_validate(p) for p in permissions]
