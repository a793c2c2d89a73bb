from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from warden.api.schemas import (
    AuthorizationCheckResponse,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PermissionCreateRequest,
    PermissionResponse,
    PermissionUpdateRequest,
    ProfileResponse,
    RegisterRequest,
    ResendVerificationRequest,
    RoleAssignRequest,
    RoleCreateRequest,
    RoleResponse,
    RoleUpdateRequest,
    SessionResponse,
    TokenRefreshRequest,
    TokenResponse,
    TwoFactorConfirmRequest,
    TwoFactorDisableRequest,
    TwoFactorSetupResponse,
    UserResponse,
    UserStatusRequest,
    permissions_to_response,
    roles_to_response,
)
from warden.logging import get_logger
from warden.service.auth import AuthContext, AuthTokens
from warden.service.errors import AuthenticationError
from warden.service.rbac import ADMIN_PERMISSIONS
from warden.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("access token required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("authorization header must use the Bearer scheme")
    return token.strip()


def _tokens_response(tokens: AuthTokens) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_at=tokens.expires_at,
        session_id=tokens.session_id,
    )


async def get_principal(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(
        _bearer_token(authorization), ip_address=_client_ip(request)
    )


def require_permission(*permission_names: str):
    """Dependency factory: authenticated principal holding any of the names."""

    async def _dependency(
        request: Request, principal: AuthContext = Depends(get_principal)
    ) -> AuthContext:
        runtime = get_runtime()
        runtime.resolver.require_any_permission(
            principal.user.id, permission_names, ip_address=_client_ip(request)
        )
        return principal

    return _dependency


require_admin = require_permission(*ADMIN_PERMISSIONS)


# authentication
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    runtime = get_runtime()
    user = await runtime.auth.register(
        body.email,
        body.password,
        body.first_name,
        body.last_name,
        body.username,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data={"user": UserResponse.from_user(user)})


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        body.two_factor_code,
        body.remember_me,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        device_info=body.device_info,
    )
    resp = LoginResponse(
        user=UserResponse.from_user(result.user), tokens=_tokens_response(result.tokens)
    )
    return Envelope(status="ok", data=resp)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token, ip_address=_client_ip(request))
    return Envelope(status="ok", data=_tokens_response(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    authorization: Optional[str] = Header(None),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    await runtime.auth.logout(_bearer_token(authorization), ip_address=_client_ip(request))
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/logout-others", response_model=Envelope, tags=["auth"])
async def logout_other_sessions(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    closed = await runtime.auth.logout_other_sessions(principal)
    return Envelope(status="ok", data={"sessions_closed": closed})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    roles = runtime.resolver.get_effective_roles(principal.user.id)
    permissions = runtime.resolver.get_effective_permissions(principal.user.id)
    resp = ProfileResponse(
        user=UserResponse.from_user(principal.user),
        roles=[r.name for r in roles],
        permissions=[p.name for p in permissions],
    )
    return Envelope(status="ok", data=resp)


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    message = await runtime.auth.request_password_reset(body.email, ip_address=_client_ip(request))
    return Envelope(status="ok", data={"message": message})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.new_password, ip_address=_client_ip(request))
    return Envelope(status="ok", data={"status": "reset"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.auth.change_password(principal, body.current_password, body.new_password)
    return Envelope(status="ok", data={"status": "changed"})


@router.post("/auth/email/verify", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest, request: Request):
    runtime = get_runtime()
    user = await runtime.auth.verify_email(body.token, ip_address=_client_ip(request))
    return Envelope(status="ok", data={"status": "verified", "user_id": user.id})


@router.post("/auth/email/resend", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest, request: Request):
    runtime = get_runtime()
    message = await runtime.auth.resend_email_verification(body.email, ip_address=_client_ip(request))
    return Envelope(status="ok", data={"message": message})


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["auth"])
async def enable_two_factor(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    enrollment = await runtime.auth.enable_two_factor(principal.user.id)
    resp = TwoFactorSetupResponse(
        secret=enrollment.secret,
        provisioning_uri=enrollment.provisioning_uri,
        backup_codes=enrollment.backup_codes,
    )
    return Envelope(status="ok", data=resp)


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def confirm_two_factor(
    body: TwoFactorConfirmRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.auth.confirm_two_factor(principal.user.id, body.code)
    return Envelope(status="ok", data={"status": "enabled"})


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["auth"])
async def disable_two_factor(
    body: TwoFactorDisableRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.auth.disable_two_factor(principal.user.id, body.password)
    return Envelope(status="ok", data={"status": "disabled"})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(principal.user.id)
    items = [SessionResponse.from_session(s, current_id=principal.session.id) for s in sessions]
    return Envelope(status="ok", data={"items": items})


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(session_id: str, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.auth.revoke_session(principal.user.id, session_id)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.get("/authz/check", response_model=Envelope, tags=["authz"])
async def check_permission(
    permission: str = Query(..., min_length=1, max_length=100),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    allowed = runtime.resolver.has_permission(principal.user.id, permission)
    return Envelope(status="ok", data=AuthorizationCheckResponse(permission=permission, allowed=allowed))


# role and permission administration
@router.get("/admin/roles", response_model=Envelope, tags=["admin"])
async def list_roles(principal: AuthContext = Depends(require_permission("roles.read"))):
    runtime = get_runtime()
    return Envelope(status="ok", data={"items": roles_to_response(runtime.graph.list_roles())})


@router.post("/admin/roles", response_model=Envelope, status_code=201, tags=["admin"])
async def create_role(
    body: RoleCreateRequest, principal: AuthContext = Depends(require_permission("roles.create"))
):
    runtime = get_runtime()
    role = runtime.graph.create_role(
        body.name,
        body.description,
        body.parent_role_id,
        is_default=body.is_default,
        created_by=principal.user.id,
    )
    return Envelope(status="ok", data=RoleResponse.model_validate(role))


@router.patch("/admin/roles/{role_id}", response_model=Envelope, tags=["admin"])
async def update_role(
    role_id: str,
    body: RoleUpdateRequest,
    principal: AuthContext = Depends(require_permission("roles.update")),
):
    runtime = get_runtime()
    role = runtime.graph.update_role(
        role_id,
        name=body.name,
        description=body.description,
        is_default=body.is_default,
        updated_by=principal.user.id,
    )
    return Envelope(status="ok", data=RoleResponse.model_validate(role))


@router.delete("/admin/roles/{role_id}", response_model=Envelope, tags=["admin"])
async def delete_role(
    role_id: str, principal: AuthContext = Depends(require_permission("roles.delete"))
):
    runtime = get_runtime()
    runtime.graph.delete_role(role_id, deleted_by=principal.user.id)
    return Envelope(status="ok", data={"deleted": True, "role_id": role_id})


@router.get("/admin/roles/{role_id}/permissions", response_model=Envelope, tags=["admin"])
async def get_role_permissions(
    role_id: str, principal: AuthContext = Depends(require_permission("roles.read"))
):
    runtime = get_runtime()
    permissions = runtime.graph.get_role_permissions(role_id)
    return Envelope(status="ok", data={"items": permissions_to_response(permissions)})


@router.put("/admin/roles/{role_id}/permissions/{permission_id}", response_model=Envelope, tags=["admin"])
async def grant_permission(
    role_id: str,
    permission_id: str,
    principal: AuthContext = Depends(require_permission("roles.update")),
):
    runtime = get_runtime()
    runtime.graph.grant_permission(role_id, permission_id, granted_by=principal.user.id)
    return Envelope(status="ok", data={"role_id": role_id, "permission_id": permission_id, "granted": True})


@router.delete("/admin/roles/{role_id}/permissions/{permission_id}", response_model=Envelope, tags=["admin"])
async def revoke_permission(
    role_id: str,
    permission_id: str,
    principal: AuthContext = Depends(require_permission("roles.update")),
):
    runtime = get_runtime()
    runtime.graph.revoke_permission(role_id, permission_id, revoked_by=principal.user.id)
    return Envelope(status="ok", data={"role_id": role_id, "permission_id": permission_id, "granted": False})


@router.get("/admin/permissions", response_model=Envelope, tags=["admin"])
async def list_permissions(
    category: Optional[str] = Query(None, max_length=50),
    principal: AuthContext = Depends(require_permission("roles.read")),
):
    runtime = get_runtime()
    permissions = runtime.graph.list_permissions(category)
    return Envelope(status="ok", data={"items": permissions_to_response(permissions)})


@router.post("/admin/permissions", response_model=Envelope, status_code=201, tags=["admin"])
async def create_permission(
    body: PermissionCreateRequest, principal: AuthContext = Depends(require_admin)
):
    runtime = get_runtime()
    permission = runtime.graph.create_permission(
        body.name,
        body.resource,
        body.action,
        body.description,
        body.category,
        created_by=principal.user.id,
    )
    return Envelope(status="ok", data=PermissionResponse.model_validate(permission))


@router.patch("/admin/permissions/{permission_id}", response_model=Envelope, tags=["admin"])
async def update_permission(
    permission_id: str,
    body: PermissionUpdateRequest,
    principal: AuthContext = Depends(require_admin),
):
    runtime = get_runtime()
    permission = runtime.graph.update_permission(
        permission_id,
        name=body.name,
        resource=body.resource,
        action=body.action,
        description=body.description,
        category=body.category,
        updated_by=principal.user.id,
    )
    return Envelope(status="ok", data=PermissionResponse.model_validate(permission))


@router.delete("/admin/permissions/{permission_id}", response_model=Envelope, tags=["admin"])
async def delete_permission(permission_id: str, principal: AuthContext = Depends(require_admin)):
    runtime = get_runtime()
    runtime.graph.delete_permission(permission_id, deleted_by=principal.user.id)
    return Envelope(status="ok", data={"deleted": True, "permission_id": permission_id})


# user administration
@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(require_permission("users.list")),
):
    runtime = get_runtime()
    users = runtime.store.list_users(limit=limit)
    return Envelope(status="ok", data={"items": [UserResponse.from_user(u) for u in users]})


@router.get("/admin/users/{user_id}/roles", response_model=Envelope, tags=["admin"])
async def get_user_roles(
    user_id: str, principal: AuthContext = Depends(require_permission("users.read"))
):
    runtime = get_runtime()
    roles = runtime.resolver.get_effective_roles(user_id)
    return Envelope(status="ok", data={"items": roles_to_response(roles)})


@router.post("/admin/users/{user_id}/roles", response_model=Envelope, tags=["admin"])
async def assign_role(
    user_id: str,
    body: RoleAssignRequest,
    principal: AuthContext = Depends(require_permission("roles.assign")),
):
    runtime = get_runtime()
    assignment = runtime.resolver.assign_role(
        user_id, body.role_id, assigned_by=principal.user.id, expires_at=body.expires_at
    )
    return Envelope(
        status="ok",
        data={
            "user_id": assignment.user_id,
            "role_id": assignment.role_id,
            "expires_at": assignment.expires_at,
        },
    )


@router.delete("/admin/users/{user_id}/roles/{role_id}", response_model=Envelope, tags=["admin"])
async def remove_role(
    user_id: str,
    role_id: str,
    principal: AuthContext = Depends(require_permission("roles.assign")),
):
    runtime = get_runtime()
    runtime.resolver.remove_role(user_id, role_id, removed_by=principal.user.id)
    return Envelope(status="ok", data={"user_id": user_id, "role_id": role_id, "removed": True})


@router.patch("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def set_user_status(
    user_id: str,
    body: UserStatusRequest,
    principal: AuthContext = Depends(require_permission("users.update")),
):
    runtime = get_runtime()
    user = await runtime.auth.set_user_active(user_id, body.is_active, actor_id=principal.user.id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/admin/users/{user_id}/force-logout", response_model=Envelope, tags=["admin"])
async def force_logout_user(user_id: str, principal: AuthContext = Depends(require_admin)):
    runtime = get_runtime()
    count = await runtime.auth.force_logout_user(user_id, actor_id=principal.user.id)
    return Envelope(status="ok", data={"user_id": user_id, "sessions": count})


@router.post("/admin/sessions/{session_id}/force-logout", response_model=Envelope, tags=["admin"])
async def force_logout_session(session_id: str, principal: AuthContext = Depends(require_admin)):
    runtime = get_runtime()
    await runtime.auth.force_logout_session(session_id, actor_id=principal.user.id)
    return Envelope(status="ok", data={"session_id": session_id, "force_logout": True})
