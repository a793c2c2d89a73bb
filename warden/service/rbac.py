from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from warden.logging import get_logger
from warden.service.audit import AuditLogger
from warden.service.clock import Clock, utc_now
from warden.service.errors import (
    ConflictError,
    DuplicateKeyError,
    InsufficientPermissionError,
    NotFoundError,
    ValidationError,
)
from warden.storage.errors import ConstraintViolation
from warden.storage.models import Permission, Role, RolePermission, UserRole

logger = get_logger(__name__)


@dataclass(frozen=True)
class PermissionSpec:
    name: str
    resource: str
    action: str
    description: str
    category: str
    is_system: bool


@dataclass(frozen=True)
class RoleSpec:
    name: str
    description: str
    is_default: bool = False


DEFAULT_ROLES: Tuple[RoleSpec, ...] = (
    RoleSpec("Super Admin", "Full system access"),
    RoleSpec("Admin", "Administrative access"),
    RoleSpec("Moderator", "Content moderation access"),
    RoleSpec("User", "Standard user access", is_default=True),
    RoleSpec("Guest", "Limited read-only access"),
)

DEFAULT_PERMISSIONS: Tuple[PermissionSpec, ...] = (
    PermissionSpec("users.create", "users", "create", "Create new users", "users", True),
    PermissionSpec("users.read", "users", "read", "View user information", "users", True),
    PermissionSpec("users.update", "users", "update", "Update user information", "users", True),
    PermissionSpec("users.delete", "users", "delete", "Delete users", "users", True),
    PermissionSpec("users.list", "users", "list", "List all users", "users", True),
    PermissionSpec("roles.create", "roles", "create", "Create new roles", "roles", True),
    PermissionSpec("roles.read", "roles", "read", "View role information", "roles", True),
    PermissionSpec("roles.update", "roles", "update", "Update roles", "roles", True),
    PermissionSpec("roles.delete", "roles", "delete", "Delete roles", "roles", True),
    PermissionSpec("roles.assign", "roles", "assign", "Assign roles to users", "roles", True),
    PermissionSpec("system.admin", "system", "admin", "Full system administration", "system", True),
    PermissionSpec("system.audit", "system", "audit", "View audit logs", "system", True),
    PermissionSpec("system.config", "system", "config", "Modify system configuration", "system", True),
    PermissionSpec("content.create", "content", "create", "Create content", "content", False),
    PermissionSpec("content.read", "content", "read", "Read content", "content", False),
    PermissionSpec("content.update", "content", "update", "Update content", "content", False),
    PermissionSpec("content.delete", "content", "delete", "Delete content", "content", False),
    PermissionSpec("content.moderate", "content", "moderate", "Moderate content", "content", False),
)

_ALL = tuple(p.name for p in DEFAULT_PERMISSIONS)

DEFAULT_GRANTS: Dict[str, Tuple[str, ...]] = {
    "Super Admin": _ALL,
    "Admin": tuple(name for name in _ALL if name != "system.admin"),
    "Moderator": (
        "users.read",
        "users.list",
        "content.read",
        "content.moderate",
        "content.update",
        "content.delete",
    ),
    "User": ("content.create", "content.read", "content.update"),
    "Guest": ("content.read",),
}

ADMIN_PERMISSIONS = ("system.admin", "system.config")
MODERATOR_PERMISSIONS = ("content.moderate", "system.admin")


class GraphBackend(Protocol):
    def create_role(self, name: str, **kwargs: Any) -> Role: ...
    def get_role(self, role_id: str) -> Optional[Role]: ...
    def get_role_by_name(self, name: str) -> Optional[Role]: ...
    def list_roles(self) -> List[Role]: ...
    def list_default_roles(self) -> List[Role]: ...
    def update_role(self, role_id: str, **updates: Any) -> Optional[Role]: ...
    def delete_role(self, role_id: str) -> bool: ...
    def create_permission(self, name: str, resource: str, action: str, **kwargs: Any) -> Permission: ...
    def get_permission(self, permission_id: str) -> Optional[Permission]: ...
    def get_permission_by_name(self, name: str) -> Optional[Permission]: ...
    def list_permissions(self, category: Optional[str] = None) -> List[Permission]: ...
    def update_permission(self, permission_id: str, **updates: Any) -> Optional[Permission]: ...
    def delete_permission(self, permission_id: str) -> bool: ...
    def upsert_role_permission(self, role_id: str, permission_id: str, **kwargs: Any) -> RolePermission: ...
    def list_role_permissions(self, role_id: str, *, granted_only: bool = True) -> List[Permission]: ...
    def upsert_user_role(self, user_id: str, role_id: str, **kwargs: Any) -> UserRole: ...
    def deactivate_user_role(self, user_id: str, role_id: str) -> bool: ...
    def list_user_roles(self, user_id: str) -> List[UserRole]: ...
    def list_effective_roles(self, user_id: str, now: datetime) -> List[Role]: ...
    def list_effective_permissions(self, user_id: str, now: datetime) -> List[Permission]: ...
    def user_has_permission(self, user_id: str, permission_name: str, now: datetime) -> bool: ...
    def count_effective_role_assignments(self, role_id: str, now: datetime) -> int: ...


class AuthorizationResolver:
    """Grant/deny decisions over effective role assignments.

    Permissions are additive across a user's effective roles. Parent roles
    are recorded on the graph but are not inherited here.
    """

    def __init__(self, store: GraphBackend, audit: AuditLogger, *, clock: Clock = utc_now) -> None:
        self.store = store
        self.audit = audit
        self.clock = clock

    def has_permission(self, user_id: str, permission_name: str) -> bool:
        return self.store.user_has_permission(user_id, permission_name, self.clock())

    def has_any_permission(self, user_id: str, permission_names: Iterable[str]) -> bool:
        now = self.clock()
        return any(self.store.user_has_permission(user_id, name, now) for name in permission_names)

    def has_role(self, user_id: str, role_name: str) -> bool:
        return any(role.name == role_name for role in self.get_effective_roles(user_id))

    def get_effective_roles(self, user_id: str) -> List[Role]:
        return self.store.list_effective_roles(user_id, self.clock())

    def get_effective_permissions(self, user_id: str) -> List[Permission]:
        return self.store.list_effective_permissions(user_id, self.clock())

    def require_permission(
        self, user_id: str, permission_name: str, *, ip_address: Optional[str] = None
    ) -> None:
        self.require_any_permission(user_id, (permission_name,), ip_address=ip_address)

    def require_any_permission(
        self,
        user_id: str,
        permission_names: Iterable[str],
        *,
        ip_address: Optional[str] = None,
    ) -> None:
        names = tuple(permission_names)
        if self.has_any_permission(user_id, names):
            return
        self.audit.emit(
            "authorization_denied",
            "authorization",
            success=False,
            user_id=user_id,
            ip_address=ip_address,
            error_message="insufficient permissions",
            metadata={"required_permissions": list(names)},
        )
        raise InsufficientPermissionError(
            "insufficient permissions", detail={"required": list(names)}
        )

    def assign_role(
        self,
        user_id: str,
        role_id: str,
        assigned_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> UserRole:
        """Idempotent upsert: re-assigning reactivates and overwrites the expiry."""
        if self.store.get_role(role_id) is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        try:
            assignment = self.store.upsert_user_role(
                user_id, role_id, assigned_by=assigned_by, expires_at=expires_at, now=self.clock()
            )
        except ConstraintViolation as exc:
            raise NotFoundError(exc.message, detail=exc.detail)
        self.audit.emit(
            "role_assigned",
            "authorization",
            success=True,
            user_id=assigned_by,
            resource_type="user",
            resource_id=user_id,
            metadata={
                "role_id": role_id,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        )
        return assignment

    def remove_role(self, user_id: str, role_id: str, removed_by: Optional[str] = None) -> None:
        if not self.store.deactivate_user_role(user_id, role_id):
            raise NotFoundError(
                "role assignment not found", detail={"user_id": user_id, "role_id": role_id}
            )
        self.audit.emit(
            "role_removed",
            "authorization",
            success=True,
            user_id=removed_by,
            resource_type="user",
            resource_id=user_id,
            metadata={"role_id": role_id},
        )

    def assign_default_roles(self, user_id: str) -> List[UserRole]:
        now = self.clock()
        return [
            self.store.upsert_user_role(user_id, role.id, now=now)
            for role in self.store.list_default_roles()
        ]


class PermissionGraph:
    """Administration of roles, permissions and grant edges."""

    def __init__(self, store: GraphBackend, audit: AuditLogger, *, clock: Clock = utc_now) -> None:
        self.store = store
        self.audit = audit
        self.clock = clock

    def _require_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if role is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return role

    def _require_permission(self, permission_id: str) -> Permission:
        permission = self.store.get_permission(permission_id)
        if permission is None:
            raise NotFoundError("permission not found", detail={"permission_id": permission_id})
        return permission

    def create_role(
        self,
        name: str,
        description: Optional[str] = None,
        parent_role_id: Optional[str] = None,
        *,
        is_default: bool = False,
        is_system: bool = False,
        created_by: Optional[str] = None,
    ) -> Role:
        name = (name or "").strip()
        if not name:
            raise ValidationError("role name is required")
        level = 0
        if parent_role_id:
            parent = self.store.get_role(parent_role_id)
            if parent is None:
                raise ValidationError("parent role does not exist", detail={"parent_role_id": parent_role_id})
            level = parent.level + 1
        try:
            role = self.store.create_role(
                name,
                description=description,
                parent_role_id=parent_role_id,
                level=level,
                is_default=is_default,
                is_system=is_system,
                created_by=created_by,
            )
        except ConstraintViolation as exc:
            raise DuplicateKeyError("role name already exists", detail={"field": exc.field or "name"})
        self.audit.emit(
            "role_created",
            "authorization",
            success=True,
            user_id=created_by,
            resource_type="role",
            resource_id=role.id,
            metadata={"name": role.name, "level": role.level},
        )
        return role

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        is_default: Optional[bool] = None,
        updated_by: Optional[str] = None,
    ) -> Role:
        role = self._require_role(role_id)
        if role.is_system:
            raise ConflictError("system roles cannot be modified", detail={"role_id": role_id})
        try:
            updated = self.store.update_role(
                role_id,
                name=name.strip() if name else None,
                description=description,
                is_default=is_default,
                updated_at=self.clock(),
            )
        except ConstraintViolation:
            raise DuplicateKeyError("role name already exists", detail={"field": "name"})
        if updated is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        self.audit.emit(
            "role_updated",
            "authorization",
            success=True,
            user_id=updated_by,
            resource_type="role",
            resource_id=role_id,
        )
        return updated

    def delete_role(self, role_id: str, *, deleted_by: Optional[str] = None) -> None:
        role = self._require_role(role_id)
        if role.is_system:
            raise ConflictError("system roles cannot be deleted", detail={"role_id": role_id})
        assigned = self.store.count_effective_role_assignments(role_id, self.clock())
        if assigned:
            raise ConflictError(
                "cannot delete a role that is assigned to users",
                detail={"role_id": role_id, "assignments": assigned},
            )
        self.store.delete_role(role_id)
        self.audit.emit(
            "role_deleted",
            "authorization",
            success=True,
            user_id=deleted_by,
            resource_type="role",
            resource_id=role_id,
            metadata={"name": role.name},
        )

    def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    def get_role(self, role_id: str) -> Role:
        return self._require_role(role_id)

    def get_role_permissions(self, role_id: str) -> List[Permission]:
        self._require_role(role_id)
        return self.store.list_role_permissions(role_id)

    def _set_grant(self, role_id: str, permission_id: str, granted: bool, actor: Optional[str]) -> RolePermission:
        self._require_role(role_id)
        self._require_permission(permission_id)
        edge = self.store.upsert_role_permission(
            role_id, permission_id, granted=granted, granted_by=actor, now=self.clock()
        )
        self.audit.emit(
            "permission_granted" if granted else "permission_revoked",
            "authorization",
            success=True,
            user_id=actor,
            resource_type="role",
            resource_id=role_id,
            metadata={"permission_id": permission_id},
        )
        return edge

    def grant_permission(self, role_id: str, permission_id: str, granted_by: Optional[str] = None) -> RolePermission:
        return self._set_grant(role_id, permission_id, True, granted_by)

    def revoke_permission(self, role_id: str, permission_id: str, revoked_by: Optional[str] = None) -> RolePermission:
        return self._set_grant(role_id, permission_id, False, revoked_by)

    def create_permission(
        self,
        name: str,
        resource: str,
        action: str,
        description: Optional[str] = None,
        category: Optional[str] = None,
        *,
        is_system: bool = False,
        created_by: Optional[str] = None,
    ) -> Permission:
        if not name or not resource or not action:
            raise ValidationError("permission name, resource and action are required")
        try:
            permission = self.store.create_permission(
                name.strip(),
                resource.strip(),
                action.strip(),
                description=description,
                category=category,
                is_system=is_system,
            )
        except ConstraintViolation:
            raise DuplicateKeyError("permission name already exists", detail={"field": "name"})
        self.audit.emit(
            "permission_created",
            "authorization",
            success=True,
            user_id=created_by,
            resource_type="permission",
            resource_id=permission.id,
            metadata={"name": permission.name},
        )
        return permission

    def update_permission(
        self,
        permission_id: str,
        *,
        name: Optional[str] = None,
        resource: Optional[str] = None,
        action: Optional[str] = None,
        description: Optional[str] = None,
        category: Optional[str] = None,
        updated_by: Optional[str] = None,
    ) -> Permission:
        permission = self._require_permission(permission_id)
        if permission.is_system:
            raise ConflictError(
                "system permissions cannot be modified", detail={"permission_id": permission_id}
            )
        try:
            updated = self.store.update_permission(
                permission_id,
                name=name,
                resource=resource,
                action=action,
                description=description,
                category=category,
            )
        except ConstraintViolation:
            raise DuplicateKeyError("permission name already exists", detail={"field": "name"})
        if updated is None:
            raise NotFoundError("permission not found", detail={"permission_id": permission_id})
        self.audit.emit(
            "permission_updated",
            "authorization",
            success=True,
            user_id=updated_by,
            resource_type="permission",
            resource_id=permission_id,
        )
        return updated

    def delete_permission(self, permission_id: str, *, deleted_by: Optional[str] = None) -> None:
        permission = self._require_permission(permission_id)
        if permission.is_system:
            raise ConflictError(
                "system permissions cannot be deleted", detail={"permission_id": permission_id}
            )
        self.store.delete_permission(permission_id)
        self.audit.emit(
            "permission_deleted",
            "authorization",
            success=True,
            user_id=deleted_by,
            resource_type="permission",
            resource_id=permission_id,
            metadata={"name": permission.name},
        )

    def list_permissions(self, category: Optional[str] = None) -> List[Permission]:
        return self.store.list_permissions(category)

    def seed_defaults(self) -> Dict[str, int]:
        """Install the default roles, permissions and grants; safe to rerun."""
        created = {"roles": 0, "permissions": 0, "grants": 0}
        permissions: Dict[str, Permission] = {}
        for seed in DEFAULT_PERMISSIONS:
            existing = self.store.get_permission_by_name(seed.name)
            if existing is None:
                existing = self.store.create_permission(
                    seed.name,
                    seed.resource,
                    seed.action,
                    description=seed.description,
                    category=seed.category,
                    is_system=seed.is_system,
                )
                created["permissions"] += 1
            permissions[seed.name] = existing

        now = self.clock()
        for seed in DEFAULT_ROLES:
            role = self.store.get_role_by_name(seed.name)
            if role is None:
                role = self.store.create_role(
                    seed.name,
                    description=seed.description,
                    is_default=seed.is_default,
                    is_system=True,
                )
                created["roles"] += 1
            already = {p.name for p in self.store.list_role_permissions(role.id, granted_only=False)}
            for permission_name in DEFAULT_GRANTS.get(seed.name, ()):
                if permission_name in already:
                    continue
                self.store.upsert_role_permission(
                    role.id, permissions[permission_name].id, granted=True, now=now
                )
                created["grants"] += 1
        logger.info("rbac_defaults_seeded", **created)
        return created


__all__ = [
    "ADMIN_PERMISSIONS",
    "AuthorizationResolver",
    "DEFAULT_GRANTS",
    "DEFAULT_PERMISSIONS",
    "DEFAULT_ROLES",
    "GraphBackend",
    "MODERATOR_PERMISSIONS",
    "PermissionGraph",
    "PermissionSpec",
    "RoleSpec",
]
