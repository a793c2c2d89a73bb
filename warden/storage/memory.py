from __future__ import annotations

import copy
import json
import threading
import uuid
from dataclasses import asdict, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    Permission,
    Role,
    RolePermission,
    Session,
    User,
    UserRole,
)

T = TypeVar("T")

# Fields that may be changed through update_role / update_permission
_ROLE_MUTABLE_FIELDS = {"name", "description", "is_default"}
_PERMISSION_MUTABLE_FIELDS = {"name", "description", "resource", "action", "category"}


class MemoryStore:
    """In-process backing store with the same surface as ``PostgresStore``.

    Every public method holds ``_data_lock`` for its whole body, so multi-step
    mutations (reset consumption plus session invalidation, failed-attempt
    increment plus lock) are atomic with respect to other callers. When
    ``fs_root`` is given the state is snapshotted to JSON after each write and
    reloaded on start.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.role_permissions: Dict[Tuple[str, str], RolePermission] = {}
        self.user_roles: Dict[Tuple[str, str], UserRole] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can re-enter from public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @staticmethod
    def _copy(obj: T) -> T:
        return copy.deepcopy(obj)

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        username: Optional[str] = None,
        *,
        tenant_id: str = "public",
        email_verification_token: Optional[str] = None,
        email_verification_expires: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> User:
        with self._data_lock:
            lowered = email.lower()
            if any(existing.email.lower() == lowered for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username and any(
                existing.username == username for existing in self.users.values()
            ):
                raise ConstraintViolation("username already exists", {"field": "username"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                first_name=first_name,
                last_name=last_name,
                password_hash=password_hash,
                username=username,
                tenant_id=tenant_id,
                email_verification_token=email_verification_token,
                email_verification_expires=email_verification_expires,
            )
            if now is not None:
                user.created_at = now
                user.updated_at = now
                user.last_password_change = now
            self.users[user.id] = user
            self._persist_state()
            return self._copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            lowered = email.lower()
            user = next(
                (u for u in self.users.values() if u.email.lower() == lowered), None
            )
            return self._copy(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == username), None)
            return self._copy(user) if user else None

    def list_users(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[User]:
        with self._data_lock:
            results = [
                u for u in self.users.values() if not tenant_id or u.tenant_id == tenant_id
            ]
            ordered = sorted(results, key=lambda u: u.created_at, reverse=True)[:limit]
            return [self._copy(u) for u in ordered]

    def _mutate_user(self, user_id: str, mutate: Callable[[User], None]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            mutate(user)
            self._persist_state()
            return self._copy(user)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        def _apply(user: User) -> None:
            user.is_active = is_active

        return self._mutate_user(user_id, _apply)

    def set_email_verification_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> Optional[User]:
        def _apply(user: User) -> None:
            user.email_verification_token = token
            user.email_verification_expires = expires_at

        return self._mutate_user(user_id, _apply)

    def verify_email_token(self, token: str, now: datetime) -> Optional[User]:
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.email_verification_token == token
                    and u.email_verification_expires is not None
                    and u.email_verification_expires > now
                ),
                None,
            )
            if not user:
                return None
            user.email_verified = True
            user.email_verification_token = None
            user.email_verification_expires = None
            user.updated_at = now
            self._persist_state()
            return self._copy(user)

    def set_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> Optional[User]:
        def _apply(user: User) -> None:
            user.password_reset_token = token
            user.password_reset_expires = expires_at

        return self._mutate_user(user_id, _apply)

    def consume_password_reset_token(
        self, token: str, password_hash: str, now: datetime
    ) -> Optional[Tuple[User, List[str]]]:
        """Swap the password and close every session of the token's owner.

        Returns the updated user and the session tokens that were deactivated,
        or ``None`` when the token is unknown or expired.
        """
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.password_reset_token == token
                    and u.password_reset_expires is not None
                    and u.password_reset_expires > now
                ),
                None,
            )
            if not user:
                return None
            user.password_hash = password_hash
            user.password_reset_token = None
            user.password_reset_expires = None
            user.failed_login_attempts = 0
            user.account_locked_until = None
            user.last_password_change = now
            user.updated_at = now
            closed = self._deactivate_sessions_locked(user.id, None)
            self._persist_state()
            return self._copy(user), closed

    def update_password(
        self, user_id: str, password_hash: str, now: datetime
    ) -> Optional[User]:
        def _apply(user: User) -> None:
            user.password_hash = password_hash
            user.last_password_change = now
            user.updated_at = now

        return self._mutate_user(user_id, _apply)

    def register_failed_login(
        self,
        user_id: str,
        lock_for: Callable[[int, Optional[datetime]], Optional[datetime]],
        now: datetime,
    ) -> Optional[User]:
        """Increment the failure counter and apply ``lock_for(attempts, current_lock)``."""

        def _apply(user: User) -> None:
            user.failed_login_attempts += 1
            user.account_locked_until = lock_for(
                user.failed_login_attempts, user.account_locked_until
            )
            user.updated_at = now

        return self._mutate_user(user_id, _apply)

    def record_successful_login(
        self, user_id: str, now: datetime, ip_address: Optional[str] = None
    ) -> Optional[User]:
        def _apply(user: User) -> None:
            user.failed_login_attempts = 0
            user.account_locked_until = None
            user.last_login = now
            user.last_login_ip = ip_address
            user.updated_at = now

        return self._mutate_user(user_id, _apply)

    def set_two_factor(
        self, user_id: str, secret: str, backup_codes: List[str]
    ) -> Optional[User]:
        def _apply(user: User) -> None:
            user.two_factor_secret = secret
            user.two_factor_backup_codes = list(backup_codes)
            user.two_factor_enabled = False

        return self._mutate_user(user_id, _apply)

    def enable_two_factor(self, user_id: str) -> Optional[User]:
        def _apply(user: User) -> None:
            user.two_factor_enabled = True

        return self._mutate_user(user_id, _apply)

    def clear_two_factor(self, user_id: str) -> Optional[User]:
        def _apply(user: User) -> None:
            user.two_factor_enabled = False
            user.two_factor_secret = None
            user.two_factor_backup_codes = []

        return self._mutate_user(user_id, _apply)

    def consume_backup_code(self, user_id: str, code: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or code not in user.two_factor_backup_codes:
                return False
            user.two_factor_backup_codes.remove(code)
            self._persist_state()
            return True

    # roles and permissions
    def create_role(
        self,
        name: str,
        *,
        description: Optional[str] = None,
        parent_role_id: Optional[str] = None,
        level: int = 0,
        is_default: bool = False,
        is_system: bool = False,
        created_by: Optional[str] = None,
    ) -> Role:
        with self._data_lock:
            if any(r.name == name for r in self.roles.values()):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            if parent_role_id and parent_role_id not in self.roles:
                raise ConstraintViolation(
                    "parent role does not exist", {"parent_role_id": parent_role_id}
                )
            role = Role(
                id=str(uuid.uuid4()),
                name=name,
                description=description,
                parent_role_id=parent_role_id,
                level=level,
                is_default=is_default,
                is_system=is_system,
                created_by=created_by,
            )
            self.roles[role.id] = role
            self._persist_state()
            return self._copy(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return self._copy(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.name == name), None)
            return self._copy(role) if role else None

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            ordered = sorted(self.roles.values(), key=lambda r: (r.level, r.name))
            return [self._copy(r) for r in ordered]

    def list_default_roles(self) -> List[Role]:
        with self._data_lock:
            return [self._copy(r) for r in self.roles.values() if r.is_default]

    def update_role(self, role_id: str, **updates: Any) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            new_name = updates.get("name")
            if new_name and any(
                r.name == new_name and r.id != role_id for r in self.roles.values()
            ):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            for key, value in updates.items():
                if key in _ROLE_MUTABLE_FIELDS and value is not None:
                    setattr(role, key, value)
            if "updated_at" in updates:
                role.updated_at = updates["updated_at"]
            self._persist_state()
            return self._copy(role)

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            if role_id not in self.roles:
                return False
            self.roles.pop(role_id)
            for key in [k for k in self.role_permissions if k[0] == role_id]:
                self.role_permissions.pop(key)
            for key in [k for k in self.user_roles if k[1] == role_id]:
                self.user_roles.pop(key)
            for role in self.roles.values():
                if role.parent_role_id == role_id:
                    role.parent_role_id = None
            self._persist_state()
            return True

    def create_permission(
        self,
        name: str,
        resource: str,
        action: str,
        *,
        description: Optional[str] = None,
        category: Optional[str] = None,
        is_system: bool = False,
    ) -> Permission:
        with self._data_lock:
            if any(p.name == name for p in self.permissions.values()):
                raise ConstraintViolation(
                    "permission name already exists", {"field": "name"}
                )
            permission = Permission(
                id=str(uuid.uuid4()),
                name=name,
                resource=resource,
                action=action,
                description=description,
                category=category,
                is_system=is_system,
            )
            self.permissions[permission.id] = permission
            self._persist_state()
            return self._copy(permission)

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            permission = self.permissions.get(permission_id)
            return self._copy(permission) if permission else None

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._data_lock:
            permission = next(
                (p for p in self.permissions.values() if p.name == name), None
            )
            return self._copy(permission) if permission else None

    def list_permissions(self, category: Optional[str] = None) -> List[Permission]:
        with self._data_lock:
            results = [
                p
                for p in self.permissions.values()
                if category is None or p.category == category
            ]
            return [self._copy(p) for p in sorted(results, key=lambda p: p.name)]

    def update_permission(self, permission_id: str, **updates: Any) -> Optional[Permission]:
        with self._data_lock:
            permission = self.permissions.get(permission_id)
            if not permission:
                return None
            new_name = updates.get("name")
            if new_name and any(
                p.name == new_name and p.id != permission_id
                for p in self.permissions.values()
            ):
                raise ConstraintViolation(
                    "permission name already exists", {"field": "name"}
                )
            for key, value in updates.items():
                if key in _PERMISSION_MUTABLE_FIELDS and value is not None:
                    setattr(permission, key, value)
            self._persist_state()
            return self._copy(permission)

    def delete_permission(self, permission_id: str) -> bool:
        with self._data_lock:
            if permission_id not in self.permissions:
                return False
            self.permissions.pop(permission_id)
            for key in [k for k in self.role_permissions if k[1] == permission_id]:
                self.role_permissions.pop(key)
            self._persist_state()
            return True

    def upsert_role_permission(
        self,
        role_id: str,
        permission_id: str,
        *,
        granted: bool,
        granted_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RolePermission:
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            if permission_id not in self.permissions:
                raise ConstraintViolation(
                    "permission does not exist", {"permission_id": permission_id}
                )
            key = (role_id, permission_id)
            edge = self.role_permissions.get(key)
            if edge is None:
                edge = RolePermission(role_id=role_id, permission_id=permission_id)
                self.role_permissions[key] = edge
            edge.granted = granted
            edge.granted_by = granted_by
            if now is not None:
                edge.granted_at = now
            self._persist_state()
            return self._copy(edge)

    def list_role_permissions(
        self, role_id: str, *, granted_only: bool = True
    ) -> List[Permission]:
        with self._data_lock:
            results = [
                self.permissions[edge.permission_id]
                for edge in self.role_permissions.values()
                if edge.role_id == role_id
                and (edge.granted or not granted_only)
                and edge.permission_id in self.permissions
            ]
            return [self._copy(p) for p in sorted(results, key=lambda p: p.name)]

    def upsert_user_role(
        self,
        user_id: str,
        role_id: str,
        *,
        assigned_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> UserRole:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            key = (user_id, role_id)
            assignment = self.user_roles.get(key)
            if assignment is None:
                assignment = UserRole(user_id=user_id, role_id=role_id)
                self.user_roles[key] = assignment
            assignment.is_active = True
            assignment.expires_at = expires_at
            assignment.assigned_by = assigned_by
            if now is not None:
                assignment.assigned_at = now
            self._persist_state()
            return self._copy(assignment)

    def deactivate_user_role(self, user_id: str, role_id: str) -> bool:
        with self._data_lock:
            assignment = self.user_roles.get((user_id, role_id))
            if not assignment or not assignment.is_active:
                return False
            assignment.is_active = False
            self._persist_state()
            return True

    def get_user_role(self, user_id: str, role_id: str) -> Optional[UserRole]:
        with self._data_lock:
            assignment = self.user_roles.get((user_id, role_id))
            return self._copy(assignment) if assignment else None

    def list_user_roles(self, user_id: str) -> List[UserRole]:
        with self._data_lock:
            return [
                self._copy(a) for a in self.user_roles.values() if a.user_id == user_id
            ]

    def _effective_role_ids(self, user_id: str, now: datetime) -> List[str]:
        return [
            a.role_id
            for a in self.user_roles.values()
            if a.user_id == user_id and a.is_effective(now) and a.role_id in self.roles
        ]

    def list_effective_roles(self, user_id: str, now: datetime) -> List[Role]:
        with self._data_lock:
            roles = [self.roles[rid] for rid in self._effective_role_ids(user_id, now)]
            return [self._copy(r) for r in sorted(roles, key=lambda r: r.name)]

    def list_effective_permissions(self, user_id: str, now: datetime) -> List[Permission]:
        with self._data_lock:
            role_ids = set(self._effective_role_ids(user_id, now))
            permission_ids = {
                edge.permission_id
                for edge in self.role_permissions.values()
                if edge.role_id in role_ids and edge.granted
            }
            permissions = [
                self.permissions[pid] for pid in permission_ids if pid in self.permissions
            ]
            return [self._copy(p) for p in sorted(permissions, key=lambda p: p.name)]

    def user_has_permission(
        self, user_id: str, permission_name: str, now: datetime
    ) -> bool:
        with self._data_lock:
            permission = next(
                (p for p in self.permissions.values() if p.name == permission_name), None
            )
            if not permission:
                return False
            for role_id in self._effective_role_ids(user_id, now):
                edge = self.role_permissions.get((role_id, permission.id))
                if edge and edge.granted:
                    return True
            return False

    def count_effective_role_assignments(self, role_id: str, now: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for a in self.user_roles.values()
                if a.role_id == role_id and a.is_effective(now)
            )

    # sessions
    def create_session(
        self,
        user_id: str,
        session_token: str,
        expires_at: datetime,
        *,
        refresh_token_hash: Optional[str] = None,
        device_info: Optional[dict] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        is_remembered: bool = False,
        now: Optional[datetime] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if any(s.session_token == session_token for s in self.sessions.values()):
                raise ConstraintViolation(
                    "session token already exists", {"field": "session_token"}
                )
            sess = Session(
                id=str(uuid.uuid4()),
                user_id=user_id,
                session_token=session_token,
                expires_at=expires_at,
                refresh_token_hash=refresh_token_hash,
                device_info=device_info,
                ip_address=ip_address,
                user_agent=user_agent,
                is_remembered=is_remembered,
            )
            if now is not None:
                sess.created_at = now
                sess.last_accessed = now
            self.sessions[sess.id] = sess
            self._persist_state()
            return self._copy(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return self._copy(sess) if sess else None

    def find_active_session_by_token(
        self, session_token: str, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.session_token == session_token and s.is_valid(now)
                ),
                None,
            )
            return self._copy(sess) if sess else None

    def find_active_session_by_refresh_hash(
        self, refresh_token_hash: str, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.refresh_token_hash == refresh_token_hash and s.is_valid(now)
                ),
                None,
            )
            return self._copy(sess) if sess else None

    def touch_session(
        self, session_id: str, now: datetime, ip_address: Optional[str] = None
    ) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.last_accessed = now
            if ip_address:
                sess.ip_address = ip_address
            self._persist_state()

    def update_session_token(
        self, session_id: str, session_token: str
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            sess.session_token = session_token
            self._persist_state()
            return self._copy(sess)

    def deactivate_session(self, session_id: str) -> Optional[str]:
        """Mark a session inactive and return its token (``None`` if unknown)."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            sess.is_active = False
            self._persist_state()
            return sess.session_token

    def _deactivate_sessions_locked(
        self, user_id: str, except_session_id: Optional[str]
    ) -> List[str]:
        closed: List[str] = []
        for sess in self.sessions.values():
            if sess.user_id != user_id or not sess.is_active:
                continue
            if except_session_id and sess.id == except_session_id:
                continue
            sess.is_active = False
            closed.append(sess.session_token)
        return closed

    def deactivate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> List[str]:
        with self._data_lock:
            closed = self._deactivate_sessions_locked(user_id, except_session_id)
            if closed:
                self._persist_state()
            return closed

    def force_logout_session(self, session_id: str) -> Optional[str]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            sess.force_logout = True
            self._persist_state()
            return sess.session_token

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                s for s in self.sessions.values() if s.user_id == user_id and s.is_valid(now)
            ]
            ordered = sorted(active, key=lambda s: s.last_accessed, reverse=True)
            return [self._copy(s) for s in ordered]

    def delete_expired_sessions(self, now: datetime) -> List[str]:
        """Remove sessions past expiry or flagged for forced logout."""
        with self._data_lock:
            doomed = [
                s for s in self.sessions.values() if s.expires_at < now or s.force_logout
            ]
            for sess in doomed:
                self.sessions.pop(sess.id, None)
            if doomed:
                self._persist_state()
            return [s.session_token for s in doomed]

    # snapshot persistence
    def _state_path(self) -> Path:
        if self.fs_root is None:
            raise RuntimeError("memory store has no fs_root; snapshot persistence is disabled")
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize(cls: type[T], raw: dict) -> T:
        values = dict(raw)
        for f in fields(cls):  # type: ignore[arg-type]
            value = values.get(f.name)
            if isinstance(value, str) and "datetime" in str(f.type):
                values[f.name] = datetime.fromisoformat(value)
        return cls(**values)

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "roles": [self._serialize(r) for r in self.roles.values()],
            "permissions": [self._serialize(p) for p in self.permissions.values()],
            "role_permissions": [
                self._serialize(e) for e in self.role_permissions.values()
            ],
            "user_roles": [self._serialize(a) for a in self.user_roles.values()],
            "sessions": [self._serialize(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: self._deserialize(User, u) for u in data.get("users", [])
        }
        self.roles = {
            r["id"]: self._deserialize(Role, r) for r in data.get("roles", [])
        }
        self.permissions = {
            p["id"]: self._deserialize(Permission, p)
            for p in data.get("permissions", [])
        }
        self.role_permissions = {
            (e["role_id"], e["permission_id"]): self._deserialize(RolePermission, e)
            for e in data.get("role_permissions", [])
        }
        self.user_roles = {
            (a["user_id"], a["role_id"]): self._deserialize(UserRole, a)
            for a in data.get("user_roles", [])
        }
        self.sessions = {
            s["id"]: self._deserialize(Session, s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            roles=len(self.roles),
            sessions=len(self.sessions),
        )
        return True
