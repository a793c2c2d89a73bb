from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_ROLE_MUTABLE_FIELDS = ("name", "description", "is_default")
_PERMISSION_MUTABLE_FIELDS = ("name", "description", "resource", "action", "category")

_UNIQUE_FIELDS = {
    "app_user_email_lower_idx": "email",
    "app_user_username_key": "username",
    "role_name_key": "name",
    "permission_name_key": "name",
    "auth_session_session_token_key": "session_token",
}


def _field_from_unique(exc: errors.UniqueViolation) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    constraint = getattr(diag, "constraint_name", None) if diag else None
    return _UNIQUE_FIELDS.get(constraint or "")


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresStore:
    """Postgres-backed store for users, the permission graph and sessions.

    Multi-step mutations run inside one pooled connection context, which
    commits on exit and rolls back on error.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        required_tables = [
            "app_user",
            "role",
            "permission",
            "role_permission",
            "user_role",
            "auth_session",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # row mappers
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            password_hash=row["password_hash"],
            username=row.get("username"),
            tenant_id=row.get("tenant_id") or "public",
            email_verified=bool(row.get("email_verified", False)),
            email_verification_token=row.get("email_verification_token"),
            email_verification_expires=_aware(row.get("email_verification_expires")),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires=_aware(row.get("password_reset_expires")),
            last_password_change=_aware(row.get("last_password_change")),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            two_factor_secret=row.get("two_factor_secret"),
            two_factor_backup_codes=list(row.get("two_factor_backup_codes") or []),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            account_locked_until=_aware(row.get("account_locked_until")),
            last_login=_aware(row.get("last_login")),
            last_login_ip=row.get("last_login_ip"),
            is_active=bool(row.get("is_active", True)),
            created_at=_aware(row["created_at"]),
            updated_at=_aware(row["updated_at"]),
        )

    @staticmethod
    def _role_from_row(row: Dict[str, Any]) -> Role:
        parent = row.get("parent_role_id")
        created_by = row.get("created_by")
        return Role(
            id=str(row["id"]),
            name=row["name"],
            description=row.get("description"),
            is_system=bool(row.get("is_system", False)),
            is_default=bool(row.get("is_default", False)),
            parent_role_id=str(parent) if parent else None,
            level=int(row.get("level") or 0),
            created_at=_aware(row["created_at"]),
            updated_at=_aware(row["updated_at"]),
            created_by=str(created_by) if created_by else None,
        )

    @staticmethod
    def _permission_from_row(row: Dict[str, Any]) -> Permission:
        return Permission(
            id=str(row["id"]),
            name=row["name"],
            resource=row["resource"],
            action=row["action"],
            description=row.get("description"),
            category=row.get("category"),
            is_system=bool(row.get("is_system", False)),
            created_at=_aware(row["created_at"]),
        )

    @staticmethod
    def _user_role_from_row(row: Dict[str, Any]) -> UserRole:
        assigned_by = row.get("assigned_by")
        return UserRole(
            user_id=str(row["user_id"]),
            role_id=str(row["role_id"]),
            is_active=bool(row.get("is_active", True)),
            expires_at=_aware(row.get("expires_at")),
            assigned_at=_aware(row["assigned_at"]),
            assigned_by=str(assigned_by) if assigned_by else None,
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        device_info = row.get("device_info")
        if isinstance(device_info, str):
            try:
                device_info = json.loads(device_info)
            except json.JSONDecodeError:
                device_info = None
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            session_token=row["session_token"],
            expires_at=_aware(row["expires_at"]),
            refresh_token_hash=row.get("refresh_token_hash"),
            device_info=device_info,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=_aware(row["created_at"]),
            last_accessed=_aware(row["last_accessed"]),
            is_active=bool(row.get("is_active", True)),
            is_remembered=bool(row.get("is_remembered", False)),
            force_logout=bool(row.get("force_logout", False)),
        )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (
                        email, username, first_name, last_name, password_hash, tenant_id,
                        email_verification_token, email_verification_expires,
                        last_password_change, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s,
                            COALESCE(%s, now()), COALESCE(%s, now()), COALESCE(%s, now()))
                    RETURNING *
                    """,
                    (
                        email,
                        username,
                        first_name,
                        last_name,
                        password_hash,
                        tenant_id,
                        email_verification_token,
                        email_verification_expires,
                        now,
                        now,
                        now,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _field_from_unique(exc) or "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def _fetch_user(self, where: str, params: Tuple[Any, ...]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM app_user WHERE {where}", params).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("lower(email) = lower(%s)", (email,))

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("username = %s", (username,))

    def list_users(self, tenant_id: Optional[str] = None, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            if tenant_id:
                rows = conn.execute(
                    "SELECT * FROM app_user WHERE tenant_id = %s ORDER BY created_at DESC LIMIT %s",
                    (tenant_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [self._user_from_row(r) for r in rows]

    def _update_user(self, user_id: str, assignments: str, params: Tuple[Any, ...]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*params, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, "is_active = %s", (is_active,))

    def set_email_verification_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> Optional[User]:
        return self._update_user(
            user_id,
            "email_verification_token = %s, email_verification_expires = %s",
            (token, expires_at),
        )

    def verify_email_token(self, token: str, now: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET email_verified = TRUE,
                    email_verification_token = NULL,
                    email_verification_expires = NULL,
                    updated_at = %s
                WHERE email_verification_token = %s AND email_verification_expires > %s
                RETURNING *
                """,
                (now, token, now),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> Optional[User]:
        return self._update_user(
            user_id,
            "password_reset_token = %s, password_reset_expires = %s",
            (token, expires_at),
        )

    def consume_password_reset_token(
        self, token: str, password_hash: str, now: datetime
    ) -> Optional[Tuple[User, List[str]]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s,
                    password_reset_token = NULL,
                    password_reset_expires = NULL,
                    failed_login_attempts = 0,
                    account_locked_until = NULL,
                    last_password_change = %s,
                    updated_at = %s
                WHERE password_reset_token = %s AND password_reset_expires > %s
                RETURNING *
                """,
                (password_hash, now, now, token, now),
            ).fetchone()
            if not row:
                return None
            closed = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE
                WHERE user_id = %s AND is_active
                RETURNING session_token
                """,
                (row["id"],),
            ).fetchall()
        return self._user_from_row(row), [r["session_token"] for r in closed]

    def update_password(
        self, user_id: str, password_hash: str, now: datetime
    ) -> Optional[User]:
        return self._update_user(
            user_id,
            "password_hash = %s, last_password_change = %s",
            (password_hash, now),
        )

    def register_failed_login(
        self,
        user_id: str,
        lock_for: Callable[[int, Optional[datetime]], Optional[datetime]],
        now: datetime,
    ) -> Optional[User]:
        with self._connect() as conn:
            current = conn.execute(
                "SELECT failed_login_attempts, account_locked_until FROM app_user WHERE id = %s FOR UPDATE",
                (user_id,),
            ).fetchone()
            if not current:
                return None
            attempts = int(current["failed_login_attempts"] or 0) + 1
            locked_until = lock_for(attempts, _aware(current.get("account_locked_until")))
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = %s, account_locked_until = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (attempts, locked_until, now, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_successful_login(
        self, user_id: str, now: datetime, ip_address: Optional[str] = None
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = 0,
                    account_locked_until = NULL,
                    last_login = %s,
                    last_login_ip = %s,
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, ip_address, now, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_two_factor(
        self, user_id: str, secret: str, backup_codes: List[str]
    ) -> Optional[User]:
        return self._update_user(
            user_id,
            "two_factor_secret = %s, two_factor_backup_codes = %s, two_factor_enabled = FALSE",
            (secret, list(backup_codes)),
        )

    def enable_two_factor(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, "two_factor_enabled = %s", (True,))

    def clear_two_factor(self, user_id: str) -> Optional[User]:
        return self._update_user(
            user_id,
            "two_factor_enabled = FALSE, two_factor_secret = NULL, two_factor_backup_codes = %s",
            ([],),
        )

    def consume_backup_code(self, user_id: str, code: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET two_factor_backup_codes = array_remove(two_factor_backup_codes, %s)
                WHERE id = %s AND %s = ANY(two_factor_backup_codes)
                RETURNING id
                """,
                (code, user_id, code),
            ).fetchone()
        return bool(row)

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO role (name, description, parent_role_id, level, is_default, is_system, created_by)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (name, description, parent_role_id, level, is_default, is_system, created_by),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "parent role does not exist", {"parent_role_id": parent_role_id}
            )
        return self._role_from_row(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
        return self._role_from_row(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE name = %s", (name,)).fetchone()
        return self._role_from_row(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM role ORDER BY level, name").fetchall()
        return [self._role_from_row(r) for r in rows]

    def list_default_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM role WHERE is_default").fetchall()
        return [self._role_from_row(r) for r in rows]

    def update_role(self, role_id: str, **updates: Any) -> Optional[Role]:
        columns = [k for k in _ROLE_MUTABLE_FIELDS if updates.get(k) is not None]
        if not columns:
            return self.get_role(role_id)
        assignments = ", ".join(f"{c} = %s" for c in columns)
        params = [updates[c] for c in columns]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE role SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    (*params, role_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return self._role_from_row(row) if row else None

    def delete_role(self, role_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM role WHERE id = %s RETURNING id", (role_id,)
            ).fetchone()
        return bool(row)

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO permission (name, resource, action, description, category, is_system)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (name, resource, action, description, category, is_system),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission name already exists", {"field": "name"})
        return self._permission_from_row(row)

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE id = %s", (permission_id,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE name = %s", (name,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def list_permissions(self, category: Optional[str] = None) -> List[Permission]:
        with self._connect() as conn:
            if category is None:
                rows = conn.execute("SELECT * FROM permission ORDER BY name").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM permission WHERE category = %s ORDER BY name",
                    (category,),
                ).fetchall()
        return [self._permission_from_row(r) for r in rows]

    def update_permission(self, permission_id: str, **updates: Any) -> Optional[Permission]:
        columns = [k for k in _PERMISSION_MUTABLE_FIELDS if updates.get(k) is not None]
        if not columns:
            return self.get_permission(permission_id)
        assignments = ", ".join(f"{c} = %s" for c in columns)
        params = [updates[c] for c in columns]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE permission SET {assignments} WHERE id = %s RETURNING *",
                    (*params, permission_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission name already exists", {"field": "name"})
        return self._permission_from_row(row) if row else None

    def delete_permission(self, permission_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM permission WHERE id = %s RETURNING id", (permission_id,)
            ).fetchone()
        return bool(row)

    def upsert_role_permission(
        self,
        role_id: str,
        permission_id: str,
        *,
        granted: bool,
        granted_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RolePermission:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO role_permission (role_id, permission_id, granted, granted_by, granted_at)
                    VALUES (%s, %s, %s, %s, COALESCE(%s, now()))
                    ON CONFLICT (role_id, permission_id) DO UPDATE
                    SET granted = EXCLUDED.granted,
                        granted_by = EXCLUDED.granted_by,
                        granted_at = EXCLUDED.granted_at
                    RETURNING *
                    """,
                    (role_id, permission_id, granted, granted_by, now),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "role or permission does not exist",
                {"role_id": role_id, "permission_id": permission_id},
            )
        granted_by_value = row.get("granted_by")
        return RolePermission(
            role_id=str(row["role_id"]),
            permission_id=str(row["permission_id"]),
            granted=bool(row["granted"]),
            granted_at=_aware(row["granted_at"]),
            granted_by=str(granted_by_value) if granted_by_value else None,
        )

    def list_role_permissions(
        self, role_id: str, *, granted_only: bool = True
    ) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.* FROM role_permission rp
                JOIN permission p ON p.id = rp.permission_id
                WHERE rp.role_id = %s AND (rp.granted OR NOT %s)
                ORDER BY p.name
                """,
                (role_id, granted_only),
            ).fetchall()
        return [self._permission_from_row(r) for r in rows]

    def upsert_user_role(
        self,
        user_id: str,
        role_id: str,
        *,
        assigned_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> UserRole:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_role (user_id, role_id, is_active, expires_at, assigned_by, assigned_at)
                    VALUES (%s, %s, TRUE, %s, %s, COALESCE(%s, now()))
                    ON CONFLICT (user_id, role_id) DO UPDATE
                    SET is_active = TRUE,
                        expires_at = EXCLUDED.expires_at,
                        assigned_by = EXCLUDED.assigned_by,
                        assigned_at = EXCLUDED.assigned_at
                    RETURNING *
                    """,
                    (user_id, role_id, expires_at, assigned_by, now),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user or role does not exist", {"user_id": user_id, "role_id": role_id}
            )
        return self._user_role_from_row(row)

    def deactivate_user_role(self, user_id: str, role_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_role SET is_active = FALSE
                WHERE user_id = %s AND role_id = %s AND is_active
                RETURNING user_id
                """,
                (user_id, role_id),
            ).fetchone()
        return bool(row)

    def get_user_role(self, user_id: str, role_id: str) -> Optional[UserRole]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_role WHERE user_id = %s AND role_id = %s",
                (user_id, role_id),
            ).fetchone()
        return self._user_role_from_row(row) if row else None

    def list_user_roles(self, user_id: str) -> List[UserRole]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_role WHERE user_id = %s", (user_id,)
            ).fetchall()
        return [self._user_role_from_row(r) for r in rows]

    def list_effective_roles(self, user_id: str, now: datetime) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM user_role ur
                JOIN role r ON r.id = ur.role_id
                WHERE ur.user_id = %s AND ur.is_active
                  AND (ur.expires_at IS NULL OR ur.expires_at > %s)
                ORDER BY r.name
                """,
                (user_id, now),
            ).fetchall()
        return [self._role_from_row(r) for r in rows]

    def list_effective_permissions(self, user_id: str, now: datetime) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT p.* FROM user_role ur
                JOIN role_permission rp ON rp.role_id = ur.role_id AND rp.granted
                JOIN permission p ON p.id = rp.permission_id
                WHERE ur.user_id = %s AND ur.is_active
                  AND (ur.expires_at IS NULL OR ur.expires_at > %s)
                ORDER BY p.name
                """,
                (user_id, now),
            ).fetchall()
        return [self._permission_from_row(r) for r in rows]

    def user_has_permission(
        self, user_id: str, permission_name: str, now: datetime
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT EXISTS (
                    SELECT 1 FROM user_role ur
                    JOIN role_permission rp ON rp.role_id = ur.role_id AND rp.granted
                    JOIN permission p ON p.id = rp.permission_id
                    WHERE ur.user_id = %s AND p.name = %s AND ur.is_active
                      AND (ur.expires_at IS NULL OR ur.expires_at > %s)
                ) AS allowed
                """,
                (user_id, permission_name, now),
            ).fetchone()
        return bool(row and row.get("allowed"))

    def count_effective_role_assignments(self, role_id: str, now: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total FROM user_role
                WHERE role_id = %s AND is_active AND (expires_at IS NULL OR expires_at > %s)
                """,
                (role_id, now),
            ).fetchone()
        return int(row["total"]) if row else 0

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_session (
                        user_id, session_token, refresh_token_hash, device_info, ip_address,
                        user_agent, expires_at, is_remembered, created_at, last_accessed
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()), COALESCE(%s, now()))
                    RETURNING *
                    """,
                    (
                        user_id,
                        session_token,
                        refresh_token_hash,
                        json.dumps(device_info) if device_info else None,
                        ip_address,
                        user_agent,
                        expires_at,
                        is_remembered,
                        now,
                        now,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "session token already exists", {"field": "session_token"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._session_from_row(row)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_active_session_by_token(
        self, session_token: str, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE session_token = %s AND is_active AND NOT force_logout AND expires_at > %s
                """,
                (session_token, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_active_session_by_refresh_hash(
        self, refresh_token_hash: str, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE refresh_token_hash = %s AND is_active AND NOT force_logout AND expires_at > %s
                """,
                (refresh_token_hash, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(
        self, session_id: str, now: datetime, ip_address: Optional[str] = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE auth_session
                SET last_accessed = %s, ip_address = COALESCE(%s, ip_address)
                WHERE id = %s
                """,
                (now, ip_address, session_id),
            )

    def update_session_token(
        self, session_id: str, session_token: str
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_session SET session_token = %s WHERE id = %s RETURNING *",
                (session_token, session_id),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def deactivate_session(self, session_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_session SET is_active = FALSE WHERE id = %s RETURNING session_token",
                (session_id,),
            ).fetchone()
        return row["session_token"] if row else None

    def deactivate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> List[str]:
        with self._connect() as conn:
            if except_session_id:
                rows = conn.execute(
                    """
                    UPDATE auth_session SET is_active = FALSE
                    WHERE user_id = %s AND is_active AND id <> %s
                    RETURNING session_token
                    """,
                    (user_id, except_session_id),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    UPDATE auth_session SET is_active = FALSE
                    WHERE user_id = %s AND is_active
                    RETURNING session_token
                    """,
                    (user_id,),
                ).fetchall()
        return [r["session_token"] for r in rows]

    def force_logout_session(self, session_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_session SET force_logout = TRUE WHERE id = %s RETURNING session_token",
                (session_id,),
            ).fetchone()
        return row["session_token"] if row else None

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND is_active AND NOT force_logout AND expires_at > %s
                ORDER BY last_accessed DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def delete_expired_sessions(self, now: datetime) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                DELETE FROM auth_session
                WHERE expires_at < %s OR force_logout
                RETURNING session_token
                """,
                (now,),
            ).fetchall()
        return [r["session_token"] for r in rows]
