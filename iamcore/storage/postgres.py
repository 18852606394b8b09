from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional, Sequence, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from iamcore.logging import get_logger
from iamcore.storage.errors import ConstraintViolation, StoreError
from iamcore.storage.models import (
    AuditLog,
    Permission,
    RefreshToken,
    Role,
    RoleScope,
    Tenant,
    TenantStatus,
    User,
    UserStatus,
    new_id,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS tenants (
        id VARCHAR(36) PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        status VARCHAR(50) NOT NULL DEFAULT 'ACTIVE',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id VARCHAR(36) PRIMARY KEY,
        tenant_id VARCHAR(36) REFERENCES tenants(id),
        email VARCHAR(255) NOT NULL,
        password_hash VARCHAR(255) NOT NULL,
        status VARCHAR(50) NOT NULL DEFAULT 'ACTIVE',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    # NULL tenant_id marks system-scope users; COALESCE keeps them unique too
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_users_tenant_email
        ON users (COALESCE(tenant_id, ''), lower(email))
    """,
    """
    CREATE TABLE IF NOT EXISTS roles (
        id VARCHAR(36) PRIMARY KEY,
        name VARCHAR(100) NOT NULL,
        scope VARCHAR(50) NOT NULL DEFAULT 'TENANT',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (name, scope)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS permissions (
        id VARCHAR(36) PRIMARY KEY,
        code VARCHAR(100) NOT NULL UNIQUE,
        description TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_permissions (
        role_id VARCHAR(36) NOT NULL REFERENCES roles(id),
        permission_id VARCHAR(36) NOT NULL REFERENCES permissions(id),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (role_id, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_roles (
        user_id VARCHAR(36) NOT NULL REFERENCES users(id),
        role_id VARCHAR(36) NOT NULL REFERENCES roles(id),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_tokens (
        token VARCHAR(255) PRIMARY KEY,
        user_id VARCHAR(36) NOT NULL REFERENCES users(id),
        tenant_id VARCHAR(36) REFERENCES tenants(id),
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_refresh_tokens_user_id ON refresh_tokens (user_id)",
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id VARCHAR(36) PRIMARY KEY,
        actor_id VARCHAR(36) NOT NULL,
        tenant_id VARCHAR(36),
        action VARCHAR(100) NOT NULL,
        target VARCHAR(255) NOT NULL,
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_tenant_id ON audit_logs (tenant_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_created_at ON audit_logs (created_at)",
)


def _row_to_tenant(row: dict) -> Tenant:
    return Tenant(
        id=str(row["id"]),
        name=row["name"],
        status=TenantStatus(row["status"]),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _row_to_user(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row["password_hash"],
        tenant_id=row.get("tenant_id"),
        status=UserStatus(row["status"]),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _row_to_role(row: dict) -> Role:
    return Role(
        id=str(row["id"]),
        name=row["name"],
        scope=RoleScope(row["scope"]),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _row_to_permission(row: dict) -> Permission:
    return Permission(
        id=str(row["id"]),
        code=row["code"],
        description=row.get("description") or "",
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _row_to_refresh_token(row: dict) -> RefreshToken:
    return RefreshToken(
        token=row["token"],
        user_id=str(row["user_id"]),
        tenant_id=row.get("tenant_id"),
        expires_at=row["expires_at"],
        revoked_at=row.get("revoked_at"),
        created_at=row.get("created_at") or utcnow(),
    )


def _row_to_audit_log(row: dict) -> AuditLog:
    metadata = row.get("metadata")
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return AuditLog(
        id=str(row["id"]),
        actor_id=row["actor_id"],
        action=row["action"],
        target=row["target"],
        tenant_id=row.get("tenant_id"),
        metadata=metadata or {},
        created_at=row.get("created_at") or utcnow(),
    )


class PostgresStore:
    """Postgres-backed credential store.

    Every call checks a connection out of the pool with a bounded wait and
    runs under a server-side ``statement_timeout`` so no call outlives the
    request that issued it. Driver failures surface as ``StoreError``.
    """

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 5.0,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection(timeout=self.timeout_seconds) as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("unique constraint violated") from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("referenced record missing") from exc
        except (psycopg.Error, PoolTimeout) as exc:
            self.logger.error(
                "store_call_failed", error=str(exc), error_type=type(exc).__name__
            )
            raise StoreError("store call failed", {"error_type": type(exc).__name__}) from exc

    def _ensure_schema(self) -> None:
        """Create the credential tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except StoreError:
            return False
        return True

    def close(self) -> None:
        self.pool.close()

    # tenants
    def create_tenant(
        self,
        name: str,
        *,
        status: TenantStatus = TenantStatus.ACTIVE,
        tenant_id: Optional[str] = None,
    ) -> Tenant:
        with self._connect() as conn:
            row = conn.execute(
                "INSERT INTO tenants (id, name, status) VALUES (%s, %s, %s) RETURNING *",
                (tenant_id or new_id(), name, TenantStatus(status).value),
            ).fetchone()
        return _row_to_tenant(row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenants WHERE id = %s", (tenant_id,)
            ).fetchone()
        return _row_to_tenant(row) if row else None

    def list_tenants(self, limit: int = 100, offset: int = 0) -> List[Tenant]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tenants ORDER BY created_at LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [_row_to_tenant(row) for row in rows]

    def update_tenant_status(
        self, tenant_id: str, status: TenantStatus
    ) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE tenants SET status = %s, updated_at = now() WHERE id = %s RETURNING *",
                (TenantStatus(status).value, tenant_id),
            ).fetchone()
        return _row_to_tenant(row) if row else None

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        tenant_id: Optional[str],
        role_ids: Sequence[str] = (),
        status: UserStatus = UserStatus.ACTIVE,
        user_id: Optional[str] = None,
    ) -> User:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                INSERT INTO users (id, tenant_id, email, password_hash, status)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    user_id or new_id(),
                    tenant_id,
                    email,
                    password_hash,
                    UserStatus(status).value,
                ),
            ).fetchone()
            for role_id in dict.fromkeys(role_ids):
                conn.execute(
                    "INSERT INTO user_roles (user_id, role_id) VALUES (%s, %s)",
                    (row["id"], role_id),
                )
        return _row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_email(self, email: str, tenant_id: Optional[str]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM users
                WHERE lower(email) = lower(%s) AND tenant_id IS NOT DISTINCT FROM %s
                """,
                (email, tenant_id),
            ).fetchone()
        return _row_to_user(row) if row else None

    def list_users(
        self, tenant_id: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> List[User]:
        with self._connect() as conn:
            if tenant_id:
                rows = conn.execute(
                    "SELECT * FROM users WHERE tenant_id = %s ORDER BY created_at DESC LIMIT %s OFFSET %s",
                    (tenant_id, limit, offset),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM users ORDER BY created_at DESC LIMIT %s OFFSET %s",
                    (limit, offset),
                ).fetchall()
        return [_row_to_user(row) for row in rows]

    def update_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        role_ids: Optional[Sequence[str]] = None,
    ) -> Optional[User]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE users
                SET email = COALESCE(%s, email),
                    password_hash = COALESCE(%s, password_hash),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (email, password_hash, user_id),
            ).fetchone()
            if not row:
                return None
            if role_ids is not None:
                self._replace_roles(conn, user_id, role_ids)
        return _row_to_user(row)

    def update_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET status = %s, updated_at = now() WHERE id = %s RETURNING *",
                (UserStatus(status).value, user_id),
            ).fetchone()
        return _row_to_user(row) if row else None

    def _replace_roles(
        self, conn: psycopg.Connection, user_id: str, role_ids: Sequence[str]
    ) -> None:
        conn.execute("DELETE FROM user_roles WHERE user_id = %s", (user_id,))
        for role_id in dict.fromkeys(role_ids):
            conn.execute(
                "INSERT INTO user_roles (user_id, role_id) VALUES (%s, %s)",
                (user_id, role_id),
            )

    def replace_user_roles(self, user_id: str, role_ids: Sequence[str]) -> bool:
        with self._connect() as conn, conn.transaction():
            exists = conn.execute(
                "SELECT id FROM users WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not exists:
                return False
            self._replace_roles(conn, user_id, role_ids)
        return True

    def deactivate_user(self, user_id: str, now: datetime) -> Optional[int]:
        """Mark the user INACTIVE and revoke every live refresh token in one transaction."""

        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "UPDATE users SET status = %s, updated_at = %s WHERE id = %s RETURNING id",
                (UserStatus.INACTIVE.value, now, user_id),
            ).fetchone()
            if not row:
                return None
            result = conn.execute(
                "UPDATE refresh_tokens SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL",
                (now, user_id),
            )
            return result.rowcount

    # roles and permissions
    def create_role(
        self,
        name: str,
        scope: RoleScope = RoleScope.TENANT,
        *,
        role_id: Optional[str] = None,
    ) -> Role:
        with self._connect() as conn:
            row = conn.execute(
                "INSERT INTO roles (id, name, scope) VALUES (%s, %s, %s) RETURNING *",
                (role_id or new_id(), name, RoleScope(scope).value),
            ).fetchone()
        return _row_to_role(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM roles WHERE id = %s", (role_id,)).fetchone()
        return _row_to_role(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM roles WHERE name = %s ORDER BY scope LIMIT 1", (name,)
            ).fetchone()
        return _row_to_role(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM roles ORDER BY name").fetchall()
        return [_row_to_role(row) for row in rows]

    def get_user_roles(self, user_id: str) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM roles r
                JOIN user_roles ur ON ur.role_id = r.id
                WHERE ur.user_id = %s
                ORDER BY r.name
                """,
                (user_id,),
            ).fetchall()
        return [_row_to_role(row) for row in rows]

    def create_permission(
        self,
        code: str,
        description: str = "",
        *,
        permission_id: Optional[str] = None,
    ) -> Permission:
        with self._connect() as conn:
            row = conn.execute(
                "INSERT INTO permissions (id, code, description) VALUES (%s, %s, %s) RETURNING *",
                (permission_id or new_id(), code, description),
            ).fetchone()
        return _row_to_permission(row)

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permissions WHERE id = %s", (permission_id,)
            ).fetchone()
        return _row_to_permission(row) if row else None

    def list_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM permissions ORDER BY code").fetchall()
        return [_row_to_permission(row) for row in rows]

    def get_role_permissions(self, role_id: str) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.* FROM permissions p
                JOIN role_permissions rp ON rp.permission_id = p.id
                WHERE rp.role_id = %s
                ORDER BY p.code
                """,
                (role_id,),
            ).fetchall()
        return [_row_to_permission(row) for row in rows]

    def assign_permission(self, role_id: str, permission_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO role_permissions (role_id, permission_id)
                VALUES (%s, %s)
                ON CONFLICT (role_id, permission_id) DO NOTHING
                """,
                (role_id, permission_id),
            )

    def remove_permission(self, role_id: str, permission_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM role_permissions WHERE role_id = %s AND permission_id = %s",
                (role_id, permission_id),
            )
            return result.rowcount > 0

    # refresh tokens
    def save_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._connect() as conn:
            self._insert_refresh_token(conn, token)
        return token

    def _insert_refresh_token(self, conn: psycopg.Connection, token: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_tokens (token, user_id, tenant_id, expires_at, revoked_at, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                token.token,
                token.user_id,
                token.tenant_id,
                token.expires_at,
                token.revoked_at,
                token.created_at,
            ),
        )

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_tokens WHERE token = %s", (token,)
            ).fetchone()
        return _row_to_refresh_token(row) if row else None

    def revoke_refresh_token(self, token: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_tokens SET revoked_at = %s WHERE token = %s AND revoked_at IS NULL",
                (now, token),
            )
            return result.rowcount > 0

    def revoke_user_refresh_tokens(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_tokens SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL",
                (now, user_id),
            )
            return result.rowcount

    def rotate_refresh_token(
        self, old_token: str, successor: RefreshToken, now: datetime
    ) -> bool:
        """Revoke ``old_token`` if still live and insert ``successor`` atomically.

        The conditional UPDATE takes a row lock, so of two concurrent callers
        presenting the same token only the first sees a returned row.
        """

        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE refresh_tokens
                SET revoked_at = %s
                WHERE token = %s AND revoked_at IS NULL AND expires_at > %s
                RETURNING token
                """,
                (now, old_token, now),
            ).fetchone()
            if not row:
                return False
            self._insert_refresh_token(conn, successor)
        return True

    # audit
    def append_audit_log(self, entry: AuditLog) -> AuditLog:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_logs (id, actor_id, tenant_id, action, target, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.actor_id,
                    entry.tenant_id,
                    entry.action,
                    entry.target,
                    json.dumps(entry.metadata) if entry.metadata else None,
                    entry.created_at,
                ),
            )
        return entry

    def list_audit_logs(
        self, tenant_id: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[AuditLog], int]:
        clause = "WHERE tenant_id = %s" if tenant_id is not None else ""
        params: Tuple[Any, ...] = (tenant_id,) if tenant_id is not None else ()
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_logs {clause} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                params + (limit, offset),
            ).fetchall()
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM audit_logs {clause}", params
            ).fetchone()
        return [_row_to_audit_log(row) for row in rows], int(total_row["total"])
