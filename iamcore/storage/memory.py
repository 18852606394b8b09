from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from iamcore.logging import get_logger
from iamcore.storage.errors import ConstraintViolation
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


class MemoryStore:
    """In-process credential store with the same semantics as PostgresStore.

    Every public method takes ``_data_lock`` so multi-step operations such as
    rotation and user deactivation are atomic with respect to other callers.
    Returned records are copies; mutating them never changes stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.users: Dict[str, User] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.user_roles: Dict[str, Set[str]] = {}
        self.role_permissions: Dict[str, Set[str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.audit_logs: List[AuditLog] = []
        # RLock so composite operations can call other locked helpers
        self._data_lock = threading.RLock()

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # tenants
    def create_tenant(
        self,
        name: str,
        *,
        status: TenantStatus = TenantStatus.ACTIVE,
        tenant_id: Optional[str] = None,
    ) -> Tenant:
        with self._data_lock:
            tid = tenant_id or new_id()
            if tid in self.tenants:
                raise ConstraintViolation("tenant already exists", {"field": "id"})
            tenant = Tenant(id=tid, name=name, status=TenantStatus(status))
            self.tenants[tid] = tenant
            return replace(tenant)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            return replace(tenant) if tenant else None

    def list_tenants(self, limit: int = 100, offset: int = 0) -> List[Tenant]:
        with self._data_lock:
            ordered = sorted(self.tenants.values(), key=lambda t: t.created_at)
            return [replace(t) for t in ordered[offset : offset + limit]]

    def update_tenant_status(
        self, tenant_id: str, status: TenantStatus
    ) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            tenant.status = TenantStatus(status)
            tenant.updated_at = utcnow()
            return replace(tenant)

    # users
    def _email_taken(
        self, email: str, tenant_id: Optional[str], *, exclude: Optional[str] = None
    ) -> bool:
        needle = email.lower()
        return any(
            u.email.lower() == needle and u.tenant_id == tenant_id and u.id != exclude
            for u in self.users.values()
        )

    def _require_roles(self, role_ids: Iterable[str]) -> List[str]:
        resolved = list(dict.fromkeys(role_ids))
        missing = [rid for rid in resolved if rid not in self.roles]
        if missing:
            raise ConstraintViolation("role does not exist", {"role_ids": missing})
        return resolved

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
        with self._data_lock:
            if tenant_id is not None and tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            if self._email_taken(email, tenant_id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            roles = self._require_roles(role_ids)
            user = User(
                id=user_id or new_id(),
                email=email,
                password_hash=password_hash,
                tenant_id=tenant_id,
                status=UserStatus(status),
            )
            self.users[user.id] = user
            self.user_roles[user.id] = set(roles)
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str, tenant_id: Optional[str]) -> Optional[User]:
        needle = email.lower()
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.email.lower() == needle and u.tenant_id == tenant_id
                ),
                None,
            )
            return replace(user) if user else None

    def list_users(
        self, tenant_id: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> List[User]:
        with self._data_lock:
            results = [
                u for u in self.users.values() if not tenant_id or u.tenant_id == tenant_id
            ]
            ordered = sorted(results, key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in ordered[offset : offset + limit]]

    def update_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        role_ids: Optional[Sequence[str]] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            # Validate everything before mutating so a failure applies nothing
            if email is not None and self._email_taken(
                email, user.tenant_id, exclude=user_id
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            roles = self._require_roles(role_ids) if role_ids is not None else None
            if email is not None:
                user.email = email
            if password_hash is not None:
                user.password_hash = password_hash
            if roles is not None:
                self.user_roles[user_id] = set(roles)
            user.updated_at = utcnow()
            return replace(user)

    def update_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = UserStatus(status)
            user.updated_at = utcnow()
            return replace(user)

    def replace_user_roles(self, user_id: str, role_ids: Sequence[str]) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.user_roles[user_id] = set(self._require_roles(role_ids))
            return True

    def deactivate_user(self, user_id: str, now: datetime) -> Optional[int]:
        """Mark the user INACTIVE and revoke every live refresh token in one step.

        Returns the number of tokens revoked, or None if the user does not exist.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = UserStatus.INACTIVE
            user.updated_at = now
            return self.revoke_user_refresh_tokens(user_id, now)

    # roles and permissions
    def create_role(
        self,
        name: str,
        scope: RoleScope = RoleScope.TENANT,
        *,
        role_id: Optional[str] = None,
    ) -> Role:
        with self._data_lock:
            scope = RoleScope(scope)
            if any(r.name == name and r.scope == scope for r in self.roles.values()):
                raise ConstraintViolation("role already exists", {"field": "name"})
            role = Role(id=role_id or new_id(), name=name, scope=scope)
            if role.id in self.roles:
                raise ConstraintViolation("role already exists", {"field": "id"})
            self.roles[role.id] = role
            self.role_permissions.setdefault(role.id, set())
            return replace(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.name == name), None)
            return replace(role) if role else None

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return [replace(r) for r in sorted(self.roles.values(), key=lambda r: r.name)]

    def get_user_roles(self, user_id: str) -> List[Role]:
        with self._data_lock:
            role_ids = self.user_roles.get(user_id, set())
            roles = [self.roles[rid] for rid in role_ids if rid in self.roles]
            return [replace(r) for r in sorted(roles, key=lambda r: r.name)]

    def create_permission(
        self,
        code: str,
        description: str = "",
        *,
        permission_id: Optional[str] = None,
    ) -> Permission:
        with self._data_lock:
            if any(p.code == code for p in self.permissions.values()):
                raise ConstraintViolation("permission already exists", {"field": "code"})
            perm = Permission(
                id=permission_id or new_id(), code=code, description=description
            )
            if perm.id in self.permissions:
                raise ConstraintViolation("permission already exists", {"field": "id"})
            self.permissions[perm.id] = perm
            return replace(perm)

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            perm = self.permissions.get(permission_id)
            return replace(perm) if perm else None

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            ordered = sorted(self.permissions.values(), key=lambda p: p.code)
            return [replace(p) for p in ordered]

    def get_role_permissions(self, role_id: str) -> List[Permission]:
        with self._data_lock:
            perm_ids = self.role_permissions.get(role_id, set())
            perms = [self.permissions[pid] for pid in perm_ids if pid in self.permissions]
            return [replace(p) for p in sorted(perms, key=lambda p: p.code)]

    def assign_permission(self, role_id: str, permission_id: str) -> None:
        with self._data_lock:
            if role_id not in self.roles or permission_id not in self.permissions:
                raise ConstraintViolation(
                    "role or permission does not exist",
                    {"role_id": role_id, "permission_id": permission_id},
                )
            # Re-assigning is a no-op, matching ON CONFLICT DO NOTHING
            self.role_permissions.setdefault(role_id, set()).add(permission_id)

    def remove_permission(self, role_id: str, permission_id: str) -> bool:
        with self._data_lock:
            granted = self.role_permissions.get(role_id, set())
            if permission_id not in granted:
                return False
            granted.discard(permission_id)
            return True

    # refresh tokens
    def save_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            if token.user_id not in self.users:
                raise ConstraintViolation("refresh token user missing", {"user_id": token.user_id})
            stored = replace(token)
            self.refresh_tokens[stored.token] = stored
            return replace(stored)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            found = self.refresh_tokens.get(token)
            return replace(found) if found else None

    def revoke_refresh_token(self, token: str, now: datetime) -> bool:
        with self._data_lock:
            found = self.refresh_tokens.get(token)
            if not found or found.revoked_at is not None:
                return False
            found.revoked_at = now
            return True

    def revoke_user_refresh_tokens(self, user_id: str, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for found in self.refresh_tokens.values():
                if found.user_id == user_id and found.revoked_at is None:
                    found.revoked_at = now
                    revoked += 1
            return revoked

    def rotate_refresh_token(
        self, old_token: str, successor: RefreshToken, now: datetime
    ) -> bool:
        """Revoke ``old_token`` if it is still live and persist ``successor``.

        Returns False without changing anything when the old token is
        missing, already revoked or expired.
        """
        with self._data_lock:
            current = self.refresh_tokens.get(old_token)
            if current is None or not current.is_usable(now):
                return False
            if successor.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            current.revoked_at = now
            self.refresh_tokens[successor.token] = replace(successor)
            return True

    # audit
    def append_audit_log(self, entry: AuditLog) -> AuditLog:
        with self._data_lock:
            stored = replace(entry, metadata=dict(entry.metadata or {}))
            self.audit_logs.append(stored)
            return replace(stored)

    def list_audit_logs(
        self, tenant_id: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[AuditLog], int]:
        with self._data_lock:
            matches = [
                entry
                for entry in self.audit_logs
                if tenant_id is None or entry.tenant_id == tenant_id
            ]
            ordered = sorted(matches, key=lambda e: e.created_at, reverse=True)
            return [replace(e) for e in ordered[offset : offset + limit]], len(matches)
