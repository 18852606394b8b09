from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from iamcore.logging import get_logger
from iamcore.service.audit import AuditRecorder
from iamcore.service.auth import AuthService, store_errors
from iamcore.service.errors import (
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    TenantNotFound,
)
from iamcore.service.gate import AuthContext
from iamcore.service.passwords import PasswordHasher
from iamcore.storage.models import (
    AuditAction,
    AuditLog,
    Permission,
    Role,
    RoleScope,
    Tenant,
    TenantStatus,
    User,
    UserStatus,
)

logger = get_logger(__name__)


class AdminStore(Protocol):
    def create_tenant(self, name: str, *, status: TenantStatus = ..., tenant_id: Optional[str] = ...) -> Tenant: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def list_tenants(self, limit: int = 100, offset: int = 0) -> List[Tenant]: ...

    def update_tenant_status(self, tenant_id: str, status: TenantStatus) -> Optional[Tenant]: ...

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        tenant_id: Optional[str],
        role_ids: Sequence[str] = (),
        status: UserStatus = ...,
        user_id: Optional[str] = ...,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def list_users(self, tenant_id: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[User]: ...

    def update_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        role_ids: Optional[Sequence[str]] = None,
    ) -> Optional[User]: ...

    def create_role(self, name: str, scope: RoleScope = ..., *, role_id: Optional[str] = ...) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def list_roles(self) -> List[Role]: ...

    def get_user_roles(self, user_id: str) -> List[Role]: ...

    def create_permission(self, code: str, description: str = "", *, permission_id: Optional[str] = ...) -> Permission: ...

    def get_permission(self, permission_id: str) -> Optional[Permission]: ...

    def list_permissions(self) -> List[Permission]: ...

    def get_role_permissions(self, role_id: str) -> List[Permission]: ...

    def assign_permission(self, role_id: str, permission_id: str) -> None: ...

    def remove_permission(self, role_id: str, permission_id: str) -> bool: ...


class AdminService:
    """Record management for tenants, users, roles and permissions.

    Super-admins act across tenants. Everyone else is confined to the tenant
    embedded in their access token and may not hand out SYSTEM-scope roles.
    """

    def __init__(
        self,
        store: AdminStore,
        auth: AuthService,
        *,
        passwords: Optional[PasswordHasher] = None,
        audit: Optional[AuditRecorder] = None,
    ) -> None:
        self.store = store
        self.auth = auth
        self.passwords = passwords or auth.passwords
        self.audit = audit or auth.audit

    # scoping helpers
    def _check_tenant_access(self, principal: AuthContext, tenant_id: Optional[str]) -> None:
        if principal.is_super_admin:
            return
        if tenant_id is None or tenant_id != principal.tenant_id:
            logger.warning(
                "cross_tenant_access_denied",
                user_id=principal.user_id,
                target_tenant=tenant_id,
            )
            raise ForbiddenError("cannot access another tenant")

    def _get_user_in_scope(self, principal: AuthContext, user_id: str) -> User:
        with store_errors("get_user"):
            user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self._check_tenant_access(principal, user.tenant_id)
        return user

    def _resolve_roles(self, principal: AuthContext, role_ids: Sequence[str]) -> List[Role]:
        roles: List[Role] = []
        with store_errors("get_role"):
            for role_id in dict.fromkeys(role_ids):
                role = self.store.get_role(role_id)
                if role is None:
                    raise NotFoundError("role not found", detail={"role_id": role_id})
                roles.append(role)
        if not principal.is_super_admin and any(r.scope == RoleScope.SYSTEM for r in roles):
            raise ForbiddenError("cannot assign system roles")
        return roles

    # tenants
    async def create_tenant(
        self,
        name: str,
        principal: AuthContext,
        *,
        status: TenantStatus = TenantStatus.ACTIVE,
    ) -> Tenant:
        with store_errors("create_tenant"):
            tenant = self.store.create_tenant(name, status=status)
        self.audit.record(
            AuditAction.TENANT_CREATED,
            actor_id=principal.user_id,
            target=tenant.id,
            tenant_id=tenant.id,
            metadata={"name": tenant.name, "status": tenant.status.value},
        )
        return tenant

    async def list_tenants(self, limit: int = 100, offset: int = 0) -> List[Tenant]:
        with store_errors("list_tenants"):
            return self.store.list_tenants(limit=limit, offset=offset)

    async def suspend_tenant(self, tenant_id: str, principal: AuthContext) -> Tenant:
        with store_errors("suspend_tenant"):
            tenant = self.store.get_tenant(tenant_id)
            if tenant is None:
                raise TenantNotFound(detail={"tenant_id": tenant_id})
            if tenant.status == TenantStatus.SUSPENDED:
                return tenant
            previous = tenant.status
            updated = self.store.update_tenant_status(tenant_id, TenantStatus.SUSPENDED)
        if updated is None:
            raise TenantNotFound(detail={"tenant_id": tenant_id})
        self.audit.record(
            AuditAction.TENANT_SUSPENDED,
            actor_id=principal.user_id,
            target=tenant_id,
            tenant_id=tenant_id,
            metadata={"previous_status": previous.value},
        )
        return updated

    # users
    async def create_user(
        self,
        email: str,
        password: str,
        principal: AuthContext,
        *,
        tenant_id: Optional[str] = None,
        role_ids: Sequence[str] = (),
    ) -> User:
        target_tenant = tenant_id or principal.tenant_id
        self._check_tenant_access(principal, target_tenant)
        if target_tenant is not None:
            with store_errors("get_tenant"):
                if self.store.get_tenant(target_tenant) is None:
                    raise TenantNotFound(detail={"tenant_id": target_tenant})
        roles = self._resolve_roles(principal, role_ids)
        password_hash = self.passwords.hash(password)
        with store_errors("create_user"):
            user = self.store.create_user(
                email,
                password_hash,
                tenant_id=target_tenant,
                role_ids=[r.id for r in roles],
            )
        self.audit.record(
            AuditAction.USER_CREATED,
            actor_id=principal.user_id,
            target=user.id,
            tenant_id=user.tenant_id,
            metadata={"roles": [r.name for r in roles]},
        )
        return user

    async def update_user(
        self,
        user_id: str,
        principal: AuthContext,
        *,
        email: Optional[str] = None,
        password: Optional[str] = None,
        role_ids: Optional[Sequence[str]] = None,
    ) -> User:
        self._get_user_in_scope(principal, user_id)
        roles = self._resolve_roles(principal, role_ids) if role_ids is not None else None
        password_hash = self.passwords.hash(password) if password else None
        with store_errors("update_user"):
            # Profile fields and role replacement commit together
            user = self.store.update_user(
                user_id,
                email=email,
                password_hash=password_hash,
                role_ids=[r.id for r in roles] if roles is not None else None,
            )
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        changes: Dict[str, Any] = {}
        if email is not None:
            changes["email_changed"] = True
        if password_hash is not None:
            changes["credential_changed"] = True
        if roles is not None:
            changes["roles"] = [r.name for r in roles]
        self.audit.record(
            AuditAction.USER_UPDATED,
            actor_id=principal.user_id,
            target=user_id,
            tenant_id=user.tenant_id,
            metadata=changes,
        )
        return user

    async def list_users(
        self, principal: AuthContext, *, limit: int = 100, offset: int = 0
    ) -> List[User]:
        tenant_scope = None if principal.is_super_admin else principal.tenant_id
        if tenant_scope is None and not principal.is_super_admin:
            raise ForbiddenError("cannot access another tenant")
        with store_errors("list_users"):
            return self.store.list_users(tenant_id=tenant_scope, limit=limit, offset=offset)

    async def get_profile(self, principal: AuthContext) -> Dict[str, Any]:
        with store_errors("get_profile"):
            user = self.store.get_user(principal.user_id)
            if user is None:
                raise NotFoundError("user not found", detail={"user_id": principal.user_id})
            roles = self.store.get_user_roles(user.id)
        return {"user": user, "roles": roles}

    async def get_user_roles(self, user_id: str) -> List[Role]:
        with store_errors("get_user_roles"):
            return self.store.get_user_roles(user_id)

    async def disable_user(self, user_id: str, principal: AuthContext) -> int:
        if user_id == principal.user_id:
            raise BadRequestError("cannot disable your own account")
        user = self._get_user_in_scope(principal, user_id)
        return await self.auth.disable_user(
            user_id, principal.user_id, tenant_id=user.tenant_id
        )

    async def revoke_sessions(self, user_id: str, principal: AuthContext) -> int:
        user = self._get_user_in_scope(principal, user_id)
        return await self.auth.revoke_sessions(
            user_id, principal.user_id, tenant_id=user.tenant_id
        )

    # roles and permissions
    async def create_role(
        self, name: str, principal: AuthContext, *, scope: RoleScope = RoleScope.TENANT
    ) -> Role:
        with store_errors("create_role"):
            role = self.store.create_role(name, scope)
        self.audit.record(
            AuditAction.ROLE_CREATED,
            actor_id=principal.user_id,
            target=role.id,
            metadata={"name": role.name, "scope": role.scope.value},
        )
        return role

    async def list_roles(self) -> List[Role]:
        with store_errors("list_roles"):
            return self.store.list_roles()

    async def create_permission(
        self, code: str, principal: AuthContext, *, description: str = ""
    ) -> Permission:
        with store_errors("create_permission"):
            permission = self.store.create_permission(code, description)
        self.audit.record(
            AuditAction.PERMISSION_CREATED,
            actor_id=principal.user_id,
            target=permission.id,
            metadata={"code": permission.code},
        )
        return permission

    async def list_permissions(self) -> List[Permission]:
        with store_errors("list_permissions"):
            return self.store.list_permissions()

    def _require_role_and_permission(self, role_id: str, permission_id: str) -> Tuple[Role, Permission]:
        with store_errors("get_role_permission"):
            role = self.store.get_role(role_id)
            if role is None:
                raise NotFoundError("role not found", detail={"role_id": role_id})
            permission = self.store.get_permission(permission_id)
            if permission is None:
                raise NotFoundError(
                    "permission not found", detail={"permission_id": permission_id}
                )
        return role, permission

    async def list_role_permissions(self, role_id: str) -> List[Permission]:
        with store_errors("list_role_permissions"):
            if self.store.get_role(role_id) is None:
                raise NotFoundError("role not found", detail={"role_id": role_id})
            return self.store.get_role_permissions(role_id)

    async def assign_permission(
        self, role_id: str, permission_id: str, principal: AuthContext
    ) -> None:
        role, permission = self._require_role_and_permission(role_id, permission_id)
        with store_errors("assign_permission"):
            self.store.assign_permission(role.id, permission.id)
        self.audit.record(
            AuditAction.ROLE_PERMISSION_ASSIGNED,
            actor_id=principal.user_id,
            target=role.id,
            metadata={"permission": permission.code},
        )

    async def remove_permission(
        self, role_id: str, permission_id: str, principal: AuthContext
    ) -> bool:
        role, permission = self._require_role_and_permission(role_id, permission_id)
        with store_errors("remove_permission"):
            removed = self.store.remove_permission(role.id, permission.id)
        if removed:
            self.audit.record(
                AuditAction.ROLE_PERMISSION_REMOVED,
                actor_id=principal.user_id,
                target=role.id,
                metadata={"permission": permission.code},
            )
        return removed

    # audit
    async def list_audit_logs(
        self, principal: AuthContext, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[AuditLog], int]:
        tenant_scope = None if principal.is_super_admin else principal.tenant_id
        if tenant_scope is None and not principal.is_super_admin:
            raise ForbiddenError("cannot access another tenant")
        with store_errors("list_audit_logs"):
            return self.audit.list_entries(tenant_id=tenant_scope, limit=limit, offset=offset)
