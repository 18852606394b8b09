from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from iamcore.api.schemas import (
    AuditLogListResponse,
    AuditLogResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PermissionCreateRequest,
    PermissionResponse,
    ProfileResponse,
    RefreshRequest,
    RevokedTokensResponse,
    RoleCreateRequest,
    RoleResponse,
    TenantCreateRequest,
    TenantResponse,
    TokenPairResponse,
    UserCreateRequest,
    UserListResponse,
    UserResponse,
    UserUpdateRequest,
)
from iamcore.logging import bind_request_identity, get_logger
from iamcore.service.errors import NotFoundError
from iamcore.service.gate import AuthContext
from iamcore.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SUPER_ADMIN = "SUPER_ADMIN"
TENANT_ADMIN = "TENANT_ADMIN"


def _configured_role(name: str) -> str:
    settings = get_runtime().settings
    if name == SUPER_ADMIN:
        return settings.super_admin_role
    if name == TENANT_ADMIN:
        return settings.tenant_admin_role
    return name


def require_roles(*roles: str) -> Callable[..., AuthContext]:
    """Build a dependency that runs the authorization gate for ``roles``.

    No roles means any authenticated caller. The verified context is placed
    on ``request.state`` and bound into the structured log context.
    """

    async def dependency(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> AuthContext:
        runtime = get_runtime()
        required = tuple(_configured_role(r) for r in roles)
        ctx = runtime.gate.authorize(authorization, required)
        request.state.auth = ctx
        request.state.tenant_id = ctx.tenant_id
        bind_request_identity(ctx.user_id, ctx.tenant_id)
        return ctx

    return dependency


get_user = require_roles()
get_admin_user = require_roles(TENANT_ADMIN, SUPER_ADMIN)
get_super_admin = require_roles(SUPER_ADMIN)


def _page_limit(limit: Optional[int]) -> int:
    settings = get_runtime().settings
    return min(limit or settings.default_page_size, settings.max_page_size)


# auth


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange email, password and tenant for an access/refresh token pair.

    Unknown email, wrong password and wrong tenant all fail with the same
    ``invalid_credentials`` error.
    """
    runtime = get_runtime()
    tokens = await runtime.auth.login(body.email, body.password, body.tenant_id)
    return Envelope(status="ok", data=TokenPairResponse(**tokens.to_dict()))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest):
    """Rotate a refresh token. The presented token is spent on success."""
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=TokenPairResponse(**tokens.to_dict()))


@router.post("/auth/logout", status_code=204, tags=["auth"])
async def logout(body: LogoutRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(
        principal.user_id, body.refresh_token, tenant_id=principal.tenant_id
    )
    return Response(status_code=204)


# users


@router.get("/users/profile", response_model=Envelope, tags=["users"])
async def get_profile(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    profile = await runtime.admin.get_profile(principal)
    base = UserResponse.from_model(profile["user"], profile["roles"])
    return Envelope(
        status="ok",
        data=ProfileResponse(
            **base.model_dump(),
            permissions=list(principal.permissions),
            is_super_admin=principal.is_super_admin,
        ),
    )


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: Optional[int] = Query(None, ge=1, description="Maximum users to return"),
    offset: int = Query(0, ge=0),
    principal: AuthContext = Depends(get_admin_user),
):
    """List users in the caller's tenant, or in every tenant for a super-admin."""
    runtime = get_runtime()
    users = await runtime.admin.list_users(
        principal, limit=_page_limit(limit), offset=offset
    )
    items = []
    for user in users:
        roles = await runtime.admin.get_user_roles(user.id)
        items.append(UserResponse.from_model(user, roles))
    return Envelope(status="ok", data=UserListResponse(items=items))


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(
    body: UserCreateRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    user = await runtime.admin.create_user(
        body.email,
        body.password,
        principal,
        tenant_id=body.tenant_id,
        role_ids=body.role_ids,
    )
    roles = await runtime.admin.get_user_roles(user.id)
    return Envelope(status="ok", data=UserResponse.from_model(user, roles))


@router.patch("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    user_id: str,
    body: UserUpdateRequest,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.admin.update_user(
        user_id,
        principal,
        email=body.email,
        password=body.password,
        role_ids=body.role_ids,
    )
    roles = await runtime.admin.get_user_roles(user.id)
    return Envelope(status="ok", data=UserResponse.from_model(user, roles))


@router.patch("/users/{user_id}/disable", response_model=Envelope, tags=["users"])
async def disable_user(user_id: str, principal: AuthContext = Depends(get_admin_user)):
    """Deactivate a user and revoke all of their refresh tokens.

    Access tokens already issued keep working until they expire.
    """
    runtime = get_runtime()
    revoked = await runtime.admin.disable_user(user_id, principal)
    return Envelope(
        status="ok", data=RevokedTokensResponse(user_id=user_id, revoked_tokens=revoked)
    )


@router.post("/users/{user_id}/sessions/revoke", response_model=Envelope, tags=["users"])
async def revoke_user_sessions(
    user_id: str, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    revoked = await runtime.admin.revoke_sessions(user_id, principal)
    return Envelope(
        status="ok", data=RevokedTokensResponse(user_id=user_id, revoked_tokens=revoked)
    )


# tenants


@router.post("/tenants", response_model=Envelope, status_code=201, tags=["tenants"])
async def create_tenant(
    body: TenantCreateRequest, principal: AuthContext = Depends(get_super_admin)
):
    runtime = get_runtime()
    tenant = await runtime.admin.create_tenant(body.name, principal, status=body.status)
    return Envelope(status="ok", data=TenantResponse.from_model(tenant))


@router.get("/tenants", response_model=Envelope, tags=["tenants"])
async def list_tenants(
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    principal: AuthContext = Depends(get_super_admin),
):
    runtime = get_runtime()
    tenants = await runtime.admin.list_tenants(limit=_page_limit(limit), offset=offset)
    return Envelope(status="ok", data=[TenantResponse.from_model(t) for t in tenants])


@router.patch("/tenants/{tenant_id}/suspend", response_model=Envelope, tags=["tenants"])
async def suspend_tenant(
    tenant_id: str, principal: AuthContext = Depends(get_super_admin)
):
    runtime = get_runtime()
    tenant = await runtime.admin.suspend_tenant(tenant_id, principal)
    return Envelope(status="ok", data=TenantResponse.from_model(tenant))


# roles and permissions


@router.post("/roles", response_model=Envelope, status_code=201, tags=["roles"])
async def create_role(
    body: RoleCreateRequest, principal: AuthContext = Depends(get_super_admin)
):
    runtime = get_runtime()
    role = await runtime.admin.create_role(body.name, principal, scope=body.scope)
    return Envelope(status="ok", data=RoleResponse.from_model(role))


@router.get("/roles", response_model=Envelope, tags=["roles"])
async def list_roles(principal: AuthContext = Depends(get_super_admin)):
    runtime = get_runtime()
    roles = await runtime.admin.list_roles()
    return Envelope(status="ok", data=[RoleResponse.from_model(r) for r in roles])


@router.get("/roles/{role_id}/permissions", response_model=Envelope, tags=["roles"])
async def list_role_permissions(
    role_id: str, principal: AuthContext = Depends(get_super_admin)
):
    runtime = get_runtime()
    permissions = await runtime.admin.list_role_permissions(role_id)
    return Envelope(
        status="ok", data=[PermissionResponse.from_model(p) for p in permissions]
    )


@router.post(
    "/roles/{role_id}/permissions/{permission_id}",
    response_model=Envelope,
    tags=["roles"],
)
async def assign_permission(
    role_id: str, permission_id: str, principal: AuthContext = Depends(get_super_admin)
):
    runtime = get_runtime()
    await runtime.admin.assign_permission(role_id, permission_id, principal)
    return Envelope(
        status="ok", data={"role_id": role_id, "permission_id": permission_id}
    )


@router.delete(
    "/roles/{role_id}/permissions/{permission_id}",
    response_model=Envelope,
    tags=["roles"],
)
async def remove_permission(
    role_id: str, permission_id: str, principal: AuthContext = Depends(get_super_admin)
):
    runtime = get_runtime()
    removed = await runtime.admin.remove_permission(role_id, permission_id, principal)
    if not removed:
        raise NotFoundError(
            "permission not assigned to role",
            detail={"role_id": role_id, "permission_id": permission_id},
        )
    return Envelope(
        status="ok", data={"role_id": role_id, "permission_id": permission_id}
    )


@router.post("/permissions", response_model=Envelope, status_code=201, tags=["permissions"])
async def create_permission(
    body: PermissionCreateRequest, principal: AuthContext = Depends(get_super_admin)
):
    runtime = get_runtime()
    permission = await runtime.admin.create_permission(
        body.code, principal, description=body.description
    )
    return Envelope(status="ok", data=PermissionResponse.from_model(permission))


@router.get("/permissions", response_model=Envelope, tags=["permissions"])
async def list_permissions(principal: AuthContext = Depends(get_super_admin)):
    runtime = get_runtime()
    permissions = await runtime.admin.list_permissions()
    return Envelope(
        status="ok", data=[PermissionResponse.from_model(p) for p in permissions]
    )


# audit


@router.get("/audit-logs", response_model=Envelope, tags=["audit"])
async def list_audit_logs(
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    resolved_limit = _page_limit(limit)
    entries, total = await runtime.admin.list_audit_logs(
        principal, limit=resolved_limit, offset=offset
    )
    return Envelope(
        status="ok",
        data=AuditLogListResponse(
            items=[AuditLogResponse.from_model(e) for e in entries],
            total=total,
            limit=resolved_limit,
            offset=offset,
        ),
    )
