"""Tests for tenant-scoped record management."""

import pytest

from iamcore.service.admin import AdminService
from iamcore.service.auth import AuthService
from iamcore.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InvalidRefreshToken,
    NotFoundError,
    TenantNotFound,
)
from iamcore.service.gate import AuthorizationGate
from iamcore.storage.models import AuditAction, RoleScope, TenantStatus, UserStatus


@pytest.fixture
def auth(store, settings, clock):
    return AuthService(store, settings, clock=clock)


@pytest.fixture
def admin(store, auth):
    return AdminService(store, auth)


@pytest.fixture
def principals(store, seeded, auth):
    """Authorization contexts for a super-admin and a t1 tenant admin."""
    gate = AuthorizationGate(auth.issuer)
    roles = seeded["roles"]
    root = store.create_user(
        "root@x.com", auth.passwords.hash("secret"), tenant_id=None,
        role_ids=[roles["SUPER_ADMIN"].id],
    )
    ta = store.create_user(
        "ta@x.com", auth.passwords.hash("secret"), tenant_id="t1",
        role_ids=[roles["TENANT_ADMIN"].id],
    )

    def ctx(user, tenant):
        r, perms = auth.resolver.resolve_for_user(user.id)
        return gate.authorize(f"Bearer {auth.issuer.issue(user, tenant, r, perms)}")

    return {
        "root": ctx(root, None),
        "tenant_admin": ctx(ta, seeded["tenant"]),
    }


class TestTenants:
    async def test_create_and_suspend(self, admin, store, principals):
        root = principals["root"]
        tenant = await admin.create_tenant("Globex", root)

        suspended = await admin.suspend_tenant(tenant.id, root)

        assert suspended.status == TenantStatus.SUSPENDED
        actions = [e.action for e in store.audit_logs]
        assert actions[-2:] == [
            AuditAction.TENANT_CREATED.value,
            AuditAction.TENANT_SUSPENDED.value,
        ]
        assert store.audit_logs[-1].metadata == {"previous_status": "ACTIVE"}

    async def test_suspend_is_idempotent(self, admin, store, principals):
        root = principals["root"]
        await admin.suspend_tenant("t1", root)
        count = len(store.audit_logs)

        again = await admin.suspend_tenant("t1", root)

        assert again.status == TenantStatus.SUSPENDED
        assert len(store.audit_logs) == count

    async def test_suspend_unknown_tenant(self, admin, principals):
        with pytest.raises(TenantNotFound):
            await admin.suspend_tenant("missing", principals["root"])


class TestUsers:
    async def test_tenant_admin_creates_user_in_own_tenant(self, admin, seeded, principals):
        operator_role = seeded["roles"]["OPERATOR"]

        user = await admin.create_user(
            "new@x.com", "Password123", principals["tenant_admin"], role_ids=[operator_role.id]
        )

        assert user.tenant_id == "t1"
        assert [r.name for r in await admin.get_user_roles(user.id)] == ["OPERATOR"]
        assert user.password_hash.startswith("$argon2id$")

    async def test_tenant_admin_cannot_cross_tenants(self, admin, store, principals):
        store.create_tenant("Other", tenant_id="t2")

        with pytest.raises(ForbiddenError):
            await admin.create_user(
                "new@x.com", "Password123", principals["tenant_admin"], tenant_id="t2"
            )

    async def test_tenant_admin_cannot_grant_system_roles(self, admin, seeded, principals):
        with pytest.raises(ForbiddenError):
            await admin.create_user(
                "new@x.com",
                "Password123",
                principals["tenant_admin"],
                role_ids=[seeded["roles"]["SUPER_ADMIN"].id],
            )

    async def test_duplicate_email_conflicts(self, admin, principals):
        await admin.create_user("dup@x.com", "Password123", principals["tenant_admin"])

        with pytest.raises(ConflictError):
            await admin.create_user("DUP@x.com", "Password123", principals["tenant_admin"])

    async def test_unknown_role_is_not_found(self, admin, principals):
        with pytest.raises(NotFoundError):
            await admin.create_user(
                "new@x.com", "Password123", principals["tenant_admin"], role_ids=["nope"]
            )

    async def test_super_admin_must_name_existing_tenant(self, admin, principals):
        with pytest.raises(TenantNotFound):
            await admin.create_user(
                "new@x.com", "Password123", principals["root"], tenant_id="missing"
            )

    async def test_update_replaces_roles_and_password(self, admin, auth, seeded, principals):
        ta = principals["tenant_admin"]
        user = await admin.create_user(
            "new@x.com", "Password123", ta, role_ids=[seeded["roles"]["OPERATOR"].id]
        )

        updated = await admin.update_user(
            user.id, ta, password="Changed456", role_ids=[seeded["roles"]["TENANT_ADMIN"].id]
        )

        assert auth.passwords.verify(updated.password_hash, "Changed456")
        assert [r.name for r in await admin.get_user_roles(user.id)] == ["TENANT_ADMIN"]

    async def test_list_users_is_tenant_scoped(self, admin, store, principals):
        store.create_tenant("Other", tenant_id="t2")
        store.create_user("other@x.com", "h", tenant_id="t2")

        scoped = await admin.list_users(principals["tenant_admin"])
        everyone = await admin.list_users(principals["root"])

        assert {u.tenant_id for u in scoped} == {"t1"}
        assert "other@x.com" in {u.email for u in everyone}

    async def test_disable_user_ends_sessions(self, admin, auth, principals):
        ta = principals["tenant_admin"]
        await admin.create_user("op@x.com", "Password123", ta)
        pair = await auth.login("op@x.com", "Password123", "t1")
        user_id = auth.issuer.verify(pair.access_token).sub

        revoked = await admin.disable_user(user_id, ta)

        assert revoked == 1
        assert admin.store.get_user(user_id).status == UserStatus.INACTIVE
        with pytest.raises(InvalidRefreshToken):
            await auth.refresh(pair.refresh_token)

    async def test_cannot_disable_self(self, admin, principals):
        ta = principals["tenant_admin"]
        with pytest.raises(BadRequestError):
            await admin.disable_user(ta.user_id, ta)

    async def test_disable_user_in_other_tenant_is_forbidden(self, admin, store, principals):
        store.create_tenant("Other", tenant_id="t2")
        outsider = store.create_user("other@x.com", "h", tenant_id="t2")

        with pytest.raises(ForbiddenError):
            await admin.disable_user(outsider.id, principals["tenant_admin"])
        assert store.get_user(outsider.id).status == UserStatus.ACTIVE


class TestRolesAndPermissions:
    async def test_grant_and_revoke_permission(self, admin, store, principals):
        root = principals["root"]
        role = await admin.create_role("AUDITOR", root)
        perm = await admin.create_permission("report.export", root, description="Export")

        await admin.assign_permission(role.id, perm.id, root)
        await admin.assign_permission(role.id, perm.id, root)
        assert [p.code for p in await admin.list_role_permissions(role.id)] == ["report.export"]

        assert await admin.remove_permission(role.id, perm.id, root) is True
        assert await admin.remove_permission(role.id, perm.id, root) is False
        assert await admin.list_role_permissions(role.id) == []

    async def test_duplicate_role_conflicts(self, admin, principals):
        with pytest.raises(ConflictError):
            await admin.create_role("OPERATOR", principals["root"], scope=RoleScope.TENANT)

    async def test_assign_unknown_permission(self, admin, seeded, principals):
        with pytest.raises(NotFoundError):
            await admin.assign_permission(seeded["roles"]["OPERATOR"].id, "missing", principals["root"])


class TestAuditLogs:
    async def test_tenant_admin_sees_own_tenant_only(self, admin, store, auth, principals):
        store.create_tenant("Other", tenant_id="t2")
        auth.audit.record(AuditAction.USER_LOGIN, actor_id="x", target="x", tenant_id="t2")
        auth.audit.record(AuditAction.USER_LOGIN, actor_id="y", target="y", tenant_id="t1")

        entries, total = await admin.list_audit_logs(principals["tenant_admin"])

        assert total == 1
        assert entries[0].actor_id == "y"
        _, all_total = await admin.list_audit_logs(principals["root"])
        assert all_total == 2
