"""End-to-end tests for the /v1 HTTP surface against the in-memory store."""

import pytest
from fastapi.testclient import TestClient

from iamcore import app as app_module
from iamcore.service.runtime import get_runtime
from iamcore.storage.models import RoleScope

PASSWORD = "Password123"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def world():
    """Seed tenant t1, the default roles, a super-admin, a tenant admin and an operator."""
    runtime = get_runtime()
    store = runtime.store
    pw_hash = runtime.passwords.hash(PASSWORD)
    store.create_tenant("Acme", tenant_id="t1")
    roles = {
        "SUPER_ADMIN": store.create_role("SUPER_ADMIN", RoleScope.SYSTEM),
        "TENANT_ADMIN": store.create_role("TENANT_ADMIN", RoleScope.TENANT),
        "OPERATOR": store.create_role("OPERATOR", RoleScope.TENANT),
    }
    read = store.create_permission("transaction.read")
    store.assign_permission(roles["OPERATOR"].id, read.id)
    users = {
        "root": store.create_user(
            "root@x.com", pw_hash, tenant_id=None, role_ids=[roles["SUPER_ADMIN"].id]
        ),
        "admin": store.create_user(
            "admin@x.com", pw_hash, tenant_id="t1", role_ids=[roles["TENANT_ADMIN"].id]
        ),
        "operator": store.create_user(
            "op@x.com", pw_hash, tenant_id="t1", role_ids=[roles["OPERATOR"].id]
        ),
    }
    return {"roles": roles, "users": users, "permissions": {"read": read}}


def _login(client, email, tenant_id=None):
    body = {"email": email, "password": PASSWORD}
    if tenant_id:
        body["tenant_id"] = tenant_id
    response = client.post("/v1/auth/login", json=body)
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _auth(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


class TestAuthEndpoints:
    def test_login_returns_envelope(self, client, world):
        response = client.post(
            "/v1/auth/login",
            json={"email": "op@x.com", "password": PASSWORD, "tenant_id": "t1"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["expires_in"] == 1800
        assert len(body["data"]["refresh_token"]) == 64
        assert response.headers["Cache-Control"] == "no-store"
        assert "X-Request-ID" in response.headers

    def test_login_failure_is_opaque(self, client, world):
        wrong_password = client.post(
            "/v1/auth/login",
            json={"email": "op@x.com", "password": "nope", "tenant_id": "t1"},
        )
        wrong_tenant = client.post(
            "/v1/auth/login",
            json={"email": "op@x.com", "password": PASSWORD, "tenant_id": "t9"},
        )

        for response in (wrong_password, wrong_tenant):
            assert response.status_code == 401
            error = response.json()["error"]
            assert error["code"] == "invalid_credentials"
            assert error["message"] == "invalid credentials"

    def test_malformed_email_is_invalid_credentials(self, client, world):
        response = client.post(
            "/v1/auth/login",
            json={"email": "not-an-email", "password": PASSWORD, "tenant_id": "t1"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_login_validation_error(self, client, world):
        response = client.post("/v1/auth/login", json={"email": "op@x.com"})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

    def test_refresh_then_replay(self, client, world):
        tokens = _login(client, "op@x.com", "t1")

        first = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        replay = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})

        assert first.status_code == 200
        assert first.json()["data"]["refresh_token"] != tokens["refresh_token"]
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "invalid_refresh_token"

    def test_logout_revokes_refresh_token(self, client, world):
        tokens = _login(client, "op@x.com", "t1")

        response = client.post(
            "/v1/auth/logout",
            json={"refresh_token": tokens["refresh_token"]},
            headers=_auth(tokens),
        )

        assert response.status_code == 204
        refresh = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401
        # Access tokens stay valid until they expire
        assert client.get("/v1/users/profile", headers=_auth(tokens)).status_code == 200

    def test_error_body_echoes_request_id(self, client, world):
        response = client.post(
            "/v1/auth/login",
            json={"email": "op@x.com", "password": "nope", "tenant_id": "t1"},
            headers={"X-Request-ID": "trace-42"},
        )

        assert response.status_code == 401
        assert response.headers["X-Request-ID"] == "trace-42"
        assert response.json()["request_id"] == "trace-42"

    def test_generated_request_id_matches_header(self, client, world):
        response = client.post(
            "/v1/auth/login",
            json={"email": "op@x.com", "password": PASSWORD, "tenant_id": "t1"},
        )

        assert response.json()["request_id"] == response.headers["X-Request-ID"]

    def test_logout_requires_bearer(self, client, world):
        response = client.post("/v1/auth/logout", json={"refresh_token": "abc"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestGuards:
    def test_operator_cannot_create_tenant(self, client, world):
        tokens = _login(client, "op@x.com", "t1")

        response = client.post("/v1/tenants", json={"name": "Globex"}, headers=_auth(tokens))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_tampered_token_is_unauthorized(self, client, world):
        tokens = _login(client, "op@x.com", "t1")
        tampered = tokens["access_token"][:-2] + ("AA" if not tokens["access_token"].endswith("AA") else "BB")

        response = client.get("/v1/users/profile", headers={"Authorization": f"Bearer {tampered}"})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid token"

    def test_tenant_admin_cannot_manage_roles(self, client, world):
        tokens = _login(client, "admin@x.com", "t1")

        assert client.get("/v1/roles", headers=_auth(tokens)).status_code == 403
        assert client.get("/v1/users", headers=_auth(tokens)).status_code == 200


class TestUserEndpoints:
    def test_profile_includes_permissions(self, client, world):
        tokens = _login(client, "op@x.com", "t1")

        data = client.get("/v1/users/profile", headers=_auth(tokens)).json()["data"]

        assert data["email"] == "op@x.com"
        assert data["roles"] == ["OPERATOR"]
        assert data["permissions"] == ["transaction.read"]
        assert data["is_super_admin"] is False

    def test_tenant_admin_creates_and_disables_user(self, client, world):
        tokens = _login(client, "admin@x.com", "t1")
        created = client.post(
            "/v1/users",
            json={
                "email": "New@X.com",
                "password": "Another123",
                "role_ids": [world["roles"]["OPERATOR"].id],
            },
            headers=_auth(tokens),
        )
        assert created.status_code == 201, created.text
        user = created.json()["data"]
        assert user["email"] == "new@x.com"
        assert user["tenant_id"] == "t1"
        assert user["roles"] == ["OPERATOR"]

        new_tokens = client.post(
            "/v1/auth/login",
            json={"email": "new@x.com", "password": "Another123", "tenant_id": "t1"},
        ).json()["data"]

        disabled = client.patch(f"/v1/users/{user['id']}/disable", headers=_auth(tokens))
        assert disabled.status_code == 200
        assert disabled.json()["data"] == {"user_id": user["id"], "revoked_tokens": 1}

        refresh = client.post("/v1/auth/refresh", json={"refresh_token": new_tokens["refresh_token"]})
        assert refresh.status_code == 401
        login = client.post(
            "/v1/auth/login",
            json={"email": "new@x.com", "password": "Another123", "tenant_id": "t1"},
        )
        assert login.status_code == 403
        assert login.json()["error"]["code"] == "user_inactive"

    def test_duplicate_user_conflicts(self, client, world):
        tokens = _login(client, "admin@x.com", "t1")

        response = client.post(
            "/v1/users",
            json={"email": "OP@x.com", "password": "Another123"},
            headers=_auth(tokens),
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_weak_password_rejected(self, client, world):
        tokens = _login(client, "admin@x.com", "t1")

        response = client.post(
            "/v1/users", json={"email": "weak@x.com", "password": "short"}, headers=_auth(tokens)
        )

        assert response.status_code == 422

    def test_revoke_sessions(self, client, world):
        _login(client, "op@x.com", "t1")
        _login(client, "op@x.com", "t1")
        tokens = _login(client, "admin@x.com", "t1")
        op_id = world["users"]["operator"].id

        response = client.post(f"/v1/users/{op_id}/sessions/revoke", headers=_auth(tokens))

        assert response.status_code == 200
        assert response.json()["data"]["revoked_tokens"] == 2

    def test_update_user_email(self, client, world):
        tokens = _login(client, "admin@x.com", "t1")
        op_id = world["users"]["operator"].id

        response = client.patch(
            f"/v1/users/{op_id}", json={"email": "renamed@x.com"}, headers=_auth(tokens)
        )

        assert response.status_code == 200
        assert response.json()["data"]["email"] == "renamed@x.com"


class TestSuperAdminEndpoints:
    def test_tenant_lifecycle(self, client, world):
        tokens = _login(client, "root@x.com")

        created = client.post("/v1/tenants", json={"name": "Globex"}, headers=_auth(tokens))
        assert created.status_code == 201
        tenant_id = created.json()["data"]["id"]

        listed = client.get("/v1/tenants", headers=_auth(tokens)).json()["data"]
        assert {t["id"] for t in listed} >= {"t1", tenant_id}

        suspended = client.patch(f"/v1/tenants/{tenant_id}/suspend", headers=_auth(tokens))
        assert suspended.status_code == 200
        assert suspended.json()["data"]["status"] == "SUSPENDED"

    def test_suspended_tenant_blocks_login(self, client, world):
        tokens = _login(client, "root@x.com")
        client.patch("/v1/tenants/t1/suspend", headers=_auth(tokens))

        response = client.post(
            "/v1/auth/login",
            json={"email": "op@x.com", "password": PASSWORD, "tenant_id": "t1"},
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "tenant_inactive"

    def test_role_permission_management(self, client, world):
        tokens = _login(client, "root@x.com")
        headers = _auth(tokens)

        role = client.post("/v1/roles", json={"name": "auditor"}, headers=headers).json()["data"]
        assert role["name"] == "AUDITOR"
        perm = client.post(
            "/v1/permissions", json={"code": "Report.Export"}, headers=headers
        ).json()["data"]
        assert perm["code"] == "report.export"

        url = f"/v1/roles/{role['id']}/permissions/{perm['id']}"
        assert client.post(url, headers=headers).status_code == 200
        granted = client.get(f"/v1/roles/{role['id']}/permissions", headers=headers).json()["data"]
        assert [p["code"] for p in granted] == ["report.export"]

        assert client.delete(url, headers=headers).status_code == 200
        missing = client.delete(url, headers=headers)
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "not_found"

    def test_duplicate_permission_conflicts(self, client, world):
        tokens = _login(client, "root@x.com")

        response = client.post(
            "/v1/permissions", json={"code": "transaction.read"}, headers=_auth(tokens)
        )

        assert response.status_code == 409

    def test_audit_log_listing(self, client, world):
        _login(client, "op@x.com", "t1")
        admin_tokens = _login(client, "admin@x.com", "t1")
        root_tokens = _login(client, "root@x.com")

        scoped = client.get("/v1/audit-logs", headers=_auth(admin_tokens)).json()["data"]
        everything = client.get(
            "/v1/audit-logs?limit=1", headers=_auth(root_tokens)
        ).json()["data"]

        assert scoped["total"] == 2
        assert {item["tenant_id"] for item in scoped["items"]} == {"t1"}
        assert everything["total"] == 3
        assert everything["limit"] == 1
        assert len(everything["items"]) == 1


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["kind"] == "memory"
