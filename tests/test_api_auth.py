"""HTTP surface tests: envelopes, status codes and the bearer dependency."""

import pytest
from fastapi.testclient import TestClient

from conftest import OTHER_PASSWORD, STRONG_PASSWORD
from warden import app as app_module
from warden.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email="api@example.com", password=STRONG_PASSWORD):
    return client.post(
        "/v1/auth/register",
        json={"email": email, "password": password, "first_name": "Api", "last_name": "User"},
    )


def _login(client, email="api@example.com", password=STRONG_PASSWORD, **extra):
    return client.post("/v1/auth/login", json={"email": email, "password": password, **extra})


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_token(client):
    _register(client)
    return _login(client).json()["data"]["tokens"]["access_token"]


@pytest.fixture
def admin_token(client):
    resp = _register(client, "root@example.com")
    user_id = resp.json()["data"]["user"]["id"]
    runtime = get_runtime()
    runtime.resolver.assign_role(user_id, runtime.store.get_role_by_name("Super Admin").id)
    return _login(client, "root@example.com").json()["data"]["tokens"]["access_token"]


class TestAuthEndpoints:
    def test_register_and_login(self, client):
        resp = _register(client)
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "ok"
        assert body["data"]["user"]["email"] == "api@example.com"
        assert "password_hash" not in body["data"]["user"]

        resp = _login(client)
        assert resp.status_code == 200
        tokens = resp.json()["data"]["tokens"]
        assert tokens["token_type"] == "Bearer"
        assert tokens["refresh_token"]
        assert resp.headers["Cache-Control"].startswith("no-store")
        assert resp.headers["X-Request-ID"]

    def test_duplicate_register(self, client):
        _register(client)
        resp = _register(client, "API@example.com")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "duplicate_key"

    def test_weak_password(self, client):
        resp = _register(client, password="weak")
        assert resp.status_code == 400
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert "requirements" in body["error"]["details"]

    def test_malformed_body_envelope(self, client):
        resp = client.post("/v1/auth/register", json={"email": "x@example.com"})
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert {"password", "first_name", "last_name"} <= {p["field"] for p in error["details"]}

    def test_bad_credentials_envelope(self, client):
        _register(client)
        resp = _login(client, password=OTHER_PASSWORD)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_credentials"

    def test_lockout_returns_423(self, client):
        _register(client)
        for _ in range(5):
            _login(client, password=OTHER_PASSWORD)
        resp = _login(client)
        assert resp.status_code == 423
        error = resp.json()["error"]
        assert error["code"] == "account_locked"
        assert "locked_until" in error["details"]

    def test_me_requires_bearer(self, client, user_token):
        assert client.get("/v1/auth/me").status_code == 401
        assert client.get("/v1/auth/me", headers={"Authorization": f"Token {user_token}"}).status_code == 401
        resp = client.get("/v1/auth/me", headers=_auth("not.a.token"))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_invalid"

    def test_non_ascii_bearer_is_unauthorized(self, client, user_token):
        header, payload, _ = user_token.split(".")
        raw = f"Bearer {header}.{payload}.éé".encode("latin-1")
        resp = client.get("/v1/auth/me", headers={"Authorization": raw})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_invalid"

    def test_me_lists_roles_and_permissions(self, client, user_token):
        resp = client.get("/v1/auth/me", headers=_auth(user_token))
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["roles"] == ["User"]
        assert "content.create" in data["permissions"]

    def test_refresh_and_logout(self, client):
        _register(client)
        tokens = _login(client).json()["data"]["tokens"]
        resp = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 200
        new_access = resp.json()["data"]["access_token"]
        assert client.get("/v1/auth/me", headers=_auth(tokens["access_token"])).status_code == 401
        assert client.post("/v1/auth/logout", headers=_auth(new_access)).status_code == 200
        resp = client.get("/v1/auth/me", headers=_auth(new_access))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "session_invalid"

    def test_password_reset_flow(self, client):
        resp = _register(client)
        user_id = resp.json()["data"]["user"]["id"]
        resp = client.post("/v1/auth/password/forgot", json={"email": "api@example.com"})
        unknown = client.post("/v1/auth/password/forgot", json={"email": "nobody@example.com"})
        assert resp.json()["data"] == unknown.json()["data"]
        token = get_runtime().store.get_user(user_id).password_reset_token
        resp = client.post("/v1/auth/password/reset", json={"token": token, "new_password": OTHER_PASSWORD})
        assert resp.status_code == 200
        resp = client.post("/v1/auth/password/reset", json={"token": token, "new_password": OTHER_PASSWORD})
        assert resp.status_code == 401
        assert _login(client, password=OTHER_PASSWORD).status_code == 200

    def test_email_verification(self, client):
        resp = _register(client)
        user_id = resp.json()["data"]["user"]["id"]
        token = get_runtime().store.get_user(user_id).email_verification_token
        resp = client.post("/v1/auth/email/verify", json={"token": token})
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "verified"

    def test_sessions_listing_marks_current(self, client, user_token):
        _login(client)
        resp = client.get("/v1/auth/sessions", headers=_auth(user_token))
        items = resp.json()["data"]["items"]
        assert len(items) == 2
        assert sum(1 for item in items if item["current"]) == 1

    def test_two_factor_setup_and_login(self, client, user_token):
        resp = client.post("/v1/auth/2fa/enable", headers=_auth(user_token))
        assert resp.status_code == 200
        setup = resp.json()["data"]
        code = get_runtime().two_factor.generate_code(setup["secret"])
        resp = client.post("/v1/auth/2fa/verify", headers=_auth(user_token), json={"code": code})
        assert resp.status_code == 200

        resp = _login(client)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "two_factor_required"
        assert _login(client, two_factor_code=setup["backup_codes"][0]).status_code == 200

    def test_authz_check(self, client, user_token):
        resp = client.get("/v1/authz/check", params={"permission": "content.read"}, headers=_auth(user_token))
        assert resp.json()["data"] == {"permission": "content.read", "allowed": True}
        resp = client.get("/v1/authz/check", params={"permission": "system.admin"}, headers=_auth(user_token))
        assert resp.json()["data"]["allowed"] is False


class TestAdminEndpoints:
    def test_regular_user_forbidden(self, client, user_token):
        resp = client.get("/v1/admin/roles", headers=_auth(user_token))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "insufficient_permission"

    def test_role_crud_and_assignment(self, client, admin_token, user_token):
        headers = _auth(admin_token)
        resp = client.post("/v1/admin/roles", headers=headers, json={"name": "Reviewers"})
        assert resp.status_code == 201
        role_id = resp.json()["data"]["id"]

        perm_id = get_runtime().store.get_permission_by_name("users.list").id
        resp = client.put(f"/v1/admin/roles/{role_id}/permissions/{perm_id}", headers=headers)
        assert resp.status_code == 200

        user_id = client.get("/v1/auth/me", headers=_auth(user_token)).json()["data"]["user"]["id"]
        resp = client.post(f"/v1/admin/users/{user_id}/roles", headers=headers, json={"role_id": role_id})
        assert resp.status_code == 200
        assert client.get("/v1/admin/users", headers=_auth(user_token)).status_code == 200

        resp = client.delete(f"/v1/admin/roles/{role_id}", headers=headers)
        assert resp.status_code == 409
        assert client.delete(f"/v1/admin/users/{user_id}/roles/{role_id}", headers=headers).status_code == 200
        assert client.delete(f"/v1/admin/roles/{role_id}", headers=headers).status_code == 200

    def test_system_role_protected(self, client, admin_token):
        role_id = get_runtime().store.get_role_by_name("User").id
        resp = client.delete(f"/v1/admin/roles/{role_id}", headers=_auth(admin_token))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_unknown_role_is_404(self, client, admin_token):
        resp = client.get("/v1/admin/roles/nope/permissions", headers=_auth(admin_token))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_force_logout_and_deactivate(self, client, admin_token, user_token):
        user_id = client.get("/v1/auth/me", headers=_auth(user_token)).json()["data"]["user"]["id"]
        resp = client.post(f"/v1/admin/users/{user_id}/force-logout", headers=_auth(admin_token))
        assert resp.json()["data"]["sessions"] == 1
        assert client.get("/v1/auth/me", headers=_auth(user_token)).status_code == 401

        resp = client.patch(
            f"/v1/admin/users/{user_id}/status", headers=_auth(admin_token), json={"is_active": False}
        )
        assert resp.status_code == 200
        resp = _login(client)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "account_disabled"


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"]["status"] == "not_configured"
