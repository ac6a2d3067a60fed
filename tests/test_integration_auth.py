"""Integration tests for the session lifecycle over HTTP.

Tests the complete auth flow including:
- Registration into an existing community
- Login with password
- Authenticated reads of the current principal
- Logout revoking the presented credential
"""

import time

import pytest
from fastapi.testclient import TestClient

from communitypulse import app as app_module
from communitypulse.service.credentials import SECONDS_PER_DAY, CredentialIssuer
from communitypulse.service.runtime import get_runtime

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def community():
    return get_runtime().store.create_tenant("maple", "Maple Court")


@pytest.fixture
def resident(community):
    runtime = get_runtime()
    user = runtime.store.create_user("resident@example.com", "Resident", tenant_id=community.id)
    runtime.auth.save_password(user.id, PASSWORD)
    return user


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _login(client, email="resident@example.com", password=PASSWORD) -> str:
    response = client.post("/v1/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]["access_token"]


class TestRegisterFlow:
    """Public registration."""

    def test_register_creates_member(self, client, community):
        response = client.post(
            "/v1/auth/register",
            json={
                "name": "New Resident",
                "email": "New@Example.com",
                "password": "secret1",
                "community_subdomain": "maple",
                "apartment_number": "12",
            },
        )
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        user = body["data"]["user"]
        assert user["email"] == "new@example.com"
        assert user["role"] == "tenant_member"
        assert user["community"]["subdomain"] == "maple"
        assert body["data"]["expires_in"] == 7 * SECONDS_PER_DAY

    def test_register_duplicate_email(self, client, resident):
        response = client.post(
            "/v1/auth/register",
            json={
                "name": "Dup",
                "email": "resident@example.com",
                "password": "secret1",
                "community_subdomain": "maple",
            },
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_register_unknown_community(self, client):
        response = client.post(
            "/v1/auth/register",
            json={
                "name": "Lost",
                "email": "lost@example.com",
                "password": "secret1",
                "community_subdomain": "nowhere",
            },
        )
        assert response.status_code == 404
        assert response.json()["error"]["reason"] == "tenant_not_found"

    def test_register_validates_password_length(self, client, community):
        response = client.post(
            "/v1/auth/register",
            json={
                "name": "Short",
                "email": "short@example.com",
                "password": "123",
                "community_subdomain": "maple",
            },
        )
        assert response.status_code == 422


class TestLoginFlow:
    """Password login."""

    def test_login_returns_credential_and_principal(self, client, resident, community):
        response = client.post(
            "/v1/auth/login", json={"email": "resident@example.com", "password": PASSWORD}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token_type"] == "bearer"
        assert data["user"]["id"] == resident.id
        assert data["user"]["community"]["id"] == community.id

    def test_wrong_password(self, client, resident):
        response = client.post(
            "/v1/auth/login", json={"email": "resident@example.com", "password": "nope-nope"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["reason"] == "invalid_credentials"


class TestSessionLifecycle:
    """Login, use, logout, reuse."""

    def test_revoked_credential_fails_as_revoked(self, client, resident):
        """A logged-out credential is rejected as revoked well before it expires."""
        token = _login(client)

        me = client.get("/v1/auth/me", headers=_auth(token))
        assert me.status_code == 200
        assert me.json()["data"]["id"] == resident.id

        logout = client.post("/v1/auth/logout", headers=_auth(token))
        assert logout.status_code == 200
        assert logout.json()["data"] == {"revoked": True}

        again = client.get("/v1/auth/me", headers=_auth(token))
        assert again.status_code == 401
        error = again.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["reason"] == "credential_revoked"

    def test_second_session_survives_logout(self, client, resident):
        first = _login(client)
        second = _login(client)
        client.post("/v1/auth/logout", headers=_auth(first))
        assert client.get("/v1/auth/me", headers=_auth(second)).status_code == 200

    def test_logout_with_expired_credential_succeeds(self, client, resident):
        runtime = get_runtime()
        stale_issuer = CredentialIssuer(
            runtime.settings.jwt_secret, clock=lambda: time.time() - 8 * SECONDS_PER_DAY
        )
        token = stale_issuer.issue(resident.id)

        response = client.post("/v1/auth/logout", headers=_auth(token))

        assert response.status_code == 200
        assert response.json()["data"] == {"revoked": False}
        me = client.get("/v1/auth/me", headers=_auth(token))
        assert me.json()["error"]["reason"] == "credential_expired"

    def test_logout_with_forged_credential(self, client, resident):
        forged = CredentialIssuer("some-other-secret-0123456789abcdef").issue(resident.id)
        response = client.post("/v1/auth/logout", headers=_auth(forged))
        assert response.status_code == 401
        assert response.json()["error"]["reason"] == "invalid_signature"

    def test_missing_credential(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["reason"] == "missing_credential"

    def test_deactivated_member_is_locked_out(self, client, resident):
        token = _login(client)
        get_runtime().store.set_user_active(resident.id, False)
        response = client.get("/v1/auth/me", headers=_auth(token))
        assert response.status_code == 401
        assert response.json()["error"]["reason"] == "principal_deactivated"

    def test_non_ascii_signature_is_rejected_not_crashed(self, client, resident):
        header, payload, _ = _login(client).split(".")
        # Raw bytes reach the server unchanged; it decodes them as latin-1
        headers = {"Authorization": f"Bearer {header}.{payload}.ééé".encode("utf-8")}

        me = client.get("/v1/auth/me", headers=headers)
        assert me.status_code == 401
        assert me.json()["error"]["reason"] == "invalid_signature"

        logout = client.post("/v1/auth/logout", headers=headers)
        assert logout.status_code == 401
        assert logout.json()["error"]["reason"] == "invalid_signature"


class TestAccountSelfService:
    """Profile edits and password changes by the signed-in principal."""

    def test_update_profile(self, client, resident, community):
        token = _login(client)
        response = client.put(
            "/v1/auth/profile",
            headers=_auth(token),
            json={"name": "  Res Ident ", "apartment_number": "7C"},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["name"] == "Res Ident"
        assert data["apartment_number"] == "7C"
        assert data["email"] == "resident@example.com"
        assert data["community"]["id"] == community.id

    def test_profile_rejects_blank_name(self, client, resident):
        response = client.put(
            "/v1/auth/profile", headers=_auth(_login(client)), json={"name": "   "}
        )
        assert response.status_code == 422

    def test_profile_requires_credential(self, client):
        response = client.put("/v1/auth/profile", json={"name": "x"})
        assert response.status_code == 401

    def test_change_password(self, client, resident):
        token = _login(client)
        response = client.put(
            "/v1/auth/change-password",
            headers=_auth(token),
            json={"current_password": PASSWORD, "new_password": "brand-new-secret"},
        )
        assert response.status_code == 200

        old = client.post("/v1/auth/login", json={"email": "resident@example.com", "password": PASSWORD})
        assert old.status_code == 401
        _login(client, password="brand-new-secret")

    def test_change_password_wrong_current(self, client, resident):
        response = client.put(
            "/v1/auth/change-password",
            headers=_auth(_login(client)),
            json={"current_password": "not-it", "new_password": "brand-new-secret"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["reason"] == "invalid_current_password"

    def test_change_password_too_short(self, client, resident):
        response = client.put(
            "/v1/auth/change-password",
            headers=_auth(_login(client)),
            json={"current_password": PASSWORD, "new_password": "123"},
        )
        assert response.status_code == 422
