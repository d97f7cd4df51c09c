"""Integration tests for the authentication HTTP surface.

Tests the complete auth flow including:
- Registration and login
- Lockout and anti-enumeration
- Token refresh and logout
- Email verification
- Password reset and change
- Admin deactivation
"""

import pytest
from fastapi.testclient import TestClient

from genesis_auth import app as app_module
from genesis_auth.service.runtime import get_runtime, reset_runtime_for_tests

PASSWORD = "TestPassword123!"
NEW_PASSWORD = "NewPassword456?"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, email="testuser@example.com", password=PASSWORD, name="Test User"):
    response = client.post(
        "/v1/auth/register", json={"name": name, "email": email, "password": password}
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _login(client, email="testuser@example.com", password=PASSWORD, headers=None):
    return client.post(
        "/v1/auth/login", json={"email": email, "password": password}, headers=headers
    )


def _bearer(data):
    return {"Authorization": f"Bearer {data['tokens']['access_token']}"}


class TestRegistration:
    """Tests for account creation."""

    def test_register_returns_user_and_tokens(self, client, outbox):
        response = client.post(
            "/v1/auth/register",
            json={"name": "Test User", "email": "TestUser@Example.com", "password": PASSWORD},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        user = body["data"]["user"]
        assert user["email"] == "testuser@example.com"
        assert user["is_email_verified"] is False
        assert "password_hash" not in user
        assert body["data"]["tokens"]["token_type"] == "bearer"
        assert body["data"]["tokens"]["expires_in"] == 15 * 60
        assert body["data"]["verification_email_sent"] is True
        assert outbox.verifications[0][0] == "testuser@example.com"

    def test_duplicate_email_conflict(self, client):
        _register(client)
        response = client.post(
            "/v1/auth/register",
            json={"name": "Again", "email": "TESTUSER@example.com", "password": PASSWORD},
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_invalid_email_rejected(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"name": "Test", "email": "not-an-email", "password": PASSWORD},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_weak_password_rejected(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"name": "Test", "email": "weak@example.com", "password": "short"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["details"]["min_length"] == 8

    def test_signup_can_be_disabled(self, client, monkeypatch):
        monkeypatch.setenv("ALLOW_SIGNUP", "false")
        reset_runtime_for_tests()

        response = client.post(
            "/v1/auth/register",
            json={"name": "Test", "email": "closed@example.com", "password": PASSWORD},
        )
        assert response.status_code == 403


class TestLogin:
    """Tests for password login, lockout and enumeration resistance."""

    def test_login_success(self, client):
        _register(client)
        response = _login(client)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["tokens"]["access_token"]
        assert data["user"]["last_login_at"] is not None

    def test_wrong_password_and_unknown_email_bodies_match(self, client):
        _register(client)
        headers = {"X-Request-ID": "enumeration-check"}
        wrong = _login(client, password="WrongPassword1!", headers=headers)
        unknown = _login(client, email="ghost@example.com", password="WrongPassword1!", headers=headers)

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["request_id"] == "enumeration-check"

    def test_lockout_after_five_failures(self, client):
        _register(client)
        for _ in range(5):
            assert _login(client, password="WrongPassword1!").status_code == 401

        locked = _login(client)
        assert locked.status_code == 423
        assert locked.json()["error"]["code"] == "locked"
        assert 1790 <= int(locked.headers["Retry-After"]) <= 1800

    def test_inactive_account_forbidden(self, client):
        data = _register(client)
        get_runtime().store.atomic_update_user(data["user"]["id"], {}, {"is_active": False})

        response = _login(client)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_login_rate_limited(self, client, monkeypatch):
        monkeypatch.setenv("LOGIN_RATE_LIMIT", "2")
        reset_runtime_for_tests()
        _register(client)

        assert _login(client).status_code == 200
        assert _login(client).status_code == 200
        limited = _login(client)
        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "rate_limited"
        assert int(limited.headers["Retry-After"]) >= 1
        assert limited.json()["error"]["details"]["retry_after"] == int(limited.headers["Retry-After"])


class TestTokens:
    """Tests for refresh rotation, logout and bearer authentication."""

    def test_refresh_rotates_token(self, client):
        data = _register(client)
        old_refresh = data["tokens"]["refresh_token"]

        rotated = client.post("/v1/auth/refresh", json={"refresh_token": old_refresh})
        assert rotated.status_code == 200
        assert rotated.json()["data"]["tokens"]["refresh_token"] != old_refresh

        reuse = client.post("/v1/auth/refresh", json={"refresh_token": old_refresh})
        assert reuse.status_code == 401
        assert reuse.json()["error"]["message"] == "invalid refresh token"

    def test_garbage_refresh_token(self, client):
        response = client.post("/v1/auth/refresh", json={"refresh_token": "garbage"})
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_non_ascii_refresh_token_rejected(self, client):
        response = client.post(
            "/v1/auth/refresh", json={"refresh_token": "eyJhbGciOiJIUzI1NiJ9.e30.\u00e9\u00e9"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_logout_is_idempotent(self, client):
        data = _register(client)
        body = {"refresh_token": data["tokens"]["refresh_token"]}

        first = client.post("/v1/auth/logout", json=body, headers=_bearer(data))
        second = client.post("/v1/auth/logout", json=body, headers=_bearer(data))
        assert first.status_code == second.status_code == 200
        assert first.json()["data"] == second.json()["data"]

        refresh = client.post("/v1/auth/refresh", json=body)
        assert refresh.status_code == 401

    def test_logout_requires_bearer(self, client):
        response = client.post("/v1/auth/logout", json={})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_sessions_and_logout_all(self, client):
        data = _register(client)
        _login(client)

        sessions = client.get("/v1/auth/sessions", headers=_bearer(data))
        assert sessions.status_code == 200
        assert len(sessions.json()["data"]["items"]) == 2

        revoked = client.post("/v1/auth/logout-all", headers=_bearer(data))
        assert revoked.json()["data"]["count"] == 2
        assert client.get("/v1/auth/sessions", headers=_bearer(data)).json()["data"]["items"] == []

    def test_me_returns_public_profile(self, client):
        data = _register(client)

        response = client.get("/v1/me", headers=_bearer(data))
        assert response.status_code == 200
        profile = response.json()["data"]
        assert profile["id"] == data["user"]["id"]
        assert "password_hash" not in profile
        assert "failed_login_attempts" not in profile

    def test_me_rejects_malformed_header(self, client):
        response = client.get("/v1/me", headers={"Authorization": "Token abc"})
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"


class TestEmailVerification:
    """Tests for the verification link flow."""

    def test_verify_email_once(self, client, outbox):
        data = _register(client)
        token = outbox.verifications[0][1]

        ok = client.post("/v1/auth/verify-email", json={"token": token})
        assert ok.status_code == 200
        me = client.get("/v1/me", headers=_bearer(data)).json()["data"]
        assert me["is_email_verified"] is True

        again = client.post("/v1/auth/verify-email", json={"token": token})
        assert again.status_code == 400
        assert again.json()["error"]["message"] == "invalid or expired token"

    def test_resend_verification_is_generic(self, client, outbox):
        _register(client)
        known = client.post("/v1/auth/resend-verification", json={"email": "testuser@example.com"})
        unknown = client.post("/v1/auth/resend-verification", json={"email": "ghost@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]
        assert len(outbox.verifications) == 2


class TestPasswordReset:
    """Tests for forgot/reset and authenticated password change."""

    def test_forgot_password_responses_are_identical(self, client, outbox):
        _register(client)
        headers = {"X-Request-ID": "reset-check"}
        known = client.post(
            "/v1/auth/forgot-password", json={"email": "testuser@example.com"}, headers=headers
        )
        unknown = client.post(
            "/v1/auth/forgot-password", json={"email": "ghost@example.com"}, headers=headers
        )

        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()
        assert len(outbox.resets) == 1

    def test_reset_revokes_all_refresh_tokens(self, client, outbox):
        data = _register(client)
        second = _login(client).json()["data"]
        client.post("/v1/auth/forgot-password", json={"email": "testuser@example.com"})

        reset = client.post(
            "/v1/auth/reset-password",
            json={"token": outbox.resets[0][1], "new_password": NEW_PASSWORD},
        )
        assert reset.status_code == 200

        for refresh_token in (data["tokens"]["refresh_token"], second["tokens"]["refresh_token"]):
            response = client.post("/v1/auth/refresh", json={"refresh_token": refresh_token})
            assert response.status_code == 401
        assert _login(client).status_code == 401
        assert _login(client, password=NEW_PASSWORD).status_code == 200

    def test_reset_with_unknown_token(self, client):
        response = client.post(
            "/v1/auth/reset-password", json={"token": "0" * 64, "new_password": NEW_PASSWORD}
        )
        assert response.status_code == 400

    def test_change_password(self, client):
        data = _register(client)

        wrong = client.post(
            "/v1/auth/change-password",
            json={"current_password": "WrongPassword1!", "new_password": NEW_PASSWORD},
            headers=_bearer(data),
        )
        assert wrong.status_code == 401
        assert wrong.json()["error"]["message"] == "current password is incorrect"

        changed = client.post(
            "/v1/auth/change-password",
            json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
            headers=_bearer(data),
        )
        assert changed.status_code == 200
        refresh = client.post(
            "/v1/auth/refresh", json={"refresh_token": data["tokens"]["refresh_token"]}
        )
        assert refresh.status_code == 401
        assert _login(client, password=NEW_PASSWORD).status_code == 200


class TestAdmin:
    """Tests for the admin deactivation endpoint."""

    def test_non_admin_forbidden(self, client):
        data = _register(client)
        other = _register(client, email="other@example.com", name="Other")

        response = client.post(
            f"/v1/admin/users/{other['user']['id']}/deactivate", headers=_bearer(data)
        )
        assert response.status_code == 403

    def test_admin_deactivates_user(self, client):
        admin = _register(client, email="admin@example.com", name="Admin")
        get_runtime().store.atomic_update_user(admin["user"]["id"], {}, {"role": "admin"})
        target = _register(client)

        response = client.post(
            f"/v1/admin/users/{target['user']['id']}/deactivate", headers=_bearer(admin)
        )
        assert response.status_code == 200
        assert response.json()["data"]["is_active"] is False

        assert _login(client).status_code == 403
        refresh = client.post(
            "/v1/auth/refresh", json={"refresh_token": target["tokens"]["refresh_token"]}
        )
        assert refresh.status_code == 401


def test_healthz_reports_memory_store(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"]["status"] == "not_configured"
    assert response.headers["API-Version"] == app_module.__version__
