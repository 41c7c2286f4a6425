"""Integration tests for the authentication API.

Tests the complete flow over HTTP:
- Registration and login
- Refresh rotation and reuse detection
- Logout and logout-all
- Email verification and password reset
- Error envelope and rate limiting
"""

import pytest
from fastapi.testclient import TestClient

from apiguard import app as app_module
from apiguard.service.runtime import get_runtime

PASSWORD = "Str0ng!Pass"


@pytest.fixture
def client(outbox):
    get_runtime().notifier.sender = outbox
    with TestClient(app_module.app) as test_client:
        yield test_client


def _flush(client):
    client.portal.call(get_runtime().notifier.flush)


def _register(client, email="nora@example.com", password=PASSWORD, full_name="Nora New"):
    return client.post(
        "/auth/register",
        json={"email": email, "password": password, "fullName": full_name},
    )


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegisterAndLogin:
    def test_register_returns_user_tokens_workspace(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["user"]["email"] == "nora@example.com"
        assert "password_hash" not in data["user"]
        assert data["tokens"]["token_type"] == "Bearer"
        assert data["tokens"]["expires_in"] == 900
        assert data["workspace"]["name"] == "Nora New's Workspace"
        assert data["workspace"]["role"] == "owner"

    def test_duplicate_email_is_conflict(self, client):
        _register(client)

        response = _register(client, email="NORA@example.com")

        assert response.status_code == 409
        assert response.json()["error"] == {
            "code": "conflict",
            "message": "Email already registered",
            "details": {},
        }

    def test_weak_password_rejected(self, client):
        response = _register(client, password="alllowercase1")

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["field"] == "password"

    def test_invalid_email_rejected(self, client):
        assert _register(client, email="not-an-email").status_code == 400

    def test_login_failures_are_indistinguishable(self, client):
        _register(client)

        unknown = client.post(
            "/auth/login", json={"email": "ghost@example.com", "password": PASSWORD}
        )
        wrong = client.post(
            "/auth/login", json={"email": "nora@example.com", "password": "Wr0ng!Pass"}
        )

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]
        assert wrong.json()["error"]["message"] == "Invalid credentials"

    def test_login_and_me(self, client):
        _register(client)

        login = client.post(
            "/auth/login",
            json={"email": "nora@example.com", "password": PASSWORD, "rememberMe": True},
        )
        assert login.status_code == 200
        access = login.json()["data"]["tokens"]["access_token"]

        me = client.get("/auth/me", headers=_auth(access))
        assert me.status_code == 200
        profile = me.json()["data"]
        assert profile["email"] == "nora@example.com"
        assert profile["workspaces"][0]["is_owner"] is True

    def test_me_requires_bearer(self, client):
        response = client.get("/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_login_rate_limited_per_ip(self, client):
        _register(client)
        statuses = [
            client.post(
                "/auth/login", json={"email": "nora@example.com", "password": "Wr0ng!Pass"}
            ).status_code
            for _ in range(6)
        ]

        assert statuses == [401] * 5 + [429]

    def test_forwarded_for_from_untrusted_peer_is_ignored(self, client):
        _register(client)
        statuses = [
            client.post(
                "/auth/login",
                json={"email": "nora@example.com", "password": "Wr0ng!Pass"},
                headers={"X-Forwarded-For": f"10.0.0.{i}"},
            ).status_code
            for i in range(6)
        ]

        assert statuses == [401] * 5 + [429]

    def test_forwarded_for_from_trusted_proxy_is_used(self, client):
        runtime = get_runtime()
        runtime.settings = runtime.settings.model_copy(update={"trusted_proxies": ["testclient"]})
        _register(client)
        statuses = [
            client.post(
                "/auth/login",
                json={"email": "nora@example.com", "password": "Wr0ng!Pass"},
                headers={"X-Forwarded-For": f"10.0.0.{i}, testclient"},
            ).status_code
            for i in range(6)
        ]

        assert statuses == [401] * 6

    def test_rate_limit_headers(self, client):
        _register(client)

        response = client.post(
            "/auth/login", json={"email": "nora@example.com", "password": PASSWORD}
        )

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"


class TestRefresh:
    def test_rotation_and_reuse_detection(self, client):
        tokens = _register(client).json()["data"]["tokens"]

        rotated = client.post("/auth/refresh", json={"refreshToken": tokens["refresh_token"]})
        assert rotated.status_code == 200
        new_tokens = rotated.json()["data"]
        assert new_tokens["refresh_token"] != tokens["refresh_token"]

        replay = client.post("/auth/refresh", json={"refreshToken": tokens["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["message"] == (
            "session invalid — all sessions revoked for security"
        )

        # the legitimate holder is signed out as well
        after = client.post("/auth/refresh", json={"refreshToken": new_tokens["refresh_token"]})
        assert after.status_code == 401

    def test_access_token_cannot_refresh(self, client):
        tokens = _register(client).json()["data"]["tokens"]

        response = client.post("/auth/refresh", json={"refreshToken": tokens["access_token"]})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid refresh token"

    def test_non_ascii_token_is_unauthorized(self, client):
        token = "eyJhbGciOiJIUzI1NiJ9.eyJzdWIiOiJ4In0.éé"

        refresh = client.post("/auth/refresh", json={"refreshToken": token})

        assert refresh.status_code == 401
        assert refresh.json()["error"]["message"] == "invalid refresh token"


class TestLogout:
    def test_logout_revokes_current_session_only(self, client):
        first = _register(client).json()["data"]["tokens"]
        second = client.post(
            "/auth/login", json={"email": "nora@example.com", "password": PASSWORD}
        ).json()["data"]["tokens"]

        response = client.post("/auth/logout", headers=_auth(first["access_token"]))
        assert response.status_code == 200

        assert client.post(
            "/auth/refresh", json={"refreshToken": second["refresh_token"]}
        ).status_code == 200

    def test_logout_all(self, client):
        first = _register(client).json()["data"]["tokens"]
        second = client.post(
            "/auth/login", json={"email": "nora@example.com", "password": PASSWORD}
        ).json()["data"]["tokens"]

        response = client.post("/auth/logout-all", headers=_auth(first["access_token"]))
        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 2

        assert client.post(
            "/auth/refresh", json={"refreshToken": second["refresh_token"]}
        ).status_code == 401


class TestAccount:
    def test_update_profile(self, client):
        access = _register(client).json()["data"]["tokens"]["access_token"]

        response = client.put(
            "/users/me", headers=_auth(access), json={"fullName": "Nora Renamed"}
        )

        assert response.status_code == 200
        assert response.json()["data"]["full_name"] == "Nora Renamed"

    def test_update_profile_email_conflict(self, client):
        access = _register(client).json()["data"]["tokens"]["access_token"]
        _register(client, email="omar@example.com", full_name="Omar Other")

        response = client.put(
            "/users/me", headers=_auth(access), json={"email": "omar@example.com"}
        )

        assert response.status_code == 409
        assert response.json()["error"]["message"] == "Email already in use"

    def test_deactivate_account(self, client):
        tokens = _register(client).json()["data"]["tokens"]

        response = client.delete("/users/me", headers=_auth(tokens["access_token"]))

        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 1
        assert client.post(
            "/auth/refresh", json={"refreshToken": tokens["refresh_token"]}
        ).status_code == 401
        assert client.post(
            "/auth/login", json={"email": "nora@example.com", "password": PASSWORD}
        ).status_code == 401


class TestEmailAndPassword:
    def test_verify_email_flow(self, client, outbox):
        access = _register(client).json()["data"]["tokens"]["access_token"]
        _flush(client)
        token = outbox.last("verification", "nora@example.com")["token"]

        response = client.get("/auth/verify-email", params={"token": token})
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Email verified successfully"

        again = client.get("/auth/verify-email", params={"token": token})
        assert again.status_code == 400
        assert client.get("/auth/me", headers=_auth(access)).json()["data"]["email_verified"]

    def test_forgot_and_reset_password(self, client, outbox):
        _register(client)

        known = client.post("/auth/forgot-password", json={"email": "nora@example.com"})
        unknown = client.post("/auth/forgot-password", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

        _flush(client)
        token = outbox.last("reset", "nora@example.com")["token"]
        reset = client.post(
            "/auth/reset-password", json={"token": token, "newPassword": "N3w!Passw0rd"}
        )
        assert reset.status_code == 200

        old = client.post("/auth/login", json={"email": "nora@example.com", "password": PASSWORD})
        new = client.post(
            "/auth/login", json={"email": "nora@example.com", "password": "N3w!Passw0rd"}
        )
        assert old.status_code == 401
        assert new.status_code == 200

    def test_change_password_signs_out_everywhere(self, client):
        tokens = _register(client).json()["data"]["tokens"]

        response = client.post(
            "/auth/change-password",
            headers=_auth(tokens["access_token"]),
            json={"currentPassword": PASSWORD, "newPassword": "N3w!Passw0rd"},
        )
        assert response.status_code == 200
        assert client.post(
            "/auth/refresh", json={"refreshToken": tokens["refresh_token"]}
        ).status_code == 401

    def test_change_password_wrong_current(self, client):
        tokens = _register(client).json()["data"]["tokens"]

        response = client.post(
            "/auth/change-password",
            headers=_auth(tokens["access_token"]),
            json={"currentPassword": "Wr0ng!Pass", "newPassword": "N3w!Passw0rd"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Current password is incorrect"


class TestEnvelope:
    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.json()["redis"] == "fallback"

    def test_error_envelope_carries_request_id(self, client):
        response = client.get("/auth/me", headers={"X-Request-ID": "req-456"})

        assert response.status_code == 401
        assert response.json()["request_id"] == "req-456"
