"""Integration tests for the HTTP surface.

Covers login for web and mobile clients, the session gate in front of /v1,
logout on one or all devices, session listing, account deletion, lockout,
code requests and the flows that consume codes.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from authedge import app as app_module
from authedge.service.runtime import get_runtime, reset_runtime_for_tests

EMAIL = "testuser@example.com"
PASSWORD = "TestPassword123!"
CODE = "424242"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def account():
    runtime = get_runtime()
    return runtime.accounts.create_account(EMAIL, runtime.credentials.hash_password(PASSWORD))


def _login(client, device_type="web", password=PASSWORD, **kwargs):
    return client.post(
        "/v1/auth/login",
        json={"email": EMAIL, "password": password, "device_type": device_type},
        **kwargs,
    )


def _plant_code(purpose):
    runtime = get_runtime()
    expires_at = runtime.clock() + timedelta(minutes=10)
    asyncio.run(runtime.kv.set(f"auth:code:{purpose}:{EMAIL}", CODE, expires_at=expires_at))


def _mobile_token(client):
    response = _login(client, "mobile")
    assert response.status_code == 200
    return response.json()["data"]["session_id"]


class TestLogin:
    def test_web_login_sets_cookie(self, client, account):
        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["account_id"] == str(account.id)
        assert body["data"]["session_id"] is None
        assert "session_id" in response.cookies
        set_cookie = response.headers["set-cookie"].lower()
        assert "httponly" in set_cookie

        me = client.get("/v1/auth/me")
        assert me.status_code == 200
        assert me.json()["data"]["email"] == EMAIL
        assert me.json()["data"]["authorities"] == ["authenticated"]

    def test_mobile_login_returns_token(self, client, account):
        token = _mobile_token(client)

        assert "session_id" not in client.cookies
        me = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.status_code == 200
        assert me.json()["data"]["account_id"] == str(account.id)

    def test_bad_password(self, client, account):
        response = _login(client, password="wrong-password")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_unknown_account_matches_bad_password(self, client, account):
        unknown = client.post(
            "/v1/auth/login", json={"email": "ghost@example.com", "password": PASSWORD}
        )
        wrong = _login(client, password="wrong-password")

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"]["message"] == wrong.json()["error"]["message"]

    def test_invalid_body_is_validation_error(self, client):
        response = client.post("/v1/auth/login", json={"email": "not-an-email", "password": "x"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_login_while_logged_in_conflicts(self, client, account):
        assert _login(client).status_code == 200

        response = _login(client)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_lockout_after_repeated_failures(self, client, account):
        for _ in range(5):
            assert _login(client, password="wrong-password").status_code == 401

        response = _login(client)

        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == "account_locked"
        assert error["details"]["retry_after"] == 900
        assert response.headers["Retry-After"] == "900"
        assert _login(client).status_code == 429


class TestGate:
    def test_protected_route_requires_session(self, client):
        response = client.get("/v1/auth/me")

        assert response.status_code == 401
        assert response.json()["status"] == "error"
        assert response.json()["error"]["code"] == "unauthorized"

    def test_unknown_session_is_not_found_and_cookie_cleared(self, client):
        client.cookies.set("session_id", "does-not-exist")

        response = client.get("/v1/auth/me")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
        assert 'session_id=""' in response.headers["set-cookie"]

    def test_conflicting_identifiers(self, client, account):
        client.cookies.set("session_id", "aaaa")

        response = client.get("/v1/auth/me", headers={"Authorization": "Bearer bbbb"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_request_id_is_echoed(self, client):
        response = client.get("/v1/auth/me", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"


class TestSessions:
    def test_logout_single_device(self, client, account):
        phone = _mobile_token(client)
        laptop = _mobile_token(client)

        response = client.post(
            "/v1/auth/logout", headers={"Authorization": f"Bearer {phone}"}
        )

        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 1
        assert client.get("/v1/auth/me", headers={"Authorization": f"Bearer {phone}"}).status_code == 404
        assert client.get("/v1/auth/me", headers={"Authorization": f"Bearer {laptop}"}).status_code == 200

    def test_logout_all_devices(self, client, account):
        phone = _mobile_token(client)
        laptop = _mobile_token(client)

        response = client.post(
            "/v1/auth/logout",
            json={"all_devices": True},
            headers={"Authorization": f"Bearer {phone}"},
        )

        assert response.json()["data"]["sessions_revoked"] == 2
        assert client.get("/v1/auth/me", headers={"Authorization": f"Bearer {laptop}"}).status_code == 404

    def test_web_logout_clears_cookie(self, client, account):
        _login(client)

        assert client.post("/v1/auth/logout").status_code == 200
        assert "session_id" not in client.cookies
        assert client.get("/v1/auth/me").status_code == 401

    def test_list_sessions_marks_current(self, client, account):
        other = _mobile_token(client)
        current = _mobile_token(client)

        response = client.get("/v1/auth/sessions", headers={"Authorization": f"Bearer {current}"})

        sessions = response.json()["data"]
        assert len(sessions) == 2
        assert [s["current"] for s in sessions].count(True) == 1
        assert other != current

    def test_session_cap(self, client, account):
        tokens = [_mobile_token(client) for _ in range(6)]

        response = client.get("/v1/auth/sessions", headers={"Authorization": f"Bearer {tokens[-1]}"})

        assert len(response.json()["data"]) == get_runtime().settings.max_sessions_per_account

    def test_delete_account(self, client, account):
        token = _mobile_token(client)
        headers = {"Authorization": f"Bearer {token}"}

        response = client.delete("/v1/account", headers=headers)

        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 1
        assert client.get("/v1/auth/me", headers=headers).status_code == 404
        assert _login(client).status_code == 401


class TestCodes:
    def test_code_request_is_accepted(self, client, account):
        response = client.post(
            "/v1/auth/codes", json={"purpose": "password_reset", "email": EMAIL}
        )

        assert response.status_code == 202
        assert "code" not in response.json()["data"]

    def test_code_requests_are_throttled(self, client):
        payload = {"purpose": "email_verification", "email": "ghost@example.com"}
        for _ in range(5):
            assert client.post("/v1/auth/codes", json=payload).status_code == 202

        response = client.post("/v1/auth/codes", json=payload)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"

    def test_verify_email_with_wrong_code(self, client, account):
        client.post("/v1/auth/codes", json={"purpose": "email_verification", "email": EMAIL})

        response = client.post(
            "/v1/auth/email/verify", json={"email": EMAIL, "code": "12345x"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_verify_email(self, client, account):
        _plant_code("email_verification")

        response = client.post(
            "/v1/auth/email/verify", json={"email": EMAIL, "code": CODE}
        )

        assert response.status_code == 200
        token = _mobile_token(client)
        me = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.json()["data"]["email_verified"] is True

    def test_guessing_a_code_is_cut_off(self, client, account):
        _plant_code("email_verification")
        wrong = {"email": EMAIL, "code": "000000"}

        for _ in range(4):
            assert client.post("/v1/auth/email/verify", json=wrong).status_code == 400
        response = client.post("/v1/auth/email/verify", json=wrong)

        assert response.status_code == 429
        right = client.post("/v1/auth/email/verify", json={"email": EMAIL, "code": CODE})
        assert right.status_code == 400

    def test_password_reset_revokes_sessions(self, client, account):
        token = _mobile_token(client)
        _plant_code("password_reset")

        response = client.post(
            "/v1/auth/password/reset",
            json={"email": EMAIL, "code": CODE, "new_password": "AnotherPassword456!"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 1
        assert client.get(
            "/v1/auth/me", headers={"Authorization": f"Bearer {token}"}
        ).status_code == 404
        assert _login(client, "mobile").status_code == 401
        assert _login(client, "mobile", password="AnotherPassword456!").status_code == 200

    def test_password_reset_rejects_short_password(self, client, account):
        _plant_code("password_reset")

        response = client.post(
            "/v1/auth/password/reset",
            json={"email": EMAIL, "code": CODE, "new_password": "short"},
        )

        assert response.status_code == 400


class TestPasswordChange:
    def test_change_password_keeps_caller_logged_in(self, client, account):
        token = _mobile_token(client)
        other = _mobile_token(client)
        headers = {"Authorization": f"Bearer {token}"}

        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": PASSWORD, "new_password": "AnotherPassword456!"},
            headers=headers,
        )

        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 1
        assert client.get("/v1/auth/me", headers=headers).status_code == 200
        assert client.get(
            "/v1/auth/me", headers={"Authorization": f"Bearer {other}"}
        ).status_code == 404

    def test_change_password_wrong_current(self, client, account):
        token = _mobile_token(client)

        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": "nope", "new_password": "AnotherPassword456!"},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 401

    def test_change_password_requires_session(self, client):
        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": PASSWORD, "new_password": "AnotherPassword456!"},
        )

        assert response.status_code == 401


def test_runtime_store_shares_injected_clock():
    def clock():
        return datetime(2030, 1, 1, tzinfo=timezone.utc)

    runtime = reset_runtime_for_tests(clock=clock)

    assert runtime.kv.clock is clock
    assert runtime.sessions.clock is clock


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["store"]["type"] == "MemoryCache"
    assert response.headers["Cache-Control"].startswith("no-store")
