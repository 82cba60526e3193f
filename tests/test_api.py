"""HTTP surface: envelopes, cookies, status codes and the security endpoints."""

import time

import pytest
from fastapi.testclient import TestClient

from storeauth import app as app_module
from storeauth.service import mfa

PASSWORD = "Correct-Horse-9"
EMAIL = "shopper@example.com"


@pytest.fixture
def client(api_runtime):
    with TestClient(app_module.app) as test_client:
        yield test_client


def _register(client, email=EMAIL, password=PASSWORD):
    response = client.post("/v1/auth/register", json={"email": email, "password": password})
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _bearer(data):
    return {"Authorization": f"Bearer {data['access_token']}"}


def _login(client, email=EMAIL, password=PASSWORD, device=None):
    body = {"email": email, "password": password}
    if device:
        body["device"] = device
    return client.post("/v1/auth/login", json=body)


class TestRegisterAndLogin:
    def test_register_returns_tokens_and_sets_cookie(self, client):
        response = client.post(
            "/v1/auth/register", json={"email": EMAIL, "password": PASSWORD}
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["user"]["email"] == EMAIL
        assert body["data"]["token_type"] == "Bearer"
        assert body["data"]["expires_in"] == 900
        cookie = response.headers["set-cookie"]
        assert "refresh_token=" in cookie
        assert "httponly" in cookie.lower()
        assert "samesite=strict" in cookie.lower()

    def test_duplicate_registration_conflicts(self, client):
        _register(client)

        response = client.post(
            "/v1/auth/register", json={"email": EMAIL, "password": PASSWORD}
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    @pytest.mark.parametrize(
        "payload",
        [
            {"email": "not-an-email", "password": PASSWORD},
            {"email": EMAIL, "password": "short1A"},
            {"email": EMAIL, "password": "alllowercase1"},
            {"email": EMAIL},
        ],
    )
    def test_invalid_registration_payload(self, client, payload):
        response = client.post("/v1/auth/register", json=payload)

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"

    def test_email_is_normalized_at_the_boundary(self, client):
        _register(client)

        response = _login(client, email="  Shopper@Example.COM ")

        assert response.status_code == 200
        assert response.json()["data"]["user"]["email"] == EMAIL

    def test_wrong_password_is_generic_401(self, client):
        _register(client)

        wrong = _login(client, password="Wrong-Password-1")
        unknown = _login(client, email="nobody@example.com")

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["code"] == "invalid_credentials"

    def test_lockout_returns_403(self, client):
        _register(client)
        for _ in range(4):
            assert _login(client, password="Wrong-Password-1").status_code == 401

        locked = _login(client, password="Wrong-Password-1")
        still_locked = _login(client)

        assert locked.status_code == 403
        assert locked.json()["error"]["code"] == "account_locked"
        assert still_locked.status_code == 403
        assert still_locked.json()["error"]["details"]["remaining_minutes"] > 0

    def test_login_reports_suspicious_signal(self, client):
        _register(client)

        response = _login(client, device={"device_id": "browser-123", "device_type": "desktop"})

        suspicious = response.json()["data"]["suspicious_login"]
        assert suspicious["is_suspicious"] is True
        assert "New device" in suspicious["reasons"]

    def test_responses_are_not_cacheable(self, client):
        response = client.post(
            "/v1/auth/register", json={"email": EMAIL, "password": PASSWORD}
        )

        assert "no-store" in response.headers["cache-control"]
        assert response.headers["x-frame-options"] == "DENY"
        assert response.headers["x-request-id"]


class TestRefreshAndLogout:
    def test_refresh_from_cookie(self, client):
        registered = _register(client)

        response = client.post("/v1/auth/refresh")

        assert response.status_code == 200
        assert response.json()["data"]["refresh_token"] != registered["refresh_token"]

    def test_refresh_from_body_and_reuse_rejected(self, client):
        registered = _register(client)
        client.cookies.clear()

        first = client.post(
            "/v1/auth/refresh", json={"refresh_token": registered["refresh_token"]}
        )
        client.cookies.clear()
        replay = client.post(
            "/v1/auth/refresh", json={"refresh_token": registered["refresh_token"]}
        )

        assert first.status_code == 200
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "token_revoked"

    def test_refresh_from_header(self, client):
        registered = _register(client)
        client.cookies.clear()

        response = client.post(
            "/v1/auth/refresh", headers={"X-Refresh-Token": registered["refresh_token"]}
        )

        assert response.status_code == 200

    def test_refresh_without_token(self, client):
        response = client.post("/v1/auth/refresh")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_garbage_refresh_token(self, client):
        response = client.post("/v1/auth/refresh", json={"refresh_token": "garbage"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_logout_clears_cookie_and_revokes(self, client):
        registered = _register(client)

        response = client.post("/v1/auth/logout")

        assert response.status_code == 200
        assert 'refresh_token=""' in response.headers["set-cookie"] or (
            "max-age=0" in response.headers["set-cookie"].lower()
        )
        client.cookies.clear()
        replay = client.post(
            "/v1/auth/refresh", json={"refresh_token": registered["refresh_token"]}
        )
        assert replay.status_code == 401


class TestAccountEndpoints:
    def test_me_requires_bearer(self, client):
        assert client.get("/v1/auth/me").status_code == 401
        bad = client.get("/v1/auth/me", headers={"Authorization": "Bearer nope"})
        assert bad.status_code == 401
        assert bad.json()["error"]["code"] == "invalid_token"

    def test_me_with_non_ascii_bearer(self, client):
        registered = _register(client)
        header, payload, _ = registered["access_token"].split(".")
        raw = f"Bearer {header}.{payload}.\xe9".encode("latin-1")

        response = client.get("/v1/auth/me", headers={"Authorization": raw})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_me(self, client):
        registered = _register(client)

        response = client.get("/v1/auth/me", headers=_bearer(registered))

        assert response.status_code == 200
        assert response.json()["data"]["email"] == EMAIL
        assert response.json()["data"]["roles"] == ["user"]

    def test_forgot_password_same_answer_for_unknown(self, client):
        _register(client)

        known = client.post("/v1/auth/forgot-password", json={"email": EMAIL})
        unknown = client.post(
            "/v1/auth/forgot-password", json={"email": "nobody@example.com"}
        )

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_reset_password_flow(self, client, api_runtime):
        _register(client)
        client.post("/v1/auth/forgot-password", json={"email": EMAIL})
        (token,) = api_runtime.store.reset_tokens

        response = client.post(
            "/v1/auth/reset-password",
            json={"token": token, "new_password": "Battery-Staple-42"},
        )

        assert response.status_code == 200
        assert _login(client).status_code == 401
        assert _login(client, password="Battery-Staple-42").status_code == 200

    def test_verify_email_flow(self, client, api_runtime):
        _register(client)
        (token,) = api_runtime.store.verification_tokens

        response = client.post("/v1/auth/verify-email", json={"token": token})
        again = client.post("/v1/auth/verify-email", json={"token": token})

        assert response.status_code == 200
        assert response.json()["data"]["email_verified"] is True
        assert again.status_code == 409

    def test_change_password_rejects_same_password(self, client):
        registered = _register(client)

        response = client.post(
            "/v1/auth/change-password",
            headers=_bearer(registered),
            json={"current_password": PASSWORD, "new_password": PASSWORD},
        )

        assert response.status_code == 400

    def test_change_password_wrong_current(self, client):
        registered = _register(client)

        response = client.post(
            "/v1/auth/change-password",
            headers=_bearer(registered),
            json={"current_password": "Wrong-Password-1", "new_password": "Battery-Staple-42"},
        )

        assert response.status_code == 401

    def test_deactivate(self, client):
        registered = _register(client)

        response = client.post(
            "/v1/auth/deactivate", headers=_bearer(registered), json={"password": PASSWORD}
        )

        assert response.status_code == 200
        blocked = _login(client)
        assert blocked.status_code == 403
        assert blocked.json()["error"]["code"] == "account_deactivated"
        assert client.get("/v1/auth/me", headers=_bearer(registered)).status_code == 403


class TestSecurityEndpoints:
    def test_devices_listing_and_update(self, client):
        _register(client)
        logged_in = _login(client, device={"device_id": "browser-123", "device_name": "Firefox"})
        data = logged_in.json()["data"]

        devices = client.get("/v1/security/devices", headers=_bearer(data)).json()["data"][
            "devices"
        ]
        assert [d["device_id"] for d in devices] == ["browser-123"]
        assert devices[0]["is_trusted"] is False

        updated = client.put(
            f"/v1/security/devices/{devices[0]['id']}",
            headers=_bearer(data),
            json={"is_trusted": True},
        )
        assert updated.status_code == 200
        assert updated.json()["data"]["is_trusted"] is True

    def test_device_update_requires_change(self, client):
        registered = _register(client)

        response = client.put(
            "/v1/security/devices/whatever", headers=_bearer(registered), json={}
        )

        assert response.status_code == 400

    def test_unknown_device(self, client):
        registered = _register(client)

        response = client.post(
            "/v1/security/devices/missing/revoke", headers=_bearer(registered)
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_sessions_mark_current_and_revoke_others(self, client):
        registered = _register(client)
        _login(client)
        headers = {**_bearer(registered), "X-Session-Token": registered["session_token"]}

        sessions = client.get("/v1/security/sessions", headers=headers).json()["data"][
            "sessions"
        ]
        assert len(sessions) == 2
        assert sum(s["is_current"] for s in sessions) == 1

        revoked = client.post("/v1/security/sessions/revoke-all", headers=headers)
        assert revoked.json()["data"]["sessions_revoked"] == 1
        remaining = client.get("/v1/security/sessions", headers=headers).json()["data"][
            "sessions"
        ]
        assert [s["is_current"] for s in remaining] == [True]

    def test_cannot_revoke_someone_elses_session(self, client):
        victim = _register(client)
        attacker = _register(client, email="attacker@example.com")
        victim_sessions = client.get(
            "/v1/security/sessions", headers=_bearer(victim)
        ).json()["data"]["sessions"]

        response = client.post(
            f"/v1/security/sessions/{victim_sessions[0]['id']}/revoke",
            headers=_bearer(attacker),
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_login_history(self, client):
        registered = _register(client)
        _login(client, password="Wrong-Password-1")
        _login(client)

        response = client.get(
            "/v1/security/login-history", headers=_bearer(registered), params={"limit": 1}
        )
        failed = client.get(
            "/v1/security/login-history",
            headers=_bearer(registered),
            params={"status": "failed"},
        )
        bogus = client.get(
            "/v1/security/login-history",
            headers=_bearer(registered),
            params={"status": "bogus"},
        )

        body = response.json()["data"]
        assert body["total"] == 2
        assert len(body["history"]) == 1
        assert failed.json()["data"]["history"][0]["failure_reason"] == "invalid_password"
        assert bogus.status_code == 400

    def test_mfa_lifecycle(self, client):
        registered = _register(client)
        headers = _bearer(registered)

        enrolled = client.post("/v1/security/mfa/enable", headers=headers)
        assert enrolled.status_code == 200
        enrollment = enrolled.json()["data"]
        assert len(enrollment["backup_codes"]) == 10
        assert client.post("/v1/security/mfa/enable", headers=headers).status_code == 409

        code = mfa.generate_totp(enrollment["secret"], time.time())
        verified = client.post("/v1/security/mfa/verify", headers=headers, json={"code": code})
        assert verified.json()["data"] == {"valid": True, "is_backup_code": False}

        backup = enrollment["backup_codes"][0]
        first = client.post("/v1/security/mfa/verify", headers=headers, json={"code": backup})
        second = client.post("/v1/security/mfa/verify", headers=headers, json={"code": backup})
        assert first.json()["data"]["is_backup_code"] is True
        assert second.json()["data"]["valid"] is False

        wrong = client.post(
            "/v1/security/mfa/disable", headers=headers, json={"password": "Wrong-Password-1"}
        )
        assert wrong.status_code == 401
        disabled = client.post(
            "/v1/security/mfa/disable", headers=headers, json={"password": PASSWORD}
        )
        assert disabled.status_code == 200
        assert client.get("/v1/auth/me", headers=headers).status_code == 200

    def test_mfa_verify_before_enable(self, client):
        registered = _register(client)

        response = client.post(
            "/v1/security/mfa/verify", headers=_bearer(registered), json={"code": "123456"}
        )

        assert response.status_code == 400

    def test_detect_suspicious_login(self, client):
        registered = _register(client)

        response = client.post(
            "/v1/security/suspicious-login/detect",
            headers=_bearer(registered),
            json={"device_id": "never-seen"},
        )

        assert response.status_code == 200
        assert "New device" in response.json()["data"]["reasons"]


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["events"]["publisher"] == "memory"
