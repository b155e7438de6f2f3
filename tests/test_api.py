"""Integration tests for the HTTP surface.

Covers:
- Login, lockout and the error envelope
- Token refresh, revocation and /auth/me
- MFA enrollment and challenge completion
"""

import time

import pytest
from fastapi.testclient import TestClient

from credgate import app as app_module
from credgate.service.runtime import get_runtime
from credgate.service.totp import generate_totp

PASSWORD = "CorrectHorse42!"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def user():
    return get_runtime().users.create_user(
        "carol", PASSWORD, email="carol@example.com", roles=["user"]
    )


def _login(client, **extra):
    return client.post(
        "/v1/auth/login", json={"username": "carol", "password": PASSWORD, **extra}
    )


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestHealth:
    def test_healthz_reports_memory_cache(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["cache"]["type"] == "memory"
        assert body["version"] == app_module.__version__

    def test_request_id_and_security_headers(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "no-store" in response.headers["Cache-Control"]

    def test_error_envelope_echoes_request_id(self, client, user):
        response = client.post(
            "/v1/auth/login",
            json={"username": "carol", "password": "nope"},
            headers={"X-Request-ID": "req-456"},
        )
        assert response.json()["request_id"] == "req-456"


class TestLoginEndpoint:
    def test_login_success(self, client, user):
        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["token_type"] == "bearer"
        assert body["data"]["user"]["username"] == "carol"
        assert body["data"]["refresh_token"]

    def test_bad_password_envelope(self, client, user):
        response = client.post("/v1/auth/login", json={"username": "carol", "password": "nope"})

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "invalid_credentials"
        assert body["error"]["message"] == "Invalid username or password."
        assert body["request_id"]

    def test_lockout_returns_423(self, client, user):
        for _ in range(4):
            client.post("/v1/auth/login", json={"username": "carol", "password": "nope"})
        response = client.post("/v1/auth/login", json={"username": "carol", "password": "nope"})
        assert response.status_code == 423
        assert response.json()["error"]["code"] == "account_locked"

        assert _login(client).status_code == 423


class TestTokenEndpoints:
    def test_me_requires_valid_token(self, client, user):
        assert client.get("/v1/auth/me").status_code == 401

        token = _login(client).json()["data"]["access_token"]
        response = client.get("/v1/auth/me", headers=_bearer(token))
        assert response.status_code == 200
        assert response.json()["data"]["email"] == "carol@example.com"

    def test_refresh_rotates_and_rejects_replay(self, client, user):
        refresh = _login(client).json()["data"]["refresh_token"]

        first = client.post("/v1/auth/refresh", json={"refresh_token": refresh})
        assert first.status_code == 200
        assert first.json()["data"]["refresh_token"] != refresh

        replay = client.post("/v1/auth/refresh", json={"refresh_token": refresh})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "token_invalid_or_expired"

    def test_validate_endpoint(self, client, user):
        token = _login(client).json()["data"]["access_token"]
        assert client.post("/v1/auth/validate", json={"token": token}).json()["data"]["valid"]
        assert not client.post("/v1/auth/validate", json={"token": "x.y.z"}).json()["data"]["valid"]

    def test_revoke_retires_refresh_and_access_tokens(self, client, user):
        data = _login(client).json()["data"]

        response = client.post(
            "/v1/auth/revoke",
            json={"refresh_token": data["refresh_token"]},
            headers=_bearer(data["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["revoked"] == 1

        assert client.get("/v1/auth/me", headers=_bearer(data["access_token"])).status_code == 401
        replay = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert replay.status_code == 401

    def test_revoke_requires_a_target(self, client, user):
        token = _login(client).json()["data"]["access_token"]
        response = client.post("/v1/auth/revoke", json={}, headers=_bearer(token))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_revoke_all(self, client, user):
        first = _login(client).json()["data"]
        _login(client)

        response = client.post(
            "/v1/auth/revoke", json={"revoke_all": True}, headers=_bearer(first["access_token"])
        )
        assert response.json()["data"]["revoked"] == 2


class TestMfaEndpoints:
    def _enroll_totp(self, client):
        token = _login(client).json()["data"]["access_token"]
        response = client.post("/v1/mfa/setup", json={"method": "TOTP"}, headers=_bearer(token))
        assert response.status_code == 200
        return token, response.json()["data"]

    def test_totp_enrollment_and_challenge(self, client, user):
        _, setup = self._enroll_totp(client)
        assert setup["method"] == "TOTP"
        assert setup["qr_code"].startswith("data:image/png;base64,")
        assert len(setup["backup_codes"]) == 8

        pending = _login(client)
        assert pending.status_code == 401
        error = pending.json()["error"]
        assert error["code"] == "mfa_required"
        assert error["details"]["method"] == "TOTP"

        code = generate_totp(setup["secret"], time.time())
        response = client.post(
            "/v1/auth/mfa/validate",
            json={"challenge_id": error["details"]["challenge_id"], "code": code},
        )
        assert response.status_code == 200
        assert response.json()["data"]["user"]["username"] == "carol"

    def test_login_with_backup_code(self, client, user):
        _, setup = self._enroll_totp(client)
        response = _login(client, mfa_code=setup["backup_codes"][0])
        assert response.status_code == 200

    def test_status_and_regenerate(self, client, user):
        token, setup = self._enroll_totp(client)

        status = client.get("/v1/mfa/status", headers=_bearer(token)).json()["data"]
        assert status["enabled"] is True
        assert status["method"] == "TOTP"
        assert status["backup_codes_count"] == 8

        response = client.post("/v1/mfa/backup-codes", headers=_bearer(token))
        assert response.status_code == 200
        codes = response.json()["data"]["backup_codes"]
        assert len(codes) == 8
        assert set(codes).isdisjoint(setup["backup_codes"])

    def test_disable_with_wrong_code(self, client, user):
        token, _ = self._enroll_totp(client)
        response = client.post("/v1/mfa/disable", json={"code": "abc"}, headers=_bearer(token))
        assert response.status_code == 401

    def test_disable_with_totp_code(self, client, user):
        token, setup = self._enroll_totp(client)
        code = generate_totp(setup["secret"], time.time())
        response = client.post("/v1/mfa/disable", json={"code": code}, headers=_bearer(token))
        assert response.status_code == 200
        assert _login(client).status_code == 200

    def test_unknown_method_rejected(self, client, user):
        token = _login(client).json()["data"]["access_token"]
        response = client.post("/v1/mfa/setup", json={"method": "fax"}, headers=_bearer(token))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_regenerate_without_enrollment(self, client, user):
        token = _login(client).json()["data"]["access_token"]
        response = client.post("/v1/mfa/backup-codes", headers=_bearer(token))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "mfa_misuse"

    def test_resend_challenge(self, client, user):
        token = _login(client).json()["data"]["access_token"]
        setup = client.post("/v1/mfa/setup", json={"method": "Email"}, headers=_bearer(token))
        assert setup.status_code == 200

        pending = _login(client).json()["error"]["details"]
        assert pending["masked_destination"] == "c***@example.com"

        response = client.post(
            "/v1/auth/mfa/challenge", json={"challenge_id": pending["challenge_id"]}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["challenge_id"] != pending["challenge_id"]
        assert data["method"] == "Email"
        assert data["masked_destination"] == "c***@example.com"

        stale = client.post(
            "/v1/auth/mfa/challenge", json={"challenge_id": pending["challenge_id"]}
        )
        assert stale.status_code == 401
        assert stale.json()["error"]["code"] == "challenge_expired_or_not_found"
