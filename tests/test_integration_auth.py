"""End-to-end auth flows through the HTTP API."""

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from agriqual import app as app_module
from agriqual.api.error_handling import register_exception_handlers
from agriqual.api.routes import rate_limit, require_role
from agriqual.config import AccountRole
from agriqual.service.credentials import hash_secret
from agriqual.service.otp import OtpService
from agriqual.service.rate_limit import RateLimitPolicy
from agriqual.service.runtime import get_runtime

CODE = "482913"
PASSWORD = "Abcd1234!"


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(OtpService, "_generate", lambda self: CODE)
    return TestClient(app_module.app)


def _register(client, email="farmer@example.com", password=PASSWORD, **extra):
    body = {"name": "Amina", "email": email, "password": password, **extra}
    return client.post("/api/auth/register-otp", json=body)


def _signup(client, email="farmer@example.com"):
    assert _register(client, email).status_code == 200
    resp = client.post("/api/auth/verify-otp", json={"email": email, "otp": CODE})
    assert resp.status_code == 200
    return resp.json()["token"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegistration:
    def test_register_then_verify(self, client):
        resp = _register(client, role="expert")
        assert resp.status_code == 200
        assert resp.json() == {"message": "Verification code has been sent to your email"}

        resp = client.post(
            "/api/auth/verify-otp", json={"email": "farmer@example.com", "otp": CODE}
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["token"]
        assert body["user"]["email"] == "farmer@example.com"
        assert body["user"]["role"] == "expert"
        assert "credential_hash" not in body["user"]

    def test_numeric_otp_accepted(self, client):
        _register(client)
        resp = client.post(
            "/api/auth/verify-otp", json={"email": "farmer@example.com", "otp": int(CODE)}
        )
        assert resp.status_code == 200

    def test_weak_password_rejected(self, client):
        resp = _register(client, password="abcdefgh")
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "validation_error"
        assert "at least three of" in body["message"]

    def test_verified_email_cannot_register_again(self, client):
        _signup(client)
        resp = _register(client)
        assert resp.status_code == 400
        assert resp.json()["code"] == "conflict"

    def test_wrong_code(self, client):
        _register(client)
        resp = client.post(
            "/api/auth/verify-otp", json={"email": "farmer@example.com", "otp": "000000"}
        )
        assert resp.status_code == 400
        assert resp.json()["message"] == "Invalid verification code"

    def test_code_cannot_be_reused(self, client):
        _signup(client)
        resp = client.post(
            "/api/auth/verify-otp", json={"email": "farmer@example.com", "otp": CODE}
        )
        assert resp.status_code == 400

    def test_debug_otp_exposed_when_enabled(self, client):
        get_runtime().settings.expose_debug_otp = True
        resp = _register(client)
        assert resp.json()["debug_otp"] == CODE


class TestLoginLockout:
    def test_login_and_me(self, client):
        _signup(client)
        resp = client.post(
            "/api/auth/login", json={"email": "Farmer@Example.com", "password": PASSWORD}
        )
        assert resp.status_code == 200
        token = resp.json()["token"]

        me = client.get("/api/auth/me", headers=_auth(token))
        assert me.status_code == 200
        assert me.json()["user"]["email"] == "farmer@example.com"
        assert me.headers["Cache-Control"] == "no-store"

    def test_invalid_credentials(self, client):
        _signup(client)
        wrong = client.post(
            "/api/auth/login", json={"email": "farmer@example.com", "password": "Wrong1234!"}
        )
        unknown = client.post(
            "/api/auth/login", json={"email": "ghost@example.com", "password": PASSWORD}
        )
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json() == {
            "code": "unauthorized",
            "message": "Invalid email or password",
        }

    def test_lockout_after_five_failures(self, client):
        _signup(client)
        for _ in range(5):
            resp = client.post(
                "/api/auth/login",
                json={"email": "farmer@example.com", "password": "Wrong1234!"},
            )
            assert resp.status_code == 401

        resp = client.post(
            "/api/auth/login", json={"email": "farmer@example.com", "password": PASSWORD}
        )
        assert resp.status_code == 429
        body = resp.json()
        assert body["code"] == "rate_limited"
        assert 895 <= body["retryAfterSeconds"] <= 900
        assert resp.headers["Retry-After"] == str(body["retryAfterSeconds"])


class TestSessionTokens:
    def test_me_requires_token(self, client):
        resp = client.get("/api/auth/me")
        assert resp.status_code == 401
        assert resp.json()["message"] == "Unauthorized"

    def test_garbage_token(self, client):
        resp = client.get("/api/auth/me", headers=_auth("not.a.token"))
        assert resp.status_code == 401


class TestChangePassword:
    def test_change_invalidates_old_token(self, client):
        token = _signup(client)
        resp = client.post(
            "/api/account/change-password",
            headers=_auth(token),
            json={"oldPassword": PASSWORD, "newPassword": "Fresh5678#"},
        )
        assert resp.status_code == 200
        assert resp.json() == {"message": "Password changed successfully"}

        assert client.get("/api/auth/me", headers=_auth(token)).status_code == 401

        login = client.post(
            "/api/auth/login", json={"email": "farmer@example.com", "password": "Fresh5678#"}
        )
        assert login.status_code == 200

    def test_wrong_old_password(self, client):
        token = _signup(client)
        resp = client.post(
            "/api/account/change-password",
            headers=_auth(token),
            json={"oldPassword": "Wrong1234!", "newPassword": "Fresh5678#"},
        )
        assert resp.status_code == 400
        assert resp.json()["message"] == "Old password is incorrect"

    def test_requires_authentication(self, client):
        resp = client.post(
            "/api/account/change-password",
            json={"oldPassword": PASSWORD, "newPassword": "Fresh5678#"},
        )
        assert resp.status_code == 401


class TestRateLimits:
    def test_register_rate_limited_per_email(self, client):
        statuses = [_register(client).status_code for _ in range(6)]
        assert statuses[:5] == [200] * 5
        assert statuses[5] == 429

        # a different email has its own window
        assert _register(client, email="other@example.com").status_code == 200

    def test_rate_limit_dependency_keyed_by_address(self):
        get_runtime().rate_limiter.policies["diagnose"] = RateLimitPolicy("diagnose", 2, 60)

        mini_app = FastAPI()
        register_exception_handlers(mini_app)

        @mini_app.post("/diagnose", dependencies=[Depends(rate_limit("diagnose"))])
        async def diagnose():
            return {"ok": True}

        client = TestClient(mini_app)
        first = client.post("/diagnose", headers={"X-Forwarded-For": "10.0.0.1"})
        second = client.post("/diagnose", headers={"X-Forwarded-For": "10.0.0.1"})
        third = client.post("/diagnose", headers={"X-Forwarded-For": "10.0.0.1"})
        elsewhere = client.post("/diagnose", headers={"X-Forwarded-For": "10.0.0.2"})

        assert [first.status_code, second.status_code, third.status_code] == [200, 200, 429]
        assert third.json()["message"] == "Too many requests. Please try again later."
        assert elsewhere.status_code == 200


class TestRoleGuard:
    def _token_for(self, email, role):
        runtime = get_runtime()
        account = runtime.store.create_account(
            email,
            "Someone",
            role=role,
            credential_hash=hash_secret(PASSWORD),
            email_verified=True,
        )
        return runtime.accounts.tokens.issue(account)

    def test_require_role(self):
        mini_app = FastAPI()
        register_exception_handlers(mini_app)

        @mini_app.get("/admin-only")
        async def admin_only(account=Depends(require_role(AccountRole.ADMIN))):
            return {"id": account.id}

        client = TestClient(mini_app)
        admin_token = self._token_for("admin@example.com", "admin")
        farmer_token = self._token_for("farmer@example.com", "farmer")

        assert client.get("/admin-only", headers=_auth(admin_token)).status_code == 200
        resp = client.get("/admin-only", headers=_auth(farmer_token))
        assert resp.status_code == 403
        assert resp.json()["code"] == "forbidden"


class TestHealth:
    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"] == {"status": "not_configured"}

    def test_request_id_echoed(self, client):
        resp = client.get("/healthz", headers={"X-Request-ID": "abc-123"})
        assert resp.headers["X-Request-ID"] == "abc-123"
