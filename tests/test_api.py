"""HTTP surface: envelopes, status codes and headers over the test runtime."""

import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

import tenantauth.app as app_module
from tenantauth.service.email import EmailTemplate
from tenantauth.service.runtime import get_runtime
from tenantauth.storage.models import AuthPolicy, TokenKind

STAFF_KEY = "staff-key-for-tests-only-0123456789"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def outbox(email):
    get_runtime().flows.email = email
    return email


@pytest.fixture
def password_env():
    return get_runtime().store.create_tenant(
        "Acme", "https://acme.example.com", auth_policy=AuthPolicy.PASSWORD
    )


@pytest.fixture
def magic_env():
    return get_runtime().store.create_tenant(
        "Beacon", "https://beacon.example.com", auth_policy=AuthPolicy.MAGIC_LINK
    )


def _headers(tenant):
    return {"X-Public-Key": tenant.public_key}


def _signup(client, tenant, email="a@x.com", password="p"):
    body = {"email": email}
    if password is not None:
        body["password"] = password
    return client.post("/auth/signup", json=body, headers=_headers(tenant))


class TestEnvelope:
    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    def test_request_id_is_echoed(self, client, password_env):
        resp = _signup(client, password_env)
        resp = client.post(
            "/auth/login",
            json={"email": "a@x.com", "password": "p"},
            headers={**_headers(password_env), "X-Request-ID": "req-123"},
        )
        assert resp.headers["X-Request-ID"] == "req-123"

    def test_missing_public_key_is_unauthorized(self, client):
        resp = client.post("/auth/signup", json={"email": "a@x.com", "password": "p"})
        assert resp.status_code == 401
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"

    def test_invalid_email_is_validation_error(self, client, password_env):
        resp = _signup(client, password_env, email="not-an-email")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"


class TestOwnerSignup:
    def test_owner_bootstrap_is_idempotent(self, client):
        first = client.post(
            "/auth/signup/owner", json={"password": "p"}, headers={"X-Staff-Api-Key": STAFF_KEY}
        )
        assert first.status_code == 201
        data = first.json()["data"]
        assert data["created"] is True
        assert data["user"]["email"] == "owner@example.com"
        assert "secret_key" not in data["tenant"]

        second = client.post(
            "/auth/signup/owner", json={"password": "p"}, headers={"X-Staff-Api-Key": STAFF_KEY}
        )
        assert second.json()["data"]["created"] is False
        assert second.json()["data"]["tenant"]["id"] == data["tenant"]["id"]

    def test_wrong_staff_key(self, client):
        resp = client.post(
            "/auth/signup/owner", json={"password": "p"}, headers={"X-Staff-Api-Key": "nope"}
        )
        assert resp.status_code == 401


class TestSignupAndLogin:
    def test_password_signup_returns_session(self, client, password_env):
        resp = _signup(client, password_env)
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["access_token"] and data["refresh_token"]
        assert data["token_type"] == "bearer"

    def test_duplicate_signup_conflicts(self, client, password_env):
        _signup(client, password_env)
        resp = _signup(client, password_env)
        assert resp.status_code == 409
        assert resp.json()["error"]["message"] == "email in use"

    def test_wrong_password_is_invalid_credentials(self, client, password_env):
        _signup(client, password_env)
        resp = client.post(
            "/auth/login",
            json={"email": "a@x.com", "password": "wrong"},
            headers=_headers(password_env),
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_credentials"

    def test_magic_link_signup_and_consume(self, client, outbox, magic_env):
        resp = _signup(client, magic_env, email="b@x.com", password=None)
        assert resp.status_code == 201
        assert resp.json()["data"] == {"status": "sent"}
        token = outbox.of(EmailTemplate.MAGIC_LINK)[0]["payload"]["token"]

        resp = client.get(f"/auth/magic/{token}", headers=_headers(magic_env))
        assert resp.status_code == 200
        assert resp.json()["data"]["access_token"]

        replay = client.post(f"/auth/magic/{token}", headers=_headers(magic_env))
        assert replay.status_code == 404
        assert replay.json()["error"]["code"] == "not_found"


class TestSessions:
    def test_refresh_without_public_key(self, client, password_env):
        refresh = _signup(client, password_env).json()["data"]["refresh_token"]
        resp = client.post("/auth/refresh", json={"refresh_token": refresh})
        assert resp.status_code == 200
        assert resp.json()["data"]["access_token"]

    def test_refresh_disabled(self, client):
        tenant = get_runtime().store.create_tenant(
            "NoRefresh", "https://nr.example.com", refresh_token_ttl_minutes=None
        )
        data = _signup(client, tenant).json()["data"]
        assert data["refresh_token"] is None
        resp = client.post(
            "/auth/refresh",
            json={"refresh_token": data["access_token"]},
            headers=_headers(tenant),
        )
        assert resp.status_code == 401

    def test_logout(self, client, password_env):
        access = _signup(client, password_env).json()["data"]["access_token"]
        resp = client.post("/auth/logout", headers={"Authorization": f"Bearer {access}"})
        assert resp.status_code == 200
        assert client.post("/auth/logout").status_code == 401


class TestPasswordReset:
    def test_request_is_always_acknowledged(self, client, password_env):
        _signup(client, password_env)
        known = client.post(
            "/auth/reset-password", json={"email": "a@x.com"}, headers=_headers(password_env)
        )
        unknown = client.post(
            "/auth/reset-password", json={"email": "z@x.com"}, headers=_headers(password_env)
        )
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_validate_then_update(self, client, outbox, password_env):
        _signup(client, password_env)
        client.post(
            "/auth/reset-password", json={"email": "a@x.com"}, headers=_headers(password_env)
        )
        token = outbox.of(EmailTemplate.FORGOT_PASSWORD)[0]["payload"]["token"]

        check = client.get(f"/auth/reset-password/{token}", headers=_headers(password_env))
        assert check.status_code == 200
        update = client.patch(
            f"/auth/reset-password/{token}",
            json={"password": "fresh"},
            headers=_headers(password_env),
        )
        assert update.status_code == 200
        again = client.patch(
            f"/auth/reset-password/{token}",
            json={"password": "fresh"},
            headers=_headers(password_env),
        )
        assert again.status_code == 404

        login = client.post(
            "/auth/login",
            json={"email": "a@x.com", "password": "fresh"},
            headers=_headers(password_env),
        )
        assert login.status_code == 200


class TestConfirmAndInvite:
    def test_expired_confirmation_reports_retry(self, client, outbox, password_env):
        runtime = get_runtime()
        user = runtime.store.create_user("a@x.com", tenant_id=password_env.id)
        stale = asyncio.run(
            runtime.tokens.create(
                TokenKind.CONFIRM_EMAIL, user.id, password_env.id, timedelta(seconds=-1)
            )
        )
        resp = client.get(f"/auth/confirm-email/{stale}", headers=_headers(password_env))
        assert resp.status_code == 410
        error = resp.json()["error"]
        assert error["code"] == "expired"
        assert error["details"] == {"retry": True}
        assert len(outbox.of(EmailTemplate.CONFIRM_EMAIL)) == 1

        again = client.get(f"/auth/confirm-email/{stale}", headers=_headers(password_env))
        assert again.status_code == 404

    def test_invite_and_accept(self, client, outbox, password_env):
        access = _signup(client, password_env, email="admin@x.com").json()["data"]["access_token"]
        resp = client.post(
            "/auth/invite",
            json={"email": "new@x.com", "full_name": "Nia New"},
            headers={**_headers(password_env), "Authorization": f"Bearer {access}"},
        )
        assert resp.status_code == 201
        token = outbox.of(EmailTemplate.INVITE_USER)[0]["payload"]["token"]
        assert outbox.of(EmailTemplate.INVITE_USER)[0]["payload"]["user_first_name"] == "Nia"

        resp = client.get(f"/auth/confirm-email/{token}", headers=_headers(password_env))
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["followup_token_kind"] == "reset-password"
        assert data["email"] == "new@x.com"
        assert data["followup_token"]

    def test_invite_without_session(self, client, password_env):
        resp = client.post(
            "/auth/invite", json={"email": "new@x.com"}, headers=_headers(password_env)
        )
        assert resp.status_code == 401
