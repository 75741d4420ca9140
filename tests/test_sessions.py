"""Session issuer: pair minting, verification, rotation and revocation."""

import time
from datetime import timedelta

import pytest

from tenantauth.service.crypto import sign_session
from tenantauth.service.errors import AuthenticationError, SessionExpiredError
from tenantauth.service.sessions import SessionIssuer
from tenantauth.storage.models import TokenKind


@pytest.fixture
def user(memory_store, password_tenant):
    return memory_store.create_user("a@x.com", tenant_id=password_tenant.id)


@pytest.fixture
def tracking_issuer(token_store):
    return SessionIssuer(token_store, issuer="tenantauth-test", track_refresh=True)


class TestCreateSessionPair:
    async def test_pair_is_bound_to_user_and_tenant(self, issuer, user, password_tenant):
        credential = await issuer.create_session_pair(user, password_tenant)
        claims = issuer.verify_access(credential.access_token, password_tenant)
        assert claims.user_id == user.id
        assert claims.tenant_id == password_tenant.id
        assert credential.refresh_token is not None
        assert credential.refresh_expires_at > credential.access_expires_at

    async def test_refresh_omitted_when_tenant_disables_it(self, issuer, memory_store):
        tenant = memory_store.create_tenant(
            "NoRefresh", "https://nr.example.com", refresh_token_ttl_minutes=None
        )
        user = memory_store.create_user("n@x.com", tenant_id=tenant.id)
        credential = await issuer.create_session_pair(user, tenant)
        assert credential.refresh_token is None
        assert credential.refresh_expires_at is None

    async def test_access_token_from_other_tenant_is_rejected(
        self, issuer, user, password_tenant, magic_tenant
    ):
        credential = await issuer.create_session_pair(user, password_tenant)
        with pytest.raises(AuthenticationError):
            issuer.verify_access(credential.access_token, magic_tenant)

    async def test_refresh_token_is_not_an_access_token(self, issuer, user, password_tenant):
        credential = await issuer.create_session_pair(user, password_tenant)
        with pytest.raises(AuthenticationError):
            issuer.verify_access(credential.refresh_token, password_tenant)

    def test_expired_access_token(self, issuer, user, password_tenant):
        token = sign_session(
            {
                "iss": "tenantauth-test",
                "sub": user.id,
                "tid": password_tenant.id,
                "typ": "access",
                "jti": "j1",
            },
            password_tenant.secret_key,
            timedelta(minutes=1),
            now=time.time() - 3600,
        )
        with pytest.raises(SessionExpiredError):
            issuer.verify_access(token, password_tenant)


class TestRotateRefresh:
    async def test_rotation_mints_new_pair(self, issuer, user, password_tenant):
        credential = await issuer.create_session_pair(user, password_tenant)
        rotated = await issuer.rotate_refresh(credential.refresh_token, password_tenant)
        assert rotated.user_id == user.id
        assert rotated.refresh_token != credential.refresh_token

    async def test_refresh_disabled_always_unauthorized(self, issuer, memory_store):
        enabled = memory_store.create_tenant("On", "https://on.example.com")
        user = memory_store.create_user("r@x.com", tenant_id=enabled.id)
        valid_refresh = (await issuer.create_session_pair(user, enabled)).refresh_token
        # Same signing key, refresh switched off afterwards
        enabled.refresh_token_ttl_minutes = None
        with pytest.raises(AuthenticationError):
            await issuer.rotate_refresh(valid_refresh, enabled)

    async def test_inactive_principal_fails(self, issuer, user, password_tenant):
        credential = await issuer.create_session_pair(user, password_tenant)
        with pytest.raises(AuthenticationError):
            await issuer.rotate_refresh(
                credential.refresh_token,
                password_tenant,
                principal_active=lambda user_id: False,
            )

    async def test_stateless_refresh_is_reusable(self, issuer, user, password_tenant):
        credential = await issuer.create_session_pair(user, password_tenant)
        await issuer.rotate_refresh(credential.refresh_token, password_tenant)
        again = await issuer.rotate_refresh(credential.refresh_token, password_tenant)
        assert again.user_id == user.id


class TestTrackedRefresh:
    async def test_tracked_refresh_is_single_use(self, tracking_issuer, user, password_tenant):
        credential = await tracking_issuer.create_session_pair(user, password_tenant)
        rotated = await tracking_issuer.rotate_refresh(credential.refresh_token, password_tenant)
        assert rotated.refresh_token
        with pytest.raises(AuthenticationError):
            await tracking_issuer.rotate_refresh(credential.refresh_token, password_tenant)

    async def test_revoke_invalidates_refresh_tokens(
        self, tracking_issuer, memory_store, user, password_tenant
    ):
        credential = await tracking_issuer.create_session_pair(user, password_tenant)
        assert memory_store.list_tokens(user.id, TokenKind.REFRESH_SESSION)
        await tracking_issuer.revoke(user.id, password_tenant.id)
        assert memory_store.list_tokens(user.id, TokenKind.REFRESH_SESSION) == []
        with pytest.raises(AuthenticationError):
            await tracking_issuer.rotate_refresh(credential.refresh_token, password_tenant)

    async def test_revoke_without_tracking_is_noop(self, issuer, user, password_tenant):
        credential = await issuer.create_session_pair(user, password_tenant)
        await issuer.revoke(user.id, password_tenant.id)
        rotated = await issuer.rotate_refresh(credential.refresh_token, password_tenant)
        assert rotated.user_id == user.id
