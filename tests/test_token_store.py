"""Token store and credential validator: lifecycle, expiry and single use."""

from datetime import timedelta

import pytest

from tenantauth.service.errors import (
    InvalidCredentialsError,
    TokenExpiredError,
    TokenNotFoundError,
    UserInactiveError,
)
from tenantauth.service.crypto import PASSWORD_ALGO, hash_password
from tenantauth.service.tokens import token_digest
from tenantauth.service.validator import CredentialValidator
from tenantauth.storage.models import TokenKind


@pytest.fixture
def user(memory_store, password_tenant):
    return memory_store.create_user("a@x.com", tenant_id=password_tenant.id, full_name="Ada A")


@pytest.fixture
def validator(memory_store, token_store, issuer):
    return CredentialValidator(memory_store, token_store, issuer)


class TestTokenStore:
    async def test_create_returns_plaintext_and_stores_digest(
        self, token_store, memory_store, user, password_tenant
    ):
        token = await token_store.create(
            TokenKind.CONFIRM_EMAIL, user.id, password_tenant.id, timedelta(days=1)
        )
        assert memory_store.get_token(token) is None
        stored = memory_store.get_token(token_digest(token))
        assert stored.user_id == user.id
        assert stored.tenant_id == password_tenant.id
        record = await token_store.get(token)
        assert record.kind == TokenKind.CONFIRM_EMAIL

    async def test_unknown_and_empty_tokens(self, token_store):
        assert await token_store.get("nope") is None
        assert await token_store.get("") is None

    async def test_delete_twice_is_noop(self, token_store, user, password_tenant):
        token = await token_store.create(
            TokenKind.MAGIC_LOGIN, user.id, password_tenant.id, timedelta(minutes=5)
        )
        await token_store.delete(token)
        await token_store.delete(token)
        assert await token_store.get(token) is None

    async def test_delete_all_of_kind(self, token_store, user, password_tenant):
        old_one = await token_store.create(
            TokenKind.RESET_PASSWORD, user.id, password_tenant.id, timedelta(minutes=5)
        )
        old_two = await token_store.create(
            TokenKind.RESET_PASSWORD, user.id, password_tenant.id, timedelta(minutes=5)
        )
        keep = await token_store.create(
            TokenKind.CONFIRM_EMAIL, user.id, password_tenant.id, timedelta(minutes=5)
        )
        assert await token_store.delete_all_of_kind(TokenKind.RESET_PASSWORD, user.id) == 2
        assert await token_store.get(old_one) is None
        assert await token_store.get(old_two) is None
        assert await token_store.get(keep) is not None


class TestValidateAndConsume:
    async def test_valid_token_is_not_deleted(self, validator, token_store, user, password_tenant):
        token = await token_store.create(
            TokenKind.CONFIRM_EMAIL, user.id, password_tenant.id, timedelta(minutes=5)
        )
        grant = await validator.validate_and_consume_token(token, TokenKind.CONFIRM_EMAIL)
        assert grant.user_id == user.id
        assert grant.tenant_id == password_tenant.id
        assert await token_store.get(token) is not None

    async def test_committed_token_is_not_found(self, validator, token_store, user, password_tenant):
        token = await token_store.create(
            TokenKind.CONFIRM_EMAIL, user.id, password_tenant.id, timedelta(minutes=5)
        )
        await validator.commit(token)
        with pytest.raises(TokenNotFoundError):
            await validator.validate_and_consume_token(token, TokenKind.CONFIRM_EMAIL)
        # commit is idempotent
        await validator.commit(token)

    async def test_kind_mismatch_is_not_found(self, validator, token_store, user, password_tenant):
        token = await token_store.create(
            TokenKind.INVITE_USER, user.id, password_tenant.id, timedelta(minutes=5)
        )
        with pytest.raises(TokenNotFoundError):
            await validator.validate_and_consume_token(token, TokenKind.RESET_PASSWORD)

    async def test_expired_token_keeps_record_and_owner(
        self, validator, token_store, user, password_tenant
    ):
        token = await token_store.create(
            TokenKind.CONFIRM_EMAIL, user.id, password_tenant.id, timedelta(seconds=-1)
        )
        with pytest.raises(TokenExpiredError) as excinfo:
            await validator.validate_and_consume_token(token, TokenKind.CONFIRM_EMAIL)
        assert excinfo.value.user_id == user.id
        assert excinfo.value.tenant_id == password_tenant.id
        assert excinfo.value.status_code == 410
        assert excinfo.value.retry is False
        assert await token_store.get(token) is not None

    async def test_peek_is_read_only(self, validator, token_store, user, password_tenant):
        token = await token_store.create(
            TokenKind.RESET_PASSWORD, user.id, password_tenant.id, timedelta(minutes=5)
        )
        await validator.peek(token, TokenKind.RESET_PASSWORD)
        await validator.peek(token, TokenKind.RESET_PASSWORD)
        assert await token_store.get(token) is not None


class TestPasswordAuthentication:
    async def test_success_records_sign_in(
        self, validator, memory_store, user, password_tenant
    ):
        memory_store.save_password(user.id, hash_password("p"), PASSWORD_ALGO)
        credential = await validator.authenticate_with_password("a@x.com", "p", password_tenant)
        assert credential.user_id == user.id
        assert credential.refresh_token is not None
        assert memory_store.get_user(user.id).has_signed_in

    async def test_wrong_password_and_unknown_user_fail_alike(
        self, validator, memory_store, user, password_tenant
    ):
        memory_store.save_password(user.id, hash_password("p"), PASSWORD_ALGO)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await validator.authenticate_with_password("a@x.com", "q", password_tenant)
        with pytest.raises(InvalidCredentialsError) as unknown:
            await validator.authenticate_with_password("who@x.com", "p", password_tenant)
        assert wrong.value.message == unknown.value.message
        assert wrong.value.error_code == unknown.value.error_code == "invalid_credentials"

    async def test_user_without_password_is_invalid_credentials(
        self, validator, user, password_tenant
    ):
        with pytest.raises(InvalidCredentialsError):
            await validator.authenticate_with_password("a@x.com", "p", password_tenant)

    async def test_inactive_user_is_rejected(self, validator, memory_store, password_tenant):
        inactive = memory_store.create_user(
            "off@x.com", tenant_id=password_tenant.id, is_active=False
        )
        memory_store.save_password(inactive.id, hash_password("p"), PASSWORD_ALGO)
        with pytest.raises(UserInactiveError):
            await validator.authenticate_with_password("off@x.com", "p", password_tenant)

    async def test_other_tenant_user_is_invalid_credentials(
        self, validator, memory_store, user, magic_tenant
    ):
        memory_store.save_password(user.id, hash_password("p"), PASSWORD_ALGO)
        with pytest.raises(InvalidCredentialsError):
            await validator.authenticate_with_password("a@x.com", "p", magic_tenant)
