"""Tests for the in-memory store: tenant scoping, constraints and persistence."""

from datetime import timedelta

import pytest

from tenantauth.storage.errors import (
    MISSING_USER,
    UNIQUE_PLATFORM_OWNER,
    UNIQUE_TENANT_EMAIL,
    ConstraintViolation,
)
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.models import AuthPolicy, EphemeralToken, TokenKind


class TestTenants:
    def test_create_tenant_generates_keys(self, memory_store):
        tenant = memory_store.create_tenant("Acme", "https://acme.example.com")
        assert tenant.public_key.startswith("pk_")
        assert tenant.secret_key
        assert memory_store.get_tenant_by_public_key(tenant.public_key).id == tenant.id

    def test_unknown_public_key(self, memory_store):
        assert memory_store.get_tenant_by_public_key("pk_missing") is None

    def test_null_refresh_lifetime_disables_refresh(self, memory_store):
        tenant = memory_store.create_tenant(
            "NoRefresh", "https://nr.example.com", refresh_token_ttl_minutes=None
        )
        assert tenant.refresh_enabled is False


class TestUsers:
    def test_email_is_unique_per_tenant(self, memory_store, password_tenant):
        memory_store.create_user("a@x.com", tenant_id=password_tenant.id)
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_user("A@X.com", tenant_id=password_tenant.id)
        assert excinfo.value.constraint == UNIQUE_TENANT_EMAIL

    def test_same_email_in_two_tenants(self, memory_store, password_tenant, magic_tenant):
        first = memory_store.create_user("a@x.com", tenant_id=password_tenant.id)
        second = memory_store.create_user("a@x.com", tenant_id=magic_tenant.id)
        assert first.id != second.id
        assert memory_store.get_user_by_email("a@x.com", magic_tenant.id).id == second.id

    def test_lookup_is_tenant_scoped(self, memory_store, password_tenant, magic_tenant):
        memory_store.create_user("a@x.com", tenant_id=password_tenant.id)
        assert memory_store.get_user_by_email("a@x.com", magic_tenant.id) is None

    def test_single_platform_owner(self, memory_store):
        memory_store.create_user("owner@x.com", tenant_id=None, is_platform_owner=True)
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_user("other@x.com", tenant_id=None, is_platform_owner=True)
        assert excinfo.value.constraint == UNIQUE_PLATFORM_OWNER

    def test_confirming_email_activates_user(self, memory_store, password_tenant):
        user = memory_store.create_user(
            "invitee@x.com", tenant_id=password_tenant.id, is_active=False
        )
        updated = memory_store.set_email_confirmed(user.id)
        assert updated.email_confirmed is True
        assert updated.is_active is True

    def test_record_sign_in(self, memory_store, password_tenant):
        user = memory_store.create_user("a@x.com", tenant_id=password_tenant.id)
        assert user.has_signed_in is False
        memory_store.record_sign_in(user.id)
        assert memory_store.get_user(user.id).has_signed_in is True

    def test_password_for_unknown_user(self, memory_store):
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.save_password("missing", "hash", "argon2id")
        assert excinfo.value.constraint == MISSING_USER


class TestTokens:
    def _token(self, user, tenant, value="tok", kind=TokenKind.CONFIRM_EMAIL):
        return EphemeralToken.new(value, kind, user.id, tenant.id, timedelta(minutes=5))

    def test_insert_requires_user(self, memory_store, password_tenant):
        record = EphemeralToken.new(
            "tok", TokenKind.CONFIRM_EMAIL, "ghost", password_tenant.id, timedelta(minutes=5)
        )
        with pytest.raises(ConstraintViolation):
            memory_store.insert_token(record)

    def test_delete_is_idempotent(self, memory_store, password_tenant):
        user = memory_store.create_user("a@x.com", tenant_id=password_tenant.id)
        memory_store.insert_token(self._token(user, password_tenant))
        memory_store.delete_token("tok")
        memory_store.delete_token("tok")
        assert memory_store.get_token("tok") is None

    def test_delete_of_kind_only_touches_that_kind(self, memory_store, password_tenant):
        user = memory_store.create_user("a@x.com", tenant_id=password_tenant.id)
        memory_store.insert_token(self._token(user, password_tenant, "r1", TokenKind.RESET_PASSWORD))
        memory_store.insert_token(self._token(user, password_tenant, "r2", TokenKind.RESET_PASSWORD))
        memory_store.insert_token(self._token(user, password_tenant, "c1", TokenKind.CONFIRM_EMAIL))
        assert memory_store.delete_tokens_of_kind(TokenKind.RESET_PASSWORD, user.id) == 2
        assert [t.token for t in memory_store.list_tokens(user.id)] == ["c1"]


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        tenant = store.create_tenant(
            "Beacon", "https://beacon.example.com", auth_policy=AuthPolicy.MAGIC_LINK
        )
        user = store.create_user("b@x.com", tenant_id=tenant.id, full_name="Bea B")
        store.save_password(user.id, "hash", "argon2id")
        store.insert_token(
            EphemeralToken.new(
                "tok", TokenKind.MAGIC_LOGIN, user.id, tenant.id, timedelta(minutes=5)
            )
        )

        reloaded = MemoryStore(fs_root=str(tmp_path))
        assert reloaded.get_tenant(tenant.id).auth_policy == AuthPolicy.MAGIC_LINK
        assert reloaded.get_user(user.id).full_name == "Bea B"
        assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
        assert reloaded.get_token("tok").kind == TokenKind.MAGIC_LOGIN

    def test_without_fs_root_nothing_is_written(self, tmp_path):
        store = MemoryStore()
        store.create_tenant("Acme", "https://acme.example.com")
        assert list(tmp_path.iterdir()) == []
