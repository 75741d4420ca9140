from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from tenantauth.logging import email_fingerprint, get_logger
from tenantauth.service.crypto import (
    PASSWORD_ALGO,
    burn_password_check,
    verify_password,
)
from tenantauth.service.errors import (
    InvalidCredentialsError,
    TokenExpiredError,
    TokenNotFoundError,
    UserInactiveError,
)
from tenantauth.service.sessions import SessionCredential, SessionIssuer
from tenantauth.service.tokens import TokenStore
from tenantauth.storage.models import Tenant, TokenKind, User

logger = get_logger(__name__)


class UserDirectory(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str, tenant_id: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def record_sign_in(
        self, user_id: str, at: Optional[datetime] = None
    ) -> Optional[User]: ...


@dataclass(frozen=True)
class TokenGrant:
    """What a valid ephemeral token entitles its bearer to."""

    user_id: str
    tenant_id: str
    kind: TokenKind


class CredentialValidator:
    """Password checks and read-only validation of ephemeral tokens."""

    def __init__(
        self, users: UserDirectory, tokens: TokenStore, issuer: SessionIssuer
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.issuer = issuer

    async def authenticate_with_password(
        self, email: str, password: str, tenant: Tenant
    ) -> SessionCredential:
        user = self.users.get_user_by_email(email, tenant.id)
        record = self.users.get_password_record(user.id) if user else None
        if user is None or record is None:
            burn_password_check(password)
            logger.info(
                "password_login_rejected",
                tenant_id=tenant.id,
                email_hash=email_fingerprint(email),
            )
            raise InvalidCredentialsError()
        stored_hash, algo = record
        if algo != PASSWORD_ALGO or not verify_password(password, stored_hash):
            logger.info(
                "password_login_rejected", tenant_id=tenant.id, user_id=user.id
            )
            raise InvalidCredentialsError()
        if not user.is_active:
            logger.info("password_login_inactive", tenant_id=tenant.id, user_id=user.id)
            raise UserInactiveError()
        self.users.record_sign_in(user.id)
        logger.info("password_login_succeeded", tenant_id=tenant.id, user_id=user.id)
        return await self.issuer.create_session_pair(user, tenant)

    async def validate_and_consume_token(
        self, token: str, expected_kind: TokenKind
    ) -> TokenGrant:
        """Check a token without deleting it.

        Deletion is left to :meth:`commit` once the caller's dependent mutation
        has been applied. An expired record is reported but kept.

        Raises:
            TokenNotFoundError: absent, consumed, or of a different kind
            TokenExpiredError: past expiry; carries the owning user and tenant
        """
        record = await self.tokens.get(token)
        if record is None or record.kind != expected_kind:
            raise TokenNotFoundError()
        if record.is_expired():
            logger.info(
                "token_expired",
                token_kind=record.kind.value,
                user_id=record.user_id,
                tenant_id=record.tenant_id,
            )
            raise TokenExpiredError(
                user_id=record.user_id,
                tenant_id=record.tenant_id,
                kind=record.kind.value,
            )
        return TokenGrant(
            user_id=record.user_id, tenant_id=record.tenant_id, kind=record.kind
        )

    # Pre-check half of the two-step reset flow
    peek = validate_and_consume_token

    async def commit(self, token: str) -> None:
        """Consume a token after its effect has been applied. Idempotent."""
        await self.tokens.delete(token)
