from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from tenantauth.logging import get_logger
from tenantauth.service.crypto import (
    InvalidSignature,
    SignatureExpired,
    sign_session,
    verify_session,
)
from tenantauth.service.errors import AuthenticationError, SessionExpiredError
from tenantauth.service.tokens import TokenStore
from tenantauth.storage.models import Tenant, TokenKind, User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class SessionCredential:
    user_id: str
    tenant_id: str
    access_token: str
    access_expires_at: datetime
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None
    token_type: str = "bearer"


@dataclass
class SessionClaims:
    user_id: str
    tenant_id: str
    token_type: str
    jti: str
    issued_at: datetime
    expires_at: datetime


def _ts(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SessionIssuer:
    """Mints and verifies access/refresh pairs signed with each tenant's key.

    Refresh tokens are stateless unless ``track_refresh`` is set. When tracking,
    every refresh token's ``jti`` is an ephemeral ``refresh-session`` token, so
    rotation consumes it and :meth:`revoke` invalidates all of a user's refresh
    tokens at once.
    """

    def __init__(
        self,
        tokens: TokenStore,
        *,
        issuer: str,
        leeway_seconds: int = 30,
        track_refresh: bool = False,
    ) -> None:
        self.tokens = tokens
        self.issuer = issuer
        self.leeway_seconds = leeway_seconds
        self.track_refresh = track_refresh

    def _claims(self, user_id: str, tenant_id: str, token_type: str, jti: str) -> dict:
        return {
            "iss": self.issuer,
            "sub": user_id,
            "tid": tenant_id,
            "typ": token_type,
            "jti": jti,
        }

    async def create_session_pair(self, user: User, tenant: Tenant) -> SessionCredential:
        return await self._mint(user.id, tenant)

    async def _mint(self, user_id: str, tenant: Tenant) -> SessionCredential:
        access_ttl = timedelta(minutes=tenant.access_token_ttl_minutes)
        access_token = sign_session(
            self._claims(user_id, tenant.id, ACCESS, str(uuid.uuid4())),
            tenant.secret_key,
            access_ttl,
        )
        now = datetime.now(timezone.utc)
        credential = SessionCredential(
            user_id=user_id,
            tenant_id=tenant.id,
            access_token=access_token,
            access_expires_at=now + access_ttl,
        )
        if not tenant.refresh_enabled:
            return credential

        refresh_ttl = timedelta(minutes=tenant.refresh_token_ttl_minutes)
        if self.track_refresh:
            jti = await self.tokens.create(
                TokenKind.REFRESH_SESSION, user_id, tenant.id, refresh_ttl
            )
        else:
            jti = str(uuid.uuid4())
        credential.refresh_token = sign_session(
            self._claims(user_id, tenant.id, REFRESH, jti),
            tenant.secret_key,
            refresh_ttl,
        )
        credential.refresh_expires_at = now + refresh_ttl
        return credential

    def _verify(self, token: str, tenant: Tenant, token_type: str) -> SessionClaims:
        try:
            payload = verify_session(
                token, tenant.secret_key, leeway_seconds=self.leeway_seconds
            )
        except SignatureExpired:
            raise SessionExpiredError("session expired")
        except InvalidSignature:
            raise AuthenticationError("invalid session")
        if (
            payload.get("iss") != self.issuer
            or payload.get("tid") != tenant.id
            or payload.get("typ") != token_type
            or not payload.get("sub")
            or not payload.get("jti")
        ):
            raise AuthenticationError("invalid session")
        return SessionClaims(
            user_id=str(payload["sub"]),
            tenant_id=str(payload["tid"]),
            token_type=token_type,
            jti=str(payload["jti"]),
            issued_at=_ts(float(payload.get("iat", 0))),
            expires_at=_ts(float(payload["exp"])),
        )

    def verify_access(self, token: str, tenant: Tenant) -> SessionClaims:
        return self._verify(token, tenant, ACCESS)

    async def rotate_refresh(
        self,
        old_refresh_token: str,
        tenant: Tenant,
        *,
        principal_active: Optional[Callable[[str], bool]] = None,
    ) -> SessionCredential:
        """Exchange a refresh token for a new pair.

        ``principal_active`` is consulted with the token's user id before minting;
        returning False fails the rotation as unauthorized.
        """
        if not tenant.refresh_enabled:
            raise AuthenticationError("refresh is disabled for this tenant")
        claims = self._verify(old_refresh_token, tenant, REFRESH)
        if self.track_refresh:
            record = await self.tokens.get(claims.jti)
            if (
                record is None
                or record.kind != TokenKind.REFRESH_SESSION
                or record.user_id != claims.user_id
                or record.tenant_id != tenant.id
            ):
                logger.warning(
                    "refresh_token_not_tracked",
                    user_id=claims.user_id,
                    tenant_id=tenant.id,
                )
                raise AuthenticationError("invalid session")
            await self.tokens.delete(claims.jti)
        if principal_active is not None and not principal_active(claims.user_id):
            raise AuthenticationError("invalid session")
        logger.info("refresh_rotated", user_id=claims.user_id, tenant_id=tenant.id)
        return await self._mint(claims.user_id, tenant)

    async def revoke(self, user_id: str, tenant_id: str) -> None:
        """Invalidate the user's refresh tokens.

        A no-op without refresh tracking: stateless tokens stay valid until they
        expire.
        """
        if not self.track_refresh:
            logger.info("revoke_noop_stateless", user_id=user_id, tenant_id=tenant_id)
            return
        await self.tokens.delete_all_of_kind(TokenKind.REFRESH_SESSION, user_id)
        logger.info("refresh_tokens_revoked", user_id=user_id, tenant_id=tenant_id)
