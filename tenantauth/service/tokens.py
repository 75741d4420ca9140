from __future__ import annotations

import hashlib
from datetime import timedelta
from typing import Optional, Protocol, Union

from tenantauth.logging import get_logger
from tenantauth.service.crypto import new_opaque_token
from tenantauth.storage.models import EphemeralToken, TokenKind
from tenantauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class TokenBackend(Protocol):
    def insert_token(self, record: EphemeralToken) -> None: ...

    def get_token(self, token: str) -> Optional[EphemeralToken]: ...

    def delete_token(self, token: str) -> None: ...

    def delete_tokens_of_kind(self, kind: TokenKind, user_id: str) -> int: ...


def token_digest(token: str) -> str:
    """Storage key for a token value; the plaintext itself is never persisted."""
    return hashlib.sha256(token.encode()).hexdigest()


class TokenStore:
    """Persistence and lookup of ephemeral tokens.

    Uses Redis when a cache is configured and the primary store otherwise.
    Lookups are by token value alone; callers check the owning tenant and user
    on the returned record.
    """

    def __init__(
        self,
        store: TokenBackend,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
    ) -> None:
        self.store = store
        self.cache = cache

    async def create(
        self,
        kind: TokenKind,
        user_id: str,
        tenant_id: str,
        ttl: timedelta,
    ) -> str:
        token = new_opaque_token()
        record = EphemeralToken.new(
            token_digest(token), TokenKind(kind), user_id, tenant_id, ttl
        )
        if self.cache:
            await self.cache.put_token(record)
        else:
            self.store.insert_token(record)
        logger.info(
            "token_issued",
            token_kind=record.kind.value,
            user_id=user_id,
            tenant_id=tenant_id,
            expires_at=record.expires_at.isoformat(),
        )
        return token

    async def get(self, token: str) -> Optional[EphemeralToken]:
        if not token:
            return None
        key = token_digest(token)
        if self.cache:
            return await self.cache.get_token(key)
        return self.store.get_token(key)

    async def delete(self, token: str) -> None:
        """Remove a token; deleting an unknown or already-deleted token is a no-op."""
        key = token_digest(token)
        if self.cache:
            await self.cache.delete_token(key)
        else:
            self.store.delete_token(key)

    async def delete_all_of_kind(self, kind: TokenKind, user_id: str) -> int:
        if self.cache:
            removed = await self.cache.delete_tokens_of_kind(TokenKind(kind), user_id)
        else:
            removed = self.store.delete_tokens_of_kind(TokenKind(kind), user_id)
        if removed:
            logger.info(
                "tokens_invalidated",
                token_kind=TokenKind(kind).value,
                user_id=user_id,
                count=removed,
            )
        return removed
