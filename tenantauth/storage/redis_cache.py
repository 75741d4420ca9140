from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from tenantauth.storage.models import EphemeralToken, TokenKind


def _token_key(token: str) -> str:
    return f"auth:token:{token}"


def _index_key(kind: TokenKind, user_id: str) -> str:
    return f"auth:token_index:{kind.value}:{user_id}"


def _encode_token(record: EphemeralToken) -> str:
    return json.dumps(
        {
            "token": record.token,
            "kind": record.kind.value,
            "user_id": record.user_id,
            "tenant_id": record.tenant_id,
            "created_at": record.created_at.isoformat(),
            "expires_at": record.expires_at.isoformat(),
        },
        separators=(",", ":"),
    )


def _decode_token(raw: Optional[str]) -> Optional[EphemeralToken]:
    if not raw:
        return None
    data = json.loads(raw)
    return EphemeralToken(
        token=data["token"],
        kind=TokenKind(data["kind"]),
        user_id=data["user_id"],
        tenant_id=data["tenant_id"],
        created_at=datetime.fromisoformat(data["created_at"]),
        expires_at=datetime.fromisoformat(data["expires_at"]),
    )


class RedisCache:
    """Redis holder for ephemeral tokens.

    A token record lives under ``auth:token:<value>``. Its Redis TTL runs past the
    logical expiry by ``retention_seconds`` so an expired token can still be read
    back and reported as expired instead of vanishing. A per-(kind, user) set
    indexes token values for bulk invalidation.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        retention_seconds: int = 7 * 24 * 3600,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.retention_seconds = retention_seconds
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime, retention_seconds: int) -> int:
        """Redis TTL for a record: time left until expiry plus retention, at least 1s."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        remaining = int((expires_at - datetime.now(timezone.utc)).total_seconds())
        return max(1, remaining + retention_seconds)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def put_token(self, record: EphemeralToken) -> None:
        ttl = self._ttl_seconds(record.expires_at, self.retention_seconds)
        index = _index_key(record.kind, record.user_id)
        pipe = self.client.pipeline()
        pipe.set(_token_key(record.token), _encode_token(record), ex=ttl)
        pipe.sadd(index, record.token)
        # Index outlives its longest member; members that expired are pruned on delete
        pipe.expire(index, ttl, gt=True)
        pipe.expire(index, ttl, nx=True)
        await pipe.execute()

    async def get_token(self, token: str) -> Optional[EphemeralToken]:
        return _decode_token(await self.client.get(_token_key(token)))

    async def delete_token(self, token: str) -> None:
        record = await self.get_token(token)
        pipe = self.client.pipeline()
        pipe.delete(_token_key(token))
        if record is not None:
            pipe.srem(_index_key(record.kind, record.user_id), token)
        await pipe.execute()

    async def delete_tokens_of_kind(self, kind: TokenKind, user_id: str) -> int:
        index = _index_key(kind, user_id)
        members = await self.client.smembers(index)
        pipe = self.client.pipeline()
        for token in members:
            pipe.delete(_token_key(token))
        pipe.delete(index)
        results = await pipe.execute()
        return int(sum(results[: len(members)]))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues when
    each test runs its own loop, but exposes the same awaitable methods as
    :class:`RedisCache`.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        retention_seconds: int = 7 * 24 * 3600,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.retention_seconds = retention_seconds
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def put_token(self, record: EphemeralToken) -> None:
        ttl = RedisCache._ttl_seconds(record.expires_at, self.retention_seconds)
        index = _index_key(record.kind, record.user_id)
        pipe = self.client.pipeline()
        pipe.set(_token_key(record.token), _encode_token(record), ex=ttl)
        pipe.sadd(index, record.token)
        pipe.expire(index, ttl, gt=True)
        pipe.expire(index, ttl, nx=True)
        pipe.execute()

    async def get_token(self, token: str) -> Optional[EphemeralToken]:
        return _decode_token(self.client.get(_token_key(token)))

    async def delete_token(self, token: str) -> None:
        record = _decode_token(self.client.get(_token_key(token)))
        pipe = self.client.pipeline()
        pipe.delete(_token_key(token))
        if record is not None:
            pipe.srem(_index_key(record.kind, record.user_id), token)
        pipe.execute()

    async def delete_tokens_of_kind(self, kind: TokenKind, user_id: str) -> int:
        index = _index_key(kind, user_id)
        members = self.client.smembers(index)
        pipe = self.client.pipeline()
        for token in members:
            pipe.delete(_token_key(token))
        pipe.delete(index)
        results = pipe.execute()
        return int(sum(results[: len(members)]))

    async def close(self) -> None:
        self.client.close()
