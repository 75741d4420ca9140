from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthPolicy(str, Enum):
    """How a tenant's users prove who they are."""

    PASSWORD = "password"
    MAGIC_LINK = "magic-link"


class TokenKind(str, Enum):
    CONFIRM_EMAIL = "confirm-email"
    MAGIC_LOGIN = "magic-login"
    RESET_PASSWORD = "reset-password"
    INVITE_USER = "invite-user"
    # Only written when refresh tokens are tracked for revocation
    REFRESH_SESSION = "refresh-session"


@dataclass
class Tenant:
    """Isolation boundary for users, tokens and sessions (an "environment")."""

    id: str
    name: str
    app_url: str
    public_key: str
    secret_key: str
    auth_policy: AuthPolicy = AuthPolicy.PASSWORD
    access_token_ttl_minutes: int = 30
    # None disables refresh tokens for the tenant
    refresh_token_ttl_minutes: Optional[int] = 60 * 24 * 7
    signup_enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)

    @property
    def refresh_enabled(self) -> bool:
        return self.refresh_token_ttl_minutes is not None


@dataclass
class User:
    id: str
    email: str
    full_name: Optional[str] = None
    # None only for the platform owner before its tenant is provisioned
    tenant_id: Optional[str] = None
    is_active: bool = True
    email_confirmed: bool = False
    last_sign_in_at: Optional[datetime] = None
    is_platform_owner: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @property
    def has_signed_in(self) -> bool:
        return self.last_sign_in_at is not None


@dataclass
class EphemeralToken:
    """Single-use, time-boxed grant tied to one user, tenant and purpose."""

    token: str
    kind: TokenKind
    user_id: str
    tenant_id: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(
        cls,
        token: str,
        kind: TokenKind,
        user_id: str,
        tenant_id: str,
        ttl: timedelta,
    ) -> "EphemeralToken":
        now = utcnow()
        return cls(
            token=token,
            kind=kind,
            user_id=user_id,
            tenant_id=tenant_id,
            created_at=now,
            expires_at=now + ttl,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at


def new_id() -> str:
    return str(uuid.uuid4())
