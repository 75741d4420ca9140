from __future__ import annotations

import json
import secrets
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from tenantauth.logging import get_logger
from tenantauth.storage.errors import (
    MISSING_USER,
    UNIQUE_PLATFORM_OWNER,
    UNIQUE_TENANT_EMAIL,
    ConstraintViolation,
)
from tenantauth.storage.models import (
    AuthPolicy,
    EphemeralToken,
    Tenant,
    TokenKind,
    User,
    new_id,
    utcnow,
)


def generate_tenant_keys() -> tuple[str, str]:
    """Return a (public_key, secret_key) pair for a new tenant."""
    return f"pk_{secrets.token_urlsafe(24)}", secrets.token_urlsafe(48)


class MemoryStore:
    """In-process backing store for tests and single-node development.

    Holds tenants, users, password credentials and ephemeral tokens behind one
    re-entrant lock. When ``fs_root`` is given the state is mirrored to
    ``<fs_root>/state/memory_store.json`` after every write and reloaded on start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.tokens: Dict[str, EphemeralToken] = {}
        # RLock so helpers can re-acquire while a public method holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # -- tenants -----------------------------------------------------------

    def create_tenant(
        self,
        name: str,
        app_url: str,
        *,
        auth_policy: AuthPolicy = AuthPolicy.PASSWORD,
        access_token_ttl_minutes: int = 30,
        refresh_token_ttl_minutes: Optional[int] = 60 * 24 * 7,
        signup_enabled: bool = True,
    ) -> Tenant:
        public_key, secret_key = generate_tenant_keys()
        tenant = Tenant(
            id=new_id(),
            name=name,
            app_url=app_url,
            public_key=public_key,
            secret_key=secret_key,
            auth_policy=AuthPolicy(auth_policy),
            access_token_ttl_minutes=access_token_ttl_minutes,
            refresh_token_ttl_minutes=refresh_token_ttl_minutes,
            signup_enabled=signup_enabled,
        )
        with self._data_lock:
            self.tenants[tenant.id] = tenant
            self._persist_state()
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def get_tenant_by_public_key(self, public_key: str) -> Optional[Tenant]:
        with self._data_lock:
            return next(
                (t for t in self.tenants.values() if t.public_key == public_key),
                None,
            )

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        tenant_id: Optional[str],
        full_name: Optional[str] = None,
        is_active: bool = True,
        email_confirmed: bool = False,
        is_platform_owner: bool = False,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if is_platform_owner and any(
                u.is_platform_owner for u in self.users.values()
            ):
                raise ConstraintViolation(
                    "platform owner already exists",
                    {"field": "is_platform_owner"},
                    constraint=UNIQUE_PLATFORM_OWNER,
                )
            if tenant_id is not None and any(
                u.email == normalized and u.tenant_id == tenant_id
                for u in self.users.values()
            ):
                raise ConstraintViolation(
                    "email already exists",
                    {"field": "email"},
                    constraint=UNIQUE_TENANT_EMAIL,
                )
            user = User(
                id=new_id(),
                email=normalized,
                full_name=full_name,
                tenant_id=tenant_id,
                is_active=is_active,
                email_confirmed=email_confirmed,
                is_platform_owner=is_platform_owner,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str, tenant_id: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.email == normalized and u.tenant_id == tenant_id
                ),
                None,
            )

    def get_platform_owner(self) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.is_platform_owner), None)

    def set_user_tenant(self, user_id: str, tenant_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.tenant_id = tenant_id
            self._persist_state()
            return user

    def set_email_confirmed(self, user_id: str) -> Optional[User]:
        """Mark the email confirmed and activate the account."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_confirmed = True
            user.is_active = True
            self._persist_state()
            return user

    def record_sign_in(
        self, user_id: str, at: Optional[datetime] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.last_sign_in_at = at or utcnow()
            self._persist_state()
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials",
                    {"user_id": user_id},
                    constraint=MISSING_USER,
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- ephemeral tokens --------------------------------------------------

    def insert_token(self, record: EphemeralToken) -> None:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist",
                    {"user_id": record.user_id},
                    constraint=MISSING_USER,
                )
            self.tokens[record.token] = record
            self._persist_state()

    def get_token(self, token: str) -> Optional[EphemeralToken]:
        with self._data_lock:
            return self.tokens.get(token)

    def delete_token(self, token: str) -> None:
        with self._data_lock:
            if self.tokens.pop(token, None) is not None:
                self._persist_state()

    def delete_tokens_of_kind(self, kind: TokenKind, user_id: str) -> int:
        with self._data_lock:
            stale = [
                value
                for value, record in self.tokens.items()
                if record.kind == kind and record.user_id == user_id
            ]
            for value in stale:
                self.tokens.pop(value, None)
            if stale:
                self._persist_state()
            return len(stale)

    def list_tokens(
        self, user_id: str, kind: Optional[TokenKind] = None
    ) -> List[EphemeralToken]:
        with self._data_lock:
            return [
                record
                for record in self.tokens.values()
                if record.user_id == user_id and (kind is None or record.kind == kind)
            ]

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "tenants": [self._serialize_tenant(t) for t in self.tenants.values()],
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.tenants = {
            t["id"]: self._deserialize_tenant(t) for t in data.get("tenants", [])
        }
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.tokens = {
            t["token"]: self._deserialize_token(t) for t in data.get("tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            tenants=len(self.tenants),
            users=len(self.users),
            tokens=len(self.tokens),
        )
        return True

    def _serialize_tenant(self, tenant: Tenant) -> dict:
        return {
            "id": tenant.id,
            "name": tenant.name,
            "app_url": tenant.app_url,
            "public_key": tenant.public_key,
            "secret_key": tenant.secret_key,
            "auth_policy": tenant.auth_policy.value,
            "access_token_ttl_minutes": tenant.access_token_ttl_minutes,
            "refresh_token_ttl_minutes": tenant.refresh_token_ttl_minutes,
            "signup_enabled": tenant.signup_enabled,
            "created_at": self._serialize_datetime(tenant.created_at),
        }

    def _deserialize_tenant(self, data: dict) -> Tenant:
        return Tenant(
            id=data["id"],
            name=data["name"],
            app_url=data["app_url"],
            public_key=data["public_key"],
            secret_key=data["secret_key"],
            auth_policy=AuthPolicy(data.get("auth_policy", AuthPolicy.PASSWORD.value)),
            access_token_ttl_minutes=int(data.get("access_token_ttl_minutes", 30)),
            refresh_token_ttl_minutes=data.get("refresh_token_ttl_minutes"),
            signup_enabled=data.get("signup_enabled", True),
            created_at=self._deserialize_datetime(data["created_at"]) or utcnow(),
        )

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "full_name": user.full_name,
            "tenant_id": user.tenant_id,
            "is_active": user.is_active,
            "email_confirmed": user.email_confirmed,
            "last_sign_in_at": self._serialize_datetime(user.last_sign_in_at),
            "is_platform_owner": user.is_platform_owner,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            full_name=data.get("full_name"),
            tenant_id=data.get("tenant_id"),
            is_active=data.get("is_active", True),
            email_confirmed=data.get("email_confirmed", False),
            last_sign_in_at=self._deserialize_datetime(data.get("last_sign_in_at")),
            is_platform_owner=data.get("is_platform_owner", False),
            created_at=self._deserialize_datetime(data["created_at"]) or utcnow(),
        )

    def _serialize_token(self, record: EphemeralToken) -> dict:
        return {
            "token": record.token,
            "kind": record.kind.value,
            "user_id": record.user_id,
            "tenant_id": record.tenant_id,
            "created_at": self._serialize_datetime(record.created_at),
            "expires_at": self._serialize_datetime(record.expires_at),
        }

    def _deserialize_token(self, data: dict) -> EphemeralToken:
        return EphemeralToken(
            token=data["token"],
            kind=TokenKind(data["kind"]),
            user_id=data["user_id"],
            tenant_id=data["tenant_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )
