from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tenantauth.logging import get_logger
from tenantauth.storage.errors import (
    MISSING_USER,
    UNIQUE_PLATFORM_OWNER,
    UNIQUE_TENANT_EMAIL,
    UNIQUE_TENANT_PUBLIC_KEY,
    ConstraintViolation,
)
from tenantauth.storage.memory import generate_tenant_keys
from tenantauth.storage.models import (
    AuthPolicy,
    EphemeralToken,
    Tenant,
    TokenKind,
    User,
    new_id,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS environment (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        app_url TEXT NOT NULL,
        public_key TEXT NOT NULL CONSTRAINT environment_public_key_key UNIQUE,
        secret_key TEXT NOT NULL,
        auth_policy TEXT NOT NULL DEFAULT 'password',
        access_token_ttl_minutes INTEGER NOT NULL DEFAULT 30,
        refresh_token_ttl_minutes INTEGER,
        signup_enabled BOOLEAN NOT NULL DEFAULT true,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        full_name TEXT,
        tenant_id TEXT REFERENCES environment(id) ON DELETE CASCADE,
        is_active BOOLEAN NOT NULL DEFAULT true,
        email_confirmed BOOLEAN NOT NULL DEFAULT false,
        last_sign_in_at TIMESTAMPTZ,
        is_platform_owner BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT app_user_tenant_email_key UNIQUE (tenant_id, email)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS app_user_platform_owner_key
        ON app_user ((is_platform_owner)) WHERE is_platform_owner
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ephemeral_token (
        token TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        tenant_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ephemeral_token_user_kind_idx
        ON ephemeral_token (user_id, kind)
    """,
)

_UNIQUE_CONSTRAINT_MESSAGES = {
    UNIQUE_TENANT_EMAIL: ("email already exists", {"field": "email"}),
    UNIQUE_PLATFORM_OWNER: (
        "platform owner already exists",
        {"field": "is_platform_owner"},
    ),
    UNIQUE_TENANT_PUBLIC_KEY: ("public key already exists", {"field": "public_key"}),
}


def _unique_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    name = getattr(exc.diag, "constraint_name", None)
    message, detail = _UNIQUE_CONSTRAINT_MESSAGES.get(
        name, ("unique constraint violated", {"constraint": name})
    )
    return ConstraintViolation(message, detail, constraint=name)


class PostgresStore:
    """Postgres-backed tenant, user and ephemeral token store.

    Every operation is a single statement in its own transaction, so token reads
    and deletes run under the server's default read-committed isolation.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        """Create the auth tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        required_tables = [
            "environment",
            "app_user",
            "user_auth_credential",
            "ephemeral_token",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _tenant_from_row(row: dict[str, Any]) -> Tenant:
        return Tenant(
            id=str(row["id"]),
            name=row["name"],
            app_url=row["app_url"],
            public_key=row["public_key"],
            secret_key=row["secret_key"],
            auth_policy=AuthPolicy(row.get("auth_policy") or AuthPolicy.PASSWORD.value),
            access_token_ttl_minutes=int(row.get("access_token_ttl_minutes") or 30),
            refresh_token_ttl_minutes=row.get("refresh_token_ttl_minutes"),
            signup_enabled=bool(row.get("signup_enabled", True)),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _user_from_row(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            full_name=row.get("full_name"),
            tenant_id=row.get("tenant_id"),
            is_active=bool(row.get("is_active", True)),
            email_confirmed=bool(row.get("email_confirmed", False)),
            last_sign_in_at=row.get("last_sign_in_at"),
            is_platform_owner=bool(row.get("is_platform_owner", False)),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _token_from_row(row: dict[str, Any]) -> EphemeralToken:
        return EphemeralToken(
            token=row["token"],
            kind=TokenKind(row["kind"]),
            user_id=str(row["user_id"]),
            tenant_id=str(row["tenant_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO environment (
                        id, name, app_url, public_key, secret_key, auth_policy,
                        access_token_ttl_minutes, refresh_token_ttl_minutes, signup_enabled
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        name,
                        app_url,
                        public_key,
                        secret_key,
                        AuthPolicy(auth_policy).value,
                        access_token_ttl_minutes,
                        refresh_token_ttl_minutes,
                        signup_enabled,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        return self._tenant_from_row(row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM environment WHERE id = %s", (tenant_id,)
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    def get_tenant_by_public_key(self, public_key: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM environment WHERE public_key = %s", (public_key,)
            ).fetchone()
        return self._tenant_from_row(row) if row else None

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (
                        id, email, full_name, tenant_id, is_active, email_confirmed, is_platform_owner
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        email.strip().lower(),
                        full_name,
                        tenant_id,
                        is_active,
                        email_confirmed,
                        is_platform_owner,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str, tenant_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s AND tenant_id = %s",
                (email.strip().lower(), tenant_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_platform_owner(self) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE is_platform_owner LIMIT 1"
            ).fetchone()
        return self._user_from_row(row) if row else None

    def _update_user(self, sql: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_tenant(self, user_id: str, tenant_id: str) -> Optional[User]:
        return self._update_user(
            "UPDATE app_user SET tenant_id = %s, updated_at = now() WHERE id = %s RETURNING *",
            (tenant_id, user_id),
        )

    def set_email_confirmed(self, user_id: str) -> Optional[User]:
        return self._update_user(
            """
            UPDATE app_user
            SET email_confirmed = true, is_active = true, updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (user_id,),
        )

    def record_sign_in(
        self, user_id: str, at: Optional[datetime] = None
    ) -> Optional[User]:
        return self._update_user(
            "UPDATE app_user SET last_sign_in_at = %s, updated_at = now() WHERE id = %s RETURNING *",
            (at or utcnow(), user_id),
        )

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found for credentials",
                {"user_id": user_id},
                constraint=MISSING_USER,
            ) from exc

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # -- ephemeral tokens --------------------------------------------------

    def insert_token(self, record: EphemeralToken) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO ephemeral_token (token, kind, user_id, tenant_id, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.token,
                        record.kind.value,
                        record.user_id,
                        record.tenant_id,
                        record.created_at,
                        record.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user does not exist",
                {"user_id": record.user_id},
                constraint=MISSING_USER,
            ) from exc

    def get_token(self, token: str) -> Optional[EphemeralToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM ephemeral_token WHERE token = %s", (token,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def delete_token(self, token: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM ephemeral_token WHERE token = %s", (token,))

    def delete_tokens_of_kind(self, kind: TokenKind, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM ephemeral_token WHERE kind = %s AND user_id = %s",
                (kind.value, user_id),
            )
            return cur.rowcount or 0

    def list_tokens(
        self, user_id: str, kind: Optional[TokenKind] = None
    ) -> list[EphemeralToken]:
        with self._connect() as conn:
            if kind is None:
                rows = conn.execute(
                    "SELECT * FROM ephemeral_token WHERE user_id = %s ORDER BY created_at",
                    (user_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM ephemeral_token WHERE user_id = %s AND kind = %s ORDER BY created_at",
                    (user_id, kind.value),
                ).fetchall()
        return [self._token_from_row(row) for row in rows]
