from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from tenantauth.config import OwnerBootstrap, Settings
from tenantauth.logging import email_fingerprint, get_logger
from tenantauth.service.crypto import PASSWORD_ALGO, decode_claims_unverified, hash_password
from tenantauth.service.email import EmailTemplate, EmailTrigger, first_name
from tenantauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    ServerError,
    TokenExpiredError,
    TokenNotFoundError,
    UserInactiveError,
    ValidationError,
)
from tenantauth.service.sessions import SessionCredential, SessionIssuer
from tenantauth.service.tokens import TokenStore
from tenantauth.service.validator import CredentialValidator, TokenGrant
from tenantauth.storage.errors import (
    UNIQUE_PLATFORM_OWNER,
    UNIQUE_TENANT_EMAIL,
    ConstraintViolation,
)
from tenantauth.storage.models import AuthPolicy, Tenant, TokenKind, User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_tenant(
        self,
        name: str,
        app_url: str,
        *,
        auth_policy: AuthPolicy = ...,
        access_token_ttl_minutes: int = ...,
        refresh_token_ttl_minutes: Optional[int] = ...,
        signup_enabled: bool = ...,
    ) -> Tenant: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_tenant_by_public_key(self, public_key: str) -> Optional[Tenant]: ...

    def create_user(
        self,
        email: str,
        *,
        tenant_id: Optional[str],
        full_name: Optional[str] = None,
        is_active: bool = True,
        email_confirmed: bool = False,
        is_platform_owner: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str, tenant_id: str) -> Optional[User]: ...

    def get_platform_owner(self) -> Optional[User]: ...

    def set_user_tenant(self, user_id: str, tenant_id: str) -> Optional[User]: ...

    def set_email_confirmed(self, user_id: str) -> Optional[User]: ...

    def record_sign_in(
        self, user_id: str, at: Optional[datetime] = None
    ) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...


@dataclass(frozen=True)
class TokenLifetimes:
    confirm_email: timedelta
    magic_login: timedelta
    reset_password: timedelta
    invite_user: timedelta
    welcome_delay: timedelta

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenLifetimes":
        return cls(
            confirm_email=timedelta(minutes=settings.confirm_email_ttl_minutes),
            magic_login=timedelta(minutes=settings.magic_login_ttl_minutes),
            reset_password=timedelta(minutes=settings.reset_password_ttl_minutes),
            invite_user=timedelta(minutes=settings.invite_user_ttl_minutes),
            welcome_delay=timedelta(minutes=settings.welcome_email_delay_minutes),
        )


@dataclass(frozen=True)
class EmailSent:
    """Acknowledgement that carries no information about the account."""

    status: str = "sent"


@dataclass
class OwnerSignup:
    user: User
    tenant: Tenant
    created: bool


@dataclass
class ConfirmEmailResult:
    user_id: str
    tenant_id: str
    followup_token_kind: Optional[TokenKind] = None
    followup_token: Optional[str] = None
    email: Optional[str] = None


# Token handed back after an invitation is accepted, by tenant policy
_ONBOARDING_KIND = {
    AuthPolicy.PASSWORD: TokenKind.RESET_PASSWORD,
    AuthPolicy.MAGIC_LINK: TokenKind.MAGIC_LOGIN,
}


class AuthFlows:
    """Signup, login, magic-link, reset, confirm/invite, refresh and logout.

    Tenant resolution happens before a flow runs; every flow receives the
    resolved :class:`Tenant` and re-checks that tokens it consumes belong to it.
    """

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenStore,
        issuer: SessionIssuer,
        validator: CredentialValidator,
        email: EmailTrigger,
        *,
        owner: OwnerBootstrap,
        lifetimes: TokenLifetimes,
        default_access_ttl_minutes: int = 30,
        default_refresh_ttl_minutes: Optional[int] = 60 * 24 * 7,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.issuer = issuer
        self.validator = validator
        self.email = email
        self.owner = owner
        self.lifetimes = lifetimes
        self.default_access_ttl_minutes = default_access_ttl_minutes
        self.default_refresh_ttl_minutes = default_refresh_ttl_minutes

    # -- tenant resolution -------------------------------------------------

    def resolve_tenant(self, public_key: Optional[str]) -> Tenant:
        tenant = self.store.get_tenant_by_public_key(public_key) if public_key else None
        if tenant is None:
            raise AuthenticationError("invalid public key")
        return tenant

    def tenant_for_session(self, session_token: str) -> Tenant:
        """Find the tenant whose key should verify a session token.

        The claims read here are unverified; the caller must still verify the
        token against the returned tenant.
        """
        claims = decode_claims_unverified(session_token) or {}
        tenant_id = claims.get("tid")
        tenant = self.store.get_tenant(str(tenant_id)) if tenant_id else None
        if tenant is None:
            raise AuthenticationError("invalid session")
        return tenant

    # -- helpers -----------------------------------------------------------

    def _payload(self, user: User, tenant: Tenant, token: Optional[str] = None) -> dict:
        payload = {
            "app_name": tenant.name,
            "app_url": tenant.app_url,
            "user_first_name": first_name(user.full_name),
        }
        if token is not None:
            payload["token"] = token
        return payload

    async def _send(
        self,
        template: EmailTemplate,
        user: User,
        tenant: Tenant,
        token: Optional[str] = None,
        *,
        synchronous: bool = True,
        scheduled_at: Optional[datetime] = None,
    ) -> bool:
        accepted = await self.email.send(
            template,
            user.email,
            self._payload(user, tenant, token),
            scheduled_at=scheduled_at,
            synchronous=synchronous,
        )
        if synchronous and scheduled_at is None and not accepted:
            logger.error(
                "email_not_accepted",
                template=template.value,
                user_id=user.id,
                tenant_id=tenant.id,
            )
            raise ServerError("failed to send email")
        return accepted

    async def _replace_token(
        self, kind: TokenKind, user: User, tenant: Tenant, ttl: timedelta
    ) -> str:
        await self.tokens.delete_all_of_kind(kind, user.id)
        return await self.tokens.create(kind, user.id, tenant.id, ttl)

    def _create_tenant_user(self, email: str, tenant: Tenant, **kwargs) -> User:
        try:
            return self.store.create_user(email, tenant_id=tenant.id, **kwargs)
        except ConstraintViolation as exc:
            if exc.constraint == UNIQUE_TENANT_EMAIL:
                raise ConflictError("email in use", detail={"field": "email"}) from exc
            raise

    def _set_password(self, user_id: str, password: str) -> None:
        self.store.save_password(user_id, hash_password(password), PASSWORD_ALGO)

    def _user_for_grant(self, grant: TokenGrant, tenant: Tenant) -> User:
        # A token from another tenant is reported exactly like an unknown one
        if grant.tenant_id != tenant.id:
            logger.warning(
                "token_tenant_mismatch",
                token_kind=grant.kind.value,
                tenant_id=tenant.id,
                token_tenant_id=grant.tenant_id,
            )
            raise TokenNotFoundError()
        user = self.store.get_user(grant.user_id)
        if user is None:
            raise TokenNotFoundError()
        return user

    async def _start_session(self, user: User, tenant: Tenant) -> SessionCredential:
        self.store.record_sign_in(user.id)
        return await self.issuer.create_session_pair(user, tenant)

    # -- owner bootstrap ---------------------------------------------------

    async def signup_owner(self, staff_api_key: Optional[str], password: str) -> OwnerSignup:
        """Create the platform owner and its tenant, or return the existing pair."""
        expected = self.owner.staff_api_key
        if not expected or not staff_api_key or not hmac.compare_digest(
            staff_api_key.encode(), expected.encode()
        ):
            logger.warning("owner_signup_rejected")
            raise AuthenticationError("invalid staff api key")
        if not password:
            raise ValidationError("password is required", detail={"field": "password"})

        existing = self.store.get_platform_owner()
        if existing is not None and existing.tenant_id:
            tenant = self.store.get_tenant(existing.tenant_id)
            if tenant is not None:
                logger.info("owner_signup_existing", user_id=existing.id)
                return OwnerSignup(user=existing, tenant=tenant, created=False)

        if existing is None:
            try:
                existing = self.store.create_user(
                    self.owner.email,
                    tenant_id=None,
                    full_name=self.owner.full_name,
                    is_active=True,
                    email_confirmed=True,
                    is_platform_owner=True,
                )
            except ConstraintViolation as exc:
                if exc.constraint != UNIQUE_PLATFORM_OWNER:
                    raise
                # Lost a concurrent bootstrap; the winner provisions the tenant
                owner = self.store.get_platform_owner()
                tenant = self.store.get_tenant(owner.tenant_id) if owner and owner.tenant_id else None
                if owner is None or tenant is None:
                    raise ServerError("owner bootstrap in progress") from exc
                return OwnerSignup(user=owner, tenant=tenant, created=False)

        tenant = self.store.create_tenant(
            self.owner.app_name,
            self.owner.app_url,
            auth_policy=AuthPolicy.PASSWORD,
            access_token_ttl_minutes=self.default_access_ttl_minutes,
            refresh_token_ttl_minutes=self.default_refresh_ttl_minutes,
        )
        user = self.store.set_user_tenant(existing.id, tenant.id) or existing
        self._set_password(user.id, password)
        logger.info("owner_signed_up", user_id=user.id, tenant_id=tenant.id)
        return OwnerSignup(user=user, tenant=tenant, created=True)

    # -- signup / login ----------------------------------------------------

    async def signup(
        self,
        tenant: Tenant,
        email: str,
        password: Optional[str] = None,
        full_name: Optional[str] = None,
    ) -> SessionCredential | EmailSent:
        if not tenant.signup_enabled:
            raise ForbiddenError("sign up is disabled for this environment")
        if tenant.auth_policy == AuthPolicy.PASSWORD and not password:
            raise ValidationError("password is required", detail={"field": "password"})
        if self.store.get_user_by_email(email, tenant.id) is not None:
            raise ConflictError("email in use", detail={"field": "email"})

        user = self._create_tenant_user(
            email, tenant, full_name=full_name, is_active=True, email_confirmed=False
        )
        logger.info(
            "user_signed_up",
            user_id=user.id,
            tenant_id=tenant.id,
            with_password=bool(password),
        )

        welcome_at = datetime.now(timezone.utc) + self.lifetimes.welcome_delay
        if password:
            self._set_password(user.id, password)
            token = await self.tokens.create(
                TokenKind.CONFIRM_EMAIL, user.id, tenant.id, self.lifetimes.confirm_email
            )
            await self._send(
                EmailTemplate.CONFIRM_EMAIL, user, tenant, token, synchronous=False
            )
            await self._send(
                EmailTemplate.WELCOME, user, tenant, scheduled_at=welcome_at
            )
            return await self._start_session(user, tenant)

        token = await self.tokens.create(
            TokenKind.MAGIC_LOGIN, user.id, tenant.id, self.lifetimes.magic_login
        )
        await self._send(EmailTemplate.MAGIC_LINK, user, tenant, token)
        await self._send(EmailTemplate.WELCOME, user, tenant, scheduled_at=welcome_at)
        return EmailSent()

    async def login(
        self, tenant: Tenant, email: str, password: Optional[str] = None
    ) -> SessionCredential | EmailSent:
        if tenant.auth_policy == AuthPolicy.PASSWORD:
            if not password:
                raise ValidationError(
                    "password is required", detail={"field": "password"}
                )
            return await self.validator.authenticate_with_password(
                email, password, tenant
            )
        if tenant.auth_policy == AuthPolicy.MAGIC_LINK:
            return await self._send_magic_link(tenant, email)
        logger.error(
            "unsupported_auth_policy", tenant_id=tenant.id, policy=str(tenant.auth_policy)
        )
        raise ServerError("environment has no supported auth policy")

    async def _send_magic_link(self, tenant: Tenant, email: str) -> EmailSent:
        user = self.store.get_user_by_email(email, tenant.id)
        if user is None:
            if not tenant.signup_enabled:
                logger.info(
                    "magic_link_unknown_user",
                    tenant_id=tenant.id,
                    email_hash=email_fingerprint(email),
                )
                return EmailSent()
            try:
                user = self._create_tenant_user(email, tenant, is_active=True)
            except ConflictError:
                user = self.store.get_user_by_email(email, tenant.id)
                if user is None:
                    raise
            else:
                logger.info("user_signed_up", user_id=user.id, tenant_id=tenant.id)
        if not user.is_active:
            logger.info("magic_link_inactive_user", user_id=user.id, tenant_id=tenant.id)
            return EmailSent()
        token = await self._replace_token(
            TokenKind.MAGIC_LOGIN, user, tenant, self.lifetimes.magic_login
        )
        await self._send(EmailTemplate.MAGIC_LINK, user, tenant, token)
        logger.info("magic_link_sent", user_id=user.id, tenant_id=tenant.id)
        return EmailSent()

    async def authenticate_from_magic_link(
        self, token: str, tenant: Tenant
    ) -> SessionCredential:
        grant = await self.validator.validate_and_consume_token(
            token, TokenKind.MAGIC_LOGIN
        )
        user = self._user_for_grant(grant, tenant)
        # Receiving the link proves the address
        self.store.set_email_confirmed(user.id)
        await self.validator.commit(token)
        logger.info("magic_link_consumed", user_id=user.id, tenant_id=tenant.id)
        return await self._start_session(user, tenant)

    # -- sessions ----------------------------------------------------------

    def _principal_active(self, tenant: Tenant):
        def check(user_id: str) -> bool:
            user = self.store.get_user(user_id)
            return user is not None and user.is_active and user.tenant_id == tenant.id

        return check

    async def refresh(self, refresh_token: str, tenant: Tenant) -> SessionCredential:
        return await self.issuer.rotate_refresh(
            refresh_token, tenant, principal_active=self._principal_active(tenant)
        )

    async def logout(self, access_token: str, tenant: Tenant) -> None:
        claims = self.issuer.verify_access(access_token, tenant)
        await self.issuer.revoke(claims.user_id, tenant.id)
        logger.info("user_logged_out", user_id=claims.user_id, tenant_id=tenant.id)

    # -- password reset ----------------------------------------------------

    async def request_reset_password(self, tenant: Tenant, email: str) -> EmailSent:
        """Email a reset link when the account exists and is active.

        The acknowledgement is identical either way and the email is queued
        rather than awaited, so neither the body nor the latency reveals
        whether the address is registered.
        """
        user = self.store.get_user_by_email(email, tenant.id)
        if user is None or not user.is_active:
            logger.info(
                "reset_password_request_ignored",
                tenant_id=tenant.id,
                email_hash=email_fingerprint(email),
            )
            return EmailSent()
        token = await self._replace_token(
            TokenKind.RESET_PASSWORD, user, tenant, self.lifetimes.reset_password
        )
        await self._send(
            EmailTemplate.FORGOT_PASSWORD, user, tenant, token, synchronous=False
        )
        logger.info("reset_password_requested", user_id=user.id, tenant_id=tenant.id)
        return EmailSent()

    async def _reset_target(self, token: str, tenant: Tenant) -> User:
        grant = await self.validator.peek(token, TokenKind.RESET_PASSWORD)
        user = self._user_for_grant(grant, tenant)
        if not user.is_active:
            raise UserInactiveError()
        return user

    async def validate_reset_password(self, token: str, tenant: Tenant) -> None:
        """Pre-check a reset link before the new-password form is shown."""
        await self._reset_target(token, tenant)

    async def update_password(
        self, token: str, new_password: str, tenant: Tenant
    ) -> None:
        if not new_password:
            raise ValidationError("password is required", detail={"field": "password"})
        user = await self._reset_target(token, tenant)
        try:
            self._set_password(user.id, new_password)
        finally:
            await self.validator.commit(token)
        await self.issuer.revoke(user.id, tenant.id)
        logger.info("password_updated", user_id=user.id, tenant_id=tenant.id)

    # -- confirm email / invitations ---------------------------------------

    async def confirm_email(self, token: str, tenant: Tenant) -> ConfirmEmailResult:
        try:
            grant = await self.validator.validate_and_consume_token(
                token, TokenKind.CONFIRM_EMAIL
            )
        except TokenNotFoundError:
            grant = await self.validator.validate_and_consume_token(
                token, TokenKind.INVITE_USER
            )
        except TokenExpiredError as exc:
            await self._resend_confirmation(token, exc, tenant)
            raise

        user = self._user_for_grant(grant, tenant)
        onboarding = grant.kind == TokenKind.INVITE_USER and not user.has_signed_in
        followup_kind = self._onboarding_kind(tenant) if onboarding else None

        try:
            self.store.set_email_confirmed(user.id)
        finally:
            await self.validator.commit(token)
        logger.info(
            "email_confirmed",
            user_id=user.id,
            tenant_id=tenant.id,
            token_kind=grant.kind.value,
        )

        result = ConfirmEmailResult(user_id=user.id, tenant_id=tenant.id)
        if followup_kind is not None:
            ttl = (
                self.lifetimes.reset_password
                if followup_kind == TokenKind.RESET_PASSWORD
                else self.lifetimes.magic_login
            )
            result.followup_token = await self._replace_token(
                followup_kind, user, tenant, ttl
            )
            result.followup_token_kind = followup_kind
            result.email = user.email
            logger.info(
                "invite_onboarding_token_issued",
                user_id=user.id,
                tenant_id=tenant.id,
                token_kind=followup_kind.value,
            )
        return result

    def _onboarding_kind(self, tenant: Tenant) -> TokenKind:
        try:
            return _ONBOARDING_KIND[AuthPolicy(tenant.auth_policy)]
        except (KeyError, ValueError):
            logger.error(
                "unsupported_auth_policy",
                tenant_id=tenant.id,
                policy=str(tenant.auth_policy),
            )
            raise ServerError("environment has no supported auth policy")

    async def _resend_confirmation(
        self, token: str, expired: TokenExpiredError, tenant: Tenant
    ) -> None:
        """Replace an expired confirmation token and email the new one.

        Marks ``expired`` as retryable once the new email is accepted. Leaves it
        untouched when the record no longer resolves to a user of this tenant.
        """
        if expired.tenant_id != tenant.id:
            raise TokenNotFoundError()
        user = self.store.get_user(expired.user_id) if expired.user_id else None
        if user is None:
            return
        fresh = await self._replace_token(
            TokenKind.CONFIRM_EMAIL, user, tenant, self.lifetimes.confirm_email
        )
        # The stale value is gone with the kind sweep; delete is idempotent
        await self.tokens.delete(token)
        await self._send(EmailTemplate.CONFIRM_EMAIL, user, tenant, fresh)
        expired.retry = True
        expired.detail["retry"] = True
        expired.message = "token expired, a new confirmation email has been sent"
        logger.info("confirmation_resent", user_id=user.id, tenant_id=tenant.id)

    async def invite_user(
        self,
        tenant: Tenant,
        inviter_access_token: str,
        email: str,
        full_name: Optional[str] = None,
    ) -> User:
        claims = self.issuer.verify_access(inviter_access_token, tenant)
        inviter = self.store.get_user(claims.user_id)
        if inviter is None or inviter.tenant_id != tenant.id:
            raise AuthenticationError("invalid session")
        if not inviter.is_active:
            raise UserInactiveError()
        if self.store.get_user_by_email(email, tenant.id) is not None:
            raise ConflictError("email in use", detail={"field": "email"})

        user = self._create_tenant_user(
            email, tenant, full_name=full_name, is_active=False, email_confirmed=False
        )
        token = await self._replace_token(
            TokenKind.INVITE_USER, user, tenant, self.lifetimes.invite_user
        )
        await self._send(EmailTemplate.INVITE_USER, user, tenant, token)
        logger.info(
            "user_invited",
            user_id=user.id,
            tenant_id=tenant.id,
            invited_by=inviter.id,
        )
        return user
