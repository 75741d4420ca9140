from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Path

from tenantauth.api.schemas import (
    MAX_TOKEN_LENGTH,
    AckResponse,
    ConfirmEmailResponse,
    Envelope,
    InviteRequest,
    InviteResponse,
    LoginRequest,
    OwnerSignupRequest,
    OwnerSignupResponse,
    PasswordResetRequest,
    PasswordUpdateRequest,
    SessionResponse,
    SignupRequest,
    TenantResponse,
    TokenRefreshRequest,
    UserResponse,
)
from tenantauth.service.errors import AuthenticationError
from tenantauth.service.flows import EmailSent
from tenantauth.service.runtime import get_runtime
from tenantauth.service.sessions import SessionCredential
from tenantauth.storage.models import Tenant, User


router = APIRouter(prefix="/auth")

TokenPath = Annotated[str, Path(min_length=1, max_length=MAX_TOKEN_LENGTH)]


async def get_tenant(
    x_public_key: Optional[str] = Header(
        None, convert_underscores=False, alias="X-Public-Key"
    ),
) -> Tenant:
    """Resolve the calling application's tenant from its public key."""
    return get_runtime().flows.resolve_tenant(x_public_key)


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("missing bearer token")
    return token.strip()


def _session_response(credential: SessionCredential) -> SessionResponse:
    return SessionResponse(
        user_id=credential.user_id,
        tenant_id=credential.tenant_id,
        access_token=credential.access_token,
        access_expires_at=credential.access_expires_at,
        refresh_token=credential.refresh_token,
        refresh_expires_at=credential.refresh_expires_at,
        token_type=credential.token_type,
    )


def _session_or_ack(result: SessionCredential | EmailSent) -> dict:
    if isinstance(result, EmailSent):
        return AckResponse(status=result.status).model_dump()
    return _session_response(result).model_dump()


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        tenant_id=user.tenant_id,
        is_active=user.is_active,
        email_confirmed=user.email_confirmed,
        last_sign_in_at=user.last_sign_in_at,
    )


def _tenant_response(tenant: Tenant) -> TenantResponse:
    return TenantResponse(
        id=tenant.id,
        name=tenant.name,
        app_url=tenant.app_url,
        public_key=tenant.public_key,
        auth_policy=tenant.auth_policy.value,
        access_token_ttl_minutes=tenant.access_token_ttl_minutes,
        refresh_token_ttl_minutes=tenant.refresh_token_ttl_minutes,
        signup_enabled=tenant.signup_enabled,
    )


@router.post("/signup/owner", response_model=Envelope, status_code=201, tags=["auth"])
async def signup_owner(
    body: OwnerSignupRequest,
    x_staff_api_key: Optional[str] = Header(
        None, convert_underscores=False, alias="X-Staff-Api-Key"
    ),
):
    """Bootstrap the platform owner and its environment.

    Idempotent: once the owner exists the existing pair is returned.

    Raises:
        401: If the staff key is missing or wrong
    """
    outcome = await get_runtime().flows.signup_owner(x_staff_api_key, body.password)
    data = OwnerSignupResponse(
        user=_user_response(outcome.user),
        tenant=_tenant_response(outcome.tenant),
        created=outcome.created,
    )
    return Envelope(status="ok", data=data.model_dump())


@router.post("/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, tenant: Tenant = Depends(get_tenant)):
    """Create a user in the calling environment.

    Password signups receive a session immediately; magic-link signups receive
    an acknowledgement and a sign-in link by email.

    Raises:
        403: If the environment has sign up disabled
        409: If the email is already registered in the environment
    """
    result = await get_runtime().flows.signup(
        tenant, body.email, password=body.password, full_name=body.full_name
    )
    return Envelope(status="ok", data=_session_or_ack(result))


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, tenant: Tenant = Depends(get_tenant)):
    """Sign in by password or request a magic link, per environment policy.

    Raises:
        401: If credentials are invalid
        403: If the user is inactive
    """
    result = await get_runtime().flows.login(tenant, body.email, body.password)
    return Envelope(status="ok", data=_session_or_ack(result))


async def _consume_magic_link(token: str, tenant: Tenant) -> Envelope:
    credential = await get_runtime().flows.authenticate_from_magic_link(token, tenant)
    return Envelope(status="ok", data=_session_response(credential).model_dump())


@router.get("/magic/{token}", response_model=Envelope, tags=["auth"])
async def magic_link_get(token: TokenPath, tenant: Tenant = Depends(get_tenant)):
    return await _consume_magic_link(token, tenant)


@router.post("/magic/{token}", response_model=Envelope, tags=["auth"])
async def magic_link_post(
    token: TokenPath, tenant: Tenant = Depends(get_tenant)
):
    return await _consume_magic_link(token, tenant)


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    body: TokenRefreshRequest,
    x_public_key: Optional[str] = Header(
        None, convert_underscores=False, alias="X-Public-Key"
    ),
):
    """Rotate a refresh token into a new session pair.

    The environment comes from X-Public-Key when sent, otherwise from the
    token's own tenant claim; either way the signature is checked with that
    environment's key.
    """
    flows = get_runtime().flows
    tenant = (
        flows.resolve_tenant(x_public_key)
        if x_public_key
        else flows.tenant_for_session(body.refresh_token)
    )
    credential = await flows.refresh(body.refresh_token, tenant)
    return Envelope(status="ok", data=_session_response(credential).model_dump())


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(
    authorization: Optional[str] = Header(None),
    x_public_key: Optional[str] = Header(
        None, convert_underscores=False, alias="X-Public-Key"
    ),
):
    flows = get_runtime().flows
    token = _bearer_token(authorization)
    tenant = (
        flows.resolve_tenant(x_public_key)
        if x_public_key
        else flows.tenant_for_session(token)
    )
    await flows.logout(token, tenant)
    return Envelope(status="ok", data=AckResponse().model_dump())


@router.post("/reset-password", response_model=Envelope, tags=["auth"])
async def request_password_reset(
    body: PasswordResetRequest, tenant: Tenant = Depends(get_tenant)
):
    """Email a password reset link.

    Always acknowledges, whether or not the address belongs to an account.
    """
    result = await get_runtime().flows.request_reset_password(tenant, body.email)
    return Envelope(status="ok", data=AckResponse(status=result.status).model_dump())


@router.get("/reset-password/{token}", response_model=Envelope, tags=["auth"])
async def validate_password_reset(
    token: TokenPath, tenant: Tenant = Depends(get_tenant)
):
    """Check a reset link before showing the new-password form.

    Raises:
        404: If the token is unknown or already used
        410: If the token has expired
    """
    await get_runtime().flows.validate_reset_password(token, tenant)
    return Envelope(status="ok", data=AckResponse(status="valid").model_dump())


@router.patch("/reset-password/{token}", response_model=Envelope, tags=["auth"])
async def update_password(
    body: PasswordUpdateRequest,
    token: TokenPath,
    tenant: Tenant = Depends(get_tenant),
):
    await get_runtime().flows.update_password(token, body.password, tenant)
    return Envelope(status="ok", data=AckResponse(status="updated").model_dump())


@router.get("/confirm-email/{token}", response_model=Envelope, tags=["auth"])
async def confirm_email(token: TokenPath, tenant: Tenant = Depends(get_tenant)):
    """Confirm an email address or accept an invitation.

    An accepted invitation for a user who has never signed in returns a
    follow-up token (reset-password or magic-login) to continue onboarding.

    Raises:
        404: If the token is unknown or already used
        410: If the token has expired; ``details.retry`` is true when a new
            confirmation email was sent
    """
    result = await get_runtime().flows.confirm_email(token, tenant)
    data = ConfirmEmailResponse(
        followup_token_kind=(
            result.followup_token_kind.value if result.followup_token_kind else None
        ),
        followup_token=result.followup_token,
        email=result.email,
    )
    return Envelope(status="ok", data=data.model_dump(exclude_none=True))


@router.post("/invite", response_model=Envelope, status_code=201, tags=["auth"])
async def invite_user(
    body: InviteRequest,
    tenant: Tenant = Depends(get_tenant),
    authorization: Optional[str] = Header(None),
):
    """Invite a user into the caller's environment.

    Raises:
        401: If the caller has no valid session for the environment
        409: If the email is already registered in the environment
    """
    user = await get_runtime().flows.invite_user(
        tenant, _bearer_token(authorization), body.email, full_name=body.full_name
    )
    data = InviteResponse(user_id=user.id, email=user.email)
    return Envelope(status="ok", data=data.model_dump())
