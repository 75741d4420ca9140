from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "forbidden",
    "not_found",
    "expired",
    "validation_error",
    "conflict",
    "server_error",
})

# Password strength is a policy layer above this service; only bound the input
MAX_PASSWORD_LENGTH = 128
MAX_TOKEN_LENGTH = 2048


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
# Zero-width characters that could be used to spoof an address
_INVISIBLE = frozenset("\u200b\u200c\u200d\ufeff")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    cleaned = "".join(c for c in value if c not in _INVISIBLE)
    normalized = unicodedata.normalize("NFKC", cleaned.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValueError("invalid email address format")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not value:
        raise ValueError("password must not be empty")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


class OwnerSignupRequest(BaseModel):
    password: str

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password(value)


class SignupRequest(BaseModel):
    email: str
    password: Optional[str] = None
    full_name: Optional[str] = Field(default=None, max_length=200)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password(value)


class LoginRequest(BaseModel):
    email: str
    password: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordUpdateRequest(BaseModel):
    password: str

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password(value)


class InviteRequest(BaseModel):
    email: str
    full_name: Optional[str] = Field(default=None, max_length=200)

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _validate_email(value)


class UserResponse(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    tenant_id: Optional[str] = None
    is_active: bool
    email_confirmed: bool
    last_sign_in_at: Optional[datetime] = None


class TenantResponse(BaseModel):
    id: str
    name: str
    app_url: str
    public_key: str
    auth_policy: str
    access_token_ttl_minutes: int
    refresh_token_ttl_minutes: Optional[int] = None
    signup_enabled: bool


class OwnerSignupResponse(BaseModel):
    user: UserResponse
    tenant: TenantResponse
    created: bool


class SessionResponse(BaseModel):
    user_id: str
    tenant_id: str
    access_token: str
    access_expires_at: datetime
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None
    token_type: str = "bearer"


class AckResponse(BaseModel):
    status: str = "ok"


class ConfirmEmailResponse(BaseModel):
    status: str = "confirmed"
    followup_token_kind: Optional[str] = None
    followup_token: Optional[str] = None
    email: Optional[str] = None


class InviteResponse(BaseModel):
    status: str = "sent"
    user_id: str
    email: str
