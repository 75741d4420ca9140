from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - invalid_credentials (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - expired (410)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Bad or missing tenant key, bad session (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""
    pass


class InvalidCredentialsError(AuthenticationError):
    """Unknown user or wrong password, deliberately indistinguishable (401)."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Tenant policy or account state disallows the action (403)."""
    status_code = 403
    error_code = "forbidden"


class UserInactiveError(ForbiddenError):
    def __init__(self, message: str = "user is inactive", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class TokenNotFoundError(NotFoundError):
    """Token absent, already consumed, or of another kind."""

    def __init__(self, message: str = "token not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(ServiceError):
    """Token is past its expiry (410).

    Keeps the owning user and tenant so a flow can act on the expiry; ``retry``
    is true when a fresh token has already been emailed.
    """

    status_code = 410
    error_code = "expired"

    def __init__(
        self,
        message: str = "token expired",
        *,
        user_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        kind: Optional[str] = None,
        retry: bool = False,
    ) -> None:
        super().__init__(message, detail={"retry": retry})
        self.user_id = user_id
        self.tenant_id = tenant_id
        self.kind = kind
        self.retry = retry


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "SessionExpiredError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "UserInactiveError",
    "NotFoundError",
    "TokenNotFoundError",
    "TokenExpiredError",
    "ConflictError",
    "ServerError",
]
