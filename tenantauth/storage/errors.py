from __future__ import annotations

from typing import Any, Dict, Optional

# Constraint names shared by the memory and Postgres stores
UNIQUE_TENANT_EMAIL = "app_user_tenant_email_key"
UNIQUE_PLATFORM_OWNER = "app_user_platform_owner_key"
UNIQUE_TENANT_PUBLIC_KEY = "environment_public_key_key"
MISSING_USER = "app_user_missing"


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.constraint = constraint


__all__ = [
    "ConstraintViolation",
    "MISSING_USER",
    "UNIQUE_PLATFORM_OWNER",
    "UNIQUE_TENANT_EMAIL",
    "UNIQUE_TENANT_PUBLIC_KEY",
]
