from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from datetime import timedelta
from typing import Any, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantauth.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
# 32 bytes of randomness, 256 bits of entropy in the token value
OPAQUE_TOKEN_BYTES = 32

_pwd_hasher = PasswordHasher(type=Type.ID)
_dummy_hash: Optional[str] = None


class SessionTokenError(Exception):
    """Signed session token could not be accepted."""


class InvalidSignature(SessionTokenError):
    pass


class SignatureExpired(SessionTokenError):
    pass


def hash_password(plain: str) -> str:
    return _pwd_hasher.hash(plain)


def verify_password(plain: str, password_hash: str) -> bool:
    try:
        return _pwd_hasher.verify(password_hash, plain)
    except (InvalidHash, VerifyMismatchError, VerificationError):
        return False


def burn_password_check(plain: str) -> None:
    """Spend one verification on a throwaway hash.

    Called when there is no stored hash to check, so a missing account costs the
    caller as much time as a wrong password.
    """
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = _pwd_hasher.hash(secrets.token_urlsafe(16))
    verify_password(plain, _dummy_hash)


def new_opaque_token() -> str:
    return secrets.token_urlsafe(OPAQUE_TOKEN_BYTES)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _signature(signing_input: str, tenant_key: str) -> str:
    return _encode_segment(
        hmac.new(tenant_key.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


def sign_session(
    claims: dict[str, Any],
    tenant_key: str,
    ttl: timedelta,
    *,
    now: Optional[float] = None,
) -> str:
    """Encode ``claims`` as an HS256 JWT signed with the tenant's key.

    ``iat`` and ``exp`` are set from ``now`` (epoch seconds) and ``ttl``.
    """
    issued_at = int(now if now is not None else time.time())
    payload = {
        **claims,
        "iat": issued_at,
        "exp": issued_at + int(ttl.total_seconds()),
    }
    header = {"alg": "HS256", "typ": "JWT"}
    header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_signature(signing_input, tenant_key)}"


def _split(token: str) -> tuple[str, str, str]:
    try:
        header_b64, payload_b64, sig_b64 = token.split(".")
    except (AttributeError, ValueError):
        raise InvalidSignature("malformed token")
    return header_b64, payload_b64, sig_b64


def verify_session(
    token: str,
    tenant_key: str,
    *,
    leeway_seconds: int = 0,
    now: Optional[float] = None,
) -> dict[str, Any]:
    """Return the claims of a token signed with ``tenant_key``.

    Raises:
        InvalidSignature: malformed token, wrong algorithm or signature mismatch
        SignatureExpired: signature is valid but ``exp`` has passed
    """
    header_b64, payload_b64, sig_b64 = _split(token)
    try:
        header = json.loads(_decode_segment(header_b64))
    except (ValueError, TypeError):
        raise InvalidSignature("undecodable header")
    # Reject anything but HS256 to avoid algorithm confusion
    if not isinstance(header, dict):
        raise InvalidSignature("undecodable header")
    if header.get("alg") != "HS256":
        logger.warning("session_token_invalid_algorithm", alg=header.get("alg"))
        raise InvalidSignature("unsupported algorithm")

    expected_sig = _signature(f"{header_b64}.{payload_b64}", tenant_key)
    if not hmac.compare_digest(expected_sig, sig_b64):
        raise InvalidSignature("signature mismatch")
    try:
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, TypeError):
        raise InvalidSignature("undecodable payload")
    if not isinstance(payload, dict):
        raise InvalidSignature("claims must be an object")

    try:
        exp_ts = float(payload["exp"])
    except (KeyError, TypeError, ValueError):
        raise InvalidSignature("missing expiry")
    current = now if now is not None else time.time()
    if exp_ts <= current - leeway_seconds:
        raise SignatureExpired("token expired")
    return payload


def decode_claims_unverified(token: str) -> Optional[dict[str, Any]]:
    """Read claims without checking the signature.

    Only for routing decisions, such as finding which tenant's key should verify
    the token. Never trust the result for authorization.
    """
    try:
        _, payload_b64, _ = _split(token)
        payload = json.loads(_decode_segment(payload_b64))
    except (InvalidSignature, ValueError, TypeError):
        return None
    return payload if isinstance(payload, dict) else None
