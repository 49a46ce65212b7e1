"""JWT helpers for operator authentication."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from anchor_relay.core.settings import settings

__all__ = ["JWTError", "create_access_token", "decode_access_token"]


def create_access_token(
    operator_id: str,
    extra_claims: dict[str, Any] | None = None,
    expires_minutes: int | None = None,
) -> str:
    """Create a signed access token whose subject is ``operator_id``."""
    to_encode: dict[str, Any] = {"sub": operator_id}
    if extra_claims:
        to_encode.update(extra_claims)
    minutes = settings.access_token_expire_minutes if expires_minutes is None else expires_minutes
    to_encode["exp"] = datetime.now(UTC) + timedelta(minutes=minutes)
    encoded_jwt: str = jwt.encode(
        to_encode,
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )
    return encoded_jwt


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode and verify a token.

    Raises:
        JWTError: If the signature, expiry, or format is invalid.
    """
    payload: dict[str, Any] = jwt.decode(
        token,
        settings.secret_key,
        algorithms=[settings.jwt_algorithm],
    )
    return payload
