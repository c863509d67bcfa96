"""Bearer token verification.

Tokens are issued by the upstream auth service; this service only needs to
decode them into a tenant identity.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from propnova.core.config import get_settings


def create_access_token(
    data: dict[str, Any],
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed access token (used by tooling and tests)."""
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.now(UTC) + (expires_delta or timedelta(minutes=30))
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict[str, Any] | None:
    """Decode and verify a token, returning None when it is invalid."""
    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return None
    return payload


def verify_token_type(payload: dict[str, Any], expected_type: str) -> bool:
    """Check the token's ``type`` claim."""
    return payload.get("type") == expected_type
