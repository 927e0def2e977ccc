"""
Security utilities for JWT token handling and HTTP response hardening.

Customers and administrators authenticate with bearer tokens issued by the
storefront's identity service; this module decodes and validates them and
can mint tokens for the same secret (used by tooling and the test suite).
It also provides the security headers attached to every API response.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from jose import ExpiredSignatureError, JWTError, jwt

from src.core.config import get_settings
from src.core.logging import get_logger

settings = get_settings()
logger = get_logger(__name__)


class SecurityError(Exception):
    """Base exception for security-related errors."""

    def __init__(self, message: str, code: str, **context):
        super().__init__(message)
        self.code = code
        self.context = context


class TokenError(SecurityError):
    """Exception raised for token-related errors."""

    pass


def create_access_token(
    data: Dict[str, Any],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a signed JWT access token.

    Args:
        data: Claims to encode (``sub`` is the user ID)
        expires_delta: Optional custom lifetime

    Returns:
        Encoded JWT token string

    Raises:
        TokenError: If token creation fails
    """
    now = datetime.now(timezone.utc)
    expire = now + (
        expires_delta
        or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    )

    to_encode = data.copy()
    to_encode.update({"exp": expire, "iat": now, "type": "access"})

    try:
        encoded_jwt = jwt.encode(
            to_encode,
            settings.secret_key,
            algorithm=settings.jwt_algorithm,
        )
    except JWTError as e:
        logger.error(
            "Failed to create access token",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise TokenError(
            "Failed to create access token",
            code="TOKEN_CREATE_FAILED",
            original_error=str(e),
        ) from e

    logger.debug(
        "Access token created",
        subject=data.get("sub"),
        expires_at=expire.isoformat(),
    )
    return encoded_jwt


def create_user_token(user_id: UUID, email: str, role: str) -> str:
    """Create an access token for a user with the standard claim set."""
    return create_access_token(
        {"sub": str(user_id), "email": email, "role": role}
    )


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a JWT token.

    Args:
        token: JWT token string to decode

    Returns:
        Dictionary of decoded token claims

    Raises:
        TokenError: If token is empty, expired, or malformed
    """
    if not token:
        raise TokenError("Token cannot be empty", code="EMPTY_TOKEN")

    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except ExpiredSignatureError as e:
        logger.warning("Token has expired")
        raise TokenError("Token has expired", code="TOKEN_EXPIRED") from e
    except JWTError as e:
        logger.warning(
            "Invalid token",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise TokenError(
            "Invalid token",
            code="TOKEN_INVALID",
            original_error=str(e),
        ) from e

    if payload.get("type") != "access":
        raise TokenError(
            "Invalid token type",
            code="TOKEN_TYPE_INVALID",
            token_type=payload.get("type"),
        )

    return payload


def get_security_headers() -> Dict[str, str]:
    """
    Headers attached to every API response.

    HSTS is only sent in production, where TLS terminates in front of the
    service.
    """
    headers = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
        "Cache-Control": "no-store",
    }
    if settings.is_production:
        headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )
    return headers
