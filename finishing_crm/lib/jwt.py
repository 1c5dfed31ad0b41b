"""JWT token generation and validation utilities.

Uses the algorithm and secret from settings.
Tokens carry the standard claims (exp, iat, sub) plus a custom role claim.
Admin sessions are issued by the identity provider in front of this service;
`create_access_token` exists for tooling and tests.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from finishing_crm.lib.settings import settings


def create_access_token(
    user_id: str,
    role: str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a JWT access token for an admin user.

    Args:
        user_id: ID of the user (stored in 'sub' claim)
        role: User role (director, sales_rep, ...)
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.jwt_expiration_minutes)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "iat": now,
        "exp": now + expires_delta,
    }

    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict:
    """Verify and decode a JWT token.

    Raises:
        jwt.InvalidTokenError: If token is invalid, expired, or signature doesn't match
    """
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
    )
