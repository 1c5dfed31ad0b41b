"""
API dependencies for FastAPI dependency injection.

Provides database sessions, bearer-token authentication, the director role
check and the shared-secret check used by cron endpoints.
"""
import hmac
from typing import Optional

import jwt
from fastapi import Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from finishing_crm.api.middleware.error_handler import ForbiddenException, UnauthorizedException
from finishing_crm.lib.db import get_db as get_db_session
from finishing_crm.lib.jwt import verify_token
from finishing_crm.lib.logging import get_logger
from finishing_crm.lib.settings import settings
from finishing_crm.models.users import User
from finishing_crm.services.email_provider import EmailProvider, get_email_provider

logger = get_logger(__name__)

# Re-export get_db for convenience
get_db = get_db_session

security = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """
    Resolve the authenticated user from the bearer token.

    Raises:
        UnauthorizedException: Missing, invalid or expired token, or unknown/inactive user
    """
    if credentials is None:
        raise UnauthorizedException("Missing bearer token")

    try:
        payload = verify_token(credentials.credentials)
    except jwt.InvalidTokenError as e:
        raise UnauthorizedException(f"Could not validate credentials: {e}") from e

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedException("Invalid authentication token")

    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise UnauthorizedException("User not found")
    return user


def require_director(user: User = Depends(get_current_user)) -> User:
    if not user.is_director:
        logger.warning(
            "Director-only endpoint refused",
            extra={"user_id": user.user_id, "role": user.role.value},
        )
        raise ForbiddenException("Director role required")
    return user


def verify_cron_secret(x_cron_secret: Optional[str] = Header(None)) -> None:
    """
    Check the X-Cron-Secret header. An unset secret rejects every caller.
    """
    expected = settings.cron_secret
    if not expected or not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        logger.warning("Cron endpoint called without a valid secret")
        raise UnauthorizedException("Unauthorized")


def get_email_provider_dependency() -> EmailProvider:
    """Email provider used by the outbox runner endpoint (overridden in tests)."""
    return get_email_provider()
