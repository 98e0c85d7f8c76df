"""
Access-token validation shared by the REST API and the realtime gateway.

Tokens are issued by the identity service and signed with JWT_SECRET. The
user id is read from the `sub` claim (or `userId` for older tokens); the
optional `role` claim is carried along for salon-only endpoints. Revoked
tokens are listed in Redis under token_blacklist:{jti}.
"""

import logging
from typing import Any
from uuid import UUID

from jose import JWTError, jwt
from pydantic import BaseModel

from database.models import UserRole
from shared.config import get_settings
from shared.redis_client import get_redis_client, with_timeout

logger = logging.getLogger(__name__)

BLACKLIST_PREFIX = "token_blacklist"


class InvalidTokenError(Exception):
    """Token is missing, malformed, expired, revoked or carries no user id."""

    pass


class AuthenticatedUser(BaseModel):
    user_id: UUID
    role: UserRole | None = None


def decode_access_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        raise InvalidTokenError(f"Invalid token: {e}") from e


def user_from_payload(payload: dict[str, Any]) -> AuthenticatedUser:
    raw_id = payload.get("sub") or payload.get("userId")
    if not raw_id:
        raise InvalidTokenError("Token has no user id")
    try:
        user_id = UUID(str(raw_id))
    except ValueError as e:
        raise InvalidTokenError("Token user id is not a UUID") from e

    role = None
    raw_role = payload.get("role")
    if raw_role:
        try:
            role = UserRole(str(raw_role).upper())
        except ValueError:
            logger.debug(f"Ignoring unknown role claim: {raw_role}")
    return AuthenticatedUser(user_id=user_id, role=role)


async def check_token_blacklist(jti: str) -> bool:
    """Check if token JTI is blacklisted (revoked)."""
    try:
        result = await with_timeout(get_redis_client().get(f"{BLACKLIST_PREFIX}:{jti}"))
        return result is not None
    except Exception as e:
        logger.error(f"Error checking token blacklist: {e}")
        # Fail open on Redis errors to avoid blocking all requests
        return False


async def authenticate_token(token: str | None) -> AuthenticatedUser:
    """
    Validate a bearer token and resolve it to a user.

    Raises:
        InvalidTokenError: If the token cannot be trusted
    """
    if not token:
        raise InvalidTokenError("Not authenticated")

    payload = decode_access_token(token)
    jti = payload.get("jti")
    if jti and await check_token_blacklist(jti):
        raise InvalidTokenError("Token has been revoked")
    return user_from_payload(payload)
