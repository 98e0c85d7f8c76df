"""
Shared FastAPI dependencies: authentication and conversation access guard.
"""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from database.connection import get_async_session
from database.models import Conversation, UserRole
from messaging.services.access import load_conversation_for_participant
from shared.auth import AuthenticatedUser, InvalidTokenError, authenticate_token

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> AuthenticatedUser:
    """
    Dependency to get current authenticated user from the Authorization header.

    Verifies JWT signature and checks token blacklist for revoked tokens.
    """
    token = credentials.credentials if credentials else None
    try:
        return await authenticate_token(token)
    except InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]


async def require_salon_role(current_user: CurrentUser) -> AuthenticatedUser:
    if current_user.role is not None and current_user.role != UserRole.SALON:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This endpoint is reserved to salons",
        )
    return current_user


async def require_conversation_access(
    conversation_id: UUID,
    request: Request,
    current_user: CurrentUser,
) -> Conversation:
    """
    Load the conversation once, check the caller is a participant and keep it
    on request.state.conversation for the rest of the request.

    NotFoundError / ForbiddenError propagate to the messaging error handler.
    """
    async with get_async_session() as session:
        conversation = await load_conversation_for_participant(
            session, conversation_id, current_user.user_id
        )
    request.state.conversation = conversation
    return conversation


ConversationAccess = Annotated[Conversation, Depends(require_conversation_access)]
