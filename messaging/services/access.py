"""Participant authorization shared by every conversation-scoped operation."""

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from database.models import Conversation, Message
from messaging.exceptions import ForbiddenError, NotFoundError


async def load_conversation_for_participant(
    session: AsyncSession, conversation_id: UUID, user_id: UUID
) -> Conversation:
    """
    Load a conversation and check that user_id is one of its two participants.

    Raises:
        NotFoundError: Conversation does not exist
        ForbiddenError: User is not a participant
    """
    conversation = await session.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {conversation_id} not found")
    if not conversation.is_participant(user_id):
        raise ForbiddenError("You are not a participant of this conversation")
    return conversation


async def resolve_conversation(
    session: AsyncSession,
    conversation_id: UUID,
    user_id: UUID,
    conversation: Conversation | None = None,
) -> Conversation:
    """
    Attach a conversation the request guard already loaded to `session`, or
    load and authorize it when called without one (WebSocket, workers).

    merge(load=False) attaches the guard's copy without another SELECT.
    """
    if conversation is None:
        return await load_conversation_for_participant(session, conversation_id, user_id)
    if conversation.id != conversation_id or not conversation.is_participant(user_id):
        raise ForbiddenError("You are not a participant of this conversation")
    return await session.merge(conversation, load=False)


async def load_message_for_participant(
    session: AsyncSession, message_id: UUID, user_id: UUID
) -> tuple[Message, Conversation]:
    """Load a message and its conversation, checking participation."""
    message = await session.get(Message, message_id)
    if message is None:
        raise NotFoundError(f"Message {message_id} not found")
    conversation = await load_conversation_for_participant(
        session, message.conversation_id, user_id
    )
    return message, conversation


def require_salon(conversation: Conversation, user_id: UUID) -> None:
    if conversation.salon_id != user_id:
        raise ForbiddenError("Only the salon can perform this action")
