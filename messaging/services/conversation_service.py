"""
Conversation operations.

Conversations always have exactly two participants: a SALON user and a
CLIENT user. At most one conversation exists per appointment; asking to
create a second one for the same appointment returns the first.
"""

import logging
from uuid import UUID

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_async_session
from database.models import (
    Appointment,
    Conversation,
    ConversationStatus,
    EmailNotificationQueue,
    Message,
    MessageAttachment,
    MessageType,
    UnreadCounter,
    User,
    UserRole,
    utc_now,
)
from messaging.exceptions import BadRequestError, ForbiddenError, NotFoundError
from messaging.schemas import ConversationOut, PaginatedConversations, ParticipantOut, total_pages
from messaging.services import unread_counter_service
from messaging.services.access import (
    load_conversation_for_participant,
    require_salon,
    resolve_conversation,
)
from messaging.services.message_service import (
    acknowledge_conversation,
    release_cancelled_digest,
    to_message_out,
)
from shared.config import get_settings

logger = logging.getLogger(__name__)

UNREAD_CONVERSATIONS_LIMIT = 10


async def _latest_message(session: AsyncSession, conversation_id: UUID) -> Message | None:
    result = await session.execute(
        select(Message)
        .where(Message.conversation_id == conversation_id, Message.archived_at.is_(None))
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def to_conversation_out(
    session: AsyncSession, conversation: Conversation, user_id: UUID
) -> ConversationOut:
    """Annotate a conversation with its latest message and the viewer's unread count."""
    latest = await _latest_message(session, conversation.id)
    return ConversationOut(
        id=conversation.id,
        salon_id=conversation.salon_id,
        client_user_id=conversation.client_user_id,
        appointment_id=conversation.appointment_id,
        subject=conversation.subject,
        status=conversation.status,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
        last_message_at=conversation.last_message_at,
        salon=ParticipantOut.model_validate(conversation.salon) if conversation.salon else None,
        client=ParticipantOut.model_validate(conversation.client) if conversation.client else None,
        last_message=to_message_out(latest) if latest else None,
        unread_count=await unread_counter_service.count_for(session, conversation.id, user_id),
    )


async def _find_by_appointment(session: AsyncSession, appointment_id: UUID) -> Conversation | None:
    result = await session.execute(
        select(Conversation).where(Conversation.appointment_id == appointment_id)
    )
    return result.scalar_one_or_none()


async def create_conversation(
    initiator_id: UUID,
    counterpart_id: UUID,
    appointment_id: UUID | None = None,
    subject: str | None = None,
    first_message: str | None = None,
) -> ConversationOut:
    """
    Open a conversation between a salon (initiator) and a client (counterpart).

    Idempotent per appointment: if a conversation already references
    appointment_id it is returned unchanged and no message is created.

    Raises:
        NotFoundError: Initiator, counterpart or appointment does not exist
        BadRequestError: Counterpart is not a client, or initiator is not a salon
        ForbiddenError: The appointment's conversation belongs to another salon
    """
    async with get_async_session() as session:
        counterpart = await session.get(User, counterpart_id)
        if counterpart is None:
            raise NotFoundError(f"Client {counterpart_id} not found")
        if counterpart.role != UserRole.CLIENT:
            raise BadRequestError("The counterpart of a conversation must be a client")

        initiator = await session.get(User, initiator_id)
        if initiator is None:
            raise NotFoundError(f"User {initiator_id} not found")
        if initiator.role != UserRole.SALON:
            raise BadRequestError("Only salons can start a conversation")

        if appointment_id is not None:
            if await session.get(Appointment, appointment_id) is None:
                raise NotFoundError(f"Appointment {appointment_id} not found")

            existing = await _find_by_appointment(session, appointment_id)
            if existing is not None:
                if not existing.is_participant(initiator_id):
                    raise ForbiddenError("You are not a participant of this conversation")
                logger.info(
                    "Conversation already exists for appointment",
                    extra={"conversation_id": existing.id, "user_id": initiator_id},
                )
                return await to_conversation_out(session, existing, initiator_id)

        now = utc_now()
        conversation = Conversation(
            salon_id=initiator_id,
            client_user_id=counterpart_id,
            appointment_id=appointment_id,
            subject=subject,
            status=ConversationStatus.ACTIVE,
            created_at=now,
            updated_at=now,
            last_message_at=now,
        )
        session.add(conversation)

        try:
            await session.flush()
            await unread_counter_service.ensure_counters(
                session, conversation.id, [initiator_id, counterpart_id]
            )

            if first_message and first_message.strip():
                session.add(
                    Message(
                        conversation_id=conversation.id,
                        sender_id=initiator_id,
                        content=first_message.strip(),
                        type=MessageType.SYSTEM,
                        is_read=False,
                        created_at=now,
                    )
                )
                await unread_counter_service.increment_unread_count(
                    session, conversation.id, counterpart_id
                )

            await session.commit()
        except IntegrityError:
            # A concurrent request created the conversation for this appointment first
            await session.rollback()
            existing = (
                await _find_by_appointment(session, appointment_id) if appointment_id else None
            )
            if existing is None:
                raise
            return await to_conversation_out(session, existing, initiator_id)

        logger.info(
            "Conversation created",
            extra={"conversation_id": conversation.id, "user_id": initiator_id},
        )
        await session.refresh(conversation)
        return await to_conversation_out(session, conversation, initiator_id)


async def get_conversations(
    user_id: UUID,
    page: int = 1,
    limit: int | None = None,
    status: ConversationStatus | None = None,
) -> PaginatedConversations:
    """Conversations the user takes part in, most recent activity first."""
    limit = limit or get_settings().CONVERSATIONS_PAGE_SIZE
    page = max(page, 1)

    filters = [or_(Conversation.salon_id == user_id, Conversation.client_user_id == user_id)]
    if status is not None:
        filters.append(Conversation.status == status)

    async with get_async_session() as session:
        total = (
            await session.execute(select(func.count()).select_from(Conversation).where(*filters))
        ).scalar_one()
        result = await session.execute(
            select(Conversation)
            .where(*filters)
            .order_by(Conversation.last_message_at.desc(), Conversation.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        data = [
            await to_conversation_out(session, conversation, user_id)
            for conversation in result.scalars().all()
        ]

    return PaginatedConversations(
        data=data,
        total=total,
        page=page,
        limit=limit,
        total_pages=total_pages(total, limit),
    )


async def get_unread_conversations(salon_id: UUID) -> list[ConversationOut]:
    """Active conversations where the salon has unread client messages (dashboard widget)."""
    async with get_async_session() as session:
        salon = await session.get(User, salon_id)
        if salon is None or salon.role != UserRole.SALON:
            raise ForbiddenError("Only salons can list unread conversations")

        result = await session.execute(
            select(Conversation)
            .join(
                UnreadCounter,
                (UnreadCounter.conversation_id == Conversation.id)
                & (UnreadCounter.user_id == salon_id),
            )
            .where(
                Conversation.salon_id == salon_id,
                Conversation.status == ConversationStatus.ACTIVE,
                UnreadCounter.unread_count > 0,
            )
            .order_by(Conversation.last_message_at.desc())
            .limit(UNREAD_CONVERSATIONS_LIMIT)
        )
        return [
            await to_conversation_out(session, conversation, salon_id)
            for conversation in result.scalars().all()
        ]


async def get_conversation_by_id(
    conversation_id: UUID, user_id: UUID, conversation: Conversation | None = None
) -> ConversationOut:
    """Open a conversation. Opening it acknowledges every unread message in it."""
    async with get_async_session() as session:
        conversation = await resolve_conversation(session, conversation_id, user_id, conversation)
        _, cancelled = await acknowledge_conversation(session, conversation_id, user_id)
        await session.commit()
        out = await to_conversation_out(session, conversation, user_id)

    await release_cancelled_digest(conversation_id, user_id, cancelled)
    return out


async def get_conversation_participants(conversation_id: UUID, user_id: UUID) -> tuple[UUID, UUID]:
    """
    Authorize user_id on the conversation and return (salon_id, client_user_id).

    Raises:
        NotFoundError, ForbiddenError
    """
    async with get_async_session() as session:
        conversation = await load_conversation_for_participant(session, conversation_id, user_id)
        return conversation.salon_id, conversation.client_user_id


async def update_conversation(
    conversation_id: UUID,
    user_id: UUID,
    subject: str | None = None,
    status: ConversationStatus | None = None,
    conversation: Conversation | None = None,
) -> ConversationOut:
    """Change subject and/or status. Either participant may do this."""
    async with get_async_session() as session:
        conversation = await resolve_conversation(session, conversation_id, user_id, conversation)
        if subject is not None:
            conversation.subject = subject
        if status is not None:
            conversation.status = status
        await session.commit()
        await session.refresh(conversation)
        return await to_conversation_out(session, conversation, user_id)


async def archive_conversation(
    conversation_id: UUID, user_id: UUID, conversation: Conversation | None = None
) -> ConversationStatus:
    """Toggle ACTIVE <-> ARCHIVED. Salon only."""
    async with get_async_session() as session:
        conversation = await resolve_conversation(session, conversation_id, user_id, conversation)
        require_salon(conversation, user_id)

        conversation.status = (
            ConversationStatus.ACTIVE
            if conversation.status == ConversationStatus.ARCHIVED
            else ConversationStatus.ARCHIVED
        )
        await session.commit()

        logger.info(
            f"Conversation status set to {conversation.status.value}",
            extra={"conversation_id": conversation_id, "user_id": user_id},
        )
        return conversation.status


async def delete_conversation(
    conversation_id: UUID, user_id: UUID, conversation: Conversation | None = None
) -> None:
    """Hard-delete a conversation with all its messages, attachments, counters and digests. Salon only."""
    async with get_async_session() as session:
        conversation = await resolve_conversation(session, conversation_id, user_id, conversation)
        require_salon(conversation, user_id)

        message_ids = select(Message.id).where(Message.conversation_id == conversation_id)
        await session.execute(
            delete(MessageAttachment)
            .where(MessageAttachment.message_id.in_(message_ids))
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            delete(Message)
            .where(Message.conversation_id == conversation_id)
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            delete(UnreadCounter)
            .where(UnreadCounter.conversation_id == conversation_id)
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            delete(EmailNotificationQueue)
            .where(EmailNotificationQueue.conversation_id == conversation_id)
            .execution_options(synchronize_session=False)
        )
        await session.delete(conversation)
        await session.commit()

    logger.info(
        "Conversation deleted",
        extra={"conversation_id": conversation_id, "user_id": user_id},
    )


async def mark_all_as_read(
    conversation_id: UUID, user_id: UUID, conversation: Conversation | None = None
) -> int:
    """
    Acknowledge every message from the other participant.

    Returns:
        Number of messages that were newly marked read
    """
    async with get_async_session() as session:
        await resolve_conversation(session, conversation_id, user_id, conversation)
        marked, cancelled = await acknowledge_conversation(session, conversation_id, user_id)
        await session.commit()

    await release_cancelled_digest(conversation_id, user_id, cancelled)
    return marked
