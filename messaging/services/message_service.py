"""
Message operations: send, list, mark read, delete.

Invariants kept here:
- a message's sender is always one of the conversation's two participants
- is_read only goes false -> true
- last_message_at never moves backwards
- sending increments exactly the other participant's unread counter
- reading history acknowledges every message not authored by the reader
"""

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_async_session
from database.models import (
    MAX_ATTACHMENTS_PER_MESSAGE,
    Conversation,
    Message,
    MessageAttachment,
    MessageType,
    User,
    utc_now,
)
from messaging.exceptions import BadRequestError, ForbiddenError
from messaging.schemas import (
    AttachmentIn,
    AttachmentOut,
    MessageOut,
    PaginatedMessages,
    ParticipantOut,
    ReadReceipt,
    SentMessage,
    total_pages,
)
from messaging.services import unread_counter_service
from messaging.services.access import load_message_for_participant, resolve_conversation
from messaging.services.email_notification_service import cancel_pending_notifications
from shared import email_rate_limiter
from shared.config import get_settings

logger = logging.getLogger(__name__)


def to_message_out(message: Message, sender: User | None = None) -> MessageOut:
    sender = sender or message.sender
    return MessageOut(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        sender=ParticipantOut.model_validate(sender) if sender is not None else None,
        content=message.content,
        type=message.type,
        is_read=message.is_read,
        read_at=message.read_at,
        created_at=message.created_at,
        attachments=[AttachmentOut.model_validate(a) for a in message.attachments],
    )


async def touch_last_message_at(session: AsyncSession, conversation_id: UUID, at: datetime) -> None:
    """Move last_message_at forward to `at`, never backwards."""
    await session.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(
            last_message_at=case(
                (Conversation.last_message_at < at, at),
                else_=Conversation.last_message_at,
            ),
            updated_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )


async def acknowledge_conversation(
    session: AsyncSession, conversation_id: UUID, reader_id: UUID
) -> tuple[int, int]:
    """
    Mark every unread message not authored by the reader as read, reset the
    reader's counter and drop their pending email digest.

    Runs in the caller's transaction.

    Returns:
        (messages_marked, digests_cancelled)
    """
    result = await session.execute(
        update(Message)
        .where(
            Message.conversation_id == conversation_id,
            Message.sender_id != reader_id,
            Message.is_read.is_(False),
        )
        .values(is_read=True, read_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    await unread_counter_service.reset_unread_count(session, conversation_id, reader_id)
    cancelled = await cancel_pending_notifications(session, conversation_id, reader_id)
    return result.rowcount or 0, cancelled


async def release_cancelled_digest(conversation_id: UUID, reader_id: UUID, cancelled: int) -> None:
    """A cancelled digest never went out, so its rate-limit window is closed too."""
    if cancelled:
        await email_rate_limiter.reset(conversation_id, reader_id)
        logger.info(
            "Pending email digest cancelled after read",
            extra={"conversation_id": conversation_id, "user_id": reader_id},
        )


async def send_message(
    sender_id: UUID,
    conversation_id: UUID,
    content: str,
    message_type: MessageType = MessageType.TEXT,
    attachments: list[AttachmentIn] | None = None,
    conversation: Conversation | None = None,
) -> SentMessage:
    """
    Persist a message and its attachments in one transaction.

    Raises:
        BadRequestError: Empty content or too many attachments
        NotFoundError: Conversation does not exist
        ForbiddenError: Sender is not a participant
    """
    content = (content or "").strip()
    if not content:
        raise BadRequestError("Message content cannot be empty")
    attachments = attachments or []
    if len(attachments) > MAX_ATTACHMENTS_PER_MESSAGE:
        raise BadRequestError(f"A message can have at most {MAX_ATTACHMENTS_PER_MESSAGE} attachments")

    async with get_async_session() as session:
        conversation = await resolve_conversation(session, conversation_id, sender_id, conversation)
        recipient_id = conversation.other_participant(sender_id)
        sender = await session.get(User, sender_id)

        now = utc_now()
        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            type=message_type,
            is_read=False,
            created_at=now,
            attachments=[
                MessageAttachment(
                    file_name=a.file_name,
                    file_url=a.file_url,
                    file_type=a.file_type,
                    file_size=a.file_size,
                    storage_key=a.storage_key,
                )
                for a in attachments
            ],
        )
        session.add(message)
        await session.flush()

        await touch_last_message_at(session, conversation_id, now)
        await unread_counter_service.increment_unread_count(session, conversation_id, recipient_id)
        await session.commit()

        logger.info(
            "Message sent",
            extra={"conversation_id": conversation_id, "message_id": message.id, "user_id": sender_id},
        )
        return SentMessage(message=to_message_out(message, sender), recipient_id=recipient_id)


async def get_messages(
    conversation_id: UUID,
    requester_id: UUID,
    page: int = 1,
    limit: int | None = None,
    conversation: Conversation | None = None,
) -> PaginatedMessages:
    """
    Return one page of history, newest first, and acknowledge the conversation.

    Archived messages are excluded. Viewing any page marks every unread
    message from the other participant as read, resets the requester's
    counter and cancels their pending email digest.
    """
    limit = limit or get_settings().MESSAGES_PAGE_SIZE
    page = max(page, 1)

    async with get_async_session() as session:
        await resolve_conversation(session, conversation_id, requester_id, conversation)

        _, cancelled = await acknowledge_conversation(session, conversation_id, requester_id)

        visible = (Message.conversation_id == conversation_id, Message.archived_at.is_(None))
        total = (
            await session.execute(select(func.count()).select_from(Message).where(*visible))
        ).scalar_one()
        result = await session.execute(
            select(Message)
            .where(*visible)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        messages = list(result.scalars().all())
        await session.commit()

    await release_cancelled_digest(conversation_id, requester_id, cancelled)

    return PaginatedMessages(
        data=[to_message_out(m) for m in messages],
        total=total,
        page=page,
        limit=limit,
        total_pages=total_pages(total, limit),
        has_more=page * limit < total,
    )


async def mark_as_read(message_id: UUID, user_id: UUID) -> ReadReceipt:
    """
    Mark one message read on behalf of its recipient.

    Own messages and already-read messages are left untouched (changed=False).
    """
    async with get_async_session() as session:
        message, conversation = await load_message_for_participant(session, message_id, user_id)

        if message.sender_id == user_id or message.is_read:
            return ReadReceipt(
                message_id=message.id,
                conversation_id=conversation.id,
                reader_id=user_id,
                read_at=message.read_at,
                changed=False,
            )

        read_at = utc_now()
        result = await session.execute(
            update(Message)
            .where(Message.id == message_id, Message.is_read.is_(False))
            .values(is_read=True, read_at=read_at)
            .execution_options(synchronize_session=False)
        )
        changed = bool(result.rowcount)
        if changed:
            await unread_counter_service.decrement_unread_count(session, conversation.id, user_id)
        await session.commit()

        return ReadReceipt(
            message_id=message.id,
            conversation_id=conversation.id,
            reader_id=user_id,
            read_at=read_at,
            changed=changed,
        )


async def delete_message(message_id: UUID, user_id: UUID) -> UUID:
    """
    Hard-delete a message. Only its author may do so.

    Returns:
        The id of the conversation the message belonged to
    """
    async with get_async_session() as session:
        message, conversation = await load_message_for_participant(session, message_id, user_id)
        if message.sender_id != user_id:
            raise ForbiddenError("You can only delete your own messages")

        if not message.is_read:
            await unread_counter_service.decrement_unread_count(
                session, conversation.id, conversation.other_participant(user_id)
            )

        await session.execute(
            delete(MessageAttachment).where(MessageAttachment.message_id == message_id)
        )
        await session.execute(delete(Message).where(Message.id == message_id))
        await session.commit()

        logger.info(
            "Message deleted",
            extra={"conversation_id": conversation.id, "message_id": message_id, "user_id": user_id},
        )
        return conversation.id
