"""
Email fallback for recipients who are not reachable live.

Flow:
    1. At send time the gateway sees the recipient offline and calls
       notify_offline_recipient().
    2. If preferences allow it, the message is folded into the PENDING digest
       for (conversation, recipient), or a new digest is opened when the
       rate limiter grants a window.
    3. The flush worker calls send_pending_notifications(); each digest is
       rendered, delivered, and moved to SENT or FAILED.
    4. Reading the conversation deletes a still-PENDING digest.

FAILED entries are never retried automatically.
"""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_async_session
from database.models import (
    EmailFrequency,
    EmailNotificationQueue,
    EmailNotificationStatus,
    Message,
    User,
    utc_now,
)
from messaging.services.email_templates import render_digest
from messaging.services.notification_preference_service import find_preferences
from shared import email_rate_limiter
from shared.config import get_settings
from shared.email_client import EmailClient, get_email_client

logger = logging.getLogger(__name__)

FAILURE_REASON_MAX_LENGTH = 1000


# ============================================================================
# Enqueue
# ============================================================================


async def should_notify(
    session: AsyncSession, conversation_id: UUID, recipient_id: UUID
) -> bool:
    """Check the recipient's preferences. Missing preferences mean defaults (notify)."""
    preferences = await find_preferences(session, recipient_id)
    if preferences is None:
        return True
    if not preferences.email_notifications_enabled:
        return False
    if preferences.email_frequency == EmailFrequency.NEVER:
        return False
    return not preferences.is_muted(conversation_id)


async def _increment_pending(
    session: AsyncSession, conversation_id: UUID, recipient_id: UUID
) -> bool:
    result = await session.execute(
        update(EmailNotificationQueue)
        .where(
            EmailNotificationQueue.conversation_id == conversation_id,
            EmailNotificationQueue.recipient_user_id == recipient_id,
            EmailNotificationQueue.status == EmailNotificationStatus.PENDING,
        )
        .values(
            message_count=EmailNotificationQueue.message_count + 1,
            updated_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def queue_notification(conversation_id: UUID, recipient_id: UUID) -> bool:
    """
    Fold one unread message into the recipient's pending digest.

    An existing PENDING entry is incremented. Otherwise a new entry with
    message_count=1 is opened, but only if the rate limiter grants a window.

    Returns:
        True if the message was queued, False if the rate limiter refused
    """
    async with get_async_session() as session:
        if await _increment_pending(session, conversation_id, recipient_id):
            await session.commit()
            logger.info(
                "Pending email digest incremented",
                extra={"conversation_id": conversation_id, "user_id": recipient_id},
            )
            return True

        if not await email_rate_limiter.try_acquire(conversation_id, recipient_id):
            logger.info(
                "Email rate limit window open, not queuing",
                extra={"conversation_id": conversation_id, "user_id": recipient_id},
            )
            return False

        session.add(
            EmailNotificationQueue(
                conversation_id=conversation_id,
                recipient_user_id=recipient_id,
                status=EmailNotificationStatus.PENDING,
                message_count=1,
            )
        )
        try:
            await session.commit()
        except IntegrityError:
            # Another process opened the digest between our UPDATE and INSERT
            await session.rollback()
            await _increment_pending(session, conversation_id, recipient_id)
            await session.commit()

        logger.info(
            "Email digest queued",
            extra={"conversation_id": conversation_id, "user_id": recipient_id},
        )
        return True


async def notify_offline_recipient(conversation_id: UUID, recipient_id: UUID) -> bool:
    """Entry point used at send time once the recipient is known to be offline."""
    async with get_async_session() as session:
        allowed = await should_notify(session, conversation_id, recipient_id)

    if not allowed:
        logger.debug(
            "Email notifications disabled or muted for recipient",
            extra={"conversation_id": conversation_id, "user_id": recipient_id},
        )
        return False

    return await queue_notification(conversation_id, recipient_id)


async def cancel_pending_notifications(
    session: AsyncSession, conversation_id: UUID, user_id: UUID
) -> int:
    """Delete the reader's PENDING digest. Runs in the caller's transaction."""
    result = await session.execute(
        delete(EmailNotificationQueue)
        .where(
            EmailNotificationQueue.conversation_id == conversation_id,
            EmailNotificationQueue.recipient_user_id == user_id,
            EmailNotificationQueue.status == EmailNotificationStatus.PENDING,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


# ============================================================================
# Delivery
# ============================================================================


async def _transition(
    session: AsyncSession,
    queue_id: UUID,
    status: EmailNotificationStatus,
    failure_reason: str | None = None,
) -> bool:
    values: dict[str, Any] = {"status": status, "updated_at": utc_now()}
    if status == EmailNotificationStatus.SENT:
        values["sent_at"] = utc_now()
    if failure_reason is not None:
        values["failure_reason"] = failure_reason[:FAILURE_REASON_MAX_LENGTH]

    result = await session.execute(
        update(EmailNotificationQueue)
        .where(
            EmailNotificationQueue.id == queue_id,
            EmailNotificationQueue.status == EmailNotificationStatus.PENDING,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return bool(result.rowcount)


async def send_notification(queue_id: UUID, email_client: EmailClient | None = None) -> bool:
    """
    Render and deliver one PENDING digest.

    Returns:
        True if the email was sent, False if it failed or the entry is gone
    """
    settings = get_settings()
    email_client = email_client or get_email_client()

    async with get_async_session() as session:
        entry = await session.get(EmailNotificationQueue, queue_id)
        if entry is None or entry.status != EmailNotificationStatus.PENDING:
            logger.info("Digest no longer pending, skipping", extra={"queue_id": queue_id})
            return False

        conversation = entry.conversation
        recipient = entry.recipient
        if conversation is None or recipient is None:
            await _transition(
                session, queue_id, EmailNotificationStatus.FAILED,
                "Conversation or recipient no longer exists",
            )
            return False

        sender = await session.get(User, conversation.other_participant(recipient.id))
        if sender is None:
            await _transition(
                session, queue_id, EmailNotificationStatus.FAILED, "Sender no longer exists"
            )
            return False

        result = await session.execute(
            select(Message.content, Message.created_at)
            .where(
                Message.conversation_id == conversation.id,
                Message.sender_id != recipient.id,
                Message.archived_at.is_(None),
            )
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(settings.EMAIL_DIGEST_MESSAGE_COUNT)
        )
        recent_messages = [(content, created_at) for content, created_at in result.all()]

        subject, html = render_digest(
            recipient_name=recipient.display_name,
            sender_name=sender.display_name,
            message_count=entry.message_count,
            messages=recent_messages,
            conversation_url=f"{settings.FRONTEND_URL}/messages/{conversation.id}",
            conversation_subject=conversation.subject,
        )

        try:
            provider_id = await email_client.send_email(to=recipient.email, subject=subject, html=html)
        except Exception as e:
            await _transition(session, queue_id, EmailNotificationStatus.FAILED, str(e))
            logger.error(
                f"Failed to send email digest: {e}",
                extra={"queue_id": queue_id, "conversation_id": conversation.id},
            )
            return False

        if not await _transition(session, queue_id, EmailNotificationStatus.SENT):
            logger.warning(
                "Digest was cancelled while sending", extra={"queue_id": queue_id}
            )

    await email_rate_limiter.record_sent(conversation.id, recipient.id)
    logger.info(
        f"Email digest sent (provider id={provider_id}, messages={entry.message_count})",
        extra={"queue_id": queue_id, "conversation_id": conversation.id, "user_id": recipient.id},
    )
    return True


async def send_pending_notifications(email_client: EmailClient | None = None) -> dict[str, int]:
    """
    Flush every PENDING digest.

    Each entry is handled independently; an error on one is logged and
    counted as failed without stopping the batch.

    Returns:
        {"processed": int, "sent": int, "failed": int}
    """
    async with get_async_session() as session:
        result = await session.execute(
            select(EmailNotificationQueue.id)
            .where(EmailNotificationQueue.status == EmailNotificationStatus.PENDING)
            .order_by(EmailNotificationQueue.created_at)
        )
        queue_ids = list(result.scalars().all())

    stats = {"processed": 0, "sent": 0, "failed": 0}
    for queue_id in queue_ids:
        stats["processed"] += 1
        try:
            if await send_notification(queue_id, email_client):
                stats["sent"] += 1
            else:
                stats["failed"] += 1
        except Exception as e:
            stats["failed"] += 1
            logger.error(
                f"Unexpected error processing email digest: {e}",
                extra={"queue_id": queue_id},
                exc_info=True,
            )

    logger.info(
        f"Email digests processed: {stats['processed']} "
        f"(sent={stats['sent']}, failed={stats['failed']})"
    )
    return stats
