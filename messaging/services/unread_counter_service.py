"""
Per (conversation, user) unread counters.

Mutations take the caller's session so they commit together with the message
or read-state change that caused them. Each mutation is a single UPDATE on the
counter row, so concurrent senders never lose an increment. Rows are created
with the conversation; an UPDATE that matches nothing inserts the row instead.
"""

import logging
from uuid import UUID

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_async_session
from database.models import UnreadCounter, utc_now

logger = logging.getLogger(__name__)


async def ensure_counters(
    session: AsyncSession, conversation_id: UUID, user_ids: list[UUID]
) -> None:
    """Create zeroed counter rows for a new conversation's participants."""
    for user_id in user_ids:
        session.add(UnreadCounter(conversation_id=conversation_id, user_id=user_id, unread_count=0))
    await session.flush()


async def increment_unread_count(
    session: AsyncSession, conversation_id: UUID, user_id: UUID
) -> None:
    now = utc_now()
    result = await session.execute(
        update(UnreadCounter)
        .where(
            UnreadCounter.conversation_id == conversation_id,
            UnreadCounter.user_id == user_id,
        )
        .values(
            unread_count=UnreadCounter.unread_count + 1,
            last_unread_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        return

    logger.debug(
        "Unread counter missing, creating it",
        extra={"conversation_id": conversation_id, "user_id": user_id},
    )
    session.add(
        UnreadCounter(
            conversation_id=conversation_id,
            user_id=user_id,
            unread_count=1,
            last_unread_at=now,
        )
    )
    await session.flush()


async def decrement_unread_count(
    session: AsyncSession, conversation_id: UUID, user_id: UUID
) -> None:
    """Decrease by one, never below zero."""
    await session.execute(
        update(UnreadCounter)
        .where(
            UnreadCounter.conversation_id == conversation_id,
            UnreadCounter.user_id == user_id,
        )
        .values(
            unread_count=case(
                (UnreadCounter.unread_count > 0, UnreadCounter.unread_count - 1),
                else_=0,
            ),
            updated_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )


async def reset_unread_count(
    session: AsyncSession, conversation_id: UUID, user_id: UUID
) -> None:
    await session.execute(
        update(UnreadCounter)
        .where(
            UnreadCounter.conversation_id == conversation_id,
            UnreadCounter.user_id == user_id,
        )
        .values(unread_count=0, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )


async def count_for(session: AsyncSession, conversation_id: UUID, user_id: UUID) -> int:
    result = await session.execute(
        select(UnreadCounter.unread_count).where(
            UnreadCounter.conversation_id == conversation_id,
            UnreadCounter.user_id == user_id,
        )
    )
    return result.scalar_one_or_none() or 0


async def get_unread_count(conversation_id: UUID, user_id: UUID) -> int:
    """Unread messages for one user in one conversation."""
    async with get_async_session() as session:
        return await count_for(session, conversation_id, user_id)


async def get_total_unread_count(user_id: UUID) -> int:
    """Sum of the user's counters across all conversations (the unread badge)."""
    async with get_async_session() as session:
        result = await session.execute(
            select(func.coalesce(func.sum(UnreadCounter.unread_count), 0)).where(
                UnreadCounter.user_id == user_id
            )
        )
        return int(result.scalar_one())


async def get_unread_counts(user_id: UUID, conversation_ids: list[UUID]) -> dict[UUID, int]:
    """Counters for several conversations at once, missing rows read as 0."""
    if not conversation_ids:
        return {}
    async with get_async_session() as session:
        result = await session.execute(
            select(UnreadCounter.conversation_id, UnreadCounter.unread_count).where(
                UnreadCounter.user_id == user_id,
                UnreadCounter.conversation_id.in_(conversation_ids),
            )
        )
        counts = {conversation_id: count for conversation_id, count in result.all()}
    return {conversation_id: counts.get(conversation_id, 0) for conversation_id in conversation_ids}
