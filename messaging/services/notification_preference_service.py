"""Per-user email notification preferences, created lazily with defaults."""

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_async_session
from database.models import EmailFrequency, NotificationPreference, User
from messaging.exceptions import NotFoundError
from messaging.schemas import NotificationPreferenceOut
from messaging.services.access import load_conversation_for_participant

logger = logging.getLogger(__name__)


async def find_preferences(
    session: AsyncSession, user_id: UUID
) -> NotificationPreference | None:
    result = await session.execute(
        select(NotificationPreference).where(NotificationPreference.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_or_create_preferences(
    session: AsyncSession, user_id: UUID
) -> NotificationPreference:
    """Return the user's row, inserting the defaults on first access (commits)."""
    preferences = await find_preferences(session, user_id)
    if preferences is not None:
        return preferences

    if await session.get(User, user_id) is None:
        raise NotFoundError(f"User {user_id} not found")

    preferences = NotificationPreference(
        user_id=user_id,
        email_notifications_enabled=True,
        email_frequency=EmailFrequency.IMMEDIATE,
        muted_conversations=[],
    )
    session.add(preferences)
    try:
        await session.commit()
        logger.info("Created default notification preferences", extra={"user_id": user_id})
    except IntegrityError:
        # Created concurrently by another request
        await session.rollback()
        preferences = await find_preferences(session, user_id)
    return preferences


async def get_preferences(user_id: UUID) -> NotificationPreferenceOut:
    async with get_async_session() as session:
        preferences = await get_or_create_preferences(session, user_id)
        return NotificationPreferenceOut.model_validate(preferences)


async def update_preferences(
    user_id: UUID,
    email_notifications_enabled: bool | None = None,
    email_frequency: EmailFrequency | None = None,
) -> NotificationPreferenceOut:
    async with get_async_session() as session:
        preferences = await get_or_create_preferences(session, user_id)
        if email_notifications_enabled is not None:
            preferences.email_notifications_enabled = email_notifications_enabled
        if email_frequency is not None:
            preferences.email_frequency = email_frequency
        await session.commit()
        await session.refresh(preferences)
        return NotificationPreferenceOut.model_validate(preferences)


async def mute_conversation(user_id: UUID, conversation_id: UUID) -> NotificationPreferenceOut:
    """Stop email digests for one conversation. The caller must be a participant."""
    async with get_async_session() as session:
        await load_conversation_for_participant(session, conversation_id, user_id)
        preferences = await get_or_create_preferences(session, user_id)

        muted = list(preferences.muted_conversations or [])
        if str(conversation_id) not in muted:
            muted.append(str(conversation_id))
            # Reassign so the JSON column is flagged dirty
            preferences.muted_conversations = muted
            await session.commit()
            await session.refresh(preferences)
            logger.info(
                "Conversation muted",
                extra={"user_id": user_id, "conversation_id": conversation_id},
            )
        return NotificationPreferenceOut.model_validate(preferences)


async def unmute_conversation(user_id: UUID, conversation_id: UUID) -> NotificationPreferenceOut:
    async with get_async_session() as session:
        preferences = await get_or_create_preferences(session, user_id)

        muted = [c for c in (preferences.muted_conversations or []) if c != str(conversation_id)]
        if len(muted) != len(preferences.muted_conversations or []):
            preferences.muted_conversations = muted
            await session.commit()
            await session.refresh(preferences)
            logger.info(
                "Conversation unmuted",
                extra={"user_id": user_id, "conversation_id": conversation_id},
            )
        return NotificationPreferenceOut.model_validate(preferences)
