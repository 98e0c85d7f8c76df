"""
Email fallback: queueing digests for offline recipients, cancelling them on
read, and flushing them through a mocked email client.
"""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from database.connection import get_async_session
from database.models import EmailFrequency, EmailNotificationQueue, EmailNotificationStatus
from messaging.services import (
    conversation_service,
    email_notification_service,
    message_service,
    notification_preference_service,
)
from shared import email_rate_limiter
from shared.email_client import EmailClient, EmailDeliveryError


@pytest.fixture
def email_client() -> AsyncMock:
    client = AsyncMock(spec=EmailClient)
    client.send_email.return_value = "email_123"
    return client


async def queue_entries(conversation_id) -> list[EmailNotificationQueue]:
    async with get_async_session() as session:
        result = await session.execute(
            select(EmailNotificationQueue)
            .where(EmailNotificationQueue.conversation_id == conversation_id)
            .order_by(EmailNotificationQueue.created_at)
        )
        return list(result.scalars().all())


async def client_writes(conversation, client_user, content: str) -> bool:
    """Client sends a message while the salon is offline."""
    sent = await message_service.send_message(client_user.id, conversation.id, content)
    return await email_notification_service.notify_offline_recipient(
        conversation.id, sent.recipient_id
    )


class TestQueueNotification:
    @pytest.mark.asyncio
    async def test_messages_fold_into_one_pending_digest(
        self, conversation, salon, client_user, fake_redis
    ):
        assert await client_writes(conversation, client_user, "Bonjour") is True
        assert await client_writes(conversation, client_user, "Vous êtes ouverts samedi ?") is True

        entries = await queue_entries(conversation.id)
        assert len(entries) == 1
        assert entries[0].recipient_user_id == salon.id
        assert entries[0].status == EmailNotificationStatus.PENDING
        assert entries[0].message_count == 2

    @pytest.mark.asyncio
    async def test_opening_a_digest_opens_a_rate_limit_window(
        self, conversation, salon, client_user, fake_redis
    ):
        await client_writes(conversation, client_user, "Bonjour")

        assert await email_rate_limiter.can_send(conversation.id, salon.id) is False

    @pytest.mark.asyncio
    async def test_disabled_notifications(self, conversation, salon, client_user, fake_redis):
        await notification_preference_service.update_preferences(
            salon.id, email_notifications_enabled=False
        )

        assert await client_writes(conversation, client_user, "Bonjour") is False
        assert await queue_entries(conversation.id) == []

    @pytest.mark.asyncio
    async def test_frequency_never(self, conversation, salon, client_user, fake_redis):
        await notification_preference_service.update_preferences(
            salon.id, email_frequency=EmailFrequency.NEVER
        )

        assert await client_writes(conversation, client_user, "Bonjour") is False

    @pytest.mark.asyncio
    async def test_muted_conversation(self, conversation, salon, client_user, fake_redis):
        await notification_preference_service.mute_conversation(salon.id, conversation.id)

        assert await client_writes(conversation, client_user, "Bonjour") is False
        assert await queue_entries(conversation.id) == []

    @pytest.mark.asyncio
    async def test_redis_outage_still_queues(self, conversation, client_user, broken_redis):
        assert await client_writes(conversation, client_user, "Bonjour") is True
        assert len(await queue_entries(conversation.id)) == 1


class TestCancelOnRead:
    @pytest.mark.asyncio
    async def test_reading_deletes_pending_digest_and_closes_window(
        self, conversation, salon, client_user, fake_redis
    ):
        await client_writes(conversation, client_user, "Bonjour")

        await message_service.get_messages(conversation.id, salon.id)

        assert await queue_entries(conversation.id) == []
        assert await email_rate_limiter.can_send(conversation.id, salon.id) is True

    @pytest.mark.asyncio
    async def test_reading_as_the_other_participant_keeps_digest(
        self, conversation, client_user, fake_redis
    ):
        await client_writes(conversation, client_user, "Bonjour")

        await message_service.get_messages(conversation.id, client_user.id)

        assert len(await queue_entries(conversation.id)) == 1


class TestFlush:
    @pytest.mark.asyncio
    async def test_sends_digest_and_marks_sent(
        self, conversation, salon, client_user, fake_redis, email_client
    ):
        await client_writes(conversation, client_user, "Bonjour")
        await client_writes(conversation, client_user, "Pour demain 10h ?")

        stats = await email_notification_service.send_pending_notifications(email_client)

        assert stats == {"processed": 1, "sent": 1, "failed": 0}
        kwargs = email_client.send_email.await_args.kwargs
        assert kwargs["to"] == salon.email
        assert kwargs["subject"] == "2 nouveaux messages de Camille Martin"
        assert "Pour demain 10h ?" in kwargs["html"]

        [entry] = await queue_entries(conversation.id)
        assert entry.status == EmailNotificationStatus.SENT
        assert entry.sent_at is not None
        assert await email_rate_limiter.get_ttl(conversation.id, salon.id) is not None

    @pytest.mark.asyncio
    async def test_no_new_digest_inside_window_after_send(
        self, conversation, client_user, fake_redis, email_client
    ):
        await client_writes(conversation, client_user, "Bonjour")
        await email_notification_service.send_pending_notifications(email_client)

        assert await client_writes(conversation, client_user, "Toujours là ?") is False
        assert [e.status for e in await queue_entries(conversation.id)] == [
            EmailNotificationStatus.SENT
        ]

    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_not_retried(
        self, conversation, client_user, fake_redis, email_client
    ):
        email_client.send_email.side_effect = EmailDeliveryError("Failed to send email: 422")
        await client_writes(conversation, client_user, "Bonjour")

        first = await email_notification_service.send_pending_notifications(email_client)
        second = await email_notification_service.send_pending_notifications(email_client)

        assert first == {"processed": 1, "sent": 0, "failed": 1}
        assert second == {"processed": 0, "sent": 0, "failed": 0}
        [entry] = await queue_entries(conversation.id)
        assert entry.status == EmailNotificationStatus.FAILED
        assert "422" in entry.failure_reason

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(
        self, salon, client_user, outsider, fake_redis, email_client
    ):
        first = await conversation_service.create_conversation(salon.id, client_user.id)
        second = await conversation_service.create_conversation(salon.id, outsider.id)
        await client_writes(first, client_user, "Bonjour")
        await client_writes(second, outsider, "Bonsoir")
        email_client.send_email.side_effect = [EmailDeliveryError("bounced"), "email_456"]

        stats = await email_notification_service.send_pending_notifications(email_client)

        assert stats == {"processed": 2, "sent": 1, "failed": 1}

    @pytest.mark.asyncio
    async def test_skips_entry_no_longer_pending(self, conversation, client_user, fake_redis, email_client):
        await client_writes(conversation, client_user, "Bonjour")
        [entry] = await queue_entries(conversation.id)
        await email_notification_service.send_pending_notifications(email_client)

        assert await email_notification_service.send_notification(entry.id, email_client) is False
        assert email_client.send_email.await_count == 1
