"""
Integration tests for sending, listing, reading and deleting messages.
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select, update

from database.connection import get_async_session
from database.models import Conversation, Message, MessageAttachment, MessageType, utc_now
from messaging.exceptions import BadRequestError, ForbiddenError, NotFoundError
from messaging.schemas import AttachmentIn
from messaging.services import message_service, unread_counter_service


def photo(name: str = "avant.jpg") -> AttachmentIn:
    return AttachmentIn(
        file_name=name,
        file_url=f"https://cdn.example.com/{name}",
        file_type="image/jpeg",
        file_size=120_000,
        storage_key=f"messages/{name}",
    )


async def last_message_at(conversation_id):
    async with get_async_session() as session:
        return (
            await session.execute(
                select(Conversation.last_message_at).where(Conversation.id == conversation_id)
            )
        ).scalar_one()


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_stores_message_and_counts_it_for_recipient(
        self, conversation, salon, client_user
    ):
        before = await last_message_at(conversation.id)

        sent = await message_service.send_message(client_user.id, conversation.id, "  Bonjour  ")

        assert sent.recipient_id == salon.id
        assert sent.message.content == "Bonjour"
        assert sent.message.is_read is False
        assert sent.message.sender.display_name == "Camille Martin"
        assert await unread_counter_service.get_unread_count(conversation.id, salon.id) == 1
        assert await unread_counter_service.get_unread_count(conversation.id, client_user.id) == 0
        assert await last_message_at(conversation.id) >= before

    @pytest.mark.asyncio
    async def test_attachments_are_stored(self, conversation, client_user):
        sent = await message_service.send_message(
            client_user.id,
            conversation.id,
            "Voici la couleur",
            message_type=MessageType.IMAGE,
            attachments=[photo("avant.jpg"), photo("apres.jpg")],
        )

        assert sent.message.type == MessageType.IMAGE
        assert {a.file_name for a in sent.message.attachments} == {"avant.jpg", "apres.jpg"}
        async with get_async_session() as session:
            stored = (
                await session.execute(
                    select(MessageAttachment).where(
                        MessageAttachment.message_id == sent.message.id
                    )
                )
            ).scalars().all()
        assert len(stored) == 2

    @pytest.mark.asyncio
    async def test_empty_content_rejected(self, conversation, client_user):
        with pytest.raises(BadRequestError):
            await message_service.send_message(client_user.id, conversation.id, "   ")

    @pytest.mark.asyncio
    async def test_too_many_attachments_rejected(self, conversation, client_user):
        with pytest.raises(BadRequestError, match="at most 5"):
            await message_service.send_message(
                client_user.id,
                conversation.id,
                "photos",
                attachments=[photo(f"{i}.jpg") for i in range(6)],
            )

    @pytest.mark.asyncio
    async def test_outsider_cannot_send(self, conversation, outsider):
        with pytest.raises(ForbiddenError):
            await message_service.send_message(outsider.id, conversation.id, "Coucou")

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, client_user):
        with pytest.raises(NotFoundError):
            await message_service.send_message(client_user.id, uuid4(), "Coucou")

    @pytest.mark.asyncio
    async def test_last_message_at_never_moves_backwards(self, conversation):
        future = utc_now() + timedelta(days=1)
        async with get_async_session() as session:
            await session.execute(
                update(Conversation)
                .where(Conversation.id == conversation.id)
                .values(last_message_at=future)
            )
            await session.commit()

        async with get_async_session() as session:
            await message_service.touch_last_message_at(session, conversation.id, utc_now())
            await session.commit()

        assert (await last_message_at(conversation.id)).replace(tzinfo=None) == future.replace(
            tzinfo=None
        )


class TestGetMessages:
    @pytest.mark.asyncio
    async def test_newest_first_with_pagination(self, conversation, salon, client_user):
        for i in range(5):
            await message_service.send_message(client_user.id, conversation.id, f"message {i}")

        first_page = await message_service.get_messages(conversation.id, salon.id, page=1, limit=2)
        last_page = await message_service.get_messages(conversation.id, salon.id, page=3, limit=2)

        assert [m.content for m in first_page.data] == ["message 4", "message 3"]
        assert (first_page.total, first_page.total_pages, first_page.has_more) == (5, 3, True)
        assert [m.content for m in last_page.data] == ["message 0"]
        assert last_page.has_more is False

    @pytest.mark.asyncio
    async def test_reading_any_page_acknowledges_everything(
        self, conversation, salon, client_user
    ):
        for i in range(3):
            await message_service.send_message(client_user.id, conversation.id, f"message {i}")
        await message_service.send_message(salon.id, conversation.id, "Réponse du salon")

        await message_service.get_messages(conversation.id, salon.id, page=1, limit=1)

        assert await unread_counter_service.get_unread_count(conversation.id, salon.id) == 0
        history = await message_service.get_messages(conversation.id, client_user.id)
        by_content = {m.content: m for m in history.data}
        assert all(by_content[f"message {i}"].is_read for i in range(3))
        assert by_content["message 0"].read_at is not None
        assert await unread_counter_service.get_unread_count(conversation.id, client_user.id) == 0

    @pytest.mark.asyncio
    async def test_archived_messages_are_hidden(self, conversation, salon, client_user):
        old = await message_service.send_message(client_user.id, conversation.id, "ancien")
        await message_service.send_message(client_user.id, conversation.id, "récent")
        async with get_async_session() as session:
            await session.execute(
                update(Message).where(Message.id == old.message.id).values(archived_at=utc_now())
            )
            await session.commit()

        history = await message_service.get_messages(conversation.id, salon.id)

        assert [m.content for m in history.data] == ["récent"]
        assert history.total == 1

    @pytest.mark.asyncio
    async def test_outsider_is_forbidden(self, conversation, outsider):
        with pytest.raises(ForbiddenError):
            await message_service.get_messages(conversation.id, outsider.id)


class TestMarkAsRead:
    @pytest.mark.asyncio
    async def test_marks_once(self, conversation, salon, client_user):
        sent = await message_service.send_message(client_user.id, conversation.id, "Bonjour")

        receipt = await message_service.mark_as_read(sent.message.id, salon.id)
        again = await message_service.mark_as_read(sent.message.id, salon.id)

        assert receipt.changed is True
        assert receipt.read_at is not None
        assert receipt.conversation_id == conversation.id
        assert again.changed is False
        assert await unread_counter_service.get_unread_count(conversation.id, salon.id) == 0

    @pytest.mark.asyncio
    async def test_own_message_is_left_alone(self, conversation, client_user):
        sent = await message_service.send_message(client_user.id, conversation.id, "Bonjour")

        receipt = await message_service.mark_as_read(sent.message.id, client_user.id)

        assert receipt.changed is False
        assert receipt.read_at is None

    @pytest.mark.asyncio
    async def test_outsider_is_forbidden(self, conversation, client_user, outsider):
        sent = await message_service.send_message(client_user.id, conversation.id, "Bonjour")

        with pytest.raises(ForbiddenError):
            await message_service.mark_as_read(sent.message.id, outsider.id)

    @pytest.mark.asyncio
    async def test_unknown_message(self, salon):
        with pytest.raises(NotFoundError):
            await message_service.mark_as_read(uuid4(), salon.id)


class TestDeleteMessage:
    @pytest.mark.asyncio
    async def test_author_deletes_and_unread_count_follows(self, conversation, salon, client_user):
        sent = await message_service.send_message(
            client_user.id, conversation.id, "Oups", attachments=[photo()]
        )

        conversation_id = await message_service.delete_message(sent.message.id, client_user.id)

        assert conversation_id == conversation.id
        assert await unread_counter_service.get_unread_count(conversation.id, salon.id) == 0
        async with get_async_session() as session:
            assert await session.get(Message, sent.message.id) is None

    @pytest.mark.asyncio
    async def test_recipient_cannot_delete(self, conversation, salon, client_user):
        sent = await message_service.send_message(client_user.id, conversation.id, "Bonjour")

        with pytest.raises(ForbiddenError, match="your own messages"):
            await message_service.delete_message(sent.message.id, salon.id)
