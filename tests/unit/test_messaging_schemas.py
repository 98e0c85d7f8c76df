"""Request validation for messages, attachments and realtime payloads."""

from uuid import uuid4

import pytest
from pydantic import ValidationError

from database.models import MAX_ATTACHMENT_SIZE_BYTES, MessageType
from messaging.realtime import events
from messaging.schemas import AttachmentIn, SendMessageRequest, total_pages


def attachment(**overrides) -> dict:
    data = {
        "file_name": "coupe.png",
        "file_url": "https://cdn.example.com/coupe.png",
        "file_type": "image/png",
        "file_size": 2048,
    }
    data.update(overrides)
    return data


class TestSendMessageRequest:
    def test_content_is_trimmed(self):
        request = SendMessageRequest(content="  Bonjour  ")
        assert request.content == "Bonjour"
        assert request.type == MessageType.TEXT

    def test_whitespace_only_content_rejected(self):
        with pytest.raises(ValidationError):
            SendMessageRequest(content="   \n ")

    def test_system_type_rejected(self):
        with pytest.raises(ValidationError, match="SYSTEM"):
            SendMessageRequest(content="Rendez-vous confirmé", type=MessageType.SYSTEM)

    def test_five_attachments_allowed_six_rejected(self):
        SendMessageRequest(content="photos", attachments=[attachment()] * 5)
        with pytest.raises(ValidationError):
            SendMessageRequest(content="photos", attachments=[attachment()] * 6)


class TestAttachmentIn:
    def test_file_type_is_normalized(self):
        assert AttachmentIn(**attachment(file_type="IMAGE/JPEG")).file_type == "image/jpeg"

    def test_non_image_rejected(self):
        with pytest.raises(ValidationError, match="Unsupported attachment type"):
            AttachmentIn(**attachment(file_type="application/pdf"))

    def test_size_limit(self):
        AttachmentIn(**attachment(file_size=MAX_ATTACHMENT_SIZE_BYTES))
        with pytest.raises(ValidationError):
            AttachmentIn(**attachment(file_size=MAX_ATTACHMENT_SIZE_BYTES + 1))
        with pytest.raises(ValidationError):
            AttachmentIn(**attachment(file_size=0))


class TestRealtimePayloads:
    def test_camel_case_keys(self):
        conversation_id = uuid4()
        payload = events.SendMessageEvent.model_validate(
            {"conversationId": str(conversation_id), "content": "Salut"}
        )
        assert payload.conversation_id == conversation_id

    def test_snake_case_keys_accepted(self):
        message_id = uuid4()
        payload = events.MarkAsReadEvent.model_validate({"message_id": str(message_id)})
        assert payload.message_id == message_id

    def test_missing_conversation_id(self):
        with pytest.raises(ValidationError):
            events.ConversationEvent.model_validate({})

    def test_room_name(self):
        conversation_id = uuid4()
        assert events.room_name(conversation_id) == f"conversation:{conversation_id}"


def test_total_pages():
    assert total_pages(0, 20) == 0
    assert total_pages(20, 20) == 1
    assert total_pages(21, 20) == 2
