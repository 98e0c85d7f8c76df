"""Realtime event names and inbound payload models."""

from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from messaging.schemas import SendMessageRequest

# Client -> server
JOIN_CONVERSATION = "join-conversation"
LEAVE_CONVERSATION = "leave-conversation"
SEND_MESSAGE = "send-message"
MARK_AS_READ = "mark-as-read"
MARK_CONVERSATION_AS_READ = "mark-conversation-as-read"
USER_TYPING = "user-typing"
USER_STOPPED_TYPING = "user-stopped-typing"

# Server -> client
NEW_MESSAGE = "new-message"
MESSAGE_READ = "message-read"
CONVERSATION_READ = "conversation-read"
USER_JOINED = "user-joined"
USER_ONLINE = "user-online"
USER_OFFLINE = "user-offline"
UNREAD_COUNT_UPDATED = "unread-count-updated"
CONVERSATION_HISTORY = "conversation-history"
ERROR = "error"


def room_name(conversation_id: UUID | str) -> str:
    return f"conversation:{conversation_id}"


def room_conversation_id(room: str) -> str:
    return room.split(":", 1)[1]


class _Payload(BaseModel):
    # Browser clients send camelCase keys
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ConversationEvent(_Payload):
    conversation_id: UUID = Field(alias="conversationId")


class SendMessageEvent(SendMessageRequest):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    conversation_id: UUID = Field(alias="conversationId")


class MarkAsReadEvent(_Payload):
    message_id: UUID = Field(alias="messageId")
