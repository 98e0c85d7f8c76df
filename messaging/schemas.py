"""Pydantic models for messaging requests, responses and realtime payloads."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from database.models import (
    ALLOWED_ATTACHMENT_TYPES,
    MAX_ATTACHMENT_SIZE_BYTES,
    MAX_ATTACHMENTS_PER_MESSAGE,
    ConversationStatus,
    EmailFrequency,
    MessageType,
    UserRole,
)

MAX_MESSAGE_LENGTH = 5000


# ============================================================================
# Requests
# ============================================================================


class AttachmentIn(BaseModel):
    """Image already uploaded to external storage."""

    file_name: str = Field(min_length=1, max_length=255)
    file_url: str = Field(min_length=1, max_length=1000)
    file_type: str
    file_size: int = Field(gt=0, le=MAX_ATTACHMENT_SIZE_BYTES)
    storage_key: str | None = Field(default=None, max_length=500)

    @field_validator("file_type")
    @classmethod
    def validate_file_type(cls, v: str) -> str:
        v = v.lower()
        if v not in ALLOWED_ATTACHMENT_TYPES:
            raise ValueError(
                f"Unsupported attachment type '{v}'. Allowed: {', '.join(sorted(ALLOWED_ATTACHMENT_TYPES))}"
            )
        return v


class SendMessageRequest(BaseModel):
    content: str = Field(max_length=MAX_MESSAGE_LENGTH)
    type: MessageType = MessageType.TEXT
    attachments: list[AttachmentIn] = Field(
        default_factory=list, max_length=MAX_ATTACHMENTS_PER_MESSAGE
    )

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Message content cannot be empty")
        return v

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: MessageType) -> MessageType:
        # SYSTEM messages are only produced server-side
        if v == MessageType.SYSTEM:
            raise ValueError("SYSTEM messages cannot be sent by users")
        return v


class CreateConversationRequest(BaseModel):
    client_user_id: UUID
    appointment_id: UUID | None = None
    subject: str | None = Field(default=None, max_length=200)
    first_message: str | None = Field(default=None, max_length=MAX_MESSAGE_LENGTH)


class UpdateConversationRequest(BaseModel):
    subject: str | None = Field(default=None, max_length=200)
    status: ConversationStatus | None = None


class UpdateNotificationPreferenceRequest(BaseModel):
    email_notifications_enabled: bool | None = None
    email_frequency: EmailFrequency | None = None


class MuteConversationRequest(BaseModel):
    conversation_id: UUID


# ============================================================================
# Responses
# ============================================================================


class ParticipantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    role: UserRole
    display_name: str
    image: str | None = None


class AttachmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    file_name: str
    file_url: str
    file_type: str
    file_size: int
    storage_key: str | None = None


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    conversation_id: UUID
    sender_id: UUID
    sender: ParticipantOut | None = None
    content: str
    type: MessageType
    is_read: bool
    read_at: datetime | None = None
    created_at: datetime
    attachments: list[AttachmentOut] = []


class SentMessage(BaseModel):
    """Result of send_message: the stored message plus who it is addressed to."""

    message: MessageOut
    recipient_id: UUID


class ReadReceipt(BaseModel):
    message_id: UUID
    conversation_id: UUID
    reader_id: UUID
    read_at: datetime | None
    changed: bool


class ConversationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    salon_id: UUID
    client_user_id: UUID
    appointment_id: UUID | None = None
    subject: str | None = None
    status: ConversationStatus
    created_at: datetime
    updated_at: datetime
    last_message_at: datetime
    salon: ParticipantOut | None = None
    client: ParticipantOut | None = None
    last_message: MessageOut | None = None
    unread_count: int = 0


class PaginatedConversations(BaseModel):
    data: list[ConversationOut]
    total: int
    page: int
    limit: int
    total_pages: int


class PaginatedMessages(BaseModel):
    data: list[MessageOut]
    total: int
    page: int
    limit: int
    total_pages: int
    has_more: bool


class UnreadTotal(BaseModel):
    total: int


class NotificationPreferenceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    email_notifications_enabled: bool
    email_frequency: EmailFrequency
    muted_conversations: list[str]
    updated_at: datetime


def total_pages(total: int, limit: int) -> int:
    return (total + limit - 1) // limit if limit else 0
