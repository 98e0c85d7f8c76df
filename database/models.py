"""
SQLAlchemy ORM models for the messaging subsystem.

This module defines:
- users, appointments: thin identity/booking collaborators consulted to resolve
  a conversation's participants
- conversations: two-party (salon, client) threads, at most one per appointment
- messages, message_attachments: ordered message history with image attachments
- unread_counters: per (conversation, user) unread cache
- notification_preferences: per-user email notification settings
- email_notification_queue: durable queue of pending email digests

All models use:
- UUID primary keys (auto-generated)
- TIMESTAMP WITH TIME ZONE for datetime fields
- JSONB (JSON outside PostgreSQL) for flexible list storage
- Proper indexes and constraints
"""

from datetime import UTC, datetime
from enum import Enum as PyEnum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    BigInteger,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy import (
    Enum as SQLEnum,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utc_now() -> datetime:
    return datetime.now(UTC)


JSONList = JSON().with_variant(JSONB(), "postgresql")

# Limits shared with request validation
MAX_ATTACHMENTS_PER_MESSAGE = 5
MAX_ATTACHMENT_SIZE_BYTES = 10 * 1024 * 1024
ALLOWED_ATTACHMENT_TYPES = frozenset(
    {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"}
)

# ============================================================================
# Base Class
# ============================================================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# ============================================================================
# Enums
# ============================================================================


class UserRole(str, PyEnum):
    """Role of an identity in the salon platform."""

    SALON = "SALON"
    CLIENT = "CLIENT"


class ConversationStatus(str, PyEnum):
    """Conversation lifecycle status."""

    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class MessageType(str, PyEnum):
    """Kind of message in a conversation."""

    TEXT = "TEXT"
    IMAGE = "IMAGE"
    SYSTEM = "SYSTEM"


class EmailFrequency(str, PyEnum):
    """How often a user wants to be emailed about unread messages."""

    IMMEDIATE = "IMMEDIATE"
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    NEVER = "NEVER"


class EmailNotificationStatus(str, PyEnum):
    """Email digest queue status. SENT and FAILED are terminal."""

    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


# ============================================================================
# Collaborator Models
# ============================================================================


class User(Base):
    """
    User model - Identity resolved from a verified access token.

    Only the fields needed to authorize participants and render sender
    display names live here; account management belongs to the identity service.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    role: Mapped[UserRole] = mapped_column(
        SQLEnum(UserRole, name="user_role"), nullable=False
    )
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    salon_name: Mapped[str | None] = mapped_column(String(150), nullable=True)
    image: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, nullable=False
    )

    @property
    def display_name(self) -> str:
        if self.role == UserRole.SALON and self.salon_name:
            return self.salon_name
        full_name = " ".join(p for p in (self.first_name, self.last_name) if p)
        return full_name or self.email

    def __repr__(self) -> str:
        return f"<User(id={self.id}, role='{self.role.value}')>"


class Appointment(Base):
    """Appointment model - Booking that a conversation may be attached to."""

    __tablename__ = "appointments"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    salon_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    client_user_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    scheduled_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Appointment(id={self.id}, salon_id={self.salon_id})>"


# ============================================================================
# Messaging Models
# ============================================================================


class Conversation(Base):
    """
    Conversation model - Two-party thread between a salon and a client.

    At most one conversation exists per appointment (unique appointment_id).
    last_message_at never moves backwards; it orders conversation lists.
    """

    __tablename__ = "conversations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Participants
    salon_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    client_user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    appointment_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("appointments.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    subject: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[ConversationStatus] = mapped_column(
        SQLEnum(ConversationStatus, name="conversation_status"),
        default=ConversationStatus.ACTIVE,
        nullable=False,
        index=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )
    last_message_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, nullable=False
    )

    # Relationships
    salon: Mapped["User"] = relationship("User", foreign_keys=[salon_id], lazy="selectin")
    client: Mapped["User"] = relationship(
        "User", foreign_keys=[client_user_id], lazy="selectin"
    )

    __table_args__ = (
        CheckConstraint("salon_id <> client_user_id", name="check_conversation_two_parties"),
        Index("idx_conversations_salon_last_message", "salon_id", "last_message_at"),
        Index("idx_conversations_client_last_message", "client_user_id", "last_message_at"),
    )

    def is_participant(self, user_id: UUID) -> bool:
        return user_id in (self.salon_id, self.client_user_id)

    def other_participant(self, user_id: UUID) -> UUID:
        return self.client_user_id if user_id == self.salon_id else self.salon_id

    def __repr__(self) -> str:
        return f"<Conversation(id={self.id}, status='{self.status.value}')>"


class Message(Base):
    """
    Message model - One entry of a conversation's history.

    Messages are never edited. is_read only transitions false -> true.
    archived_at is set by the retention worker (soft delete).
    """

    __tablename__ = "messages"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    conversation_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[MessageType] = mapped_column(
        SQLEnum(MessageType, name="message_type"),
        default=MessageType.TEXT,
        nullable=False,
    )

    # Read status
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, nullable=False
    )
    archived_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    # Relationships
    sender: Mapped["User"] = relationship("User", lazy="selectin")
    attachments: Mapped[list["MessageAttachment"]] = relationship(
        "MessageAttachment",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="MessageAttachment.created_at",
    )

    __table_args__ = (
        CheckConstraint("length(content) > 0", name="check_message_content_not_empty"),
        Index("idx_messages_conversation_created", "conversation_id", "created_at"),
        Index("idx_messages_conversation_unread", "conversation_id", "is_read"),
        Index("idx_messages_retention", "archived_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, conversation_id={self.conversation_id}, type='{self.type.value}')>"


class MessageAttachment(Base):
    """Attachment model - Image referenced by URL, stored by an external service."""

    __tablename__ = "message_attachments"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    message_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_url: Mapped[str] = mapped_column(String(1000), nullable=False)
    file_type: Mapped[str] = mapped_column(String(50), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    storage_key: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            f"file_size > 0 AND file_size <= {MAX_ATTACHMENT_SIZE_BYTES}",
            name="check_attachment_size",
        ),
    )

    def __repr__(self) -> str:
        return f"<MessageAttachment(id={self.id}, file_type='{self.file_type}')>"


class UnreadCounter(Base):
    """
    UnreadCounter model - Cached count of messages a user has not acknowledged.

    One row per (conversation, user). Rows for both participants are created
    with the conversation; the sum over a user's rows is their unread badge.
    """

    __tablename__ = "unread_counters"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    conversation_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    unread_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_unread_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_unread_counter_conversation_user"),
        CheckConstraint("unread_count >= 0", name="check_unread_count_not_negative"),
    )

    def __repr__(self) -> str:
        return f"<UnreadCounter(conversation_id={self.conversation_id}, user_id={self.user_id}, count={self.unread_count})>"


class NotificationPreference(Base):
    """NotificationPreference model - Per-user email settings, created lazily."""

    __tablename__ = "notification_preferences"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    email_notifications_enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true"), nullable=False
    )
    email_frequency: Mapped[EmailFrequency] = mapped_column(
        SQLEnum(EmailFrequency, name="email_frequency"),
        default=EmailFrequency.IMMEDIATE,
        nullable=False,
    )
    # Conversation ids (as strings) the user muted
    muted_conversations: Mapped[list[str]] = mapped_column(
        JSONList, default=list, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    def is_muted(self, conversation_id: UUID) -> bool:
        return str(conversation_id) in (self.muted_conversations or [])

    def __repr__(self) -> str:
        return f"<NotificationPreference(user_id={self.user_id}, enabled={self.email_notifications_enabled})>"


class EmailNotificationQueue(Base):
    """
    EmailNotificationQueue model - Pending email digest for one recipient.

    At most one PENDING entry exists per (conversation, recipient); further
    messages increment message_count. SENT and FAILED rows are history.
    """

    __tablename__ = "email_notification_queue"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    conversation_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    recipient_user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[EmailNotificationStatus] = mapped_column(
        SQLEnum(EmailNotificationStatus, name="email_notification_status"),
        default=EmailNotificationStatus.PENDING,
        nullable=False,
    )
    message_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    conversation: Mapped[Optional["Conversation"]] = relationship(
        "Conversation", lazy="selectin"
    )
    recipient: Mapped[Optional["User"]] = relationship("User", lazy="selectin")

    __table_args__ = (
        CheckConstraint("message_count >= 1", name="check_email_queue_message_count"),
        Index(
            "uq_email_queue_pending_pair",
            "conversation_id",
            "recipient_user_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
        Index("idx_email_queue_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<EmailNotificationQueue(id={self.id}, status='{self.status.value}', count={self.message_count})>"
