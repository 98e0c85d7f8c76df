"""
API routes for salon <-> client conversations and their messages.

Every route requires a bearer token. Conversation-scoped routes also go
through require_conversation_access, which loads the conversation once,
rejects non-participants before the handler runs and hands the loaded row
to the services. Sends and reads made over REST are fanned out to live
WebSocket clients exactly like those made over the socket.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status

from api.dependencies import ConversationAccess, CurrentUser, require_salon_role
from database.models import ConversationStatus
from messaging.realtime.gateway import get_gateway
from messaging.schemas import (
    ConversationOut,
    CreateConversationRequest,
    MessageOut,
    PaginatedConversations,
    PaginatedMessages,
    SendMessageRequest,
    UnreadTotal,
    UpdateConversationRequest,
)
from messaging.services import conversation_service, message_service, unread_counter_service
from shared.auth import AuthenticatedUser


router = APIRouter(prefix="/messaging/conversations", tags=["messaging"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=ConversationOut)
async def create_conversation(body: CreateConversationRequest, current_user: CurrentUser):
    """
    Start a conversation with a client.

    Idempotent per appointment: if a conversation already exists for
    `appointment_id`, it is returned unchanged.

    **Errors:**
    - **400**: Counterpart is not a client, or caller is not a salon
    - **404**: Client or appointment not found
    """
    return await conversation_service.create_conversation(
        initiator_id=current_user.user_id,
        counterpart_id=body.client_user_id,
        appointment_id=body.appointment_id,
        subject=body.subject,
        first_message=body.first_message,
    )


@router.get("", response_model=PaginatedConversations)
async def list_conversations(
    current_user: CurrentUser,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int | None, Query(ge=1, le=100)] = None,
    conversation_status: Annotated[ConversationStatus | None, Query(alias="status")] = None,
):
    """
    List the caller's conversations, most recent activity first.

    **Parameters:**
    - **page**: Page number (starts at 1)
    - **limit**: Page size (1-100, default: CONVERSATIONS_PAGE_SIZE)
    - **status**: Optional ACTIVE / ARCHIVED filter

    Each item carries the caller's own unread count and the latest message.
    """
    return await conversation_service.get_conversations(
        current_user.user_id, page=page, limit=limit, status=conversation_status
    )


@router.get("/unread/total", response_model=UnreadTotal)
async def get_total_unread(current_user: CurrentUser):
    """Unread badge: sum of the caller's unread counters."""
    total = await unread_counter_service.get_total_unread_count(current_user.user_id)
    return UnreadTotal(total=total)


@router.get("/unread", response_model=list[ConversationOut])
async def list_unread_conversations(
    current_user: Annotated[AuthenticatedUser, Depends(require_salon_role)],
):
    """Up to 10 active conversations with unread client messages (salon dashboard)."""
    return await conversation_service.get_unread_conversations(current_user.user_id)


@router.get("/{conversation_id}", response_model=ConversationOut)
async def get_conversation(
    conversation_id: UUID, conversation: ConversationAccess, current_user: CurrentUser
):
    """Open a conversation. Marks every message from the other participant as read."""
    result = await conversation_service.get_conversation_by_id(
        conversation_id, current_user.user_id, conversation=conversation
    )
    await get_gateway().send_unread_total(current_user.user_id)
    return result


@router.patch("/{conversation_id}", response_model=ConversationOut)
async def update_conversation(
    conversation_id: UUID,
    body: UpdateConversationRequest,
    conversation: ConversationAccess,
    current_user: CurrentUser,
):
    """Change the subject or status. Either participant may do this."""
    return await conversation_service.update_conversation(
        conversation_id, current_user.user_id, subject=body.subject,
        status=body.status,
        conversation=conversation,
    )


@router.patch("/{conversation_id}/archive")
async def toggle_archive(
    conversation_id: UUID, conversation: ConversationAccess, current_user: CurrentUser
) -> dict[str, str]:
    """Toggle ACTIVE <-> ARCHIVED. Salon only."""
    new_status = await conversation_service.archive_conversation(
        conversation_id, current_user.user_id, conversation=conversation
    )
    return {"status": new_status.value}


@router.patch("/{conversation_id}/mark-read")
async def mark_conversation_read(
    conversation_id: UUID, conversation: ConversationAccess, current_user: CurrentUser
) -> dict[str, int]:
    """Mark every message from the other participant as read."""
    marked = await conversation_service.mark_all_as_read(
        conversation_id, current_user.user_id, conversation=conversation
    )

    gateway = get_gateway()
    if marked:
        await gateway.notify_conversation_read(conversation_id, current_user.user_id)
    await gateway.send_unread_total(current_user.user_id)
    return {"marked": marked}


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(
    conversation_id: UUID, conversation: ConversationAccess, current_user: CurrentUser
) -> Response:
    """Permanently delete the conversation and its history. Salon only."""
    await conversation_service.delete_conversation(
        conversation_id, current_user.user_id, conversation=conversation
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{conversation_id}/messages", response_model=PaginatedMessages)
async def list_messages(
    conversation_id: UUID,
    conversation: ConversationAccess,
    current_user: CurrentUser,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int | None, Query(ge=1, le=100)] = None,
):
    """
    Message history, newest first.

    Reading any page acknowledges the conversation: messages from the other
    participant are marked read, the caller's unread counter is reset and any
    pending email digest for the caller is cancelled.

    **Returns:** `{data, total, page, limit, total_pages, has_more}`
    """
    result = await message_service.get_messages(
        conversation_id, current_user.user_id, page=page, limit=limit, conversation=conversation
    )
    await get_gateway().send_unread_total(current_user.user_id)
    return result


@router.post(
    "/{conversation_id}/messages",
    status_code=status.HTTP_201_CREATED,
    response_model=MessageOut,
)
async def send_message(
    conversation_id: UUID,
    body: SendMessageRequest,
    conversation: ConversationAccess,
    current_user: CurrentUser,
):
    """
    Send a message. Live participants receive it over the socket; an offline
    recipient gets it folded into an email digest.

    **Errors:**
    - **400**: Empty content, more than 5 attachments, or unsupported attachment
    - **403**: Caller is not a participant
    """
    sent = await message_service.send_message(
        sender_id=current_user.user_id,
        conversation_id=conversation_id,
        content=body.content,
        message_type=body.type,
        attachments=body.attachments,
        conversation=conversation,
    )
    await get_gateway().dispatch_new_message(sent)
    return sent.message
