"""API routes acting on a single message."""

from uuid import UUID

from fastapi import APIRouter, Response, status

from api.dependencies import CurrentUser
from messaging.realtime.gateway import get_gateway
from messaging.schemas import ReadReceipt
from messaging.services import message_service

router = APIRouter(prefix="/messaging/messages", tags=["messaging"])


@router.patch("/{message_id}/read", response_model=ReadReceipt)
async def mark_message_read(message_id: UUID, current_user: CurrentUser):
    """
    Mark one message as read. No-op for the caller's own messages and for
    messages already read (`changed` is false).
    """
    receipt = await message_service.mark_as_read(message_id, current_user.user_id)
    await get_gateway().notify_message_read(receipt)
    return receipt


@router.delete("/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message(message_id: UUID, current_user: CurrentUser) -> Response:
    """Delete a message permanently. Only its author may do this."""
    await message_service.delete_message(message_id, current_user.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
