"""API routes for the caller's email notification preferences."""

from uuid import UUID

from fastapi import APIRouter

from api.dependencies import CurrentUser
from messaging.schemas import (
    MuteConversationRequest,
    NotificationPreferenceOut,
    UpdateNotificationPreferenceRequest,
)
from messaging.services import notification_preference_service

router = APIRouter(prefix="/notification-preferences", tags=["notification-preferences"])


@router.get("", response_model=NotificationPreferenceOut)
async def get_preferences(current_user: CurrentUser):
    """Current preferences. Defaults are created on first access."""
    return await notification_preference_service.get_preferences(current_user.user_id)


@router.patch("", response_model=NotificationPreferenceOut)
async def update_preferences(body: UpdateNotificationPreferenceRequest, current_user: CurrentUser):
    return await notification_preference_service.update_preferences(
        current_user.user_id,
        email_notifications_enabled=body.email_notifications_enabled,
        email_frequency=body.email_frequency,
    )


@router.post("/mute", response_model=NotificationPreferenceOut)
async def mute_conversation(body: MuteConversationRequest, current_user: CurrentUser):
    """Stop email digests for one conversation."""
    return await notification_preference_service.mute_conversation(
        current_user.user_id, body.conversation_id
    )


@router.delete("/mute/{conversation_id}", response_model=NotificationPreferenceOut)
async def unmute_conversation(conversation_id: UUID, current_user: CurrentUser):
    return await notification_preference_service.unmute_conversation(
        current_user.user_id, conversation_id
    )
