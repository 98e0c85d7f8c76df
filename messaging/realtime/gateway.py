"""
Realtime messaging gateway.

One WebSocket per browser tab or device. Frames are JSON objects
{"event": <name>, "data": <object>} in both directions.

Connection lifecycle:
    connect     validate the token (close 1008 if invalid), register the
                connection, mark it online in Redis, announce `user-online`
                if this is the user's first connection anywhere, push the
                user's unread total
    events      handled one at a time per connection, in arrival order
    disconnect  leave rooms, remove the connection from Redis, announce
                `user-offline` only when the user's last connection closed

Every conversation-scoped event re-checks participation through the
services; failures come back as an `error` event and the socket stays open.
"""

import json
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from fastapi import WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from messaging.exceptions import MessagingError
from messaging.realtime import events
from messaging.realtime.broadcaster import EventBroadcaster
from messaging.realtime.session_registry import Connection, SessionRegistry
from messaging.schemas import ReadReceipt, SentMessage
from messaging.services import (
    conversation_service,
    email_notification_service,
    message_service,
    unread_counter_service,
)
from shared.auth import InvalidTokenError, authenticate_token
from shared.config import get_settings
from shared.presence import PresenceTracker

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, dict[str, Any]], Awaitable[None]]


class MessagingGateway:
    def __init__(
        self,
        registry: SessionRegistry | None = None,
        presence: PresenceTracker | None = None,
        broadcaster: EventBroadcaster | None = None,
    ):
        self.registry = registry or SessionRegistry()
        self.presence = presence or PresenceTracker()
        self.broadcaster = broadcaster or EventBroadcaster(self.registry)
        self._handlers: dict[str, Handler] = {
            events.JOIN_CONVERSATION: self.handle_join_conversation,
            events.LEAVE_CONVERSATION: self.handle_leave_conversation,
            events.SEND_MESSAGE: self.handle_send_message,
            events.MARK_AS_READ: self.handle_mark_as_read,
            events.MARK_CONVERSATION_AS_READ: self.handle_mark_conversation_as_read,
            events.USER_TYPING: self.handle_typing,
            events.USER_STOPPED_TYPING: self.handle_stopped_typing,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self.broadcaster.start()

    async def stop(self) -> None:
        await self.broadcaster.stop()
        for connection in self.registry.all_connections():
            try:
                await connection.websocket.close(code=status.WS_1001_GOING_AWAY)
            except Exception as e:
                logger.debug(f"Error closing socket on shutdown: {e}")

    async def serve(self, websocket: WebSocket, token: str | None) -> None:
        """Run one connection until the client goes away."""
        connection = await self.connect(websocket, token)
        if connection is None:
            return

        try:
            while True:
                raw = await websocket.receive_text()
                await self.handle_frame(connection, raw)
        except WebSocketDisconnect:
            pass
        finally:
            await self.disconnect(connection)

    async def connect(self, websocket: WebSocket, token: str | None) -> Connection | None:
        try:
            user = await authenticate_token(token)
        except InvalidTokenError as e:
            logger.info(f"Rejected realtime connection: {e}")
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return None

        await websocket.accept()
        connection = self.registry.register(websocket, user.user_id)

        live_connections = await self.presence.mark_online(user.user_id, connection.id)
        if live_connections is None:
            # Redis unavailable, fall back to what this process knows
            live_connections = len(self.registry.connections_for_user(user.user_id))
        if live_connections == 1:
            await self.broadcaster.to_all(
                events.USER_ONLINE,
                {"user_id": str(user.user_id)},
                exclude_connection=connection.id,
            )

        logger.info(
            f"Realtime connection opened ({live_connections} for user)",
            extra={"user_id": user.user_id, "connection_id": connection.id},
        )

        total = await self._safe_total_unread(user.user_id)
        await connection.send(events.UNREAD_COUNT_UPDATED, {"total": total})
        return connection

    async def disconnect(self, connection: Connection) -> None:
        """Best-effort cleanup. Never raises."""
        user_id = connection.user_id
        rooms = set(connection.rooms)
        self.registry.unregister(connection.id)

        for room in rooms:
            await self.presence.leave_room(
                events.room_conversation_id(room), user_id, connection.id
            )

        if not self.registry.has_user(user_id):
            # Rooms typed in without joining
            rooms.update(self.registry.typing_rooms(user_id))
        for room in rooms:
            if not self.registry.is_user_in_room(user_id, room):
                await self._stop_typing(room, events.room_conversation_id(room), user_id)

        fully_offline = await self.presence.remove_connection(user_id, connection.id)
        if fully_offline and not self.registry.has_user(user_id):
            await self.broadcaster.to_all(events.USER_OFFLINE, {"user_id": str(user_id)})

        logger.info(
            f"Realtime connection closed (user offline={fully_offline})",
            extra={"user_id": user_id, "connection_id": connection.id},
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle_frame(self, connection: Connection, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            await self._send_error(connection, None, "Frames must be JSON objects", 400)
            return

        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            await self._send_error(connection, None, "Frames need an 'event' name", 400)
            return

        await self.dispatch(connection, frame["event"], frame.get("data") or {})

    async def dispatch(self, connection: Connection, event: str, data: Any) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            await self._send_error(connection, event, f"Unknown event '{event}'", 400)
            return

        await self.presence.refresh(
            connection.user_id,
            [events.room_conversation_id(room) for room in connection.rooms],
        )

        try:
            await handler(connection, data if isinstance(data, dict) else {})
        except ValidationError as e:
            await self._send_error(connection, event, _validation_message(e), 400)
        except MessagingError as e:
            await self._send_error(connection, event, e.message, e.status_code)
        except Exception as e:
            logger.error(
                f"Unhandled error in realtime handler '{event}': {e}",
                extra={"user_id": connection.user_id, "connection_id": connection.id},
                exc_info=True,
            )
            await self._send_error(connection, event, "Internal server error", 500)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_join_conversation(self, connection: Connection, data: dict[str, Any]) -> None:
        payload = events.ConversationEvent.model_validate(data)
        conversation_id = payload.conversation_id
        user_id = connection.user_id

        await conversation_service.get_conversation_participants(conversation_id, user_id)

        room = events.room_name(conversation_id)
        self.registry.join(connection.id, room)
        await self.presence.join_room(conversation_id, user_id, connection.id)

        history = await message_service.get_messages(
            conversation_id, user_id, page=1, limit=get_settings().MESSAGES_PAGE_SIZE
        )
        await connection.send(
            events.CONVERSATION_HISTORY,
            {"conversation_id": str(conversation_id), **history.model_dump(mode="json")},
        )
        await self.broadcaster.to_room(
            room,
            events.USER_JOINED,
            {"conversation_id": str(conversation_id), "user_id": str(user_id)},
            exclude_user=user_id,
        )
        await self.send_unread_total(user_id)

    async def handle_leave_conversation(self, connection: Connection, data: dict[str, Any]) -> None:
        payload = events.ConversationEvent.model_validate(data)
        conversation_id = payload.conversation_id
        user_id = connection.user_id

        marked = await conversation_service.mark_all_as_read(conversation_id, user_id)

        room = events.room_name(conversation_id)
        self.registry.leave(connection.id, room)
        await self.presence.leave_room(conversation_id, user_id, connection.id)
        if not self.registry.is_user_in_room(user_id, room):
            await self._stop_typing(room, str(conversation_id), user_id)

        if marked:
            await self.notify_conversation_read(conversation_id, user_id)
        await self.send_unread_total(user_id)

    async def handle_send_message(self, connection: Connection, data: dict[str, Any]) -> None:
        payload = events.SendMessageEvent.model_validate(data)

        sent = await message_service.send_message(
            sender_id=connection.user_id,
            conversation_id=payload.conversation_id,
            content=payload.content,
            message_type=payload.type,
            attachments=payload.attachments,
        )

        room = events.room_name(payload.conversation_id)
        await self._stop_typing(room, str(payload.conversation_id), connection.user_id)
        await self.dispatch_new_message(sent)

    async def handle_mark_as_read(self, connection: Connection, data: dict[str, Any]) -> None:
        payload = events.MarkAsReadEvent.model_validate(data)
        receipt = await message_service.mark_as_read(payload.message_id, connection.user_id)
        await self.notify_message_read(receipt)

    async def handle_mark_conversation_as_read(
        self, connection: Connection, data: dict[str, Any]
    ) -> None:
        payload = events.ConversationEvent.model_validate(data)
        marked = await conversation_service.mark_all_as_read(
            payload.conversation_id, connection.user_id
        )
        if marked:
            await self.notify_conversation_read(payload.conversation_id, connection.user_id)
        await self.send_unread_total(connection.user_id)

    async def handle_typing(self, connection: Connection, data: dict[str, Any]) -> None:
        payload = events.ConversationEvent.model_validate(data)
        room = await self._authorized_room(connection, payload.conversation_id)

        self.registry.start_typing(room, connection.user_id)
        await self.broadcaster.to_room(
            room,
            events.USER_TYPING,
            {"conversation_id": str(payload.conversation_id), "user_id": str(connection.user_id)},
            exclude_user=connection.user_id,
        )

    async def handle_stopped_typing(self, connection: Connection, data: dict[str, Any]) -> None:
        payload = events.ConversationEvent.model_validate(data)
        room = await self._authorized_room(connection, payload.conversation_id)
        await self._stop_typing(room, str(payload.conversation_id), connection.user_id, force=True)

    # ------------------------------------------------------------------
    # Fan-out shared with the REST API
    # ------------------------------------------------------------------

    async def dispatch_new_message(self, sent: SentMessage) -> None:
        """
        Deliver a stored message and decide whether the recipient needs an email.

        Recipient viewing the room (here or on another process): the message is
        acknowledged on their behalf and no email is considered. Otherwise the
        recipient's badge is refreshed and, if they have no live connection
        anywhere, the email fallback runs.
        """
        message = sent.message
        conversation_id = message.conversation_id
        recipient_id = sent.recipient_id
        room = events.room_name(conversation_id)

        recipient_viewing = self.registry.is_user_in_room(
            recipient_id, room
        ) or await self.presence.is_viewing(conversation_id, recipient_id)

        payload = message.model_dump(mode="json")
        if recipient_viewing:
            try:
                await conversation_service.mark_all_as_read(conversation_id, recipient_id)
                payload["is_read"] = True
                payload["read_at"] = datetime.now(UTC).isoformat()
            except MessagingError as e:
                logger.warning(
                    f"Could not acknowledge message for viewing recipient: {e.message}",
                    extra={"conversation_id": conversation_id, "user_id": recipient_id},
                )

        await self.broadcaster.to_room(room, events.NEW_MESSAGE, payload)
        await self.send_unread_total(recipient_id)

        if recipient_viewing:
            return

        if self.registry.has_user(recipient_id):
            return
        if await self.presence.is_online(recipient_id):
            return

        try:
            await email_notification_service.notify_offline_recipient(conversation_id, recipient_id)
        except Exception as e:
            logger.error(
                f"Failed to queue email notification: {e}",
                extra={"conversation_id": conversation_id, "user_id": recipient_id},
                exc_info=True,
            )

    async def notify_message_read(self, receipt: ReadReceipt) -> None:
        if receipt.changed:
            await self.broadcaster.to_room(
                events.room_name(receipt.conversation_id),
                events.MESSAGE_READ,
                {
                    "message_id": str(receipt.message_id),
                    "conversation_id": str(receipt.conversation_id),
                    "reader_id": str(receipt.reader_id),
                    "read_at": receipt.read_at.isoformat() if receipt.read_at else None,
                },
            )
        await self.send_unread_total(receipt.reader_id)

    async def notify_conversation_read(self, conversation_id: UUID, reader_id: UUID) -> None:
        await self.broadcaster.to_room(
            events.room_name(conversation_id),
            events.CONVERSATION_READ,
            {
                "conversation_id": str(conversation_id),
                "reader_id": str(reader_id),
                "read_at": datetime.now(UTC).isoformat(),
            },
        )

    async def send_unread_total(self, user_id: UUID) -> None:
        """Push the user's unread badge to all of their connections, on every process."""
        total = await self._safe_total_unread(user_id)
        await self.broadcaster.to_user(user_id, events.UNREAD_COUNT_UPDATED, {"total": total})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _authorized_room(self, connection: Connection, conversation_id: UUID) -> str:
        room = events.room_name(conversation_id)
        if room not in connection.rooms:
            await conversation_service.get_conversation_participants(
                conversation_id, connection.user_id
            )
        return room

    async def _stop_typing(
        self, room: str, conversation_id: str, user_id: UUID, force: bool = False
    ) -> None:
        was_typing = self.registry.stop_typing(room, user_id)
        if was_typing or force:
            await self.broadcaster.to_room(
                room,
                events.USER_STOPPED_TYPING,
                {"conversation_id": conversation_id, "user_id": str(user_id)},
                exclude_user=user_id,
            )

    async def _safe_total_unread(self, user_id: UUID) -> int:
        try:
            return await unread_counter_service.get_total_unread_count(user_id)
        except Exception as e:
            logger.error(f"Failed to load unread total: {e}", extra={"user_id": user_id})
            return 0

    async def _send_error(
        self, connection: Connection, event: str | None, message: str, code: int
    ) -> None:
        await connection.send(events.ERROR, {"event": event, "message": message, "code": code})


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0] if error.errors() else {}
    location = ".".join(str(p) for p in first.get("loc", ()))
    detail = first.get("msg", "Invalid payload")
    return f"{location}: {detail}" if location else detail


_gateway: MessagingGateway | None = None


def get_gateway() -> MessagingGateway:
    """Process-wide gateway shared by the WebSocket endpoint and the REST routes."""
    global _gateway
    if _gateway is None:
        _gateway = MessagingGateway()
    return _gateway
