"""
Cross-process event fan-out.

Every emitted event is delivered to this process's matching connections and
published on the realtime Redis channel as an envelope:

    {
        "origin": "<process id>",
        "target": {"room": "conversation:<id>"} | {"user": "<user id>"} | {"all": true},
        "event": "new-message",
        "data": {...},
        "exclude": "<connection id>" | null,
        "exclude_user": "<user id>" | null
    }

Each process runs one subscriber that delivers envelopes from other origins
to its own connections. If publishing fails, delivery degrades to the local
process only.
"""

import asyncio
import json
import logging
from typing import Any
from uuid import UUID, uuid4

from messaging.realtime.session_registry import Connection, SessionRegistry
from shared.config import get_settings
from shared.redis_client import get_redis_client, publish_to_channel

logger = logging.getLogger(__name__)

RESUBSCRIBE_DELAY_SECONDS = 2.0


class EventBroadcaster:
    def __init__(self, registry: SessionRegistry, channel: str | None = None):
        self.registry = registry
        self.channel = channel or get_settings().REALTIME_EVENTS_CHANNEL
        self.origin = uuid4().hex
        self._listener: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Emit
    # ------------------------------------------------------------------

    async def to_room(
        self,
        room: str,
        event: str,
        data: Any,
        exclude_connection: str | None = None,
        exclude_user: UUID | None = None,
    ) -> None:
        await self._emit({"room": room}, event, data, exclude_connection, exclude_user)

    async def to_user(self, user_id: UUID, event: str, data: Any) -> None:
        await self._emit({"user": str(user_id)}, event, data)

    async def to_all(self, event: str, data: Any, exclude_connection: str | None = None) -> None:
        await self._emit({"all": True}, event, data, exclude_connection)

    async def _emit(
        self,
        target: dict[str, Any],
        event: str,
        data: Any,
        exclude: str | None = None,
        exclude_user: UUID | None = None,
    ) -> None:
        envelope = {
            "origin": self.origin,
            "target": target,
            "event": event,
            "data": data,
            "exclude": exclude,
            "exclude_user": str(exclude_user) if exclude_user else None,
        }
        await self.deliver_local(envelope)

        try:
            await publish_to_channel(self.channel, envelope)
        except Exception as e:
            logger.warning(
                f"Realtime publish failed, '{event}' delivered to this process only: {e}"
            )

    # ------------------------------------------------------------------
    # Deliver
    # ------------------------------------------------------------------

    def _resolve(self, target: dict[str, Any]) -> list[Connection]:
        if "room" in target:
            return self.registry.room_members(target["room"])
        if "user" in target:
            return self.registry.connections_for_user(UUID(target["user"]))
        if target.get("all"):
            return self.registry.all_connections()
        return []

    async def deliver_local(self, envelope: dict[str, Any]) -> int:
        """Send an envelope to matching local connections. Returns the number reached."""
        exclude = envelope.get("exclude")
        exclude_user = envelope.get("exclude_user")
        connections = [
            c
            for c in self._resolve(envelope["target"])
            if c.id != exclude and str(c.user_id) != exclude_user
        ]
        if not connections:
            return 0

        results = await asyncio.gather(
            *(c.send(envelope["event"], envelope["data"]) for c in connections)
        )
        return sum(1 for ok in results if ok)

    # ------------------------------------------------------------------
    # Subscribe
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._listener is None or self._listener.done():
            self._listener = asyncio.create_task(self._listen(), name="realtime-subscriber")

    async def stop(self) -> None:
        if self._listener is None:
            return
        self._listener.cancel()
        try:
            await self._listener
        except asyncio.CancelledError:
            pass
        self._listener = None

    async def _listen(self) -> None:
        while True:
            pubsub = get_redis_client().pubsub()
            try:
                await pubsub.subscribe(self.channel)
                logger.info(f"Subscribed to realtime channel '{self.channel}'")

                async for message in pubsub.listen():
                    if message["type"] != "message":
                        continue
                    await self.handle_message(message["data"])

            except asyncio.CancelledError:
                logger.info("Realtime subscriber cancelled")
                await pubsub.unsubscribe(self.channel)
                await pubsub.aclose()
                raise

            except Exception as e:
                logger.error(
                    f"Realtime subscriber error, resubscribing in {RESUBSCRIBE_DELAY_SECONDS}s: {e}"
                )
                try:
                    await pubsub.aclose()
                except Exception as close_error:
                    logger.debug(f"Error closing pubsub after failure: {close_error}")
                await asyncio.sleep(RESUBSCRIBE_DELAY_SECONDS)

    async def handle_message(self, raw: str) -> None:
        """Deliver an envelope published by another process."""
        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON on realtime channel: {e}")
            return

        if envelope.get("origin") == self.origin:
            return

        try:
            await self.deliver_local(envelope)
        except Exception as e:
            logger.error(
                f"Failed to deliver realtime event '{envelope.get('event')}': {e}",
                exc_info=True,
            )
