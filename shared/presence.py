"""
Cross-process presence tracking in Redis.

A user is online while their connection set is non-empty. Each open socket
(tab, device) adds its connection id; the set expires after PRESENCE_TTL_SECONDS
unless refreshed, so a crashed process cannot keep users online forever.

Key Patterns:
    presence:connections:{user_id}              SET of connection ids
    presence:room:{conversation_id}:{user_id}   SET of connection ids viewing a conversation

Failure policy:
    - is_online fails open (True) so an outage never floods inboxes
    - is_viewing fails to False; the caller then falls back to is_online
    - bookkeeping (add/remove/refresh/join/leave) logs and returns a neutral value
"""

import logging
from collections.abc import Iterable
from uuid import UUID

import redis.asyncio as redis

from shared.config import get_settings
from shared.redis_client import get_redis_client, with_timeout

logger = logging.getLogger(__name__)

CONNECTIONS_PREFIX = "presence:connections"
ROOM_PREFIX = "presence:room"


def connections_key(user_id: UUID | str) -> str:
    return f"{CONNECTIONS_PREFIX}:{user_id}"


def room_key(conversation_id: UUID | str, user_id: UUID | str) -> str:
    return f"{ROOM_PREFIX}:{conversation_id}:{user_id}"


class PresenceTracker:
    """Presence operations over a shared Redis instance."""

    def __init__(
        self,
        client: "redis.Redis[str] | None" = None,
        ttl_seconds: int | None = None,
        timeout: float | None = None,
    ):
        settings = get_settings()
        self._client = client
        self.ttl_seconds = ttl_seconds or settings.PRESENCE_TTL_SECONDS
        self.timeout = timeout or settings.REDIS_OPERATION_TIMEOUT_SECONDS

    @property
    def client(self) -> "redis.Redis[str]":
        return self._client or get_redis_client()

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def mark_online(self, user_id: UUID | str, connection_id: str) -> int | None:
        """
        Add a connection to the user's set and refresh its expiry.

        Returns:
            Number of live connections after the add (1 means the user just
            came online), or None if Redis could not be reached
        """
        key = connections_key(user_id)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.sadd(key, connection_id)
            pipe.expire(key, self.ttl_seconds)
            pipe.scard(key)
            _, _, count = await with_timeout(pipe.execute(), self.timeout)
            return int(count)
        except Exception as e:
            logger.error(
                f"Failed to mark user online: {e}",
                extra={"user_id": user_id, "connection_id": connection_id},
            )
            return None

    async def remove_connection(self, user_id: UUID | str, connection_id: str) -> bool:
        """
        Remove one connection and report whether the user is now fully offline.

        SREM and SCARD run in one MULTI block so the offline decision is taken
        on the post-removal cardinality. Redis drops the key once the set is empty.
        """
        key = connections_key(user_id)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.srem(key, connection_id)
            pipe.scard(key)
            _, remaining = await with_timeout(pipe.execute(), self.timeout)
            return int(remaining) == 0
        except Exception as e:
            logger.error(
                f"Failed to remove connection: {e}",
                extra={"user_id": user_id, "connection_id": connection_id},
            )
            return False

    async def is_online(self, user_id: UUID | str) -> bool:
        try:
            count = await with_timeout(
                self.client.scard(connections_key(user_id)), self.timeout
            )
            return int(count) > 0
        except Exception as e:
            logger.warning(
                f"Presence check failed, assuming online: {e}",
                extra={"user_id": user_id},
            )
            return True

    async def refresh(
        self, user_id: UUID | str, conversation_ids: Iterable[UUID | str] = ()
    ) -> None:
        """Push back the expiry of a user's connection set and of the rooms they view."""
        try:
            pipe = self.client.pipeline(transaction=False)
            pipe.expire(connections_key(user_id), self.ttl_seconds)
            for conversation_id in conversation_ids:
                pipe.expire(room_key(conversation_id, user_id), self.ttl_seconds)
            await with_timeout(pipe.execute(), self.timeout)
        except Exception as e:
            logger.debug(f"Failed to refresh presence: {e}", extra={"user_id": user_id})

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def join_room(
        self, conversation_id: UUID | str, user_id: UUID | str, connection_id: str
    ) -> None:
        key = room_key(conversation_id, user_id)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.sadd(key, connection_id)
            pipe.expire(key, self.ttl_seconds)
            await with_timeout(pipe.execute(), self.timeout)
        except Exception as e:
            logger.error(
                f"Failed to record room join: {e}",
                extra={"conversation_id": conversation_id, "user_id": user_id},
            )

    async def leave_room(
        self, conversation_id: UUID | str, user_id: UUID | str, connection_id: str
    ) -> None:
        key = room_key(conversation_id, user_id)
        try:
            await with_timeout(self.client.srem(key, connection_id), self.timeout)
        except Exception as e:
            logger.error(
                f"Failed to record room leave: {e}",
                extra={"conversation_id": conversation_id, "user_id": user_id},
            )

    async def is_viewing(self, conversation_id: UUID | str, user_id: UUID | str) -> bool:
        """True when any of the user's connections, on any process, is in the room."""
        try:
            count = await with_timeout(
                self.client.scard(room_key(conversation_id, user_id)), self.timeout
            )
            return int(count) > 0
        except Exception as e:
            logger.warning(
                f"Room presence check failed: {e}",
                extra={"conversation_id": conversation_id, "user_id": user_id},
            )
            return False
