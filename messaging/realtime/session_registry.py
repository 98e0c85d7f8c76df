"""
In-process registry of open WebSocket connections.

Owned by the gateway. Other components ask the gateway (or the presence
tracker) about users; they never read these maps directly.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID, uuid4

from fastapi import WebSocket

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    """One socket (browser tab or device) of an authenticated user."""

    id: str
    websocket: WebSocket
    user_id: UUID
    rooms: set[str] = field(default_factory=set)
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def send(self, event: str, data: Any) -> bool:
        """Send one frame. Concurrent fan-outs to the same socket are serialized."""
        async with self.send_lock:
            try:
                await self.websocket.send_json({"event": event, "data": data})
                return True
            except Exception as e:
                logger.debug(
                    f"Failed to send '{event}': {e}",
                    extra={"connection_id": self.id, "user_id": self.user_id},
                )
                return False


class SessionRegistry:
    """connection -> user, user -> connections, room -> connections, room -> typing users."""

    def __init__(self):
        self._connections: dict[str, Connection] = {}
        self._by_user: dict[UUID, set[str]] = {}
        self._rooms: dict[str, set[str]] = {}
        self._typing: dict[str, set[UUID]] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def register(self, websocket: WebSocket, user_id: UUID) -> Connection:
        connection = Connection(id=uuid4().hex, websocket=websocket, user_id=user_id)
        self._connections[connection.id] = connection
        self._by_user.setdefault(user_id, set()).add(connection.id)
        return connection

    def unregister(self, connection_id: str) -> Connection | None:
        """Forget a connection and drop it from every room it joined."""
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None

        user_connections = self._by_user.get(connection.user_id)
        if user_connections is not None:
            user_connections.discard(connection_id)
            if not user_connections:
                del self._by_user[connection.user_id]

        for room in connection.rooms:
            self._discard_member(room, connection_id)
        return connection

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def all_connections(self) -> list[Connection]:
        return list(self._connections.values())

    def connections_for_user(self, user_id: UUID) -> list[Connection]:
        return [self._connections[c] for c in self._by_user.get(user_id, ()) if c in self._connections]

    def has_user(self, user_id: UUID) -> bool:
        return bool(self._by_user.get(user_id))

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    def join(self, connection_id: str, room: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        connection.rooms.add(room)
        self._rooms.setdefault(room, set()).add(connection_id)

    def leave(self, connection_id: str, room: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.rooms.discard(room)
        self._discard_member(room, connection_id)

    def room_members(self, room: str) -> list[Connection]:
        return [self._connections[c] for c in self._rooms.get(room, ()) if c in self._connections]

    def is_user_in_room(self, user_id: UUID, room: str) -> bool:
        return any(c.user_id == user_id for c in self.room_members(room))

    def _discard_member(self, room: str, connection_id: str) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._rooms[room]

    # ------------------------------------------------------------------
    # Typing (ephemeral, never persisted)
    # ------------------------------------------------------------------
    # Entries outlive room membership; the gateway clears them on leave and
    # disconnect so peers on other processes get `user-stopped-typing`.

    def start_typing(self, room: str, user_id: UUID) -> bool:
        """Returns True if the user was not already typing in the room."""
        typing = self._typing.setdefault(room, set())
        if user_id in typing:
            return False
        typing.add(user_id)
        return True

    def stop_typing(self, room: str, user_id: UUID) -> bool:
        """Returns True if the user was typing in the room."""
        typing = self._typing.get(room)
        if not typing or user_id not in typing:
            return False
        typing.discard(user_id)
        if not typing:
            del self._typing[room]
        return True

    def typing_rooms(self, user_id: UUID) -> list[str]:
        return [room for room, users in self._typing.items() if user_id in users]
