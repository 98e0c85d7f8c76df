"""Unit tests for cross-process event fan-out."""

import json
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from messaging.realtime.broadcaster import EventBroadcaster
from messaging.realtime.session_registry import SessionRegistry


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def broadcaster(registry, fake_redis) -> EventBroadcaster:
    return EventBroadcaster(registry, channel="test:events")


def sent_events(websocket: AsyncMock) -> list[str]:
    return [call.args[0]["event"] for call in websocket.send_json.await_args_list]


class TestEmit:
    @pytest.mark.asyncio
    async def test_room_event_reaches_local_members_and_is_published(
        self, registry, broadcaster, fake_redis
    ):
        ws = AsyncMock()
        connection = registry.register(ws, uuid4())
        registry.join(connection.id, "conversation:1")

        await broadcaster.to_room("conversation:1", "new-message", {"id": "m1"})

        ws.send_json.assert_awaited_once_with({"event": "new-message", "data": {"id": "m1"}})
        channel, raw = fake_redis.published[0]
        envelope = json.loads(raw)
        assert channel == "test:events"
        assert envelope["origin"] == broadcaster.origin
        assert envelope["target"] == {"room": "conversation:1"}

    @pytest.mark.asyncio
    async def test_exclude_user_skips_all_their_tabs(self, registry, broadcaster):
        typist = uuid4()
        own_tab, other_tab, peer = AsyncMock(), AsyncMock(), AsyncMock()
        for ws, user_id in ((own_tab, typist), (other_tab, typist), (peer, uuid4())):
            connection = registry.register(ws, user_id)
            registry.join(connection.id, "conversation:1")

        await broadcaster.to_room("conversation:1", "user-typing", {}, exclude_user=typist)

        assert sent_events(own_tab) == []
        assert sent_events(other_tab) == []
        assert sent_events(peer) == ["user-typing"]

    @pytest.mark.asyncio
    async def test_to_user_reaches_every_tab(self, registry, broadcaster):
        user_id = uuid4()
        tabs = [AsyncMock(), AsyncMock()]
        for ws in tabs:
            registry.register(ws, user_id)
        stranger = AsyncMock()
        registry.register(stranger, uuid4())

        await broadcaster.to_user(user_id, "unread-count-updated", {"total": 2})

        assert all(sent_events(ws) == ["unread-count-updated"] for ws in tabs)
        assert sent_events(stranger) == []

    @pytest.mark.asyncio
    async def test_to_all_excludes_connection(self, registry, broadcaster):
        first, second = AsyncMock(), AsyncMock()
        first_conn = registry.register(first, uuid4())
        registry.register(second, uuid4())

        await broadcaster.to_all("user-online", {}, exclude_connection=first_conn.id)

        assert sent_events(first) == []
        assert sent_events(second) == ["user-online"]

    @pytest.mark.asyncio
    async def test_publish_failure_still_delivers_locally(self, registry, broadcaster):
        ws = AsyncMock()
        registry.register(ws, uuid4())

        with patch(
            "messaging.realtime.broadcaster.publish_to_channel",
            AsyncMock(side_effect=ConnectionError("down")),
        ):
            await broadcaster.to_all("user-online", {})

        assert sent_events(ws) == ["user-online"]


class TestHandleMessage:
    @pytest.mark.asyncio
    async def test_remote_envelope_is_delivered(self, registry, broadcaster):
        user_id = uuid4()
        ws = AsyncMock()
        registry.register(ws, user_id)
        envelope = {
            "origin": "another-process",
            "target": {"user": str(user_id)},
            "event": "unread-count-updated",
            "data": {"total": 1},
            "exclude": None,
            "exclude_user": None,
        }

        await broadcaster.handle_message(json.dumps(envelope))

        ws.send_json.assert_awaited_once_with(
            {"event": "unread-count-updated", "data": {"total": 1}}
        )

    @pytest.mark.asyncio
    async def test_own_envelope_is_ignored(self, registry, broadcaster):
        ws = AsyncMock()
        registry.register(ws, uuid4())
        envelope = {"origin": broadcaster.origin, "target": {"all": True}, "event": "x", "data": {}}

        await broadcaster.handle_message(json.dumps(envelope))

        ws.send_json.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_json_is_dropped(self, broadcaster):
        await broadcaster.handle_message("not json")
