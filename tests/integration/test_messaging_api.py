"""
REST API tests: routes, auth, error mapping and realtime side effects.

Requests go through httpx.AsyncClient on the ASGI app so the database fixture
and the app share one event loop. Startup hooks are not run.
"""

import json
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import select

from api.main import app
from conftest import auth_headers, make_token
from database.connection import get_async_session
from database.models import ConversationStatus, EmailNotificationQueue
from messaging.realtime import gateway as gateway_module
from messaging.realtime.gateway import MessagingGateway
from messaging.services import access, message_service


@pytest.fixture
async def api(db_engine, fake_redis, monkeypatch):
    monkeypatch.setattr(gateway_module, "_gateway", MessagingGateway())
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def published_events(fake_redis) -> list[str]:
    return [json.loads(raw)["event"] for _, raw in fake_redis.published]


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_token(self, api):
        response = await api.get("/messaging/conversations")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_forged_token(self, api):
        response = await api.get(
            "/messaging/conversations", headers={"Authorization": "Bearer not.a.jwt"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_revoked_token(self, api, client_user, fake_redis):
        token = make_token(client_user.id, jti="revoked-1")
        fake_redis.values["token_blacklist:revoked-1"] = "1"

        response = await api.get(
            "/messaging/conversations", headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 401


class TestConversationRoutes:
    @pytest.mark.asyncio
    async def test_create_and_list(self, api, salon, client_user):
        response = await api.post(
            "/messaging/conversations",
            json={"client_user_id": str(client_user.id), "first_message": "Bienvenue !"},
            headers=auth_headers(salon),
        )

        assert response.status_code == 201
        created = response.json()
        assert created["status"] == "ACTIVE"
        assert created["last_message"]["type"] == "SYSTEM"

        listing = await api.get("/messaging/conversations", headers=auth_headers(client_user))
        body = listing.json()
        assert body["total"] == 1
        assert body["data"][0]["id"] == created["id"]
        assert body["data"][0]["unread_count"] == 1

    @pytest.mark.asyncio
    async def test_client_cannot_create(self, api, client_user, outsider):
        response = await api.post(
            "/messaging/conversations",
            json={"client_user_id": str(outsider.id)},
            headers=auth_headers(client_user),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "bad_request"

    @pytest.mark.asyncio
    async def test_invalid_body(self, api, salon):
        response = await api.post(
            "/messaging/conversations",
            json={"client_user_id": "not-a-uuid"},
            headers=auth_headers(salon),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Validation error"

    @pytest.mark.asyncio
    async def test_status_filter(self, api, conversation, salon):
        response = await api.get(
            "/messaging/conversations", params={"status": "ARCHIVED"}, headers=auth_headers(salon)
        )
        assert response.json()["total"] == 0

    @pytest.mark.asyncio
    async def test_outsider_is_forbidden(self, api, conversation, outsider):
        response = await api.get(
            f"/messaging/conversations/{conversation.id}", headers=auth_headers(outsider)
        )

        assert response.status_code == 403
        assert response.json() == {
            "error": "forbidden",
            "detail": "You are not a participant of this conversation",
        }

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, api, salon):
        response = await api.get(f"/messaging/conversations/{uuid4()}", headers=auth_headers(salon))
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_unread_total_and_dashboard(self, api, conversation, salon, client_user):
        await message_service.send_message(client_user.id, conversation.id, "Bonjour")

        total = await api.get("/messaging/conversations/unread/total", headers=auth_headers(salon))
        unread = await api.get("/messaging/conversations/unread", headers=auth_headers(salon))

        assert total.json() == {"total": 1}
        assert [c["id"] for c in unread.json()] == [str(conversation.id)]

    @pytest.mark.asyncio
    async def test_dashboard_reserved_to_salons(self, api, client_user):
        response = await api.get("/messaging/conversations/unread", headers=auth_headers(client_user))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_update_archive_delete(self, api, conversation, salon, client_user):
        url = f"/messaging/conversations/{conversation.id}"

        patched = await api.patch(url, json={"subject": "Mèches"}, headers=auth_headers(client_user))
        assert patched.json()["subject"] == "Mèches"

        refused = await api.patch(f"{url}/archive", headers=auth_headers(client_user))
        assert refused.status_code == 403

        archived = await api.patch(f"{url}/archive", headers=auth_headers(salon))
        assert archived.json() == {"status": ConversationStatus.ARCHIVED.value}

        deleted = await api.delete(url, headers=auth_headers(salon))
        assert deleted.status_code == 204
        assert (await api.get(url, headers=auth_headers(salon))).status_code == 404

    @pytest.mark.asyncio
    async def test_mark_read_notifies_room(self, api, conversation, salon, client_user, fake_redis):
        await message_service.send_message(client_user.id, conversation.id, "Bonjour")

        response = await api.patch(
            f"/messaging/conversations/{conversation.id}/mark-read", headers=auth_headers(salon)
        )

        assert response.json() == {"marked": 1}
        assert published_events(fake_redis) == ["conversation-read", "unread-count-updated"]


class TestConversationGuard:
    @pytest.mark.asyncio
    async def test_services_reuse_the_guarded_conversation(
        self, api, conversation, salon, client_user, monkeypatch
    ):
        reloads = []
        load = access.load_conversation_for_participant

        async def counting_load(session, conversation_id, user_id):
            reloads.append(conversation_id)
            return await load(session, conversation_id, user_id)

        monkeypatch.setattr(access, "load_conversation_for_participant", counting_load)
        url = f"/messaging/conversations/{conversation.id}"

        sent = await api.post(
            f"{url}/messages", json={"content": "Bonjour"}, headers=auth_headers(client_user)
        )
        history = await api.get(f"{url}/messages", headers=auth_headers(salon))
        archived = await api.patch(f"{url}/archive", headers=auth_headers(salon))

        assert [sent.status_code, history.status_code, archived.status_code] == [201, 200, 200]
        assert history.json()["total"] == 1
        assert reloads == []


class TestMessageRoutes:
    @pytest.mark.asyncio
    async def test_send_to_offline_salon_queues_email(
        self, api, conversation, salon, client_user, fake_redis
    ):
        response = await api.post(
            f"/messaging/conversations/{conversation.id}/messages",
            json={"content": "Je serai en retard"},
            headers=auth_headers(client_user),
        )

        assert response.status_code == 201
        assert response.json()["content"] == "Je serai en retard"
        assert "new-message" in published_events(fake_redis)
        total = await api.get("/messaging/conversations/unread/total", headers=auth_headers(salon))
        assert total.json() == {"total": 1}
        async with get_async_session() as session:
            entries = (await session.execute(select(EmailNotificationQueue))).scalars().all()
        assert [(e.recipient_user_id, e.message_count) for e in entries] == [(salon.id, 1)]

    @pytest.mark.asyncio
    async def test_system_messages_cannot_be_sent(self, api, conversation, client_user):
        response = await api.post(
            f"/messaging/conversations/{conversation.id}/messages",
            json={"content": "Rendez-vous annulé", "type": "SYSTEM"},
            headers=auth_headers(client_user),
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_history(self, api, conversation, salon, client_user):
        for content in ("un", "deux", "trois"):
            await message_service.send_message(client_user.id, conversation.id, content)

        response = await api.get(
            f"/messaging/conversations/{conversation.id}/messages",
            params={"limit": 2},
            headers=auth_headers(salon),
        )

        body = response.json()
        assert [m["content"] for m in body["data"]] == ["trois", "deux"]
        assert body["has_more"] is True
        assert body["data"][0]["is_read"] is True

    @pytest.mark.asyncio
    async def test_mark_one_message_read(self, api, conversation, salon, client_user, fake_redis):
        sent = await message_service.send_message(client_user.id, conversation.id, "Bonjour")

        response = await api.patch(
            f"/messaging/messages/{sent.message.id}/read", headers=auth_headers(salon)
        )

        assert response.json()["changed"] is True
        assert "message-read" in published_events(fake_redis)

    @pytest.mark.asyncio
    async def test_delete_own_message_only(self, api, conversation, salon, client_user):
        sent = await message_service.send_message(client_user.id, conversation.id, "Oups")
        url = f"/messaging/messages/{sent.message.id}"

        assert (await api.delete(url, headers=auth_headers(salon))).status_code == 403
        assert (await api.delete(url, headers=auth_headers(client_user))).status_code == 204


class TestNotificationPreferenceRoutes:
    @pytest.mark.asyncio
    async def test_get_update_mute_unmute(self, api, conversation, client_user):
        headers = auth_headers(client_user)

        defaults = await api.get("/notification-preferences", headers=headers)
        assert defaults.json()["email_frequency"] == "IMMEDIATE"

        updated = await api.patch(
            "/notification-preferences", json={"email_frequency": "DAILY"}, headers=headers
        )
        assert updated.json()["email_frequency"] == "DAILY"

        muted = await api.post(
            "/notification-preferences/mute",
            json={"conversation_id": str(conversation.id)},
            headers=headers,
        )
        assert muted.json()["muted_conversations"] == [str(conversation.id)]

        unmuted = await api.delete(
            f"/notification-preferences/mute/{conversation.id}", headers=headers
        )
        assert unmuted.json()["muted_conversations"] == []


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, api):
        response = await api.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "redis": "connected",
            "postgres": "connected",
            "realtime_connections": 0,
        }

    @pytest.mark.asyncio
    async def test_redis_down(self, db_engine, broken_redis, monkeypatch):
        monkeypatch.setattr(gateway_module, "_gateway", MessagingGateway())
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/health")

        assert response.status_code == 503
        assert response.json()["redis"] == "disconnected"

