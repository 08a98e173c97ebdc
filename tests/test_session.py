"""Tests for the sync session wiring."""

import pytest

from conftest import BASE_TIME, FakeTransport, settle
from inboxsync.config import Settings
from inboxsync.events import EventKind
from inboxsync.models import ConversationSnapshot, MessageStatus
from inboxsync.presence import PresenceTracker
from inboxsync.session import SyncSession


@pytest.fixture
def session(manager, api):
    return SyncSession(manager, api, send_timeout=5.0, presence=PresenceTracker(clock=lambda: BASE_TIME))


def incoming(message_id, contact_id="c1", ticket_id=None):
    return {
        "event": "message_received",
        "data": {
            "id": message_id,
            "contact_id": contact_id,
            "ticket_id": ticket_id,
            "content": f"message {message_id}",
            "created_at": BASE_TIME.isoformat(),
        },
    }


class TestLifecycle:
    """Tests for start/close."""

    @pytest.mark.asyncio
    async def test_start_connects_and_binds(self, session, transport):
        async with session:
            assert session.connection.is_connected
            transport.latest.push(incoming("1"))
            await settle(lambda: session.store.messages("c1"))

            assert [m.id for m in session.store.messages("c1")] == ["1"]
            assert session.presence.last_seen("c1") == BASE_TIME

    @pytest.mark.asyncio
    async def test_close_releases_everything(self, session, transport, api):
        await session.start()
        await session.open_contact("c1")

        await session.close()

        assert session.dispatcher.handler_count() == 0
        assert session.store.contacts() == []
        assert len(session.connection.rooms) == 0
        assert transport.closed
        assert api.closed

    @pytest.mark.asyncio
    async def test_start_twice_binds_once(self, session):
        await session.start()
        count = session.dispatcher.handler_count()

        await session.start()

        assert session.dispatcher.handler_count() == count
        await session.close()

    @pytest.mark.asyncio
    async def test_update_auth_reaches_both_channels(self, session, api):
        session.update_auth("fresh")
        assert session.connection.token == "fresh"
        assert api.token == "fresh"

    @pytest.mark.asyncio
    async def test_subscriber_sees_conversation_updates(self, session, transport):
        updates = []
        session.on(EventKind.CONVERSATION_UPDATED, lambda e: updates.append(e.contact_id))

        async with session:
            transport.latest.push(incoming("1", contact_id="c9"))
            await settle(lambda: updates)

        assert updates == ["c9"]


class TestConversation:
    """Tests for opening, sending and reading through the session."""

    @pytest.mark.asyncio
    async def test_open_contact_joins_room_and_loads(self, session, transport, api, make_message):
        api.snapshots["c1"] = ConversationSnapshot(contact_id="c1", messages=[make_message("1")])

        async with session:
            assert await session.open_contact("c1")
            assert transport.latest.requests("join_room") == ["contact_c1"]
            assert [m.id for m in session.store.messages("c1")] == ["1"]

    @pytest.mark.asyncio
    async def test_send_confirmed(self, session, api):
        async with session:
            await session.open_contact("c1")
            message = await session.send("Hello")

        assert message.status is MessageStatus.SENT
        assert api.sent[0]["content"] == "Hello"

    @pytest.mark.asyncio
    async def test_send_without_contact(self, session):
        with pytest.raises(ValueError):
            await session.send("Hello")

    @pytest.mark.asyncio
    async def test_typing_notifications(self, session, transport):
        async with session:
            assert not await session.set_typing(True)
            await session.open_contact("c1")
            assert await session.set_typing(True)
            assert await session.set_typing(False)

            typing = [p for p in transport.latest.sent if p["type"].startswith("typing")]
            assert typing == [
                {"type": "typing_start", "contact_id": "c1"},
                {"type": "typing_stop", "contact_id": "c1"},
            ]

    @pytest.mark.asyncio
    async def test_mark_read_per_unread_ticket(self, session, transport, api, make_message):
        api.snapshots["c1"] = ConversationSnapshot(
            contact_id="c1",
            messages=[
                make_message("1", ticket_id="7", minutes=1),
                make_message("2", ticket_id="8", minutes=2),
                make_message("3", ticket_id="8", minutes=3),
            ],
        )

        async with session:
            await session.open_contact("c1")
            assert session.store.unread_count("c1") == 3

            assert await session.mark_read() == 3

            assert session.store.unread_count("c1") == 0
            assert api.read_tickets == ["7", "8"]
            assert [p["message_id"] for p in transport.latest.sent if p["type"] == "message_read"] == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_mark_read_requires_contact(self, session):
        with pytest.raises(ValueError):
            await session.mark_read()


class TestFromSettings:
    @pytest.mark.asyncio
    async def test_builds_from_settings(self):
        transport = FakeTransport()
        config = Settings(
            _env_file=None,
            ws_url="ws://console/ws",
            api_url="http://console/api",
            api_token="tok",
            reconnect_max_attempts=2,
            typing_ttl=4.0,
        )

        session = SyncSession.from_settings(config, transport=transport)
        async with session:
            assert transport.opened_with == [("ws://console/ws", "tok")]

        assert session.connection.backoff.max_attempts == 2
        assert session.api.base_url == "http://console/api"
        assert session.api.token == "tok"
        assert session.presence.typing_ttl.total_seconds() == 4.0
