"""Tests for presence and typing state."""

from datetime import timedelta

import pytest

from conftest import BASE_TIME
from inboxsync.dispatcher import EventDispatcher
from inboxsync.events import EventKind, PresencePayload, TypingPayload, parse_frame
from inboxsync.presence import PresenceStatus, PresenceTracker, classify_presence


class Clock:
    def __init__(self):
        self.now = BASE_TIME

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def tracker(clock):
    return PresenceTracker(typing_ttl=10, clock=clock)


class TestClassifyPresence:
    """Tests for the elapsed-time classification."""

    def test_thresholds(self):
        now = BASE_TIME
        assert classify_presence(now - timedelta(minutes=1), now) is PresenceStatus.ONLINE
        assert classify_presence(now - timedelta(minutes=5), now) is PresenceStatus.RECENT
        assert classify_presence(now - timedelta(minutes=29), now) is PresenceStatus.RECENT
        assert classify_presence(now - timedelta(minutes=30), now) is PresenceStatus.OFFLINE

    def test_never_seen(self):
        assert classify_presence(None, BASE_TIME) is PresenceStatus.OFFLINE


class TestPresence:
    """Tests for the tracker's presence state."""

    def test_status_decays_over_time(self, tracker, clock):
        """Status should be recomputed on read as time passes."""
        tracker.touch("c1")
        assert tracker.status("c1") is PresenceStatus.ONLINE

        clock.advance(minutes=10)
        assert tracker.status("c1") is PresenceStatus.RECENT

        clock.advance(minutes=30)
        assert tracker.status("c1") is PresenceStatus.OFFLINE

    def test_last_seen_never_moves_back(self, tracker, clock):
        tracker.touch("c1")
        tracker.touch("c1", clock.now - timedelta(hours=1))
        assert tracker.last_seen("c1") == clock.now

    def test_offline_event(self, tracker):
        """An explicit offline should win until the contact is seen again."""
        tracker.mark_online(PresencePayload(user_id="c1"))
        tracker.mark_offline(PresencePayload(user_id="c1"))
        assert tracker.status("c1") is PresenceStatus.OFFLINE

        tracker.touch("c1")
        assert tracker.status("c1") is PresenceStatus.ONLINE


class TestTyping:
    """Tests for typing indicators."""

    def test_start_and_stop(self, tracker):
        tracker.typing_started(TypingPayload(contact_id="c1", admin_id="a1"))
        assert tracker.is_typing("c1")

        assert tracker.typing_stopped(TypingPayload(contact_id="c1", admin_id="a1")) is True
        assert not tracker.is_typing("c1")

    def test_stop_from_other_admin_ignored(self, tracker):
        """Only the latest typer's stop should clear the indicator."""
        tracker.typing_started(TypingPayload(contact_id="c1", admin_id="a1"))
        tracker.typing_started(TypingPayload(contact_id="c1", admin_id="a2"))

        assert tracker.typing_stopped(TypingPayload(contact_id="c1", admin_id="a1")) is False
        assert tracker.typing("c1").admin_id == "a2"

    def test_expires_without_stop(self, tracker, clock):
        """A lost typing_stop should not leave the indicator on forever."""
        tracker.typing_started(TypingPayload(contact_id="c1", admin_id="a1"))

        clock.advance(seconds=9)
        assert tracker.is_typing("c1")

        clock.advance(seconds=1)
        assert not tracker.is_typing("c1")

    def test_ages_from_payload_timestamp(self, tracker, clock):
        """A start stamped by the server should expire relative to that stamp."""
        started = clock.now - timedelta(seconds=8)
        state = tracker.typing_started(TypingPayload(contact_id="c1", timestamp=started))
        assert state.started_at == started

        clock.advance(seconds=2)
        assert not tracker.is_typing("c1")

    def test_naive_timestamp_read_as_utc(self):
        payload = parse_frame(
            {"event": "typing_start", "data": {"contact_id": 1, "timestamp": "2024-05-01T12:00:00"}}
        ).data
        assert payload.timestamp.utcoffset() == timedelta(0)


class TestBinding:
    """Tests for wiring the tracker to server events."""

    def test_events_drive_state(self, tracker):
        dispatcher = EventDispatcher()
        tracker.bind(dispatcher)

        dispatcher.emit(
            EventKind.TYPING_START,
            parse_frame({"event": "typing_start", "data": {"contact_id": 1, "admin_id": 2, "user_name": "sam"}}),
        )
        assert tracker.typing("1").username == "sam"

        dispatcher.emit(
            EventKind.USER_OFFLINE,
            parse_frame({"event": "user_offline", "data": {"contact_id": 1}}),
        )
        assert tracker.status("1") is PresenceStatus.OFFLINE

    def test_incoming_message_touches(self, tracker, clock):
        dispatcher = EventDispatcher()
        tracker.bind(dispatcher)

        dispatcher.emit(
            EventKind.MESSAGE_RECEIVED,
            parse_frame(
                {
                    "event": "message_received",
                    "data": {"id": 1, "contact_id": 5, "timestamp": clock.now.isoformat()},
                }
            ),
        )

        assert tracker.last_seen("5") == clock.now
        assert tracker.status("5") is PresenceStatus.ONLINE
