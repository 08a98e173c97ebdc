"""
Presence and typing state.

Nothing here is persisted. Online status is classified from ``last_seen`` at
read time, so it corrects itself as time passes without a timer per contact.
Typing indicators expire after ``typing_ttl`` seconds if the matching
``typing_stop`` never arrives.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from inboxsync.dispatcher import EventDispatcher, Subscription
from inboxsync.events import (
    EventKind,
    MessageReceived,
    PresencePayload,
    TypingPayload,
    TypingStart,
    TypingStop,
    UserOffline,
    UserOnline,
)
from inboxsync.models import MessageDirection, utcnow

logger = logging.getLogger(__name__)


class PresenceStatus(str, Enum):
    ONLINE = "online"
    RECENT = "recent"
    OFFLINE = "offline"


def classify_presence(
    last_seen: Optional[datetime],
    now: datetime,
    online_within: timedelta = timedelta(minutes=5),
    recent_within: timedelta = timedelta(minutes=30),
) -> PresenceStatus:
    """Classify a contact from the time elapsed since it was last seen."""
    if last_seen is None:
        return PresenceStatus.OFFLINE
    elapsed = now - last_seen
    if elapsed < online_within:
        return PresenceStatus.ONLINE
    if elapsed < recent_within:
        return PresenceStatus.RECENT
    return PresenceStatus.OFFLINE


@dataclass(frozen=True)
class TypingState:
    contact_id: str
    started_at: datetime
    admin_id: Optional[str] = None
    ticket_id: Optional[str] = None
    username: Optional[str] = None


class PresenceTracker:
    """Ephemeral per-contact presence and typing state."""

    def __init__(
        self,
        typing_ttl: float = 10.0,
        online_minutes: float = 5.0,
        recent_minutes: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.typing_ttl = timedelta(seconds=typing_ttl)
        self.online_within = timedelta(minutes=online_minutes)
        self.recent_within = timedelta(minutes=recent_minutes)
        self._clock = clock
        self._last_seen: dict[str, datetime] = {}
        self._offline: set[str] = set()
        self._typing: dict[str, TypingState] = {}

    # Typing

    def typing_started(self, payload: TypingPayload) -> TypingState:
        """Record a typing start, aged from the server timestamp when the frame has one."""
        state = TypingState(
            contact_id=payload.contact_id,
            started_at=payload.timestamp or self._clock(),
            admin_id=payload.admin_id,
            ticket_id=payload.ticket_id,
            username=payload.username,
        )
        self._typing[payload.contact_id] = state
        return state

    def typing_stopped(self, payload: TypingPayload) -> bool:
        """Clear the indicator if the stop matches the latest start."""
        current = self._typing.get(payload.contact_id)
        if current is None:
            return False
        if current.admin_id and payload.admin_id and current.admin_id != payload.admin_id:
            logger.debug(
                f"Ignoring typing_stop from {payload.admin_id} for contact "
                f"{payload.contact_id}; {current.admin_id} is typing"
            )
            return False
        del self._typing[payload.contact_id]
        return True

    def typing(self, contact_id: str) -> Optional[TypingState]:
        state = self._typing.get(contact_id)
        if state is None:
            return None
        if self._clock() - state.started_at >= self.typing_ttl:
            del self._typing[contact_id]
            return None
        return state

    def is_typing(self, contact_id: str) -> bool:
        return self.typing(contact_id) is not None

    # Presence

    def touch(self, contact_id: str, seen_at: Optional[datetime] = None) -> None:
        """Record activity; never moves ``last_seen`` backwards."""
        seen_at = seen_at or self._clock()
        previous = self._last_seen.get(contact_id)
        if previous is None or seen_at > previous:
            self._last_seen[contact_id] = seen_at
        self._offline.discard(contact_id)

    def mark_online(self, payload: PresencePayload) -> None:
        self.touch(payload.user_id, payload.last_seen)

    def mark_offline(self, payload: PresencePayload) -> None:
        if payload.last_seen is not None:
            self.touch(payload.user_id, payload.last_seen)
        self._offline.add(payload.user_id)

    def last_seen(self, contact_id: str) -> Optional[datetime]:
        return self._last_seen.get(contact_id)

    def status(self, contact_id: str) -> PresenceStatus:
        if contact_id in self._offline:
            return PresenceStatus.OFFLINE
        return classify_presence(
            self._last_seen.get(contact_id),
            self._clock(),
            self.online_within,
            self.recent_within,
        )

    def clear(self) -> None:
        self._last_seen.clear()
        self._offline.clear()
        self._typing.clear()

    # Wiring

    def bind(self, dispatcher: EventDispatcher) -> list[Subscription]:
        """Subscribe to the events that drive presence and typing state."""

        def on_typing_start(event: TypingStart) -> None:
            self.typing_started(event.data)

        def on_typing_stop(event: TypingStop) -> None:
            self.typing_stopped(event.data)

        def on_online(event: UserOnline) -> None:
            self.mark_online(event.data)

        def on_offline(event: UserOffline) -> None:
            self.mark_offline(event.data)

        def on_message(event: MessageReceived) -> None:
            message = event.data
            if message.direction is MessageDirection.INCOMING:
                self.touch(message.contact_id, message.created_at)

        return [
            dispatcher.on(EventKind.TYPING_START, on_typing_start),
            dispatcher.on(EventKind.TYPING_STOP, on_typing_stop),
            dispatcher.on(EventKind.USER_ONLINE, on_online),
            dispatcher.on(EventKind.USER_OFFLINE, on_offline),
            dispatcher.on(EventKind.MESSAGE_RECEIVED, on_message),
        ]
