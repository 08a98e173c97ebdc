"""
inboxsync - Real-time conversation synchronization for a customer-service console.

Usage:
    from inboxsync import SyncSession

    async with SyncSession.from_settings() as session:
        await session.open_contact("42")
        await session.send("Hello!")
        for episode in session.store.episodes("42"):
            print(episode.ticket_id, episode.category, episode.unread_count)
"""

from inboxsync.api import ApiClient
from inboxsync.backoff import BackoffPolicy
from inboxsync.connection import ConnectionManager, ConnectionStatus
from inboxsync.dispatcher import EventDispatcher, Subscription
from inboxsync.episodes import categorize_ticket, group_episodes
from inboxsync.events import ConnectionEvent, ConversationUpdated, EventKind, parse_frame
from inboxsync.exceptions import (
    ApiError,
    AuthError,
    ConnectionLostError,
    FrameValidationError,
    InboxSyncError,
    MaxReconnectAttemptsError,
    RoomJoinError,
    SendTimeoutError,
)
from inboxsync.inbox import ConversationSummary, InboxGroups, group_conversations
from inboxsync.models import (
    Episode,
    EpisodeCategory,
    Message,
    MessageDirection,
    MessageStatus,
    Ticket,
    ViewMode,
)
from inboxsync.presence import PresenceStatus, PresenceTracker, classify_presence
from inboxsync.rooms import admin_room, contact_room, session_room, ticket_room
from inboxsync.session import SyncSession
from inboxsync.store import ConversationStore
from inboxsync.transport import AiohttpTransport, Transport, TransportConnection

__version__ = "0.1.0"

__all__ = [
    # Session
    "SyncSession",
    # Components
    "ConnectionManager",
    "ConnectionStatus",
    "EventDispatcher",
    "Subscription",
    "ConversationStore",
    "PresenceTracker",
    "ApiClient",
    # Transport
    "Transport",
    "TransportConnection",
    "AiohttpTransport",
    # Configuration
    "BackoffPolicy",
    # Events
    "EventKind",
    "ConnectionEvent",
    "ConversationUpdated",
    "parse_frame",
    # Models
    "Message",
    "MessageDirection",
    "MessageStatus",
    "Ticket",
    "Episode",
    "EpisodeCategory",
    "ViewMode",
    "ConversationSummary",
    "InboxGroups",
    "PresenceStatus",
    # Functions
    "group_episodes",
    "categorize_ticket",
    "group_conversations",
    "classify_presence",
    "contact_room",
    "ticket_room",
    "session_room",
    "admin_room",
    # Errors
    "InboxSyncError",
    "ConnectionLostError",
    "AuthError",
    "RoomJoinError",
    "SendTimeoutError",
    "MaxReconnectAttemptsError",
    "FrameValidationError",
    "ApiError",
]
