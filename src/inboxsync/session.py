"""
Sync session: owns and wires the synchronization components.

One ``SyncSession`` per operator session. It constructs the connection, REST
client, store and presence tracker, subscribes the store and tracker to the
shared dispatcher, and tears all of it down on exit.
"""

import logging
from typing import Any, Optional

from inboxsync.api import ApiClient
from inboxsync.backoff import BackoffPolicy
from inboxsync.config import Settings
from inboxsync.connection import ConnectionManager
from inboxsync.dispatcher import EventDispatcher, Handler, Subscription
from inboxsync.events import EventKind
from inboxsync.exceptions import InboxSyncError
from inboxsync.models import Message
from inboxsync.presence import PresenceTracker
from inboxsync.store import ConversationStore
from inboxsync.transport import AiohttpTransport, Transport

logger = logging.getLogger(__name__)


class SyncSession:
    """
    Async context manager around a live synchronization session.

    Usage:
        async with SyncSession.from_settings() as session:
            await session.open_contact("42")
            await session.send("Hello!")
            await session.mark_read("42")
    """

    def __init__(
        self,
        connection: ConnectionManager,
        api: ApiClient,
        send_timeout: float = 15.0,
        presence: Optional[PresenceTracker] = None,
    ):
        """
        Initialize a session (does not connect).

        Args:
            connection: Connection manager; its dispatcher is shared by all components
            api: REST client
            send_timeout: Seconds before an unconfirmed send turns failed
            presence: Presence tracker (a default one is created if omitted)
        """
        self.connection = connection
        self.api = api
        self.dispatcher: EventDispatcher = connection.dispatcher
        self.store = ConversationStore(
            api,
            connection=connection,
            send_timeout=send_timeout,
            dispatcher=self.dispatcher,
        )
        self.presence = presence or PresenceTracker()
        self._subscriptions: list[Subscription] = []
        self._started = False

    @classmethod
    def from_settings(
        cls,
        config: Optional[Settings] = None,
        transport: Optional[Transport] = None,
    ) -> "SyncSession":
        """Build a session from ``INBOXSYNC_*`` settings."""
        config = config or Settings()
        token = config.api_token or None
        connection = ConnectionManager(
            config.ws_url,
            transport or AiohttpTransport(heartbeat=config.ws_heartbeat, timeout=config.request_timeout),
            token=token,
            backoff=BackoffPolicy(
                base_delay=config.reconnect_base_delay,
                max_delay=config.reconnect_max_delay,
                max_attempts=config.reconnect_max_attempts,
            ),
        )
        api = ApiClient(
            config.api_url,
            token=token,
            timeout=config.request_timeout,
            page_size=config.history_page_size,
        )
        presence = PresenceTracker(
            typing_ttl=config.typing_ttl,
            online_minutes=config.presence_online_minutes,
            recent_minutes=config.presence_recent_minutes,
        )
        return cls(connection, api, send_timeout=config.send_timeout, presence=presence)

    async def __aenter__(self) -> "SyncSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def start(self) -> bool:
        """
        Subscribe components and connect.

        Returns:
            True if connected on the first attempt (otherwise reconnecting)
        """
        if not self._started:
            self._subscriptions = self.store.bind(self.dispatcher) + self.presence.bind(self.dispatcher)
            self._started = True
        return await self.connection.connect()

    async def close(self) -> None:
        """Unsubscribe everything and release the connection and HTTP client."""
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        self._started = False
        self.store.clear()
        self.presence.clear()
        await self.connection.aclose()
        await self.api.close()

    def on(self, kind: EventKind, handler: Handler) -> Subscription:
        return self.dispatcher.on(kind, handler)

    async def reconnect(self) -> bool:
        """Connect again after a terminal failure or an auth error."""
        return await self.connection.connect()

    def update_auth(self, token: Optional[str]) -> None:
        """Hand a refreshed token to both the connection and the REST client."""
        self.connection.update_auth(token)
        self.api.update_token(token)

    async def open_contact(self, contact_id: str) -> bool:
        return await self.store.load_conversation(contact_id)

    async def send(self, content: str, **kwargs: Any) -> Message:
        return await self.store.send_message(content, **kwargs)

    async def set_typing(self, active: bool) -> bool:
        contact_id = self.store.active_contact_id
        if contact_id is None:
            return False
        return await self.connection.send_typing(contact_id, active)

    async def mark_read(self, contact_id: Optional[str] = None) -> int:
        """
        Mark a contact read locally, then tell the server per unread message
        over the socket and per unread ticket over REST.

        Server failures are logged; the local state is already reset.

        Returns:
            The unread count before the reset
        """
        contact_id = contact_id or self.store.active_contact_id
        if contact_id is None:
            raise ValueError("No contact selected")

        ticket_ids = []
        for episode in self.store.episodes(contact_id):
            if episode.unread_count and episode.ticket_id and episode.ticket_id not in ticket_ids:
                ticket_ids.append(episode.ticket_id)
        message_ids = [m.id for m in self.store.unread_messages(contact_id)]

        before = self.store.mark_read(contact_id)
        for message_id in message_ids:
            await self.connection.send_read(message_id)
        for ticket_id in ticket_ids:
            try:
                await self.api.mark_ticket_read(ticket_id)
            except InboxSyncError as e:
                logger.warning(f"Could not mark ticket {ticket_id} read on server: {e}")
        return before
