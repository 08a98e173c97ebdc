"""
Conversation store.

Holds the canonical, ordered message list of every loaded contact and is the
only place that list is mutated. Mutations never await midway, so no reader
can observe a half-applied change (for example a pending send and its
confirmation side by side). Each one ends by recomputing the contact's
episodes and publishing ``conversation_updated``.

Ordering is by ``created_at``, ties broken by id (numeric ids numerically).
Merging is idempotent by id: a repeated id replaces the earlier entry.
"""

import bisect
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Union

from inboxsync.connection import ConnectionManager
from inboxsync.dispatcher import EventDispatcher, Subscription
from inboxsync.episodes import find_episode, group_episodes, is_unread
from inboxsync.events import (
    ConversationUpdated,
    EventKind,
    MessageReceived,
    MessageSent,
    MessageStatusUpdate,
    TicketCreated,
    TicketUpdated,
)
from inboxsync.exceptions import InboxSyncError
from inboxsync.inbox import ConversationSummary, status_for_category
from inboxsync.models import (
    ConversationSnapshot,
    Episode,
    Message,
    MessageDirection,
    MessageStatus,
    Ticket,
    ViewMode,
    utcnow,
)
from inboxsync.outbox import Outbox, PendingSend
from inboxsync.rooms import contact_room, ticket_room

logger = logging.getLogger(__name__)


class ConversationApi(Protocol):
    """The REST calls the store depends on."""

    async def fetch_conversation(self, contact_id: str) -> ConversationSnapshot: ...

    async def send_message(
        self,
        contact_id: str,
        content: str,
        *,
        client_id: str,
        ticket_id: Optional[str] = None,
        message_type: str = "text",
        reply_to_id: Optional[str] = None,
    ) -> Message: ...


def _sort_key(message: Message) -> tuple[Any, ...]:
    return message.sort_key


@dataclass
class ContactConversation:
    """Mutable state of one contact. Owned by ``ConversationStore``."""

    contact_id: str
    messages: list[Message] = field(default_factory=list)
    index: dict[str, Message] = field(default_factory=dict)
    tickets: dict[str, Ticket] = field(default_factory=dict)
    view_mode: ViewMode = ViewMode.UNIFIED
    # A member message of the selected episode; survives recomputation
    selected_message_id: Optional[str] = None
    # Incoming messages marked read locally
    read_ids: set[str] = field(default_factory=set)
    episodes: list[Episode] = field(default_factory=list)
    loaded: bool = False

    @property
    def unread_count(self) -> int:
        return sum(e.unread_count for e in self.episodes)

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    @property
    def selected_episode(self) -> Optional[Episode]:
        if self.view_mode is not ViewMode.PER_TICKET or self.selected_message_id is None:
            return None
        return find_episode(self.episodes, self.selected_message_id)

    def position(self, message: Message) -> int:
        i = bisect.bisect_left(self.messages, message.sort_key, key=_sort_key)
        if i < len(self.messages) and self.messages[i].id == message.id:
            return i
        # Fallback for entries whose key was changed in place
        for j, existing in enumerate(self.messages):
            if existing.id == message.id:
                return j
        raise ValueError(f"Message {message.id} not in conversation {self.contact_id}")

    def insert(self, message: Message) -> None:
        bisect.insort(self.messages, message, key=_sort_key)
        self.index[message.id] = message

    def remove(self, message: Message) -> None:
        del self.messages[self.position(message)]
        del self.index[message.id]

    def replace(self, existing: Message, message: Message) -> None:
        """Swap an entry for a record with the same id and sort key."""
        self.messages[self.position(existing)] = message
        self.index[message.id] = message

    def recompute(self) -> None:
        self.episodes = group_episodes(self.messages, self.tickets, self.read_ids)


class ConversationStore:
    """
    Canonical per-contact message lists.

    Usage:
        store = ConversationStore(api, connection, send_timeout=15)
        subscriptions = store.bind(connection.dispatcher)
        await store.load_conversation("42")
        await store.send_message("Hello!")
        store.mark_read("42")
    """

    def __init__(
        self,
        api: ConversationApi,
        connection: Optional[ConnectionManager] = None,
        send_timeout: float = 15.0,
        dispatcher: Optional[EventDispatcher] = None,
    ):
        """
        Args:
            api: REST collaborator for snapshots and sends
            connection: Connection whose rooms follow navigation (optional)
            send_timeout: Seconds before an unconfirmed send turns failed
            dispatcher: Where ``conversation_updated`` is published
        """
        self.api = api
        self.connection = connection
        self.dispatcher = dispatcher or EventDispatcher()
        self.outbox = Outbox(timeout=send_timeout, on_expire=self._on_send_expired)

        self.active_contact_id: Optional[str] = None
        self._conversations: dict[str, ContactConversation] = {}
        self._contact_of: dict[str, str] = {}
        self._ticket_room: Optional[str] = None
        self._generation = 0

    # ------------------------------------------------------------------
    # Reads

    def conversation(self, contact_id: str) -> Optional[ContactConversation]:
        return self._conversations.get(contact_id)

    def contacts(self) -> list[str]:
        return list(self._conversations)

    def messages(self, contact_id: str) -> list[Message]:
        conv = self._conversations.get(contact_id)
        return list(conv.messages) if conv else []

    def get_message(self, message_id: str) -> Optional[Message]:
        contact_id = self._contact_of.get(message_id)
        if contact_id is None:
            return None
        return self._conversations[contact_id].index.get(message_id)

    def episodes(self, contact_id: str) -> list[Episode]:
        conv = self._conversations.get(contact_id)
        return list(conv.episodes) if conv else []

    def unread_count(self, contact_id: str) -> int:
        conv = self._conversations.get(contact_id)
        return conv.unread_count if conv else 0

    def messages_in_view(self, contact_id: str) -> list[Message]:
        """
        Messages as presented in the contact's current view mode.

        Per-ticket mode shows the selected episode, or the latest episode
        when none is selected.
        """
        conv = self._conversations.get(contact_id)
        if conv is None:
            return []
        if conv.view_mode is ViewMode.UNIFIED:
            return list(conv.messages)
        episode = conv.selected_episode
        if episode is None and conv.episodes:
            episode = conv.episodes[-1]
        return list(episode.messages) if episode else []

    def summary(self, contact_id: str) -> Optional[ConversationSummary]:
        conv = self._conversations.get(contact_id)
        if conv is None or conv.last_message is None:
            return None
        last = conv.last_message
        latest = conv.episodes[-1] if conv.episodes else None
        return ConversationSummary(
            contact_id=contact_id,
            status=status_for_category(latest.category if latest else None),
            unread_count=conv.unread_count,
            last_activity=last.created_at,
            last_message=last,
            ticket_id=latest.ticket_id if latest else None,
        )

    def summaries(self) -> list[ConversationSummary]:
        result = []
        for contact_id in self._conversations:
            summary = self.summary(contact_id)
            if summary is not None:
                result.append(summary)
        return result

    # ------------------------------------------------------------------
    # Navigation

    async def select_contact(self, contact_id: str) -> None:
        """
        Make a contact active.

        The new contact's room is joined before the previous one is left, so
        there is no window without a subscription.
        """
        previous = self.active_contact_id
        self.active_contact_id = contact_id
        self._ensure(contact_id)
        if previous == contact_id:
            return
        self._generation += 1
        logger.debug(f"Active contact {previous} -> {contact_id}")

        if self.connection is None:
            return
        await self.connection.join_room(contact_room(contact_id))
        if previous is not None:
            await self.connection.leave_room(contact_room(previous))
        await self._follow_ticket_room(None)

    async def load_conversation(self, contact_id: str) -> bool:
        """
        Select a contact and merge its REST snapshot.

        A snapshot that resolves after the active contact changed, or after a
        newer load started, is discarded.

        Returns:
            True if the snapshot was merged
        """
        await self.select_contact(contact_id)
        self._generation += 1
        generation = self._generation

        try:
            snapshot = await self.api.fetch_conversation(contact_id)
        except InboxSyncError:
            if self._is_stale(generation, contact_id):
                logger.debug(f"Ignoring failed stale load for contact {contact_id}")
                return False
            raise

        if self._is_stale(generation, contact_id):
            logger.info(f"Discarding stale snapshot for contact {contact_id}")
            return False

        conv = self._ensure(contact_id)
        for ticket in snapshot.tickets:
            conv.tickets[ticket.id] = ticket
        for message in snapshot.messages:
            self._merge(conv, message)
        conv.loaded = True
        self._commit(conv)
        logger.info(f"Loaded {len(snapshot.messages)} message(s) for contact {contact_id}")
        return True

    def _is_stale(self, generation: int, contact_id: str) -> bool:
        return generation != self._generation or self.active_contact_id != contact_id

    async def set_view_mode(self, contact_id: str, mode: ViewMode) -> None:
        conv = self._ensure(contact_id)
        mode = ViewMode(mode)
        if conv.view_mode is mode:
            return
        conv.view_mode = mode
        if mode is ViewMode.UNIFIED:
            conv.selected_message_id = None
        if contact_id == self.active_contact_id:
            selected = conv.selected_episode
            await self._follow_ticket_room(selected.ticket_id if selected else None)
        self._notify(contact_id)

    async def select_episode(self, contact_id: str, episode: Episode) -> None:
        """Switch to per-ticket mode showing ``episode``."""
        conv = self._ensure(contact_id)
        conv.view_mode = ViewMode.PER_TICKET
        conv.selected_message_id = episode.first_message.id
        if contact_id == self.active_contact_id:
            await self._follow_ticket_room(episode.ticket_id)
        self._notify(contact_id)

    async def _follow_ticket_room(self, ticket_id: Optional[str]) -> None:
        room = ticket_room(ticket_id) if ticket_id is not None else None
        previous = self._ticket_room
        if room == previous or self.connection is None:
            self._ticket_room = room
            return
        self._ticket_room = room
        if room is not None:
            await self.connection.join_room(room)
        if previous is not None:
            await self.connection.leave_room(previous)

    # ------------------------------------------------------------------
    # Merging

    def append_incoming(self, message: Message) -> Message:
        """
        Merge one message idempotently.

        A message echoing the correlation id of a pending send replaces that
        pending entry in the same step.

        Returns:
            The record now stored
        """
        conv = self._ensure(message.contact_id)
        stored = self._merge(conv, message)
        self._commit(conv)
        return stored

    def merge_messages(self, messages: list[Message]) -> int:
        """Merge a batch (e.g. search results), notifying once per contact."""
        touched: dict[str, ContactConversation] = {}
        for message in messages:
            conv = self._ensure(message.contact_id)
            self._merge(conv, message)
            touched[conv.contact_id] = conv
        for conv in touched.values():
            self._commit(conv)
        return len(messages)

    def _merge(self, conv: ContactConversation, message: Message) -> Message:
        client_id = message.client_id
        if client_id and client_id != message.id:
            pending = conv.index.get(client_id)
            if pending is not None and pending.is_pending:
                conv.remove(pending)
                self._contact_of.pop(client_id, None)
                if conv.selected_message_id == client_id:
                    conv.selected_message_id = message.id
                self.outbox.confirm(client_id, message)
                logger.debug(f"Confirmed pending send {client_id} as {message.id}")

        existing = conv.index.get(message.id)
        if existing is not None:
            if existing.status.rank > message.status.rank and not message.is_pending:
                message = message.model_copy(update={"status": existing.status})
            if existing.read_at is not None and message.read_at is None:
                message = message.model_copy(update={"read_at": existing.read_at})
            conv.remove(existing)
            logger.debug(f"Replacing message {message.id} in contact {conv.contact_id}")

        conv.insert(message)
        self._contact_of[message.id] = conv.contact_id
        return message

    def apply_status_update(
        self,
        message_id: str,
        status: MessageStatus,
        contact_id: Optional[str] = None,
    ) -> bool:
        """
        Move a message's delivery status forward.

        Statuses never regress; ``failed`` is only accepted for messages the
        server has not confirmed.

        Returns:
            True if the status changed
        """
        contact_id = contact_id or self._contact_of.get(message_id)
        conv = self._conversations.get(contact_id) if contact_id else None
        existing = conv.index.get(message_id) if conv else None
        if conv is None or existing is None:
            logger.debug(f"Status update for unknown message {message_id}")
            return False

        status = MessageStatus(status)
        if status is MessageStatus.FAILED:
            if not existing.is_pending:
                return False
        elif existing.status is not MessageStatus.FAILED and status.rank <= existing.status.rank:
            return False

        conv.replace(existing, existing.model_copy(update={"status": status}))
        self._commit(conv)
        return True

    def update_ticket(self, ticket: Ticket) -> list[str]:
        """
        Record a ticket change and recompute every contact it belongs to.

        Returns:
            Contact ids whose episodes were recomputed
        """
        affected = []
        for conv in self._conversations.values():
            owns = ticket.contact_id == conv.contact_id
            if owns or ticket.id in conv.tickets or any(
                m.ticket_id == ticket.id for m in conv.messages
            ):
                conv.tickets[ticket.id] = ticket
                self._commit(conv)
                affected.append(conv.contact_id)
        if not affected and ticket.contact_id is not None:
            conv = self._ensure(ticket.contact_id)
            conv.tickets[ticket.id] = ticket
            self._commit(conv)
            affected.append(conv.contact_id)
        return affected

    # ------------------------------------------------------------------
    # Sending

    async def send_message(
        self,
        content: str,
        contact_id: Optional[str] = None,
        ticket_id: Optional[str] = None,
        message_type: str = "text",
        reply_to_id: Optional[str] = None,
    ) -> Message:
        """
        Send optimistically.

        A pending entry (status ``sending``, id = correlation id) is visible
        immediately. It is replaced by the server record on confirmation, or
        turns ``failed`` when the send errors or is not confirmed within the
        send timeout. Failed entries stay until resent or discarded.

        Returns:
            The confirmed record, or the failed pending entry
        """
        contact_id = contact_id or self.active_contact_id
        if contact_id is None:
            raise ValueError("No contact selected")

        conv = self._ensure(contact_id)
        if ticket_id is None:
            ticket_id = self._default_ticket(conv)

        pending = self.outbox.register(contact_id, content, ticket_id)
        placeholder = Message(
            id=pending.client_id,
            client_id=pending.client_id,
            contact_id=contact_id,
            ticket_id=ticket_id,
            direction=MessageDirection.OUTGOING,
            content=content,
            message_type=message_type,
            created_at=pending.created_at,
            status=MessageStatus.SENDING,
            reply_to_id=reply_to_id,
        )
        conv.insert(placeholder)
        self._contact_of[placeholder.id] = contact_id
        self._commit(conv)

        try:
            confirmed = await self.api.send_message(
                contact_id,
                content,
                client_id=pending.client_id,
                ticket_id=ticket_id,
                message_type=message_type,
                reply_to_id=reply_to_id,
            )
        except InboxSyncError as e:
            logger.warning(f"Send {pending.client_id} failed: {e}")
            self._fail_pending(pending.client_id, e)
            return self.get_message(pending.client_id) or placeholder

        if confirmed.client_id is None:
            confirmed = confirmed.model_copy(update={"client_id": pending.client_id})
        if pending.client_id not in conv.index and confirmed.id not in conv.index:
            logger.debug(f"Pending send {pending.client_id} was discarded before confirmation")
            self.outbox.confirm(pending.client_id, confirmed)
            return confirmed
        return self.append_incoming(confirmed)

    async def resend(self, message_id: str) -> Message:
        """Send a failed entry's content again as a new, independent pending send."""
        failed = self.get_message(message_id)
        if failed is None or not failed.is_pending or failed.status is not MessageStatus.FAILED:
            raise ValueError(f"Message {message_id} is not a failed send")
        # The new send gets its own correlation id
        self.outbox.discard(message_id)
        return await self.send_message(
            failed.content,
            contact_id=failed.contact_id,
            ticket_id=failed.ticket_id,
            message_type=failed.message_type,
            reply_to_id=failed.reply_to_id,
        )

    def discard(self, message_id: str) -> bool:
        """Remove a failed pending entry."""
        failed = self.get_message(message_id)
        if failed is None or not failed.is_pending or failed.status is not MessageStatus.FAILED:
            return False
        conv = self._conversations[failed.contact_id]
        conv.remove(failed)
        self._contact_of.pop(message_id, None)
        self.outbox.discard(message_id)
        self._commit(conv)
        return True

    def _default_ticket(self, conv: ContactConversation) -> Optional[str]:
        selected = conv.selected_episode
        if selected is not None:
            return selected.ticket_id
        last = conv.last_message
        return last.ticket_id if last else None

    def _fail_pending(self, client_id: str, error: InboxSyncError) -> None:
        self.outbox.fail(client_id, error)
        entry = self.get_message(client_id)
        if entry is None or not entry.is_pending or entry.status is MessageStatus.FAILED:
            return
        conv = self._conversations[entry.contact_id]
        conv.replace(entry, entry.model_copy(update={"status": MessageStatus.FAILED}))
        self._commit(conv)

    def _on_send_expired(self, pending: PendingSend) -> None:
        if pending.error is not None:
            self._fail_pending(pending.client_id, pending.error)

    # ------------------------------------------------------------------
    # Read state

    def mark_read(self, contact_id: str) -> int:
        """
        Mark every incoming message currently in the conversation as read.

        Unread entries get ``read_at`` stamped. Messages that arrive later stay
        unread whatever their ``created_at``.

        Returns:
            The unread count before the reset
        """
        conv = self._ensure(contact_id)
        before = conv.unread_count
        now = utcnow()
        for message in list(conv.messages):
            if message.direction is not MessageDirection.INCOMING:
                continue
            conv.read_ids.add(message.id)
            if message.read_at is None:
                conv.replace(message, message.model_copy(update={"read_at": now}))
        self._commit(conv)
        logger.debug(f"Marked contact {contact_id} read ({before} unread)")
        return before

    def unread_messages(self, contact_id: str) -> list[Message]:
        conv = self._conversations.get(contact_id)
        if conv is None:
            return []
        return [m for m in conv.messages if is_unread(m, conv.read_ids)]

    # ------------------------------------------------------------------
    # Wiring

    def bind(self, dispatcher: EventDispatcher) -> list[Subscription]:
        """Subscribe to the server events that mutate conversations."""

        def on_message(event: Union[MessageReceived, MessageSent]) -> None:
            self.append_incoming(event.data)

        def on_status(event: MessageStatusUpdate) -> None:
            self.apply_status_update(event.data.message_id, event.data.status, event.data.contact_id)

        def on_ticket(event: Union[TicketCreated, TicketUpdated]) -> None:
            self.update_ticket(event.data)

        return [
            dispatcher.on(EventKind.MESSAGE_RECEIVED, on_message),
            dispatcher.on(EventKind.MESSAGE_SENT, on_message),
            dispatcher.on(EventKind.MESSAGE_STATUS_UPDATE, on_status),
            dispatcher.on(EventKind.TICKET_CREATED, on_ticket),
            dispatcher.on(EventKind.TICKET_UPDATED, on_ticket),
        ]

    def clear(self) -> None:
        self.outbox.clear()
        self._conversations.clear()
        self._contact_of.clear()
        self.active_contact_id = None
        self._ticket_room = None

    # ------------------------------------------------------------------
    # Internals

    def _ensure(self, contact_id: str) -> ContactConversation:
        conv = self._conversations.get(contact_id)
        if conv is None:
            conv = ContactConversation(contact_id=contact_id)
            self._conversations[contact_id] = conv
        return conv

    def _commit(self, conv: ContactConversation) -> None:
        conv.recompute()
        self._notify(conv.contact_id)

    def _notify(self, contact_id: str) -> None:
        self.dispatcher.emit(EventKind.CONVERSATION_UPDATED, ConversationUpdated(contact_id))
