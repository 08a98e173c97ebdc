"""In-memory registry of optimistic sends awaiting server confirmation."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional
from uuid import uuid4

from inboxsync.exceptions import InboxSyncError, SendTimeoutError
from inboxsync.models import Message, utcnow

logger = logging.getLogger(__name__)


def new_client_id() -> str:
    return f"local-{uuid4().hex}"


class PendingState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class PendingSend:
    """One send between intent and confirmation (or failure)."""

    client_id: str
    contact_id: str
    content: str
    ticket_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    state: PendingState = PendingState.PENDING
    result: Optional[Message] = None
    error: Optional[InboxSyncError] = None
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    def _cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class Outbox:
    """
    Tracks pending sends by correlation id.

    Each registered send gets a timer; if it is neither confirmed nor failed
    when the timer fires, it fails with ``SendTimeoutError`` and
    ``on_expire`` is called. Failed entries stay registered so a late
    confirmation can still be matched, until they are confirmed or discarded.
    """

    def __init__(
        self,
        timeout: float = 15.0,
        on_expire: Optional[Callable[[PendingSend], None]] = None,
    ):
        self.timeout = timeout
        self.on_expire = on_expire
        self._pending: dict[str, PendingSend] = {}

    def register(
        self,
        contact_id: str,
        content: str,
        ticket_id: Optional[str] = None,
    ) -> PendingSend:
        """Create a pending send and start its confirmation timer."""
        entry = PendingSend(
            client_id=new_client_id(),
            contact_id=contact_id,
            content=content,
            ticket_id=ticket_id,
        )
        loop = asyncio.get_running_loop()
        entry.timer = loop.call_later(self.timeout, self._expire, entry.client_id)
        self._pending[entry.client_id] = entry
        logger.debug(f"Registered pending send {entry.client_id} for contact {contact_id}")
        return entry

    def get(self, client_id: str) -> Optional[PendingSend]:
        return self._pending.get(client_id)

    def confirm(self, client_id: str, message: Message) -> Optional[PendingSend]:
        """Resolve a pending (or already failed) send with the server record."""
        entry = self._pending.pop(client_id, None)
        if entry is None:
            return None
        if entry.state is PendingState.FAILED:
            logger.info(f"Late confirmation for failed send {client_id}")
        entry._cancel_timer()
        entry.state = PendingState.CONFIRMED
        entry.result = message
        entry.error = None
        entry.done.set()
        return entry

    def fail(self, client_id: str, error: InboxSyncError) -> Optional[PendingSend]:
        """Mark a pending send failed. Has no effect on confirmed or already failed sends."""
        entry = self._pending.get(client_id)
        if entry is None or entry.state is not PendingState.PENDING:
            return None
        entry._cancel_timer()
        entry.state = PendingState.FAILED
        entry.error = error
        entry.done.set()
        return entry

    def discard(self, client_id: str) -> bool:
        entry = self._pending.pop(client_id, None)
        if entry is None:
            return False
        entry._cancel_timer()
        entry.done.set()
        return True

    async def wait_for(self, client_id: str) -> Message:
        """
        Wait until a send is confirmed.

        Raises:
            KeyError: If the correlation id is unknown
            SendTimeoutError: If the send timed out
            InboxSyncError: The error the send failed with
        """
        entry = self._pending.get(client_id)
        if entry is None:
            raise KeyError(client_id)
        await entry.done.wait()
        if entry.result is not None:
            return entry.result
        if entry.error is not None:
            raise entry.error
        raise KeyError(client_id)

    def clear(self) -> None:
        for entry in self._pending.values():
            entry._cancel_timer()
        self._pending.clear()

    def _expire(self, client_id: str) -> None:
        entry = self.fail(client_id, SendTimeoutError(client_id, self.timeout))
        if entry is None:
            return
        logger.warning(f"Send {client_id} not confirmed within {self.timeout:.1f}s")
        if self.on_expire is not None:
            self.on_expire(entry)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)
