"""
Pytest configuration and fixtures for inboxsync tests.

Provides an in-memory transport standing in for the websocket, a fake REST
collaborator for the store, and message/ticket factories.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

import pytest

from inboxsync.backoff import BackoffPolicy
from inboxsync.connection import ConnectionManager
from inboxsync.exceptions import ConnectionLostError
from inboxsync.models import (
    ConversationSnapshot,
    Message,
    MessageDirection,
    MessageStatus,
    Ticket,
)
from inboxsync.transport import Transport, TransportConnection

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeConnection(TransportConnection):
    """Connection whose inbound frames are pushed by the test."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.inbox: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self.closed = False
        self.fail_sends = False

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.closed or self.fail_sends:
            raise ConnectionLostError("fake connection closed")
        self.sent.append(payload)

    async def receive(self) -> Optional[str]:
        if self.closed:
            return None
        return await self.inbox.get()

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(None)

    def push(self, frame: Union[dict[str, Any], str]) -> None:
        self.inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self) -> None:
        """Simulate the server going away."""
        self.closed = True
        self.inbox.put_nowait(None)

    def requests(self, kind: str) -> list[str]:
        return [p["room"] for p in self.sent if p.get("type") == kind]


class FakeTransport(Transport):
    """Hands out FakeConnections; queued errors are raised by the next opens."""

    def __init__(self) -> None:
        self.connections: list[FakeConnection] = []
        self.failures: list[BaseException] = []
        self.opened_with: list[tuple[str, Optional[str]]] = []
        self.closed = False
        self.connection_factory: Callable[[], FakeConnection] = FakeConnection

    async def open(self, url: str, token: Optional[str] = None) -> TransportConnection:
        self.opened_with.append((url, token))
        if self.failures:
            raise self.failures.pop(0)
        conn = self.connection_factory()
        self.connections.append(conn)
        return conn

    async def aclose(self) -> None:
        self.closed = True

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]


class RecordingSleep:
    """Replaces asyncio.sleep between reconnect attempts."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeApi:
    """REST collaborator double for the store and session."""

    def __init__(self) -> None:
        self.snapshots: dict[str, ConversationSnapshot] = {}
        self.fetch_gates: dict[str, asyncio.Event] = {}
        self.fetch_calls: list[str] = []
        self.sent: list[dict[str, Any]] = []
        self.send_gate: Optional[asyncio.Event] = None
        self.send_error: Optional[Exception] = None
        self.read_tickets: list[str] = []
        self.token: Optional[str] = None
        self.closed = False
        self._next_id = 1000

    async def fetch_conversation(self, contact_id: str) -> ConversationSnapshot:
        self.fetch_calls.append(contact_id)
        gate = self.fetch_gates.get(contact_id)
        if gate is not None:
            await gate.wait()
        return self.snapshots.get(contact_id, ConversationSnapshot(contact_id=contact_id))

    async def send_message(
        self,
        contact_id: str,
        content: str,
        *,
        client_id: str,
        ticket_id: Optional[str] = None,
        message_type: str = "text",
        reply_to_id: Optional[str] = None,
    ) -> Message:
        self.sent.append(
            {
                "contact_id": contact_id,
                "content": content,
                "client_id": client_id,
                "ticket_id": ticket_id,
            }
        )
        gate = self.send_gate
        if gate is not None:
            await gate.wait()
        if self.send_error is not None:
            raise self.send_error
        self._next_id += 1
        return Message(
            id=str(self._next_id),
            contact_id=contact_id,
            ticket_id=ticket_id,
            direction=MessageDirection.OUTGOING,
            content=content,
            client_id=client_id,
            status=MessageStatus.SENT,
        )

    async def mark_ticket_read(self, ticket_id: str) -> None:
        self.read_tickets.append(ticket_id)

    def update_token(self, token: Optional[str]) -> None:
        self.token = token

    async def close(self) -> None:
        self.closed = True


async def settle(predicate: Optional[Callable[[], bool]] = None, rounds: int = 50) -> None:
    """Let scheduled tasks run, optionally until ``predicate`` holds."""
    for _ in range(rounds):
        if predicate is not None and predicate():
            return
        await asyncio.sleep(0)
    if predicate is not None:
        assert predicate(), "condition not reached"


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def manager(transport: FakeTransport, sleep: RecordingSleep) -> ConnectionManager:
    """Connection manager on the fake transport with the default 1s/30s/5 policy."""
    return ConnectionManager(
        "ws://test/ws",
        transport,
        token="secret",
        backoff=BackoffPolicy(base_delay=1.0, max_delay=30.0, max_attempts=5),
        sleep=sleep,
    )


@pytest.fixture
def api() -> FakeApi:
    return FakeApi()


@pytest.fixture
def make_message() -> Callable[..., Message]:
    """Factory: ``make_message("1", ticket_id="7", minutes=3)``."""

    def _make(
        message_id: str,
        contact_id: str = "c1",
        ticket_id: Optional[str] = None,
        minutes: float = 0,
        direction: MessageDirection = MessageDirection.INCOMING,
        **kwargs: Any,
    ) -> Message:
        return Message(
            id=message_id,
            contact_id=contact_id,
            ticket_id=ticket_id,
            direction=direction,
            content=kwargs.pop("content", f"message {message_id}"),
            created_at=BASE_TIME + timedelta(minutes=minutes),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_ticket() -> Callable[..., Ticket]:
    def _make(ticket_id: str, status: str = "open", labels: tuple[str, ...] = (), contact_id: str = "c1") -> Ticket:
        return Ticket(id=ticket_id, status=status, labels=labels, contact_id=contact_id)

    return _make
