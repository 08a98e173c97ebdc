"""
Persistent connection manager.

Owns one websocket connection per client session: the auth handshake,
reconnection with exponential backoff, and replay of room subscriptions after
every successful (re)connect, since the server forgets a client's rooms when
the connection instance changes.

State machine::

    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTING/CONNECTED --(transport error)--> RECONNECTING
    RECONNECTING --(success)--> CONNECTED (rooms replayed)
    RECONNECTING --(attempts exhausted)--> DISCONNECTED (terminal)
    any --(auth rejected)--> DISCONNECTED (no retry)
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from inboxsync.backoff import BackoffPolicy
from inboxsync.dispatcher import EventDispatcher, Handler, Subscription
from inboxsync.events import ConnectionEvent, EventKind, parse_frame
from inboxsync.exceptions import (
    AuthError,
    ConnectionLostError,
    FrameValidationError,
    InboxSyncError,
    MaxReconnectAttemptsError,
    RoomJoinError,
)
from inboxsync.rooms import RoomMembership
from inboxsync.transport import Transport, TransportConnection

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class ConnectionManager:
    """
    Explicitly constructed owner of the persistent connection.

    Usage:
        manager = ConnectionManager(url, AiohttpTransport(), token=token)
        manager.on(EventKind.MESSAGE_RECEIVED, handle_message)
        await manager.connect()
        await manager.join_room(contact_room(42))
        ...
        await manager.aclose()
    """

    def __init__(
        self,
        url: str,
        transport: Transport,
        token: Optional[str] = None,
        backoff: Optional[BackoffPolicy] = None,
        dispatcher: Optional[EventDispatcher] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        """
        Initialize the manager (does not connect).

        Args:
            url: Websocket endpoint
            transport: Connection factory
            token: Bearer token for the handshake
            backoff: Reconnection policy
            dispatcher: Registry inbound events are fanned out to
            sleep: Awaitable used to wait between reconnect attempts
        """
        self.url = url
        self.transport = transport
        self.token = token
        self.backoff = backoff or BackoffPolicy()
        self.dispatcher = dispatcher or EventDispatcher()
        self.rooms = RoomMembership()

        self.status = ConnectionStatus.DISCONNECTED
        self.reconnect_attempts = 0
        self.last_error: Optional[InboxSyncError] = None

        self._sleep = sleep
        self._conn: Optional[TransportConnection] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._closing = False

    # ------------------------------------------------------------------
    # Listener registry

    def on(self, kind: EventKind, handler: Handler) -> Subscription:
        return self.dispatcher.on(kind, handler)

    def off(self, kind: EventKind, handler: Optional[Handler] = None) -> None:
        self.dispatcher.off(kind, handler)

    # ------------------------------------------------------------------
    # Lifecycle

    @property
    def is_connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED

    @property
    def reconnect_task(self) -> Optional["asyncio.Task[None]"]:
        """The running reconnect loop, if any."""
        return self._reconnect_task

    async def connect(self) -> bool:
        """
        Open the connection.

        A transport failure hands over to the background reconnect loop.

        Returns:
            True if connected on this first attempt

        Raises:
            AuthError: If the server rejects the token (not retried)
        """
        if self.status in (ConnectionStatus.CONNECTED, ConnectionStatus.CONNECTING):
            return self.is_connected
        if self.status is ConnectionStatus.RECONNECTING:
            logger.debug("Reconnect already in progress")
            return False

        self._closing = False
        self.reconnect_attempts = 0
        self.last_error = None
        self._set_status(ConnectionStatus.CONNECTING)

        try:
            await self._open()
        except AuthError as e:
            self._handle_auth_error(e)
            raise
        except ConnectionLostError as e:
            logger.warning(f"Initial connection failed: {e}")
            self._start_reconnect(str(e))
            return False
        return True

    async def disconnect(self) -> None:
        """Close the connection and stop reconnecting. Room membership is kept."""
        self._closing = True
        await self._cancel(self._reconnect_task)
        self._reconnect_task = None
        await self._cancel(self._reader_task)
        self._reader_task = None

        was_connected = self.is_connected
        if self._conn is not None:
            conn, self._conn = self._conn, None
            await conn.close()

        self._set_status(ConnectionStatus.DISCONNECTED)
        if was_connected:
            self.dispatcher.emit(
                EventKind.CONNECTION_LOST,
                ConnectionEvent(EventKind.CONNECTION_LOST, reason="disconnect requested"),
            )

    async def aclose(self) -> None:
        """Tear down everything: connection, rooms, listeners and transport."""
        await self.disconnect()
        self.rooms.clear()
        self.dispatcher.clear()
        await self.transport.aclose()

    def update_auth(self, token: Optional[str]) -> None:
        """Use a new token for future handshakes; the caller reconnects explicitly."""
        self.token = token
        logger.info("Auth token updated")

    # ------------------------------------------------------------------
    # Rooms

    async def join_room(self, room: str) -> bool:
        """
        Join a room. Joining an already-joined room is a no-op.

        Returns:
            True if the room was newly added to the membership set
        """
        if not self.rooms.add(room):
            return False
        await self._send_room_request("join_room", room)
        return True

    async def leave_room(self, room: str) -> bool:
        """
        Leave a room. Leaving a room we are not in is a no-op.

        Returns:
            True if the room was removed from the membership set
        """
        if not self.rooms.discard(room):
            return False
        await self._send_room_request("leave_room", room)
        return True

    async def send_typing(self, contact_id: str, active: bool) -> bool:
        """Tell the server the operator started or stopped typing to a contact."""
        payload = {"type": "typing_start" if active else "typing_stop", "contact_id": contact_id}
        return await self._send_notice(payload)

    async def send_read(self, message_id: str) -> bool:
        """Tell the server a message was read."""
        return await self._send_notice({"type": "message_read", "message_id": message_id})

    async def set_online(self, active: bool) -> bool:
        """Announce the operator as online or offline."""
        return await self._send_notice({"type": "user_online" if active else "user_offline"})

    async def _send_notice(self, payload: dict[str, Any]) -> bool:
        conn = self._conn
        if conn is None or not self.is_connected:
            return False
        try:
            await conn.send_json(payload)
        except ConnectionLostError as e:
            logger.debug(f"{payload['type']} notification dropped: {e}")
            return False
        return True

    async def _send_room_request(self, request: str, room: str) -> None:
        conn = self._conn
        if conn is None or not self.is_connected:
            logger.debug(f"{request} {room} deferred until connected")
            return
        try:
            await conn.send_json({"type": request, "room": room})
            logger.debug(f"Sent {request}: {room}")
        except ConnectionLostError as e:
            error = RoomJoinError(room, cause=e)
            logger.warning(f"{error}; membership will be replayed on reconnect")

    async def _replay_rooms(self, conn: TransportConnection) -> None:
        rooms = self.rooms.snapshot()
        for room in rooms:
            if room not in self.rooms:
                continue
            try:
                await conn.send_json({"type": "join_room", "room": room})
            except ConnectionLostError as e:
                logger.warning(f"{RoomJoinError(room, cause=e)} during replay")
                return
        if rooms:
            logger.info(f"Replayed {len(rooms)} room subscription(s)")

    # ------------------------------------------------------------------
    # Internals

    def _set_status(self, status: ConnectionStatus) -> None:
        if status is not self.status:
            logger.info(f"Connection {self.status.value} -> {status.value}")
            self.status = status

    async def _open(self) -> None:
        conn = await self.transport.open(self.url, self.token)
        self._conn = conn
        self.reconnect_attempts = 0
        self._set_status(ConnectionStatus.CONNECTED)
        await self._replay_rooms(conn)
        self._reader_task = asyncio.create_task(self._read_loop(conn))
        self.dispatcher.emit(
            EventKind.CONNECTION_ESTABLISHED,
            ConnectionEvent(EventKind.CONNECTION_ESTABLISHED),
        )

    async def _read_loop(self, conn: TransportConnection) -> None:
        reason = "closed by server"
        try:
            while True:
                raw = await conn.receive()
                if raw is None:
                    break
                if not self._handle_frame(raw):
                    await conn.close()
                    return
        except ConnectionLostError as e:
            reason = str(e)

        if conn is not self._conn or self._closing:
            return
        self._on_connection_lost(reason)

    def _handle_frame(self, raw: str) -> bool:
        """Dispatch one frame; returns False if the connection must be dropped."""
        try:
            event = parse_frame(raw)
        except FrameValidationError as e:
            frame = e.frame if isinstance(e.frame, dict) else {}
            if (frame.get("event") or frame.get("type")) == EventKind.AUTH_ERROR.value:
                data = frame.get("data") or {}
                message = data.get("message", "Server rejected credentials") if isinstance(data, dict) else str(data)
                self._conn = None
                self._handle_auth_error(AuthError(message))
                return False
            logger.warning(f"Dropping frame: {e}")
            return True

        self.dispatcher.emit(EventKind(event.kind), event)
        return True

    def _on_connection_lost(self, reason: str) -> None:
        self._conn = None
        logger.warning(f"Connection lost: {reason}")
        self._set_status(ConnectionStatus.RECONNECTING)
        self.dispatcher.emit(
            EventKind.CONNECTION_LOST,
            ConnectionEvent(EventKind.CONNECTION_LOST, reason=reason),
        )
        self._start_reconnect(reason)

    def _start_reconnect(self, reason: str) -> None:
        self._set_status(ConnectionStatus.RECONNECTING)
        self._reconnect_task = asyncio.create_task(self._reconnect_loop(reason))

    async def _reconnect_loop(self, reason: str) -> None:
        while not self._closing:
            attempt = self.reconnect_attempts + 1
            if self.backoff.exhausted(attempt):
                self._give_up(reason)
                return

            self.reconnect_attempts = attempt
            delay = self.backoff.delay_for(attempt)
            logger.warning(
                f"Reconnect attempt {attempt}/{self.backoff.max_attempts} in {delay:.2f}s"
            )
            self.dispatcher.emit(
                EventKind.RECONNECTING,
                ConnectionEvent(EventKind.RECONNECTING, attempt=attempt, delay=delay, reason=reason),
            )
            await self._sleep(delay)
            if self._closing:
                return

            try:
                await self._open()
            except AuthError as e:
                self._handle_auth_error(e)
                return
            except ConnectionLostError as e:
                reason = str(e)
                logger.warning(f"Reconnect attempt {attempt} failed: {e}")
                continue

            logger.info(f"Reconnected after {attempt} attempt(s)")
            return

    def _give_up(self, reason: str) -> None:
        attempts = self.reconnect_attempts
        self.last_error = MaxReconnectAttemptsError(attempts)
        self._set_status(ConnectionStatus.DISCONNECTED)
        logger.error(f"{self.last_error} (last error: {reason})")
        self.dispatcher.emit(
            EventKind.RECONNECT_FAILED,
            ConnectionEvent(EventKind.RECONNECT_FAILED, attempt=attempts, reason=reason),
        )

    def _handle_auth_error(self, error: AuthError) -> None:
        self.last_error = error
        self._set_status(ConnectionStatus.DISCONNECTED)
        logger.error(f"Authentication rejected: {error}")
        self.dispatcher.emit(
            EventKind.AUTH_ERROR,
            ConnectionEvent(EventKind.AUTH_ERROR, reason=str(error)),
        )

    @staticmethod
    async def _cancel(task: Optional["asyncio.Task[Any]"]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
