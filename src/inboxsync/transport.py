"""
Websocket transport.

The connection manager talks to a ``Transport`` so tests can substitute an
in-memory fake; ``AiohttpTransport`` is the real implementation.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import aiohttp

from inboxsync.exceptions import AuthError, ConnectionLostError

logger = logging.getLogger(__name__)


class TransportConnection(ABC):
    """One open bidirectional connection."""

    @abstractmethod
    async def send_json(self, payload: dict[str, Any]) -> None:
        """Send one JSON frame; raises ConnectionLostError if closed."""

    @abstractmethod
    async def receive(self) -> Optional[str]:
        """Wait for the next text frame; returns None once the connection closes."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection (idempotent)."""


class Transport(ABC):
    """Factory for connections."""

    @abstractmethod
    async def open(self, url: str, token: Optional[str] = None) -> TransportConnection:
        """
        Open a connection.

        Raises:
            AuthError: If the server rejects the token
            ConnectionLostError: On any other failure to connect
        """

    async def aclose(self) -> None:
        """Release transport-wide resources."""


def with_token(url: str, token: Optional[str]) -> str:
    """Append the bearer token as the ``token`` query parameter."""
    if not token:
        return url
    parts = urlsplit(url)
    query = f"{parts.query}&" if parts.query else ""
    query += urlencode({"token": token})
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


class AiohttpConnection(TransportConnection):
    def __init__(self, ws: aiohttp.ClientWebSocketResponse):
        self._ws = ws

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self._ws.closed:
            raise ConnectionLostError("Websocket is closed")
        try:
            await self._ws.send_json(payload)
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise ConnectionLostError(f"Send failed: {e}", cause=e) from e

    async def receive(self) -> Optional[str]:
        msg = await self._ws.receive()
        if msg.type == aiohttp.WSMsgType.TEXT:
            return msg.data
        if msg.type == aiohttp.WSMsgType.BINARY:
            return msg.data.decode("utf-8", errors="replace")
        if msg.type == aiohttp.WSMsgType.ERROR:
            logger.warning(f"Websocket error: {self._ws.exception()}")
        return None

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()


class AiohttpTransport(Transport):
    """Websocket transport backed by an ``aiohttp.ClientSession``."""

    def __init__(self, heartbeat: float = 20.0, timeout: float = 30.0):
        self.heartbeat = heartbeat
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def session(self) -> aiohttp.ClientSession:
        """Get or create the client session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.timeout)
            )
        return self._session

    async def open(self, url: str, token: Optional[str] = None) -> TransportConnection:
        try:
            ws = await self.session.ws_connect(with_token(url, token), heartbeat=self.heartbeat)
        except aiohttp.WSServerHandshakeError as e:
            if e.status in (401, 403):
                raise AuthError(f"Handshake rejected: {e.status}", status_code=e.status) from e
            raise ConnectionLostError(f"Handshake failed: {e.status}", cause=e) from e
        except (aiohttp.ClientError, OSError, TimeoutError) as e:
            raise ConnectionLostError(f"Could not connect: {e}", cause=e) from e

        logger.debug(f"Websocket open: {url}")
        return AiohttpConnection(ws)

    async def aclose(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
