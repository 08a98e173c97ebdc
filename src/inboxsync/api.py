"""
REST client for the console API.

Only the calls the synchronization layer needs: conversation snapshots,
sending, marking read and message search. Records returned here are merged
into the store with the same idempotent rule as websocket events.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from inboxsync.backoff import BackoffPolicy, check_response, with_async_retry
from inboxsync.exceptions import NonRetryableApiError
from inboxsync.models import ConversationSnapshot, Message, MessageDirection, Ticket

logger = logging.getLogger(__name__)


def unwrap(body: Any) -> Any:
    """
    Strip the ``{"success": ..., "data": ...}`` envelope.

    Raises:
        NonRetryableApiError: If the envelope reports failure
    """
    if isinstance(body, dict) and "success" in body:
        if not body.get("success") or "data" not in body:
            message = body.get("error") or body.get("message") or "API request failed"
            raise NonRetryableApiError(str(message))
        return body["data"]
    return body


def extract_list(data: Any, *keys: str) -> list[Any]:
    """Pull a record list out of a direct or paginated payload."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in (*keys, "data", "items"):
            value = data.get(key)
            if isinstance(value, list):
                return value
    return []


def extract_single(data: Any) -> Any:
    if isinstance(data, dict) and isinstance(data.get("data"), dict):
        return data["data"]
    return data


def parse_message(
    record: Any,
    contact_id: Optional[str] = None,
    direction: Optional[MessageDirection] = None,
) -> Message:
    """Validate one REST message record, filling in what the endpoint implies."""
    if not isinstance(record, dict):
        raise NonRetryableApiError(f"Expected a message object, got {type(record).__name__}")
    record = dict(record)
    if contact_id is not None and record.get("contact_id") is None and not isinstance(record.get("contact"), dict):
        record["contact_id"] = contact_id
    if direction is not None:
        record.setdefault("direction", direction.value)
    try:
        return Message.model_validate(record)
    except ValidationError as e:
        raise NonRetryableApiError(f"Invalid message record: {e.error_count()} validation error(s)") from e


def _parse_messages(records: list[Any], contact_id: Optional[str] = None) -> list[Message]:
    messages = []
    for record in records:
        try:
            messages.append(parse_message(record, contact_id))
        except NonRetryableApiError as e:
            logger.warning(f"Skipping message record: {e}")
    return messages


class ApiClient:
    """
    Asynchronous HTTP client for the console API.

    Usage:
        async with ApiClient("https://console.example.com/api", token=token) as api:
            snapshot = await api.fetch_conversation("42")
            sent = await api.send_message("42", "Hello", client_id="local-abc")
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        page_size: int = 50,
        retry_policy: Optional[BackoffPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the API client.

        Args:
            base_url: Base URL of the API
            token: Bearer token (None for anonymous)
            timeout: Request timeout in seconds
            page_size: Default number of messages per page
            retry_policy: Status classification for error responses
            transport: Custom httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.page_size = page_size
        self.retry_policy = retry_policy or BackoffPolicy()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def update_token(self, token: Optional[str]) -> None:
        """Use a refreshed bearer token for subsequent requests."""
        self.token = token
        if self._client is not None:
            if token:
                self._client.headers["Authorization"] = f"Bearer {token}"
            else:
                self._client.headers.pop("Authorization", None)

    async def close(self) -> None:
        """Close the async HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _data(self, response: httpx.Response) -> Any:
        check_response(response, self.retry_policy)
        return unwrap(response.json())

    @with_async_retry()
    async def fetch_messages(
        self,
        contact_id: str,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> list[Message]:
        """Fetch one page of a contact's messages."""
        response = await self.client.get(
            f"/messages/contact/{contact_id}",
            params={"page": page, "limit": limit or self.page_size},
        )
        records = extract_list(self._data(response), "messages")
        return _parse_messages(records, contact_id)

    @with_async_retry()
    async def fetch_tickets(self, contact_id: str) -> list[Ticket]:
        """Fetch the tickets opened for a contact."""
        response = await self.client.get(f"/tickets/contact/{contact_id}")
        tickets = []
        for record in extract_list(self._data(response), "tickets"):
            try:
                tickets.append(Ticket.model_validate(record))
            except ValidationError as e:
                logger.warning(f"Skipping ticket record: {e.error_count()} validation error(s)")
        return tickets

    async def fetch_conversation(
        self,
        contact_id: str,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> ConversationSnapshot:
        """Fetch a contact's messages and tickets concurrently."""
        messages, tickets = await asyncio.gather(
            self.fetch_messages(contact_id, page=page, limit=limit),
            self.fetch_tickets(contact_id),
        )
        logger.debug(
            f"Fetched {len(messages)} message(s) and {len(tickets)} ticket(s) "
            f"for contact {contact_id}"
        )
        return ConversationSnapshot(contact_id=contact_id, messages=messages, tickets=tickets)

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
        """
        Send a text message.

        Not retried: the server deduplicates by ``client_id``, but a retry
        after an ambiguous failure is left to the operator.

        Returns:
            The confirmed message, carrying ``client_id``
        """
        payload: dict[str, Any] = {
            "contact_id": contact_id,
            "text": content,
            "client_id": client_id,
            "message_type": message_type,
        }
        if ticket_id is not None:
            payload["ticket_id"] = ticket_id
        if reply_to_id is not None:
            payload["reply_to_id"] = reply_to_id

        try:
            response = await self.client.post("/messages/send/text", json=payload)
        except httpx.RequestError as e:
            raise NonRetryableApiError(f"Network error while sending: {e}") from e

        record = extract_single(self._data(response))
        message = parse_message(record, contact_id, MessageDirection.OUTGOING)
        if message.client_id is None:
            message = message.model_copy(update={"client_id": client_id})
        if message.ticket_id is None and ticket_id is not None:
            message = message.model_copy(update={"ticket_id": ticket_id})
        return message

    @with_async_retry()
    async def mark_ticket_read(self, ticket_id: str) -> None:
        """Mark every message of a ticket as read on the server."""
        response = await self.client.put(f"/messages/ticket/{ticket_id}/read-all")
        self._data(response)

    @with_async_retry()
    async def search_messages(
        self,
        query: str,
        contact_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Message]:
        """Full-text search across messages, optionally within one contact."""
        params: dict[str, Any] = {"query": query, "limit": limit or self.page_size}
        if contact_id is not None:
            params["contact_id"] = contact_id
        response = await self.client.get("/messages/search", params=params)
        records = extract_list(self._data(response), "messages", "results")
        return _parse_messages(records, contact_id)
