"""
Data models for conversations.

Messages and tickets are validated pydantic models shared by the REST client
and the websocket frame parser, so both delivery paths produce identical
records. Episodes are plain derived views.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class MessageStatus(str, Enum):
    """Delivery status of a message."""

    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        """Progress order of delivery statuses; failed sits outside it."""
        return _STATUS_RANK[self]


_STATUS_RANK = {
    MessageStatus.SENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
    MessageStatus.FAILED: -1,
}

# Server variants seen on the wire
_STATUS_ALIASES = {
    "pending": MessageStatus.SENDING,
    "queued": MessageStatus.SENDING,
    "received": MessageStatus.DELIVERED,
    "error": MessageStatus.FAILED,
}


class ViewMode(str, Enum):
    """How a contact's message stream is presented."""

    UNIFIED = "unified"
    PER_TICKET = "per_ticket"


class EpisodeCategory(str, Enum):
    NEEDS_REPLY = "needs_reply"
    AUTOMATED = "automated"
    RESOLVED = "resolved"


def normalize_status(value: Any) -> Any:
    """Map server status spellings onto ``MessageStatus`` values."""
    if isinstance(value, str):
        lowered = value.lower()
        return _STATUS_ALIASES.get(lowered, lowered)
    return value


def _coerce_id(value: Any) -> Any:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return str(int(value))
    return value


def _lift_nested_id(data: dict[str, Any], key: str) -> None:
    """Copy ``data[key]["id"]`` to ``data[key + "_id"]`` when only the nested form is present."""
    nested = data.get(key)
    if data.get(f"{key}_id") in (None, "") and isinstance(nested, dict):
        data[f"{key}_id"] = nested.get("id")


class Message(BaseModel):
    """A single message in a contact's conversation.

    ``id`` is server-assigned once confirmed. While a send is pending the id
    is the client-generated correlation id, also stored in ``client_id``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(..., validation_alias=AliasChoices("message_id", "id"))
    contact_id: str
    ticket_id: Optional[str] = None
    direction: MessageDirection = MessageDirection.INCOMING
    content: str = Field("", validation_alias=AliasChoices("content", "body", "text"))
    message_type: str = "text"
    created_at: datetime = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("created_at", "timestamp"),
    )
    status: MessageStatus = MessageStatus.SENT
    client_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("client_id", "correlation_id")
    )
    reply_to_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("reply_to_id", "replied_to_id")
    )
    forwarded: bool = False
    reactions: dict[str, str] = Field(default_factory=dict)
    read_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_references(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            _lift_nested_id(data, "contact")
            _lift_nested_id(data, "ticket")
        return data

    @field_validator("id", "contact_id", "ticket_id", "client_id", "reply_to_id", mode="before")
    @classmethod
    def _normalize_ids(cls, value: Any) -> Any:
        return _coerce_id(value)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        return normalize_status(value)

    @field_validator("created_at")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_pending(self) -> bool:
        """True while this record is a local optimistic entry."""
        return self.client_id is not None and self.id == self.client_id

    @property
    def sort_key(self) -> tuple[datetime, tuple[int, int, str]]:
        return (self.created_at, id_sort_key(self.id))


def id_sort_key(message_id: str) -> tuple[int, int, str]:
    """Order numeric ids numerically, before any non-numeric ids."""
    if message_id.isdigit():
        return (0, int(message_id), "")
    return (1, 0, message_id)


class Ticket(BaseModel):
    """A support ticket, as far as episode derivation needs it."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str
    contact_id: Optional[str] = None
    status: str = "open"
    labels: tuple[str, ...] = ()
    title: Optional[str] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_references(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            _lift_nested_id(data, "contact")
        return data

    @field_validator("id", "contact_id", mode="before")
    @classmethod
    def _normalize_ids(cls, value: Any) -> Any:
        return _coerce_id(value)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("labels", mode="before")
    @classmethod
    def _label_names(cls, value: Any) -> Any:
        if value is None:
            return ()
        names = []
        for label in value:
            if isinstance(label, dict):
                label = label.get("name")
            if label:
                names.append(str(label))
        return tuple(names)


class ConversationSnapshot(BaseModel):
    """Initial state of a contact's conversation fetched over REST."""

    contact_id: str
    messages: list[Message] = Field(default_factory=list)
    tickets: list[Ticket] = Field(default_factory=list)


@dataclass(frozen=True)
class Episode:
    """A contiguous run of a contact's messages attributed to one ticket.

    Derived from the canonical list; never mutated or persisted.
    """

    ticket_id: Optional[str]
    messages: tuple[Message, ...]
    category: EpisodeCategory
    unread_count: int

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def first_message(self) -> Message:
        return self.messages[0]

    @property
    def last_message(self) -> Message:
        return self.messages[-1]

    @property
    def started_at(self) -> datetime:
        return self.messages[0].created_at

    @property
    def ended_at(self) -> datetime:
        return self.messages[-1].created_at

    def contains(self, message_id: str) -> bool:
        return any(m.id == message_id for m in self.messages)
