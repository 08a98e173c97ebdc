"""
Event kinds and inbound frame models.

Every frame arriving on the persistent connection is validated here into one
member of a closed union of server events. Frames that do not match any known
shape are rejected with ``FrameValidationError`` instead of being passed on.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from inboxsync.exceptions import FrameValidationError
from inboxsync.models import (
    Message,
    MessageDirection,
    MessageStatus,
    Ticket,
    normalize_status,
)


class EventKind(str, Enum):
    """Kinds of events delivered through the dispatcher."""

    # Server events
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_SENT = "message_sent"
    MESSAGE_STATUS_UPDATE = "message_status_update"
    TYPING_START = "typing_start"
    TYPING_STOP = "typing_stop"
    USER_ONLINE = "user_online"
    USER_OFFLINE = "user_offline"
    SESSION_STATUS_UPDATE = "session_status_update"
    TICKET_CREATED = "ticket_created"
    TICKET_UPDATED = "ticket_updated"
    CONVERSATION_ASSIGNED = "conversation_assigned"
    ADMIN_ACTIVITY = "admin_activity"

    # Emitted by the connection manager itself
    CONNECTION_ESTABLISHED = "connection_established"
    CONNECTION_LOST = "connection_lost"
    AUTH_ERROR = "auth_error"
    RECONNECTING = "reconnecting"
    RECONNECT_FAILED = "reconnect_failed"

    # Emitted by the conversation store after each committed mutation
    CONVERSATION_UPDATED = "conversation_updated"


SERVER_EVENT_KINDS = frozenset(
    {
        EventKind.MESSAGE_RECEIVED,
        EventKind.MESSAGE_SENT,
        EventKind.MESSAGE_STATUS_UPDATE,
        EventKind.TYPING_START,
        EventKind.TYPING_STOP,
        EventKind.USER_ONLINE,
        EventKind.USER_OFFLINE,
        EventKind.SESSION_STATUS_UPDATE,
        EventKind.TICKET_CREATED,
        EventKind.TICKET_UPDATED,
        EventKind.CONVERSATION_ASSIGNED,
        EventKind.ADMIN_ACTIVITY,
    }
)


def _str_id(value: Any) -> Any:
    if isinstance(value, (int, float)):
        return str(int(value))
    return value


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class StatusUpdatePayload(_Payload):
    message_id: str = Field(..., validation_alias=AliasChoices("message_id", "id"))
    status: MessageStatus
    contact_id: Optional[str] = None

    @field_validator("message_id", "contact_id", mode="before")
    @classmethod
    def _ids(cls, value: Any) -> Any:
        return _str_id(value)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> Any:
        return normalize_status(value)


class TypingPayload(_Payload):
    contact_id: str
    admin_id: Optional[str] = None
    ticket_id: Optional[str] = None
    username: Optional[str] = Field(
        None, validation_alias=AliasChoices("username", "user_name")
    )
    timestamp: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("timestamp", "started_at", "created_at")
    )

    @field_validator("contact_id", "admin_id", "ticket_id", mode="before")
    @classmethod
    def _ids(cls, value: Any) -> Any:
        return _str_id(value)

    @field_validator("timestamp")
    @classmethod
    def _ensure_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class PresencePayload(_Payload):
    user_id: str = Field(
        ..., validation_alias=AliasChoices("contact_id", "user_id", "admin_id")
    )
    last_seen: Optional[datetime] = None

    @field_validator("user_id", mode="before")
    @classmethod
    def _ids(cls, value: Any) -> Any:
        return _str_id(value)


class SessionStatusPayload(_Payload):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    session_id: str = Field(
        ..., validation_alias=AliasChoices("session_id", "session_name")
    )
    status: str

    @field_validator("session_id", mode="before")
    @classmethod
    def _ids(cls, value: Any) -> Any:
        return _str_id(value)


class AssignmentPayload(_Payload):
    contact_id: str
    admin_id: Optional[str] = None
    ticket_id: Optional[str] = None

    @field_validator("contact_id", "admin_id", "ticket_id", mode="before")
    @classmethod
    def _ids(cls, value: Any) -> Any:
        return _str_id(value)


class AdminActivityPayload(_Payload):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    admin_id: str
    activity: str = ""

    @field_validator("admin_id", mode="before")
    @classmethod
    def _ids(cls, value: Any) -> Any:
        return _str_id(value)


class _Frame(BaseModel):
    model_config = ConfigDict(frozen=True)


class MessageReceived(_Frame):
    kind: Literal["message_received"]
    data: Message

    @model_validator(mode="before")
    @classmethod
    def _default_direction(cls, values: Any) -> Any:
        return _with_default_direction(values, MessageDirection.INCOMING)


class MessageSent(_Frame):
    kind: Literal["message_sent"]
    data: Message

    @model_validator(mode="before")
    @classmethod
    def _default_direction(cls, values: Any) -> Any:
        return _with_default_direction(values, MessageDirection.OUTGOING)


class MessageStatusUpdate(_Frame):
    kind: Literal["message_status_update"]
    data: StatusUpdatePayload


class TypingStart(_Frame):
    kind: Literal["typing_start"]
    data: TypingPayload


class TypingStop(_Frame):
    kind: Literal["typing_stop"]
    data: TypingPayload


class UserOnline(_Frame):
    kind: Literal["user_online"]
    data: PresencePayload


class UserOffline(_Frame):
    kind: Literal["user_offline"]
    data: PresencePayload


class SessionStatusUpdate(_Frame):
    kind: Literal["session_status_update"]
    data: SessionStatusPayload


class TicketCreated(_Frame):
    kind: Literal["ticket_created"]
    data: Ticket

    @model_validator(mode="before")
    @classmethod
    def _unwrap(cls, values: Any) -> Any:
        return _unwrap_ticket(values)


class TicketUpdated(_Frame):
    kind: Literal["ticket_updated"]
    data: Ticket

    @model_validator(mode="before")
    @classmethod
    def _unwrap(cls, values: Any) -> Any:
        return _unwrap_ticket(values)


class ConversationAssigned(_Frame):
    kind: Literal["conversation_assigned"]
    data: AssignmentPayload


class AdminActivity(_Frame):
    kind: Literal["admin_activity"]
    data: AdminActivityPayload


def _with_default_direction(values: Any, direction: MessageDirection) -> Any:
    if isinstance(values, dict) and isinstance(values.get("data"), dict):
        data = dict(values["data"])
        data.setdefault("direction", direction.value)
        values = {**values, "data": data}
    return values


def _unwrap_ticket(values: Any) -> Any:
    """Accept both ``{"ticket": {...}}`` and a bare ticket as the payload."""
    if isinstance(values, dict) and isinstance(values.get("data"), dict):
        data = values["data"]
        if isinstance(data.get("ticket"), dict):
            values = {**values, "data": data["ticket"]}
    return values


ServerEvent = Annotated[
    Union[
        MessageReceived,
        MessageSent,
        MessageStatusUpdate,
        TypingStart,
        TypingStop,
        UserOnline,
        UserOffline,
        SessionStatusUpdate,
        TicketCreated,
        TicketUpdated,
        ConversationAssigned,
        AdminActivity,
    ],
    Field(discriminator="kind"),
]

_SERVER_KIND_VALUES = frozenset(k.value for k in SERVER_EVENT_KINDS)

_server_event_adapter: TypeAdapter[ServerEvent] = TypeAdapter(ServerEvent)


@dataclass(frozen=True)
class ConnectionEvent:
    """Lifecycle notification emitted by the connection manager."""

    kind: EventKind
    attempt: int = 0
    delay: Optional[float] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class ConversationUpdated:
    """Emitted by the store after a mutation of one contact's state."""

    contact_id: str
    kind: EventKind = EventKind.CONVERSATION_UPDATED


def parse_frame(raw: Union[str, bytes, dict[str, Any]]) -> Any:
    """
    Validate a raw inbound frame into a typed server event.

    Args:
        raw: JSON text or an already-decoded object of the form
            ``{"event": kind, "data": {...}}`` (``"type"`` is accepted for
            ``"event"``)

    Returns:
        One of the server event models

    Raises:
        FrameValidationError: If the frame is not JSON, names an unknown
            event kind, or its payload does not validate
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise FrameValidationError(f"Frame is not valid JSON: {e}", raw) from e

    if not isinstance(raw, dict):
        raise FrameValidationError("Frame must be a JSON object", raw)

    kind = raw.get("event") or raw.get("type")
    if not isinstance(kind, str) or kind not in _SERVER_KIND_VALUES:
        raise FrameValidationError(f"Unrecognized event kind: {kind!r}", raw)

    data = raw.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise FrameValidationError(f"Payload of {kind} must be an object", raw)

    try:
        return _server_event_adapter.validate_python({"kind": kind, "data": data})
    except ValidationError as e:
        raise FrameValidationError(
            f"Invalid {kind} payload: {e.error_count()} validation error(s)", raw
        ) from e
