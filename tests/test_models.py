"""Tests for conversation models."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from inboxsync.models import (
    Message,
    MessageStatus,
    Ticket,
    ViewMode,
    id_sort_key,
    normalize_status,
)


class TestMessageStatus:
    """Tests for MessageStatus ordering."""

    def test_rank_order(self):
        ranks = [s.rank for s in (MessageStatus.SENDING, MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ)]
        assert ranks == sorted(ranks)
        assert MessageStatus.FAILED.rank < MessageStatus.SENDING.rank

    def test_normalize_aliases(self):
        assert normalize_status("PENDING") == "sending"
        assert normalize_status("error") == "failed"
        assert normalize_status("read") == "read"


class TestMessage:
    """Tests for Message model."""

    def test_minimal(self):
        message = Message(id="1", contact_id="2")
        assert message.content == ""
        assert message.status is MessageStatus.SENT
        assert message.created_at.tzinfo is not None
        assert not message.is_pending

    def test_ids_coerced_to_strings(self):
        message = Message.model_validate({"id": 5, "contact_id": 6, "ticket_id": 7})
        assert (message.id, message.contact_id, message.ticket_id) == ("5", "6", "7")

    def test_message_id_preferred_over_id(self):
        message = Message.model_validate({"message_id": "m", "id": "row", "contact_id": "1"})
        assert message.id == "m"

    def test_naive_timestamp_is_utc(self):
        message = Message.model_validate({"id": 1, "contact_id": 1, "created_at": "2024-05-01T12:00:00"})
        assert message.created_at == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)

    def test_correlation_alias(self):
        message = Message.model_validate({"id": "local-1", "contact_id": 1, "correlation_id": "local-1"})
        assert message.client_id == "local-1"
        assert message.is_pending

    def test_missing_contact_rejected(self):
        with pytest.raises(ValidationError):
            Message.model_validate({"id": 1})

    def test_frozen(self):
        message = Message(id="1", contact_id="2")
        with pytest.raises(ValidationError):
            message.content = "changed"


class TestSortKey:
    """Tests for tie-breaking by id."""

    def test_numeric_ids_numeric_order(self):
        assert sorted(["10", "9", "100"], key=id_sort_key) == ["9", "10", "100"]

    def test_numeric_before_text(self):
        assert sorted(["local-a", "3"], key=id_sort_key) == ["3", "local-a"]


class TestTicket:
    """Tests for Ticket model."""

    def test_labels_from_objects(self):
        ticket = Ticket.model_validate({"id": 1, "labels": [{"name": "BOT"}, "vip", {"id": 3}]})
        assert ticket.labels == ("BOT", "vip")

    def test_status_normalized(self):
        assert Ticket(id="1", status=" Closed ").status == "closed"

    def test_nested_contact(self):
        assert Ticket.model_validate({"id": 1, "contact": {"id": 4}}).contact_id == "4"


class TestViewMode:
    def test_values(self):
        assert ViewMode("unified") is ViewMode.UNIFIED
        assert ViewMode("per_ticket") is ViewMode.PER_TICKET
