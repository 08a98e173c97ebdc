"""
Inbox grouping.

Buckets conversation summaries the way the operator's inbox lists them:
conversations waiting on an operator (by how long they have waited),
conversations handled by automation, and finished ones.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

from inboxsync.models import EpisodeCategory, Message

URGENT_AFTER = timedelta(minutes=30)
OVERDUE_AFTER = timedelta(minutes=120)


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    RESOLVED = "resolved"
    ARCHIVED = "archived"


_STATUS_FOR_CATEGORY = {
    EpisodeCategory.NEEDS_REPLY: ConversationStatus.ACTIVE,
    EpisodeCategory.AUTOMATED: ConversationStatus.PENDING,
    EpisodeCategory.RESOLVED: ConversationStatus.RESOLVED,
}


def status_for_category(category: Optional[EpisodeCategory]) -> ConversationStatus:
    if category is None:
        return ConversationStatus.ACTIVE
    return _STATUS_FOR_CATEGORY[category]


@dataclass(frozen=True)
class ConversationSummary:
    contact_id: str
    status: ConversationStatus
    unread_count: int
    last_activity: datetime
    last_message: Optional[Message] = None
    ticket_id: Optional[str] = None


@dataclass
class InboxGroups:
    """Conversation summaries bucketed for the inbox, each bucket in input order."""

    normal: list[ConversationSummary] = field(default_factory=list)
    urgent: list[ConversationSummary] = field(default_factory=list)
    overdue: list[ConversationSummary] = field(default_factory=list)
    auto_reply: list[ConversationSummary] = field(default_factory=list)
    resolved: list[ConversationSummary] = field(default_factory=list)
    archived: list[ConversationSummary] = field(default_factory=list)

    @property
    def needs_reply(self) -> list[ConversationSummary]:
        return self.overdue + self.urgent + self.normal

    @property
    def completed(self) -> list[ConversationSummary]:
        return self.resolved + self.archived

    def __len__(self) -> int:
        return (
            len(self.normal)
            + len(self.urgent)
            + len(self.overdue)
            + len(self.auto_reply)
            + len(self.resolved)
            + len(self.archived)
        )


def group_conversations(summaries: Iterable[ConversationSummary], now: datetime) -> InboxGroups:
    """
    Bucket summaries for the inbox.

    Active conversations appear only while they have unread messages; they
    are urgent after 30 minutes without activity and overdue after two hours.
    """
    groups = InboxGroups()
    for summary in summaries:
        waited = now - summary.last_activity
        if summary.status is ConversationStatus.ACTIVE:
            if summary.unread_count <= 0:
                continue
            if waited > OVERDUE_AFTER:
                groups.overdue.append(summary)
            elif waited > URGENT_AFTER:
                groups.urgent.append(summary)
            else:
                groups.normal.append(summary)
        elif summary.status is ConversationStatus.PENDING:
            groups.auto_reply.append(summary)
        elif summary.status is ConversationStatus.RESOLVED:
            groups.resolved.append(summary)
        elif summary.status is ConversationStatus.ARCHIVED:
            groups.archived.append(summary)
    return groups
