"""
Episode derivation.

An episode is a maximal contiguous run of a contact's ordered messages that
share one ticket id. A ticket id that reappears after another ticket's
messages starts a new episode; grouping is by contiguity, not globally by id.
"""

from typing import AbstractSet, Iterable, Mapping, Optional, Sequence

from inboxsync.models import (
    EpisodeCategory,
    Episode,
    Message,
    MessageDirection,
    Ticket,
)

AUTOMATION_LABELS = frozenset({"auto", "bot", "automated", "otomatis"})
AUTOMATED_STATUSES = frozenset({"automated", "bot_handled", "bot"})
RESOLVED_STATUSES = frozenset({"closed", "resolved"})


def categorize_ticket(ticket: Optional[Ticket]) -> EpisodeCategory:
    """
    Map a ticket onto an episode category.

    Closed or resolved tickets are resolved regardless of labels. Automation
    labels or an automated status mark the ticket as automated. Anything else,
    including an unknown ticket, needs a reply.
    """
    if ticket is None:
        return EpisodeCategory.NEEDS_REPLY
    if ticket.status in RESOLVED_STATUSES:
        return EpisodeCategory.RESOLVED
    if ticket.status in AUTOMATED_STATUSES:
        return EpisodeCategory.AUTOMATED
    if any(label.lower() in AUTOMATION_LABELS for label in ticket.labels):
        return EpisodeCategory.AUTOMATED
    return EpisodeCategory.NEEDS_REPLY


def is_unread(message: Message, read_ids: AbstractSet[str] = frozenset()) -> bool:
    """
    Whether a message counts as unread.

    Incoming messages are unread until the server reports ``read_at`` for them
    or the operator marks them read locally (``read_ids``). Position in the
    list plays no part, so a late out-of-order arrival is still unread.
    """
    if message.direction is not MessageDirection.INCOMING:
        return False
    return message.read_at is None and message.id not in read_ids


def group_episodes(
    messages: Sequence[Message],
    tickets: Mapping[str, Ticket],
    read_ids: AbstractSet[str] = frozenset(),
) -> list[Episode]:
    """
    Partition an ordered message list into episodes.

    Args:
        messages: A contact's canonical list, already in sort order
        tickets: Known tickets by id, used for categories
        read_ids: Ids of messages marked read locally

    Returns:
        Episodes in message order
    """
    episodes: list[Episode] = []
    run: list[Message] = []
    unread = 0

    def close_run() -> None:
        ticket_id = run[0].ticket_id
        ticket = tickets.get(ticket_id) if ticket_id is not None else None
        episodes.append(
            Episode(
                ticket_id=ticket_id,
                messages=tuple(run),
                category=categorize_ticket(ticket),
                unread_count=unread,
            )
        )

    for message in messages:
        if run and message.ticket_id != run[-1].ticket_id:
            close_run()
            run = []
            unread = 0
        run.append(message)
        if is_unread(message, read_ids):
            unread += 1

    if run:
        close_run()
    return episodes


def episodes_for_ticket(episodes: Iterable[Episode], ticket_id: str) -> list[Episode]:
    """Every episode of one ticket, in order (a ticket can have several)."""
    return [e for e in episodes if e.ticket_id == ticket_id]


def find_episode(episodes: Iterable[Episode], message_id: str) -> Optional[Episode]:
    """The episode containing a message, if any."""
    for episode in episodes:
        if episode.contains(message_id):
            return episode
    return None
