"""Tests for episode derivation."""

from conftest import BASE_TIME
from inboxsync.episodes import (
    categorize_ticket,
    episodes_for_ticket,
    find_episode,
    group_episodes,
)
from inboxsync.models import EpisodeCategory, MessageDirection


class TestCategorizeTicket:
    """Tests for ticket -> category mapping."""

    def test_open_needs_reply(self, make_ticket):
        assert categorize_ticket(make_ticket("1", status="open")) is EpisodeCategory.NEEDS_REPLY
        assert categorize_ticket(make_ticket("1", status="in_progress")) is EpisodeCategory.NEEDS_REPLY

    def test_unknown_ticket_needs_reply(self):
        assert categorize_ticket(None) is EpisodeCategory.NEEDS_REPLY

    def test_closed_and_resolved(self, make_ticket):
        assert categorize_ticket(make_ticket("1", status="closed")) is EpisodeCategory.RESOLVED
        assert categorize_ticket(make_ticket("1", status="RESOLVED")) is EpisodeCategory.RESOLVED

    def test_automation_labels(self, make_ticket):
        """Automation labels should be matched case-insensitively."""
        for label in ("AUTO", "bot", "Automated", "OTOMATIS"):
            assert categorize_ticket(make_ticket("1", labels=(label,))) is EpisodeCategory.AUTOMATED

    def test_automated_status(self, make_ticket):
        assert categorize_ticket(make_ticket("1", status="bot_handled")) is EpisodeCategory.AUTOMATED

    def test_resolved_wins_over_labels(self, make_ticket):
        """A closed bot ticket is resolved."""
        ticket = make_ticket("1", status="closed", labels=("BOT",))
        assert categorize_ticket(ticket) is EpisodeCategory.RESOLVED


class TestGroupEpisodes:
    """Tests for the contiguity grouping."""

    def test_empty(self):
        assert group_episodes([], {}) == []

    def test_scenario_two_tickets(self, make_message):
        """m1, m2 on ticket 1 and m3 on ticket 2 yield exactly two episodes."""
        messages = [
            make_message("m1", ticket_id="1", minutes=1),
            make_message("m2", ticket_id="1", minutes=2),
            make_message("m3", ticket_id="2", minutes=3),
        ]

        episodes = group_episodes(messages, {})

        assert len(episodes) == 2
        assert [m.id for m in episodes[0].messages] == ["m1", "m2"]
        assert episodes[0].ticket_id == "1"
        assert [m.id for m in episodes[1].messages] == ["m3"]
        assert episodes[1].ticket_id == "2"

    def test_reappearing_ticket_starts_new_episode(self, make_message):
        """Grouping is by contiguity, not by ticket id globally."""
        messages = [
            make_message("1", ticket_id="a", minutes=1),
            make_message("2", ticket_id="b", minutes=2),
            make_message("3", ticket_id="a", minutes=3),
        ]

        episodes = group_episodes(messages, {})

        assert [e.ticket_id for e in episodes] == ["a", "b", "a"]
        assert len(episodes_for_ticket(episodes, "a")) == 2

    def test_partition_is_contiguous_and_complete(self, make_message):
        """Concatenating episodes should give back the original list."""
        tickets = ["a", "a", None, None, "b", "a", "a", "c"]
        messages = [make_message(str(i), ticket_id=t, minutes=i) for i, t in enumerate(tickets)]

        episodes = group_episodes(messages, {})

        flattened = [m for e in episodes for m in e.messages]
        assert flattened == messages
        for episode in episodes:
            assert len({m.ticket_id for m in episode.messages}) == 1
        for before, after in zip(episodes, episodes[1:]):
            assert before.ticket_id != after.ticket_id

    def test_categories_from_tickets(self, make_message, make_ticket):
        messages = [
            make_message("1", ticket_id="a", minutes=1),
            make_message("2", ticket_id="b", minutes=2),
        ]
        tickets = {"a": make_ticket("a", status="closed"), "b": make_ticket("b", labels=("BOT",))}

        episodes = group_episodes(messages, tickets)

        assert [e.category for e in episodes] == [EpisodeCategory.RESOLVED, EpisodeCategory.AUTOMATED]

    def test_unread_excludes_read_messages(self, make_message):
        """Incoming messages with read_at or a local read mark are not unread."""
        messages = [
            make_message("1", ticket_id="a", minutes=1),
            make_message("2", ticket_id="a", minutes=2, read_at=BASE_TIME),
            make_message("3", ticket_id="a", minutes=3, direction=MessageDirection.OUTGOING),
            make_message("4", ticket_id="b", minutes=4),
        ]

        episodes = group_episodes(messages, {}, read_ids={"1"})

        assert [e.unread_count for e in episodes] == [0, 1]

    def test_nothing_read_everything_unread(self, make_message):
        messages = [make_message(str(i), minutes=i) for i in range(3)]
        assert group_episodes(messages, {})[0].unread_count == 3

    def test_episode_properties(self, make_message):
        messages = [
            make_message("1", ticket_id="a", minutes=1),
            make_message("2", ticket_id="a", minutes=5),
        ]

        [episode] = group_episodes(messages, {})

        assert episode.message_count == 2
        assert episode.first_message.id == "1"
        assert episode.last_message.id == "2"
        assert episode.started_at == messages[0].created_at
        assert episode.ended_at == messages[1].created_at
        assert find_episode([episode], "2") is episode
        assert find_episode([episode], "9") is None
