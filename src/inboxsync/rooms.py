"""Room naming convention and the locally tracked membership set."""

from typing import Iterator, Union

Id = Union[str, int]


def contact_room(contact_id: Id) -> str:
    return f"contact_{contact_id}"


def ticket_room(ticket_id: Id) -> str:
    return f"ticket_{ticket_id}"


def session_room(session_id: Id) -> str:
    return f"session_{session_id}"


def admin_room(admin_id: Id) -> str:
    return f"admin_{admin_id}"


class RoomMembership:
    """
    Rooms this client wants to be in.

    This set is the source of truth for replaying subscriptions after a
    reconnect, so it is updated whether or not the server could be told.
    Iteration follows join order.
    """

    def __init__(self) -> None:
        self._rooms: dict[str, None] = {}

    def add(self, room: str) -> bool:
        """Add a room; returns False if it was already a member."""
        if room in self._rooms:
            return False
        self._rooms[room] = None
        return True

    def discard(self, room: str) -> bool:
        """Remove a room; returns False if it was not a member."""
        if room not in self._rooms:
            return False
        del self._rooms[room]
        return True

    def clear(self) -> None:
        self._rooms.clear()

    def snapshot(self) -> tuple[str, ...]:
        return tuple(self._rooms)

    def __contains__(self, room: object) -> bool:
        return room in self._rooms

    def __iter__(self) -> Iterator[str]:
        return iter(tuple(self._rooms))

    def __len__(self) -> int:
        return len(self._rooms)
