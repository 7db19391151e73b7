"""Room membership: which connections listen to which logical channel.

Room keys are namespaced by kind::

    chat:{id}       one 1:1 support chat
    user:{id}       a user's inbox; reaches every connection of that user
    group:{id}      an agent group
    dm:{a}-{b}      a DM thread, a < b
    agents          every authenticated agent
    global-chat     the team chat

Rooms are implicit. They come into existence on first join and disappear on
last leave; leaving a room that does not exist is a no-op.
"""
from typing import Dict, Iterable, Set

from helpdesk.storage.direct import thread_id

AGENTS_ROOM = "agents"
GLOBAL_ROOM = "global-chat"


def chat_room(chat_id: int) -> str:
    return f"chat:{chat_id}"


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


def group_room(group_id: int) -> str:
    return f"group:{group_id}"


def dm_room(a: int, b: int) -> str:
    return thread_id(a, b)


class RoomMembership:
    def __init__(self) -> None:
        self._members: Dict[str, Set[str]] = {}
        self._rooms: Dict[str, Set[str]] = {}

    def join(self, connection_id: str, room: str) -> None:
        self._members.setdefault(room, set()).add(connection_id)
        self._rooms.setdefault(connection_id, set()).add(room)

    def leave(self, connection_id: str, room: str) -> None:
        members = self._members.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._members[room]
        rooms = self._rooms.get(connection_id)
        if rooms is not None:
            rooms.discard(room)
            if not rooms:
                del self._rooms[connection_id]

    def leave_all(self, connection_id: str) -> None:
        for room in list(self._rooms.get(connection_id, ())):
            self.leave(connection_id, room)

    def members_of(self, room: str) -> Set[str]:
        return set(self._members.get(room, ()))

    def members_of_any(self, rooms: Iterable[str]) -> Set[str]:
        members: Set[str] = set()
        for room in rooms:
            members |= self._members.get(room, set())
        return members

    def rooms_of(self, connection_id: str) -> Set[str]:
        return set(self._rooms.get(connection_id, ()))

    def room_size(self, room: str) -> int:
        return len(self._members.get(room, ()))
