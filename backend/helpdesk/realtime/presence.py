"""Presence derived from live sessions.

An agent is online while it holds at least one live connection. Nothing here
is stored; the persisted ``users.is_online`` flag is only a cache for cold
reads and is written by the router.
"""
import logging
from typing import Dict, List

from helpdesk.domain.models import Role

from .hub import ConnectionHub
from .rooms import AGENTS_ROOM, GLOBAL_ROOM

logger = logging.getLogger(__name__)


class PresenceTracker:
    def __init__(self, hub: ConnectionHub) -> None:
        self._hub = hub

    def online_agent_ids(self) -> List[int]:
        return self._hub.sessions.user_ids(Role.AGENT)

    def is_online(self, user_id: int) -> bool:
        return self._hub.sessions.is_connected(user_id)

    def global_room_users(self) -> List[Dict]:
        """Agents with a connection inside the global room, one entry per user."""
        users: Dict[int, Dict] = {}
        for connection_id in sorted(self._hub.rooms.members_of(GLOBAL_ROOM)):
            identity = self._hub.sessions.lookup(connection_id)
            if identity is None or identity.role != Role.AGENT:
                continue
            users.setdefault(
                identity.userId,
                {"id": identity.userId, "name": identity.name, "role": identity.role.value},
            )
        return [users[user_id] for user_id in sorted(users)]

    async def broadcast_agent_presence(self) -> None:
        user_ids = self.online_agent_ids()
        await self._hub.emit_to_room(AGENTS_ROOM, "agent:online-users", {"userIds": user_ids})
        logger.debug(f"[Presence] {len(user_ids)} agents online")

    async def broadcast_global_users(self) -> None:
        users = self.global_room_users()
        await self._hub.emit_to_room(GLOBAL_ROOM, "global:users", users)
        logger.debug(f"[Presence] Broadcasting {len(users)} users to global chat")
