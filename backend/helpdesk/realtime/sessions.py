"""In-memory registry of live connections and the identity behind each one.

A user may hold several connections at once (several tabs, a phone and a
laptop). The registry answers both directions: which identity owns a
connection, and which connections belong to a user.

Thread Safety:
    Designed for a single event loop. Not safe for access from other threads.
"""
import logging
from typing import Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict

from helpdesk.domain.errors import AuthorizationError
from helpdesk.domain.models import Role

logger = logging.getLogger(__name__)


class Identity(BaseModel):
    """Who is behind a connection. Role never changes for a connection."""
    model_config = ConfigDict(frozen=True)

    userId: int
    role: Role
    name: str = ""


class SessionRegistry:
    def __init__(self) -> None:
        self._identities: Dict[str, Identity] = {}
        self._connections: Dict[int, Set[str]] = {}

    def register(self, connection_id: str, identity: Identity) -> bool:
        """Bind a connection to an identity.

        Returns:
            True if this is the user's first live connection.

        Raises:
            AuthorizationError: The connection is already bound to a different
                user or role.
        """
        current = self._identities.get(connection_id)
        if current is not None:
            if current.userId != identity.userId or current.role != identity.role:
                raise AuthorizationError("Connection is already authenticated as another user")
            self._identities[connection_id] = identity
            return False

        connections = self._connections.setdefault(identity.userId, set())
        first = not connections
        connections.add(connection_id)
        self._identities[connection_id] = identity
        logger.info(
            "[Sessions] %s %s (%s) registered on %s",
            identity.role.value, identity.userId, identity.name, connection_id,
        )
        return first

    def unregister(self, connection_id: str) -> Tuple[Optional[Identity], bool]:
        """Drop a connection.

        Returns:
            (identity, was_last): the identity that owned the connection (None
            if it never authenticated) and whether the user has no live
            connections left.
        """
        identity = self._identities.pop(connection_id, None)
        if identity is None:
            return None, False
        connections = self._connections.get(identity.userId, set())
        connections.discard(connection_id)
        was_last = not connections
        if was_last:
            self._connections.pop(identity.userId, None)
        logger.info("[Sessions] %s unregistered (last=%s)", connection_id, was_last)
        return identity, was_last

    def rebind(self, connection_id: str, identity: Identity) -> Tuple[Optional[Identity], bool]:
        """Move a connection to another user id of the same role."""
        current = self._identities.get(connection_id)
        if current is not None and current.role != identity.role:
            raise AuthorizationError("Role cannot change for a connection")
        previous, was_last = self.unregister(connection_id)
        self.register(connection_id, identity)
        return previous, was_last

    def lookup(self, connection_id: str) -> Optional[Identity]:
        return self._identities.get(connection_id)

    def connections_of(self, user_id: int) -> Set[str]:
        return set(self._connections.get(user_id, ()))

    def is_connected(self, user_id: Optional[int]) -> bool:
        if user_id is None:
            return False
        return bool(self._connections.get(user_id))

    def user_ids(self, role: Optional[Role] = None) -> List[int]:
        """Distinct user ids with at least one live connection."""
        seen: Dict[int, None] = {}
        for identity in self._identities.values():
            if role is None or identity.role == role:
                seen.setdefault(identity.userId, None)
        return sorted(seen)
