"""Connection hub: live sockets, their sessions and their room memberships.

The hub is the only owner of the Session Registry and Room Membership. Every
outbound frame goes through it, so fan-out to a room is a single concurrent
``asyncio.gather`` over the room's connections.

Frames are JSON objects ``{"event": <name>, "data": <payload>}``. Payloads may
be pydantic models, lists of them, or plain dicts; they are encoded once per
emission with FastAPI's ``jsonable_encoder``.

Thread Safety:
    Designed for a single event loop. Not safe for access from other threads.
"""
import asyncio
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from .rooms import RoomMembership, user_room
from .sessions import Identity, SessionRegistry

logger = logging.getLogger(__name__)


def make_frame(event: str, data: Any = None) -> Dict[str, Any]:
    return {"event": event, "data": jsonable_encoder(data if data is not None else {})}


class ConnectionHub:
    """Owns live sockets and routes frames to connections, rooms and users.

    Attributes:
        sessions: connection -> identity registry.
        rooms: connection <-> room membership.
    """

    def __init__(self) -> None:
        self.sessions = SessionRegistry()
        self.rooms = RoomMembership()
        self._sockets: Dict[str, WebSocket] = {}

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def accept(self, websocket: WebSocket) -> str:
        """Accept a WebSocket, assign it a connection id and greet it."""
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        self.attach(connection_id, websocket)
        await self.send(connection_id, "connected", {"connectionId": connection_id})
        return connection_id

    def attach(self, connection_id: str, socket: WebSocket) -> None:
        self._sockets[connection_id] = socket

    def detach(self, connection_id: str) -> Tuple[Optional[Identity], bool]:
        """Forget a connection entirely.

        Returns the (identity, was_last) pair from the session registry.
        """
        self._sockets.pop(connection_id, None)
        self.rooms.leave_all(connection_id)
        return self.sessions.unregister(connection_id)

    def is_attached(self, connection_id: str) -> bool:
        return connection_id in self._sockets

    def connection_count(self) -> int:
        return len(self._sockets)

    async def close(self, connection_id: str, code: int = 1000) -> None:
        socket = self._sockets.get(connection_id)
        if socket is None:
            return
        try:
            await socket.close(code=code)
        except Exception as e:
            logger.debug(f"[Hub] Close failed for {connection_id}: {e}")

    # -------------------------------------------------------------------------
    # Emission
    # -------------------------------------------------------------------------

    async def send(self, connection_id: str, event: str, data: Any = None) -> None:
        await self._fan_out([connection_id], make_frame(event, data))

    async def emit_to_room(
        self, room: str, event: str, data: Any = None, exclude: Optional[str] = None
    ) -> None:
        await self.emit_to_rooms([room], event, data, exclude=exclude)

    async def emit_to_rooms(
        self,
        rooms: Iterable[str],
        event: str,
        data: Any = None,
        exclude: Optional[str] = None,
    ) -> None:
        """Emit once to every connection in the union of ``rooms``."""
        targets: Set[str] = self.rooms.members_of_any(rooms)
        if exclude is not None:
            targets.discard(exclude)
        if not targets:
            return
        await self._fan_out(sorted(targets), make_frame(event, data))

    async def emit_to_user(self, user_id: int, event: str, data: Any = None) -> None:
        await self.emit_to_room(user_room(user_id), event, data)

    async def _fan_out(self, connection_ids: List[str], frame: Dict[str, Any]) -> None:
        connections = [
            (cid, self._sockets[cid]) for cid in connection_ids if cid in self._sockets
        ]
        if not connections:
            return

        results = await asyncio.gather(
            *[self._safe_send(socket, frame) for _, socket in connections],
            return_exceptions=True,
        )

        failed = [cid for (cid, _), ok in zip(connections, results) if ok is not True]
        self._cleanup_connections(failed)

    async def _safe_send(self, socket: WebSocket, frame: Dict[str, Any]) -> bool:
        try:
            await socket.send_json(frame)
            return True
        except Exception as e:
            logger.debug(f"[Hub] Failed to send to connection: {e}")
            return False

    def _cleanup_connections(self, failed: List[str]) -> None:
        """Stop routing to sockets that failed a send.

        The session stays registered until the socket's receive loop notices
        the disconnect and runs the normal disconnect path.
        """
        for connection_id in failed:
            self._sockets.pop(connection_id, None)
            self.rooms.leave_all(connection_id)
            logger.info("[Hub] Dropped dead connection %s", connection_id)
