"""Agent-to-agent direct messages, stored under the ordered pair (agent_a < agent_b)."""
from typing import List, Tuple

from helpdesk.domain.models import DirectMessage

from .database import Database, Row


def ordered_pair(a: int, b: int) -> Tuple[int, int]:
    return (a, b) if a <= b else (b, a)


def thread_id(a: int, b: int) -> str:
    """Symmetric thread identifier: ``thread_id(a, b) == thread_id(b, a)``."""
    low, high = ordered_pair(a, b)
    return f"dm:{low}-{high}"


def _map_direct_message(row: Row) -> DirectMessage:
    return DirectMessage(
        id=row["id"],
        threadId=thread_id(row["agent_a"], row["agent_b"]),
        senderId=row["user_id"],
        senderName=row.get("sender_name") or "Agente",
        content=row["content"],
        timestamp=row["created_at"],
    )


class DirectMessageRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def create(self, sender_id: int, recipient_id: int, content: str) -> DirectMessage:
        agent_a, agent_b = ordered_pair(sender_id, recipient_id)
        message_id = await self._db.insert_returning_id(
            """
            INSERT INTO agent_dm_messages (agent_a, agent_b, user_id, content, created_at)
            VALUES (?, ?, ?, ?, ?)
            RETURNING id
            """,
            [agent_a, agent_b, sender_id, content, self._db.clock()],
        )
        row = await self._db.fetch_one(
            """
            SELECT dm.*, u.name AS sender_name
            FROM agent_dm_messages dm
            LEFT JOIN users u ON dm.user_id = u.id
            WHERE dm.id = ?
            """,
            [message_id],
        )
        return _map_direct_message(row)

    async def recent(self, a: int, b: int, limit: int = 200) -> List[DirectMessage]:
        """Newest ``limit`` messages between two agents, oldest first."""
        agent_a, agent_b = ordered_pair(a, b)
        rows = await self._db.fetch_all(
            """
            SELECT * FROM (
                SELECT dm.*, u.name AS sender_name
                FROM agent_dm_messages dm
                LEFT JOIN users u ON dm.user_id = u.id
                WHERE dm.agent_a = ? AND dm.agent_b = ?
                ORDER BY dm.created_at DESC, dm.id DESC
                LIMIT ?
            ) recent
            ORDER BY created_at ASC, id ASC
            """,
            [agent_a, agent_b, limit],
        )
        return [_map_direct_message(row) for row in rows]
