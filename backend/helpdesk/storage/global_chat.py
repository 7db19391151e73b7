"""Team-wide chat log."""
from typing import List

from helpdesk.domain.models import GlobalMessage, Role

from .database import Database, Row


def _map_global_message(row: Row) -> GlobalMessage:
    return GlobalMessage(
        id=row["id"],
        senderId=row["user_id"],
        senderName=row.get("sender_name") or "Usuario",
        senderRole=Role(row.get("sender_role") or Role.AGENT.value),
        content=row["content"],
        timestamp=row["created_at"],
    )


class GlobalMessageRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def create(self, user_id: int, content: str) -> GlobalMessage:
        message_id = await self._db.insert_returning_id(
            """
            INSERT INTO global_messages (user_id, content, created_at)
            VALUES (?, ?, ?)
            RETURNING id
            """,
            [user_id, content, self._db.clock()],
        )
        row = await self._db.fetch_one(
            """
            SELECT g.*, u.name AS sender_name, u.role AS sender_role
            FROM global_messages g
            LEFT JOIN users u ON g.user_id = u.id
            WHERE g.id = ?
            """,
            [message_id],
        )
        return _map_global_message(row)

    async def recent(self, limit: int = 100) -> List[GlobalMessage]:
        rows = await self._db.fetch_all(
            """
            SELECT * FROM (
                SELECT g.*, u.name AS sender_name, u.role AS sender_role
                FROM global_messages g
                LEFT JOIN users u ON g.user_id = u.id
                ORDER BY g.created_at DESC, g.id DESC
                LIMIT ?
            ) recent
            ORDER BY created_at ASC, id ASC
            """,
            [limit],
        )
        return [_map_global_message(row) for row in rows]
