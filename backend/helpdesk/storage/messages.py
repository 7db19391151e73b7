"""1:1 chat messages and their per-message delivery status."""
import logging
from typing import List, Optional

import duckdb

from helpdesk.domain.models import ChatChannel, Message, MessageStatus, Role
from helpdesk.domain.state import statuses_before

from .database import Database, Row

logger = logging.getLogger(__name__)

_SELECT = """
    SELECT m.*,
           sender.name AS sender_name,
           sender.role AS sender_role,
           reply.content AS reply_to_content,
           reply_sender.role AS reply_to_sender_role
    FROM messages m
    LEFT JOIN users sender ON m.user_id = sender.id
    LEFT JOIN messages reply ON m.reply_to_id = reply.id
    LEFT JOIN users reply_sender ON reply.user_id = reply_sender.id
"""


def _map_message(row: Optional[Row]) -> Optional[Message]:
    if not row:
        return None
    return Message(
        id=row["id"],
        chatId=row["chat_id"],
        userId=row["user_id"],
        content=row["content"],
        senderRole=Role(row["sender_role"]) if row.get("sender_role") else None,
        senderName=row.get("sender_name"),
        replyToId=row["reply_to_id"],
        replyToContent=row.get("reply_to_content"),
        replyToSenderRole=(
            Role(row["reply_to_sender_role"]) if row.get("reply_to_sender_role") else None
        ),
        isRead=bool(row["is_read"]),
        status=MessageStatus(row["status"]),
        channel=ChatChannel(row["channel"] or ChatChannel.WEB.value),
        externalMessageId=row["external_message_id"],
        createdAt=row["created_at"],
    )


def _placeholders(values: List) -> str:
    return ", ".join("?" for _ in values)


class MessageRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def find_by_id(self, message_id: int) -> Optional[Message]:
        row = await self._db.fetch_one(f"{_SELECT} WHERE m.id = ?", [message_id])
        return _map_message(row)

    async def find_by_external_id(self, external_id: str) -> Optional[Message]:
        row = await self._db.fetch_one(
            f"{_SELECT} WHERE m.external_message_id = ? ORDER BY m.id LIMIT 1",
            [external_id],
        )
        return _map_message(row)

    async def find_by_chat_id(self, chat_id: int) -> List[Message]:
        """Full history of a chat, oldest first; ties on timestamp fall back to id."""
        rows = await self._db.fetch_all(
            f"{_SELECT} WHERE m.chat_id = ? ORDER BY m.created_at ASC, m.id ASC",
            [chat_id],
        )
        return [_map_message(row) for row in rows]

    async def create(
        self,
        chat_id: int,
        user_id: int,
        content: str,
        reply_to_id: Optional[int] = None,
        channel: ChatChannel = ChatChannel.WEB,
        external_message_id: Optional[str] = None,
    ) -> Message:
        message_id = await self._db.insert_returning_id(
            """
            INSERT INTO messages
                (chat_id, user_id, content, reply_to_id, status, channel,
                 external_message_id, created_at)
            VALUES (?, ?, ?, ?, 'sent', ?, ?, ?)
            RETURNING id
            """,
            [
                chat_id,
                user_id,
                content,
                reply_to_id,
                ChatChannel(channel).value,
                external_message_id,
                self._db.clock(),
            ],
        )
        return await self.find_by_id(message_id)

    async def update_status(self, message_id: int, status: MessageStatus) -> Optional[Message]:
        """Advance a message to ``status``. Never moves a message backwards."""
        status = MessageStatus(status)
        allowed = [s.value for s in statuses_before(status)]
        if allowed:
            is_read_clause = ", is_read = TRUE" if status == MessageStatus.READ else ""
            await self._db.execute(
                f"""
                UPDATE messages SET status = ?{is_read_clause}
                WHERE id = ? AND status IN ({_placeholders(allowed)})
                """,
                [status.value, message_id, *allowed],
            )
        return await self.find_by_id(message_id)

    async def update_status_by_external_id(
        self, external_id: str, status: MessageStatus
    ) -> Optional[Message]:
        message = await self.find_by_external_id(external_id)
        if not message:
            return None
        return await self.update_status(message.id, status)

    async def update_external_id(self, message_id: int, external_id: str) -> None:
        await self._db.execute(
            "UPDATE messages SET external_message_id = ? WHERE id = ?",
            [external_id, message_id],
        )

    async def mark_read_in_chat(self, chat_id: int, reader_id: int) -> List[int]:
        """Flip every unread message not written by ``reader_id`` to read.

        Returns the ids that actually changed, so the author's UI can be told
        exactly which bubbles to update.
        """

        def _mark(conn: duckdb.DuckDBPyConnection) -> List[int]:
            ids = [
                row[0]
                for row in conn.execute(
                    """
                    SELECT id FROM messages
                    WHERE chat_id = ? AND user_id <> ? AND status <> 'read'
                    ORDER BY created_at, id
                    """,
                    [chat_id, reader_id],
                ).fetchall()
            ]
            if ids:
                conn.execute(
                    f"""
                    UPDATE messages SET status = 'read', is_read = TRUE
                    WHERE id IN ({_placeholders(ids)})
                    """,
                    ids,
                )
            return ids

        return await self._db.transaction(_mark)

    async def unread_count(self, chat_id: int, reader_id: int) -> int:
        value = await self._db.fetch_value(
            """
            SELECT COUNT(*) FROM messages
            WHERE chat_id = ? AND user_id <> ? AND NOT is_read
            """,
            [chat_id, reader_id],
        )
        return int(value or 0)

