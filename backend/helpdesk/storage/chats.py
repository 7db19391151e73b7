"""Chat queries and the single-row updates behind each lifecycle transition.

Transition updates are guarded by the expected current status in their WHERE
clause, so a transition that lost a race simply leaves the row untouched.
Callers re-read the chat to see what actually happened.
"""
import logging
from typing import List, Optional

from helpdesk.domain.models import Chat, ChatChannel, ChatStatus

from .database import Database, Row

logger = logging.getLogger(__name__)

_SELECT = """
    SELECT c.*,
           client.name AS client_name,
           agent.name AS agent_name
"""

_LAST_MESSAGE = """
           (SELECT m.content FROM messages m
            WHERE m.chat_id = c.id
            ORDER BY m.created_at DESC, m.id DESC
            LIMIT 1) AS last_message
"""

_FROM = """
    FROM chats c
    LEFT JOIN users client ON c.client_id = client.id
    LEFT JOIN users agent ON c.agent_id = agent.id
"""


def _map_chat(row: Optional[Row]) -> Optional[Chat]:
    if not row:
        return None
    return Chat(
        id=row["id"],
        clientId=row["client_id"],
        clientName=row.get("client_name"),
        agentId=row["agent_id"],
        agentName=row.get("agent_name"),
        status=ChatStatus(row["status"]),
        channel=ChatChannel(row["channel"] or ChatChannel.WEB.value),
        subject=row["subject"],
        createdAt=row["created_at"],
        assignedAt=row["assigned_at"],
        closedAt=row["closed_at"],
        firstResponseAt=row["first_response_at"],
        lastMessage=row.get("last_message"),
        unreadCount=int(row.get("unread_count") or 0),
        rating=row["rating"],
        feedback=row["feedback"],
        firstResponseSeconds=row.get("first_response_seconds"),
        durationSeconds=row.get("duration_seconds"),
    )


class ChatRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def find_by_id(self, chat_id: int) -> Optional[Chat]:
        row = await self._db.fetch_one(
            f"{_SELECT} {_FROM} WHERE c.id = ?", [chat_id]
        )
        return _map_chat(row)

    async def find_by_client_id(self, client_id: int) -> List[Chat]:
        rows = await self._db.fetch_all(
            f"""
            {_SELECT}, {_LAST_MESSAGE}
            {_FROM}
            WHERE c.client_id = ?
            ORDER BY c.created_at DESC, c.id DESC
            """,
            [client_id],
        )
        return [_map_chat(row) for row in rows]

    async def find_pending(self) -> List[Chat]:
        rows = await self._db.fetch_all(
            f"""
            {_SELECT} {_FROM}
            WHERE c.status = 'pending'
            ORDER BY c.created_at ASC, c.id ASC
            """
        )
        return [_map_chat(row) for row in rows]

    async def find_active_by_agent_id(self, agent_id: int) -> List[Chat]:
        """Active and on-hold chats of an agent, with client-side unread counts."""
        rows = await self._db.fetch_all(
            f"""
            {_SELECT}, {_LAST_MESSAGE},
                   (SELECT COUNT(*) FROM messages m
                    WHERE m.chat_id = c.id
                      AND m.user_id = c.client_id
                      AND NOT m.is_read) AS unread_count
            {_FROM}
            WHERE c.agent_id = ? AND c.status IN ('active', 'on_hold')
            ORDER BY c.created_at DESC, c.id DESC
            """,
            [agent_id],
        )
        return [_map_chat(row) for row in rows]

    async def find_closed_by_agent_id(self, agent_id: int, limit: int = 100) -> List[Chat]:
        """Closed chats of an agent with response and duration metrics."""
        rows = await self._db.fetch_all(
            f"""
            {_SELECT},
                   date_diff('second', c.assigned_at, c.first_response_at) AS first_response_seconds,
                   date_diff('second', c.created_at, c.closed_at) AS duration_seconds
            {_FROM}
            WHERE c.agent_id = ? AND c.status = 'closed'
            ORDER BY c.closed_at DESC, c.id DESC
            LIMIT ?
            """,
            [agent_id, limit],
        )
        return [_map_chat(row) for row in rows]

    async def find_latest_by_client_and_channel(
        self, client_id: int, channel: ChatChannel
    ) -> Optional[Chat]:
        """Most recent chat of a client on a channel, closed ones included."""
        row = await self._db.fetch_one(
            f"""
            {_SELECT} {_FROM}
            WHERE c.client_id = ? AND c.channel = ?
            ORDER BY c.created_at DESC, c.id DESC
            LIMIT 1
            """,
            [client_id, ChatChannel(channel).value],
        )
        return _map_chat(row)

    async def create(
        self,
        client_id: int,
        subject: Optional[str] = None,
        channel: ChatChannel = ChatChannel.WEB,
    ) -> Chat:
        now = self._db.clock()
        chat_id = await self._db.insert_returning_id(
            """
            INSERT INTO chats (client_id, subject, status, channel, created_at, updated_at)
            VALUES (?, ?, 'pending', ?, ?, ?)
            RETURNING id
            """,
            [client_id, subject or "Soporte", ChatChannel(channel).value, now, now],
        )
        return await self.find_by_id(chat_id)

    async def assign(self, chat_id: int, agent_id: int) -> Optional[Chat]:
        now = self._db.clock()
        await self._db.execute(
            """
            UPDATE chats
            SET agent_id = ?, status = 'active', assigned_at = ?, updated_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            [agent_id, now, now, chat_id],
        )
        return await self.find_by_id(chat_id)

    async def transfer(self, chat_id: int, from_agent_id: int, to_agent_id: int) -> Optional[Chat]:
        now = self._db.clock()
        await self._db.execute(
            """
            UPDATE chats
            SET agent_id = ?, assigned_at = ?, updated_at = ?
            WHERE id = ? AND agent_id = ? AND status IN ('active', 'on_hold')
            """,
            [to_agent_id, now, now, chat_id, from_agent_id],
        )
        return await self.find_by_id(chat_id)

    async def update_status(
        self, chat_id: int, expected: ChatStatus, status: ChatStatus
    ) -> Optional[Chat]:
        """Move a chat from ``expected`` to ``status``; closing stamps closed_at."""
        now = self._db.clock()
        if ChatStatus(status) == ChatStatus.CLOSED:
            sql = """
                UPDATE chats SET status = ?, closed_at = ?, updated_at = ?
                WHERE id = ? AND status = ?
            """
            params = [ChatStatus.CLOSED.value, now, now, chat_id, ChatStatus(expected).value]
        else:
            sql = """
                UPDATE chats SET status = ?, updated_at = ?
                WHERE id = ? AND status = ?
            """
            params = [ChatStatus(status).value, now, chat_id, ChatStatus(expected).value]
        await self._db.execute(sql, params)
        return await self.find_by_id(chat_id)

    async def reopen(self, chat_id: int) -> Optional[Chat]:
        """closed -> pending, clearing the agent and the close stamp."""
        await self._db.execute(
            """
            UPDATE chats
            SET status = 'pending', agent_id = NULL, assigned_at = NULL,
                closed_at = NULL, updated_at = ?
            WHERE id = ? AND status = 'closed'
            """,
            [self._db.clock(), chat_id],
        )
        return await self.find_by_id(chat_id)

    async def set_first_response_time(self, chat_id: int) -> None:
        await self._db.execute(
            """
            UPDATE chats SET first_response_at = ?
            WHERE id = ? AND first_response_at IS NULL
            """,
            [self._db.clock(), chat_id],
        )

    async def submit_survey(
        self, chat_id: int, rating: int, feedback: Optional[str]
    ) -> Optional[Chat]:
        await self._db.execute(
            "UPDATE chats SET rating = ?, feedback = ? WHERE id = ?",
            [rating, feedback, chat_id],
        )
        return await self.find_by_id(chat_id)
