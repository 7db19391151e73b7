"""Agent groups: metadata, membership and the group message log."""
import logging
from typing import Iterable, List, Optional

import duckdb

from helpdesk.domain.models import GroupChat, GroupMember, GroupMessage, Role

from .database import Database, Row

logger = logging.getLogger(__name__)


def _map_group_message(row: Row) -> GroupMessage:
    return GroupMessage(
        id=row["id"],
        groupId=row["group_id"],
        senderId=row["user_id"],
        senderName=row.get("sender_name") or "Usuario",
        senderRole=Role(row.get("sender_role") or Role.AGENT.value),
        content=row["content"],
        timestamp=row["created_at"],
    )


def _agent_ids(conn: duckdb.DuckDBPyConnection, candidates: List[int]) -> List[int]:
    """Keep only ids of existing agent accounts, preserving order."""
    if not candidates:
        return []
    placeholders = ", ".join("?" for _ in candidates)
    rows = conn.execute(
        f"SELECT id FROM users WHERE role = ? AND id IN ({placeholders})",
        [Role.AGENT.value, *candidates],
    ).fetchall()
    found = {row[0] for row in rows}
    return [member_id for member_id in candidates if member_id in found]


class GroupRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def get_members(self, group_id: int) -> List[GroupMember]:
        rows = await self._db.fetch_all(
            """
            SELECT u.id, u.name
            FROM group_members gm
            JOIN users u ON gm.user_id = u.id
            WHERE gm.group_id = ?
            ORDER BY gm.added_at, u.id
            """,
            [group_id],
        )
        return [GroupMember(id=row["id"], name=row["name"]) for row in rows]

    async def get_by_id(self, group_id: int) -> Optional[GroupChat]:
        row = await self._db.fetch_one(
            "SELECT id, name, created_by, created_at FROM group_chats WHERE id = ?",
            [group_id],
        )
        if not row:
            return None
        return GroupChat(
            id=row["id"],
            name=row["name"],
            createdBy=row["created_by"],
            createdAt=row["created_at"],
            members=await self.get_members(group_id),
        )

    async def list_for_user(self, user_id: int) -> List[GroupChat]:
        rows = await self._db.fetch_all(
            """
            SELECT g.id
            FROM group_chats g
            JOIN group_members gm ON gm.group_id = g.id
            WHERE gm.user_id = ?
            ORDER BY g.created_at DESC, g.id DESC
            """,
            [user_id],
        )
        groups = []
        for row in rows:
            group = await self.get_by_id(row["id"])
            if group:
                groups.append(group)
        return groups

    async def is_member(self, group_id: int, user_id: int) -> bool:
        value = await self._db.fetch_value(
            "SELECT COUNT(*) FROM group_members WHERE group_id = ? AND user_id = ?",
            [group_id, user_id],
        )
        return bool(value)

    async def create(self, name: str, created_by: int, member_ids: Iterable[int]) -> GroupChat:
        """Create a group; the creator is always a member.

        Member ids that are not existing agents are dropped.
        """
        now = self._db.clock()
        candidates = [m for m in dict.fromkeys(member_ids) if m != created_by]

        def _create(conn: duckdb.DuckDBPyConnection) -> int:
            members = [created_by, *_agent_ids(conn, candidates)]
            group_id = conn.execute(
                """
                INSERT INTO group_chats (name, created_by, created_at)
                VALUES (?, ?, ?)
                RETURNING id
                """,
                [name, created_by, now],
            ).fetchone()[0]
            for member_id in members:
                conn.execute(
                    """
                    INSERT INTO group_members (group_id, user_id, added_by, added_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT DO NOTHING
                    """,
                    [group_id, member_id, created_by, now],
                )
            return int(group_id)

        group_id = await self._db.transaction(_create)
        group = await self.get_by_id(group_id)
        logger.info("[Storage] Created group %s (%s) with %d members", group_id, name, len(group.members))
        return group

    async def add_members(self, group_id: int, member_ids: Iterable[int], added_by: int) -> List[int]:
        """Add agents, returning only the ids that were not members before."""
        now = self._db.clock()
        candidates = list(dict.fromkeys(member_ids))

        def _add(conn: duckdb.DuckDBPyConnection) -> List[int]:
            added = []
            for member_id in _agent_ids(conn, candidates):
                exists = conn.execute(
                    "SELECT COUNT(*) FROM group_members WHERE group_id = ? AND user_id = ?",
                    [group_id, member_id],
                ).fetchone()[0]
                if exists:
                    continue
                conn.execute(
                    """
                    INSERT INTO group_members (group_id, user_id, added_by, added_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    [group_id, member_id, added_by, now],
                )
                added.append(member_id)
            return added

        return await self._db.transaction(_add)

    async def remove_member(self, group_id: int, user_id: int) -> None:
        await self._db.execute(
            "DELETE FROM group_members WHERE group_id = ? AND user_id = ?",
            [group_id, user_id],
        )


class GroupMessageRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def create(self, group_id: int, user_id: int, content: str) -> GroupMessage:
        message_id = await self._db.insert_returning_id(
            """
            INSERT INTO group_messages (group_id, user_id, content, created_at)
            VALUES (?, ?, ?, ?)
            RETURNING id
            """,
            [group_id, user_id, content, self._db.clock()],
        )
        row = await self._db.fetch_one(
            """
            SELECT gm.*, u.name AS sender_name, u.role AS sender_role
            FROM group_messages gm
            LEFT JOIN users u ON gm.user_id = u.id
            WHERE gm.id = ?
            """,
            [message_id],
        )
        return _map_group_message(row)

    async def recent(self, group_id: int, limit: int = 100) -> List[GroupMessage]:
        """The newest ``limit`` messages of a group, returned oldest first."""
        rows = await self._db.fetch_all(
            """
            SELECT * FROM (
                SELECT gm.*, u.name AS sender_name, u.role AS sender_role
                FROM group_messages gm
                LEFT JOIN users u ON gm.user_id = u.id
                WHERE gm.group_id = ?
                ORDER BY gm.created_at DESC, gm.id DESC
                LIMIT ?
            ) recent
            ORDER BY created_at ASC, id ASC
            """,
            [group_id, limit],
        )
        return [_map_group_message(row) for row in rows]
