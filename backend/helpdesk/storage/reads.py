"""Per-user read watermarks for DM threads, groups and the global chat.

A channel's unread count is the number of messages written by someone else
strictly after the user's watermark, or after the epoch when no watermark has
been recorded yet. Watermarks only move forward: a late mark-read carrying an
older timestamp leaves the stored value untouched.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from .database import Database
from .direct import ordered_pair, thread_id

_EPOCH = "TIMESTAMP '1970-01-01 00:00:00'"


class ReadStateRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def mark_dm_read(self, user_id: int, other_id: int, at: Optional[datetime] = None) -> None:
        agent_a, agent_b = ordered_pair(user_id, other_id)
        await self._db.execute(
            """
            INSERT INTO user_dm_reads (user_id, agent_a, agent_b, last_read_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (user_id, agent_a, agent_b) DO UPDATE
            SET last_read_at = greatest(last_read_at, excluded.last_read_at)
            """,
            [user_id, agent_a, agent_b, at or self._db.clock()],
        )

    async def mark_group_read(self, user_id: int, group_id: int, at: Optional[datetime] = None) -> None:
        await self._db.execute(
            """
            INSERT INTO user_group_reads (user_id, group_id, last_read_at)
            VALUES (?, ?, ?)
            ON CONFLICT (user_id, group_id) DO UPDATE
            SET last_read_at = greatest(last_read_at, excluded.last_read_at)
            """,
            [user_id, group_id, at or self._db.clock()],
        )

    async def mark_global_read(self, user_id: int, at: Optional[datetime] = None) -> None:
        await self._db.execute(
            """
            INSERT INTO user_global_reads (user_id, last_read_at)
            VALUES (?, ?)
            ON CONFLICT (user_id) DO UPDATE
            SET last_read_at = greatest(last_read_at, excluded.last_read_at)
            """,
            [user_id, at or self._db.clock()],
        )

    async def dm_unread_counts(self, user_id: int) -> List[Dict[str, Any]]:
        rows = await self._db.fetch_all(
            f"""
            SELECT dm.agent_a, dm.agent_b, COUNT(*) AS unread
            FROM agent_dm_messages dm
            LEFT JOIN user_dm_reads r
              ON r.user_id = ? AND r.agent_a = dm.agent_a AND r.agent_b = dm.agent_b
            WHERE (dm.agent_a = ? OR dm.agent_b = ?)
              AND dm.user_id <> ?
              AND dm.created_at > COALESCE(r.last_read_at, {_EPOCH})
            GROUP BY dm.agent_a, dm.agent_b
            ORDER BY dm.agent_a, dm.agent_b
            """,
            [user_id, user_id, user_id, user_id],
        )
        return [
            {
                "threadId": thread_id(row["agent_a"], row["agent_b"]),
                "otherAgentId": row["agent_b"] if row["agent_a"] == user_id else row["agent_a"],
                "unread": int(row["unread"]),
            }
            for row in rows
        ]

    async def group_unread_counts(self, user_id: int) -> List[Dict[str, Any]]:
        rows = await self._db.fetch_all(
            f"""
            SELECT gm.group_id, COUNT(msg.id) AS unread
            FROM group_members gm
            JOIN group_messages msg ON msg.group_id = gm.group_id
            LEFT JOIN user_group_reads r
              ON r.user_id = gm.user_id AND r.group_id = gm.group_id
            WHERE gm.user_id = ?
              AND msg.user_id <> ?
              AND msg.created_at > COALESCE(r.last_read_at, {_EPOCH})
            GROUP BY gm.group_id
            ORDER BY gm.group_id
            """,
            [user_id, user_id],
        )
        return [{"groupId": row["group_id"], "unread": int(row["unread"])} for row in rows]

    async def global_unread_count(self, user_id: int) -> int:
        value = await self._db.fetch_value(
            f"""
            SELECT COUNT(*)
            FROM global_messages g
            WHERE g.user_id <> ?
              AND g.created_at > COALESCE(
                  (SELECT last_read_at FROM user_global_reads WHERE user_id = ?),
                  {_EPOCH})
            """,
            [user_id, user_id],
        )
        return int(value or 0)
