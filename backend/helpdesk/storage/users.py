"""User queries: lookup, find-or-create and the cached online flag."""
import logging
from typing import List, Optional

from helpdesk.domain.models import Role, User

from .database import Database, Row

logger = logging.getLogger(__name__)

_COLUMNS = "id, name, email, role, whatsapp_id, is_online, created_at"


def _map_user(row: Optional[Row]) -> Optional[User]:
    if not row:
        return None
    return User(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        role=Role(row["role"]),
        whatsappId=row["whatsapp_id"],
        isOnline=bool(row["is_online"]),
        createdAt=row["created_at"],
    )


class UserRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def find_by_id(self, user_id: int) -> Optional[User]:
        row = await self._db.fetch_one(
            f"SELECT {_COLUMNS} FROM users WHERE id = ?", [user_id]
        )
        return _map_user(row)

    async def find_by_whatsapp_id(self, whatsapp_id: str) -> Optional[User]:
        row = await self._db.fetch_one(
            f"SELECT {_COLUMNS} FROM users WHERE whatsapp_id = ? ORDER BY id LIMIT 1",
            [whatsapp_id],
        )
        return _map_user(row)

    async def find_by_role(self, role: Role) -> List[User]:
        rows = await self._db.fetch_all(
            f"SELECT {_COLUMNS} FROM users WHERE role = ? ORDER BY name, id",
            [Role(role).value],
        )
        return [_map_user(row) for row in rows]

    async def create(
        self,
        name: str,
        role: Role,
        email: Optional[str] = None,
        whatsapp_id: Optional[str] = None,
    ) -> User:
        user_id = await self._db.insert_returning_id(
            """
            INSERT INTO users (name, email, role, whatsapp_id, created_at)
            VALUES (?, ?, ?, ?, ?)
            RETURNING id
            """,
            [name, email, Role(role).value, whatsapp_id, self._db.clock()],
        )
        logger.info("[Storage] Created %s user %s (%s)", Role(role).value, user_id, name)
        return await self.find_by_id(user_id)

    async def find_or_create(
        self,
        name: str,
        role: Role,
        user_id: Optional[int] = None,
        whatsapp_id: Optional[str] = None,
    ) -> User:
        """Return the user matching ``user_id`` or ``whatsapp_id``, else create one.

        Two concurrent calls for the same unknown identity may both create a
        user; that race is accepted rather than serialized.
        """
        if user_id is not None:
            existing = await self.find_by_id(user_id)
            if existing:
                return existing
        if whatsapp_id:
            existing = await self.find_by_whatsapp_id(whatsapp_id)
            if existing:
                return existing
        return await self.create(name=name, role=role, whatsapp_id=whatsapp_id)

    async def update_online_status(self, user_id: int, is_online: bool) -> None:
        await self._db.execute(
            "UPDATE users SET is_online = ? WHERE id = ?", [is_online, user_id]
        )
