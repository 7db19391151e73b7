"""The Persistence Gateway: one object bundling every repository over one database."""
import logging
from datetime import datetime
from typing import Callable, Optional

from .chats import ChatRepository
from .database import Database
from .direct import DirectMessageRepository
from .global_chat import GlobalMessageRepository
from .groups import GroupMessageRepository, GroupRepository
from .messages import MessageRepository
from .reads import ReadStateRepository
from .users import UserRepository

logger = logging.getLogger(__name__)


class PersistenceGateway:
    """Repositories for users, chats, messages, groups, DMs, the global chat
    and read watermarks, all sharing a single DuckDB connection.

    Usage:
        gateway = PersistenceGateway("helpdesk.duckdb")
        chat = await gateway.chats.create(client_id=1, subject="Soporte")
        gateway.close()
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = Database(db_path, clock=clock)
        self.users = UserRepository(self.db)
        self.chats = ChatRepository(self.db)
        self.messages = MessageRepository(self.db)
        self.groups = GroupRepository(self.db)
        self.group_messages = GroupMessageRepository(self.db)
        self.direct_messages = DirectMessageRepository(self.db)
        self.global_messages = GlobalMessageRepository(self.db)
        self.reads = ReadStateRepository(self.db)

    def close(self) -> None:
        self.db.close()
        logger.info("[Storage] Gateway closed")
