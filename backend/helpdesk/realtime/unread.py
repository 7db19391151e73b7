"""Unread counts and read receipts.

Two mechanisms live side by side:

* 1:1 chats track read state per message (``status`` / ``isRead``), because
  the same flags drive the delivery ticks shown to the author.
* DM threads, groups and the global chat track a per-user watermark; a
  channel's unread count is the number of others' messages after it.
"""
import logging
from typing import Any, Dict, List, Optional

from helpdesk.domain.models import Chat, Message, MessageStatus, Role
from helpdesk.storage import PersistenceGateway

from .hub import ConnectionHub
from .sessions import Identity

logger = logging.getLogger(__name__)


class UnreadReconciler:
    def __init__(self, gateway: PersistenceGateway, hub: ConnectionHub) -> None:
        self._gateway = gateway
        self._hub = hub

    # -------------------------------------------------------------------------
    # Watermark channels
    # -------------------------------------------------------------------------

    async def backlog_for(self, user_id: int) -> Dict[str, Any]:
        """Unread counts for every DM thread, group and the global chat."""
        reads = self._gateway.reads
        return {
            "dm": await reads.dm_unread_counts(user_id),
            "groups": await reads.group_unread_counts(user_id),
            "global": await reads.global_unread_count(user_id),
        }

    async def push_backlog(self, connection_id: str, user_id: int) -> None:
        backlog = await self.backlog_for(user_id)
        await self._hub.send(connection_id, "agent:unread-counts", backlog)

    async def mark_dm_read(self, user_id: int, other_id: int) -> None:
        await self._gateway.reads.mark_dm_read(user_id, other_id)

    async def mark_group_read(self, user_id: int, group_id: int) -> None:
        await self._gateway.reads.mark_group_read(user_id, group_id)

    async def mark_global_read(self, user_id: int) -> None:
        await self._gateway.reads.mark_global_read(user_id)

    # -------------------------------------------------------------------------
    # Per-message chat state
    # -------------------------------------------------------------------------

    async def chat_unread_count(self, chat_id: int, reader_id: int) -> int:
        return await self._gateway.messages.unread_count(chat_id, reader_id)

    async def deliver_if_present(self, message: Message, recipient_id: Optional[int]) -> Message:
        """Upgrade a fresh message to delivered when its recipient is connected.

        Runs before the first emission so the author never sees a
        sent-then-delivered flicker for a recipient who is already online.
        """
        if recipient_id is None or not self._hub.sessions.is_connected(recipient_id):
            return message
        updated = await self._gateway.messages.update_status(message.id, MessageStatus.DELIVERED)
        return updated or message

    async def mark_chat_read(self, chat: Chat, reader: Identity) -> List[int]:
        """Mark the other party's messages read and tell their inbox which ones."""
        message_ids = await self._gateway.messages.mark_read_in_chat(chat.id, reader.userId)
        if message_ids:
            author_id = chat.clientId if reader.role == Role.AGENT else chat.agentId
            if author_id is not None:
                await self._hub.emit_to_user(
                    author_id,
                    "message:status-updated",
                    {
                        "chatId": chat.id,
                        "messageIds": message_ids,
                        "status": MessageStatus.READ.value,
                    },
                )
            logger.info(
                "[Unread] %d messages read in chat %s by %s",
                len(message_ids), chat.id, reader.userId,
            )
        if reader.role == Role.AGENT:
            await self._hub.emit_to_user(
                reader.userId, "chat:unread-updated", {"chatId": chat.id, "unreadCount": 0}
            )
        return message_ids
