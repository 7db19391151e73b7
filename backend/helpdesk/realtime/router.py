"""Event router: the protocol state machine of the helpdesk.

Every inbound event is looked up in a table of EventSpec entries. A spec names
the roles allowed to send the event, the pydantic model its payload must
match, the handler, and whether failures are *reported* back to the actor as
an ``error`` event or only logged.

Handlers follow one shape: validate the actor against the domain, persist
through the gateway, update room membership, then fan out. Emission always
happens after persistence, so room members see messages in storage order.

Nothing raised inside a handler escapes ``dispatch``; each handler is a
failure isolation boundary for its connection.

Outbound calls to the messaging provider run as background tasks tracked by
the router. Their failures are logged and never reach the connection.
"""
import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Set, Type

from pydantic import BaseModel
from pydantic import ValidationError as PayloadValidationError

from helpdesk.config import AppConfig
from helpdesk.domain.errors import (
    AuthorizationError,
    HelpdeskError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from helpdesk.domain.models import (
    Chat,
    ChatChannel,
    ChatStatus,
    Message,
    MessageStatus,
    Role,
)
from helpdesk.domain.state import ChatAction, next_chat_status
from helpdesk.storage import PersistenceGateway

from . import schemas
from .hub import ConnectionHub
from .presence import PresenceTracker
from .rooms import (
    AGENTS_ROOM,
    GLOBAL_ROOM,
    chat_room,
    dm_room,
    group_room,
    user_room,
)
from .sessions import Identity
from .unread import UnreadReconciler

logger = logging.getLogger(__name__)

# Close code sent when a user exceeds the per-user connection limit.
POLICY_VIOLATION = 1008

AGENT_ONLY: FrozenSet[Role] = frozenset({Role.AGENT})
CLIENT_ONLY: FrozenSet[Role] = frozenset({Role.CLIENT})
ANY_ROLE: FrozenSet[Role] = frozenset({Role.AGENT, Role.CLIENT})

Handler = Callable[[str, Identity, Any], Awaitable[None]]

# WhatsApp delivery statuses that map onto message statuses.
PROVIDER_STATUSES = {
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "read": MessageStatus.READ,
}


@dataclass(frozen=True)
class EventSpec:
    """One row of the event table.

    Attributes:
        handler: Coroutine taking (connection_id, identity, payload).
        payload: Model the raw payload is validated against.
        roles: Roles allowed to send the event.
        reported: Emit an ``error`` event to the actor on failure.
        failure_message: Message reported for unexpected (non-domain) errors.
    """
    handler: Handler
    payload: Type[BaseModel]
    roles: FrozenSet[Role]
    reported: bool = False
    failure_message: str = "Request failed"


class EventRouter:
    """Dispatches inbound events for every connection of the process.

    Usage:
        router = EventRouter(gateway, hub, bridge=whatsapp_client, config=config)
        await router.dispatch(connection_id, "client:start-chat", {"subject": "Soporte"})
        await router.disconnect(connection_id)
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        hub: ConnectionHub,
        bridge: Optional[Any] = None,
        config: Optional[AppConfig] = None,
    ) -> None:
        self.gateway = gateway
        self.hub = hub
        self.bridge = bridge
        self.config = config or AppConfig()
        self.presence = PresenceTracker(hub)
        self.unread = UnreadReconciler(gateway, hub)
        self._tasks: Set[asyncio.Task] = set()
        self._events: Dict[str, EventSpec] = self._build_event_table()

    def _build_event_table(self) -> Dict[str, EventSpec]:
        S = schemas
        return {
            # Client
            "client:get-history": EventSpec(self._on_client_history, S.ClientRefPayload, CLIENT_ONLY),
            "client:start-chat": EventSpec(
                self._on_start_chat, S.StartChatPayload, CLIENT_ONLY, True, "Error creating chat"
            ),
            "client:send-message": EventSpec(
                self._on_client_message, S.SendMessagePayload, CLIENT_ONLY, True, "Error sending message"
            ),
            "client:end-chat": EventSpec(
                self._on_client_end_chat, S.ChatRefPayload, CLIENT_ONLY, True, "Error ending chat"
            ),
            "chat:submit-survey": EventSpec(
                self._on_submit_survey, S.SurveyPayload, CLIENT_ONLY, True, "Error submitting survey"
            ),
            # Agent chat management
            "agent:get-pending-chats": EventSpec(self._on_pending_chats, S.EmptyPayload, AGENT_ONLY),
            "agent:get-my-chats": EventSpec(self._on_my_chats, S.AgentRefPayload, AGENT_ONLY),
            "agent:get-available-agents": EventSpec(
                self._on_available_agents, S.AvailableAgentsPayload, AGENT_ONLY
            ),
            "agent:get-history": EventSpec(self._on_agent_history, S.AgentRefPayload, AGENT_ONLY),
            "agent:assign-chat": EventSpec(
                self._on_assign_chat, S.ChatRefPayload, AGENT_ONLY, True, "Error assigning chat"
            ),
            "agent:transfer-chat": EventSpec(
                self._on_transfer_chat, S.TransferChatPayload, AGENT_ONLY, True, "Error transferring chat"
            ),
            "agent:send-message": EventSpec(
                self._on_agent_message, S.SendMessagePayload, AGENT_ONLY, True, "Error sending message"
            ),
            "agent:put-on-hold": EventSpec(self._on_hold_chat, S.ChatRefPayload, AGENT_ONLY),
            "agent:resume-chat": EventSpec(self._on_resume_chat, S.ChatRefPayload, AGENT_ONLY),
            "agent:close-chat": EventSpec(self._on_close_chat, S.ChatRefPayload, AGENT_ONLY),
            # Both parties
            "messages:get": EventSpec(self._on_messages_get, S.ChatRefPayload, ANY_ROLE),
            "messages:mark-read": EventSpec(self._on_messages_mark_read, S.ChatRefPayload, ANY_ROLE),
            "typing:start": EventSpec(self._on_typing_start, S.ChatRefPayload, ANY_ROLE),
            "typing:stop": EventSpec(self._on_typing_stop, S.ChatRefPayload, ANY_ROLE),
            # Agent direct messages
            "agent:dm:join": EventSpec(self._on_dm_join, S.DmJoinPayload, AGENT_ONLY),
            "agent:dm:message": EventSpec(self._on_dm_message, S.DmMessagePayload, AGENT_ONLY),
            "agent:dm:typing": EventSpec(self._on_dm_typing, S.DmTypingPayload, AGENT_ONLY),
            "agent:dm:mark-read": EventSpec(self._on_dm_mark_read, S.DmJoinPayload, AGENT_ONLY),
            # Groups
            "group:list": EventSpec(self._on_group_list, S.EmptyPayload, AGENT_ONLY),
            "group:create": EventSpec(
                self._on_group_create, S.GroupCreatePayload, AGENT_ONLY, True, "Error creating group"
            ),
            "group:add-members": EventSpec(
                self._on_group_add_members, S.GroupAddMembersPayload, AGENT_ONLY, True,
                "Error adding group members",
            ),
            "group:remove-member": EventSpec(
                self._on_group_remove_member, S.GroupRemoveMemberPayload, AGENT_ONLY, True,
                "Error removing group member",
            ),
            "group:join": EventSpec(self._on_group_join, S.GroupRefPayload, AGENT_ONLY),
            "group:leave": EventSpec(self._on_group_leave, S.GroupRefPayload, AGENT_ONLY),
            "group:message": EventSpec(self._on_group_message, S.GroupMessagePayload, AGENT_ONLY),
            "group:mark-read": EventSpec(self._on_group_mark_read, S.GroupRefPayload, AGENT_ONLY),
            # Global team chat
            "global:join": EventSpec(self._on_global_join, S.EmptyPayload, AGENT_ONLY),
            "global:leave": EventSpec(self._on_global_leave, S.EmptyPayload, AGENT_ONLY),
            "global:message": EventSpec(self._on_global_message, S.GlobalMessagePayload, AGENT_ONLY),
            "global:typing": EventSpec(self._on_global_typing, S.GlobalTypingPayload, AGENT_ONLY),
            "global:mark-read": EventSpec(self._on_global_mark_read, S.EmptyPayload, AGENT_ONLY),
        }

    @property
    def events(self) -> List[str]:
        return ["authenticate", *self._events]

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def dispatch(self, connection_id: str, event: str, data: Any = None) -> None:
        """Route one inbound event. Never raises."""
        if event == "authenticate":
            await self._guarded(
                connection_id, event, True, "Authentication failed",
                partial(self._authenticate, connection_id), schemas.AuthenticatePayload, data,
            )
            return

        spec = self._events.get(event)
        if spec is None:
            logger.warning(f"[Router] Unknown event '{event}' from {connection_id}")
            await self._report(connection_id, event, f"Unknown event: {event}")
            return

        identity = self.hub.sessions.lookup(connection_id)
        if identity is None:
            await self._report(connection_id, event, "Not authenticated")
            return

        async def _run(payload: BaseModel) -> None:
            if identity.role not in spec.roles:
                raise AuthorizationError(f"Role '{identity.role.value}' may not send {event}")
            await spec.handler(connection_id, identity, payload)

        await self._guarded(
            connection_id, event, spec.reported, spec.failure_message,
            _run, spec.payload, data,
        )

    async def _guarded(
        self,
        connection_id: str,
        event: str,
        reported: bool,
        failure_message: str,
        fn: Callable[[Any], Awaitable[None]],
        model: Type[BaseModel],
        data: Any,
    ) -> None:
        try:
            payload = model.model_validate(data if data is not None else {})
            await fn(payload)
        except PayloadValidationError as e:
            logger.info(f"[Router] Invalid payload for {event}: {e.error_count()} error(s)")
            if reported:
                await self._report(connection_id, event, f"Invalid payload for {event}")
        except HelpdeskError as e:
            logger.info(f"[Router] {event} rejected for {connection_id}: {e.message}")
            if reported:
                await self._report(connection_id, event, e.message)
        except Exception:
            logger.exception(f"[Router] Error handling {event} for {connection_id}")
            if reported:
                await self._report(connection_id, event, failure_message)

    async def _report(self, connection_id: str, event: str, message: str) -> None:
        await self.hub.send(connection_id, "error", {"message": message, "event": event})

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def _authenticate(self, connection_id: str, payload: schemas.AuthenticatePayload) -> None:
        identity = Identity(userId=payload.userId, role=payload.role, name=payload.name)
        sessions = self.hub.sessions

        limit = self.config.realtime.max_connections_per_user
        if sessions.lookup(connection_id) is None and len(sessions.connections_of(identity.userId)) >= limit:
            logger.warning(f"[Router] User {identity.userId} exceeded {limit} connections")
            await self._report(connection_id, "authenticate", "Too many connections")
            await self.hub.close(connection_id, code=POLICY_VIOLATION)
            return

        first = sessions.register(connection_id, identity)
        self.hub.rooms.join(connection_id, user_room(identity.userId))
        if identity.role == Role.AGENT:
            self.hub.rooms.join(connection_id, AGENTS_ROOM)
            if first:
                await self._best_effort(
                    self.gateway.users.update_online_status(identity.userId, True),
                    "mark agent online",
                )

        await self.hub.send(connection_id, "authenticated", identity)
        logger.info(
            f"[Router] {identity.role.value.upper()} {identity.name} ({identity.userId}) authenticated"
        )

        if identity.role == Role.AGENT:
            await self.presence.broadcast_agent_presence()
            await self.presence.broadcast_global_users()
            await self._best_effort(
                self.unread.push_backlog(connection_id, identity.userId), "push unread backlog"
            )

    async def disconnect(self, connection_id: str) -> None:
        """Forget a connection and update presence. Safe to call twice."""
        try:
            identity, was_last = self.hub.detach(connection_id)
            if identity is None:
                return
            if identity.role == Role.AGENT:
                if was_last:
                    await self._best_effort(
                        self.gateway.users.update_online_status(identity.userId, False),
                        "mark agent offline",
                    )
                await self.presence.broadcast_agent_presence()
                await self.presence.broadcast_global_users()
            logger.info(
                f"[Router] {identity.role.value.upper()} {identity.name or identity.userId} disconnected"
            )
        except Exception:
            logger.exception(f"[Router] Error during disconnect of {connection_id}")

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _best_effort(self, awaitable: Awaitable[Any], what: str) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception(f"[Router] Failed to {what}")

    def _spawn(self, awaitable: Awaitable[Any], label: str) -> None:
        task = asyncio.ensure_future(self._background(awaitable, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _background(self, awaitable: Awaitable[Any], label: str) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception(f"[Router] Background task '{label}' failed")

    async def drain(self) -> None:
        """Wait for every pending background task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _check_claimed(self, identity: Identity, *claimed: Optional[int]) -> None:
        for user_id in claimed:
            if user_id is not None and user_id != identity.userId:
                raise AuthorizationError("Payload user does not match the authenticated user")

    async def _require_chat(self, chat_id: int) -> Chat:
        chat = await self.gateway.chats.find_by_id(chat_id)
        if chat is None:
            raise NotFoundError("Chat not found")
        return chat

    async def _check_reply(self, chat: Chat, reply_to_id: Optional[int]) -> Optional[int]:
        if reply_to_id is None:
            return None
        replied = await self.gateway.messages.find_by_id(reply_to_id)
        if replied is None or replied.chatId != chat.id:
            raise ValidationError("Reply target not found in this chat")
        return reply_to_id

    def _require_owner(self, chat: Chat, identity: Identity) -> None:
        if chat.clientId != identity.userId:
            raise AuthorizationError("Chat belongs to another client")

    def _require_assigned(self, chat: Chat, identity: Identity) -> None:
        if chat.agentId != identity.userId:
            raise AuthorizationError("Chat is not assigned to you")

    def _is_participant(self, chat: Chat, identity: Identity) -> bool:
        if identity.role == Role.CLIENT:
            return chat.clientId == identity.userId
        return chat.agentId == identity.userId

    def _counterpart(self, chat: Chat, identity: Identity) -> Optional[int]:
        return chat.agentId if identity.role == Role.CLIENT else chat.clientId

    def _join_user(self, user_id: int, room: str) -> None:
        for connection_id in self.hub.sessions.connections_of(user_id):
            self.hub.rooms.join(connection_id, room)

    def _leave_user(self, user_id: int, room: str) -> None:
        for connection_id in self.hub.sessions.connections_of(user_id):
            self.hub.rooms.leave(connection_id, room)

    def _party_rooms(self, chat: Chat) -> List[str]:
        rooms = [user_room(chat.clientId)]
        if chat.agentId is not None:
            rooms.append(user_room(chat.agentId))
        return rooms

    # =========================================================================
    # Client events
    # =========================================================================

    async def _on_client_history(self, connection_id: str, identity: Identity, payload: schemas.ClientRefPayload) -> None:
        self._check_claimed(identity, payload.clientId)
        chats = await self.gateway.chats.find_by_client_id(identity.userId)
        await self.hub.send(connection_id, "client:chat-history", chats)

    async def _on_start_chat(self, connection_id: str, identity: Identity, payload: schemas.StartChatPayload) -> None:
        self._check_claimed(identity, payload.clientId)
        client = await self.gateway.users.find_or_create(
            name=identity.name or "Cliente", role=Role.CLIENT, user_id=identity.userId
        )
        if client.id != identity.userId:
            identity = await self._rebind(connection_id, identity, client.id)

        chat = await self.gateway.chats.create(client.id, subject=payload.subject or "Soporte")
        self._join_user(client.id, chat_room(chat.id))

        await self.hub.send(connection_id, "chat:created", chat)
        await self.hub.emit_to_room(AGENTS_ROOM, "chat:new-pending", chat)
        logger.info(f"[Router] Client {client.id} started chat {chat.id}")

    async def _rebind(self, connection_id: str, identity: Identity, user_id: int) -> Identity:
        """Move a connection whose client id was unknown onto the created user."""
        rebound = Identity(userId=user_id, role=identity.role, name=identity.name)
        self.hub.rooms.leave(connection_id, user_room(identity.userId))
        self.hub.sessions.rebind(connection_id, rebound)
        self.hub.rooms.join(connection_id, user_room(user_id))
        await self.hub.send(connection_id, "authenticated", rebound)
        logger.info(f"[Router] Connection {connection_id} rebound from {identity.userId} to {user_id}")
        return rebound

    async def _on_client_message(self, connection_id: str, identity: Identity, payload: schemas.SendMessagePayload) -> None:
        self._check_claimed(identity, payload.clientId, payload.senderId)
        chat = await self._require_chat(payload.chatId)
        self._require_owner(chat, identity)
        content = payload.content.strip()
        if not content and not payload.hasAttachments:
            raise ValidationError("Message content is required")
        reply_to_id = await self._check_reply(chat, payload.replyToId)
        await self.ingest_client_message(
            chat, identity.userId, content, reply_to_id=reply_to_id
        )

    async def ingest_client_message(
        self,
        chat: Chat,
        client_id: int,
        content: str,
        reply_to_id: Optional[int] = None,
        external_message_id: Optional[str] = None,
    ) -> Message:
        """Persist and route a client-authored message, reopening a closed chat.

        Shared by the WebSocket path and the WhatsApp webhook.
        """
        if chat.status == ChatStatus.CLOSED:
            chat = await self._reopen(chat)

        message = await self.gateway.messages.create(
            chat.id,
            client_id,
            content,
            reply_to_id=reply_to_id,
            channel=chat.channel,
            external_message_id=external_message_id,
        )
        message = await self.unread.deliver_if_present(message, chat.agentId)

        await self.hub.emit_to_rooms(self._party_rooms(chat), "message:new", message)
        if chat.agentId is not None:
            unread = await self.unread.chat_unread_count(chat.id, chat.agentId)
            await self.hub.emit_to_user(
                chat.agentId, "chat:unread-updated", {"chatId": chat.id, "unreadCount": unread}
            )
        logger.info(f"[Router] Client {client_id} sent message {message.id} in chat {chat.id} ({message.status.value})")
        return message

    async def _reopen(self, chat: Chat) -> Chat:
        next_chat_status(chat.status, ChatAction.REOPEN)
        previous_agent = chat.agentId
        reopened = await self.gateway.chats.reopen(chat.id)
        if reopened is None or reopened.status != ChatStatus.PENDING:
            raise InvalidTransitionError("Only closed chats can be reopened")

        if previous_agent is not None:
            self._leave_user(previous_agent, chat_room(chat.id))
        await self.hub.emit_to_user(
            reopened.clientId, "chat:status-changed",
            {"chatId": reopened.id, "status": ChatStatus.PENDING.value},
        )
        await self.hub.emit_to_room(AGENTS_ROOM, "chat:new-pending", reopened)
        logger.info(f"[Router] Chat {chat.id} reopened by a new client message")
        return reopened

    async def _on_client_end_chat(self, connection_id: str, identity: Identity, payload: schemas.ChatRefPayload) -> None:
        self._check_claimed(identity, payload.clientId)
        chat = await self._require_chat(payload.chatId)
        self._require_owner(chat, identity)
        closed = await self._transition(chat, ChatAction.CLOSE)

        if closed.agentId is not None:
            await self.hub.emit_to_user(
                closed.agentId, "chat:status-changed",
                {"chatId": closed.id, "status": ChatStatus.CLOSED.value},
            )
        await self.hub.emit_to_user(closed.clientId, "chat:ended", {"chatId": closed.id})
        self._schedule_survey(closed)
        logger.info(f"[Router] Client {identity.userId} ended chat {chat.id}")

    async def _on_submit_survey(self, connection_id: str, identity: Identity, payload: schemas.SurveyPayload) -> None:
        chat = await self._require_chat(payload.chatId)
        self._require_owner(chat, identity)
        if chat.status != ChatStatus.CLOSED:
            raise ValidationError("Surveys can only be submitted for closed chats")

        chat = await self.gateway.chats.submit_survey(chat.id, payload.rating, payload.feedback)
        result = {"chatId": chat.id, "rating": payload.rating, "feedback": payload.feedback}
        await self.hub.send(connection_id, "chat:survey-submitted", result)
        if chat.agentId is not None:
            await self.hub.emit_to_user(chat.agentId, "chat:survey-received", result)
        logger.info(f"[Router] Survey for chat {chat.id}: {payload.rating} stars")

    # =========================================================================
    # Agent chat management
    # =========================================================================

    async def _on_pending_chats(self, connection_id: str, identity: Identity, payload: schemas.EmptyPayload) -> None:
        chats = await self.gateway.chats.find_pending()
        await self.hub.send(connection_id, "agent:pending-chats", chats)

    async def _on_my_chats(self, connection_id: str, identity: Identity, payload: schemas.AgentRefPayload) -> None:
        self._check_claimed(identity, payload.agentId)
        chats = await self.gateway.chats.find_active_by_agent_id(identity.userId)
        await self.hub.send(connection_id, "agent:my-chats", chats)

    async def _on_available_agents(self, connection_id: str, identity: Identity, payload: schemas.AvailableAgentsPayload) -> None:
        exclude = payload.excludeAgentId if payload.excludeAgentId is not None else identity.userId
        agents = await self.gateway.users.find_by_role(Role.AGENT)
        available = [
            {"id": agent.id, "name": agent.name, "isOnline": self.presence.is_online(agent.id)}
            for agent in agents
            if agent.id != exclude
        ]
        await self.hub.send(connection_id, "agent:available-agents", available)

    async def _on_agent_history(self, connection_id: str, identity: Identity, payload: schemas.AgentRefPayload) -> None:
        self._check_claimed(identity, payload.agentId)
        chats = await self.gateway.chats.find_closed_by_agent_id(identity.userId)
        await self.hub.send(connection_id, "agent:chat-history", chats)

    async def _on_assign_chat(self, connection_id: str, identity: Identity, payload: schemas.ChatRefPayload) -> None:
        self._check_claimed(identity, payload.agentId)
        chat = await self._require_chat(payload.chatId)
        next_chat_status(chat.status, ChatAction.ASSIGN)

        assigned = await self.gateway.chats.assign(chat.id, identity.userId)
        if assigned is None or assigned.agentId != identity.userId or assigned.status != ChatStatus.ACTIVE:
            raise InvalidTransitionError("Chat is no longer pending")

        self._join_user(identity.userId, chat_room(chat.id))
        history = await self.gateway.messages.find_by_chat_id(chat.id)
        agent_name = assigned.agentName or identity.name or f"Agente {identity.userId}"

        await self.hub.send(
            connection_id, "chat:assigned",
            {"chatId": chat.id, "agentId": identity.userId, "status": assigned.status.value, "chat": assigned},
        )
        await self.hub.send(connection_id, "messages:history", {"chatId": chat.id, "messages": history})
        await self.hub.emit_to_user(
            assigned.clientId, "chat:agent-joined",
            {"chatId": chat.id, "agentId": identity.userId, "agentName": agent_name},
        )
        await self.hub.emit_to_room(AGENTS_ROOM, "chat:removed-from-pending", {"chatId": chat.id})
        logger.info(f"[Router] Agent {agent_name} ({identity.userId}) assigned to chat {chat.id}")

    async def _on_transfer_chat(self, connection_id: str, identity: Identity, payload: schemas.TransferChatPayload) -> None:
        self._check_claimed(identity, payload.fromAgentId)
        chat = await self._require_chat(payload.chatId)
        self._require_assigned(chat, identity)
        next_chat_status(chat.status, ChatAction.TRANSFER)

        if payload.toAgentId == identity.userId:
            raise ValidationError("Chat is already assigned to you")
        target = await self.gateway.users.find_by_id(payload.toAgentId)
        if target is None or target.role != Role.AGENT:
            raise NotFoundError("Target agent not found")

        moved = await self.gateway.chats.transfer(chat.id, identity.userId, target.id)
        if moved is None or moved.agentId != target.id:
            raise InvalidTransitionError("Only assigned chats can be transferred")

        room = chat_room(chat.id)
        self._leave_user(identity.userId, room)
        self._join_user(target.id, room)
        history = await self.gateway.messages.find_by_chat_id(chat.id)

        await self.hub.emit_to_user(identity.userId, "chat:transferred-away", {"chatId": chat.id})
        await self.hub.emit_to_user(target.id, "chat:transferred-to-me", moved)
        await self.hub.emit_to_user(target.id, "messages:history", {"chatId": chat.id, "messages": history})
        await self.hub.emit_to_user(
            moved.clientId, "chat:agent-changed",
            {"chatId": chat.id, "agentId": target.id, "agentName": target.name},
        )
        logger.info(f"[Router] Chat {chat.id} transferred from {identity.userId} to {target.id}")

    async def _on_agent_message(self, connection_id: str, identity: Identity, payload: schemas.SendMessagePayload) -> None:
        self._check_claimed(identity, payload.agentId, payload.senderId)
        chat = await self._require_chat(payload.chatId)
        self._require_assigned(chat, identity)
        if chat.status == ChatStatus.CLOSED:
            raise InvalidTransitionError("Chat is closed")
        content = payload.content.strip()
        if not content and not payload.hasAttachments:
            raise ValidationError("Message content is required")

        reply_to_id = await self._check_reply(chat, payload.replyToId)
        await self.gateway.chats.set_first_response_time(chat.id)
        message = await self.gateway.messages.create(
            chat.id, identity.userId, content, reply_to_id=reply_to_id, channel=chat.channel
        )
        message = await self.unread.deliver_if_present(message, chat.clientId)
        await self.hub.emit_to_rooms(self._party_rooms(chat), "message:new", message)

        if chat.channel == ChatChannel.WHATSAPP and content and not payload.hasAttachments:
            self._spawn(
                self._forward_to_whatsapp(chat, message, reply_to_id),
                f"whatsapp text for message {message.id}",
            )
        logger.info(f"[Router] Agent {identity.userId} sent message {message.id} in chat {chat.id}")

    async def _transition(self, chat: Chat, action: ChatAction) -> Chat:
        target = next_chat_status(chat.status, action)
        updated = await self.gateway.chats.update_status(chat.id, chat.status, target)
        if updated is None or updated.status != target:
            raise InvalidTransitionError("Chat status changed concurrently")
        return updated

    async def _agent_status_change(self, identity: Identity, payload: schemas.ChatRefPayload, action: ChatAction) -> Chat:
        self._check_claimed(identity, payload.agentId)
        chat = await self._require_chat(payload.chatId)
        self._require_assigned(chat, identity)
        updated = await self._transition(chat, action)
        change = {"chatId": updated.id, "status": updated.status.value}
        await self.hub.emit_to_user(identity.userId, "chat:status-changed", change)
        if action != ChatAction.CLOSE:
            await self.hub.emit_to_user(updated.clientId, "chat:status-changed", change)
        logger.info(f"[Router] Agent {identity.userId} {action.value} chat {chat.id} -> {updated.status.value}")
        return updated

    async def _on_hold_chat(self, connection_id: str, identity: Identity, payload: schemas.ChatRefPayload) -> None:
        await self._agent_status_change(identity, payload, ChatAction.HOLD)

    async def _on_resume_chat(self, connection_id: str, identity: Identity, payload: schemas.ChatRefPayload) -> None:
        await self._agent_status_change(identity, payload, ChatAction.RESUME)

    async def _on_close_chat(self, connection_id: str, identity: Identity, payload: schemas.ChatRefPayload) -> None:
        closed = await self._agent_status_change(identity, payload, ChatAction.CLOSE)
        await self.hub.emit_to_user(closed.clientId, "chat:ended", {"chatId": closed.id})
        self._schedule_survey(closed)

    # =========================================================================
    # Chat history, read receipts, typing
    # =========================================================================

    async def _on_messages_get(self, connection_id: str, identity: Identity, payload: schemas.ChatRefPayload) -> None:
        chat = await self._require_chat(payload.chatId)
        participant = self._is_participant(chat, identity)
        if not participant and not (identity.role == Role.AGENT and chat.status == ChatStatus.PENDING):
            raise AuthorizationError("Not a participant of this chat")

        self.hub.rooms.join(connection_id, chat_room(chat.id))
        history = await self.gateway.messages.find_by_chat_id(chat.id)
        await self.hub.send(connection_id, "messages:history", {"chatId": chat.id, "messages": history})
        if participant:
            await self.unread.mark_chat_read(chat, identity)

    async def _on_messages_mark_read(self, connection_id: str, identity: Identity, payload: schemas.ChatRefPayload) -> None:
        chat = await self._require_chat(payload.chatId)
        if not self._is_participant(chat, identity):
            raise AuthorizationError("Not a participant of this chat")
        await self.unread.mark_chat_read(chat, identity)

    async def _relay_typing(self, identity: Identity, chat_id: int, event: str) -> None:
        chat = await self._require_chat(chat_id)
        if not self._is_participant(chat, identity):
            raise AuthorizationError("Not a participant of this chat")
        if chat.status != ChatStatus.ACTIVE:
            return
        other = self._counterpart(chat, identity)
        if other is not None:
            await self.hub.emit_to_user(other, event, {"chatId": chat.id, "userId": identity.userId})

    async def _on_typing_start(self, connection_id: str, identity: Identity, payload: schemas.ChatRefPayload) -> None:
        await self._relay_typing(identity, payload.chatId, "typing:started")

    async def _on_typing_stop(self, connection_id: str, identity: Identity, payload: schemas.ChatRefPayload) -> None:
        await self._relay_typing(identity, payload.chatId, "typing:stopped")

    # =========================================================================
    # Agent direct messages
    # =========================================================================

    def _require_other_agent(self, identity: Identity, other_id: int) -> None:
        if other_id == identity.userId:
            raise ValidationError("Cannot open a direct thread with yourself")

    async def _on_dm_join(self, connection_id: str, identity: Identity, payload: schemas.DmJoinPayload) -> None:
        self._require_other_agent(identity, payload.otherAgentId)
        room = dm_room(identity.userId, payload.otherAgentId)
        self.hub.rooms.join(connection_id, room)

        history = await self.gateway.direct_messages.recent(
            identity.userId, payload.otherAgentId, limit=self.config.realtime.dm_history_limit
        )
        await self.hub.send(connection_id, "agent:dm:history", {"threadId": room, "messages": history})
        await self.unread.mark_dm_read(identity.userId, payload.otherAgentId)

    async def _on_dm_message(self, connection_id: str, identity: Identity, payload: schemas.DmMessagePayload) -> None:
        self._require_other_agent(identity, payload.toAgentId)
        text = payload.content.strip()
        if not text:
            raise ValidationError("Message content is required")
        target = await self.gateway.users.find_by_id(payload.toAgentId)
        if target is None or target.role != Role.AGENT:
            raise NotFoundError("Target agent not found")

        message = await self.gateway.direct_messages.create(identity.userId, target.id, text)
        await self.hub.emit_to_rooms(
            [dm_room(identity.userId, target.id), user_room(target.id), user_room(identity.userId)],
            "agent:dm:message",
            message,
        )

    async def _on_dm_typing(self, connection_id: str, identity: Identity, payload: schemas.DmTypingPayload) -> None:
        self._require_other_agent(identity, payload.toAgentId)
        await self.hub.emit_to_user(
            payload.toAgentId,
            "agent:dm:typing",
            {
                "threadId": dm_room(identity.userId, payload.toAgentId),
                "userId": identity.userId,
                "userName": identity.name or "Agente",
                "isTyping": payload.isTyping,
            },
        )

    async def _on_dm_mark_read(self, connection_id: str, identity: Identity, payload: schemas.DmJoinPayload) -> None:
        self._require_other_agent(identity, payload.otherAgentId)
        await self.unread.mark_dm_read(identity.userId, payload.otherAgentId)

    # =========================================================================
    # Groups
    # =========================================================================

    async def _require_member(self, group_id: int, user_id: int) -> None:
        if not await self.gateway.groups.is_member(group_id, user_id):
            raise AuthorizationError("Not a member of this group")

    async def _on_group_list(self, connection_id: str, identity: Identity, payload: schemas.EmptyPayload) -> None:
        groups = await self.gateway.groups.list_for_user(identity.userId)
        await self.hub.send(connection_id, "group:list", groups)

    async def _on_group_create(self, connection_id: str, identity: Identity, payload: schemas.GroupCreatePayload) -> None:
        name = payload.name.strip()
        if not name:
            raise ValidationError("Group name is required")

        group = await self.gateway.groups.create(name, identity.userId, payload.memberIds)
        room = group_room(group.id)
        for member in group.members:
            self._join_user(member.id, room)

        await self.hub.send(connection_id, "group:created", group)
        for member in group.members:
            if member.id != identity.userId:
                await self.hub.emit_to_user(member.id, "group:added", group)

    async def _on_group_add_members(self, connection_id: str, identity: Identity, payload: schemas.GroupAddMembersPayload) -> None:
        await self._require_member(payload.groupId, identity.userId)
        added = await self.gateway.groups.add_members(payload.groupId, payload.memberIds, identity.userId)
        if not added:
            return

        room = group_room(payload.groupId)
        for member_id in added:
            self._join_user(member_id, room)
        group = await self.gateway.groups.get_by_id(payload.groupId)
        await self.hub.emit_to_room(
            room, "group:members", {"groupId": group.id, "members": group.members}
        )
        for member_id in added:
            await self.hub.emit_to_user(member_id, "group:added", group)

    async def _on_group_remove_member(self, connection_id: str, identity: Identity, payload: schemas.GroupRemoveMemberPayload) -> None:
        group = await self.gateway.groups.get_by_id(payload.groupId)
        if group is None:
            raise NotFoundError("Group not found")
        if group.createdBy != identity.userId:
            raise AuthorizationError("Only the group creator can remove members")
        if payload.memberId == group.createdBy:
            raise ValidationError("The group creator cannot be removed")

        await self.gateway.groups.remove_member(group.id, payload.memberId)
        room = group_room(group.id)
        self._leave_user(payload.memberId, room)
        members = await self.gateway.groups.get_members(group.id)
        await self.hub.emit_to_room(room, "group:members", {"groupId": group.id, "members": members})
        await self.hub.emit_to_user(payload.memberId, "group:removed", {"groupId": group.id})

    async def _on_group_join(self, connection_id: str, identity: Identity, payload: schemas.GroupRefPayload) -> None:
        await self._require_member(payload.groupId, identity.userId)
        self.hub.rooms.join(connection_id, group_room(payload.groupId))
        history = await self.gateway.group_messages.recent(
            payload.groupId, limit=self.config.realtime.group_history_limit
        )
        members = await self.gateway.groups.get_members(payload.groupId)
        await self.hub.send(connection_id, "group:history", {"groupId": payload.groupId, "messages": history})
        await self.hub.send(connection_id, "group:members", {"groupId": payload.groupId, "members": members})
        await self.unread.mark_group_read(identity.userId, payload.groupId)

    async def _on_group_leave(self, connection_id: str, identity: Identity, payload: schemas.GroupRefPayload) -> None:
        self.hub.rooms.leave(connection_id, group_room(payload.groupId))

    async def _on_group_message(self, connection_id: str, identity: Identity, payload: schemas.GroupMessagePayload) -> None:
        text = payload.content.strip()
        if not text:
            raise ValidationError("Message content is required")
        await self._require_member(payload.groupId, identity.userId)
        message = await self.gateway.group_messages.create(payload.groupId, identity.userId, text)
        await self.hub.emit_to_room(group_room(payload.groupId), "group:message", message)

    async def _on_group_mark_read(self, connection_id: str, identity: Identity, payload: schemas.GroupRefPayload) -> None:
        await self._require_member(payload.groupId, identity.userId)
        await self.unread.mark_group_read(identity.userId, payload.groupId)

    # =========================================================================
    # Global team chat
    # =========================================================================

    async def _on_global_join(self, connection_id: str, identity: Identity, payload: schemas.EmptyPayload) -> None:
        self.hub.rooms.join(connection_id, GLOBAL_ROOM)
        logger.info(
            f"[Router] {identity.name} joined global chat ({self.hub.rooms.room_size(GLOBAL_ROOM)} connections)"
        )
        history = await self.gateway.global_messages.recent(self.config.realtime.global_history_limit)
        await self.hub.send(connection_id, "global:history", history)
        await self.presence.broadcast_global_users()

    async def _on_global_leave(self, connection_id: str, identity: Identity, payload: schemas.EmptyPayload) -> None:
        self.hub.rooms.leave(connection_id, GLOBAL_ROOM)
        await self.presence.broadcast_global_users()

    async def _on_global_message(self, connection_id: str, identity: Identity, payload: schemas.GlobalMessagePayload) -> None:
        text = payload.content.strip()
        if not text:
            raise ValidationError("Message content is required")
        message = await self.gateway.global_messages.create(identity.userId, text)
        await self.hub.emit_to_room(GLOBAL_ROOM, "global:message", message)

    async def _on_global_typing(self, connection_id: str, identity: Identity, payload: schemas.GlobalTypingPayload) -> None:
        await self.hub.emit_to_room(
            GLOBAL_ROOM,
            "global:typing",
            {"userId": identity.userId, "userName": identity.name, "isTyping": payload.isTyping},
            exclude=connection_id,
        )

    async def _on_global_mark_read(self, connection_id: str, identity: Identity, payload: schemas.EmptyPayload) -> None:
        await self.unread.mark_global_read(identity.userId)

    # =========================================================================
    # Provider bridge
    # =========================================================================

    def _bridge_ready(self) -> bool:
        return (
            self.bridge is not None
            and self.config.whatsapp.enabled
            and getattr(self.bridge, "configured", False)
        )

    async def _forward_to_whatsapp(self, chat: Chat, message: Message, reply_to_id: Optional[int]) -> None:
        if not self._bridge_ready():
            logger.debug(f"[WhatsApp] Bridge not configured, message {message.id} stays local")
            return
        client = await self.gateway.users.find_by_id(chat.clientId)
        if client is None or not client.whatsappId:
            return
        reply_external_id = None
        if reply_to_id is not None:
            replied = await self.gateway.messages.find_by_id(reply_to_id)
            if replied is not None and replied.chatId == chat.id:
                reply_external_id = replied.externalMessageId

        external_id = await self.bridge.send_text(
            client.whatsappId, message.content, reply_to_message_id=reply_external_id
        )
        if external_id:
            await self.gateway.messages.update_external_id(message.id, external_id)
            logger.info(f"[WhatsApp] Message {message.id} sent as {external_id}")

    def _schedule_survey(self, chat: Chat) -> None:
        if chat.channel == ChatChannel.WHATSAPP:
            self._spawn(self._send_survey(chat), f"survey for chat {chat.id}")

    async def _send_survey(self, chat: Chat) -> None:
        if not self._bridge_ready():
            return
        client = await self.gateway.users.find_by_id(chat.clientId)
        if client is None or not client.whatsappId:
            return
        await self.bridge.send_template(
            client.whatsappId,
            name=self.config.whatsapp.survey_template,
            language_code=self.config.whatsapp.survey_language,
            components=[
                {
                    "type": "body",
                    "parameters": [{"type": "text", "text": client.name or "Cliente"}],
                }
            ],
        )
        logger.info(f"[WhatsApp] Satisfaction survey sent for chat {chat.id}")

    async def ingest_whatsapp_message(
        self,
        whatsapp_id: str,
        name: Optional[str],
        content: str,
        external_message_id: Optional[str] = None,
        reply_to_external_id: Optional[str] = None,
    ) -> Message:
        """Route an inbound WhatsApp message into the client's latest WhatsApp chat.

        A closed chat is reopened through the normal client-message path; a
        client without any WhatsApp chat gets a new pending one.
        """
        client = await self.gateway.users.find_or_create(
            name=name or f"WhatsApp {whatsapp_id}", role=Role.CLIENT, whatsapp_id=whatsapp_id
        )
        chat = await self.gateway.chats.find_latest_by_client_and_channel(client.id, ChatChannel.WHATSAPP)
        if chat is None:
            chat = await self.gateway.chats.create(client.id, subject="WhatsApp", channel=ChatChannel.WHATSAPP)
            await self.hub.emit_to_room(AGENTS_ROOM, "chat:new-pending", chat)
            logger.info(f"[WhatsApp] New chat {chat.id} for {whatsapp_id}")

        reply_to_id = None
        if reply_to_external_id:
            replied = await self.gateway.messages.find_by_external_id(reply_to_external_id)
            reply_to_id = replied.id if replied and replied.chatId == chat.id else None

        return await self.ingest_client_message(
            chat, client.id, content,
            reply_to_id=reply_to_id, external_message_id=external_message_id,
        )

    async def apply_provider_status(self, external_message_id: str, status: str) -> Optional[Message]:
        """Apply a delivery status reported by the provider and notify the author."""
        target = PROVIDER_STATUSES.get(status)
        if target is None:
            logger.info(f"[WhatsApp] Ignoring status '{status}' for {external_message_id}")
            return None
        message = await self.gateway.messages.update_status_by_external_id(external_message_id, target)
        if message is None:
            return None
        await self.hub.emit_to_user(
            message.userId,
            "message:status-updated",
            {"chatId": message.chatId, "messageIds": [message.id], "status": message.status.value},
        )
        return message

    async def notify_attachments_updated(self, message_id: int) -> None:
        """Tell both parties of a chat that a message's attachments changed."""
        message = await self.gateway.messages.find_by_id(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        chat = await self._require_chat(message.chatId)
        await self.hub.emit_to_rooms(
            self._party_rooms(chat),
            "attachments:updated",
            {"entityId": message.id, "entityType": "chat", "chatId": chat.id},
        )
