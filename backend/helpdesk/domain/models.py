"""Pydantic models for the persisted helpdesk entities.

These mirror the rows owned by the persistence gateway. Field names are
camelCase because the models are serialized unchanged onto the WebSocket.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class Role(str, Enum):
    """Role of a user. Immutable for the lifetime of a connection."""
    CLIENT = "client"
    AGENT = "agent"


class ChatStatus(str, Enum):
    """Lifecycle state of a 1:1 support chat.

    Attributes:
        PENDING: Waiting in the queue, no agent assigned.
        ACTIVE: Assigned to an agent and ongoing.
        ON_HOLD: Assigned but paused by the agent.
        CLOSED: Finished. A new client message reopens it as PENDING.
    """
    PENDING = "pending"
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    CLOSED = "closed"


class MessageStatus(str, Enum):
    """Delivery status of a chat message. Only ever moves forward."""
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class ChatChannel(str, Enum):
    """Where a chat originated. Fixed at creation."""
    WEB = "web"
    WHATSAPP = "whatsapp"


class User(BaseModel):
    """A client or agent account."""
    id: int
    name: str
    email: Optional[str] = None
    role: Role
    whatsappId: Optional[str] = None
    isOnline: bool = False
    createdAt: Optional[datetime] = None


class Chat(BaseModel):
    """A 1:1 conversation between one client and at most one agent.

    Invariant: ``agentId`` is None if and only if ``status`` is PENDING.
    """
    id: int
    clientId: int
    clientName: Optional[str] = None
    agentId: Optional[int] = None
    agentName: Optional[str] = None
    status: ChatStatus = ChatStatus.PENDING
    channel: ChatChannel = ChatChannel.WEB
    subject: Optional[str] = None
    createdAt: Optional[datetime] = None
    assignedAt: Optional[datetime] = None
    closedAt: Optional[datetime] = None
    firstResponseAt: Optional[datetime] = None
    lastMessage: Optional[str] = None
    unreadCount: int = 0
    rating: Optional[int] = None
    feedback: Optional[str] = None
    firstResponseSeconds: Optional[int] = None
    durationSeconds: Optional[int] = None


class Message(BaseModel):
    """A message inside a 1:1 chat, with its delivery status."""
    id: int
    chatId: int
    userId: int
    content: str
    senderRole: Optional[Role] = None
    senderName: Optional[str] = None
    replyToId: Optional[int] = None
    replyToContent: Optional[str] = None
    replyToSenderRole: Optional[Role] = None
    isRead: bool = False
    status: MessageStatus = MessageStatus.SENT
    channel: ChatChannel = ChatChannel.WEB
    externalMessageId: Optional[str] = None
    createdAt: Optional[datetime] = None


class GroupMember(BaseModel):
    id: int
    name: str


class GroupChat(BaseModel):
    """A named agent group with a creator and a mutable member set."""
    id: int
    name: str
    createdBy: int
    createdAt: Optional[datetime] = None
    members: List[GroupMember] = Field(default_factory=list)


class GroupMessage(BaseModel):
    id: int
    groupId: int
    senderId: int
    senderName: str = "Usuario"
    senderRole: Role = Role.AGENT
    content: str
    timestamp: datetime


class DirectMessage(BaseModel):
    """A message between two agents. ``threadId`` is symmetric in the pair."""
    id: int
    threadId: str
    senderId: int
    senderName: str = "Agente"
    content: str
    timestamp: datetime


class GlobalMessage(BaseModel):
    id: int
    senderId: int
    senderName: str = "Usuario"
    senderRole: Role = Role.AGENT
    content: str
    timestamp: datetime
