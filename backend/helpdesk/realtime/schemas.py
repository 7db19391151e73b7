"""Pydantic models for inbound WebSocket event payloads.

Field names match the JSON the browser sends. Unknown fields are ignored;
numeric ids sent as strings are coerced.
"""
from typing import List, Optional

from pydantic import BaseModel, Field

from helpdesk.domain.models import Role


class EmptyPayload(BaseModel):
    pass


class AuthenticatePayload(BaseModel):
    userId: int
    role: Role
    name: str = ""


class ClientRefPayload(BaseModel):
    clientId: Optional[int] = None


class AgentRefPayload(BaseModel):
    agentId: Optional[int] = None


class AvailableAgentsPayload(BaseModel):
    excludeAgentId: Optional[int] = None


class StartChatPayload(BaseModel):
    clientId: Optional[int] = None
    subject: Optional[str] = None


class SendMessagePayload(BaseModel):
    """Client and agent send-message payload.

    ``clientId`` / ``agentId`` / ``senderId`` are accepted for compatibility
    but must name the authenticated user when present.
    """
    chatId: int
    content: str = ""
    clientId: Optional[int] = None
    agentId: Optional[int] = None
    senderId: Optional[int] = None
    replyToId: Optional[int] = None
    hasAttachments: bool = False


class ChatRefPayload(BaseModel):
    chatId: int
    agentId: Optional[int] = None
    clientId: Optional[int] = None


class TransferChatPayload(BaseModel):
    chatId: int
    toAgentId: int
    fromAgentId: Optional[int] = None


class SurveyPayload(BaseModel):
    chatId: int
    rating: int = Field(ge=1, le=5)
    feedback: Optional[str] = None


class DmJoinPayload(BaseModel):
    otherAgentId: int


class DmMessagePayload(BaseModel):
    toAgentId: int
    content: str = ""


class DmTypingPayload(BaseModel):
    toAgentId: int
    isTyping: bool = False


class GroupRefPayload(BaseModel):
    groupId: int


class GroupCreatePayload(BaseModel):
    name: str = ""
    memberIds: List[int] = Field(default_factory=list)


class GroupAddMembersPayload(BaseModel):
    groupId: int
    memberIds: List[int] = Field(default_factory=list)


class GroupRemoveMemberPayload(BaseModel):
    groupId: int
    memberId: int


class GroupMessagePayload(BaseModel):
    groupId: int
    content: str = ""


class GlobalMessagePayload(BaseModel):
    content: str = ""


class GlobalTypingPayload(BaseModel):
    isTyping: bool = False
