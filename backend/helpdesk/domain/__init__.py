"""Domain entities, enumerations and state-transition tables."""
from .errors import (
    AuthorizationError,
    HelpdeskError,
    InvalidTransitionError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from .models import (
    Chat,
    ChatChannel,
    ChatStatus,
    DirectMessage,
    GlobalMessage,
    GroupChat,
    GroupMember,
    GroupMessage,
    Message,
    MessageStatus,
    Role,
    User,
)
from .state import ChatAction, next_chat_status

__all__ = [
    "AuthorizationError",
    "Chat",
    "ChatAction",
    "ChatChannel",
    "ChatStatus",
    "DirectMessage",
    "GlobalMessage",
    "GroupChat",
    "GroupMember",
    "GroupMessage",
    "HelpdeskError",
    "InvalidTransitionError",
    "Message",
    "MessageStatus",
    "NotFoundError",
    "ProviderError",
    "Role",
    "User",
    "ValidationError",
    "next_chat_status",
]
