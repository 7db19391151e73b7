"""Explicit state machines for chats and message delivery.

Chat lifecycle::

    pending --assign--> active <--hold/resume--> on_hold
    active/on_hold --close--> closed --reopen--> pending

Transfers keep the current status. Every transition is looked up in
CHAT_TRANSITIONS; anything missing from the table is rejected.
"""
from enum import Enum
from typing import Dict, List, Tuple

from .errors import InvalidTransitionError
from .models import ChatStatus, MessageStatus


class ChatAction(str, Enum):
    ASSIGN = "assign"
    TRANSFER = "transfer"
    HOLD = "hold"
    RESUME = "resume"
    CLOSE = "close"
    REOPEN = "reopen"


# (current status, action) -> next status
CHAT_TRANSITIONS: Dict[Tuple[ChatStatus, ChatAction], ChatStatus] = {
    (ChatStatus.PENDING, ChatAction.ASSIGN): ChatStatus.ACTIVE,
    (ChatStatus.ACTIVE, ChatAction.TRANSFER): ChatStatus.ACTIVE,
    (ChatStatus.ON_HOLD, ChatAction.TRANSFER): ChatStatus.ON_HOLD,
    (ChatStatus.ACTIVE, ChatAction.HOLD): ChatStatus.ON_HOLD,
    (ChatStatus.ON_HOLD, ChatAction.RESUME): ChatStatus.ACTIVE,
    (ChatStatus.ACTIVE, ChatAction.CLOSE): ChatStatus.CLOSED,
    (ChatStatus.ON_HOLD, ChatAction.CLOSE): ChatStatus.CLOSED,
    (ChatStatus.CLOSED, ChatAction.REOPEN): ChatStatus.PENDING,
}

_TRANSITION_ERRORS: Dict[ChatAction, str] = {
    ChatAction.ASSIGN: "Chat is no longer pending",
    ChatAction.TRANSFER: "Only assigned chats can be transferred",
    ChatAction.HOLD: "Only active chats can be put on hold",
    ChatAction.RESUME: "Only on-hold chats can be resumed",
    ChatAction.CLOSE: "Chat cannot be closed in its current status",
    ChatAction.REOPEN: "Only closed chats can be reopened",
}


def can_transition(status: ChatStatus, action: ChatAction) -> bool:
    return (ChatStatus(status), ChatAction(action)) in CHAT_TRANSITIONS


def next_chat_status(status: ChatStatus, action: ChatAction) -> ChatStatus:
    """Return the status a chat moves to, or raise InvalidTransitionError."""
    try:
        return CHAT_TRANSITIONS[(ChatStatus(status), ChatAction(action))]
    except KeyError:
        raise InvalidTransitionError(_TRANSITION_ERRORS[ChatAction(action)]) from None


# Rank of each delivery status; a message only moves to a higher rank.
MESSAGE_STATUS_RANK: Dict[MessageStatus, int] = {
    MessageStatus.SENT: 0,
    MessageStatus.DELIVERED: 1,
    MessageStatus.READ: 2,
}


def statuses_before(target: MessageStatus) -> List[MessageStatus]:
    """Statuses a message may be in for an update to ``target`` to apply."""
    rank = MESSAGE_STATUS_RANK[MessageStatus(target)]
    return [status for status, r in MESSAGE_STATUS_RANK.items() if r < rank]
