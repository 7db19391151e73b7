"""Real-time session, presence and routing layer."""
from .hub import ConnectionHub
from .presence import PresenceTracker
from .rooms import RoomMembership
from .router import EventRouter
from .sessions import Identity, SessionRegistry
from .unread import UnreadReconciler

__all__ = [
    "ConnectionHub",
    "EventRouter",
    "Identity",
    "PresenceTracker",
    "RoomMembership",
    "SessionRegistry",
    "UnreadReconciler",
]
