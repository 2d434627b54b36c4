"""MindBridge core: visibility, conversations, presence and real-time dispatch."""

from .conversations import ConversationAggregator
from .dispatch import DispatchReport, Dispatcher
from .errors import Conflict, InvalidRequest, MindBridgeError, NotFound, TransientStoreError, Unauthorized
from .models import Visibility
from .presence import Connection, PresenceRegistry
from .server import main
from .visibility import VisibilityResolver, VisibleEntries

__all__ = [
    "Conflict",
    "Connection",
    "ConversationAggregator",
    "DispatchReport",
    "Dispatcher",
    "InvalidRequest",
    "MindBridgeError",
    "NotFound",
    "PresenceRegistry",
    "TransientStoreError",
    "Unauthorized",
    "Visibility",
    "VisibilityResolver",
    "VisibleEntries",
    "main",
]
