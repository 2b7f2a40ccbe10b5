"""Real-time message synchronization for project chat."""

from .config import SyncSettings
from .domain.errors import (
    ChatSyncError,
    MalformedTimestamp,
    SubscriptionError,
    TransportError,
    ValidationError,
)
from .domain.models import (
    ConnectionState,
    ConversationKey,
    DeliveryState,
    LocalId,
    Message,
    RemoteId,
    ServerMessage,
)
from .sync.engine import ConversationEngine, EngineRegistry

__all__ = [
    "ChatSyncError",
    "ConnectionState",
    "ConversationEngine",
    "ConversationKey",
    "DeliveryState",
    "EngineRegistry",
    "LocalId",
    "MalformedTimestamp",
    "Message",
    "RemoteId",
    "ServerMessage",
    "SubscriptionError",
    "SyncSettings",
    "TransportError",
    "ValidationError",
]
