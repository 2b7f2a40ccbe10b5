"""Base transport interface."""

from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from ..domain.errors import SubscriptionError
from ..domain.models import ConversationKey, ServerMessage

EventCallback = Callable[[ServerMessage], None]
InvalidateCallback = Callable[[], None]
ErrorCallback = Callable[[SubscriptionError], None]


class SubscriptionHandle(ABC):
    """Handle on a long-lived push subscription."""

    @property
    @abstractmethod
    def is_active(self) -> bool:
        """Whether events can currently be delivered."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the subscription; no callbacks fire afterwards."""
        pass


class ChatTransport(ABC):
    """Abstract base class for chat transports."""

    @abstractmethod
    async def send(self, key: ConversationKey, content: str) -> Optional[ServerMessage]:
        """Send a message; may or may not return the persisted record."""
        pass

    @abstractmethod
    async def fetch_history(self, key: ConversationKey) -> List[ServerMessage]:
        """Fetch the full conversation ordered by server time."""
        pass

    @abstractmethod
    async def subscribe(
        self,
        project_id: str,
        on_event: EventCallback,
        on_invalidate: Optional[InvalidateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> SubscriptionHandle:
        """Subscribe to message events for every conversation in a project."""
        pass
