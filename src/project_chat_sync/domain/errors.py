"""Error taxonomy for the chat synchronization engine."""

from typing import Any, Optional


class ChatSyncError(Exception):
    """Base class for engine errors."""
    pass


class TransportError(ChatSyncError):
    """A send or history fetch failed; the affected message is retryable."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SubscriptionError(ChatSyncError):
    """The push channel could not be opened or was dropped."""
    pass


class ValidationError(ChatSyncError):
    """Outgoing content was rejected before any network call."""
    pass


class MalformedTimestamp(ChatSyncError):
    """A wire timestamp could not be normalized."""

    def __init__(self, raw: Any, problem: str) -> None:
        super().__init__(f"Cannot normalize timestamp {raw!r}: {problem}")
        self.raw = raw
        self.problem = problem
