"""Push subscription scoped to one conversation."""

from typing import Callable, List, Optional

import structlog

from ..domain.errors import SubscriptionError
from ..domain.models import ConversationKey, Message, ServerMessage
from ..metrics import PUSH_EVENTS
from ..transport.base import ChatTransport, SubscriptionHandle

logger = structlog.get_logger()


class PushListener:
    """Forwards project push events that belong to the active conversation.

    Delivery is best effort. A failed handshake or a dropped channel is
    logged and leaves the engine on polling alone; reconnecting is the job of
    whoever owns the session, not of this listener.
    """

    def __init__(
        self,
        transport: ChatTransport,
        key: ConversationKey,
        subscriber_id: str,
        on_messages: Callable[[List[Message]], None],
        on_invalidate: Optional[Callable[[], None]] = None,
    ) -> None:
        self.transport = transport
        self.key = key
        self.subscriber_id = subscriber_id
        self.on_messages = on_messages
        self.on_invalidate = on_invalidate
        self._handle: Optional[SubscriptionHandle] = None
        self._running = False

    @property
    def is_live(self) -> bool:
        """Whether the push channel is currently delivering."""
        return self._running and self._handle is not None and self._handle.is_active

    async def start(self) -> None:
        """Open the project subscription."""
        if self._running:
            return
        self._running = True
        try:
            handle = await self.transport.subscribe(
                self.key.project_id,
                self._on_event,
                on_invalidate=self._on_invalidate,
                on_error=self._on_error,
            )
        except SubscriptionError as e:
            logger.warning(
                "push_subscribe_failed",
                project_id=self.key.project_id,
                error=str(e),
            )
            return

        if not self._running:
            # Stopped while the handshake was in progress.
            await handle.close()
            return
        self._handle = handle
        logger.info(
            "push_subscribed",
            project_id=self.key.project_id,
            counterpart_id=self.key.counterpart_id,
        )

    async def stop(self) -> None:
        """Close the subscription if one is open."""
        self._running = False
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            await handle.close()
        except SubscriptionError as e:
            logger.warning("push_close_failed", project_id=self.key.project_id, error=str(e))
        logger.info("push_unsubscribed", project_id=self.key.project_id)

    def _on_event(self, message: ServerMessage) -> None:
        if not self._running:
            return
        if not self.key.involves(message, self.subscriber_id):
            logger.debug("push_event_ignored", message_id=message.id)
            return
        PUSH_EVENTS.inc()
        self.on_messages([message.to_message()])

    def _on_invalidate(self) -> None:
        if self._running and self.on_invalidate is not None:
            self.on_invalidate()

    def _on_error(self, error: SubscriptionError) -> None:
        logger.warning(
            "push_channel_dropped",
            project_id=self.key.project_id,
            error=str(error),
        )
