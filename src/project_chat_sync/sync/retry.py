"""Retry and dismiss actions for failed sends."""

from typing import Optional

import structlog

from ..domain.models import DeliveryState, Identity, Message
from .optimistic import OptimisticEchoManager
from .reconciler import Reconciler

logger = structlog.get_logger()


class RetryController:
    """User actions on entries left in the failed state."""

    def __init__(self, reconciler: Reconciler, echo: OptimisticEchoManager) -> None:
        self.reconciler = reconciler
        self.store = reconciler.store
        self.echo = echo

    def failed_entry(self, identity: Identity) -> Optional[Message]:
        """Return the entry if it exists and is failed."""
        entry = self.store.get(identity)
        if entry is None or entry.delivery_state != DeliveryState.FAILED:
            return None
        return entry

    async def retry(self, identity: Identity) -> Optional[Message]:
        """Replace a failed entry with a fresh pending send of the same content."""
        entry = self.failed_entry(identity)
        if entry is None:
            logger.warning("retry_ignored", identity=str(identity), reason="not_failed")
            return None
        if self.echo.in_flight:
            # Removing first would lose the content when send() declines.
            logger.info("retry_ignored", identity=str(identity), reason="send_in_flight")
            return None

        self.reconciler.remove(identity)
        logger.info("retry_started", identity=str(identity))
        return await self.echo.send(entry.content)

    def dismiss(self, identity: Identity) -> bool:
        """Drop a failed entry without resending it."""
        if self.failed_entry(identity) is None:
            return False
        self.reconciler.remove(identity)
        logger.info("failed_message_dismissed", identity=str(identity))
        return True
