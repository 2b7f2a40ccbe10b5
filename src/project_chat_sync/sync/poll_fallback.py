"""Periodic full re-fetch of a conversation."""

import asyncio
from typing import Optional

import structlog

from ..domain.errors import TransportError
from ..domain.models import ConversationKey
from ..metrics import POLL_FAILURES
from ..transport.base import ChatTransport
from .reconciler import Reconciler

logger = structlog.get_logger()


class PollFallback:
    """Re-fetches the whole history on a fixed cadence.

    This bounds staleness to one interval whatever the push channel does.
    The first tick runs as soon as the poller starts and doubles as the
    initial load.
    """

    def __init__(
        self,
        transport: ChatTransport,
        key: ConversationKey,
        reconciler: Reconciler,
        interval_seconds: float = 10.0,
    ) -> None:
        self.transport = transport
        self.key = key
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds
        self.consecutive_failures = 0
        self._task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the polling task."""
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            logger.info(
                "poll_started",
                project_id=self.key.project_id,
                counterpart_id=self.key.counterpart_id,
                interval=self.interval_seconds,
            )

    async def stop(self) -> None:
        """Stop the polling task."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("poll_stopped", project_id=self.key.project_id)

    def request_tick(self) -> None:
        """Run the next tick now instead of waiting out the interval."""
        self._wakeup.set()

    async def tick(self) -> bool:
        """Fetch the history once and reconcile it; returns False on failure."""
        since = self.reconciler.store.revision
        try:
            history = await self.transport.fetch_history(self.key)
        except TransportError as e:
            self.consecutive_failures += 1
            POLL_FAILURES.inc()
            logger.warning(
                "poll_fetch_failed",
                project_id=self.key.project_id,
                failures=self.consecutive_failures,
                error=str(e),
            )
            return False

        self.consecutive_failures = 0
        result = self.reconciler.replace_with(
            [message.to_message() for message in history], source="poll", since=since
        )
        logger.debug(
            "poll_tick_completed",
            project_id=self.key.project_id,
            count=len(history),
            promoted=result.promoted,
        )
        return True

    async def _run(self) -> None:
        while True:
            self._wakeup.clear()
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.consecutive_failures += 1
                POLL_FAILURES.inc()
                logger.error("poll_tick_error", project_id=self.key.project_id, error=str(e))

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
