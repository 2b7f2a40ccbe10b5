"""Optimistic sends under temporary identities."""

import asyncio
from datetime import datetime
from typing import Callable, Optional, Set

import structlog

from ..domain.errors import TransportError, ValidationError
from ..domain.models import ConversationKey, DeliveryState, LocalId, Message
from ..domain.timestamps import Instant, utc_now
from ..metrics import SEND_FAILURES, SENDS
from ..transport.base import ChatTransport
from .reconciler import Reconciler

logger = structlog.get_logger()


class OptimisticEchoManager:
    """Shows outgoing messages immediately and tracks their delivery.

    At most one send per conversation is in flight. The network call runs in
    its own task so that tearing the view down does not cancel it; the result
    still lands in the store, which outlives the view.
    """

    def __init__(
        self,
        transport: ChatTransport,
        key: ConversationKey,
        user_id: str,
        reconciler: Reconciler,
        on_refresh_needed: Callable[[], None],
        send_timeout_seconds: Optional[float] = 30.0,
        max_content_length: int = 4000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.transport = transport
        self.key = key
        self.user_id = user_id
        self.reconciler = reconciler
        self.on_refresh_needed = on_refresh_needed
        self.send_timeout_seconds = send_timeout_seconds
        self.max_content_length = max_content_length
        self.clock = clock
        self._in_flight: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> bool:
        """Whether a send for this conversation has not finished yet."""
        return self._in_flight is not None and not self._in_flight.done()

    def validate(self, content: str) -> str:
        """Return the trimmed content or raise :class:`ValidationError`."""
        text = (content or "").strip()
        if not text:
            raise ValidationError("Message content cannot be empty")
        if len(text) > self.max_content_length:
            raise ValidationError(
                f"Message content exceeds {self.max_content_length} characters"
            )
        return text

    async def send(self, content: str) -> Optional[Message]:
        """Append a pending echo and start delivering it.

        Returns the pending entry, or None when another send is still in
        flight. Raises :class:`ValidationError` before touching the store.
        """
        text = self.validate(content)
        if self.in_flight:
            logger.info("send_rejected_in_flight", project_id=self.key.project_id)
            return None

        message = Message(
            identity=LocalId(),
            sender_id=self.user_id,
            recipient_id=self.key.counterpart_id,
            content=text,
            sent_at=Instant.at(self.clock()),
            delivery_state=DeliveryState.PENDING,
        )
        self.reconciler.add_local(message)
        SENDS.inc()

        task = asyncio.create_task(self._deliver(message))
        self._in_flight = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(
            "send_started",
            project_id=self.key.project_id,
            temp_id=message.identity.temp_id,
            content_length=len(text),
        )
        return message

    async def _deliver(self, message: Message) -> None:
        try:
            record = await asyncio.wait_for(
                self.transport.send(self.key, message.content),
                timeout=self.send_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self._mark_failed(message, "Send timed out")
            return
        except TransportError as e:
            self._mark_failed(message, str(e))
            return
        except Exception as e:
            logger.error("send_unexpected_error", temp_id=message.identity.temp_id, error=repr(e))
            self._mark_failed(message, str(e))
            return

        logger.info("send_completed", temp_id=message.identity.temp_id, synchronous=record is not None)
        if record is not None:
            try:
                self.reconciler.confirm(message.identity, record.to_message())
                return
            except Exception as e:
                # The server has the message; a poll can still match it.
                logger.error(
                    "send_reconcile_error", temp_id=message.identity.temp_id, error=repr(e)
                )

        try:
            self.on_refresh_needed()
        except Exception as e:
            logger.error("send_refresh_error", temp_id=message.identity.temp_id, error=repr(e))

    def _mark_failed(self, message: Message, reason: str) -> None:
        SEND_FAILURES.inc()
        updated = self.reconciler.mark_failed(message.identity)
        logger.warning(
            "send_failed",
            project_id=self.key.project_id,
            temp_id=message.identity.temp_id,
            still_local=updated is not None,
            error=reason,
        )

    async def wait_idle(self) -> None:
        """Wait until every started send has finished."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
