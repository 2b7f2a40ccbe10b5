"""Conversation engine and its registry.

An engine owns the store and the sync components of one conversation and
exposes the surface a chat view needs: the ordered messages, ``send``,
``retry``, ``dismiss`` and a derived connection state. Engines live in a
registry keyed by user and conversation, not by view, so a view that is torn
down and mounted again finds the same store, including sends that completed
while it was away.
"""

import asyncio
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from ..config import SyncSettings
from ..domain.models import ConnectionState, ConversationKey, Identity, Message
from ..domain.timestamps import utc_now
from ..store.conversation_store import ConversationStore
from ..transport.base import ChatTransport
from .optimistic import OptimisticEchoManager
from .poll_fallback import PollFallback
from .push_listener import PushListener
from .reconciler import Reconciler
from .retry import RetryController

logger = structlog.get_logger()


class ConversationEngine:
    """Synchronization engine for one conversation."""

    def __init__(
        self,
        transport: ChatTransport,
        user_id: str,
        key: ConversationKey,
        settings: Optional[SyncSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        settings = settings or SyncSettings()
        self.user_id = user_id
        self.key = key
        self.settings = settings
        self.store = ConversationStore(key)
        self.reconciler = Reconciler(self.store, settings.dedup_tolerance_seconds)
        self.poll = PollFallback(
            transport, key, self.reconciler, interval_seconds=settings.poll_interval_seconds
        )
        self.push = PushListener(
            transport,
            key,
            user_id,
            on_messages=self._on_push,
            on_invalidate=self.poll.request_tick,
        )
        self.echo = OptimisticEchoManager(
            transport,
            key,
            user_id,
            self.reconciler,
            on_refresh_needed=self.poll.request_tick,
            send_timeout_seconds=settings.send_timeout_seconds,
            max_content_length=settings.max_content_length,
            clock=clock,
        )
        self.retries = RetryController(self.reconciler, self.echo)
        self._active = False

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def messages(self) -> Tuple[Message, ...]:
        """Ordered timeline for rendering."""
        return self.store.messages

    @property
    def connection_state(self) -> ConnectionState:
        """``live`` while push delivers, ``polling`` otherwise."""
        return ConnectionState.LIVE if self.push.is_live else ConnectionState.POLLING

    @property
    def sync_failed(self) -> bool:
        """Both push and polling are failing; worth a standalone banner."""
        return (
            not self.push.is_live
            and self.poll.consecutive_failures >= self.settings.banner_failure_threshold
        )

    async def start(self) -> None:
        """Start polling and open the push subscription."""
        if self._active:
            return
        self._active = True
        await self.poll.start()
        await self.push.start()
        logger.info(
            "engine_started",
            project_id=self.key.project_id,
            counterpart_id=self.key.counterpart_id,
            connection_state=self.connection_state.value,
        )

    async def stop(self) -> None:
        """Stop polling and close push; in-flight sends keep running."""
        if not self._active:
            return
        self._active = False
        await self.poll.stop()
        await self.push.stop()
        logger.info("engine_stopped", project_id=self.key.project_id, counterpart_id=self.key.counterpart_id)

    async def __aenter__(self) -> "ConversationEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def _on_push(self, messages: List[Message]) -> None:
        self.reconciler.merge(messages, source="push")

    async def send(self, content: str) -> Optional[Message]:
        return await self.echo.send(content)

    async def retry(self, identity: Identity) -> Optional[Message]:
        return await self.retries.retry(identity)

    def dismiss(self, identity: Identity) -> bool:
        return self.retries.dismiss(identity)

    async def wait_idle(self) -> None:
        """Wait for outstanding sends to finish."""
        await self.echo.wait_idle()


class EngineRegistry:
    """Engines keyed by ``(user_id, conversation key)``."""

    def __init__(
        self,
        transport: ChatTransport,
        settings: Optional[SyncSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.transport = transport
        self.settings = settings or SyncSettings()
        self.clock = clock
        self._engines: Dict[Tuple[str, ConversationKey], ConversationEngine] = {}
        logger.info("engine_registry_initialized")

    def get(self, user_id: str, key: ConversationKey) -> ConversationEngine:
        """Get or create the engine for a conversation without starting it."""
        engine = self._engines.get((user_id, key))
        if engine is None:
            engine = ConversationEngine(
                self.transport, user_id, key, settings=self.settings, clock=self.clock
            )
            self._engines[(user_id, key)] = engine
        return engine

    def find(self, user_id: str, key: ConversationKey) -> Optional[ConversationEngine]:
        return self._engines.get((user_id, key))

    async def acquire(self, user_id: str, key: ConversationKey) -> ConversationEngine:
        """Return a started engine; called when a view mounts."""
        engine = self.get(user_id, key)
        await engine.start()
        return engine

    async def release(self, user_id: str, key: ConversationKey) -> None:
        """Stop the engine's timers and subscription; its store is kept."""
        engine = self._engines.get((user_id, key))
        if engine is not None:
            await engine.stop()

    async def shutdown(self) -> None:
        """Stop every engine and wait for their sends to settle."""
        engines = list(self._engines.values())
        for engine in engines:
            await engine.stop()
        if engines:
            await asyncio.gather(*(engine.wait_idle() for engine in engines))
        self._engines.clear()
        logger.info("engine_registry_shut_down", engines=len(engines))
