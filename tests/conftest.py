"""Shared fixtures: an in-memory chat backend and a controllable clock."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import pytest

from project_chat_sync.config import SyncSettings
from project_chat_sync.domain.errors import SubscriptionError, TransportError
from project_chat_sync.domain.models import ConversationKey, ServerMessage
from project_chat_sync.transport.base import ChatTransport, SubscriptionHandle

BASE_TIME = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = BASE_TIME) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeSubscription(SubscriptionHandle):
    """Subscription handle driven by the test."""

    def __init__(self, project_id, on_event, on_invalidate, on_error) -> None:
        self.project_id = project_id
        self.on_event = on_event
        self.on_invalidate = on_invalidate
        self.on_error = on_error
        self.active = True

    @property
    def is_active(self) -> bool:
        return self.active

    async def close(self) -> None:
        self.active = False

    def drop(self) -> None:
        self.active = False
        if self.on_error is not None:
            self.on_error(SubscriptionError("connection reset"))


class FakeTransport(ChatTransport):
    """In-memory backend holding every persisted message of every project."""

    def __init__(self, user_id: str, clock: FakeClock) -> None:
        self.user_id = user_id
        self.clock = clock
        self.history: List[ServerMessage] = []
        self.subscriptions: List[FakeSubscription] = []
        self.sent: List[str] = []
        self.fetch_calls = 0
        self.offline = False
        self.return_record = True
        self.server_skew = timedelta(seconds=2)
        self.send_gate: Optional[asyncio.Event] = None
        self.fetch_error: Optional[Exception] = None
        self.fetch_gate: Optional[asyncio.Event] = None
        self.subscribe_error: Optional[Exception] = None
        self._next_id = 1

    def persist(self, sender_id: str, recipient_id: str, project_id: str, content: str) -> ServerMessage:
        record = ServerMessage(
            id=f"srv-{self._next_id}",
            sender_id=sender_id,
            recipient_id=recipient_id,
            project_id=project_id,
            content=content,
            sent_at=self.clock() + self.server_skew,
        )
        self._next_id += 1
        self.history.append(record)
        return record

    async def send(self, key: ConversationKey, content: str) -> Optional[ServerMessage]:
        self.sent.append(content)
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.offline:
            raise TransportError("Network unreachable")
        record = self.persist(self.user_id, key.counterpart_id, key.project_id, content)
        return record if self.return_record else None

    async def fetch_history(self, key: ConversationKey) -> List[ServerMessage]:
        self.fetch_calls += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        records = [m for m in self.history if key.involves(m, self.user_id)]
        if self.fetch_gate is not None:
            # The snapshot is taken before the gate, like a slow response.
            await self.fetch_gate.wait()
        return sorted(records, key=lambda m: m.sent_at.sort_value)

    async def subscribe(self, project_id, on_event, on_invalidate=None, on_error=None) -> FakeSubscription:
        if self.subscribe_error is not None:
            raise self.subscribe_error
        subscription = FakeSubscription(project_id, on_event, on_invalidate, on_error)
        self.subscriptions.append(subscription)
        return subscription

    def push(self, record: ServerMessage) -> None:
        """Deliver a record to every open subscription of its project."""
        for subscription in self.subscriptions:
            if subscription.active and subscription.project_id == record.project_id:
                subscription.on_event(record)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def key() -> ConversationKey:
    return ConversationKey(counterpart_id="bob", project_id="proj-x")


@pytest.fixture
def transport(clock) -> FakeTransport:
    return FakeTransport("alice", clock)


@pytest.fixture
def settings() -> SyncSettings:
    return SyncSettings(
        user_id="alice",
        poll_interval_seconds=60.0,
        send_timeout_seconds=1.0,
        banner_failure_threshold=2,
    )
