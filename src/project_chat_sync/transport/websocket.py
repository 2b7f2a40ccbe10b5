"""WebSocket push subscription for project message events."""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import structlog
import websockets
from pydantic import ValidationError as PydanticValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..domain.errors import SubscriptionError
from ..domain.models import ServerMessage
from .base import ErrorCallback, EventCallback, InvalidateCallback, SubscriptionHandle

logger = structlog.get_logger()

MESSAGE_RESOURCES = ("message", "messages")
HEARTBEAT_INTERVAL = 30.0

MESSAGE = "message"
INVALIDATE = "invalidate"
IGNORE = "ignore"


@dataclass
class PushEvent:
    """Decoded push envelope."""

    kind: str
    message: Optional[ServerMessage] = None


def _project_of(envelope: Dict[str, Any], data: Dict[str, Any]) -> Optional[str]:
    return (
        envelope.get("projectId")
        or envelope.get("project_id")
        or data.get("projectId")
        or data.get("project_id")
    )


def decode_event(raw: Union[str, bytes], project_id: Optional[str] = None) -> PushEvent:
    """Decode one frame from the project channel.

    ``message_created`` frames that carry the full record become message
    events; bare ``message_created`` frames and ``cache_invalidate`` frames for
    the message resource only say that something changed and become
    invalidations. Everything else is ignored.
    """
    try:
        envelope = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("push_frame_unparseable", size=len(raw))
        return PushEvent(IGNORE)
    if not isinstance(envelope, dict):
        return PushEvent(IGNORE)

    kind = envelope.get("type")
    data = envelope.get("data") if isinstance(envelope.get("data"), dict) else {}

    if kind == "message_created":
        if "id" in data and ("content" in data or "message" in data):
            record = dict(data)
            record.setdefault("projectId", _project_of(envelope, data) or project_id)
            try:
                return PushEvent(MESSAGE, ServerMessage.model_validate(record))
            except PydanticValidationError as e:
                logger.warning("push_record_invalid", error=str(e))
        return PushEvent(INVALIDATE)

    if kind == "cache_invalidate":
        resource = data.get("resource") or envelope.get("resource")
        if resource in MESSAGE_RESOURCES:
            return PushEvent(INVALIDATE)

    return PushEvent(IGNORE)


class WebSocketSubscription(SubscriptionHandle):
    """Reads one project channel until closed; never reconnects."""

    def __init__(
        self,
        connection: Any,
        project_id: str,
        on_event: EventCallback,
        on_invalidate: Optional[InvalidateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ) -> None:
        self._connection = connection
        self.project_id = project_id
        self._on_event = on_event
        self._on_invalidate = on_invalidate
        self._on_error = on_error
        self._closing = False
        self._reader = asyncio.create_task(self._read())
        self._heartbeat = asyncio.create_task(self._beat(heartbeat_interval))

    @property
    def is_active(self) -> bool:
        return not self._closing and not self._reader.done()

    def _dispatch(self, event: PushEvent) -> None:
        if event.kind == MESSAGE:
            self._on_event(event.message)
        elif event.kind == INVALIDATE and self._on_invalidate is not None:
            self._on_invalidate()

    async def _read(self) -> None:
        error = None
        try:
            async for raw in self._connection:
                try:
                    self._dispatch(decode_event(raw, self.project_id))
                except Exception as e:
                    logger.error("push_dispatch_error", project_id=self.project_id, error=str(e))
            error = SubscriptionError("Push channel closed by server")
        except ConnectionClosed as e:
            error = SubscriptionError(f"Push channel dropped: {e}")
        finally:
            self._heartbeat.cancel()

        if not self._closing and self._on_error is not None:
            self._on_error(error)

    async def _beat(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self._connection.send(json.dumps({"type": "ping"}))
            except ConnectionClosed:
                return

    async def close(self) -> None:
        """Close the socket and wait for the reader to finish."""
        if self._closing:
            return
        self._closing = True
        self._heartbeat.cancel()
        try:
            await self._connection.close()
        except WebSocketException as e:
            raise SubscriptionError(f"Failed to close push channel: {e}")
        finally:
            await asyncio.gather(self._reader, self._heartbeat, return_exceptions=True)


async def open_subscription(
    ws_url: str,
    project_id: str,
    on_event: EventCallback,
    on_invalidate: Optional[InvalidateCallback] = None,
    on_error: Optional[ErrorCallback] = None,
    token: Optional[str] = None,
) -> WebSocketSubscription:
    """Connect, send the subscribe frame and start reading."""
    headers = {"Authorization": f"Bearer {token}"} if token else None
    try:
        connection = await websockets.connect(ws_url, additional_headers=headers)
    except (OSError, asyncio.TimeoutError, WebSocketException) as e:
        raise SubscriptionError(f"Could not connect push channel for project {project_id}: {e}")

    try:
        await connection.send(json.dumps({"action": "subscribe", "projectId": project_id}))
    except WebSocketException as e:
        await connection.close()
        raise SubscriptionError(f"Could not subscribe to project {project_id}: {e}")

    logger.info("push_channel_opened", project_id=project_id)
    return WebSocketSubscription(connection, project_id, on_event, on_invalidate, on_error)
