"""HTTP transport for the project messages API."""

from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import ValidationError as PydanticValidationError

from ..domain.errors import SubscriptionError, TransportError
from ..domain.models import ConversationKey, ServerMessage
from .base import ChatTransport, ErrorCallback, EventCallback, InvalidateCallback
from .websocket import WebSocketSubscription, open_subscription

logger = structlog.get_logger()


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)


def _send_error(response: httpx.Response) -> TransportError:
    status = response.status_code
    if status >= 500:
        message = "Server error - The messaging service is currently unavailable."
    elif status in (401, 403):
        message = "Authentication error - Please try logging out and back in."
    else:
        message = f"Failed to send message: {_error_detail(response)}"
    return TransportError(message, status_code=status)


class HttpTransport(ChatTransport):
    """REST transport with a WebSocket push channel.

    Messages are posted to ``/projects/{projectId}/messages`` and the history
    is read back from the same collection page by page. The collection holds
    every thread of the project, so history is filtered to the conversation
    on the client.
    """

    def __init__(
        self,
        base_url: str,
        user_id: str,
        ws_url: Optional[str] = None,
        token: Optional[str] = None,
        page_size: int = 100,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ) -> None:
        self.user_id = user_id
        self.ws_url = ws_url
        self.token = token
        self.page_size = page_size
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _parse_record(data: Any) -> Optional[ServerMessage]:
        if isinstance(data, dict) and isinstance(data.get("message"), dict):
            data = data["message"]
        if not isinstance(data, dict) or "id" not in data:
            return None
        try:
            return ServerMessage.model_validate(data)
        except PydanticValidationError as e:
            logger.warning("server_record_invalid", error=str(e))
            return None

    async def send(self, key: ConversationKey, content: str) -> Optional[ServerMessage]:
        """Post a message; returns the stored record when the API echoes it."""
        payload = {
            "content": content,
            "messageType": "text",
            "recipientId": key.counterpart_id,
        }
        try:
            response = await self._client.post(f"/projects/{key.project_id}/messages", json=payload)
        except httpx.HTTPError as e:
            logger.error("send_request_error", project_id=key.project_id, error=str(e))
            raise TransportError(f"Failed to send message: {e}")

        if response.is_error:
            error = _send_error(response)
            logger.error(
                "send_request_rejected",
                project_id=key.project_id,
                status=response.status_code,
                error=str(error),
            )
            raise error

        try:
            body = response.json()
        except ValueError:
            return None
        return self._parse_record(body)

    async def _fetch_page(self, project_id: str, offset: int) -> List[Dict[str, Any]]:
        try:
            response = await self._client.get(
                f"/projects/{project_id}/messages",
                params={"limit": self.page_size, "offset": offset},
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to fetch messages: {e}")

        if response.status_code == 404:
            return []
        if response.is_error:
            raise TransportError(
                f"Failed to fetch messages: {_error_detail(response)}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError:
            raise TransportError("Failed to fetch messages: response is not JSON", status_code=response.status_code)
        records = body.get("messages") if isinstance(body, dict) else body
        return records if isinstance(records, list) else []

    async def fetch_history(self, key: ConversationKey) -> List[ServerMessage]:
        """Read every page of the project history and keep this conversation."""
        history: List[ServerMessage] = []
        offset = 0
        while True:
            page = await self._fetch_page(key.project_id, offset)
            for raw in page:
                record = self._parse_record(raw)
                if record is None:
                    continue
                if record.project_id is None:
                    record = record.model_copy(update={"project_id": key.project_id})
                if key.involves(record, self.user_id):
                    history.append(record)
            if len(page) < self.page_size:
                break
            offset += len(page)

        history.sort(key=lambda m: m.sent_at.sort_value)
        logger.debug("history_fetched", project_id=key.project_id, count=len(history))
        return history

    async def subscribe(
        self,
        project_id: str,
        on_event: EventCallback,
        on_invalidate: Optional[InvalidateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> WebSocketSubscription:
        """Open the project push channel."""
        if not self.ws_url:
            raise SubscriptionError(f"No push channel configured for project {project_id}")
        return await open_subscription(
            self.ws_url,
            project_id,
            on_event,
            on_invalidate=on_invalidate,
            on_error=on_error,
            token=self.token,
        )
