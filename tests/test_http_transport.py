"""Test suite for the HTTP transport."""

import json

import httpx
import pytest

from project_chat_sync.domain.errors import SubscriptionError, TransportError
from project_chat_sync.domain.models import ConversationKey
from project_chat_sync.transport.http import HttpTransport

KEY = ConversationKey(counterpart_id="bob", project_id="proj-x")


def make_transport(handler, page_size: int = 100, ws_url=None) -> HttpTransport:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://chat.test/api/v1"
    )
    return HttpTransport(
        "http://chat.test/api/v1", "alice", ws_url=ws_url, page_size=page_size, client=client
    )


def wire(server_id: str, sender: str, recipient: str, minute: int, content: str = "hi") -> dict:
    return {
        "id": server_id,
        "senderId": sender,
        "recipientId": recipient,
        "projectId": "proj-x",
        "content": content,
        "messageType": "text",
        "createdAt": f"2026-03-02T09:{minute:02d}:00Z",
    }


@pytest.mark.asyncio
async def test_send_posts_to_project_messages_and_returns_record():
    """The persisted record in the response is returned."""
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json=wire("m1", "alice", "bob", 30))

    transport = make_transport(handler)
    record = await transport.send(KEY, "hi")

    assert seen["path"] == "/api/v1/projects/proj-x/messages"
    assert seen["body"] == {"content": "hi", "messageType": "text", "recipientId": "bob"}
    assert record.id == "m1"
    assert record.sent_at.is_known
    await transport.aclose()


@pytest.mark.asyncio
async def test_send_without_record_in_response_returns_none():
    """An acknowledgement without a record is not an error."""
    transport = make_transport(lambda request: httpx.Response(202, json={"status": "queued"}))
    assert await transport.send(KEY, "hi") is None
    await transport.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,body,expected",
    [
        (500, {"message": "db down"}, "Server error"),
        (401, {}, "Authentication error"),
        (403, {}, "Authentication error"),
        (400, {"message": "content too long"}, "Failed to send message: content too long"),
    ],
)
async def test_send_errors_are_translated(status, body, expected):
    """HTTP failures surface as transport errors with a readable reason."""
    transport = make_transport(lambda request: httpx.Response(status, json=body))
    with pytest.raises(TransportError) as exc_info:
        await transport.send(KEY, "hi")
    assert str(exc_info.value).startswith(expected)
    assert exc_info.value.status_code == status
    await transport.aclose()


@pytest.mark.asyncio
async def test_network_errors_become_transport_errors():
    """Connection failures are wrapped, not leaked."""

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    transport = make_transport(handler)
    with pytest.raises(TransportError):
        await transport.send(KEY, "hi")
    with pytest.raises(TransportError):
        await transport.fetch_history(KEY)
    await transport.aclose()


@pytest.mark.asyncio
async def test_fetch_history_pages_filters_and_sorts():
    """Every page is read and only this conversation is kept, oldest first."""
    records = [
        wire("m3", "bob", "alice", 40),
        wire("x1", "carol", "alice", 10),
        wire("m1", "alice", "bob", 5),
        wire("m2", "bob", "alice", 20),
        wire("x2", "bob", "carol", 25),
    ]
    offsets = []

    def handler(request: httpx.Request) -> httpx.Response:
        limit = int(request.url.params["limit"])
        offset = int(request.url.params["offset"])
        offsets.append(offset)
        return httpx.Response(200, json={"messages": records[offset:offset + limit]})

    transport = make_transport(handler, page_size=2)
    history = await transport.fetch_history(KEY)

    assert offsets == [0, 2, 4]
    assert [m.id for m in history] == ["m1", "m2", "m3"]
    await transport.aclose()


@pytest.mark.asyncio
async def test_fetch_history_accepts_bare_list_and_fills_project():
    """Older endpoints return a plain list without project ids."""
    legacy = {"id": 7, "fromUserId": "bob", "toUserId": "alice", "message": "yo", "createdAt": "bad"}
    transport = make_transport(lambda request: httpx.Response(200, json=[legacy]))

    (record,) = await transport.fetch_history(KEY)

    assert record.id == "7"
    assert record.project_id == "proj-x"
    assert not record.sent_at.is_known
    await transport.aclose()


@pytest.mark.asyncio
async def test_fetch_history_not_found_is_empty():
    """A project without messages answers 404."""
    transport = make_transport(lambda request: httpx.Response(404, json={"message": "not found"}))
    assert await transport.fetch_history(KEY) == []
    await transport.aclose()


@pytest.mark.asyncio
async def test_fetch_history_server_error_raises():
    """Other failures are reported to the poller."""
    transport = make_transport(lambda request: httpx.Response(503, text="unavailable"))
    with pytest.raises(TransportError) as exc_info:
        await transport.fetch_history(KEY)
    assert exc_info.value.status_code == 503
    await transport.aclose()


@pytest.mark.asyncio
async def test_subscribe_without_push_url_raises_subscription_error():
    """No push endpoint means polling only."""
    transport = make_transport(lambda request: httpx.Response(200, json=[]))
    with pytest.raises(SubscriptionError):
        await transport.subscribe("proj-x", lambda message: None)
    await transport.aclose()
