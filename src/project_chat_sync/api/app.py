"""
FastAPI Application Module

Local HTTP surface for the project chat view. The view mounts a conversation
by reading it, sends and retries through it, and tears it down when it goes
away; everything behind these endpoints is the synchronization engine.

Key Features:
- One engine per conversation, shared across view remounts
- Optimistic sends with inline retry and dismiss
- Connection state derived from push availability
- Structured logging, Prometheus metrics and OpenTelemetry tracing
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import generate_latest
from pydantic import BaseModel
from structlog import get_logger

from ..config import SyncSettings, configure_logging
from ..domain.errors import ValidationError
from ..domain.models import ConversationKey, LocalId, Message
from ..domain.timestamps import format_message_time, utc_now
from ..metrics import CUSTOM_REGISTRY, ERRORS, REQUESTS
from ..sync.engine import ConversationEngine, EngineRegistry
from ..transport.http import HttpTransport

logger = get_logger()


class MessageCreate(BaseModel):
    """Defines the structure for message creation requests"""
    content: str


class MessageView(BaseModel):
    """One rendered timeline entry"""
    kind: str
    id: str
    sender_id: str
    content: str
    sent_at: Optional[datetime] = None
    time_label: str
    delivery_state: str


class ConversationView(BaseModel):
    """Timeline plus the sync status the view shows"""
    project_id: str
    counterpart_id: str
    connection_state: str
    sync_failed: bool
    messages: List[MessageView]


settings = SyncSettings.from_env()
_registry: Optional[EngineRegistry] = None


def get_settings() -> SyncSettings:
    """Returns the process settings"""
    return settings


def get_engine_registry() -> EngineRegistry:
    """Returns the engine registry, building the HTTP transport on first use"""
    global _registry
    if _registry is None:
        transport = HttpTransport(
            settings.api_base_url,
            settings.user_id,
            ws_url=settings.ws_url,
            token=settings.api_token,
            page_size=settings.history_page_size,
        )
        _registry = EngineRegistry(transport, settings)
    return _registry


def get_user_id(current: SyncSettings = Depends(get_settings)) -> str:
    """Returns the signed-in user the engines act for"""
    if not current.user_id:
        raise HTTPException(status_code=503, detail="No signed-in user configured")
    return current.user_id


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles app startup/shutdown and resource management"""
    configure_logging(settings.log_level)
    logger.info("application_startup_complete")

    yield

    if _registry is not None:
        await _registry.shutdown()
        if isinstance(_registry.transport, HttpTransport):
            await _registry.transport.aclose()
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="Project Chat Sync",
    description="Real-time message synchronization for project chat",
    version="0.1.0",
    lifespan=lifespan,
)

# Enable cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Set up request tracing
FastAPIInstrumentor.instrument_app(app)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Tracks requests and failures"""
    REQUESTS.inc()
    logger.info("request_started", path=request.url.path)
    try:
        return await call_next(request)
    except Exception as e:
        ERRORS.inc()
        logger.error("request_failed", path=request.url.path, error=str(e))
        raise


def _to_view(message: Message, now: datetime) -> MessageView:
    identity = message.identity
    return MessageView(
        kind=identity.kind,
        id=identity.temp_id if isinstance(identity, LocalId) else identity.server_id,
        sender_id=message.sender_id,
        content=message.content,
        sent_at=message.sent_at.value,
        time_label=format_message_time(message.sent_at, now),
        delivery_state=message.delivery_state.value,
    )


async def _mounted_engine(
    project_id: str, counterpart_id: str, user_id: str, registry: EngineRegistry
) -> ConversationEngine:
    key = ConversationKey(counterpart_id=counterpart_id, project_id=project_id)
    return await registry.acquire(user_id, key)


@app.get(
    "/conversations/{project_id}/{counterpart_id}/messages",
    response_model=ConversationView,
)
async def get_messages(
    project_id: str,
    counterpart_id: str,
    user_id: str = Depends(get_user_id),
    registry: EngineRegistry = Depends(get_engine_registry),
) -> ConversationView:
    """Mounts the conversation if needed and returns its timeline"""
    engine = await _mounted_engine(project_id, counterpart_id, user_id, registry)
    now = utc_now()
    return ConversationView(
        project_id=project_id,
        counterpart_id=counterpart_id,
        connection_state=engine.connection_state.value,
        sync_failed=engine.sync_failed,
        messages=[_to_view(m, now) for m in engine.messages],
    )


@app.post(
    "/conversations/{project_id}/{counterpart_id}/messages",
    response_model=MessageView,
    status_code=201,
)
async def send_message(
    project_id: str,
    counterpart_id: str,
    message: MessageCreate,
    user_id: str = Depends(get_user_id),
    registry: EngineRegistry = Depends(get_engine_registry),
) -> MessageView:
    """Appends an optimistic message and starts delivering it"""
    engine = await _mounted_engine(project_id, counterpart_id, user_id, registry)
    try:
        pending = await engine.send(message.content)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if pending is None:
        raise HTTPException(status_code=409, detail="A message is already being sent")
    return _to_view(pending, utc_now())


@app.post(
    "/conversations/{project_id}/{counterpart_id}/messages/{temp_id}/retry",
    response_model=MessageView,
)
async def retry_message(
    project_id: str,
    counterpart_id: str,
    temp_id: str,
    user_id: str = Depends(get_user_id),
    registry: EngineRegistry = Depends(get_engine_registry),
) -> MessageView:
    """Resends a failed message as a new pending entry"""
    engine = await _mounted_engine(project_id, counterpart_id, user_id, registry)
    identity = LocalId(temp_id=temp_id)
    if engine.retries.failed_entry(identity) is None:
        raise HTTPException(status_code=404, detail="Failed message not found")
    if engine.echo.in_flight:
        raise HTTPException(status_code=409, detail="A message is already being sent")

    pending = await engine.retry(identity)
    if pending is None:
        raise HTTPException(status_code=409, detail="Retry could not be started")
    return _to_view(pending, utc_now())


@app.delete(
    "/conversations/{project_id}/{counterpart_id}/messages/{temp_id}",
    status_code=204,
)
async def dismiss_message(
    project_id: str,
    counterpart_id: str,
    temp_id: str,
    user_id: str = Depends(get_user_id),
    registry: EngineRegistry = Depends(get_engine_registry),
) -> Response:
    """Drops a failed message without resending it"""
    engine = await _mounted_engine(project_id, counterpart_id, user_id, registry)
    if not engine.dismiss(LocalId(temp_id=temp_id)):
        raise HTTPException(status_code=404, detail="Failed message not found")
    return Response(status_code=204)


@app.delete("/conversations/{project_id}/{counterpart_id}", status_code=204)
async def close_conversation(
    project_id: str,
    counterpart_id: str,
    user_id: str = Depends(get_user_id),
    registry: EngineRegistry = Depends(get_engine_registry),
) -> Response:
    """Tears the view down: stops polling and push, keeps the store"""
    key = ConversationKey(counterpart_id=counterpart_id, project_id=project_id)
    await registry.release(user_id, key)
    logger.info("conversation_closed", project_id=project_id, counterpart_id=counterpart_id)
    return Response(status_code=204)


@app.get("/metrics")
async def metrics():
    """Provides Prometheus metrics for system monitoring"""
    return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")
