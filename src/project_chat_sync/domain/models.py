"""Domain models for the chat synchronization engine."""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .timestamps import UNKNOWN_FORMAT, Instant, normalize_instant


class LocalId(BaseModel):
    """Temporary identity of a message that only exists on this client."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["local"] = "local"
    temp_id: str = Field(default_factory=lambda: uuid4().hex)

    def __str__(self) -> str:
        return f"local:{self.temp_id}"


class RemoteId(BaseModel):
    """Identity assigned by the server once a message is persisted."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["remote"] = "remote"
    server_id: str

    def __str__(self) -> str:
        return f"remote:{self.server_id}"


Identity = Annotated[Union[LocalId, RemoteId], Field(discriminator="kind")]


class DeliveryState(str, Enum):
    """Delivery state of a message in the timeline."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ConnectionState(str, Enum):
    """How the engine is currently receiving updates."""

    LIVE = "live"
    POLLING = "polling"


class ConversationKey(BaseModel):
    """One thread: the counterpart user within a project."""

    model_config = ConfigDict(frozen=True)

    counterpart_id: str
    project_id: str

    def involves(self, message: "ServerMessage", user_id: str) -> bool:
        """Check whether a server record belongs to this thread for ``user_id``."""
        if message.project_id is not None and message.project_id != self.project_id:
            return False
        return {message.sender_id, message.recipient_id} == {user_id, self.counterpart_id}


class Message(BaseModel):
    """Message as held by the conversation store."""

    model_config = ConfigDict(frozen=True)

    identity: Identity
    sender_id: str
    recipient_id: Optional[str] = None
    content: str
    sent_at: Instant
    delivery_state: DeliveryState = DeliveryState.PENDING

    @property
    def is_local(self) -> bool:
        return isinstance(self.identity, LocalId)

    @property
    def dedup_content(self) -> str:
        """Content used when matching a local echo to its server record."""
        return self.content.strip()


class ServerMessage(BaseModel):
    """Message record as delivered by the backend.

    Field aliases cover the camelCase wire names as well as the older
    ``fromUserId``/``toUserId``/``message``/``createdAt`` payloads.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(validation_alias=AliasChoices("id", "messageId", "ID"))
    sender_id: str = Field(
        validation_alias=AliasChoices("senderId", "sender_id", "fromUserId", "userId")
    )
    recipient_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("recipientId", "recipient_id", "toUserId")
    )
    project_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("projectId", "project_id")
    )
    content: str = Field(validation_alias=AliasChoices("content", "message"))
    sent_at: Instant = Field(
        default_factory=lambda: Instant.unknown(None, UNKNOWN_FORMAT),
        validation_alias=AliasChoices("sentAt", "sent_at", "createdAt"),
    )

    @field_validator("id", "sender_id", "recipient_id", "project_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("sent_at", mode="before")
    @classmethod
    def _normalize_sent_at(cls, value: Any) -> Instant:
        return normalize_instant(value)

    def to_message(self) -> Message:
        """Convert to a confirmed store entry."""
        return Message(
            identity=RemoteId(server_id=self.id),
            sender_id=self.sender_id,
            recipient_id=self.recipient_id,
            content=self.content,
            sent_at=self.sent_at,
            delivery_state=DeliveryState.CONFIRMED,
        )
