"""Timestamp normalization for inbound chat records.

The backend has delivered ``sentAt`` in three shapes over time: native
``datetime`` objects, ISO-8601 strings and Firestore-style ``{"seconds": ...,
"nanoseconds": ...}`` structures. All of them are folded into a single
:class:`Instant` at the ingestion boundary. Values that cannot be read are kept
as an unknown instant so the message is still shown, with a sentinel label.
"""

from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import structlog
from pydantic import BaseModel, ConfigDict

from .errors import MalformedTimestamp

logger = structlog.get_logger()

UNKNOWN_FORMAT = "unknown_format"
INVALID = "invalid"

SENTINEL_LABELS = {
    UNKNOWN_FORMAT: "Unknown time",
    INVALID: "Invalid time",
}


class Instant(BaseModel):
    """A normalized point in time, or a record of why there is none."""

    model_config = ConfigDict(frozen=True)

    value: Optional[datetime] = None
    raw: Optional[str] = None
    problem: Optional[str] = None

    @classmethod
    def at(cls, value: datetime) -> "Instant":
        """Build a known instant, assuming UTC for naive datetimes."""
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return cls(value=value.astimezone(timezone.utc))

    @classmethod
    def unknown(cls, raw: Any, problem: str) -> "Instant":
        """Build an unknown instant keeping the raw value for diagnostics."""
        return cls(raw=repr(raw), problem=problem)

    @property
    def is_known(self) -> bool:
        return self.value is not None

    @property
    def sort_value(self) -> float:
        # Unknown instants sort before everything else.
        if self.value is None:
            return float("-inf")
        return self.value.timestamp()

    def seconds_from(self, other: "Instant") -> Optional[float]:
        """Absolute distance in seconds, or None when either side is unknown."""
        if self.value is None or other.value is None:
            return None
        return abs((self.value - other.value).total_seconds())


def utc_now() -> datetime:
    """Default clock used for optimistic messages."""
    return datetime.now(timezone.utc)


def _from_epoch(seconds: Any, nanos: Any, raw: Any) -> datetime:
    if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
        raise MalformedTimestamp(raw, INVALID)
    if nanos is None:
        nanos = 0
    if isinstance(nanos, bool) or not isinstance(nanos, (int, float)):
        raise MalformedTimestamp(raw, INVALID)
    try:
        return datetime.fromtimestamp(seconds + nanos / 1e9, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise MalformedTimestamp(raw, INVALID)


def parse_instant(value: Any) -> Instant:
    """Normalize ``value`` or raise :class:`MalformedTimestamp`."""
    if isinstance(value, Instant):
        return value
    if isinstance(value, datetime):
        return Instant.at(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            return Instant.at(datetime.fromisoformat(text))
        except ValueError:
            raise MalformedTimestamp(value, INVALID)
    if isinstance(value, Mapping):
        if "seconds" in value:
            return Instant.at(_from_epoch(value["seconds"], value.get("nanoseconds"), value))
        if "_seconds" in value:
            return Instant.at(_from_epoch(value["_seconds"], value.get("_nanoseconds"), value))
    raise MalformedTimestamp(value, UNKNOWN_FORMAT)


def normalize_instant(value: Any) -> Instant:
    """Normalize ``value``, degrading to an unknown instant on failure."""
    try:
        return parse_instant(value)
    except MalformedTimestamp as e:
        logger.warning("malformed_timestamp", raw=repr(e.raw), problem=e.problem)
        return Instant.unknown(e.raw, e.problem)


def format_message_time(instant: Instant, now: Optional[datetime] = None) -> str:
    """Human readable label: relative for the last day, a date after that."""
    if instant.value is None:
        return SENTINEL_LABELS.get(instant.problem, SENTINEL_LABELS[UNKNOWN_FORMAT])

    now = now or utc_now()
    diff = int((now - instant.value).total_seconds())

    if diff < 60:
        return "Just now"
    if diff < 3600:
        return f"{diff // 60}m ago"
    if diff < 86400:
        return f"{diff // 3600}h ago"
    return instant.value.date().isoformat()
