"""Reconciliation of push, poll and send results into one timeline."""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import structlog

from ..domain.models import DeliveryState, Identity, LocalId, Message, RemoteId
from ..metrics import MERGED_MESSAGES
from ..store.conversation_store import ConversationStore

logger = structlog.get_logger()


@dataclass
class MergeResult:
    """Outcome counters of one reconciliation pass."""

    inserted: int = 0
    updated: int = 0
    promoted: int = 0
    unchanged: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.promoted + self.unchanged


class Reconciler:
    """The only writer of a :class:`ConversationStore`.

    Senders, pollers, the push listener and user actions all go through it.

    An inbound server record is matched against the store in three steps:

    1. an entry with the same server id is replaced in place;
    2. otherwise a local entry from the same sender with the same trimmed
       content and a ``sent_at`` within ``tolerance_seconds`` is promoted to
       the server identity, keeping its position;
    3. otherwise the record is inserted as new.

    Server timestamps drift from the client's submission time, so step 2 uses
    a window rather than equality.
    """

    def __init__(self, store: ConversationStore, tolerance_seconds: float = 5.0) -> None:
        self.store = store
        self.tolerance_seconds = tolerance_seconds

    def _match_local(self, incoming: Message, candidates: List[Message]) -> Optional[Message]:
        best = None
        best_rank = None
        for local in candidates:
            if local.sender_id != incoming.sender_id:
                continue
            if local.dedup_content != incoming.dedup_content:
                continue
            distance = local.sent_at.seconds_from(incoming.sent_at)
            if distance is None or distance > self.tolerance_seconds:
                continue
            # Pending echoes win over failed ones, then the closest in time.
            rank = (local.delivery_state != DeliveryState.PENDING, distance)
            if best_rank is None or rank < best_rank:
                best, best_rank = local, rank
        return best

    @staticmethod
    def _promoted(local: Message, incoming: Message) -> Message:
        return local.model_copy(
            update={
                "identity": incoming.identity,
                "content": incoming.content,
                "recipient_id": incoming.recipient_id or local.recipient_id,
                "delivery_state": DeliveryState.CONFIRMED,
            }
        )

    def merge(self, incoming: Iterable[Message], source: str = "push") -> MergeResult:
        """Merge a batch of server records into the store; idempotent."""
        result = MergeResult()
        candidates = self.store.locals()

        for message in incoming:
            existing = self.store.get(message.identity)
            if existing is not None:
                if existing == message:
                    result.unchanged += 1
                else:
                    self.store.update_by_id(message.identity, **dict(message))
                    result.updated += 1
                continue

            if isinstance(message.identity, RemoteId):
                local = self._match_local(message, candidates)
                if local is not None:
                    candidates.remove(local)
                    self.store.update_by_id(local.identity, **dict(self._promoted(local, message)))
                    result.promoted += 1
                    logger.info(
                        "local_message_promoted",
                        temp_id=local.identity.temp_id,
                        server_id=message.identity.server_id,
                        source=source,
                    )
                    continue

            self.store.append(message)
            result.inserted += 1

        MERGED_MESSAGES.labels(source=source).inc(result.inserted + result.promoted)
        logger.debug("merge_completed", source=source, **vars(result))
        return result

    def replace_with(
        self, snapshot: Iterable[Message], source: str = "poll", since: Optional[int] = None
    ) -> MergeResult:
        """Reconcile a full history snapshot and overwrite the store with it.

        ``since`` is the store revision read before the snapshot was fetched.
        """
        result = MergeResult()
        candidates = self.store.locals()
        replacement: Dict[Identity, Message] = {}
        promoted: Dict[Identity, Identity] = {}

        for message in snapshot:
            if message.identity in replacement:
                continue

            existing = self.store.get(message.identity)
            if existing is not None:
                if existing == message:
                    result.unchanged += 1
                else:
                    result.updated += 1
                replacement[message.identity] = message
                continue

            local = self._match_local(message, candidates) if isinstance(message.identity, RemoteId) else None
            if local is not None:
                candidates.remove(local)
                replacement[message.identity] = self._promoted(local, message)
                promoted[message.identity] = local.identity
                result.promoted += 1
                logger.info(
                    "local_message_promoted",
                    temp_id=local.identity.temp_id,
                    server_id=message.identity.server_id,
                    source=source,
                )
            else:
                replacement[message.identity] = message
                result.inserted += 1

        self.store.replace(replacement.values(), promoted=promoted, since=since)
        MERGED_MESSAGES.labels(source=source).inc(result.inserted + result.promoted)
        logger.debug("snapshot_reconciled", source=source, **vars(result))
        return result

    def add_local(self, message: Message) -> None:
        """Insert an optimistic entry."""
        self.store.append(message)

    def mark_failed(self, local_id: LocalId) -> Optional[Message]:
        """Flag a local entry as failed; None if it was already matched."""
        return self.store.update_by_id(local_id, delivery_state=DeliveryState.FAILED)

    def remove(self, identity: Identity) -> Optional[Message]:
        """Drop one entry from the timeline."""
        return self.store.remove_by_id(identity)

    def confirm(self, local_id: LocalId, server_message: Message) -> Optional[Message]:
        """Promote a local entry using the record returned by its send call."""
        local = self.store.get(local_id)
        if local is None or self.store.get(server_message.identity) is not None:
            # Already matched by a poll, or push delivered the record first.
            if local is not None:
                self.remove(local_id)
            self.merge([server_message], source="send")
            return self.store.get(server_message.identity)

        promoted = self._promoted(local, server_message)
        self.store.update_by_id(local_id, **dict(promoted))
        MERGED_MESSAGES.labels(source="send").inc()
        logger.info(
            "local_message_promoted",
            temp_id=local_id.temp_id,
            server_id=server_message.identity.server_id,
            source="send",
        )
        return promoted
