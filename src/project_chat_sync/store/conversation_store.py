"""In-memory conversation store."""

import bisect
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import structlog

from ..domain.models import ConversationKey, Identity, Message, RemoteId

logger = structlog.get_logger()

Listener = Callable[[Tuple[Message, ...]], None]


class ConversationStore:
    """Ordered message timeline for one conversation.

    Entries are kept sorted by ``sent_at`` with ties broken by the order in
    which the store first saw each identity. Every mutation builds a new tuple
    and swaps it in with a single assignment, so readers holding ``messages``
    never see a half-applied change.
    """

    def __init__(self, key: ConversationKey) -> None:
        """Initialize an empty store for ``key``."""
        self.key = key
        self._messages: Tuple[Message, ...] = ()
        self._index: Dict[Identity, Message] = {}
        self._arrival: Dict[Identity, int] = {}
        self._next_arrival = 0
        self._revision = 0
        self._written: Dict[Identity, int] = {}
        self._listeners: List[Listener] = []

    @property
    def messages(self) -> Tuple[Message, ...]:
        """Current ordered timeline."""
        return self._messages

    @property
    def revision(self) -> int:
        """Counter bumped by every mutation."""
        return self._revision

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)

    def get(self, identity: Identity) -> Optional[Message]:
        """Look up an entry by identity."""
        return self._index.get(identity)

    def find_remote(self, server_id: str) -> Optional[Message]:
        """Look up a confirmed entry by server id."""
        return self._index.get(RemoteId(server_id=server_id))

    def locals(self) -> List[Message]:
        """Entries that have not been matched to a server record yet."""
        return [m for m in self._messages if m.is_local]

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a change callback; returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _stamp(self, identity: Identity) -> None:
        if identity not in self._arrival:
            self._arrival[identity] = self._next_arrival
            self._next_arrival += 1

    def _sort_key(self, message: Message) -> Tuple[float, int]:
        return (message.sent_at.sort_value, self._arrival[message.identity])

    def _commit(self, messages: List[Message], ordered: bool = False) -> None:
        if not ordered:
            messages = sorted(messages, key=self._sort_key)
        index = {m.identity: m for m in messages}
        self._revision += 1
        for identity, message in index.items():
            if self._index.get(identity) is not message:
                self._written[identity] = self._revision
        self._arrival = {i: seq for i, seq in self._arrival.items() if i in index}
        self._written = {i: rev for i, rev in self._written.items() if i in index}
        self._index = index
        self._messages = tuple(messages)

        for listener in list(self._listeners):
            try:
                listener(self._messages)
            except Exception as e:
                logger.error(
                    "store_listener_error",
                    project_id=self.key.project_id,
                    counterpart_id=self.key.counterpart_id,
                    error=str(e),
                )

    def replace(
        self,
        messages: Iterable[Message],
        promoted: Optional[Dict[Identity, Identity]] = None,
        since: Optional[int] = None,
    ) -> None:
        """Overwrite the timeline, keeping local entries the snapshot lacks.

        ``promoted`` maps new identities in ``messages`` to the local
        identities they supersede; those inherit the local entry's position.
        ``since`` is the revision at which the snapshot was requested: entries
        written after it are newer than the snapshot and are kept as well.
        """
        promoted = promoted or {}
        for new_identity, old_identity in promoted.items():
            if old_identity in self._arrival:
                self._arrival[new_identity] = self._arrival[old_identity]
        superseded = set(promoted.values())

        incoming: Dict[Identity, Message] = {}
        for message in messages:
            self._stamp(message.identity)
            incoming[message.identity] = message

        kept = [
            m for m in self._messages
            if m.identity not in incoming
            and m.identity not in superseded
            and (m.is_local or self._written_after(m.identity, since))
        ]
        self._commit(list(incoming.values()) + kept)
        logger.debug(
            "store_replaced",
            project_id=self.key.project_id,
            count=len(self._messages),
            kept_local=len(kept),
        )

    def _written_after(self, identity: Identity, since: Optional[int]) -> bool:
        return since is not None and self._written.get(identity, 0) > since

    def append(self, message: Message) -> None:
        """Insert ``message`` at its sorted position."""
        if message.identity in self._index:
            self.update_by_id(message.identity, **dict(message))
            return

        self._stamp(message.identity)
        messages = list(self._messages)
        bisect.insort(messages, message, key=self._sort_key)
        self._commit(messages, ordered=True)

    def update_by_id(self, identity: Identity, /, **patch: Any) -> Optional[Message]:
        """Apply ``patch`` to one entry; changing ``identity`` keeps its position."""
        current = self._index.get(identity)
        if current is None:
            return None

        updated = current.model_copy(update=patch)
        if updated.identity != identity:
            if updated.identity in self._index:
                raise ValueError(f"Identity {updated.identity} already present in store")
            self._arrival[updated.identity] = self._arrival[identity]

        self._commit([updated if m.identity == identity else m for m in self._messages])
        return updated

    def remove_by_id(self, identity: Identity) -> Optional[Message]:
        """Remove one entry, returning it if it was present."""
        current = self._index.get(identity)
        if current is None:
            return None
        self._commit([m for m in self._messages if m.identity != identity], ordered=True)
        return current
