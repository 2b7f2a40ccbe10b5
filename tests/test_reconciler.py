"""Test suite for reconciliation of inbound batches."""

import random
from datetime import timedelta

import pytest

from conftest import BASE_TIME
from project_chat_sync.domain.models import (
    DeliveryState,
    LocalId,
    Message,
    RemoteId,
    ServerMessage,
)
from project_chat_sync.domain.timestamps import Instant
from project_chat_sync.store.conversation_store import ConversationStore
from project_chat_sync.sync.reconciler import Reconciler


def record(server_id: str, offset: float, content: str = "hi", sender: str = "alice") -> Message:
    return ServerMessage(
        id=server_id,
        sender_id=sender,
        recipient_id="bob" if sender == "alice" else "alice",
        project_id="proj-x",
        content=content,
        sent_at=BASE_TIME + timedelta(seconds=offset),
    ).to_message()


def pending(offset: float, content: str = "hi", state: DeliveryState = DeliveryState.PENDING) -> Message:
    return Message(
        identity=LocalId(),
        sender_id="alice",
        recipient_id="bob",
        content=content,
        sent_at=Instant.at(BASE_TIME + timedelta(seconds=offset)),
        delivery_state=state,
    )


@pytest.fixture
def store(key) -> ConversationStore:
    return ConversationStore(key)


@pytest.fixture
def reconciler(store) -> Reconciler:
    return Reconciler(store, tolerance_seconds=5.0)


def assert_sorted(store: ConversationStore) -> None:
    values = [m.sent_at.sort_value for m in store.messages]
    assert values == sorted(values)


def test_merging_same_record_twice_is_idempotent(store, reconciler):
    """One server id, one entry."""
    reconciler.merge([record("m1", 0)])
    result = reconciler.merge([record("m1", 0)])
    assert len(store) == 1
    assert result.unchanged == 1


def test_duplicate_within_one_batch_is_collapsed(store, reconciler):
    """A batch repeating a record still yields one entry."""
    reconciler.merge([record("m1", 0), record("m1", 0)])
    assert len(store) == 1


def test_exact_match_replaces_in_place(store, reconciler):
    """A newer copy of a known record overwrites it."""
    reconciler.merge([record("m1", 0, content="draft")])
    result = reconciler.merge([record("m1", 0, content="final")])
    assert result.updated == 1
    assert store.find_remote("m1").content == "final"


def test_pending_echo_is_promoted_within_tolerance(store, reconciler):
    """Pending {A, "hi", T} merged with {A, "hi", T+2s} is replaced, not duplicated."""
    echo = pending(0)
    reconciler.add_local(echo)
    reconciler.add_local(pending(1, content="other"))

    result = reconciler.merge([record("m1", 2)])

    assert result.promoted == 1
    assert len(store) == 2
    promoted = store.messages[0]
    assert promoted.identity == RemoteId(server_id="m1")
    assert promoted.delivery_state == DeliveryState.CONFIRMED
    assert promoted.sent_at == echo.sent_at
    assert store.get(echo.identity) is None


def test_trimmed_content_matches(store, reconciler):
    """Surrounding whitespace does not prevent a match."""
    reconciler.add_local(pending(0, content="  hi "))
    reconciler.merge([record("m1", 1, content="hi")])
    assert [m.identity for m in store.messages] == [RemoteId(server_id="m1")]


@pytest.mark.parametrize(
    "incoming",
    [
        record("m1", 10),
        record("m1", 1, content="Hi"),
        record("m1", 1, sender="bob"),
    ],
    ids=["outside-window", "case-differs", "other-sender"],
)
def test_non_matching_records_are_inserted(store, reconciler, incoming):
    """Time, case-sensitive content and sender all have to agree."""
    reconciler.add_local(pending(0))
    result = reconciler.merge([incoming])
    assert result.inserted == 1
    assert len(store) == 2
    assert store.locals()[0].delivery_state == DeliveryState.PENDING


def test_each_echo_is_claimed_once(store, reconciler):
    """Two identical records promote two identical echoes, not one twice."""
    reconciler.add_local(pending(0))
    reconciler.add_local(pending(1))
    result = reconciler.merge([record("m1", 1), record("m2", 2)])
    assert result.promoted == 2
    assert store.locals() == []
    assert len(store) == 2


def test_pending_is_preferred_over_failed(store, reconciler):
    """A failed echo only matches when no pending one does."""
    failed = pending(0, state=DeliveryState.FAILED)
    live = pending(0.5)
    reconciler.add_local(failed)
    reconciler.add_local(live)

    reconciler.merge([record("m1", 1)])

    assert store.get(live.identity) is None
    assert store.get(failed.identity).delivery_state == DeliveryState.FAILED


def test_replace_with_promotes_and_keeps_unmatched_echoes(store, reconciler):
    """Snapshots confirm what they contain and leave the rest pending."""
    confirmed = pending(0)
    waiting = pending(30, content="later")
    reconciler.add_local(confirmed)
    reconciler.add_local(waiting)

    result = reconciler.replace_with([record("r0", -5, sender="bob", content="hey"), record("m1", 3)])

    assert result.promoted == 1
    assert result.inserted == 1
    assert [str(m.identity) for m in store.messages] == [
        "remote:r0",
        "remote:m1",
        str(waiting.identity),
    ]


def test_confirm_promotes_local_entry(store, reconciler):
    """A synchronous send response promotes its own echo."""
    echo = pending(0)
    reconciler.add_local(echo)
    confirmed = reconciler.confirm(echo.identity, record("m1", 30))
    assert confirmed.identity == RemoteId(server_id="m1")
    assert len(store) == 1


def test_confirm_after_push_delivered_record_first(store, reconciler):
    """When push already inserted the record, the echo folds into it."""
    echo = pending(0)
    reconciler.add_local(echo)
    reconciler.merge([record("m1", 30)])
    assert len(store) == 2

    reconciler.confirm(echo.identity, record("m1", 30))

    assert len(store) == 1
    assert store.find_remote("m1").delivery_state == DeliveryState.CONFIRMED


def test_confirm_after_poll_already_promoted(store, reconciler):
    """A late send response for an already-promoted echo changes nothing."""
    echo = pending(0)
    reconciler.add_local(echo)
    reconciler.replace_with([record("m1", 2)])
    reconciler.confirm(echo.identity, record("m1", 2))
    assert len(store) == 1


def test_order_holds_after_any_sequence_of_merges(store, reconciler):
    """Random interleavings of echoes, pushes and snapshots stay sorted."""
    rng = random.Random(7)
    server = []
    for step in range(60):
        offset = rng.uniform(0, 120)
        action = rng.choice(["echo", "push", "snapshot", "repeat"])
        if action == "echo":
            reconciler.add_local(pending(offset, content=f"msg {step % 5}"))
        elif action == "push":
            server.append(record(f"m{step}", offset, content=f"msg {step % 5}"))
            reconciler.merge([server[-1]])
        elif action == "snapshot":
            reconciler.replace_with(sorted(server, key=lambda m: m.sent_at.sort_value))
        elif server:
            reconciler.merge([rng.choice(server)])
        assert_sorted(store)

    server_ids = [m.identity for m in store.messages if isinstance(m.identity, RemoteId)]
    assert len(server_ids) == len(set(server_ids))


def test_mark_failed_and_remove_write_through_the_reconciler(store, reconciler):
    """User-facing state changes go through the same writer."""
    echo = pending(0)
    reconciler.add_local(echo)

    failed = reconciler.mark_failed(echo.identity)
    assert failed.delivery_state == DeliveryState.FAILED
    assert store.get(echo.identity) == failed

    assert reconciler.remove(echo.identity) == failed
    assert store.messages == ()
    assert reconciler.mark_failed(echo.identity) is None
