from __future__ import annotations

from datetime import timedelta

from adapters.sqlite_storage import SQLiteStorage
from factories import BASE_TIME, at, image, text
from miner.batching import BatchOffsetExtender
from miner.config import BatchConfig


def _storage(tmp_path, messages) -> SQLiteStorage:
    storage = SQLiteStorage(str(tmp_path / "catalog.db"))
    storage.init_db()
    for message in messages:
        storage.insert_message(message)
    return storage


def _clock():
    return BASE_TIME + timedelta(hours=1)


def _backlog():
    return [
        image("a0", 0, sender="alice"),
        image("a1", 10, sender="alice"),
        text("a2", 20, sender="alice"),
        text("a3", 30, sender="alice"),
        image("b0", 40, sender="bob"),
        image("b1", 50, sender="bob"),
        image("a4", 60, sender="alice"),
        text("b2", 70, sender="bob"),
    ]


def _walk(extender: BatchOffsetExtender, page_size: int, on_batch=None):
    batches = []
    offset = 0
    while True:
        batch = extender.fetch(page_size, offset=offset)
        batches.append(batch)
        if on_batch:
            on_batch(batch)
        if batch.exhausted:
            return batches
        offset = batch.next_offset


def test_page_is_extended_with_same_sender_burst(tmp_path) -> None:
    storage = _storage(tmp_path, _backlog())
    extender = BatchOffsetExtender(storage, clock=_clock)

    batch = extender.fetch(2, offset=0)

    assert batch.message_ids == ("a0", "a1", "a2", "a3", "a4")
    assert batch.page_count == 2
    assert batch.extended_count == 3
    assert batch.next_offset == 2
    assert not batch.exhausted


def test_walk_hands_out_every_message_exactly_once(tmp_path) -> None:
    storage = _storage(tmp_path, _backlog())
    extender = BatchOffsetExtender(storage, clock=_clock)

    batches = _walk(extender, page_size=2)
    handed_out = [message_id for batch in batches for message_id in batch.message_ids]

    assert len(handed_out) == len(set(handed_out))
    assert set(handed_out) == {message.id for message in _backlog()}
    assert [batch.next_offset for batch in batches] == [2, 4, 6, 8, 8]
    assert batches[-1].exhausted


def test_consumption_during_the_walk_does_not_shift_offsets(tmp_path) -> None:
    storage = _storage(tmp_path, _backlog())
    extender = BatchOffsetExtender(storage, clock=_clock, run_id="run-1")

    def consume(batch) -> None:
        storage.claim_messages(batch.message_ids, "g", "run-1")

    batches = _walk(extender, page_size=2, on_batch=consume)
    handed_out = [message_id for batch in batches for message_id in batch.message_ids]

    assert len(handed_out) == len(set(handed_out))
    assert set(handed_out) == {message.id for message in _backlog()}


def test_extension_stops_at_large_gap(tmp_path) -> None:
    messages = [
        image("a0", 0),
        image("a1", 10),
        text("a2", 200),
        text("a3", 600),
    ]
    storage = _storage(tmp_path, messages)
    extender = BatchOffsetExtender(storage, BatchConfig(extension_gap_seconds=300), clock=_clock)

    batch = extender.fetch(2, offset=0)

    assert batch.message_ids == ("a0", "a1", "a2")
    assert batch.next_offset == 2


def test_messages_before_lookback_and_processed_ones_are_excluded(tmp_path) -> None:
    messages = [image("old", -3 * 3600), image("done", 5), image("new", 10)]
    storage = _storage(tmp_path, messages)
    storage.claim_messages(["done"], None, "previous-run")
    extender = BatchOffsetExtender(storage, clock=_clock)

    batch = extender.fetch(10, offset=0, lookback=timedelta(hours=2))

    assert batch.message_ids == ("new",)
    assert batch.exhausted
    assert extender.cutoff == _clock() - timedelta(hours=2)


def test_cutoff_is_fixed_for_the_whole_walk(tmp_path) -> None:
    now = [BASE_TIME + timedelta(minutes=30)]
    messages = [image("m0", 0, sender="ann"), image("m1", 10, sender="ben"), image("m2", 20, sender="cat")]
    storage = _storage(tmp_path, messages)
    extender = BatchOffsetExtender(storage, clock=lambda: now[0])

    first = extender.fetch(1, offset=0, lookback=timedelta(hours=1))
    now[0] = at(20) + timedelta(hours=1)  # later pages would lose m1 with a moving cutoff
    second = extender.fetch(1, offset=first.next_offset, lookback=timedelta(hours=1))

    assert first.message_ids == ("m0",)
    assert second.message_ids == ("m1",)


def test_filters_by_chat(tmp_path) -> None:
    storage = _storage(tmp_path, [image("x", 0, chat="chat-1"), image("y", 1, chat="chat-2")])
    extender = BatchOffsetExtender(storage, clock=_clock)

    batch = extender.fetch(10, chat_id="chat-2", offset=0)

    assert batch.message_ids == ("y",)
