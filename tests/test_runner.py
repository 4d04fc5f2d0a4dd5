from __future__ import annotations

import asyncio
import itertools
from datetime import timedelta
from typing import List

from adapters.sqlite_storage import SQLiteStorage
from factories import BASE_TIME, image, text
from miner.assembly import AssemblyOutcome, AssemblyPipeline, AssemblyStatus
from miner.coordinator import RunCoordinator
from miner.dedup import compute_fingerprint
from miner.grouping import RuleBasedGrouper
from miner.models import MessageGroup, Product, RunStatus, RunTrigger, SourceFamily
from miner.runner import SHUTDOWN_MESSAGE, BatchRunner, RunOptions


def _clock():
    return BASE_TIME + timedelta(hours=1)


class FakeAssembler:
    def __init__(self, statuses: List[AssemblyOutcome] | None = None, on_call=None) -> None:
        self._statuses = list(statuses or [])
        self._on_call = on_call
        self.groups: List[MessageGroup] = []

    async def assemble(self, group: MessageGroup, run_id=None) -> AssemblyOutcome:
        self.groups.append(group)
        if self._on_call:
            self._on_call()
        if self._statuses:
            return self._statuses.pop(0)
        return AssemblyOutcome(AssemblyStatus.ACTIVATED, product_id=f"p-{group.group_id}")


class BrokenGrouper:
    def group(self, messages):
        raise RuntimeError("grouper exploded")


def _setup(tmp_path, messages, assembler, grouper=None):
    storage = SQLiteStorage(str(tmp_path / "catalog.db"))
    storage.init_db()
    for message in messages:
        storage.insert_message(message)
    ids = itertools.count(1)
    coordinator = RunCoordinator(storage, clock=_clock, id_factory=lambda: f"run-{next(ids)}")
    runner = BatchRunner(coordinator, storage, grouper or RuleBasedGrouper(), assembler, clock=_clock)
    return storage, coordinator, runner


def test_run_groups_assembles_and_completes(tmp_path) -> None:
    messages = [
        image("i1", 0, sender="alice"),
        text("orphan", 5, sender="bob"),
        text("t1", 10, sender="alice"),
        image("tail", 30, sender="carol"),
    ]
    assembler = FakeAssembler()
    storage, coordinator, runner = _setup(tmp_path, messages, assembler)

    report = asyncio.run(runner.run(RunOptions(reason="test")))

    assert report.accepted
    assert report.status == RunStatus.COMPLETED
    assert report.counters.messages_read == 4
    assert report.counters.groups_formed == 1
    assert report.counters.products_created == 1
    assert [group.message_ids for group in assembler.groups] == [("i1", "t1")]

    [orphan] = storage.get_messages(["orphan"])
    assert orphan.processed and orphan.assigned_group_id is None
    [tail] = storage.get_messages(["tail"])
    assert not tail.processed

    run = coordinator.get_run(report.run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.counters == report.counters
    assert run.reason == "test"


def test_deleted_and_failed_outcomes_are_counted(tmp_path) -> None:
    messages = [
        image("a1", 0, sender="ann"),
        text("a2", 5, sender="ann"),
        image("b1", 0, sender="ben"),
        text("b2", 5, sender="ben"),
        image("c1", 0, sender="cy"),
        text("c2", 5, sender="cy"),
    ]
    assembler = FakeAssembler(
        [
            AssemblyOutcome(AssemblyStatus.DELETED, product_id="p1", reason="missing price"),
            AssemblyOutcome(AssemblyStatus.FAILED, product_id="p2", reason="bug"),
            AssemblyOutcome(AssemblyStatus.FAILED, reason="precheck failed"),
        ]
    )
    _, _, runner = _setup(tmp_path, messages, assembler)

    report = asyncio.run(runner.run(RunOptions()))

    assert report.status == RunStatus.COMPLETED
    assert report.counters.groups_formed == 3
    assert report.counters.products_created == 0
    assert report.counters.products_deleted == 2


def test_stop_request_finishes_current_group_and_fails_run(tmp_path) -> None:
    messages = [
        image("a1", 0, sender="ann"),
        text("a2", 5, sender="ann"),
        image("b1", 0, sender="ben"),
        text("b2", 5, sender="ben"),
    ]
    holder = {}
    assembler = FakeAssembler(on_call=lambda: holder["runner"].request_stop())
    storage, coordinator, runner = _setup(tmp_path, messages, assembler)
    holder["runner"] = runner

    report = asyncio.run(runner.run(RunOptions()))

    assert runner.stop_requested
    assert len(assembler.groups) == 1
    assert report.status == RunStatus.FAILED
    assert report.reason == SHUTDOWN_MESSAGE
    assert report.counters.products_created == 1

    run = coordinator.get_run(report.run_id)
    assert run.status == RunStatus.FAILED
    assert run.error_message == SHUTDOWN_MESSAGE
    assert run.counters.products_created == 1


def test_cron_run_is_rejected_while_manual_run_is_active(tmp_path) -> None:
    _, coordinator, runner = _setup(tmp_path, [], FakeAssembler())
    assert coordinator.admit(RunTrigger.MANUAL, SourceFamily.WHATSAPP).accepted

    report = asyncio.run(runner.run(RunOptions(trigger=RunTrigger.CRON)))

    assert not report.accepted
    assert report.run_id is None
    assert "wait for completion" in report.reason


def test_unexpected_error_fails_the_run(tmp_path) -> None:
    _, coordinator, runner = _setup(tmp_path, [image("i1", 0), text("t1", 5)], FakeAssembler(), BrokenGrouper())

    report = asyncio.run(runner.run(RunOptions()))

    assert report.status == RunStatus.FAILED
    assert "grouper exploded" in report.reason
    run = coordinator.get_run(report.run_id)
    assert run.status == RunStatus.FAILED
    assert run.counters.messages_read == 2
    assert not coordinator.status().is_running


def test_group_of_existing_active_product_is_consumed_once(tmp_path) -> None:
    storage = SQLiteStorage(str(tmp_path / "catalog.db"))
    storage.init_db()
    for message in (image("i1", 0), text("t1", 10)):
        storage.insert_message(message)
    storage.create_draft(
        Product(
            id="existing",
            source_message_ids=("i1", "t1"),
            fingerprint=compute_fingerprint(["i1", "t1"]),
            sender_id="alice",
            created_at=BASE_TIME,
        )
    )
    assert storage.activate_product("existing")
    # Enrichment and media are never reached for a duplicate group.
    assembler = AssemblyPipeline(storage, storage, None, None, None)
    ids = itertools.count(1)
    coordinator = RunCoordinator(storage, clock=_clock, id_factory=lambda: f"run-{next(ids)}")
    runner = BatchRunner(coordinator, storage, RuleBasedGrouper(), assembler, clock=_clock)

    first = asyncio.run(runner.run(RunOptions()))
    second = asyncio.run(runner.run(RunOptions()))

    assert first.outcomes == [AssemblyStatus.DUPLICATE]
    assert storage.find_processed(["i1", "t1"]) == {"i1", "t1"}
    assert second.status == RunStatus.COMPLETED
    assert second.counters.messages_read == 0
    assert second.outcomes == []
    assert [product.id for product in storage.list_products()] == ["existing"]
