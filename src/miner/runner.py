"""Batch loop for one pipeline run.

Admission, paging, grouping, assembly, and run finalization in one place.
Per-group failures never stop the loop; they only show up in the counters.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, List, Optional, Sequence

from miner.assembly import AssemblyPipeline, AssemblyStatus
from miner.batching import BatchOffsetExtender, Clock
from miner.config import BatchConfig
from miner.coordinator import RunCoordinator
from miner.models import ChatMessage, GroupingResult, RunCounters, RunStatus, RunTrigger, SourceFamily
from miner.ports import MessageStore

LOGGER = logging.getLogger(__name__)

SHUTDOWN_MESSAGE = "interrupted by shutdown signal"


@dataclass(frozen=True)
class RunOptions:
    trigger: RunTrigger = RunTrigger.MANUAL
    source: SourceFamily = SourceFamily.WHATSAPP
    chat_id: Optional[str] = None
    page_size: Optional[int] = None
    lookback_hours: Optional[int] = None
    reason: Optional[str] = None


@dataclass
class RunReport:
    accepted: bool
    run_id: Optional[str] = None
    status: Optional[RunStatus] = None
    counters: RunCounters = field(default_factory=RunCounters)
    reason: Optional[str] = None
    outcomes: List[AssemblyStatus] = field(default_factory=list)


class BatchRunner:
    """Drives one run from admission to a finalized RunRecord.

    ``grouper`` is anything with a ``group(messages)`` method returning a
    GroupingResult, either directly or as an awaitable.
    """

    def __init__(
        self,
        coordinator: RunCoordinator,
        messages: MessageStore,
        grouper: Any,
        assembler: AssemblyPipeline,
        config: Optional[BatchConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._coordinator = coordinator
        self._messages = messages
        self._grouper = grouper
        self._assembler = assembler
        self._config = config or BatchConfig()
        self._clock = clock
        self._stop_requested = False

    def request_stop(self) -> None:
        """Finish the current group, then stop and fail the run."""

        if not self._stop_requested:
            LOGGER.warning("Shutdown requested; finishing the current group")
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    async def run(self, options: RunOptions) -> RunReport:
        admission = self._coordinator.admit(
            options.trigger,
            options.source,
            reason=options.reason or f"{options.trigger.value} run",
            source_id=options.chat_id,
        )
        if not admission.accepted or admission.run is None:
            return RunReport(accepted=False, reason=admission.reason)

        run_id = admission.run.id
        report = RunReport(accepted=True, run_id=run_id)
        page_size = options.page_size or self._config.page_size
        lookback = timedelta(hours=options.lookback_hours or self._config.lookback_hours)
        extender = BatchOffsetExtender(self._messages, self._config, self._clock, run_id=run_id)

        offset = 0
        try:
            while not self._stop_requested:
                batch = extender.fetch(
                    page_size,
                    chat_id=options.chat_id,
                    offset=offset,
                    lookback=lookback,
                    source=options.source,
                )
                if batch.messages:
                    await self._process_page(run_id, batch.messages, report)
                    self._coordinator.record_progress(run_id, report.counters)
                if batch.exhausted:
                    break
                offset = batch.next_offset
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Run %s aborted", run_id)
            self._coordinator.fail(run_id, str(exc), report.counters)
            report.status = RunStatus.FAILED
            report.reason = str(exc)
            return report

        if self._stop_requested:
            self._coordinator.fail(run_id, SHUTDOWN_MESSAGE, report.counters)
            report.status = RunStatus.FAILED
            report.reason = SHUTDOWN_MESSAGE
        else:
            self._coordinator.complete(run_id, report.counters)
            report.status = RunStatus.COMPLETED
        return report

    async def _process_page(self, run_id: str, messages: Sequence[ChatMessage], report: RunReport) -> None:
        counters = report.counters
        counters.messages_read += len(messages)

        result = await self._group(messages)
        counters.groups_formed += len(result.groups)
        if result.skipped_ids:
            # Skipped messages are consumed without a product.
            self._messages.claim_messages(result.skipped_ids, None, run_id)
        if result.ungrouped_tail_ids:
            LOGGER.info("Leaving %s tail messages for a later batch", len(result.ungrouped_tail_ids))

        for group in result.groups:
            if self._stop_requested:
                break
            outcome = await self._assembler.assemble(group, run_id)
            report.outcomes.append(outcome.status)
            if outcome.status == AssemblyStatus.ACTIVATED:
                counters.products_created += 1
            elif outcome.status == AssemblyStatus.DELETED or (
                outcome.status == AssemblyStatus.FAILED and outcome.product_id
            ):
                counters.products_deleted += 1

    async def _group(self, messages: Sequence[ChatMessage]) -> GroupingResult:
        result = self._grouper.group(messages)
        if inspect.isawaitable(result):
            result = await result
        return result
