"""Run coordination (core domain).

Every pipeline pass owns a RunRecord. Only one manual or backfill run may be
active at a time and it excludes cron runs; cron runs exclude each other per
source family only. Stale RUNNING records are reclaimed before admission.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Sequence

from miner.batching import Clock, utc_now
from miner.config import CoordinatorConfig
from miner.models import RunCounters, RunRecord, RunStatus, RunTrigger, SourceFamily
from miner.ports import RunStore

LOGGER = logging.getLogger(__name__)

EXCLUSIVE_TRIGGERS = frozenset({RunTrigger.MANUAL, RunTrigger.BACKFILL})


def find_conflict(candidate: RunRecord, running: Sequence[RunRecord]) -> Optional[str]:
    """Return why ``candidate`` may not start next to ``running``, or None."""

    for other in running:
        if other.id == candidate.id or other.status != RunStatus.RUNNING:
            continue
        if other.triggered_by in EXCLUSIVE_TRIGGERS:
            return f"{other.triggered_by.value} run {other.id} is in progress, wait for completion"
        if candidate.triggered_by in EXCLUSIVE_TRIGGERS:
            return f"cron run {other.id} for {other.source_family.value} is active"
        if other.source_family == candidate.source_family:
            return f"cron run {other.id} for {other.source_family.value} is already running"
    return None


@dataclass(frozen=True)
class Admission:
    accepted: bool
    run: Optional[RunRecord] = None
    reason: Optional[str] = None
    running: List[RunRecord] = field(default_factory=list)


@dataclass(frozen=True)
class RunStatusReport:
    """Snapshot of runs currently holding the lock."""

    running: List[RunRecord]
    durations: Dict[str, float]

    @property
    def is_running(self) -> bool:
        return bool(self.running)


class RunCoordinator:
    """Admits, tracks, and finalizes pipeline runs through the run store."""

    def __init__(
        self,
        store: RunStore,
        config: Optional[CoordinatorConfig] = None,
        clock: Optional[Clock] = None,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self._store = store
        self._config = config or CoordinatorConfig()
        self._clock = clock or utc_now
        self._id_factory = id_factory

    def reclaim_stale(self) -> List[RunRecord]:
        now = self._clock()
        cutoff = now - timedelta(seconds=self._config.stuck_timeout_seconds)
        reclaimed = self._store.fail_stale_runs(cutoff, now)
        for run in reclaimed:
            LOGGER.warning(
                "Reclaimed stuck %s run %s started at %s",
                run.triggered_by.value,
                run.id,
                run.started_at.isoformat(),
            )
        return reclaimed

    def admit(
        self,
        trigger: RunTrigger,
        source_family: SourceFamily,
        reason: Optional[str] = None,
        source_id: Optional[str] = None,
    ) -> Admission:
        """Reclaim stale runs, then atomically check for conflicts and start a run."""

        self.reclaim_stale()
        candidate = RunRecord(
            id=self._id_factory(),
            status=RunStatus.RUNNING,
            started_at=self._clock(),
            triggered_by=trigger,
            source_family=source_family,
            reason=reason,
            source_id=source_id,
        )
        conflict, running = self._store.start_run(candidate, lambda rows: find_conflict(candidate, rows))
        if conflict:
            LOGGER.info("Run rejected (%s, %s): %s", trigger.value, source_family.value, conflict)
            return Admission(accepted=False, reason=conflict, running=running)

        LOGGER.info("Run %s started (%s, %s)", candidate.id, trigger.value, source_family.value)
        return Admission(accepted=True, run=candidate, running=running)

    def record_progress(self, run_id: str, counters: RunCounters) -> None:
        self._store.update_run_counters(run_id, counters)

    def complete(self, run_id: str, counters: RunCounters) -> None:
        self._store.finish_run(run_id, RunStatus.COMPLETED, self._clock(), counters)
        LOGGER.info(
            "Run %s completed: %s messages, %s groups, %s created, %s deleted",
            run_id,
            counters.messages_read,
            counters.groups_formed,
            counters.products_created,
            counters.products_deleted,
        )

    def fail(self, run_id: str, error: str, counters: Optional[RunCounters] = None) -> None:
        counters = counters or RunCounters()
        self._store.finish_run(run_id, RunStatus.FAILED, self._clock(), counters, error_message=error)
        LOGGER.error("Run %s failed: %s", run_id, error)

    def status(self) -> RunStatusReport:
        now = self._clock()
        running = self._store.list_running_runs()
        durations = {run.id: (now - run.started_at).total_seconds() for run in running}
        return RunStatusReport(running=running, durations=durations)

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        return self._store.get_run(run_id)

