# src/quorum/engine/sweeps.py
"""Periodic background tasks.

Each task is independent and idempotent, so any number of processes may
run them. Workers call ``run_due`` between polls; ``quorum sweep`` runs
every task once.

    reclaim    lapsed leases back to the queue, overdue cancellations
    rollover   budget windows that have ended
    deadlines  partial reduction of batches past their deadline
    reconcile  batch and pipeline progress made by other processes
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from quorum.contracts.errors import QuorumError
from quorum.core.clock import Clock, utc_now
from quorum.core.config import QuorumSettings
from quorum.engine.budget import BudgetLedger
from quorum.engine.leases import LeaseManager
from quorum.engine.pipeline import PipelineExecutor
from quorum.engine.sampling import SamplingEngine

logger = structlog.get_logger(__name__)


@dataclass
class PeriodicTask:
    """A named action that should run at most once per interval."""

    name: str
    interval_seconds: float
    action: Callable[[], int]
    last_run: datetime | None = None

    def due(self, now: datetime) -> bool:
        if self.last_run is None:
            return True
        return now - self.last_run >= timedelta(seconds=self.interval_seconds)


class Sweeper:
    """Runs the engine's periodic maintenance tasks.

    Every action returns how many records it touched; ``run_once`` and
    ``run_due`` report those counts by task name.
    """

    def __init__(
        self,
        settings: QuorumSettings,
        leases: LeaseManager,
        ledger: BudgetLedger,
        sampling: SamplingEngine,
        pipelines: PipelineExecutor,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings
        self._leases = leases
        self._ledger = ledger
        self._sampling = sampling
        self._pipelines = pipelines
        self._clock = clock
        intervals = settings.sweeps
        self.tasks: list[PeriodicTask] = [
            PeriodicTask("reclaim", intervals.reclaim_interval_seconds, self.reclaim),
            PeriodicTask("rollover", intervals.rollover_interval_seconds, self.rollover),
            PeriodicTask("deadlines", intervals.deadline_interval_seconds, self.deadlines),
            PeriodicTask("reconcile", intervals.reconcile_interval_seconds, self.reconcile),
        ]

    def reclaim(self) -> int:
        reclaimed = self._leases.reclaim_expired()
        forced = self._leases.enforce_cancel_timeouts(
            self._settings.invocation.cancel_grace_seconds
        )
        return len(reclaimed) + len(forced)

    def rollover(self) -> int:
        return len(self._ledger.rollover())

    def deadlines(self) -> int:
        return len(self._sampling.expire_deadlines())

    def reconcile(self) -> int:
        return self._sampling.reconcile() + self._pipelines.reconcile()

    def run_once(self) -> dict[str, int]:
        """Run every task now, regardless of its interval."""
        return self._run(list(self.tasks), self._clock())

    def run_due(self, now: datetime | None = None) -> dict[str, int]:
        """Run the tasks whose interval has elapsed."""
        now = now or self._clock()
        return self._run([task for task in self.tasks if task.due(now)], now)

    def run_forever(self, stop: threading.Event, tick_seconds: float = 1.0) -> None:
        """Call ``run_due`` every ``tick_seconds`` until ``stop`` is set."""
        logger.info("sweeper_started", tasks=[task.name for task in self.tasks])
        while not stop.is_set():
            self.run_due()
            stop.wait(tick_seconds)
        logger.info("sweeper_stopped")

    def _run(self, tasks: list[PeriodicTask], now: datetime) -> dict[str, int]:
        counts: dict[str, int] = {}
        for task in tasks:
            task.last_run = now
            try:
                counts[task.name] = task.action()
            except QuorumError as e:
                # next interval retries; other tasks still run
                logger.error("sweep_failed", task=task.name, error=str(e))
                continue
            if counts[task.name]:
                logger.debug("sweep_completed", task=task.name, count=counts[task.name])
        return counts
