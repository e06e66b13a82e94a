# src/quorum/engine/leases.py
"""Lease manager: exclusive, time-bounded ownership of queued runs.

Acquisition is a non-blocking poll. Exactly one worker wins a given run
because the claim is a compare-and-set on the run's version; losers move
on to the next candidate. A crashed worker costs at most one lease
interval: the reclaim sweep returns its runs to the queue.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta

import structlog

from quorum.contracts.enums import RunStatus
from quorum.contracts.records import Run
from quorum.core.clock import Clock, utc_now
from quorum.core.config import LeaseSettings
from quorum.core.store import RecordStore
from quorum.engine.state_machine import RunStateMachine

logger = structlog.get_logger(__name__)


class LeaseManager:
    """Grants, renews and reclaims run leases."""

    def __init__(
        self,
        store: RecordStore,
        state_machine: RunStateMachine,
        settings: LeaseSettings,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._sm = state_machine
        self._settings = settings
        self._clock = clock

    @property
    def duration(self) -> timedelta:
        return timedelta(seconds=self._settings.duration_seconds)

    def eligible(self, queue_name: str) -> Iterator[Run]:
        """Queued runs that may be leased now, in lease order.

        Order: priority descending, then creation time ascending.
        """
        now = self._clock()
        return self._store.query(
            Run,
            lambda r: r.available_at is None or r.available_at <= now,
            order_by=["-priority", "created_at"],
            queue_name=queue_name,
            status=RunStatus.QUEUED,
        )

    def peek(self, queue_name: str) -> Run | None:
        """The run ``acquire`` would try first, without claiming it."""
        return next(self.eligible(queue_name), None)

    def acquire(self, queue_name: str, worker_id: str) -> Run | None:
        """Lease the highest-priority eligible queued run.

        Returns:
            The leased run, or None if nothing is available
        """
        for candidate in self.eligible(queue_name):
            expiry = self._clock() + self.duration
            run = self._sm.lease(candidate.id, worker_id, expiry)
            if run is not None:
                logger.info(
                    "run_leased",
                    run_id=run.id,
                    queue=queue_name,
                    worker=worker_id,
                    lease_expiry=expiry.isoformat(),
                )
                return run
            logger.debug("lease_race_lost", run_id=candidate.id, worker=worker_id)
        return None

    def renew(self, run_id: str, worker_id: str) -> Run:
        """Extend a held lease by one lease duration.

        Raises:
            LeaseMismatch: If ``worker_id`` does not hold the lease
        """
        return self._sm.extend_lease(run_id, worker_id, self._clock() + self.duration)

    def expired(self, now: datetime | None = None) -> Iterator[Run]:
        """Leased or running runs whose lease has lapsed."""
        now = now or self._clock()
        return self._store.query(
            Run,
            lambda r: r.lease_expiry is not None and r.lease_expiry < now,
            status=[RunStatus.LEASED, RunStatus.RUNNING],
        )

    def reclaim_expired(self) -> list[Run]:
        """Return runs with lapsed leases to the queue (or dead/cancelled).

        Returns:
            The runs that were reclaimed
        """
        reclaimed = []
        for run in self.expired():
            result = self._sm.reclaim(run.id)
            if result is not None:
                reclaimed.append(result)
        if reclaimed:
            logger.info("leases_reclaimed", count=len(reclaimed))
        return reclaimed

    def enforce_cancel_timeouts(self, grace_seconds: float) -> list[Run]:
        """Force-cancel running runs whose cancel request went unanswered."""
        cancelled = []
        for run in self._store.query(
            Run,
            status=[RunStatus.LEASED, RunStatus.RUNNING],
            cancel_requested=True,
        ):
            result = self._sm.force_cancel(run.id, grace_seconds)
            if result is not None:
                cancelled.append(result)
        return cancelled
