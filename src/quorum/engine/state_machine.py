# src/quorum/engine/state_machine.py
"""Run state machine: the only code that changes a run's status.

    queued -> leased -> running -> succeeded
                           |-> queued      (retryable failure, attempts left)
                           |-> dead        (attempts exhausted / non-retryable)
    leased -> failed                       (budget denied)
    any non-terminal -> cancelled

Each transition is a compare-and-set update on the run record. Budget
reservations dropped by a transition are released here, and every move
into a terminal state emits ``run_finished``.
"""

from __future__ import annotations

import random
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from quorum.contracts.enums import FailureKind, RunStatus
from quorum.contracts.errors import BudgetExceeded, InvalidTransition, LeaseMismatch
from quorum.contracts.provider import ProviderFailure, ProviderResponse
from quorum.contracts.records import Run
from quorum.core.canonical import request_hash
from quorum.core.clock import Clock, generate_id, utc_now
from quorum.core.config import RetrySettings
from quorum.core.store import RecordStore

if TYPE_CHECKING:
    from quorum.engine.budget import BudgetLedger
    from quorum.engine.events import EventBus

logger = structlog.get_logger(__name__)

_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.QUEUED: frozenset({RunStatus.LEASED, RunStatus.CANCELLED}),
    RunStatus.LEASED: frozenset(
        {
            RunStatus.RUNNING,
            RunStatus.QUEUED,
            RunStatus.FAILED,
            RunStatus.CANCELLED,
            RunStatus.DEAD,
        }
    ),
    RunStatus.RUNNING: frozenset(
        {
            RunStatus.SUCCEEDED,
            RunStatus.QUEUED,
            RunStatus.FAILED,
            RunStatus.CANCELLED,
            RunStatus.DEAD,
        }
    ),
}


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


@dataclass
class _Outcome:
    """What a transition dropped, captured from the winning CAS attempt."""

    reserved_usd: float = 0.0
    changed: bool = False


class RunStateMachine:
    """Creates runs and drives every status change.

    Args:
        store: Record store
        retry: Backoff policy for retryable failures
        ledger: Budget ledger used to release dropped reservations
        events: Event bus notified when a run becomes terminal
        clock: Source of timestamps
        rng: Random source for backoff jitter
    """

    def __init__(
        self,
        store: RecordStore,
        retry: RetrySettings,
        *,
        ledger: BudgetLedger | None = None,
        events: EventBus | None = None,
        clock: Clock = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._retry = retry
        self._ledger = ledger
        self._events = events
        self._clock = clock
        self._rng = rng or random.Random()

    # === Creation ===

    def create(
        self,
        *,
        op: str,
        queue_name: str,
        request: dict[str, Any],
        profile_name: str | None = None,
        priority: int = 0,
        max_attempts: int | None = None,
        batch_id: str | None = None,
        pipeline_id: str | None = None,
        step_id: str | None = None,
        question_id: str | None = None,
        budget_scopes: Iterable[str] = (),
        use_cache: bool = False,
        run_id: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> Run:
        """Create a run, short-circuiting to a cached success when allowed.

        A cached run is born ``succeeded`` with the earlier response, zero
        cost and ``cached_from`` set. No provider call, no budget.
        """
        now = self._clock()
        digest = request_hash(op, request)
        run = Run(
            id=run_id or generate_id(),
            op=op,
            queue_name=queue_name,
            request=request,
            request_hash=digest,
            created_at=now,
            profile_name=profile_name,
            priority=priority,
            max_attempts=max_attempts or self._retry.max_attempts,
            batch_id=batch_id,
            pipeline_id=pipeline_id,
            step_id=step_id,
            question_id=question_id,
            budget_scopes=list(dict.fromkeys(budget_scopes)),
            extra=dict(extra or {}),
        )

        cached = self.find_cached(op, digest) if use_cache else None
        if cached is not None:
            run.status = RunStatus.SUCCEEDED
            run.response = dict(cached.response or {})
            run.tokens_in = cached.tokens_in
            run.tokens_out = cached.tokens_out
            run.latency_ms = 0.0
            run.cached_from = cached.id
            run.started_at = now
            run.finished_at = now

        self._store.put(run)
        logger.info(
            "run_created",
            run_id=run.id,
            op=op,
            queue=queue_name,
            status=run.status.value,
            cached_from=run.cached_from,
        )
        if run.is_terminal:
            self._finished(run)
        return run

    def find_cached(self, op: str, digest: str) -> Run | None:
        """An earlier succeeded, uncached run with the same request hash."""
        for run in self._store.query(
            Run,
            lambda r: r.op == op and r.cached_from is None,
            order_by=["created_at"],
            request_hash=digest,
            status=RunStatus.SUCCEEDED,
        ):
            return run
        return None

    # === Backoff ===

    def backoff(self, attempt: int) -> float:
        """Delay before retrying after ``attempt`` failed.

        min(base * exponential_base ** attempt, cap), scaled by a jitter
        factor drawn from [1 - jitter, 1 + jitter].
        """
        delay = min(
            self._retry.base_delay_seconds * self._retry.exponential_base**attempt,
            self._retry.max_delay_seconds,
        )
        if self._retry.jitter:
            delay *= 1.0 + self._rng.uniform(-self._retry.jitter, self._retry.jitter)
        return max(0.0, delay)

    # === Lease-holding transitions ===

    def lease(self, run_id: str, worker_id: str, lease_expiry: datetime) -> Run | None:
        """queued -> leased. Returns None if another worker got there first."""
        now = self._clock()
        won = False

        def mutate(run: Run) -> bool | None:
            nonlocal won
            won = False
            if run.status is not RunStatus.QUEUED:
                return False
            if run.available_at is not None and run.available_at > now:
                return False
            self._move(run, RunStatus.LEASED, now)
            run.lease_owner = worker_id
            run.lease_expiry = lease_expiry
            run.available_at = None
            won = True
            return None

        run = self._store.update(Run, run_id, mutate)
        return run if won else None

    def extend_lease(self, run_id: str, worker_id: str, lease_expiry: datetime) -> Run:
        """Push out the lease expiry of a leased/running run.

        Raises:
            LeaseMismatch: If ``worker_id`` does not hold the lease
        """

        def mutate(run: Run) -> None:
            self._check_owner(run, worker_id)
            run.lease_expiry = lease_expiry

        return self._store.update(Run, run_id, mutate)

    def record_reservation(self, run_id: str, worker_id: str, reserved_usd: float) -> Run:
        """Remember the budget reserved for a leased run."""

        def mutate(run: Run) -> None:
            self._check_owner(run, worker_id)
            run.reserved_usd = reserved_usd

        return self._store.update(Run, run_id, mutate)

    def release_lease(self, run_id: str, worker_id: str) -> Run:
        """leased -> queued, handing an admitted run back untouched.

        The attempt counter and error are kept; nothing was tried.

        Raises:
            LeaseMismatch: If ``worker_id`` no longer holds the lease
            InvalidTransition: If the run already started
        """
        now = self._clock()

        def mutate(run: Run) -> None:
            self._check_owner(run, worker_id)
            if run.status is not RunStatus.LEASED:
                raise InvalidTransition(run.id, run.status.value, RunStatus.QUEUED.value)
            self._move(run, RunStatus.QUEUED, now)

        run = self._store.update(Run, run_id, mutate)
        logger.debug("lease_released", run_id=run.id, worker=worker_id)
        return run

    def start(self, run_id: str, worker_id: str) -> Run:
        """leased -> running.

        Raises:
            LeaseMismatch: If the lease was lost (reclaimed or cancelled)
        """
        now = self._clock()

        def mutate(run: Run) -> None:
            self._check_owner(run, worker_id)
            self._move(run, RunStatus.RUNNING, now)
            run.started_at = now

        run = self._store.update(Run, run_id, mutate)
        logger.info("run_started", run_id=run.id, worker=worker_id, attempt=run.attempt)
        return run

    def succeed(
        self,
        run_id: str,
        worker_id: str,
        response: ProviderResponse,
        cost_usd: float,
    ) -> Run:
        """running -> succeeded, committing actual cost to the run's scopes."""
        now = self._clock()
        outcome = _Outcome()

        def mutate(run: Run) -> None:
            self._check_owner(run, worker_id)
            outcome.reserved_usd = run.reserved_usd
            self._move(run, RunStatus.SUCCEEDED, now)
            run.response = response.to_dict()
            run.tokens_in = response.tokens_in
            run.tokens_out = response.tokens_out
            run.latency_ms = response.latency_ms
            run.cost_usd = cost_usd
            run.reserved_usd = 0.0
            run.error = None

        run = self._store.update(Run, run_id, mutate)
        if self._ledger is not None:
            self._ledger.commit_all(run.budget_scopes, cost_usd, outcome.reserved_usd)
        logger.info(
            "run_succeeded",
            run_id=run.id,
            attempt=run.attempt,
            cost_usd=cost_usd,
            tokens_in=run.tokens_in,
            tokens_out=run.tokens_out,
        )
        self._finished(run)
        return run

    def fail(self, run_id: str, worker_id: str, failure: ProviderFailure) -> Run:
        """running -> queued (retry with backoff) or dead.

        A run whose cancellation was requested ends ``cancelled`` instead.
        """
        now = self._clock()
        outcome = _Outcome()

        def mutate(run: Run) -> None:
            self._check_owner(run, worker_id)
            outcome.reserved_usd = run.reserved_usd
            run.reserved_usd = 0.0
            run.error = {**failure.to_error(), "attempt": run.attempt}
            if run.cancel_requested:
                self._move(run, RunStatus.CANCELLED, now)
                run.error = _cancel_error("cancelled while running")
            elif failure.retryable and run.attempt < run.max_attempts:
                delay = self.backoff(run.attempt)
                self._move(run, RunStatus.QUEUED, now)
                run.retry_delays = [*run.retry_delays, delay]
                run.attempt += 1
                run.available_at = now + timedelta(seconds=delay)
            else:
                self._move(run, RunStatus.DEAD, now)

        run = self._store.update(Run, run_id, mutate)
        self._release(run, outcome.reserved_usd)
        if run.status is RunStatus.QUEUED:
            logger.warning(
                "run_retry_scheduled",
                run_id=run.id,
                attempt=run.attempt,
                delay_seconds=run.retry_delays[-1],
                reason=failure.reason,
            )
        else:
            logger.error(
                "run_failed",
                run_id=run.id,
                status=run.status.value,
                attempt=run.attempt,
                reason=failure.reason,
                retryable=failure.retryable,
            )
            self._finished(run)
        return run

    def fail_budget(self, run_id: str, worker_id: str, error: BudgetExceeded) -> Run:
        """leased -> failed: budget denied, never retried."""
        now = self._clock()
        outcome = _Outcome()

        def mutate(run: Run) -> None:
            self._check_owner(run, worker_id)
            outcome.reserved_usd = run.reserved_usd
            run.reserved_usd = 0.0
            self._move(run, RunStatus.FAILED, now)
            run.error = {
                "kind": FailureKind.BUDGET_EXCEEDED.value,
                "reason": str(error),
                "retryable": False,
                "scope": error.scope,
            }

        run = self._store.update(Run, run_id, mutate)
        self._release(run, outcome.reserved_usd)
        logger.warning("run_budget_exceeded", run_id=run.id, scope=error.scope)
        self._finished(run)
        return run

    # === Cancellation ===

    def cancel(self, run_id: str) -> Run:
        """Cancel a run.

        Queued and leased runs are cancelled at once. A running run is only
        marked ``cancel_requested``; its worker signals the invoker and
        writes ``cancelled`` when the call returns (or the hard timeout
        sweep does). Terminal runs are returned unchanged.
        """
        now = self._clock()
        outcome = _Outcome()

        def mutate(run: Run) -> bool | None:
            outcome.changed = False
            outcome.reserved_usd = 0.0
            if run.is_terminal:
                return False
            if run.status is RunStatus.RUNNING:
                if run.cancel_requested:
                    return False
                run.cancel_requested = True
                run.cancel_requested_at = now
                return None
            outcome.reserved_usd = run.reserved_usd
            run.reserved_usd = 0.0
            run.cancel_requested = True
            run.cancel_requested_at = now
            self._move(run, RunStatus.CANCELLED, now)
            run.error = _cancel_error("cancelled before start")
            outcome.changed = True
            return None

        run = self._store.update(Run, run_id, mutate)
        if outcome.changed:
            self._release(run, outcome.reserved_usd)
            logger.info("run_cancelled", run_id=run.id)
            self._finished(run)
        elif run.status is RunStatus.RUNNING:
            logger.info("run_cancel_requested", run_id=run.id, worker=run.lease_owner)
        return run

    def acknowledge_cancel(self, run_id: str, worker_id: str) -> Run:
        """running -> cancelled after the invoker stopped."""
        now = self._clock()
        outcome = _Outcome()

        def mutate(run: Run) -> None:
            self._check_owner(run, worker_id)
            outcome.reserved_usd = run.reserved_usd
            run.reserved_usd = 0.0
            self._move(run, RunStatus.CANCELLED, now)
            run.error = _cancel_error("invocation aborted")

        run = self._store.update(Run, run_id, mutate)
        self._release(run, outcome.reserved_usd)
        logger.info("run_cancelled", run_id=run.id, worker=worker_id)
        self._finished(run)
        return run

    def force_cancel(self, run_id: str, grace_seconds: float) -> Run | None:
        """running -> cancelled once the cancel grace period is over.

        Returns None if the run is not an overdue cancellation.
        """
        now = self._clock()
        outcome = _Outcome()

        def mutate(run: Run) -> bool | None:
            outcome.changed = False
            if not run.status.holds_lease or not run.cancel_requested:
                return False
            requested = run.cancel_requested_at or now
            if now < requested + timedelta(seconds=grace_seconds):
                return False
            outcome.reserved_usd = run.reserved_usd
            run.reserved_usd = 0.0
            self._move(run, RunStatus.CANCELLED, now)
            run.error = _cancel_error("cancel hard timeout elapsed")
            outcome.changed = True
            return None

        run = self._store.update(Run, run_id, mutate)
        if not outcome.changed:
            return None
        self._release(run, outcome.reserved_usd)
        logger.warning("run_force_cancelled", run_id=run.id)
        self._finished(run)
        return run

    # === Reclaim ===

    def reclaim(self, run_id: str) -> Run | None:
        """Take back an expired lease.

        The run returns to ``queued`` as a crash retry (attempt + 1), or
        ends ``dead`` when attempts are exhausted, or ``cancelled`` when
        cancellation had been requested. Returns None if the lease is no
        longer expired.
        """
        now = self._clock()
        outcome = _Outcome()

        def mutate(run: Run) -> bool | None:
            outcome.changed = False
            if not run.status.holds_lease:
                return False
            if run.lease_expiry is not None and run.lease_expiry >= now:
                return False
            owner = run.lease_owner
            outcome.reserved_usd = run.reserved_usd
            run.reserved_usd = 0.0
            if run.cancel_requested:
                self._move(run, RunStatus.CANCELLED, now)
                run.error = _cancel_error("lease expired after cancel request")
            elif run.attempt < run.max_attempts:
                self._move(run, RunStatus.QUEUED, now)
                run.attempt += 1
                run.error = _lease_lost_error(owner, retryable=True)
            else:
                self._move(run, RunStatus.DEAD, now)
                run.error = _lease_lost_error(owner, retryable=False)
            outcome.changed = True
            return None

        run = self._store.update(Run, run_id, mutate)
        if not outcome.changed:
            return None
        self._release(run, outcome.reserved_usd)
        logger.warning(
            "run_lease_reclaimed", run_id=run.id, status=run.status.value, attempt=run.attempt
        )
        if run.is_terminal:
            self._finished(run)
        return run

    # === Dead letters ===

    def dead_letters(self, queue_name: str | None = None) -> Iterator[Run]:
        """Runs that ended ``dead``, oldest first."""
        filters: dict[str, Any] = {"status": RunStatus.DEAD}
        if queue_name is not None:
            filters["queue_name"] = queue_name
        return self._store.query(Run, order_by=["finished_at"], **filters)

    def resubmit(self, run_id: str, *, max_attempts: int | None = None) -> Run:
        """Queue a fresh copy of a dead or failed run.

        The original stays terminal; the copy points back to it through
        ``extra["resubmitted_from"]``.

        Raises:
            InvalidTransition: If the run is not dead or failed
        """
        original = self._store.get(Run, run_id)
        if original.status not in (RunStatus.DEAD, RunStatus.FAILED):
            raise InvalidTransition(run_id, original.status.value, "resubmitted")
        return self.create(
            op=original.op,
            queue_name=original.queue_name,
            request=original.request,
            profile_name=original.profile_name,
            priority=original.priority,
            max_attempts=max_attempts or original.max_attempts,
            batch_id=original.batch_id,
            pipeline_id=original.pipeline_id,
            step_id=original.step_id,
            question_id=original.question_id,
            budget_scopes=original.budget_scopes,
            extra={**original.extra, "resubmitted_from": original.id},
        )

    # === Internals ===

    def _move(self, run: Run, target: RunStatus, now: datetime) -> None:
        if not can_transition(run.status, target):
            raise InvalidTransition(run.id, run.status.value, target.value)
        run.status = target
        if not target.holds_lease:
            run.lease_owner = None
            run.lease_expiry = None
        if target.is_terminal:
            run.finished_at = now
        elif target is RunStatus.QUEUED:
            run.started_at = None
            run.finished_at = None

    @staticmethod
    def _check_owner(run: Run, worker_id: str) -> None:
        if run.lease_owner != worker_id or not run.status.holds_lease:
            raise LeaseMismatch(run.id, worker_id, run.lease_owner)

    def _release(self, run: Run, reserved_usd: float) -> None:
        if self._ledger is not None and reserved_usd > 0:
            self._ledger.release_all(run.budget_scopes, reserved_usd)

    def _finished(self, run: Run) -> None:
        if self._events is not None:
            self._events.run_finished(run)


def _cancel_error(reason: str) -> dict[str, Any]:
    return {"kind": FailureKind.CANCELLED.value, "reason": reason, "retryable": False}


def _lease_lost_error(owner: str | None, *, retryable: bool) -> dict[str, Any]:
    return {
        "kind": FailureKind.LEASE_LOST.value,
        "reason": f"lease held by {owner} expired",
        "retryable": retryable,
    }

