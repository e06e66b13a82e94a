# src/quorum/engine/scheduler.py
"""Queue scheduler, run executor and worker loop.

Admission of one run into execution, per queue:

1. Concurrency: fewer than ``concurrency`` runs leased or running
2. Lease: atomically claim the best eligible run
3. Rate: a token from the queue's token bucket; without one the lease
   is handed back, so a lost lease race never spends a token
4. Budget: reserve the estimated cost in every scope the run charges

A missing slot or token is backpressure: the run simply stays queued.
So is a saturated worker pool, where every invocation thread is still
held by a call that outlived its timeout.
A budget denial is terminal: the run ends ``failed`` with
``budget_exceeded`` and admission moves on to the next run.
"""

from __future__ import annotations

import concurrent.futures
import threading
import time
from collections.abc import Callable, Sequence
from contextlib import suppress
from typing import Any

import structlog

from quorum.contracts.enums import FailureKind, RunStatus
from quorum.contracts.errors import BudgetExceeded, LeaseMismatch, ValidationError
from quorum.contracts.provider import (
    InvocationResult,
    ProviderFailure,
    ProviderRequest,
    ProviderResponse,
)
from quorum.contracts.records import Run
from quorum.core.clock import generate_id
from quorum.core.config import ProfileSettings, QuorumSettings
from quorum.core.rate_limit import RateLimitRegistry
from quorum.core.store import RecordStore
from quorum.engine.budget import BudgetLedger
from quorum.engine.leases import LeaseManager
from quorum.engine.state_machine import RunStateMachine
from quorum.providers.protocols import ProviderInvoker

logger = structlog.get_logger(__name__)


class QueueScheduler:
    """Submits runs and admits them into execution under queue limits."""

    def __init__(
        self,
        store: RecordStore,
        settings: QuorumSettings,
        state_machine: RunStateMachine,
        leases: LeaseManager,
        ledger: BudgetLedger,
        limiters: RateLimitRegistry,
    ) -> None:
        self._store = store
        self._settings = settings
        self._sm = state_machine
        self._leases = leases
        self._ledger = ledger
        self._limiters = limiters
        # count-then-lease is serialized per queue within this process
        self._queue_locks: dict[str, threading.Lock] = {
            name: threading.Lock() for name in settings.queues
        }

    def submit(
        self,
        op: str,
        request: dict[str, Any],
        *,
        profile: str | None = None,
        queue: str | None = None,
        priority: int = 0,
        max_attempts: int | None = None,
        batch_id: str | None = None,
        pipeline_id: str | None = None,
        step_id: str | None = None,
        question_id: str | None = None,
        run_id: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> Run:
        """Create a run on a queue.

        The queue defaults to the profile's queue. Identical earlier
        requests are served from cache when caching is enabled for ``op``.

        Raises:
            ValidationError: If the queue/profile is unknown or the queue
                does not allow ``op``
        """
        profile_name, profile_settings = self._settings.get_profile(profile)
        queue_name = queue or profile_settings.queue
        queue_settings = self._settings.get_queue(queue_name)
        if not queue_settings.allows(op):
            raise ValidationError(
                f"Queue '{queue_name}' does not allow op '{op}' "
                f"(allowed: {queue_settings.allowed_ops})"
            )

        scopes = [
            scope
            for scope in (queue_settings.budget_scope, profile_settings.budget_scope)
            if scope
        ]
        return self._sm.create(
            op=op,
            queue_name=queue_name,
            request=request,
            profile_name=profile_name,
            priority=priority,
            max_attempts=max_attempts or profile_settings.max_attempts,
            batch_id=batch_id,
            pipeline_id=pipeline_id,
            step_id=step_id,
            question_id=question_id,
            budget_scopes=scopes,
            use_cache=self._settings.cache.caches(op),
            run_id=run_id,
            extra=extra,
        )

    def active_count(self, queue_name: str) -> int:
        """Runs currently holding a lease on a queue."""
        return self._store.count(
            Run, queue_name=queue_name, status=[RunStatus.LEASED, RunStatus.RUNNING]
        )

    def estimate(self, run: Run) -> tuple[float, ProfileSettings | None]:
        if run.profile_name is None or run.profile_name not in self._settings.profiles:
            return 0.0, None
        profile = self._settings.profiles[run.profile_name]
        return profile.estimated_cost_usd, profile

    def admit(self, queue_name: str, worker_id: str) -> Run | None:
        """Lease and budget-authorize the next run of a queue.

        Returns:
            A leased run with its budget reserved, or None when the queue
            is empty, at its concurrency limit, or out of rate tokens
        """
        queue = self._settings.get_queue(queue_name)
        lock = self._queue_locks.setdefault(queue_name, threading.Lock())
        while True:
            with lock:
                active = self.active_count(queue_name)
                if active >= queue.concurrency:
                    logger.debug("admission_deferred", queue=queue_name, reason="concurrency")
                    return None
                run = self._leases.acquire(queue_name, worker_id)
                if run is None:
                    return None
                if not self._limiters.get_limiter(queue_name).try_acquire():
                    # cancelled meanwhile means the run is no longer ours to return
                    with suppress(LeaseMismatch):
                        self._sm.release_lease(run.id, worker_id)
                    logger.debug("admission_deferred", queue=queue_name, reason="rate")
                    return None

            estimate, profile = self.estimate(run)
            try:
                if (
                    profile is not None
                    and profile.max_cost_per_run_usd is not None
                    and estimate > profile.max_cost_per_run_usd
                ):
                    raise BudgetExceeded(
                        f"profile:{run.profile_name}", estimate, profile.max_cost_per_run_usd
                    )
                self._ledger.authorize_all(run.budget_scopes, estimate)
            except BudgetExceeded as e:
                # a run cancelled in the meantime is already terminal
                with suppress(LeaseMismatch):
                    self._sm.fail_budget(run.id, worker_id, e)
                continue

            if run.budget_scopes and estimate > 0:
                try:
                    run = self._sm.record_reservation(run.id, worker_id, estimate)
                except LeaseMismatch:
                    # cancelled between lease and reservation
                    self._ledger.release_all(run.budget_scopes, estimate)
                    continue
            return run


class RunExecutor:
    """Drives one leased run through the provider call.

    The call runs on a thread pool so the executor can keep the lease
    alive, notice cancellation and enforce the per-run timeout while it
    waits. Provider, timeout and lease failures become run state; nothing
    raises past ``execute``.
    """

    def __init__(
        self,
        store: RecordStore,
        settings: QuorumSettings,
        state_machine: RunStateMachine,
        leases: LeaseManager,
        ledger: BudgetLedger,
        invoker: ProviderInvoker,
    ) -> None:
        self._store = store
        self._settings = settings
        self._sm = state_machine
        self._leases = leases
        self._ledger = ledger
        self._invoker = invoker
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=settings.invocation.max_workers,
            thread_name_prefix="quorum-invoke",
        )
        # calls given up on (timeout, cancel grace) whose threads are still busy
        self._overdue: set[concurrent.futures.Future[InvocationResult]] = set()
        self._overdue_lock = threading.Lock()

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def saturated(self) -> bool:
        """True while every pool thread is held by an abandoned call."""
        with self._overdue_lock:
            return len(self._overdue) >= self._settings.invocation.max_workers

    def _abandon(self, future: concurrent.futures.Future[InvocationResult]) -> None:
        with self._overdue_lock:
            self._overdue.add(future)

        def settle(done: concurrent.futures.Future[InvocationResult]) -> None:
            with self._overdue_lock:
                self._overdue.discard(done)

        # runs immediately if the call finished in the meantime
        future.add_done_callback(settle)

    def _profile(self, run: Run) -> ProfileSettings | None:
        if run.profile_name is None:
            return None
        return self._settings.profiles.get(run.profile_name)

    def timeout_for(self, run: Run) -> float:
        profile = self._profile(run)
        if profile is not None and profile.timeout_seconds is not None:
            return profile.timeout_seconds
        return self._settings.invocation.timeout_seconds

    def execute(self, run: Run, worker_id: str) -> Run:
        """Run a leased run to its next state (terminal or re-queued)."""
        try:
            run = self._sm.start(run.id, worker_id)
        except LeaseMismatch:
            logger.warning("lease_lost_before_start", run_id=run.id, worker=worker_id)
            return self._store.get(Run, run.id)

        abort = threading.Event()
        invoking = threading.Event()
        request = ProviderRequest.from_dict(run.request)
        timeout = self.timeout_for(run)
        future = self._pool.submit(self._call, request, timeout, abort, invoking)

        try:
            result, cancelled = self._wait(run, worker_id, future, timeout, abort, invoking)
        except LeaseMismatch:
            abort.set()
            logger.warning("lease_lost_while_running", run_id=run.id, worker=worker_id)
            self._charge_orphaned(run, future)
            return self._store.get(Run, run.id)

        try:
            if cancelled:
                return self._sm.acknowledge_cancel(run.id, worker_id)
            if isinstance(result, ProviderResponse):
                return self._sm.succeed(run.id, worker_id, result, self._cost(run, result))
            return self._sm.fail(run.id, worker_id, result)
        except LeaseMismatch:
            logger.warning("lease_lost_on_completion", run_id=run.id, worker=worker_id)
            if isinstance(result, ProviderResponse):
                # money was spent even though the lease is gone
                self._ledger.commit_all(run.budget_scopes, self._cost(run, result))
            return self._store.get(Run, run.id)

    def _call(
        self,
        request: ProviderRequest,
        timeout: float,
        abort: threading.Event,
        invoking: threading.Event,
    ) -> InvocationResult:
        if abort.is_set():
            return ProviderFailure(
                "aborted before the call started", retryable=False, kind=FailureKind.CANCELLED
            )
        invoking.set()
        try:
            return self._invoker.invoke(request, timeout=timeout, abort=abort)
        except Exception as e:
            # unrecognized invoker errors are retryable, bounded by max_attempts
            logger.exception("invoker_raised", error=str(e))
            return ProviderFailure(f"{type(e).__name__}: {e}", retryable=True)

    def _wait(
        self,
        run: Run,
        worker_id: str,
        future: concurrent.futures.Future[InvocationResult],
        timeout: float,
        abort: threading.Event,
        invoking: threading.Event,
    ) -> tuple[InvocationResult, bool]:
        """Wait for the call, renewing the lease and watching for cancel.

        The timeout counts from the moment the invoker is entered; time
        spent waiting for a free pool thread is not charged to the run.

        Returns:
            (result, cancelled)

        Raises:
            LeaseMismatch: If the lease was lost while waiting
        """
        poll = self._settings.invocation.poll_interval_seconds
        renew_every = self._settings.lease.renew_interval
        grace = self._settings.invocation.cancel_grace_seconds

        last_renewal = time.monotonic()
        call_started: float | None = None
        cancel_deadline: float | None = None

        while True:
            done, _ = concurrent.futures.wait([future], timeout=poll)
            now = time.monotonic()
            if done:
                result = future.result()
                return result, cancel_deadline is not None
            if call_started is None and invoking.is_set():
                call_started = now

            current = self._store.get(Run, run.id)
            if current.lease_owner != worker_id:
                raise LeaseMismatch(run.id, worker_id, current.lease_owner)
            if current.cancel_requested and cancel_deadline is None:
                logger.info("invocation_abort_signalled", run_id=run.id)
                abort.set()
                cancel_deadline = now + grace
            if cancel_deadline is not None and now >= cancel_deadline:
                self._abandon(future)
                return _cancelled_failure(), True
            if (
                cancel_deadline is None
                and call_started is not None
                and now - call_started >= timeout
            ):
                abort.set()
                self._abandon(future)
                return (
                    ProviderFailure(
                        f"invocation exceeded {timeout}s", retryable=True, kind=FailureKind.TIMEOUT
                    ),
                    False,
                )
            if now - last_renewal >= renew_every:
                self._leases.renew(run.id, worker_id)
                last_renewal = now

    def _cost(self, run: Run, response: ProviderResponse) -> float:
        if response.cost_usd is not None:
            return response.cost_usd
        profile = self._profile(run)
        if profile is None:
            return 0.0
        return profile.cost_for(response.tokens_in, response.tokens_out)

    def _charge_orphaned(
        self, run: Run, future: concurrent.futures.Future[InvocationResult]
    ) -> None:
        def settle(done: concurrent.futures.Future[InvocationResult]) -> None:
            result = done.result()
            if isinstance(result, ProviderResponse):
                self._ledger.commit_all(run.budget_scopes, self._cost(run, result))

        future.add_done_callback(settle)


def _cancelled_failure() -> ProviderFailure:
    return ProviderFailure(
        "cancel grace period elapsed", retryable=False, kind=FailureKind.CANCELLED
    )


class Worker:
    """Pulls leases across a set of queues and executes them.

    Usage:
        worker = Worker(scheduler, executor, ["default"])
        worker.run_until_idle()
    """

    def __init__(
        self,
        scheduler: QueueScheduler,
        executor: RunExecutor,
        queues: Sequence[str],
        *,
        worker_id: str | None = None,
        idle_sleep_seconds: float = 0.5,
    ) -> None:
        self._scheduler = scheduler
        self._executor = executor
        self._queues = list(queues)
        self.worker_id = worker_id or f"worker-{generate_id()[:12]}"
        self._idle_sleep = idle_sleep_seconds

    def run_once(self) -> Run | None:
        """Admit and execute at most one run.

        Nothing is admitted while the executor's threads are all held by
        abandoned calls; a run admitted then would only wait for a slot.

        Returns:
            The run after execution, or None if no queue had work
        """
        if self._executor.saturated():
            logger.debug("admission_deferred", worker=self.worker_id, reason="pool_saturated")
            return None
        for queue_name in self._queues:
            run = self._scheduler.admit(queue_name, self.worker_id)
            if run is not None:
                return self._executor.execute(run, self.worker_id)
        return None

    def run_until_idle(self, max_runs: int | None = None) -> int:
        """Execute runs until no queue has admissible work.

        Returns:
            Number of runs executed
        """
        executed = 0
        while max_runs is None or executed < max_runs:
            if self.run_once() is None:
                break
            executed += 1
        return executed

    def run_forever(
        self, stop: threading.Event, on_idle: Callable[[], object] | None = None
    ) -> None:
        """Loop until ``stop`` is set, calling ``on_idle`` between empty polls."""
        logger.info("worker_started", worker=self.worker_id, queues=self._queues)
        while not stop.is_set():
            if self.run_once() is None:
                if on_idle is not None:
                    on_idle()
                stop.wait(self._idle_sleep)
        logger.info("worker_stopped", worker=self.worker_id)
