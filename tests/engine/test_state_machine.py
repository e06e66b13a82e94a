"""Tests for run lifecycle transitions."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest


class TestCreate:
    def test_new_run_is_queued(self, engine: Any, submit_run: Any) -> None:
        from quorum.contracts.enums import RunStatus

        run = submit_run(engine)

        assert run.status is RunStatus.QUEUED
        assert run.attempt == 1
        assert run.max_attempts == 3
        assert run.profile_name == "fast"
        assert run.invariant_violations() == []

    def test_identical_request_served_from_cache(
        self, engine: Any, submit_run: Any, start_run: Any
    ) -> None:
        """A repeat of a succeeded request is born succeeded, at no cost."""
        from quorum.contracts.enums import RunStatus
        from quorum.contracts.provider import ProviderResponse

        first = submit_run(engine, "What is 2 + 2?")
        start_run(engine, first.id)
        engine.state_machine.succeed(first.id, "w1", ProviderResponse(text="4"), 0.1)

        repeat = submit_run(engine, "What is 2 + 2?")

        assert repeat.status is RunStatus.SUCCEEDED
        assert repeat.cached_from == first.id
        assert repeat.response_text == "4"
        assert repeat.cost_usd == 0.0
        assert repeat.invariant_violations() == []

    def test_cache_never_chains_through_cached_runs(
        self, engine: Any, submit_run: Any, start_run: Any
    ) -> None:
        from quorum.contracts.provider import ProviderResponse

        first = submit_run(engine, "Capital of France?")
        start_run(engine, first.id)
        engine.state_machine.succeed(first.id, "w1", ProviderResponse(text="Paris"), 0.0)

        second = submit_run(engine, "Capital of France?")
        third = submit_run(engine, "Capital of France?")

        assert second.cached_from == first.id
        assert third.cached_from == first.id

    def test_cache_disabled(
        self, make_engine: Any, make_settings: Any, submit_run: Any, start_run: Any
    ) -> None:
        from quorum.contracts.enums import RunStatus
        from quorum.contracts.provider import ProviderResponse

        engine = make_engine(make_settings(cache={"enabled": False}))
        first = submit_run(engine, "Same question")
        start_run(engine, first.id)
        engine.state_machine.succeed(first.id, "w1", ProviderResponse(text="x"), 0.0)

        again = submit_run(engine, "Same question")

        assert again.status is RunStatus.QUEUED
        assert again.cached_from is None

    def test_cached_run_emits_finished_event(
        self, engine: Any, submit_run: Any, start_run: Any
    ) -> None:
        from quorum.contracts.provider import ProviderResponse

        first = submit_run(engine, "Cached?")
        start_run(engine, first.id)
        engine.state_machine.succeed(first.id, "w1", ProviderResponse(text="yes"), 0.0)
        finished: list[str] = []
        engine.events.on_run_finished(lambda run: finished.append(run.id))

        repeat = submit_run(engine, "Cached?")

        assert finished == [repeat.id]


class TestLeaseAndStart:
    def test_lease_is_exclusive(self, engine: Any, submit_run: Any, clock: Any) -> None:
        from quorum.contracts.enums import RunStatus

        run = submit_run(engine)
        expiry = clock() + timedelta(seconds=60)

        first = engine.state_machine.lease(run.id, "w1", expiry)
        second = engine.state_machine.lease(run.id, "w2", expiry)

        assert first is not None
        assert first.status is RunStatus.LEASED
        assert first.lease_owner == "w1"
        assert second is None

    def test_start_by_non_owner_rejected(self, engine: Any, submit_run: Any, clock: Any) -> None:
        from quorum.contracts.errors import LeaseMismatch

        run = submit_run(engine)
        engine.state_machine.lease(run.id, "w1", clock() + timedelta(seconds=60))

        with pytest.raises(LeaseMismatch):
            engine.state_machine.start(run.id, "w2")

    def test_start_sets_running(self, engine: Any, submit_run: Any, start_run: Any) -> None:
        from quorum.contracts.enums import RunStatus

        run = start_run(engine, submit_run(engine).id)

        assert run.status is RunStatus.RUNNING
        assert run.started_at is not None
        assert run.invariant_violations() == []

    def test_start_twice_is_invalid(self, engine: Any, submit_run: Any, start_run: Any) -> None:
        from quorum.contracts.errors import InvalidTransition

        run = start_run(engine, submit_run(engine).id)

        with pytest.raises(InvalidTransition):
            engine.state_machine.start(run.id, "w1")

    def test_release_lease_requeues_without_an_attempt(
        self, engine: Any, submit_run: Any, clock: Any
    ) -> None:
        from quorum.contracts.enums import RunStatus

        run = submit_run(engine)
        engine.state_machine.lease(run.id, "w1", clock() + timedelta(seconds=60))

        released = engine.state_machine.release_lease(run.id, "w1")

        assert released.status is RunStatus.QUEUED
        assert released.attempt == run.attempt
        assert released.lease_owner is None
        assert released.error is None
        assert released.invariant_violations() == []
        assert engine.state_machine.lease(run.id, "w2", clock() + timedelta(seconds=60))

    def test_release_lease_checks_owner_and_state(
        self, engine: Any, submit_run: Any, start_run: Any, clock: Any
    ) -> None:
        from quorum.contracts.errors import InvalidTransition, LeaseMismatch

        leased = submit_run(engine, "leased")
        engine.state_machine.lease(leased.id, "w1", clock() + timedelta(seconds=60))
        running = start_run(engine, submit_run(engine, "running").id)

        with pytest.raises(LeaseMismatch):
            engine.state_machine.release_lease(leased.id, "w2")
        with pytest.raises(InvalidTransition):
            engine.state_machine.release_lease(running.id, "w1")


class TestSucceed:
    def test_succeed_records_usage(self, engine: Any, submit_run: Any, start_run: Any) -> None:
        from quorum.contracts.enums import RunStatus
        from quorum.contracts.provider import ProviderResponse

        run = start_run(engine, submit_run(engine).id)

        done = engine.state_machine.succeed(
            run.id,
            "w1",
            ProviderResponse(text="Rayleigh scattering", tokens_in=12, tokens_out=3),
            0.02,
        )

        assert done.status is RunStatus.SUCCEEDED
        assert done.response_text == "Rayleigh scattering"
        assert (done.tokens_in, done.tokens_out) == (12, 3)
        assert done.cost_usd == 0.02
        assert done.lease_owner is None
        assert done.finished_at is not None
        assert done.invariant_violations() == []


class TestFail:
    def test_retryable_failure_requeues_with_backoff(
        self, engine: Any, submit_run: Any, start_run: Any, clock: Any, retryable_failure: Any
    ) -> None:
        from quorum.contracts.enums import RunStatus

        run = start_run(engine, submit_run(engine).id)

        after = engine.state_machine.fail(run.id, "w1", retryable_failure())

        assert after.status is RunStatus.QUEUED
        assert after.attempt == 2
        assert after.retry_delays == [2.0]
        assert after.available_at == clock() + timedelta(seconds=2.0)
        assert after.error is not None and after.error["attempt"] == 1
        assert after.invariant_violations() == []

    def test_backoff_blocks_lease_until_available(
        self, engine: Any, submit_run: Any, start_run: Any, clock: Any, retryable_failure: Any
    ) -> None:
        run = start_run(engine, submit_run(engine).id)
        engine.state_machine.fail(run.id, "w1", retryable_failure())
        expiry = clock() + timedelta(seconds=60)

        assert engine.state_machine.lease(run.id, "w1", expiry) is None
        clock.advance(2.0)
        assert engine.state_machine.lease(run.id, "w1", expiry) is not None

    def test_non_retryable_failure_is_dead(
        self, engine: Any, submit_run: Any, start_run: Any
    ) -> None:
        from quorum.contracts.enums import RunStatus
        from quorum.contracts.provider import ProviderFailure

        run = start_run(engine, submit_run(engine).id)

        after = engine.state_machine.fail(
            run.id, "w1", ProviderFailure("HTTP 400: bad request", retryable=False)
        )

        assert after.status is RunStatus.DEAD
        assert after.error is not None and after.error["retryable"] is False
        assert after.invariant_violations() == []

    def test_last_attempt_is_dead(
        self, engine: Any, submit_run: Any, start_run: Any, retryable_failure: Any
    ) -> None:
        from quorum.contracts.enums import RunStatus

        run = start_run(engine, submit_run(engine, max_attempts=1).id)

        after = engine.state_machine.fail(run.id, "w1", retryable_failure())

        assert after.status is RunStatus.DEAD
        assert after.attempt == 1

    def test_failure_after_cancel_request_is_cancelled(
        self, engine: Any, submit_run: Any, start_run: Any, retryable_failure: Any
    ) -> None:
        from quorum.contracts.enums import RunStatus

        run = start_run(engine, submit_run(engine).id)
        engine.state_machine.cancel(run.id)

        after = engine.state_machine.fail(run.id, "w1", retryable_failure())

        assert after.status is RunStatus.CANCELLED


class TestBackoff:
    def test_exponential_and_capped(self, store: Any) -> None:
        from quorum.core.config import RetrySettings
        from quorum.engine.state_machine import RunStateMachine

        sm = RunStateMachine(
            store,
            RetrySettings(base_delay_seconds=1.0, max_delay_seconds=10.0, jitter=0.0),
        )

        assert [sm.backoff(attempt) for attempt in (1, 2, 3, 4, 5)] == [
            2.0,
            4.0,
            8.0,
            10.0,
            10.0,
        ]

    def test_jitter_stays_in_bounds(self, store: Any) -> None:
        import random

        from quorum.core.config import RetrySettings
        from quorum.engine.state_machine import RunStateMachine

        sm = RunStateMachine(
            store, RetrySettings(base_delay_seconds=1.0, jitter=0.25), rng=random.Random(7)
        )

        delays = [sm.backoff(1) for _ in range(50)]

        assert all(1.5 <= delay <= 2.5 for delay in delays)
        assert len(set(delays)) > 1


class TestCancel:
    def test_cancel_queued(self, engine: Any, submit_run: Any) -> None:
        from quorum.contracts.enums import RunStatus

        run = submit_run(engine)

        after = engine.state_machine.cancel(run.id)

        assert after.status is RunStatus.CANCELLED
        assert after.error is not None and after.error["kind"] == "cancelled"
        assert after.invariant_violations() == []

    def test_cancel_running_only_requests(
        self, engine: Any, submit_run: Any, start_run: Any
    ) -> None:
        from quorum.contracts.enums import RunStatus

        run = start_run(engine, submit_run(engine).id)

        after = engine.state_machine.cancel(run.id)

        assert after.status is RunStatus.RUNNING
        assert after.cancel_requested is True
        assert after.lease_owner == "w1"

    def test_acknowledge_cancel(self, engine: Any, submit_run: Any, start_run: Any) -> None:
        from quorum.contracts.enums import RunStatus

        run = start_run(engine, submit_run(engine).id)
        engine.state_machine.cancel(run.id)

        after = engine.state_machine.acknowledge_cancel(run.id, "w1")

        assert after.status is RunStatus.CANCELLED
        assert after.lease_owner is None

    def test_cancel_terminal_is_a_no_op(self, engine: Any, submit_run: Any) -> None:
        run = submit_run(engine)
        cancelled = engine.state_machine.cancel(run.id)

        again = engine.state_machine.cancel(run.id)

        assert again.version == cancelled.version

    def test_force_cancel_waits_for_grace(
        self, engine: Any, submit_run: Any, start_run: Any, clock: Any
    ) -> None:
        from quorum.contracts.enums import RunStatus

        run = start_run(engine, submit_run(engine).id)
        engine.state_machine.cancel(run.id)

        assert engine.state_machine.force_cancel(run.id, grace_seconds=30) is None
        clock.advance(30)
        forced = engine.state_machine.force_cancel(run.id, grace_seconds=30)

        assert forced is not None
        assert forced.status is RunStatus.CANCELLED

    def test_force_cancel_ignores_runs_without_request(
        self, engine: Any, submit_run: Any, start_run: Any, clock: Any
    ) -> None:
        run = start_run(engine, submit_run(engine).id)
        clock.advance(3600)

        assert engine.state_machine.force_cancel(run.id, grace_seconds=1) is None


class TestReclaim:
    def test_live_lease_not_reclaimed(
        self, engine: Any, submit_run: Any, start_run: Any
    ) -> None:
        run = start_run(engine, submit_run(engine).id)

        assert engine.state_machine.reclaim(run.id) is None

    def test_expired_lease_requeues_as_next_attempt(
        self, engine: Any, submit_run: Any, start_run: Any, clock: Any
    ) -> None:
        from quorum.contracts.enums import RunStatus

        run = start_run(engine, submit_run(engine).id)
        clock.advance(61)

        after = engine.state_machine.reclaim(run.id)

        assert after is not None
        assert after.status is RunStatus.QUEUED
        assert after.attempt == 2
        assert after.lease_owner is None
        assert after.error is not None and after.error["kind"] == "lease_lost"

    def test_expired_lease_on_last_attempt_is_dead(
        self, engine: Any, submit_run: Any, start_run: Any, clock: Any
    ) -> None:
        from quorum.contracts.enums import RunStatus

        run = start_run(engine, submit_run(engine, max_attempts=1).id)
        clock.advance(61)

        after = engine.state_machine.reclaim(run.id)

        assert after is not None
        assert after.status is RunStatus.DEAD

    def test_expired_lease_after_cancel_request_is_cancelled(
        self, engine: Any, submit_run: Any, start_run: Any, clock: Any
    ) -> None:
        from quorum.contracts.enums import RunStatus

        run = start_run(engine, submit_run(engine).id)
        engine.state_machine.cancel(run.id)
        clock.advance(61)

        after = engine.state_machine.reclaim(run.id)

        assert after is not None
        assert after.status is RunStatus.CANCELLED

    def test_old_owner_cannot_complete_after_reclaim(
        self, engine: Any, submit_run: Any, start_run: Any, clock: Any
    ) -> None:
        from quorum.contracts.errors import LeaseMismatch
        from quorum.contracts.provider import ProviderResponse

        run = start_run(engine, submit_run(engine).id)
        clock.advance(61)
        engine.state_machine.reclaim(run.id)

        with pytest.raises(LeaseMismatch):
            engine.state_machine.succeed(run.id, "w1", ProviderResponse(text="late"), 0.0)


class TestDeadLetters:
    def test_dead_letters_and_resubmit(
        self, engine: Any, submit_run: Any, start_run: Any
    ) -> None:
        from quorum.contracts.enums import RunStatus
        from quorum.contracts.provider import ProviderFailure

        run = start_run(engine, submit_run(engine).id)
        engine.state_machine.fail(run.id, "w1", ProviderFailure("bad", retryable=False))

        dead = [r.id for r in engine.state_machine.dead_letters()]
        fresh = engine.state_machine.resubmit(run.id, max_attempts=5)

        assert dead == [run.id]
        assert fresh.id != run.id
        assert fresh.status is RunStatus.QUEUED
        assert fresh.max_attempts == 5
        assert fresh.extra["resubmitted_from"] == run.id
        assert fresh.request == run.request
        assert engine.store.get(type(run), run.id).status is RunStatus.DEAD

    def test_dead_letters_filtered_by_queue(self, engine: Any) -> None:
        assert list(engine.state_machine.dead_letters("default")) == []

    def test_resubmit_live_run_rejected(self, engine: Any, submit_run: Any) -> None:
        from quorum.contracts.errors import InvalidTransition

        run = submit_run(engine)

        with pytest.raises(InvalidTransition):
            engine.state_machine.resubmit(run.id)


class TestFinishedEvents:
    def test_each_terminal_transition_emits_once(
        self,
        engine: Any,
        submit_run: Any,
        start_run: Any,
        clock: Any,
        retryable_failure: Any,
    ) -> None:
        from quorum.contracts.provider import ProviderResponse

        finished: list[tuple[str, str]] = []
        engine.events.on_run_finished(lambda run: finished.append((run.id, run.status.value)))

        run = start_run(engine, submit_run(engine).id)
        engine.state_machine.fail(run.id, "w1", retryable_failure())
        assert finished == []

        clock.advance(2.0)
        start_run(engine, run.id)
        engine.state_machine.succeed(run.id, "w1", ProviderResponse(text="ok"), 0.0)

        assert finished == [(run.id, "succeeded")]


def test_run_record_invariants_hold_through_a_lifecycle(
    engine: Any, submit_run: Any, start_run: Any
) -> None:
    from quorum.contracts.provider import ProviderResponse

    run = submit_run(engine)
    assert run.invariant_violations() == []
    run = start_run(engine, run.id)
    assert run.invariant_violations() == []
    run = engine.state_machine.succeed(run.id, "w1", ProviderResponse(text="x"), 0.0)
    assert run.invariant_violations() == []
