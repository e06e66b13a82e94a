"""Tests for batch fan-out, member accounting and ensemble reduction."""

from __future__ import annotations

import threading
from typing import Any

import pytest

from quorum.contracts.provider import ProviderFailure, ProviderRequest, ProviderResponse


def _billed_sample(request: ProviderRequest) -> ProviderResponse:
    seed = request.params.get("seed")
    return ProviderResponse(text=f"answer {seed}", tokens_in=10, tokens_out=5, cost_usd=0.25)


def _runs(engine: Any, **filters: Any) -> list[Any]:
    from quorum.contracts.records import Run

    return list(engine.store.query(Run, order_by=["created_at"], **filters))


def _answers(engine: Any, **filters: Any) -> list[Any]:
    from quorum.contracts.records import Answer

    return list(engine.store.query(Answer, order_by=["created_at"], **filters))


class TestFanOut:
    def test_creates_n_sample_runs(self, engine: Any) -> None:
        from quorum.contracts.enums import BatchStatus

        batch = engine.ask("Why is the sky blue?", n=5)

        runs = _runs(engine, batch_id=batch.id)
        assert batch.status is BatchStatus.SAMPLING
        assert batch.target_count == 5
        assert batch.completion_threshold == 5
        assert sorted(r.id for r in runs) == sorted(batch.run_ids)
        assert all(r.op == "sample" and r.question_id == batch.question_id for r in runs)

    def test_samples_get_independent_decoding(self, engine: Any) -> None:
        batch = engine.ask("Why is the sky blue?", n=4)

        by_index = {r.extra["sample_index"]: r.request for r in _runs(engine, batch_id=batch.id)}

        assert [by_index[i]["params"]["temperature"] for i in range(4)] == [0.2, 0.7, 1.0, 0.2]
        assert [by_index[i]["params"]["seed"] for i in range(4)] == [0, 1, 2, 3]
        assert len({r.request_hash for r in _runs(engine, batch_id=batch.id)}) == 4

    def test_question_text_and_tags_stored(self, engine: Any) -> None:
        from quorum.contracts.records import Question

        batch = engine.ask("Why is the sky blue?", n=1, tags=["physics"])

        question = engine.store.get(Question, batch.question_id)
        assert question.text == "Why is the sky blue?"
        assert question.tags == ["physics"]

    def test_rejects_bad_requests(self, engine: Any) -> None:
        from quorum.contracts.errors import ValidationError

        with pytest.raises(ValidationError, match="must be positive"):
            engine.ask("Why?", n=-1)
        with pytest.raises(ValidationError, match="outside 1..3"):
            engine.ask("Why?", n=3, completion_threshold=4)
        with pytest.raises(ValidationError, match="empty"):
            engine.ask("   ", n=3)
        with pytest.raises(ValidationError, match="Unknown profile"):
            engine.ask("Why?", n=3, profile="ghost")

    def test_default_n(self, make_engine: Any, make_settings: Any) -> None:
        engine = make_engine(make_settings(batch={"default_n": 2}))

        assert engine.ask("Why?").target_count == 2


class TestEndToEnd:
    def test_budget_cap_stops_the_fifth_sample(
        self, make_engine: Any, make_settings: Any, make_invoker: Any
    ) -> None:
        """n=5 at $0.25 each against a $1.00 cap: four samples run, one is denied."""
        from quorum.contracts.enums import AnswerKind, BatchStatus, RunStatus
        from quorum.contracts.records import Answer, Question

        engine = make_engine(
            make_settings(
                budgets={"daily": {"cap_usd": 1.0}},
                profiles={
                    "fast": {"budget_scope": "daily"},
                    "judge": {"provider": "scripted", "model": "judge-model"},
                },
                batch={"meta_profile": "judge"},
                queues={"default": {"concurrency": 1}},
            ),
            invoker=make_invoker(sample=_billed_sample),
        )

        batch = engine.ask("Why is the sky blue?", n=5)
        executed = engine.worker().run_until_idle()

        batch = engine.batch(batch.id)
        assert executed == 6
        assert batch.status is BatchStatus.DONE
        assert batch.completed_count == 4
        assert batch.failed_count == 1
        assert batch.completed_count <= batch.target_count

        samples = _runs(engine, batch_id=batch.id, op="sample")
        denied = [r for r in samples if r.status is RunStatus.FAILED]
        assert len(denied) == 1
        assert denied[0].error["kind"] == "budget_exceeded"
        assert all(r.invariant_violations() == [] for r in _runs(engine))

        assert engine.ledger.scope("daily").spent_usd == pytest.approx(1.0)
        assert engine.ledger.scope("daily").reserved_usd == pytest.approx(0.0)

        final = engine.store.get(Answer, batch.final_answer_id)
        assert final.kind is AnswerKind.FINAL
        assert final.text == "synthesized answer"
        assert engine.store.get(Question, batch.question_id).canonical_answer_id == final.id

    def test_rank_scores_written_to_samples(self, engine: Any) -> None:
        from quorum.contracts.enums import AnswerKind

        batch = engine.ask("Why is the sky blue?", n=3)
        engine.worker().run_until_idle()

        samples = sorted(
            _answers(engine, batch_id=batch.id, kind=AnswerKind.SAMPLE),
            key=lambda a: a.extra["sample_index"],
        )
        assert [a.score for a in samples] == [1.0, 2.0, 3.0]
        assert [a.rank for a in samples] == [3, 2, 1]

    def test_repeat_is_served_from_cache(self, engine: Any, invoker: Any) -> None:
        """Asking the same question again costs no provider calls."""
        from quorum.contracts.enums import BatchStatus
        from quorum.contracts.records import Answer

        first = engine.ask("Why is the sky blue?", n=3)
        engine.worker().run_until_idle()
        calls = invoker.call_count
        assert calls == 5

        second = engine.ask("Why is the sky blue?", n=3)

        second = engine.batch(second.id)
        assert second.status is BatchStatus.DONE
        assert invoker.call_count == calls
        assert all(r.cached_from is not None for r in _runs(engine, batch_id=second.id))
        first_final = engine.store.get(Answer, engine.batch(first.id).final_answer_id)
        second_final = engine.store.get(Answer, second.final_answer_id)
        assert second_final.text == first_final.text

    def test_repeat_does_not_touch_budget(
        self, make_engine: Any, make_settings: Any, make_invoker: Any
    ) -> None:
        engine = make_engine(
            make_settings(
                budgets={"daily": {"cap_usd": 10.0}},
                profiles={"fast": {"budget_scope": "daily"}},
            ),
            invoker=make_invoker(sample=_billed_sample),
        )
        engine.ask("Why is the sky blue?", n=2, meta_steps=[])
        engine.worker().run_until_idle()
        spent = engine.ledger.scope("daily").spent_usd

        engine.ask("Why is the sky blue?", n=2, meta_steps=[])
        engine.worker().run_until_idle()

        assert spent == pytest.approx(0.5)
        assert engine.ledger.scope("daily").spent_usd == pytest.approx(spent)

    def test_concurrent_workers_reduce_once(self, engine: Any) -> None:
        from quorum.contracts.enums import AnswerKind, BatchStatus

        batch = engine.ask("Why is the sky blue?", n=8)
        workers = [engine.worker(worker_id=f"w{i}") for i in range(4)]
        threads = [threading.Thread(target=w.run_until_idle) for w in workers]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        engine.worker().run_until_idle()

        batch = engine.batch(batch.id)
        assert batch.status is BatchStatus.DONE
        assert batch.completed_count == 8
        assert len(batch.settled_run_ids) == 8
        assert len(_runs(engine, batch_id=batch.id, op="meta.rank")) == 1
        assert len(_runs(engine, batch_id=batch.id, op="meta.synthesize")) == 1
        assert len(_answers(engine, batch_id=batch.id, kind=AnswerKind.SAMPLE)) == 8
        assert len(_answers(engine, batch_id=batch.id, kind=AnswerKind.FINAL)) == 1


class TestMemberAccounting:
    def test_threshold_starts_reduction_and_cancels_stragglers(self, engine: Any) -> None:
        from quorum.contracts.enums import BatchStatus, RunStatus

        batch = engine.ask("Why is the sky blue?", n=4, completion_threshold=2)
        executed = engine.worker().run_until_idle()

        batch = engine.batch(batch.id)
        assert executed == 4
        assert batch.status is BatchStatus.DONE
        assert batch.completed_count == 2
        statuses = sorted(r.status.value for r in _runs(engine, batch_id=batch.id, op="sample"))
        assert statuses == ["cancelled", "cancelled", "succeeded", "succeeded"]
        assert all(
            r.status is not RunStatus.QUEUED for r in _runs(engine, batch_id=batch.id)
        )

    def test_redelivered_event_is_counted_once(self, engine: Any) -> None:
        from quorum.contracts.records import Run

        batch = engine.ask("Why is the sky blue?", n=2, meta_steps=[])
        engine.worker().run_until_idle()
        done = engine.batch(batch.id)

        engine.sampling.on_run_finished(engine.store.get(Run, done.run_ids[0]))

        again = engine.batch(batch.id)
        assert again.completed_count == 2
        assert again.version == done.version

    def test_failed_samples_count_toward_settling(
        self, make_engine: Any, make_invoker: Any
    ) -> None:
        from quorum.contracts.enums import BatchStatus

        def flaky(request: ProviderRequest) -> Any:
            if request.params["seed"] == 0:
                return ProviderFailure("HTTP 400: content policy", retryable=False)
            return ProviderResponse(text=f"answer {request.params['seed']}")

        engine = make_engine(invoker=make_invoker(sample=flaky))
        batch = engine.ask("Why is the sky blue?", n=3)
        engine.worker().run_until_idle()

        batch = engine.batch(batch.id)
        assert batch.status is BatchStatus.DONE
        assert (batch.completed_count, batch.failed_count) == (2, 1)

    def test_no_successful_samples_fails_batch(
        self, make_engine: Any, make_invoker: Any
    ) -> None:
        from quorum.contracts.enums import BatchStatus

        engine = make_engine(
            invoker=make_invoker(sample=lambda r: ProviderFailure("refused", retryable=False))
        )
        finished: list[str] = []
        engine.events.on_batch_finished(lambda b: finished.append(b.status.value))

        batch = engine.ask("Why is the sky blue?", n=2)
        engine.worker().run_until_idle()

        batch = engine.batch(batch.id)
        assert batch.status is BatchStatus.FAILED
        assert batch.error["reason"] == "no successful samples"
        assert finished == ["failed"]


class TestDeadline:
    def test_partial_reduction_after_deadline(self, engine: Any, clock: Any) -> None:
        from quorum.contracts.enums import BatchStatus, RunStatus

        batch = engine.ask("Why is the sky blue?", n=3, deadline_seconds=30)
        engine.worker().run_until_idle(max_runs=1)

        assert engine.sampling.expire_deadlines() == []
        clock.advance(31)
        assert engine.sampling.expire_deadlines() == [batch.id]

        engine.worker().run_until_idle()
        batch = engine.batch(batch.id)
        assert batch.status is BatchStatus.DONE
        assert batch.completed_count == 1
        cancelled = [
            r for r in _runs(engine, batch_id=batch.id, op="sample")
            if r.status is RunStatus.CANCELLED
        ]
        assert len(cancelled) == 2

    def test_deadline_without_successes_fails(self, engine: Any, clock: Any) -> None:
        from quorum.contracts.enums import BatchStatus

        batch = engine.ask("Why is the sky blue?", n=2, deadline_seconds=10)
        clock.advance(11)

        engine.sampling.expire_deadlines()

        assert engine.batch(batch.id).status is BatchStatus.FAILED


class TestReduction:
    def test_without_meta_steps_best_sample_is_final(self, engine: Any) -> None:
        from quorum.contracts.enums import AnswerKind
        from quorum.contracts.records import Answer, Question

        batch = engine.ask("Why is the sky blue?", n=2, meta_steps=[])
        engine.worker().run_until_idle()

        batch = engine.batch(batch.id)
        final = engine.store.get(Answer, batch.final_answer_id)
        assert final.kind is AnswerKind.FINAL
        assert final.text == "answer 0"
        assert final.extra["source_answer_id"].endswith("-answer")
        assert engine.store.get(Question, batch.question_id).canonical_answer_id == final.id

    def test_rank_only_picks_top_ranked_sample(self, engine: Any) -> None:
        from quorum.contracts.enums import MetaOperation
        from quorum.contracts.records import Answer

        batch = engine.ask("Why is the sky blue?", n=3, meta_steps=[MetaOperation.RANK])
        engine.worker().run_until_idle()

        final = engine.store.get(Answer, engine.batch(batch.id).final_answer_id)
        assert final.text == "answer 2"
        assert final.rank == 1

    def test_disagreement_verdict_kept_on_batch(self, engine: Any) -> None:
        from quorum.contracts.enums import BatchStatus, MetaOperation

        batch = engine.ask(
            "Why is the sky blue?",
            n=2,
            meta_steps=[MetaOperation.DETECT_DISAGREEMENT, MetaOperation.SYNTHESIZE],
        )
        engine.worker().run_until_idle()

        batch = engine.batch(batch.id)
        assert batch.status is BatchStatus.DONE
        assert batch.extra["disagreement"] == {
            "disagreement": False,
            "summary": "The answers agree.",
        }

    def test_unparseable_rank_is_not_fatal(self, make_engine: Any, make_invoker: Any) -> None:
        from quorum.contracts.enums import AnswerKind, BatchStatus

        engine = make_engine(
            invoker=make_invoker(rank=lambda r: ProviderResponse(text="They are all lovely."))
        )
        batch = engine.ask("Why is the sky blue?", n=2)
        engine.worker().run_until_idle()

        batch = engine.batch(batch.id)
        assert batch.status is BatchStatus.DONE
        assert "rank_parse_error" in batch.extra
        samples = _answers(engine, batch_id=batch.id, kind=AnswerKind.SAMPLE)
        assert all(a.score is None for a in samples)

    def test_failed_meta_run_fails_batch(self, make_engine: Any, make_invoker: Any) -> None:
        from quorum.contracts.enums import BatchStatus

        engine = make_engine(
            invoker=make_invoker(
                synthesize=lambda r: ProviderFailure("HTTP 400: too long", retryable=False)
            )
        )
        batch = engine.ask("Why is the sky blue?", n=2)
        engine.worker().run_until_idle()

        batch = engine.batch(batch.id)
        assert batch.status is BatchStatus.FAILED
        assert "synthesize" in batch.error["reason"]
        assert batch.final_answer_id is None

    def test_sample_answers_in_sample_order(self, engine: Any) -> None:
        batch = engine.ask("Why is the sky blue?", n=4, meta_steps=[])
        engine.worker().run_until_idle()

        answers = engine.sampling.sample_answers(engine.batch(batch.id))

        assert [a.text for a in answers] == ["answer 0", "answer 1", "answer 2", "answer 3"]


class TestControl:
    def test_cancel_batch(self, engine: Any) -> None:
        from quorum.contracts.enums import BatchStatus, RunStatus

        batch = engine.ask("Why is the sky blue?", n=3)

        cancelled = engine.sampling.cancel_batch(batch.id)

        assert cancelled.status is BatchStatus.FAILED
        assert cancelled.error["kind"] == "cancelled"
        assert all(r.status is RunStatus.CANCELLED for r in _runs(engine, batch_id=batch.id))

    def test_reconcile_settles_missed_completions(self, engine: Any, clock: Any) -> None:
        """Runs finished by a process that never told this one are picked up."""
        from quorum.contracts.enums import BatchStatus
        from quorum.engine.state_machine import RunStateMachine

        batch = engine.ask("Why is the sky blue?", n=2, meta_steps=[])
        elsewhere = RunStateMachine(engine.store, engine.settings.retry, clock=clock)
        for run_id in batch.run_ids:
            elsewhere.lease(run_id, "remote", clock() + engine.leases.duration)
            elsewhere.start(run_id, "remote")
            elsewhere.succeed(run_id, "remote", ProviderResponse(text="remote answer"), 0.0)
        assert engine.batch(batch.id).status is BatchStatus.SAMPLING

        examined = engine.sampling.reconcile()

        assert examined == 1
        batch = engine.batch(batch.id)
        assert batch.status is BatchStatus.DONE
        assert batch.completed_count == 2
