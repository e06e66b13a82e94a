# src/quorum/engine/sampling.py
"""Sampling and ensemble engine.

A batch asks the same question N times with independent decoding
(per-sample temperature and seed), then reduces the successful samples
through an ordered list of meta operations:

    pending -> sampling -> reducing -> done
                   |            |-> failed   (a meta run did not succeed)
                   |-> failed                (no successful sample)

Member completions are counted with a compare-and-set on the batch, so
``completed_count`` never exceeds ``target_count`` and the move into
``reducing`` happens exactly once, whichever member (or the deadline
sweep) gets there first.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any

import structlog

from quorum.contracts.enums import SAMPLE_OP, AnswerKind, BatchStatus, MetaOperation, RunStatus
from quorum.contracts.errors import StaleRecord, ValidationError
from quorum.contracts.provider import ProviderRequest
from quorum.contracts.records import Answer, Batch, Question, Run
from quorum.core.clock import Clock, generate_id, utc_now
from quorum.core.config import ProfileSettings, QuorumSettings
from quorum.core.store import RecordStore
from quorum.engine.events import EventBus
from quorum.engine.scheduler import QueueScheduler
from quorum.engine.state_machine import RunStateMachine
from quorum.engine.templates import (
    meta_template,
    parse_disagreement,
    parse_scores,
    rank_order,
)

logger = structlog.get_logger(__name__)

# Run.extra keys linking a run to its place in a batch
ROLE_KEY = "batch_role"
ROLE_SAMPLE = "sample"
ROLE_REDUCE = "reduce"


def sample_request(profile: ProfileSettings, question: str, index: int) -> dict[str, Any]:
    """Provider request for sample ``index`` of a question.

    The prompt is identical for every sample; only the decoding
    parameters differ. ``sample_index`` is part of the request so that
    the N samples of one batch never serve each other from cache.
    """
    messages: list[dict[str, str]] = []
    if profile.system_prompt:
        messages.append({"role": "system", "content": profile.system_prompt})
    messages.append({"role": "user", "content": question})

    params = dict(profile.params)
    if profile.temperatures:
        params["temperature"] = profile.temperatures[index % len(profile.temperatures)]
    if profile.seed_base is not None:
        params["seed"] = profile.seed_base + index

    request = ProviderRequest(
        provider=profile.provider,
        model=profile.model,
        messages=tuple(messages),
        params=params,
    )
    return {**request.to_dict(), "sample_index": index}


def meta_request(
    profile: ProfileSettings,
    operation: MetaOperation,
    question: str,
    answers: Sequence[Answer],
    disagreement: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Provider request for one meta operation over ``answers``."""
    prompt = meta_template(operation, profile.templates).render(
        question=question,
        answers=answers,
        disagreement=disagreement,
    )
    messages: list[dict[str, str]] = []
    if profile.system_prompt:
        messages.append({"role": "system", "content": profile.system_prompt})
    messages.append({"role": "user", "content": prompt})
    return ProviderRequest(
        provider=profile.provider,
        model=profile.model,
        messages=tuple(messages),
        params=dict(profile.params),
    ).to_dict()


class SamplingEngine:
    """Fans questions out into batches and reduces them to a final answer.

    Subscribes to ``run_finished`` on construction; emits
    ``batch_finished`` when a batch ends ``done`` or ``failed``.
    """

    def __init__(
        self,
        store: RecordStore,
        settings: QuorumSettings,
        scheduler: QueueScheduler,
        state_machine: RunStateMachine,
        events: EventBus,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._settings = settings
        self._scheduler = scheduler
        self._sm = state_machine
        self._events = events
        self._clock = clock
        events.on_run_finished(self.on_run_finished)

    # === Questions ===

    def ensure_question(
        self, question: str | Question, *, tags: Iterable[str] = ()
    ) -> Question:
        """Persist a question given as text or as an unsaved record."""
        if isinstance(question, Question):
            if question.version == 0:
                self._store.put(question)
            return question
        if not question.strip():
            raise ValidationError("Question text is empty")
        record = Question(
            id=generate_id(),
            text=question,
            created_at=self._clock(),
            tags=list(tags),
        )
        self._store.put(record)
        return record

    # === Fan-out ===

    def fan_out(
        self,
        question: str | Question,
        n: int | None = None,
        profile: str | None = None,
        *,
        meta_steps: Sequence[MetaOperation] | None = None,
        completion_threshold: int | None = None,
        deadline_seconds: float | None = None,
        queue: str | None = None,
        priority: int = 0,
        pipeline_id: str | None = None,
        step_id: str | None = None,
    ) -> Batch:
        """Create a batch of ``n`` sample runs for one question.

        Raises:
            ValidationError: If the profile or queue is unknown, the queue
                rejects sampling, or the threshold is outside 1..n
        """
        n = n or self._settings.batch.default_n
        if n < 1:
            raise ValidationError(f"Batch size must be positive, got {n}")
        profile_name, profile_settings = self._settings.get_profile(profile)
        queue_name = queue or profile_settings.queue
        if not self._settings.get_queue(queue_name).allows(SAMPLE_OP):
            raise ValidationError(f"Queue '{queue_name}' does not allow op '{SAMPLE_OP}'")

        threshold = completion_threshold or self._settings.batch.threshold_for(n)
        if not 1 <= threshold <= n:
            raise ValidationError(f"Completion threshold {threshold} is outside 1..{n}")
        steps = list(self._settings.batch.meta_steps if meta_steps is None else meta_steps)
        if deadline_seconds is None:
            deadline_seconds = self._settings.batch.deadline_seconds

        record = self.ensure_question(question)
        now = self._clock()
        batch = Batch(
            id=generate_id(),
            question_id=record.id,
            target_count=n,
            completion_threshold=threshold,
            created_at=now,
            profile_name=profile_name,
            queue_name=queue_name,
            deadline=now + timedelta(seconds=deadline_seconds) if deadline_seconds else None,
            run_ids=[generate_id() for _ in range(n)],
            meta_steps=[MetaOperation(step).value for step in steps],
            pipeline_id=pipeline_id,
            step_id=step_id,
        )
        self._store.put(batch)
        logger.info(
            "batch_created",
            batch_id=batch.id,
            question_id=record.id,
            target_count=n,
            completion_threshold=threshold,
            profile=profile_name,
        )

        for index, run_id in enumerate(batch.run_ids):
            self._scheduler.submit(
                SAMPLE_OP,
                sample_request(profile_settings, record.text, index),
                profile=profile_name,
                queue=queue_name,
                priority=priority,
                batch_id=batch.id,
                pipeline_id=pipeline_id,
                step_id=step_id,
                question_id=record.id,
                run_id=run_id,
                extra={ROLE_KEY: ROLE_SAMPLE, "sample_index": index},
            )

        self._open(batch.id)
        return self._store.get(Batch, batch.id)

    def _open(self, batch_id: str) -> None:
        """pending -> sampling, reducing at once if members already settled."""
        now = self._clock()
        started = False

        def mutate(batch: Batch) -> bool | None:
            nonlocal started
            started = False
            if batch.status is not BatchStatus.PENDING:
                return False
            batch.status = BatchStatus.SAMPLING
            if self._reduction_due(batch, now):
                self._begin_reduction(batch, now)
                started = True
            return None

        batch = self._store.update(Batch, batch_id, mutate)
        if started:
            self._after_reduction_started(batch)

    # === Member accounting ===

    def on_run_finished(self, run: Run) -> None:
        """Route a finished run to its batch, if it belongs to one."""
        if run.batch_id is None:
            return
        role = run.extra.get(ROLE_KEY)
        if role == ROLE_SAMPLE:
            self._settle_member(run)
        elif role == ROLE_REDUCE:
            self._on_meta_finished(run)

    def _settle_member(self, run: Run) -> None:
        batch = self._store.find(Batch, run.batch_id or "")
        if batch is None or batch.status not in (BatchStatus.PENDING, BatchStatus.SAMPLING):
            return
        if run.status is RunStatus.SUCCEEDED:
            # written before counting so that a counted member always has its answer
            self._sample_answer(run, batch)

        now = self._clock()
        started = False

        def mutate(current: Batch) -> bool | None:
            nonlocal started
            started = False
            if current.status not in (BatchStatus.PENDING, BatchStatus.SAMPLING):
                return False
            if run.id not in current.run_ids or run.id in current.settled_run_ids:
                return False
            current.settled_run_ids = [*current.settled_run_ids, run.id]
            if run.status is RunStatus.SUCCEEDED and current.completed_count < current.target_count:
                current.completed_count += 1
            else:
                current.failed_count += 1
            if current.status is BatchStatus.SAMPLING and self._reduction_due(current, now):
                self._begin_reduction(current, now)
                started = True
            return None

        batch = self._store.update(Batch, batch.id, mutate)
        logger.debug(
            "batch_member_settled",
            batch_id=batch.id,
            run_id=run.id,
            run_status=run.status.value,
            completed=batch.completed_count,
            failed=batch.failed_count,
        )
        if started:
            self._after_reduction_started(batch)

    def _sample_answer(self, run: Run, batch: Batch) -> Answer:
        return self._put_answer(
            Answer(
                id=f"{run.id}-answer",
                kind=AnswerKind.SAMPLE,
                text=run.response_text or "",
                created_at=self._clock(),
                run_id=run.id,
                question_id=batch.question_id,
                batch_id=batch.id,
                extra={"sample_index": run.extra.get("sample_index")},
            )
        )

    def _put_answer(self, answer: Answer) -> Answer:
        try:
            self._store.put(answer)
        except StaleRecord:
            # already written by an earlier delivery of the same event
            return self._store.get(Answer, answer.id)
        return answer

    @staticmethod
    def _reduction_due(batch: Batch, now: datetime) -> bool:
        if batch.completed_count >= batch.completion_threshold:
            return True
        if batch.settled_count >= batch.target_count:
            return True
        return batch.deadline is not None and now >= batch.deadline

    @staticmethod
    def _begin_reduction(batch: Batch, now: datetime) -> None:
        """sampling -> reducing, or failed when nothing succeeded."""
        batch.reduction_started_at = now
        if batch.completed_count == 0:
            batch.status = BatchStatus.FAILED
            batch.finished_at = now
            batch.error = {"reason": "no successful samples", "failed_count": batch.failed_count}
        else:
            batch.status = BatchStatus.REDUCING

    def _after_reduction_started(self, batch: Batch) -> None:
        logger.info(
            "batch_reduction_started",
            batch_id=batch.id,
            status=batch.status.value,
            completed=batch.completed_count,
            failed=batch.failed_count,
        )
        self._cancel_unsettled(batch)
        if batch.status is BatchStatus.FAILED:
            self._events.batch_finished(batch)
        else:
            self.advance(batch.id)

    def _cancel_unsettled(self, batch: Batch) -> None:
        settled = set(batch.settled_run_ids)
        for run_id in batch.run_ids:
            if run_id in settled:
                continue
            run = self._store.find(Run, run_id)
            if run is not None and not run.is_terminal:
                self._sm.cancel(run_id)

    # === Reduction ===

    def sample_answers(self, batch: Batch) -> list[Answer]:
        """Sample answers counted toward the batch, in sample order.

        The order is stable across batches of the same question so that
        meta prompts over identical samples hash identically.
        """
        counted = set(batch.settled_run_ids)
        answers = [
            answer
            for answer in self._store.query(
                Answer, order_by=["created_at"], batch_id=batch.id, kind=AnswerKind.SAMPLE
            )
            if answer.run_id in counted
        ]
        return sorted(answers, key=lambda answer: answer.extra.get("sample_index") or 0)

    def advance(self, batch_id: str) -> None:
        """Submit the next meta run of a reducing batch, or finish it.

        Safe to call repeatedly: a meta step is submitted at most once.
        """
        batch = self._store.get(Batch, batch_id)
        if batch.status is not BatchStatus.REDUCING:
            return
        index = batch.meta_index
        if index >= len(batch.meta_steps):
            self._finalize(batch)
            return

        if len(batch.meta_run_ids) > index:
            run = self._store.find(Run, batch.meta_run_ids[index])
            if run is None:
                # reserved but never submitted (crash between the two writes)
                self._submit_meta(batch, index, batch.meta_run_ids[index])
            elif run.is_terminal:
                self._on_meta_finished(run)
            return

        run_id = generate_id()
        reserved = False

        def mutate(current: Batch) -> bool | None:
            nonlocal reserved
            reserved = False
            if current.status is not BatchStatus.REDUCING or current.meta_index != index:
                return False
            if len(current.meta_run_ids) != index:
                return False
            current.meta_run_ids = [*current.meta_run_ids, run_id]
            reserved = True
            return None

        batch = self._store.update(Batch, batch_id, mutate)
        if reserved:
            self._submit_meta(batch, index, run_id)

    def _meta_profile(self, batch: Batch) -> str | None:
        return self._settings.batch.meta_profile or batch.profile_name

    def _submit_meta(self, batch: Batch, index: int, run_id: str) -> None:
        operation = MetaOperation(batch.meta_steps[index])
        question = self._store.get(Question, batch.question_id)
        answers = self.sample_answers(batch)
        try:
            self.submit_meta(
                operation,
                question,
                answers,
                profile=self._meta_profile(batch),
                disagreement=batch.extra.get("disagreement"),
                batch_id=batch.id,
                pipeline_id=batch.pipeline_id,
                step_id=batch.step_id,
                run_id=run_id,
                extra={ROLE_KEY: ROLE_REDUCE, "meta_index": index},
            )
        except ValidationError as e:
            logger.error("meta_submit_rejected", batch_id=batch.id, operation=operation.value)
            self._fail(batch.id, {"reason": str(e), "operation": operation.value})

    def submit_meta(
        self,
        operation: MetaOperation,
        question: Question,
        answers: Sequence[Answer],
        *,
        profile: str | None = None,
        queue: str | None = None,
        priority: int = 0,
        disagreement: dict[str, Any] | None = None,
        batch_id: str | None = None,
        pipeline_id: str | None = None,
        step_id: str | None = None,
        run_id: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> Run:
        """Submit one meta run over ``answers``.

        The input answer ids are kept on the run so the result can be
        applied to them when it arrives.

        Raises:
            ValidationError: If there are no answers, or the profile,
                queue or template is invalid
        """
        if not answers:
            raise ValidationError(f"Meta operation '{operation.value}' needs at least one answer")
        profile_name, profile_settings = self._settings.get_profile(profile)
        request = meta_request(profile_settings, operation, question.text, answers, disagreement)
        return self._scheduler.submit(
            operation.op,
            request,
            profile=profile_name,
            queue=queue,
            priority=priority,
            batch_id=batch_id,
            pipeline_id=pipeline_id,
            step_id=step_id,
            question_id=question.id,
            run_id=run_id,
            extra={
                **(extra or {}),
                "operation": operation.value,
                "input_answer_ids": [answer.id for answer in answers],
            },
        )

    def _on_meta_finished(self, run: Run) -> None:
        batch = self._store.find(Batch, run.batch_id or "")
        if batch is None or batch.status is not BatchStatus.REDUCING:
            return
        index = run.extra.get("meta_index")
        if index != batch.meta_index or index >= len(batch.meta_run_ids):
            return
        if batch.meta_run_ids[index] != run.id:
            return

        operation = MetaOperation(batch.meta_steps[index])
        if run.status is not RunStatus.SUCCEEDED:
            self._fail(
                batch.id,
                {
                    "reason": f"meta operation '{operation.value}' ended {run.status.value}",
                    "run_id": run.id,
                    "run_error": run.error,
                },
            )
            return

        answer = self.apply_meta_result(run)

        def mutate(current: Batch) -> bool | None:
            if current.status is not BatchStatus.REDUCING or current.meta_index != index:
                return False
            current.meta_index = index + 1
            if operation is MetaOperation.SYNTHESIZE:
                current.final_answer_id = answer.id
            elif operation is MetaOperation.DETECT_DISAGREEMENT:
                current.extra = {**current.extra, "disagreement": answer.extra.get("verdict")}
            elif operation is MetaOperation.RANK and "parse_error" in answer.extra:
                current.extra = {**current.extra, "rank_parse_error": answer.extra["parse_error"]}
            return None

        self._store.update(Batch, batch.id, mutate)
        self.advance(batch.id)

    def apply_meta_result(self, run: Run) -> Answer:
        """Record the outcome of a succeeded meta run.

        rank: writes ``score`` and ``rank`` onto the input answers.
        detect_disagreement: stores the verdict on the produced answer.
        synthesize: produces a ``final`` answer and makes it the
        question's canonical answer.

        Returns:
            The answer produced by the run (idempotent per run)
        """
        operation = MetaOperation(run.extra["operation"])
        text = run.response_text or ""
        inputs = [
            answer
            for answer_id in run.extra.get("input_answer_ids", [])
            if (answer := self._store.find(Answer, answer_id)) is not None
        ]
        answer_extra: dict[str, Any] = {"input_answer_ids": [a.id for a in inputs]}

        if operation is MetaOperation.RANK:
            scores = parse_scores(text, len(inputs))
            if scores is None:
                answer_extra["parse_error"] = "reply did not contain one score per candidate"
                logger.warning("rank_reply_unparsed", run_id=run.id)
            else:
                for answer, score, rank in zip(inputs, scores, rank_order(scores), strict=True):
                    self._score(answer.id, score, rank)
                answer_extra["scores"] = scores
        elif operation is MetaOperation.DETECT_DISAGREEMENT:
            answer_extra["verdict"] = parse_disagreement(text)

        kind = AnswerKind.FINAL if operation is MetaOperation.SYNTHESIZE else AnswerKind.META
        answer = self._put_answer(
            Answer(
                id=f"{run.id}-answer",
                kind=kind,
                text=text,
                created_at=self._clock(),
                run_id=run.id,
                question_id=run.question_id,
                batch_id=run.batch_id,
                operation=operation.value,
                extra=answer_extra,
            )
        )
        if kind is AnswerKind.FINAL:
            self._link_canonical(answer)
        return answer

    def _score(self, answer_id: str, score: float, rank: int) -> None:
        def mutate(answer: Answer) -> bool | None:
            if answer.score == score and answer.rank == rank:
                return False
            answer.score = score
            answer.rank = rank
            return None

        self._store.update(Answer, answer_id, mutate)

    def _link_canonical(self, answer: Answer) -> None:
        if answer.question_id is None:
            return

        def mutate(question: Question) -> bool | None:
            if question.canonical_answer_id == answer.id:
                return False
            question.canonical_answer_id = answer.id
            return None

        self._store.update(Question, answer.question_id, mutate)

    def _finalize(self, batch: Batch) -> None:
        final_id = batch.final_answer_id
        if final_id is None:
            # no synthesize step: the best sample becomes the final answer
            best = self._best_sample(self.sample_answers(batch))
            final = self._put_answer(
                Answer(
                    id=f"{batch.id}-final",
                    kind=AnswerKind.FINAL,
                    text=best.text,
                    created_at=self._clock(),
                    run_id=best.run_id,
                    question_id=batch.question_id,
                    batch_id=batch.id,
                    score=best.score,
                    rank=best.rank,
                    extra={"source_answer_id": best.id},
                )
            )
            self._link_canonical(final)
            final_id = final.id

        now = self._clock()
        done = False

        def mutate(current: Batch) -> bool | None:
            nonlocal done
            done = False
            if current.status is not BatchStatus.REDUCING:
                return False
            current.status = BatchStatus.DONE
            current.final_answer_id = final_id
            current.finished_at = now
            done = True
            return None

        batch = self._store.update(Batch, batch.id, mutate)
        if done:
            logger.info("batch_done", batch_id=batch.id, final_answer_id=final_id)
            self._events.batch_finished(batch)

    @staticmethod
    def _best_sample(answers: Sequence[Answer]) -> Answer:
        ranked = [a for a in answers if a.rank is not None]
        if ranked:
            return min(ranked, key=lambda a: a.rank or 0)
        scored = [a for a in answers if a.score is not None]
        if scored:
            return max(scored, key=lambda a: a.score or 0.0)
        return answers[0]

    def _fail(self, batch_id: str, error: dict[str, Any]) -> Batch:
        now = self._clock()
        failed = False

        def mutate(batch: Batch) -> bool | None:
            nonlocal failed
            failed = False
            if batch.status.is_terminal:
                return False
            batch.status = BatchStatus.FAILED
            batch.error = error
            batch.finished_at = now
            failed = True
            return None

        batch = self._store.update(Batch, batch_id, mutate)
        if failed:
            logger.error("batch_failed", batch_id=batch.id, **error)
            self._cancel_unsettled(batch)
            self._cancel_meta(batch)
            self._events.batch_finished(batch)
        return batch

    def _cancel_meta(self, batch: Batch) -> None:
        for run_id in batch.meta_run_ids:
            run = self._store.find(Run, run_id)
            if run is not None and not run.is_terminal:
                self._sm.cancel(run_id)

    # === Control ===

    def cancel_batch(self, batch_id: str) -> Batch:
        """Fail a batch and cancel its unfinished member and meta runs."""
        return self._fail(batch_id, {"reason": "batch cancelled", "kind": "cancelled"})

    def expire_deadlines(self, now: datetime | None = None) -> list[str]:
        """Start partial reduction of sampling batches past their deadline.

        Returns:
            Ids of batches whose reduction this call started
        """
        now = now or self._clock()
        expired = []
        for batch in self._store.query(
            Batch,
            lambda b: b.deadline is not None and b.deadline <= now,
            status=BatchStatus.SAMPLING,
        ):
            started = False

            def mutate(current: Batch) -> bool | None:
                nonlocal started
                started = False
                if current.status is not BatchStatus.SAMPLING:
                    return False
                self._begin_reduction(current, now)
                started = True
                return None

            updated = self._store.update(Batch, batch.id, mutate)
            if started:
                logger.info("batch_deadline_elapsed", batch_id=batch.id)
                expired.append(batch.id)
                self._after_reduction_started(updated)
        return expired

    def reconcile(self) -> int:
        """Catch up on member and meta completions missed by this process.

        Returns:
            Number of batches examined
        """
        examined = 0
        for batch in self._store.query(
            Batch, status=[BatchStatus.PENDING, BatchStatus.SAMPLING, BatchStatus.REDUCING]
        ):
            examined += 1
            if batch.status is BatchStatus.PENDING:
                self._open(batch.id)
            elif batch.status is BatchStatus.SAMPLING:
                settled = set(batch.settled_run_ids)
                for run_id in batch.run_ids:
                    if run_id in settled:
                        continue
                    run = self._store.find(Run, run_id)
                    if run is not None and run.is_terminal:
                        self._settle_member(run)
            else:
                self.advance(batch.id)
        return examined
