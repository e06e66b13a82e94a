# src/quorum/engine/pipeline.py
"""Pipeline executor: runs a step graph to completion.

Each evaluation pass over a pipeline run:

1. Polls running steps whose work (runs, batches, child pipelines) may
   have finished, and completes them
2. Applies the failure policy (skip unstarted steps under ``abort``,
   skip dependents of failed steps under ``continue``)
3. Marks pending steps whose dependencies all succeeded as ready and
   dispatches them in definition order, up to ``max_parallel_steps``
4. Finishes the pipeline once every step is terminal

Passes are triggered by completion events and by the reconcile sweep.
Every step change is a compare-and-set on the pipeline run, so two
threads evaluating the same pipeline never dispatch or complete a step
twice.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import structlog

from quorum.contracts.enums import (
    AnswerKind,
    BatchStatus,
    FailurePolicy,
    PipelineStatus,
    RunStatus,
    StepStatus,
    StepType,
)
from quorum.contracts.errors import RecordNotFound, ValidationError
from quorum.contracts.pipeline import (
    AnyStep,
    ComposeStep,
    MetaStep,
    PipelineDefinition,
    SampleStep,
)
from quorum.contracts.records import (
    Answer,
    Batch,
    PipelineRun,
    Question,
    Record,
    Run,
    StepState,
)
from quorum.core.catalog import PipelineCatalog, parse_pipeline, validate_graph
from quorum.core.clock import Clock, generate_id, utc_now
from quorum.core.config import QuorumSettings
from quorum.core.dag import PipelineGraph
from quorum.core.store import RecordStore
from quorum.engine.events import EventBus
from quorum.engine.sampling import SamplingEngine
from quorum.engine.state_machine import RunStateMachine
from quorum.engine.templates import PromptTemplate
from quorum.plugins.context import CollaboratorContext
from quorum.plugins.manager import PluginManager

logger = structlog.get_logger(__name__)

# Lookup order when resolving a lineage id to a record
_LINEAGE_TYPES: tuple[type[Any], ...] = (Question, Answer, Batch, Run, PipelineRun)


@dataclass
class StepOutcome:
    """Result of a finished step."""

    status: StepStatus
    outputs: list[str] = field(default_factory=list)
    error: str | None = None

    @classmethod
    def succeeded(cls, outputs: Iterable[str]) -> StepOutcome:
        return cls(StepStatus.SUCCEEDED, list(outputs))

    @classmethod
    def failed(cls, error: str) -> StepOutcome:
        return cls(StepStatus.FAILED, error=error)


StartHandler = Callable[[PipelineRun, Any], StepOutcome | None]
PollHandler = Callable[[PipelineRun, Any, StepState], StepOutcome | None]


class PipelineExecutor:
    """Loads, starts, advances and cancels pipeline runs.

    Subscribes to run, batch and pipeline completion on construction.
    """

    def __init__(
        self,
        store: RecordStore,
        settings: QuorumSettings,
        sampling: SamplingEngine,
        state_machine: RunStateMachine,
        events: EventBus,
        plugins: PluginManager,
        catalog: PipelineCatalog | None = None,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._settings = settings
        self._sampling = sampling
        self._sm = state_machine
        self._events = events
        self._plugins = plugins
        self._catalog = catalog if catalog is not None else PipelineCatalog()
        self._clock = clock
        self._local = threading.local()

        # Dispatch table keyed by step tag: (start, poll). Steps without a
        # poll handler always finish inside start.
        self._handlers: dict[StepType, tuple[StartHandler, PollHandler | None]] = {
            StepType.SAMPLE: (self._start_sample, self._poll_sample),
            StepType.META: (self._start_meta, self._poll_meta),
            StepType.IMPORT: (self._start_collaborator, None),
            StepType.FILTER: (self._start_collaborator, None),
            StepType.TRANSFORM: (self._start_collaborator, None),
            StepType.COMPOSE: (self._start_compose, self._poll_compose),
        }

        events.on_run_finished(self._on_run_finished)
        events.on_batch_finished(self._on_batch_finished)
        events.on_pipeline_finished(self._on_pipeline_finished)

    @property
    def catalog(self) -> PipelineCatalog:
        return self._catalog

    # === Loading ===

    def load(self, source: PipelineDefinition | Mapping[str, Any] | str) -> PipelineDefinition:
        """Validate a definition given as a model, a mapping, or a catalog name.

        Raises:
            ValidationError: If the definition is malformed, references an
                unknown step or pipeline, or composes itself recursively
            CyclicPipeline: If the step graph has a cycle
        """
        if isinstance(source, str):
            definition = self._catalog.get(source)
        elif isinstance(source, PipelineDefinition):
            definition = source
            validate_graph(definition)
        else:
            definition = parse_pipeline(source)
        self._catalog.check_definition(definition)
        return definition

    # === Starting ===

    def start(
        self,
        source: PipelineDefinition | Mapping[str, Any] | str,
        *,
        params: Mapping[str, Any] | None = None,
        parent_pipeline_id: str | None = None,
        parent_step_id: str | None = None,
    ) -> PipelineRun:
        """Create a pipeline run and dispatch its first steps.

        Raises:
            ValidationError: If the definition is rejected by ``load``
        """
        pipeline = self._create(
            self.load(source),
            params=dict(params or {}),
            parent_pipeline_id=parent_pipeline_id,
            parent_step_id=parent_step_id,
        )
        self.advance(pipeline.id)
        return self._store.get(PipelineRun, pipeline.id)

    def _create(
        self,
        definition: PipelineDefinition,
        *,
        params: dict[str, Any],
        parent_pipeline_id: str | None,
        parent_step_id: str | None,
    ) -> PipelineRun:
        pipeline = PipelineRun(
            id=generate_id(),
            name=definition.name,
            definition=definition.model_dump(mode="json"),
            created_at=self._clock(),
            status=PipelineStatus.RUNNING,
            failure_policy=definition.failure_policy,
            steps={step.id: StepState() for step in definition.steps},
            params=params,
            parent_pipeline_id=parent_pipeline_id,
            parent_step_id=parent_step_id,
        )
        self._store.put(pipeline)
        logger.info(
            "pipeline_started",
            pipeline_id=pipeline.id,
            name=definition.name,
            steps=len(definition.steps),
            failure_policy=definition.failure_policy.value,
            parent_pipeline_id=parent_pipeline_id,
            parent_step_id=parent_step_id,
        )
        return pipeline

    # === Advancing ===

    def advance(self, pipeline_id: str) -> None:
        """Re-evaluate a pipeline until nothing more can happen right now.

        A call made while this thread is already evaluating the same
        pipeline (an event fired from inside a step handler) only marks it
        for another pass.
        """
        active: set[str] = self._local.__dict__.setdefault("active", set())
        dirty: set[str] = self._local.__dict__.setdefault("dirty", set())
        if pipeline_id in active:
            dirty.add(pipeline_id)
            return
        active.add(pipeline_id)
        try:
            while True:
                dirty.discard(pipeline_id)
                self._evaluate(pipeline_id)
                if pipeline_id not in dirty:
                    break
        finally:
            active.discard(pipeline_id)
            dirty.discard(pipeline_id)

    def _evaluate(self, pipeline_id: str) -> None:
        pipeline = self._store.get(PipelineRun, pipeline_id)
        if pipeline.status.is_terminal:
            return
        definition = PipelineDefinition.model_validate(pipeline.definition)
        graph = PipelineGraph.from_definition(definition)

        # synchronous steps can unlock further steps within one evaluation
        while True:
            pipeline = self._store.get(PipelineRun, pipeline_id)
            if pipeline.status.is_terminal:
                return
            for step in definition.steps:
                state = pipeline.steps[step.id]
                poll = self._handlers[StepType(step.type)][1]
                if state.status is StepStatus.RUNNING and state.dispatched and poll is not None:
                    outcome = poll(pipeline, step, state)
                    if outcome is not None:
                        self._complete(pipeline.id, step, outcome)

            self._apply_policy(pipeline.id, graph)
            pipeline = self._mark_ready(pipeline.id, graph)
            if self._aborting(pipeline) or not self._dispatch_ready(pipeline, definition):
                break
        self._finish_if_done(pipeline_id)

    def _aborting(self, pipeline: PipelineRun) -> bool:
        return pipeline.failure_policy is FailurePolicy.ABORT and any(
            state.status is StepStatus.FAILED for state in pipeline.steps.values()
        )

    def _apply_policy(self, pipeline_id: str, graph: PipelineGraph) -> PipelineRun:
        now = self._clock()

        def mutate(pipeline: PipelineRun) -> bool | None:
            failed = [sid for sid, s in pipeline.steps.items() if s.status is StepStatus.FAILED]
            if not failed:
                return False
            if pipeline.failure_policy is FailurePolicy.ABORT:
                doomed = {
                    sid: f"pipeline aborted after step '{failed[0]}' failed"
                    for sid, s in pipeline.steps.items()
                    if s.status in (StepStatus.PENDING, StepStatus.READY)
                }
            else:
                doomed = {}
                for sid in failed:
                    for dependent in graph.dependents(sid):
                        state = pipeline.steps[dependent]
                        if state.status in (StepStatus.PENDING, StepStatus.READY):
                            doomed.setdefault(dependent, f"upstream step '{sid}' failed")
            if not doomed:
                return False
            for sid, reason in doomed.items():
                state = pipeline.steps[sid]
                state.status = StepStatus.SKIPPED
                state.error = reason
                state.finished_at = now
            return None

        pipeline = self._store.update(PipelineRun, pipeline_id, mutate)
        return pipeline

    def _mark_ready(self, pipeline_id: str, graph: PipelineGraph) -> PipelineRun:
        def mutate(pipeline: PipelineRun) -> bool | None:
            changed = False
            for sid, state in pipeline.steps.items():
                if state.status is not StepStatus.PENDING:
                    continue
                if all(
                    pipeline.steps[dep].status is StepStatus.SUCCEEDED
                    for dep in graph.dependencies(sid)
                ):
                    state.status = StepStatus.READY
                    changed = True
            return None if changed else False

        return self._store.update(PipelineRun, pipeline_id, mutate)

    def _parallel_limit(self, definition: PipelineDefinition) -> int | None:
        return definition.max_parallel_steps or self._settings.pipelines.max_parallel_steps

    def _dispatch_ready(self, pipeline: PipelineRun, definition: PipelineDefinition) -> int:
        """Start ready steps in definition order. Returns how many started."""
        limit = self._parallel_limit(definition)
        started = 0
        for step in definition.steps:
            if pipeline.steps[step.id].status is not StepStatus.READY:
                continue
            if not self._claim(pipeline.id, step.id, limit):
                if limit is not None:
                    break
                continue
            started += 1
            self._run_step(pipeline.id, step)
            pipeline = self._store.get(PipelineRun, pipeline.id)
            if pipeline.status.is_terminal or self._aborting(pipeline):
                break
        return started

    def _claim(self, pipeline_id: str, step_id: str, limit: int | None) -> bool:
        """ready -> running, if the pipeline still runs and has a free slot."""
        now = self._clock()
        claimed = False

        def mutate(pipeline: PipelineRun) -> bool | None:
            nonlocal claimed
            claimed = False
            if pipeline.status.is_terminal:
                return False
            state = pipeline.steps[step_id]
            if state.status is not StepStatus.READY:
                return False
            running = sum(1 for s in pipeline.steps.values() if s.status is StepStatus.RUNNING)
            if limit is not None and running >= limit:
                return False
            state.status = StepStatus.RUNNING
            state.started_at = now
            claimed = True
            return None

        self._store.update(PipelineRun, pipeline_id, mutate)
        return claimed

    def _run_step(self, pipeline_id: str, step: AnyStep) -> None:
        pipeline = self._store.get(PipelineRun, pipeline_id)
        start, poll = self._handlers[StepType(step.type)]
        logger.info("step_started", pipeline_id=pipeline_id, step_id=step.id, type=step.type)
        try:
            outcome = start(pipeline, step)
        except (ValidationError, RecordNotFound) as e:
            outcome = StepOutcome.failed(str(e))
        if outcome is None and poll is not None:
            pipeline = self._store.get(PipelineRun, pipeline_id)
            state = pipeline.steps[step.id]
            if state.status is StepStatus.RUNNING:
                outcome = poll(pipeline, step, state)
        if outcome is not None:
            self._complete(pipeline_id, step, outcome)

    def _record_dispatch(
        self, pipeline_id: str, step_id: str, edit: Callable[[StepState], None]
    ) -> bool:
        """Store the ids of work a step started and mark it dispatched.

        Returns False if the step stopped running meanwhile (pipeline
        cancelled); the caller then cancels the work it started.
        """
        recorded = False

        def mutate(pipeline: PipelineRun) -> bool | None:
            nonlocal recorded
            recorded = False
            state = pipeline.steps[step_id]
            if state.status is not StepStatus.RUNNING:
                return False
            edit(state)
            state.dispatched = True
            recorded = True
            return None

        self._store.update(PipelineRun, pipeline_id, mutate)
        return recorded

    def _complete(self, pipeline_id: str, step: AnyStep, outcome: StepOutcome) -> None:
        now = self._clock()
        completed = False

        def mutate(pipeline: PipelineRun) -> bool | None:
            nonlocal completed
            completed = False
            state = pipeline.steps[step.id]
            if state.status is not StepStatus.RUNNING:
                return False
            state.status = outcome.status
            state.outputs = list(outcome.outputs)
            state.error = outcome.error
            state.finished_at = now
            if outcome.status is StepStatus.SUCCEEDED:
                pipeline.lineage = {**pipeline.lineage, step.id: list(outcome.outputs)}
            completed = True
            return None

        pipeline = self._store.update(PipelineRun, pipeline_id, mutate)
        if not completed:
            return
        if outcome.status is StepStatus.SUCCEEDED:
            if step.outputs.tag:
                self._tag(outcome.outputs, step.outputs.tag)
            logger.info(
                "step_succeeded",
                pipeline_id=pipeline_id,
                step_id=step.id,
                outputs=len(outcome.outputs),
            )
        else:
            logger.error(
                "step_failed", pipeline_id=pipeline_id, step_id=step.id, error=outcome.error
            )
            self._cancel_step_work(pipeline.steps[step.id])

    def _finish_if_done(self, pipeline_id: str) -> None:
        now = self._clock()
        finished = False

        def mutate(pipeline: PipelineRun) -> bool | None:
            nonlocal finished
            finished = False
            if pipeline.status.is_terminal:
                return False
            states = list(pipeline.steps.values())
            if not all(state.status.is_terminal for state in states):
                return False
            if all(state.status is StepStatus.SUCCEEDED for state in states):
                pipeline.status = PipelineStatus.SUCCEEDED
            elif pipeline.failure_policy is FailurePolicy.ABORT and any(
                state.status is StepStatus.FAILED for state in states
            ):
                pipeline.status = PipelineStatus.FAILED
            else:
                pipeline.status = PipelineStatus.PARTIAL
            failed = [sid for sid, s in pipeline.steps.items() if s.status is StepStatus.FAILED]
            if failed:
                pipeline.error = f"failed steps: {', '.join(failed)}"
            pipeline.finished_at = now
            finished = True
            return None

        pipeline = self._store.update(PipelineRun, pipeline_id, mutate)
        if finished:
            logger.info("pipeline_finished", pipeline_id=pipeline.id, status=pipeline.status.value)
            self._events.pipeline_finished(pipeline)

    # === Lineage ===

    def resolve(self, record_id: str) -> Record | None:
        """Load a lineage id as whichever record type it names."""
        for record_cls in _LINEAGE_TYPES:
            record = self._store.find(record_cls, record_id)
            if record is not None:
                return record
        return None

    def _lineage_ids(self, pipeline: PipelineRun, step_ids: Iterable[str]) -> list[str]:
        ids: list[str] = []
        for step_id in step_ids:
            ids.extend(pipeline.lineage.get(step_id, []))
        return list(dict.fromkeys(ids))

    def _expand(self, record: Record, kind: AnswerKind | None = None) -> list[Record]:
        """Batches stand for their answers and child pipelines for their outputs."""
        if isinstance(record, Batch):
            if kind is None:
                final = self._store.find(Answer, record.final_answer_id or "")
                return [final] if final is not None else []
            return list(
                self._store.query(Answer, order_by=["created_at"], batch_id=record.id, kind=kind)
            )
        if isinstance(record, PipelineRun):
            definition = PipelineDefinition.model_validate(record.definition)
            graph = PipelineGraph.from_definition(definition)
            sinks = [sid for sid in definition.step_ids if not graph.dependents(sid)]
            expanded: list[Record] = []
            for record_id in self._lineage_ids(record, sinks):
                child = self.resolve(record_id)
                if child is not None:
                    expanded.extend(self._expand(child, kind))
            return expanded
        return [record]

    def _inputs(
        self, pipeline: PipelineRun, step_ids: Iterable[str], kind: AnswerKind | None = None
    ) -> list[Record]:
        records: list[Record] = []
        seen: set[str] = set()
        for record_id in self._lineage_ids(pipeline, step_ids):
            record = self.resolve(record_id)
            if record is None:
                continue
            for item in self._expand(record, kind):
                if item.id not in seen:
                    seen.add(item.id)
                    records.append(item)
        return records

    def _tag(self, record_ids: Iterable[str], tag: str) -> None:
        for record_id in record_ids:
            record = self.resolve(record_id)
            if record is None:
                continue

            def mutate(current: Any) -> bool | None:
                if isinstance(current, Question):
                    if tag in current.tags:
                        return False
                    current.tags = [*current.tags, tag]
                    return None
                tags = list(current.extra.get("tags", []))
                if tag in tags:
                    return False
                current.extra = {**current.extra, "tags": [*tags, tag]}
                return None

            self._store.update(type(record), record.id, mutate)

    # === Step handlers ===

    def _start_sample(self, pipeline: PipelineRun, step: SampleStep) -> StepOutcome | None:
        inputs = step.inputs
        if inputs.question is not None:
            questions: list[str | Question] = [
                PromptTemplate(inputs.question).render(params=pipeline.params)
            ]
        elif inputs.question_id is not None:
            questions = [self._store.get(Question, inputs.question_id)]
        else:
            questions = [
                record
                for record in self._inputs(pipeline, [inputs.from_step or ""])
                if isinstance(record, Question)
            ]
        if not questions:
            return StepOutcome.succeeded([])

        batch_ids = [
            self._sampling.fan_out(
                question,
                inputs.n,
                inputs.profile,
                meta_steps=inputs.meta_steps,
                completion_threshold=inputs.completion_threshold,
                deadline_seconds=inputs.deadline_seconds,
                queue=inputs.queue,
                priority=inputs.priority,
                pipeline_id=pipeline.id,
                step_id=step.id,
            ).id
            for question in questions
        ]

        def edit(state: StepState) -> None:
            state.batch_ids = batch_ids

        if not self._record_dispatch(pipeline.id, step.id, edit):
            for batch_id in batch_ids:
                self._sampling.cancel_batch(batch_id)
        return None

    def _poll_sample(
        self, pipeline: PipelineRun, step: SampleStep, state: StepState
    ) -> StepOutcome | None:
        batches = [self._store.get(Batch, batch_id) for batch_id in state.batch_ids]
        for batch in batches:
            if batch.status is BatchStatus.FAILED:
                reason = (batch.error or {}).get("reason", "batch failed")
                return StepOutcome.failed(f"batch {batch.id} failed: {reason}")
        if all(batch.status is BatchStatus.DONE for batch in batches):
            return StepOutcome.succeeded(state.batch_ids)
        return None

    def _start_meta(self, pipeline: PipelineRun, step: MetaStep) -> StepOutcome | None:
        inputs = step.inputs
        answers = [
            record
            for record in self._inputs(pipeline, inputs.from_steps, inputs.kind)
            if isinstance(record, Answer)
        ]
        if not answers:
            return StepOutcome.failed("no input answers")

        question_id = inputs.question_id or next(
            (answer.question_id for answer in answers if answer.question_id), None
        )
        if question_id is None:
            return StepOutcome.failed("input answers are not linked to a question")
        question = self._store.get(Question, question_id)

        run = self._sampling.submit_meta(
            inputs.operation,
            question,
            answers,
            profile=inputs.profile or self._settings.batch.meta_profile,
            queue=inputs.queue,
            priority=inputs.priority,
            pipeline_id=pipeline.id,
            step_id=step.id,
        )

        def edit(state: StepState) -> None:
            state.run_ids = [run.id]

        if not self._record_dispatch(pipeline.id, step.id, edit):
            self._sm.cancel(run.id)
        return None

    def _poll_meta(
        self, pipeline: PipelineRun, step: MetaStep, state: StepState
    ) -> StepOutcome | None:
        run = self._store.get(Run, state.run_ids[0])
        if not run.is_terminal:
            return None
        if run.status is not RunStatus.SUCCEEDED:
            reason = (run.error or {}).get("reason", run.status.value)
            return StepOutcome.failed(f"meta run {run.id} ended {run.status.value}: {reason}")
        answer = self._sampling.apply_meta_result(run)
        return StepOutcome.succeeded([answer.id])

    def _start_collaborator(self, pipeline: PipelineRun, step: Any) -> StepOutcome:
        step_type = StepType(step.type)
        collaborator = self._plugins.create(step_type, step.inputs.plugin, step.inputs.options)
        ctx = CollaboratorContext(
            pipeline_id=pipeline.id,
            step_id=step.id,
            params=dict(pipeline.params),
            base_dir=self._base_dir(),
            clock=self._clock,
        )
        inputs = self._inputs(pipeline, step.inputs.from_steps)
        try:
            produced = collaborator.run(inputs, ctx)
        except Exception as e:
            # collaborator code is outside the engine: its errors fail the step
            logger.exception(
                "collaborator_raised",
                pipeline_id=pipeline.id,
                step_id=step.id,
                plugin=step.inputs.plugin,
            )
            return StepOutcome.failed(f"{step.inputs.plugin}: {type(e).__name__}: {e}")
        finally:
            collaborator.close()

        outputs = []
        for record in produced:
            if record.version == 0:
                self._store.put(record)
            outputs.append(record.id)
        return StepOutcome.succeeded(outputs)

    def _base_dir(self) -> Path | None:
        catalog_dir = self._settings.pipelines.catalog_dir
        return Path(catalog_dir) if catalog_dir else None

    def _start_compose(self, pipeline: PipelineRun, step: ComposeStep) -> StepOutcome | None:
        inputs = step.inputs
        source: PipelineDefinition | str
        if inputs.pipeline is not None:
            source = inputs.pipeline
        else:
            source = inputs.pipeline_ref or ""
        # created but not advanced until the parent step points at it
        child = self._create(
            self.load(source),
            params={**pipeline.params, **inputs.params},
            parent_pipeline_id=pipeline.id,
            parent_step_id=step.id,
        )

        def edit(state: StepState) -> None:
            state.child_pipeline_id = child.id

        if not self._record_dispatch(pipeline.id, step.id, edit):
            self.cancel(child.id)
            return None
        self.advance(child.id)
        return None

    def _poll_compose(
        self, pipeline: PipelineRun, step: ComposeStep, state: StepState
    ) -> StepOutcome | None:
        child = self._store.find(PipelineRun, state.child_pipeline_id or "")
        if child is None:
            return StepOutcome.failed("child pipeline was never created")
        if not child.status.is_terminal:
            return None
        if child.status is PipelineStatus.SUCCEEDED:
            return StepOutcome.succeeded([child.id])
        return StepOutcome.failed(f"child pipeline {child.id} ended {child.status.value}")

    # === Cancellation ===

    def cancel(self, pipeline_id: str) -> PipelineRun:
        """Cancel a pipeline run and everything its steps started."""
        now = self._clock()
        cancelled = False

        def mutate(pipeline: PipelineRun) -> bool | None:
            nonlocal cancelled
            cancelled = False
            if pipeline.status.is_terminal:
                return False
            pipeline.status = PipelineStatus.CANCELLED
            pipeline.finished_at = now
            pipeline.error = "cancelled"
            for state in pipeline.steps.values():
                if not state.status.is_terminal:
                    state.status = StepStatus.SKIPPED
                    state.error = "pipeline cancelled"
                    state.finished_at = now
            cancelled = True
            return None

        pipeline = self._store.update(PipelineRun, pipeline_id, mutate)
        if cancelled:
            logger.info("pipeline_cancelled", pipeline_id=pipeline_id)
            for state in pipeline.steps.values():
                self._cancel_step_work(state)
            self._events.pipeline_finished(pipeline)
        return pipeline

    def _cancel_step_work(self, state: StepState) -> None:
        for batch_id in state.batch_ids:
            batch = self._store.find(Batch, batch_id)
            if batch is not None and not batch.status.is_terminal:
                self._sampling.cancel_batch(batch_id)
        for run_id in state.run_ids:
            run = self._store.find(Run, run_id)
            if run is not None and not run.is_terminal:
                self._sm.cancel(run_id)
        if state.child_pipeline_id is not None:
            child = self._store.find(PipelineRun, state.child_pipeline_id)
            if child is not None and not child.status.is_terminal:
                self.cancel(child.id)

    # === Events and sweeps ===

    def _on_run_finished(self, run: Run) -> None:
        # batch members and reductions report through their batch
        if run.pipeline_id is not None and run.batch_id is None:
            self.advance(run.pipeline_id)

    def _on_batch_finished(self, batch: Batch) -> None:
        if batch.pipeline_id is not None:
            self.advance(batch.pipeline_id)

    def _on_pipeline_finished(self, pipeline: PipelineRun) -> None:
        if pipeline.parent_pipeline_id is not None:
            self.advance(pipeline.parent_pipeline_id)

    def reconcile(self) -> int:
        """Re-evaluate every running pipeline (catches cross-process completions).

        Steps left running without dispatched work for longer than
        ``pipelines.stalled_step_seconds`` were cut off mid-start by a
        crash; they are failed so the pipeline can settle.

        Returns:
            Number of pipelines evaluated
        """
        count = 0
        for pipeline in self._store.query(
            PipelineRun, order_by=["created_at"], status=PipelineStatus.RUNNING
        ):
            count += 1
            self._fail_stalled(pipeline)
            self.advance(pipeline.id)
        return count

    def _fail_stalled(self, pipeline: PipelineRun) -> None:
        cutoff = self._clock() - timedelta(seconds=self._settings.pipelines.stalled_step_seconds)
        definition = PipelineDefinition.model_validate(pipeline.definition)
        for step in definition.steps:
            state = pipeline.steps[step.id]
            if state.status is not StepStatus.RUNNING or state.dispatched:
                continue
            if state.started_at is not None and state.started_at < cutoff:
                logger.warning("step_stalled", pipeline_id=pipeline.id, step_id=step.id)
                self._complete(
                    pipeline.id, step, StepOutcome.failed("step was interrupted while starting")
                )
