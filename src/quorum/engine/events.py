"""In-process completion events.

Pipeline and batch progress is re-evaluated when something they wait on
finishes, instead of polling. Listeners run synchronously on the thread
that emitted the event. Work finished by another process is picked up by
the reconcile sweep.
"""

from __future__ import annotations

import threading
from collections.abc import Callable

import structlog

from quorum.contracts.records import Batch, PipelineRun, Run

logger = structlog.get_logger(__name__)

RunListener = Callable[[Run], None]
BatchListener = Callable[[Batch], None]
PipelineListener = Callable[[PipelineRun], None]


class EventBus:
    """Observer lists for run, batch and pipeline completion."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._run_finished: list[RunListener] = []
        self._batch_finished: list[BatchListener] = []
        self._pipeline_finished: list[PipelineListener] = []

    def on_run_finished(self, listener: RunListener) -> None:
        with self._lock:
            self._run_finished.append(listener)

    def on_batch_finished(self, listener: BatchListener) -> None:
        with self._lock:
            self._batch_finished.append(listener)

    def on_pipeline_finished(self, listener: PipelineListener) -> None:
        with self._lock:
            self._pipeline_finished.append(listener)

    def run_finished(self, run: Run) -> None:
        logger.debug("event_run_finished", run_id=run.id, status=run.status.value)
        with self._lock:
            listeners = list(self._run_finished)
        for listener in listeners:
            listener(run)

    def batch_finished(self, batch: Batch) -> None:
        logger.debug("event_batch_finished", batch_id=batch.id, status=batch.status.value)
        with self._lock:
            listeners = list(self._batch_finished)
        for listener in listeners:
            listener(batch)

    def pipeline_finished(self, pipeline: PipelineRun) -> None:
        logger.debug(
            "event_pipeline_finished", pipeline_id=pipeline.id, status=pipeline.status.value
        )
        with self._lock:
            listeners = list(self._pipeline_finished)
        for listener in listeners:
            listener(pipeline)
