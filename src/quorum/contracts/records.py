"""Record contracts for every entity the engine persists.

Each record type owns a fixed field set plus an open ``extra`` map for
forward-compatible metadata. Records link to each other by id only; the
store never embeds one record inside another.

``version`` is the optimistic-concurrency counter maintained by the store:
0 means "never written", every successful put increments it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from quorum.contracts.enums import (
    AnswerKind,
    BatchStatus,
    BudgetWindow,
    FailurePolicy,
    PipelineStatus,
    RunStatus,
    StepStatus,
)


@dataclass
class Question:
    """A question that can be sampled and answered."""

    TYPE: ClassVar[str] = "question"

    id: str
    text: str
    created_at: datetime
    canonical_answer_id: str | None = None
    tags: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)
    version: int = 0


@dataclass
class Run:
    """One provider invocation and its lifecycle state.

    Invariants (checked by ``invariant_violations``):
    - lease_owner is set iff status is leased or running
    - finished_at is set iff status is terminal
    """

    TYPE: ClassVar[str] = "run"

    id: str
    op: str
    queue_name: str
    request: dict[str, Any]
    request_hash: str
    created_at: datetime
    status: RunStatus = RunStatus.QUEUED
    profile_name: str | None = None
    response: dict[str, Any] | None = None
    attempt: int = 1
    max_attempts: int = 3
    priority: int = 0
    lease_owner: str | None = None
    lease_expiry: datetime | None = None
    available_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    cost_usd: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    latency_ms: float | None = None
    error: dict[str, Any] | None = None
    batch_id: str | None = None
    pipeline_id: str | None = None
    step_id: str | None = None
    question_id: str | None = None
    budget_scopes: list[str] = field(default_factory=list)
    reserved_usd: float = 0.0
    cancel_requested: bool = False
    cancel_requested_at: datetime | None = None
    retry_delays: list[float] = field(default_factory=list)
    cached_from: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def response_text(self) -> str | None:
        if self.response is None:
            return None
        text = self.response.get("text")
        return text if isinstance(text, str) else None

    def invariant_violations(self) -> list[str]:
        """Return descriptions of violated lease/finish invariants."""
        problems = []
        if (self.lease_owner is not None) != self.status.holds_lease:
            problems.append(
                f"lease_owner={self.lease_owner!r} with status={self.status.value}"
            )
        if (self.finished_at is not None) != self.status.is_terminal:
            problems.append(
                f"finished_at={self.finished_at!r} with status={self.status.value}"
            )
        if self.attempt < 1:
            problems.append(f"attempt={self.attempt} is below 1")
        return problems


@dataclass
class Batch:
    """A sampling unit: N runs of the same question awaiting reduction."""

    TYPE: ClassVar[str] = "batch"

    id: str
    question_id: str
    target_count: int
    completion_threshold: int
    created_at: datetime
    profile_name: str | None = None
    queue_name: str | None = None
    status: BatchStatus = BatchStatus.PENDING
    completed_count: int = 0
    failed_count: int = 0
    deadline: datetime | None = None
    run_ids: list[str] = field(default_factory=list)
    settled_run_ids: list[str] = field(default_factory=list)
    meta_steps: list[str] = field(default_factory=list)
    meta_index: int = 0
    meta_run_ids: list[str] = field(default_factory=list)
    final_answer_id: str | None = None
    pipeline_id: str | None = None
    step_id: str | None = None
    reduction_started_at: datetime | None = None
    finished_at: datetime | None = None
    error: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    version: int = 0

    @property
    def settled_count(self) -> int:
        return self.completed_count + self.failed_count


@dataclass
class Answer:
    """One produced text: a sample, a meta-analysis output, or the final answer."""

    TYPE: ClassVar[str] = "answer"

    id: str
    kind: AnswerKind
    text: str
    created_at: datetime
    run_id: str | None = None
    question_id: str | None = None
    batch_id: str | None = None
    operation: str | None = None
    score: float | None = None
    rank: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    version: int = 0


@dataclass
class StepState:
    """Execution state of one pipeline step (stored inside PipelineRun.steps)."""

    status: StepStatus = StepStatus.PENDING
    outputs: list[str] = field(default_factory=list)
    batch_ids: list[str] = field(default_factory=list)
    run_ids: list[str] = field(default_factory=list)
    child_pipeline_id: str | None = None
    dispatched: bool = False
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "outputs": list(self.outputs),
            "batch_ids": list(self.batch_ids),
            "run_ids": list(self.run_ids),
            "child_pipeline_id": self.child_pipeline_id,
            "dispatched": self.dispatched,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepState:
        started = data.get("started_at")
        finished = data.get("finished_at")
        return cls(
            status=StepStatus(data["status"]),
            outputs=list(data.get("outputs", [])),
            batch_ids=list(data.get("batch_ids", [])),
            run_ids=list(data.get("run_ids", [])),
            child_pipeline_id=data.get("child_pipeline_id"),
            dispatched=bool(data.get("dispatched", False)),
            error=data.get("error"),
            started_at=datetime.fromisoformat(started) if started else None,
            finished_at=datetime.fromisoformat(finished) if finished else None,
        )


@dataclass
class PipelineRun:
    """One execution instance of a pipeline definition."""

    TYPE: ClassVar[str] = "pipeline_run"

    id: str
    name: str
    definition: dict[str, Any]
    created_at: datetime
    status: PipelineStatus = PipelineStatus.PENDING
    failure_policy: FailurePolicy = FailurePolicy.ABORT
    steps: dict[str, StepState] = field(default_factory=dict)
    lineage: dict[str, list[str]] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    parent_pipeline_id: str | None = None
    parent_step_id: str | None = None
    finished_at: datetime | None = None
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    version: int = 0

    def __post_init__(self) -> None:
        self.steps = {
            step_id: state if isinstance(state, StepState) else StepState.from_dict(state)
            for step_id, state in self.steps.items()
        }


@dataclass
class BudgetScope:
    """A named accounting bucket with a cap per time window."""

    TYPE: ClassVar[str] = "budget_scope"

    id: str
    cap_usd: float
    window: BudgetWindow
    window_start: datetime
    spent_usd: float = 0.0
    reserved_usd: float = 0.0
    extra: dict[str, Any] = field(default_factory=dict)
    version: int = 0

    @property
    def available_usd(self) -> float:
        return self.cap_usd - self.spent_usd - self.reserved_usd


Record = Question | Run | Batch | Answer | PipelineRun | BudgetScope

RECORD_TYPES: tuple[type[Any], ...] = (Question, Run, Batch, Answer, PipelineRun, BudgetScope)
