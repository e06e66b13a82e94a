"""All status codes, modes, and kinds used across subsystem boundaries.

Every enum that is written to the record store uses (str, Enum) so the
stored value is the plain string.
"""

from enum import Enum


class RunStatus(str, Enum):
    """Lifecycle state of a single provider invocation (runs.status)."""

    QUEUED = "queued"
    LEASED = "leased"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DEAD = "dead"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES

    @property
    def holds_lease(self) -> bool:
        return self in (RunStatus.LEASED, RunStatus.RUNNING)


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED, RunStatus.DEAD}
)


class BatchStatus(str, Enum):
    """Status of a sampling batch (batches.status)."""

    PENDING = "pending"
    SAMPLING = "sampling"
    REDUCING = "reducing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.DONE, BatchStatus.FAILED)


class AnswerKind(str, Enum):
    """Kind of produced answer (answers.kind)."""

    SAMPLE = "sample"
    META = "meta"
    FINAL = "final"


class MetaOperation(str, Enum):
    """Meta-analysis operations applied during reduction.

    Values double as the suffix of the run op: ``meta.rank`` etc.
    """

    RANK = "rank"
    DETECT_DISAGREEMENT = "detect_disagreement"
    SYNTHESIZE = "synthesize"

    @property
    def op(self) -> str:
        return f"meta.{self.value}"


SAMPLE_OP = "sample"


class StepType(str, Enum):
    """Pipeline step variants (closed set, dispatched by tag)."""

    SAMPLE = "sample"
    META = "meta"
    TRANSFORM = "transform"
    IMPORT = "import"
    FILTER = "filter"
    COMPOSE = "compose"


class StepStatus(str, Enum):
    """Status of one step inside a pipeline run."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED)


class PipelineStatus(str, Enum):
    """Overall status of a pipeline run (pipeline_runs.status)."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            PipelineStatus.SUCCEEDED,
            PipelineStatus.FAILED,
            PipelineStatus.PARTIAL,
            PipelineStatus.CANCELLED,
        )


class FailurePolicy(str, Enum):
    """How a pipeline reacts to a failed step.

    ABORT: pipeline fails, unstarted steps are skipped
    CONTINUE: dependents of the failed step are skipped, other branches continue
    """

    ABORT = "abort"
    CONTINUE = "continue"


class BudgetWindow(str, Enum):
    """Roll-over schedule of a budget scope (budget_scopes.window)."""

    DAILY = "daily"
    MONTHLY = "monthly"
    NONE = "none"


class FailureKind(str, Enum):
    """Classification stored in runs.error["kind"]."""

    PROVIDER = "provider"
    TIMEOUT = "timeout"
    BUDGET_EXCEEDED = "budget_exceeded"
    LEASE_LOST = "lease_lost"
    CANCELLED = "cancelled"
    INVALID_RESPONSE = "invalid_response"
