"""Shared contracts for cross-boundary data types.

Import pattern:
    from quorum.contracts import Run, RunStatus, ProviderRequest
"""

from quorum.contracts.enums import (
    SAMPLE_OP,
    TERMINAL_RUN_STATUSES,
    AnswerKind,
    BatchStatus,
    BudgetWindow,
    FailureKind,
    FailurePolicy,
    MetaOperation,
    PipelineStatus,
    RunStatus,
    StepStatus,
    StepType,
)
from quorum.contracts.errors import (
    BudgetExceeded,
    CyclicPipeline,
    InvalidTransition,
    LeaseMismatch,
    QuorumError,
    RecordNotFound,
    StaleRecord,
    ValidationError,
)
from quorum.contracts.provider import (
    InvocationResult,
    ProviderFailure,
    ProviderRequest,
    ProviderResponse,
)
from quorum.contracts.records import (
    RECORD_TYPES,
    Answer,
    Batch,
    BudgetScope,
    PipelineRun,
    Question,
    Record,
    Run,
    StepState,
)

__all__ = [
    # enums
    "SAMPLE_OP",
    "TERMINAL_RUN_STATUSES",
    "AnswerKind",
    "BatchStatus",
    "BudgetWindow",
    "FailureKind",
    "FailurePolicy",
    "MetaOperation",
    "PipelineStatus",
    "RunStatus",
    "StepStatus",
    "StepType",
    # errors
    "BudgetExceeded",
    "CyclicPipeline",
    "InvalidTransition",
    "LeaseMismatch",
    "QuorumError",
    "RecordNotFound",
    "StaleRecord",
    "ValidationError",
    # provider
    "InvocationResult",
    "ProviderFailure",
    "ProviderRequest",
    "ProviderResponse",
    # records
    "RECORD_TYPES",
    "Answer",
    "Batch",
    "BudgetScope",
    "PipelineRun",
    "Question",
    "Record",
    "Run",
    "StepState",
]
