"""Exception hierarchy for the orchestration core.

Only definition and programming errors are raised to callers. Provider,
budget and lease failures encountered while executing a run are recorded
on the run record instead (see ``Run.error``).
"""

from __future__ import annotations

from collections.abc import Sequence


class QuorumError(Exception):
    """Base class for all quorum errors."""


class ValidationError(QuorumError):
    """A definition or request was rejected before execution."""


class CyclicPipeline(ValidationError):
    """Pipeline step graph contains a dependency cycle.

    Attributes:
        cycle: Step ids on the offending cycle, in traversal order
    """

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        path = " -> ".join([*self.cycle, self.cycle[0]]) if self.cycle else ""
        super().__init__(f"Pipeline contains a dependency cycle: {path}")

    @property
    def steps(self) -> frozenset[str]:
        return frozenset(self.cycle)


class LeaseMismatch(QuorumError):
    """A lease renewal or completion was attempted by a non-owner."""

    def __init__(self, run_id: str, worker_id: str, owner: str | None) -> None:
        self.run_id = run_id
        self.worker_id = worker_id
        self.owner = owner
        super().__init__(
            f"Run {run_id} is not leased by {worker_id} (owner: {owner})"
        )


class BudgetExceeded(QuorumError):
    """Budget authorization was denied for a scope."""

    def __init__(self, scope: str, requested_usd: float, available_usd: float) -> None:
        self.scope = scope
        self.requested_usd = requested_usd
        self.available_usd = available_usd
        super().__init__(
            f"Budget scope '{scope}' cannot cover ${requested_usd:.4f} "
            f"(available ${available_usd:.4f})"
        )


class StaleRecord(QuorumError):
    """Compare-and-set update lost against a concurrent writer."""

    def __init__(self, record_type: str, record_id: str, expected_version: int) -> None:
        self.record_type = record_type
        self.record_id = record_id
        self.expected_version = expected_version
        super().__init__(
            f"{record_type} {record_id} changed since version {expected_version}"
        )


class RecordNotFound(QuorumError):
    """A record looked up by id does not exist."""

    def __init__(self, record_type: str, record_id: str) -> None:
        self.record_type = record_type
        self.record_id = record_id
        super().__init__(f"{record_type} not found: {record_id}")


class InvalidTransition(QuorumError):
    """A state change not allowed by the run state machine."""

    def __init__(self, run_id: str, current: str, target: str) -> None:
        self.run_id = run_id
        self.current = current
        self.target = target
        super().__init__(f"Run {run_id}: cannot move from {current} to {target}")
