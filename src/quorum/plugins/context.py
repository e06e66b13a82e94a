# src/quorum/plugins/context.py
"""Collaborator execution context."""

from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from quorum.contracts.records import Question
from quorum.core.clock import Clock, generate_id, utc_now


@dataclass
class CollaboratorContext:
    """Context passed to every collaborator call.

    Collaborators never write to the store. They return records; the
    pipeline executor persists new ones and records their ids as the
    step's output.

    Example:
        def run(self, inputs, ctx):
            return [ctx.new_question(f"Why: {a.text}") for a in inputs]
    """

    pipeline_id: str
    step_id: str
    params: dict[str, Any] = field(default_factory=dict)
    base_dir: Path | None = None
    clock: Clock = utc_now

    def new_question(
        self,
        text: str,
        *,
        tags: Iterable[str] = (),
        extra: dict[str, Any] | None = None,
    ) -> Question:
        """An unsaved question attributed to this step."""
        return Question(
            id=generate_id(),
            text=text,
            created_at=self.clock(),
            tags=list(tags),
            extra={
                **(extra or {}),
                "pipeline_id": self.pipeline_id,
                "step_id": self.step_id,
            },
        )
