"""Pipeline definition schema.

A pipeline definition is an immutable step graph. Steps are a closed
tagged variant discriminated on ``type``; the executor dispatches on the
tag rather than on a class hierarchy.

Example YAML:
    name: weekly_digest
    failure_policy: continue
    steps:
      - id: load
        type: import
        inputs:
          plugin: json_questions
          options: {path: questions.json}
      - id: ask
        type: sample
        depends_on: [load]
        inputs: {from_step: load, n: 5}
      - id: judge
        type: meta
        depends_on: [ask]
        inputs: {operation: rank, from_steps: [ask]}
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from quorum.contracts.enums import AnswerKind, FailurePolicy, MetaOperation

_STEP_ID_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")


class StepOutputs(BaseModel):
    """Where a step's produced records are marked."""

    model_config = {"frozen": True, "extra": "forbid"}

    tag: str | None = Field(
        default=None,
        description="Tag added to every record the step produces",
    )


class _StepBase(BaseModel):
    model_config = {"frozen": True, "extra": "forbid"}

    id: str = Field(description="Step identifier, unique within the pipeline")
    depends_on: list[str] = Field(default_factory=list)
    outputs: StepOutputs = Field(default_factory=StepOutputs)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not _STEP_ID_PATTERN.match(v):
            raise ValueError(f"Step id '{v}' must be an identifier")
        return v

    def input_steps(self) -> list[str]:
        """Upstream steps whose lineage this step reads."""
        return []


class SampleInputs(BaseModel):
    """Inputs of a sample step: exactly one question source."""

    model_config = {"frozen": True, "extra": "forbid"}

    question: str | None = Field(
        default=None, description="Question text (Jinja2, rendered with params)"
    )
    question_id: str | None = None
    from_step: str | None = Field(
        default=None, description="Upstream step whose produced questions are sampled"
    )
    n: int = Field(default=5, gt=0)
    profile: str | None = None
    queue: str | None = None
    meta_steps: list[MetaOperation] | None = None
    completion_threshold: int | None = Field(default=None, gt=0)
    deadline_seconds: float | None = Field(default=None, gt=0)
    priority: int = 0

    @model_validator(mode="after")
    def validate_single_source(self) -> SampleInputs:
        sources = [s for s in (self.question, self.question_id, self.from_step) if s]
        if len(sources) != 1:
            raise ValueError(
                "sample inputs need exactly one of question, question_id or from_step"
            )
        if self.completion_threshold is not None and self.completion_threshold > self.n:
            raise ValueError(
                f"completion_threshold ({self.completion_threshold}) cannot exceed n ({self.n})"
            )
        return self


class SampleStep(_StepBase):
    type: Literal["sample"]
    inputs: SampleInputs

    def input_steps(self) -> list[str]:
        return [self.inputs.from_step] if self.inputs.from_step else []


class MetaInputs(BaseModel):
    """Inputs of a meta step: one meta operation over upstream answers."""

    model_config = {"frozen": True, "extra": "forbid"}

    operation: MetaOperation
    from_steps: list[str] = Field(min_length=1)
    kind: AnswerKind | None = Field(
        default=None, description="Only use answers of this kind"
    )
    question_id: str | None = None
    profile: str | None = None
    queue: str | None = None
    priority: int = 0


class MetaStep(_StepBase):
    type: Literal["meta"]
    inputs: MetaInputs

    def input_steps(self) -> list[str]:
        return list(self.inputs.from_steps)


class CollaboratorInputs(BaseModel):
    """Inputs of transform/filter/import steps."""

    model_config = {"frozen": True, "extra": "forbid"}

    plugin: str = Field(description="Registered collaborator name")
    options: dict[str, Any] = Field(default_factory=dict)
    from_steps: list[str] = Field(default_factory=list)


class TransformStep(_StepBase):
    type: Literal["transform"]
    inputs: CollaboratorInputs

    def input_steps(self) -> list[str]:
        return list(self.inputs.from_steps)


class FilterStep(_StepBase):
    type: Literal["filter"]
    inputs: CollaboratorInputs

    def input_steps(self) -> list[str]:
        return list(self.inputs.from_steps)


class ImportStep(_StepBase):
    type: Literal["import"]
    inputs: CollaboratorInputs

    def input_steps(self) -> list[str]:
        return list(self.inputs.from_steps)


class ComposeInputs(BaseModel):
    """Inputs of a compose step: an inline or catalogued nested pipeline."""

    model_config = {"frozen": True, "extra": "forbid"}

    pipeline: PipelineDefinition | None = None
    pipeline_ref: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_single_pipeline(self) -> ComposeInputs:
        if (self.pipeline is None) == (self.pipeline_ref is None):
            raise ValueError("compose inputs need exactly one of pipeline or pipeline_ref")
        return self


class ComposeStep(_StepBase):
    type: Literal["compose"]
    inputs: ComposeInputs


AnyStep = SampleStep | MetaStep | TransformStep | FilterStep | ImportStep | ComposeStep

Step = Annotated[AnyStep, Field(discriminator="type")]


class PipelineDefinition(BaseModel):
    """Immutable pipeline step graph.

    Structural checks (unique ids, known dependencies, inputs drawn only
    from declared dependencies) happen here; acyclicity is checked by
    ``quorum.core.dag.PipelineGraph``.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    name: str
    description: str | None = None
    failure_policy: FailurePolicy = FailurePolicy.ABORT
    max_parallel_steps: int | None = Field(default=None, gt=0)
    steps: list[Step] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_references(self) -> PipelineDefinition:
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step id '{step.id}'")
            seen.add(step.id)

        for step in self.steps:
            for dep in step.depends_on:
                if dep not in seen:
                    raise ValueError(
                        f"Step '{step.id}' depends on unknown step '{dep}'"
                    )
            for source in step.input_steps():
                if source not in step.depends_on:
                    raise ValueError(
                        f"Step '{step.id}' reads from '{source}' "
                        "which is not listed in depends_on"
                    )
        return self

    def get_step(self, step_id: str) -> AnyStep:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(f"Step not found: {step_id}")

    @property
    def step_ids(self) -> list[str]:
        return [step.id for step in self.steps]


ComposeInputs.model_rebuild()
ComposeStep.model_rebuild()
PipelineDefinition.model_rebuild()
