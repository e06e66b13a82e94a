# src/quorum/core/catalog.py
"""Pipeline definition loading and the named pipeline catalog.

Definitions are validated in two passes: the pydantic schema checks
structure (step variants, unique ids, known dependencies), then
``PipelineGraph`` rejects cycles. Inline compose definitions are checked
recursively, and catalog references must not lead back to themselves.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError as PydanticValidationError

from quorum.contracts.errors import ValidationError
from quorum.contracts.pipeline import ComposeStep, PipelineDefinition
from quorum.core.dag import PipelineGraph

logger = structlog.get_logger(__name__)


def parse_pipeline(data: Mapping[str, Any]) -> PipelineDefinition:
    """Validate a raw mapping into a pipeline definition.

    Raises:
        ValidationError: If the schema or the step graph is invalid
        CyclicPipeline: If dependencies form a cycle
    """
    try:
        definition = PipelineDefinition.model_validate(dict(data))
    except PydanticValidationError as e:
        name = data.get("name", "<unnamed>") if isinstance(data, Mapping) else "<unnamed>"
        raise ValidationError(f"Invalid pipeline '{name}': {e}") from e
    validate_graph(definition)
    return definition


def validate_graph(definition: PipelineDefinition) -> None:
    """Check acyclicity of a definition and of every inline nested definition."""
    PipelineGraph.from_definition(definition).validate()
    for step in definition.steps:
        if isinstance(step, ComposeStep) and step.inputs.pipeline is not None:
            validate_graph(step.inputs.pipeline)


def load_pipeline(path: Path) -> PipelineDefinition:
    """Load one pipeline definition from a YAML (or JSON) file."""
    if not path.exists():
        raise FileNotFoundError(f"Pipeline file not found: {path}")
    with open(path) as f:
        data = yaml.safe_load(f)
    if not isinstance(data, Mapping):
        raise ValidationError(f"Pipeline file {path} must contain a mapping")
    return parse_pipeline(data)


class PipelineCatalog:
    """Named pipeline definitions, usable as compose targets.

    Definitions are loaded from ``*.yaml``/``*.yml`` files in a directory,
    or registered programmatically.
    """

    def __init__(self, definitions: Mapping[str, PipelineDefinition] | None = None) -> None:
        self._definitions: dict[str, PipelineDefinition] = dict(definitions or {})

    @classmethod
    def from_directory(cls, directory: Path) -> PipelineCatalog:
        catalog = cls()
        if not directory.exists():
            logger.warning("pipeline_catalog_missing", directory=str(directory))
            return catalog
        for path in sorted([*directory.glob("*.yaml"), *directory.glob("*.yml")]):
            definition = load_pipeline(path)
            catalog.register(definition)
            logger.debug("pipeline_loaded", name=definition.name, path=str(path))
        catalog.check_references()
        logger.info("pipeline_catalog_loaded", count=len(catalog))
        return catalog

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def names(self) -> list[str]:
        return sorted(self._definitions)

    def register(self, definition: PipelineDefinition) -> None:
        if definition.name in self._definitions:
            raise ValidationError(f"Pipeline '{definition.name}' is already registered")
        self._definitions[definition.name] = definition

    def get(self, name: str) -> PipelineDefinition:
        try:
            return self._definitions[name]
        except KeyError:
            raise ValidationError(
                f"Unknown pipeline '{name}'. Available: {self.names()}"
            ) from None

    def check_references(self) -> None:
        """Reject unknown or recursive compose references across the catalog."""
        for name in self._definitions:
            self._check_refs(self._definitions[name], (name,))

    def check_definition(self, definition: PipelineDefinition) -> None:
        """Check the compose references of a definition before it runs."""
        self._check_refs(definition, (definition.name,))

    def _check_refs(self, definition: PipelineDefinition, path: tuple[str, ...]) -> None:
        for step in definition.steps:
            if not isinstance(step, ComposeStep):
                continue
            if step.inputs.pipeline is not None:
                self._check_refs(step.inputs.pipeline, path)
                continue
            ref = step.inputs.pipeline_ref
            assert ref is not None  # enforced by ComposeInputs
            if ref in path:
                chain = " -> ".join([*path, ref])
                raise ValidationError(f"Recursive pipeline composition: {chain}")
            self._check_refs(self.get(ref), (*path, ref))
