# src/quorum/plugins/base.py
"""Base class for pipeline collaborators.

Import, filter and transform steps all call a collaborator: a named
plugin class that takes the step's input records and returns records.

- import: returns new records (inputs usually empty)
- filter: returns a subset of its inputs
- transform: returns new records derived from its inputs
"""

import dataclasses
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from quorum.contracts.records import Record
from quorum.plugins.context import CollaboratorContext


class BaseCollaborator(ABC):
    """Base class for collaborators.

    Example:
        class Upper(BaseCollaborator):
            name = "upper"

            def run(self, inputs, ctx):
                return [ctx.new_question(r.text.upper()) for r in inputs]
    """

    name: str
    plugin_version: str = "0.0.0"

    def __init__(self, options: dict[str, Any]) -> None:
        """Initialize with the step's ``options`` mapping."""
        self.options = options

    @abstractmethod
    def run(self, inputs: list[Record], ctx: CollaboratorContext) -> list[Record]:
        """Process the step's input records.

        Returns:
            Records the step produces (new, unsaved) or selects (existing)
        """
        ...

    def close(self) -> None:  # noqa: B027
        """Release resources. Called once after ``run``."""


def record_fields(record: Record) -> dict[str, Any]:
    """Plain-value view of a record for field lookups and templates.

    Includes ``type`` (the record kind) alongside the dataclass fields.
    """
    data: dict[str, Any] = {"type": record.TYPE}
    for f in dataclasses.fields(record):
        value = getattr(record, f.name)
        data[f.name] = value.value if isinstance(value, Enum) else value
    return data
