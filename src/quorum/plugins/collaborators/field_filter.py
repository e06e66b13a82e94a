# src/quorum/plugins/collaborators/field_filter.py
"""Field filter.

Selects input records based on a field condition.
"""

import re
from typing import Any

from pydantic import Field, model_validator

from quorum.contracts.records import Record
from quorum.plugins.base import BaseCollaborator, record_fields
from quorum.plugins.config_base import CollaboratorConfig
from quorum.plugins.context import CollaboratorContext

# Condition types we support
_CONDITION_KEYS = (
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "contains",
    "matches",
    "in_",
)


class FieldFilterConfig(CollaboratorConfig):
    """Options for the field filter. Exactly one condition is required."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    field: str
    allow_missing: bool = False
    equals: Any = None
    not_equals: Any = None
    greater_than: float | None = None
    less_than: float | None = None
    contains: str | None = None
    matches: str | None = None
    in_: list[Any] | None = Field(default=None, alias="in")

    @model_validator(mode="after")
    def validate_single_condition(self) -> "FieldFilterConfig":
        found = [key for key in _CONDITION_KEYS if key in self.model_fields_set]
        if len(found) != 1:
            raise ValueError(
                "field_filter requires exactly one condition. "
                f"Valid conditions: {sorted(k.rstrip('_') for k in _CONDITION_KEYS)}"
            )
        return self

    @property
    def condition(self) -> tuple[str, Any]:
        key = next(key for key in _CONDITION_KEYS if key in self.model_fields_set)
        return key, getattr(self, key)


class FieldFilter(BaseCollaborator):
    """Keep input records whose field satisfies a condition.

    Options:
        field: Field to check (supports dot notation, e.g. "extra.topic")
        allow_missing: If True, records missing the field pass (default: False)

        Conditions (exactly one required):
        - equals / not_equals: Field must (not) equal this value
        - greater_than / less_than: Numeric comparison (e.g. on "score")
        - contains: Field must contain this substring (or list element)
        - matches: Field must match this regex pattern
        - in: Field must be one of these values (list)
    """

    name = "field_filter"
    plugin_version = "1.0.0"

    def __init__(self, options: dict[str, Any]) -> None:
        super().__init__(options)
        cfg = FieldFilterConfig.from_dict(options)
        self._field = cfg.field
        self._allow_missing = cfg.allow_missing
        self._condition_type, self._condition_value = cfg.condition

        # Pre-compile regex if using matches
        self._regex = (
            re.compile(self._condition_value) if self._condition_type == "matches" else None
        )

    def run(self, inputs: list[Record], ctx: CollaboratorContext) -> list[Record]:
        """Return the inputs that pass, in input order."""
        return [record for record in inputs if self._passes(record)]

    def _passes(self, record: Record) -> bool:
        value = _get_nested(record_fields(record), self._field)
        if value is _MISSING:
            return self._allow_missing
        return self._evaluate_condition(value)

    def _evaluate_condition(self, value: Any) -> bool:
        match self._condition_type:
            case "equals":
                return bool(value == self._condition_value)
            case "not_equals":
                return bool(value != self._condition_value)
            case "greater_than":
                return value is not None and value > self._condition_value
            case "less_than":
                return value is not None and value < self._condition_value
            case "contains":
                if isinstance(value, list):
                    return self._condition_value in value
                return self._condition_value in str(value)
            case "matches":
                assert self._regex is not None
                return bool(self._regex.search(str(value)))
            case "in_":
                return value in self._condition_value
            case _:
                return False


def _get_nested(data: dict[str, Any], path: str) -> Any:
    """Value at a dot-separated path, or the _MISSING sentinel."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


class _MissingSentinel:
    """Sentinel to distinguish missing fields from None values."""


_MISSING = _MissingSentinel()
