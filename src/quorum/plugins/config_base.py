# src/quorum/plugins/config_base.py
"""Base classes for typed collaborator options.

Example usage:
    class JSONQuestionsConfig(PathConfig):
        text_field: str = "text"

    cfg = JSONQuestionsConfig.from_dict(options)
    path = cfg.path  # Direct access, fails fast if missing
"""

from pathlib import Path
from typing import Any, Self

from pydantic import BaseModel, field_validator
from pydantic import ValidationError as PydanticValidationError

from quorum.contracts.errors import ValidationError


class CollaboratorConfigError(ValidationError):
    """Raised when collaborator options are invalid."""


class CollaboratorConfig(BaseModel):
    """Base class for typed collaborator options.

    Unknown options are rejected so that typos in a pipeline definition
    surface before anything runs.
    """

    model_config = {"extra": "forbid"}

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> Self:
        """Create config from dict with clear error on validation failure.

        Raises:
            CollaboratorConfigError: If options are invalid.
        """
        try:
            return cls(**config)
        except PydanticValidationError as e:
            raise CollaboratorConfigError(
                f"Invalid configuration for {cls.__name__}: {e}"
            ) from e


class PathConfig(CollaboratorConfig):
    """Base for options that name a file."""

    path: str

    @field_validator("path")
    @classmethod
    def validate_path_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("path cannot be empty")
        return v

    def resolved_path(self, base_dir: Path | None = None) -> Path:
        """Resolve path relative to ``base_dir`` if it is not absolute."""
        p = Path(self.path)
        if base_dir and not p.is_absolute():
            return base_dir / p
        return p
