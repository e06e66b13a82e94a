# src/quorum/plugins/manager.py
"""Plugin manager for collaborator discovery, registration, and lookup.

Uses pluggy for hook-based plugin registration.
"""

import logging
from typing import Any

import pluggy

from quorum.contracts.enums import StepType
from quorum.contracts.errors import ValidationError
from quorum.plugins.base import BaseCollaborator
from quorum.plugins.hookspecs import PROJECT_NAME, QuorumCollaboratorSpec

logger = logging.getLogger(__name__)

# Step types served by collaborators, and the hook that lists them
_HOOKS: dict[StepType, str] = {
    StepType.IMPORT: "quorum_get_importers",
    StepType.FILTER: "quorum_get_filters",
    StepType.TRANSFORM: "quorum_get_transforms",
}


class PluginManager:
    """Manages collaborator discovery, registration, and lookup.

    Usage:
        manager = PluginManager()
        manager.register_builtin_plugins()

        cls = manager.get_collaborator(StepType.FILTER, "field_filter")
        collaborator = manager.create(StepType.FILTER, "field_filter", {"field": "text"})
    """

    def __init__(self) -> None:
        self._pm = pluggy.PluginManager(PROJECT_NAME)
        self._pm.add_hookspecs(QuorumCollaboratorSpec)

        # name -> class per step type, for duplicate detection and lookup
        self._collaborators: dict[StepType, dict[str, type[BaseCollaborator]]] = {
            step_type: {} for step_type in _HOOKS
        }

    def register_builtin_plugins(self) -> None:
        """Register the built-in collaborators.

        Call this once at startup to make them discoverable.
        """
        from quorum.plugins.collaborators.hookimpl import builtin_collaborators

        self.register(builtin_collaborators)

    def register(self, plugin: Any) -> None:
        """Register a plugin (an object implementing hook methods).

        Raises:
            ValueError: If a collaborator with the same name and kind is
                already registered
        """
        self._pm.register(plugin)
        try:
            self._refresh_caches()
        except ValueError:
            self._pm.unregister(plugin)
            raise
        logger.debug("Registered plugin %s", type(plugin).__name__)

    def _refresh_caches(self) -> None:
        # Collect everything first so a duplicate leaves the caches untouched
        refreshed: dict[StepType, dict[str, type[BaseCollaborator]]] = {}
        for step_type, hook_name in _HOOKS.items():
            found: dict[str, type[BaseCollaborator]] = {}
            for classes in getattr(self._pm.hook, hook_name)():
                for cls in classes:
                    name = cls.name
                    if name in found:
                        raise ValueError(
                            f"Duplicate {step_type.value} collaborator name: '{name}'. "
                            f"Already registered by {found[name].__name__}"
                        )
                    found[name] = cls
            refreshed[step_type] = found
        self._collaborators = refreshed

    def names(self, step_type: StepType) -> list[str]:
        """Registered collaborator names for a step type."""
        return sorted(self._collaborators.get(step_type, {}))

    def get_collaborator(self, step_type: StepType, name: str) -> type[BaseCollaborator] | None:
        """Get a collaborator class by step type and name."""
        return self._collaborators.get(step_type, {}).get(name)

    def create(
        self, step_type: StepType, name: str, options: dict[str, Any]
    ) -> BaseCollaborator:
        """Instantiate a collaborator with step options.

        Raises:
            ValidationError: If no collaborator of that kind is registered
                under ``name``, or its options are invalid
        """
        cls = self.get_collaborator(step_type, name)
        if cls is None:
            raise ValidationError(
                f"Unknown {step_type.value} collaborator '{name}'. "
                f"Available: {self.names(step_type)}"
            )
        return cls(dict(options))
