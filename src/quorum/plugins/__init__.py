"""Pipeline collaborator plugins (import, filter and transform steps)."""

from quorum.plugins.base import BaseCollaborator, record_fields
from quorum.plugins.config_base import CollaboratorConfig, CollaboratorConfigError, PathConfig
from quorum.plugins.context import CollaboratorContext
from quorum.plugins.hookspecs import hookimpl, hookspec
from quorum.plugins.manager import PluginManager

__all__ = [
    "BaseCollaborator",
    "CollaboratorConfig",
    "CollaboratorConfigError",
    "CollaboratorContext",
    "PathConfig",
    "PluginManager",
    "hookimpl",
    "hookspec",
    "record_fields",
]
