# src/quorum/plugins/hookspecs.py
"""pluggy hook specifications for pipeline collaborators.

Collaborators implement these hooks to register themselves with the
engine. The plugin manager calls them during discovery.

Usage (implementing a collaborator package):
    from quorum.plugins.hookspecs import hookimpl

    class MyPlugins:
        @hookimpl  # NOT @hookspec - that's for defining specs
        def quorum_get_transforms(self):
            return [MyTransform]

Note: @hookspec defines the hook interface (done here).
      @hookimpl marks plugin implementations of those hooks.
"""

from typing import TYPE_CHECKING

import pluggy

if TYPE_CHECKING:
    from quorum.plugins.base import BaseCollaborator

# Project name for pluggy
PROJECT_NAME = "quorum"

# Hook specification marker
hookspec = pluggy.HookspecMarker(PROJECT_NAME)

# Hook implementation marker (for plugins to use)
hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class QuorumCollaboratorSpec:
    """Hook specifications for import, filter and transform collaborators."""

    @hookspec
    def quorum_get_importers(self) -> list[type["BaseCollaborator"]]:  # type: ignore[empty-body]
        """Return import collaborator classes (bring records into the store)."""

    @hookspec
    def quorum_get_filters(self) -> list[type["BaseCollaborator"]]:  # type: ignore[empty-body]
        """Return filter collaborator classes (select among input records)."""

    @hookspec
    def quorum_get_transforms(self) -> list[type["BaseCollaborator"]]:  # type: ignore[empty-body]
        """Return transform collaborator classes (derive new records)."""
