"""Hook implementation for built-in collaborators."""

from typing import Any

from quorum.plugins.hookspecs import hookimpl


class QuorumBuiltinCollaborators:
    """Hook implementer for built-in collaborators."""

    @hookimpl
    def quorum_get_importers(self) -> list[type[Any]]:
        from quorum.plugins.collaborators.json_questions import JSONQuestions

        return [JSONQuestions]

    @hookimpl
    def quorum_get_filters(self) -> list[type[Any]]:
        from quorum.plugins.collaborators.field_filter import FieldFilter

        return [FieldFilter]

    @hookimpl
    def quorum_get_transforms(self) -> list[type[Any]]:
        from quorum.plugins.collaborators.question_mapper import QuestionMapper

        return [QuestionMapper]


# Singleton instance for registration
builtin_collaborators = QuorumBuiltinCollaborators()
