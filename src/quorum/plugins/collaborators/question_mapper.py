# src/quorum/plugins/collaborators/question_mapper.py
"""Question mapper: derive follow-up questions from upstream records."""

from typing import Any

from quorum.contracts.records import Record
from quorum.engine.templates import PromptTemplate
from quorum.plugins.base import BaseCollaborator, record_fields
from quorum.plugins.config_base import CollaboratorConfig
from quorum.plugins.context import CollaboratorContext


class QuestionMapperConfig(CollaboratorConfig):
    """Options for the question mapper."""

    template: str
    tags: list[str] = []


class QuestionMapper(BaseCollaborator):
    """Render one new question per input record.

    Options:
        template: Jinja2 template; ``record`` holds the input record's
            fields and ``params`` the pipeline parameters
        tags: Tags added to every produced question

    Example:
        template: "What is the strongest objection to: {{ record.text }}"
    """

    name = "question_mapper"
    plugin_version = "1.0.0"

    def __init__(self, options: dict[str, Any]) -> None:
        super().__init__(options)
        cfg = QuestionMapperConfig.from_dict(options)
        self._template = PromptTemplate(cfg.template)
        self._tags = cfg.tags

    def run(self, inputs: list[Record], ctx: CollaboratorContext) -> list[Record]:
        produced: list[Record] = []
        for record in inputs:
            text = self._template.render(record=record_fields(record), params=ctx.params)
            if not text.strip():
                continue
            produced.append(
                ctx.new_question(
                    text.strip(),
                    tags=self._tags,
                    extra={"source_id": record.id, "source_type": record.TYPE},
                )
            )
        return produced
