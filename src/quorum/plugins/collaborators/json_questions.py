# src/quorum/plugins/collaborators/json_questions.py
"""JSON question importer.

Loads questions from a JSON file. Supports JSON array and JSONL formats.
"""

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Literal

from quorum.contracts.records import Question, Record
from quorum.plugins.base import BaseCollaborator
from quorum.plugins.config_base import PathConfig
from quorum.plugins.context import CollaboratorContext

logger = logging.getLogger(__name__)


class JSONQuestionsConfig(PathConfig):
    """Options for the JSON question importer."""

    format: Literal["json", "jsonl"] | None = None
    data_key: str | None = None
    text_field: str = "text"
    tags_field: str | None = None
    tags: list[str] = []
    encoding: str = "utf-8"


class JSONQuestions(BaseCollaborator):
    """Import questions from a JSON file.

    Options:
        path: Path to the file (relative paths resolve against the
            pipeline catalog directory when there is one)
        format: "json" (array) or "jsonl" (lines). Auto-detected from extension if not set.
        data_key: Key to extract the array from a JSON object (e.g., "questions")
        text_field: Row field holding the question text (default: "text")
        tags_field: Row field holding a list of tags
        tags: Tags added to every imported question

    A row may also be a bare string, which is taken as the question text.
    Rows without usable text are skipped with a warning.
    """

    name = "json_questions"
    plugin_version = "1.0.0"

    def __init__(self, options: dict[str, Any]) -> None:
        super().__init__(options)
        self._cfg = JSONQuestionsConfig.from_dict(options)

    def run(self, inputs: list[Record], ctx: CollaboratorContext) -> list[Record]:
        """Read the file and return one unsaved Question per usable row.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the JSON is invalid or not an array.
        """
        path = self._cfg.resolved_path(ctx.base_dir)
        if not path.exists():
            raise FileNotFoundError(f"JSON file not found: {path}")

        fmt = self._cfg.format
        if fmt is None:
            fmt = "jsonl" if path.suffix == ".jsonl" else "json"

        questions: list[Record] = []
        for index, row in enumerate(self._rows(path, fmt)):
            question = self._to_question(row, ctx)
            if question is None:
                logger.warning(
                    "Skipping row %d of %s: no text in '%s'", index, path, self._cfg.text_field
                )
                continue
            questions.append(question)
        return questions

    def _rows(self, path: Path, fmt: str) -> Iterator[Any]:
        with open(path, encoding=self._cfg.encoding) as f:
            if fmt == "jsonl":
                for line in f:
                    line = line.strip()
                    if line:  # Skip empty lines
                        yield json.loads(line)
                return
            data = json.load(f)

        # Extract from nested key if specified
        if self._cfg.data_key:
            data = data[self._cfg.data_key]

        if not isinstance(data, list):
            raise ValueError(f"Expected JSON array, got {type(data).__name__}")
        yield from data

    def _to_question(self, row: Any, ctx: CollaboratorContext) -> Question | None:
        if isinstance(row, str):
            text, row_tags = row, []
        elif isinstance(row, dict):
            text = row.get(self._cfg.text_field)
            row_tags = row.get(self._cfg.tags_field, []) if self._cfg.tags_field else []
        else:
            return None
        if not isinstance(text, str) or not text.strip():
            return None
        if not isinstance(row_tags, list):
            row_tags = [row_tags]
        extra: dict[str, Any] = {}
        if isinstance(row, dict):
            extra = {k: v for k, v in row.items() if k != self._cfg.text_field}
        return ctx.new_question(
            text,
            tags=[*self._cfg.tags, *(str(t) for t in row_tags)],
            extra={"source": extra} if extra else None,
        )
