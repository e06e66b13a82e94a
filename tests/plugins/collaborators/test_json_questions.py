"""Tests for the JSON question importer."""

import json
from pathlib import Path

import pytest

from quorum.plugins.context import CollaboratorContext


@pytest.fixture
def ctx(tmp_path: Path) -> CollaboratorContext:
    return CollaboratorContext(pipeline_id="p1", step_id="load", base_dir=tmp_path)


class TestJSONQuestions:
    def test_has_required_attributes(self) -> None:
        from quorum.plugins.collaborators.json_questions import JSONQuestions

        assert JSONQuestions.name == "json_questions"
        assert JSONQuestions.plugin_version == "1.0.0"

    def test_json_array(self, tmp_path: Path, ctx: CollaboratorContext) -> None:
        from quorum.plugins.collaborators.json_questions import JSONQuestions

        (tmp_path / "q.json").write_text(
            json.dumps(
                [
                    {"text": "Why is the sky blue?", "topic": "physics"},
                    "Why is grass green?",
                ]
            )
        )

        questions = JSONQuestions({"path": "q.json"}).run([], ctx)

        assert [q.text for q in questions] == ["Why is the sky blue?", "Why is grass green?"]
        assert questions[0].extra["source"] == {"topic": "physics"}
        assert "source" not in questions[1].extra
        assert all(q.version == 0 for q in questions)

    def test_jsonl_detected_from_extension(self, tmp_path: Path, ctx: CollaboratorContext) -> None:
        from quorum.plugins.collaborators.json_questions import JSONQuestions

        (tmp_path / "q.jsonl").write_text(
            '{"question": "One?"}\n\n{"question": "Two?"}\n'
        )

        questions = JSONQuestions({"path": "q.jsonl", "text_field": "question"}).run([], ctx)

        assert [q.text for q in questions] == ["One?", "Two?"]

    def test_data_key_and_tags(self, tmp_path: Path, ctx: CollaboratorContext) -> None:
        from quorum.plugins.collaborators.json_questions import JSONQuestions

        (tmp_path / "q.json").write_text(
            json.dumps({"questions": [{"text": "Why?", "labels": "science"}]})
        )

        [question] = JSONQuestions(
            {"path": "q.json", "data_key": "questions", "tags_field": "labels", "tags": ["weekly"]}
        ).run([], ctx)

        assert question.tags == ["weekly", "science"]

    def test_rows_without_text_are_skipped(self, tmp_path: Path, ctx: CollaboratorContext) -> None:
        from quorum.plugins.collaborators.json_questions import JSONQuestions

        (tmp_path / "q.json").write_text(json.dumps([{"text": "  "}, {"other": 1}, 42, "Kept?"]))

        questions = JSONQuestions({"path": "q.json"}).run([], ctx)

        assert [q.text for q in questions] == ["Kept?"]

    def test_missing_file(self, ctx: CollaboratorContext) -> None:
        from quorum.plugins.collaborators.json_questions import JSONQuestions

        with pytest.raises(FileNotFoundError):
            JSONQuestions({"path": "missing.json"}).run([], ctx)

    def test_non_array_rejected(self, tmp_path: Path, ctx: CollaboratorContext) -> None:
        from quorum.plugins.collaborators.json_questions import JSONQuestions

        (tmp_path / "q.json").write_text(json.dumps({"text": "Why?"}))

        with pytest.raises(ValueError, match="Expected JSON array"):
            JSONQuestions({"path": "q.json"}).run([], ctx)

    def test_unknown_option_rejected(self) -> None:
        from quorum.plugins.collaborators.json_questions import JSONQuestions
        from quorum.plugins.config_base import CollaboratorConfigError

        with pytest.raises(CollaboratorConfigError):
            JSONQuestions({"path": "q.json", "delimiter": ","})
