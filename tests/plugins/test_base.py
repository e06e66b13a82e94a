# tests/plugins/test_base.py
"""Tests for the collaborator base class and record field views."""

from datetime import UTC, datetime

import pytest


class TestBaseCollaborator:
    def test_run_is_abstract(self) -> None:
        from quorum.plugins.base import BaseCollaborator

        class Incomplete(BaseCollaborator):
            name = "incomplete"

        with pytest.raises(TypeError):
            Incomplete({})  # type: ignore[abstract]

    def test_subclass_keeps_options_and_closes(self) -> None:
        from quorum.plugins.base import BaseCollaborator

        class Upper(BaseCollaborator):
            name = "upper"

            def run(self, inputs, ctx):  # type: ignore[no-untyped-def]
                return [ctx.new_question(r.text.upper()) for r in inputs]

        upper = Upper({"mode": "loud"})

        assert upper.options == {"mode": "loud"}
        assert upper.plugin_version == "0.0.0"
        upper.close()


class TestRecordFields:
    def test_answer_fields_are_plain_values(self) -> None:
        from quorum.contracts.enums import AnswerKind
        from quorum.contracts.records import Answer
        from quorum.plugins.base import record_fields

        answer = Answer(
            id="a1",
            kind=AnswerKind.SAMPLE,
            text="Rayleigh scattering.",
            created_at=datetime(2026, 3, 14, tzinfo=UTC),
            score=7.5,
            extra={"sample_index": 0},
        )

        fields = record_fields(answer)

        assert fields["type"] == "answer"
        assert fields["kind"] == "sample"
        assert fields["score"] == 7.5
        assert fields["extra"] == {"sample_index": 0}
