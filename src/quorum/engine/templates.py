# src/quorum/engine/templates.py
"""Jinja2 prompt templates for meta-analysis runs, and parsers for their replies."""

from __future__ import annotations

import hashlib
import json
import math
import re
from collections.abc import Mapping
from typing import Any

from jinja2 import StrictUndefined, TemplateSyntaxError, UndefinedError
from jinja2.exceptions import SecurityError
from jinja2.sandbox import SandboxedEnvironment

from quorum.contracts.enums import MetaOperation
from quorum.contracts.errors import ValidationError


class TemplateError(ValidationError):
    """Error in template rendering (including sandbox violations)."""


def _sha256(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class PromptTemplate:
    """Sandboxed Jinja2 prompt template.

    Example:
        template = PromptTemplate("Question: {{ question }}")
        prompt = template.render(question="Why is the sky blue?")
    """

    def __init__(self, template_string: str) -> None:
        """Initialize template.

        Raises:
            TemplateError: If template syntax is invalid
        """
        self._template_string = template_string
        self._template_hash = _sha256(template_string)

        # Sandboxed: templates may come from pipeline definitions
        self._env = SandboxedEnvironment(
            undefined=StrictUndefined,  # Raise on undefined variables
            autoescape=False,  # No HTML escaping for prompts
        )
        try:
            self._template = self._env.from_string(template_string)
        except TemplateSyntaxError as e:
            raise TemplateError(f"Invalid template syntax: {e}") from e

    @property
    def template_hash(self) -> str:
        """SHA-256 hash of the template string."""
        return self._template_hash

    def render(self, **variables: Any) -> str:
        """Render template with variables.

        Raises:
            TemplateError: If rendering fails (undefined variable, sandbox violation, etc.)
        """
        try:
            return self._template.render(**variables)
        except UndefinedError as e:
            raise TemplateError(f"Undefined variable: {e}") from e
        except SecurityError as e:
            raise TemplateError(f"Sandbox violation: {e}") from e
        except Exception as e:
            raise TemplateError(f"Template rendering failed: {e}") from e


_CANDIDATES = """Question:
{{ question }}

{% for answer in answers -%}
Candidate {{ loop.index }}:
{{ answer.text }}

{% endfor -%}
"""

DEFAULT_META_TEMPLATES: dict[MetaOperation, str] = {
    MetaOperation.RANK: (
        "You are judging independent answers to the same question.\n\n"
        + _CANDIDATES
        + "Score every candidate from 0 to 10 for correctness and completeness.\n"
        'Reply with JSON only: {"scores": [score of candidate 1, score of candidate 2, ...]}\n'
    ),
    MetaOperation.DETECT_DISAGREEMENT: (
        "You are checking whether independent answers to the same question agree.\n\n"
        + _CANDIDATES
        + "Do the candidates contradict each other on any substantive point?\n"
        'Reply with JSON only: {"disagreement": true or false, "summary": "one paragraph"}\n'
    ),
    MetaOperation.SYNTHESIZE: (
        "You are writing the single best answer to a question from several drafts.\n\n"
        "Question:\n{{ question }}\n\n"
        "{% for answer in answers -%}\n"
        "Draft {{ loop.index }}"
        "{% if answer.score is not none %} (score {{ answer.score }}){% endif %}:\n"
        "{{ answer.text }}\n\n"
        "{% endfor -%}\n"
        "{% if disagreement %}Reviewers noted disagreement: {{ disagreement.summary }}\n\n{% endif -%}"
        "Write one answer that keeps what the drafts get right and resolves their conflicts.\n"
    ),
}


def meta_template(
    operation: MetaOperation, overrides: Mapping[MetaOperation, str] | None = None
) -> PromptTemplate:
    """Template for a meta operation, honouring profile overrides."""
    if overrides and operation in overrides:
        return PromptTemplate(overrides[operation])
    return PromptTemplate(DEFAULT_META_TEMPLATES[operation])


_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def extract_json(text: str) -> dict[str, Any] | None:
    """First JSON object embedded in a model reply (code fences tolerated)."""
    match = _JSON_OBJECT.search(text)
    if match is None:
        return None
    try:
        data = json.loads(match.group(0))
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def parse_scores(text: str, count: int) -> list[float] | None:
    """Scores for ``count`` candidates, or None if the reply is unusable."""
    data = extract_json(text)
    if data is None:
        return None
    raw = data.get("scores")
    if not isinstance(raw, list) or len(raw) != count:
        return None
    scores: list[float] = []
    for value in raw:
        if isinstance(value, dict):
            value = value.get("score")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        if not math.isfinite(value):
            return None
        scores.append(float(value))
    return scores


def rank_order(scores: list[float]) -> list[int]:
    """1-based rank for each score; ties keep candidate order."""
    order = sorted(range(len(scores)), key=lambda i: (-scores[i], i))
    ranks = [0] * len(scores)
    for position, index in enumerate(order, start=1):
        ranks[index] = position
    return ranks


def parse_disagreement(text: str) -> dict[str, Any]:
    """Disagreement verdict; falls back to the raw text when not JSON."""
    data = extract_json(text)
    if data is None or not isinstance(data.get("disagreement"), bool):
        return {"disagreement": None, "summary": text.strip()}
    return {"disagreement": data["disagreement"], "summary": str(data.get("summary", ""))}
