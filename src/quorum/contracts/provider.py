"""Provider invocation contracts.

The engine never talks a provider wire protocol directly. It hands a
normalized ``ProviderRequest`` to an invoker and gets back either a
``ProviderResponse`` or a ``ProviderFailure``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from quorum.contracts.enums import FailureKind


@dataclass(frozen=True)
class ProviderRequest:
    """Normalized model request, independent of any provider SDK.

    Stored verbatim in ``Run.request`` and hashed for idempotency.
    """

    provider: str
    model: str
    messages: tuple[dict[str, str], ...]
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "messages": [dict(m) for m in self.messages],
            "params": dict(self.params),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderRequest:
        return cls(
            provider=data["provider"],
            model=data["model"],
            messages=tuple(dict(m) for m in data["messages"]),
            params=dict(data.get("params", {})),
        )

    @property
    def prompt(self) -> str:
        """Content of the last user message."""
        for message in reversed(self.messages):
            if message.get("role") == "user":
                return message.get("content", "")
        return ""


@dataclass(frozen=True)
class ProviderResponse:
    """Successful invocation result with usage accounting."""

    text: str
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float | None = None
    latency_ms: float | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "raw": dict(self.raw)}


@dataclass(frozen=True)
class ProviderFailure:
    """Typed invocation failure.

    Unrecognized failures are retryable by default; the run's
    ``max_attempts`` bounds how often that happens.
    """

    reason: str
    retryable: bool = True
    kind: FailureKind = FailureKind.PROVIDER
    status_code: int | None = None

    def to_error(self) -> dict[str, Any]:
        error: dict[str, Any] = {
            "kind": self.kind.value,
            "reason": self.reason,
            "retryable": self.retryable,
        }
        if self.status_code is not None:
            error["status_code"] = self.status_code
        return error


InvocationResult = ProviderResponse | ProviderFailure
