# src/quorum/providers/http.py
"""OpenAI-compatible chat-completions invoker over httpx.

Works with any endpoint that speaks the ``/chat/completions`` shape
(OpenAI, OpenRouter, vLLM, llama.cpp server, ...).
"""

from __future__ import annotations

import math
import threading
import time
from typing import Any

import httpx
import structlog

from quorum.contracts.enums import FailureKind
from quorum.contracts.provider import (
    InvocationResult,
    ProviderFailure,
    ProviderRequest,
    ProviderResponse,
)

logger = structlog.get_logger(__name__)

# Statuses that mean "try again later" rather than "this request is wrong"
_RETRYABLE_STATUS = frozenset({408, 409, 425, 429})


def is_retryable_status(status_code: int) -> bool:
    """Rate limits, request timeouts and server errors are retryable."""
    return status_code in _RETRYABLE_STATUS or status_code >= 500


def _count(value: Any) -> int:
    """Token count from a usage block; null or malformed counts as 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if not math.isfinite(value):
        return 0
    return max(0, int(value))


def _cost(value: Any) -> float | None:
    """Reported cost, or None when absent or not a finite number."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        cost = float(value)
    except ValueError:
        return None
    return cost if math.isfinite(cost) and cost >= 0 else None


class HTTPChatInvoker:
    """Provider invoker for OpenAI-compatible HTTP endpoints.

    Configuration example:
        providers:
          openrouter:
            base_url: https://openrouter.ai/api/v1
            api_key: "${OPENROUTER_API_KEY}"
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        all_headers = {"Content-Type": "application/json", **(headers or {})}
        if api_key:
            all_headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=base_url,
            headers=all_headers,
            transport=transport,
        )

    def invoke(
        self,
        request: ProviderRequest,
        *,
        timeout: float,
        abort: threading.Event,
    ) -> InvocationResult:
        if abort.is_set():
            return ProviderFailure(
                "cancelled before call", retryable=False, kind=FailureKind.CANCELLED
            )

        body: dict[str, Any] = {
            **request.params,
            "model": request.model,
            "messages": [dict(m) for m in request.messages],
        }

        started = time.perf_counter()
        try:
            response = self._client.post("/chat/completions", json=body, timeout=timeout)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            return ProviderFailure(
                f"HTTP {status}: {e.response.text[:500]}",
                retryable=is_retryable_status(status),
                status_code=status,
            )
        except httpx.TimeoutException as e:
            return ProviderFailure(
                f"timed out after {timeout}s: {e}", retryable=True, kind=FailureKind.TIMEOUT
            )
        except httpx.RequestError as e:
            # Network/connection errors
            return ProviderFailure(f"request failed: {e}", retryable=True)
        latency_ms = (time.perf_counter() - started) * 1000.0

        # Proxies may return non-JSON (e.g., HTML error page) with HTTP 200
        try:
            data = response.json()
        except ValueError as e:
            return ProviderFailure(
                f"response is not valid JSON: {e}",
                retryable=False,
                kind=FailureKind.INVALID_RESPONSE,
            )

        try:
            choices = data["choices"]
            if not choices:
                return ProviderFailure(
                    "response has no choices",
                    retryable=False,
                    kind=FailureKind.INVALID_RESPONSE,
                )
            content = choices[0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            return ProviderFailure(
                f"malformed response: {type(e).__name__}: {e}",
                retryable=False,
                kind=FailureKind.INVALID_RESPONSE,
            )
        if not isinstance(content, str):
            return ProviderFailure(
                "response content is not text",
                retryable=False,
                kind=FailureKind.INVALID_RESPONSE,
            )

        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        return ProviderResponse(
            text=content,
            tokens_in=_count(usage.get("prompt_tokens")),
            tokens_out=_count(usage.get("completion_tokens")),
            cost_usd=_cost(usage.get("cost")),
            latency_ms=latency_ms,
            raw={"id": data.get("id"), "model": data.get("model", request.model)},
        )

    def close(self) -> None:
        self._client.close()


class RoutingInvoker:
    """Dispatches each request to the invoker registered for its provider."""

    def __init__(self, invokers: dict[str, Any]) -> None:
        self._invokers = dict(invokers)

    def invoke(
        self,
        request: ProviderRequest,
        *,
        timeout: float,
        abort: threading.Event,
    ) -> InvocationResult:
        invoker = self._invokers.get(request.provider)
        if invoker is None:
            return ProviderFailure(
                f"no invoker configured for provider '{request.provider}'",
                retryable=False,
            )
        result: InvocationResult = invoker.invoke(request, timeout=timeout, abort=abort)
        return result

    def close(self) -> None:
        for invoker in self._invokers.values():
            invoker.close()
