"""Tests for the OpenAI-compatible HTTP invoker."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from quorum.contracts.enums import FailureKind
from quorum.contracts.provider import ProviderFailure, ProviderRequest, ProviderResponse


def _request(provider: str = "openrouter", **params: Any) -> ProviderRequest:
    return ProviderRequest(
        provider=provider,
        model="anthropic/claude-3-haiku",
        messages=({"role": "user", "content": "Why is the sky blue?"},),
        params=params,
    )


def _completion(content: Any = "Rayleigh scattering.", **usage: Any) -> dict[str, Any]:
    return {
        "id": "gen-123",
        "model": "anthropic/claude-3-haiku",
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 4, **usage},
    }


def _invoker(handler: Callable[[httpx.Request], httpx.Response], **kwargs: Any) -> Any:
    from quorum.providers.http import HTTPChatInvoker

    return HTTPChatInvoker(
        "https://openrouter.test/api/v1", transport=httpx.MockTransport(handler), **kwargs
    )


def _invoke(invoker: Any, request: ProviderRequest | None = None) -> Any:
    return invoker.invoke(request or _request(), timeout=5.0, abort=threading.Event())


class TestSuccess:
    def test_parses_completion(self) -> None:
        invoker = _invoker(lambda req: httpx.Response(200, json=_completion(cost=0.0004)))

        result = _invoke(invoker)

        assert isinstance(result, ProviderResponse)
        assert result.text == "Rayleigh scattering."
        assert (result.tokens_in, result.tokens_out) == (12, 4)
        assert result.cost_usd == pytest.approx(0.0004)
        assert result.raw == {"id": "gen-123", "model": "anthropic/claude-3-haiku"}
        assert result.latency_ms is not None

    def test_cost_absent_when_not_reported(self) -> None:
        invoker = _invoker(lambda req: httpx.Response(200, json=_completion()))

        assert _invoke(invoker).cost_usd is None

    def test_null_token_counts_still_succeed(self) -> None:
        payload = _completion()
        payload["usage"] = {"prompt_tokens": 3, "completion_tokens": None, "cost": None}
        invoker = _invoker(lambda req: httpx.Response(200, json=payload))

        result = _invoke(invoker)

        assert isinstance(result, ProviderResponse)
        assert result.text == "Rayleigh scattering."
        assert (result.tokens_in, result.tokens_out) == (3, 0)
        assert result.cost_usd is None

    @pytest.mark.parametrize("usage", [None, "n/a", [1, 2], {"cost": "free"}])
    def test_malformed_usage_is_ignored(self, usage: Any) -> None:
        payload = _completion()
        payload["usage"] = usage
        invoker = _invoker(lambda req: httpx.Response(200, json=payload))

        result = _invoke(invoker)

        assert isinstance(result, ProviderResponse)
        assert (result.tokens_in, result.tokens_out) == (0, 0)
        assert result.cost_usd is None

    def test_sends_model_messages_params_and_auth(self) -> None:
        seen: list[httpx.Request] = []

        def handler(req: httpx.Request) -> httpx.Response:
            seen.append(req)
            return httpx.Response(200, json=_completion())

        invoker = _invoker(handler, api_key="sk-test", headers={"X-Title": "quorum"})
        _invoke(invoker, _request(temperature=0.7, seed=3))

        [sent] = seen
        assert sent.url.path == "/api/v1/chat/completions"
        assert sent.headers["Authorization"] == "Bearer sk-test"
        assert sent.headers["X-Title"] == "quorum"
        body = json.loads(sent.content)
        assert body == {
            "model": "anthropic/claude-3-haiku",
            "messages": [{"role": "user", "content": "Why is the sky blue?"}],
            "temperature": 0.7,
            "seed": 3,
        }


class TestFailures:
    @pytest.mark.parametrize(
        ("status", "retryable"),
        [(429, True), (503, True), (500, True), (408, True), (400, False), (401, False)],
    )
    def test_http_errors(self, status: int, retryable: bool) -> None:
        invoker = _invoker(lambda req: httpx.Response(status, text="nope"))

        result = _invoke(invoker)

        assert isinstance(result, ProviderFailure)
        assert result.retryable is retryable
        assert result.status_code == status
        assert result.reason == f"HTTP {status}: nope"

    def test_timeout_is_retryable(self) -> None:
        def handler(req: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=req)

        result = _invoke(_invoker(handler))

        assert isinstance(result, ProviderFailure)
        assert result.kind is FailureKind.TIMEOUT
        assert result.retryable

    def test_connection_error_is_retryable(self) -> None:
        def handler(req: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=req)

        result = _invoke(_invoker(handler))

        assert isinstance(result, ProviderFailure)
        assert result.kind is FailureKind.PROVIDER
        assert result.retryable
        assert result.reason.startswith("request failed")

    def test_html_with_200_is_invalid(self) -> None:
        invoker = _invoker(lambda req: httpx.Response(200, text="<html>proxy error</html>"))

        result = _invoke(invoker)

        assert isinstance(result, ProviderFailure)
        assert result.kind is FailureKind.INVALID_RESPONSE
        assert not result.retryable

    @pytest.mark.parametrize(
        "payload",
        [
            {"choices": []},
            {"choices": [{"message": {}}]},
            {"result": "no choices key"},
            _completion(content=None),
        ],
    )
    def test_malformed_payloads(self, payload: dict[str, Any]) -> None:
        invoker = _invoker(lambda req: httpx.Response(200, json=payload))

        result = _invoke(invoker)

        assert isinstance(result, ProviderFailure)
        assert result.kind is FailureKind.INVALID_RESPONSE

    def test_abort_before_call_skips_request(self) -> None:
        calls: list[httpx.Request] = []

        def handler(req: httpx.Request) -> httpx.Response:
            calls.append(req)
            return httpx.Response(200, json=_completion())

        abort = threading.Event()
        abort.set()
        result = _invoker(handler).invoke(_request(), timeout=5.0, abort=abort)

        assert isinstance(result, ProviderFailure)
        assert result.kind is FailureKind.CANCELLED
        assert calls == []


class TestRouting:
    def test_routes_by_provider(self) -> None:
        from quorum.providers.http import RoutingInvoker

        a = _invoker(lambda req: httpx.Response(200, json=_completion("from a")))
        b = _invoker(lambda req: httpx.Response(200, json=_completion("from b")))
        router = RoutingInvoker({"a": a, "b": b})

        assert _invoke(router, _request("b")).text == "from b"
        assert _invoke(router, _request("a")).text == "from a"

    def test_unknown_provider_is_permanent_failure(self) -> None:
        from quorum.providers.http import RoutingInvoker

        result = _invoke(RoutingInvoker({}), _request("ghost"))

        assert isinstance(result, ProviderFailure)
        assert not result.retryable
        assert "ghost" in result.reason

    def test_close_closes_every_invoker(self) -> None:
        from quorum.providers.http import RoutingInvoker

        closed: list[str] = []

        class Recorder:
            def __init__(self, name: str) -> None:
                self.name = name

            def close(self) -> None:
                closed.append(self.name)

        RoutingInvoker({"a": Recorder("a"), "b": Recorder("b")}).close()

        assert closed == ["a", "b"]


def test_retryable_status_classification() -> None:
    from quorum.providers.http import is_retryable_status

    assert is_retryable_status(429)
    assert is_retryable_status(502)
    assert not is_retryable_status(404)
    assert not is_retryable_status(422)
