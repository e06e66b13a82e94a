# tests/conftest.py
"""Shared test fixtures and helpers.

Engine tests run against an in-memory store, a manual clock and a
scripted provider invoker, so nothing touches the network and time only
moves when a test moves it.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

from __future__ import annotations

import json
import os
import random
import re
import threading
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from hypothesis import Phase, Verbosity, settings

from quorum.contracts.provider import (
    InvocationResult,
    ProviderFailure,
    ProviderRequest,
    ProviderResponse,
)

# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Load profile from environment, default to "ci"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Clock and invoker doubles
# =============================================================================

START = datetime(2026, 3, 14, 12, 0, 0, tzinfo=UTC)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self.now = self.now + timedelta(seconds=seconds)
            return self.now


Reply = Callable[[ProviderRequest], InvocationResult]


def prompt_kind(request: ProviderRequest) -> str:
    """Which default meta prompt (or a plain sample) a request carries."""
    prompt = request.prompt
    if '"scores"' in prompt:
        return "rank"
    if '"disagreement"' in prompt:
        return "disagreement"
    if "single best answer" in prompt:
        return "synthesize"
    return "sample"


def sample_reply(request: ProviderRequest) -> InvocationResult:
    """Samples answer with their seed so each one is distinguishable."""
    seed = request.params.get("seed")
    return ProviderResponse(text=f"answer {seed}", tokens_in=10, tokens_out=5)


def rank_reply(request: ProviderRequest) -> InvocationResult:
    """The last candidate gets the best score."""
    count = len(re.findall(r"^Candidate \d+:", request.prompt, flags=re.MULTILINE))
    return ProviderResponse(
        text=json.dumps({"scores": [float(i) for i in range(1, count + 1)]}),
        tokens_in=50,
        tokens_out=10,
    )


def disagreement_reply(request: ProviderRequest) -> InvocationResult:
    return ProviderResponse(
        text='{"disagreement": false, "summary": "The answers agree."}',
        tokens_in=50,
        tokens_out=10,
    )


def synthesize_reply(request: ProviderRequest) -> InvocationResult:
    return ProviderResponse(text="synthesized answer", tokens_in=80, tokens_out=20)


DEFAULT_REPLIES: dict[str, Reply] = {
    "sample": sample_reply,
    "rank": rank_reply,
    "disagreement": disagreement_reply,
    "synthesize": synthesize_reply,
}


def default_reply(request: ProviderRequest) -> InvocationResult:
    """Answer sample and meta prompts the way a cooperative model would."""
    return DEFAULT_REPLIES[prompt_kind(request)](request)


class ScriptedInvoker:
    """Provider invoker double.

    Results queued with ``push`` are returned first, in order; after that
    ``reply`` decides. A pushed exception is raised from ``invoke``.
    """

    def __init__(
        self, reply: Callable[[ProviderRequest], InvocationResult] = default_reply
    ) -> None:
        self.reply = reply
        self.requests: list[ProviderRequest] = []
        self.closed = False
        self._script: list[InvocationResult | Exception] = []
        self._lock = threading.Lock()

    def push(self, *results: InvocationResult | Exception) -> None:
        with self._lock:
            self._script.extend(results)

    def invoke(
        self,
        request: ProviderRequest,
        *,
        timeout: float,
        abort: threading.Event,
    ) -> InvocationResult:
        with self._lock:
            self.requests.append(request)
            scripted = self._script.pop(0) if self._script else None
        if isinstance(scripted, Exception):
            raise scripted
        if scripted is not None:
            return scripted
        return self.reply(request)

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def close(self) -> None:
        self.closed = True


def retryable(reason: str = "HTTP 503: overloaded") -> ProviderFailure:
    return ProviderFailure(reason, retryable=True, status_code=503)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    """Undo logging configuration made by a test (e.g. CLI runs under CliRunner,
    whose captured stderr is closed afterwards)."""
    import structlog

    yield
    structlog.reset_defaults()



def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


BASE_SETTINGS: dict[str, Any] = {
    "queues": {"default": {"concurrency": 4}},
    "profiles": {
        "fast": {
            "provider": "scripted",
            "model": "test-model",
            "temperatures": [0.2, 0.7, 1.0],
            "estimated_cost_usd": 0.25,
        },
    },
    "default_profile": "fast",
    "retry": {"max_attempts": 3, "base_delay_seconds": 1.0, "jitter": 0.0},
    "invocation": {"poll_interval_seconds": 0.01, "timeout_seconds": 5.0},
    "rate_limit": {"enabled": False},
}


@pytest.fixture
def make_settings() -> Callable[..., Any]:
    """Build validated settings from the test defaults plus overrides.

    Nested mappings are merged, so ``make_settings(retry={"max_attempts": 1})``
    keeps the other retry defaults.
    """
    from quorum.core.config import QuorumSettings

    def factory(**overrides: Any) -> QuorumSettings:
        return QuorumSettings(**_merge(BASE_SETTINGS, overrides))

    return factory


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def invoker() -> ScriptedInvoker:
    return ScriptedInvoker()


@pytest.fixture
def make_invoker() -> Callable[..., ScriptedInvoker]:
    """Scripted invoker with some prompt kinds answered differently.

    ``make_invoker(rank=lambda request: ...)`` overrides the reply for rank
    prompts; the kinds are sample, rank, disagreement and synthesize.
    """

    def factory(**overrides: Reply) -> ScriptedInvoker:
        unknown = set(overrides) - set(DEFAULT_REPLIES)
        assert not unknown, f"unknown prompt kinds: {unknown}"
        replies = {**DEFAULT_REPLIES, **overrides}
        return ScriptedInvoker(lambda request: replies[prompt_kind(request)](request))

    return factory


@pytest.fixture
def store() -> Iterator[Any]:
    """Record store over a fresh in-memory database."""
    from quorum.core.store import RecordStore, StoreDB

    db = StoreDB.in_memory()
    yield RecordStore(db)
    db.close()


@pytest.fixture
def make_engine(
    make_settings: Callable[..., Any], clock: ManualClock, invoker: ScriptedInvoker
) -> Iterator[Callable[..., Any]]:
    """Build orchestrators over in-memory stores, closed after the test."""
    from quorum.core.store import StoreDB
    from quorum.engine.orchestrator import Orchestrator

    engines: list[Any] = []

    def factory(settings: Any = None, **kwargs: Any) -> Orchestrator:
        kwargs.setdefault("db", StoreDB.in_memory())
        kwargs.setdefault("invoker", invoker)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("rng", random.Random(0))
        engine = Orchestrator(settings or make_settings(), **kwargs)
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        engine.close()
        engine.db.close()


@pytest.fixture
def engine(make_engine: Callable[..., Any]) -> Any:
    """Orchestrator with the default test settings."""
    return make_engine()


@pytest.fixture
def retryable_failure() -> Callable[..., ProviderFailure]:
    return retryable


def chat_request(prompt: str = "Why is the sky blue?", **params: Any) -> dict[str, Any]:
    """Request dict the executor can hand to an invoker."""
    return {
        "provider": "scripted",
        "model": "test-model",
        "messages": [{"role": "user", "content": prompt}],
        "params": dict(params),
    }


@pytest.fixture
def submit_run() -> Callable[..., Any]:
    """Queue a standalone sample run: ``submit_run(engine, prompt, **submit_kwargs)``."""

    def submit(engine: Any, prompt: str = "Why is the sky blue?", **kwargs: Any) -> Any:
        return engine.scheduler.submit("sample", chat_request(prompt), **kwargs)

    return submit


@pytest.fixture
def start_run(clock: ManualClock) -> Callable[..., Any]:
    """Lease a queued run and move it to running: ``start_run(engine, run_id, worker)``."""

    def start(engine: Any, run_id: str, worker_id: str = "w1") -> Any:
        expiry = clock() + engine.leases.duration
        leased = engine.state_machine.lease(run_id, worker_id, expiry)
        assert leased is not None, f"run {run_id} was not leasable"
        return engine.state_machine.start(run_id, worker_id)

    return start
