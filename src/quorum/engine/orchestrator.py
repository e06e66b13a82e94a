# src/quorum/engine/orchestrator.py
"""Orchestrator: builds and owns one engine instance.

Coordinates:
- Record store and event bus
- Run state machine, leases, budgets and queue admission
- Provider invocation
- Sampling/ensemble reduction and pipelines
- Periodic sweeps
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from types import TracebackType
from typing import Any

import structlog

from quorum.contracts.records import Batch, PipelineRun, Question
from quorum.core.catalog import PipelineCatalog
from quorum.core.clock import Clock, utc_now
from quorum.core.config import QuorumSettings
from quorum.core.rate_limit import RateLimitRegistry
from quorum.core.store import RecordStore, StoreDB
from quorum.engine.budget import BudgetLedger
from quorum.engine.events import EventBus
from quorum.engine.leases import LeaseManager
from quorum.engine.pipeline import PipelineExecutor
from quorum.engine.sampling import SamplingEngine
from quorum.engine.scheduler import QueueScheduler, RunExecutor, Worker
from quorum.engine.state_machine import RunStateMachine
from quorum.engine.sweeps import Sweeper
from quorum.plugins.manager import PluginManager
from quorum.providers.http import HTTPChatInvoker, RoutingInvoker
from quorum.providers.protocols import ProviderInvoker

logger = structlog.get_logger(__name__)


def build_invoker(settings: QuorumSettings) -> RoutingInvoker:
    """One HTTP invoker per configured provider, routed by provider name."""
    return RoutingInvoker(
        {
            name: HTTPChatInvoker(
                provider.base_url, api_key=provider.api_key, headers=dict(provider.headers)
            )
            for name, provider in settings.providers.items()
        }
    )


def load_catalog(settings: QuorumSettings, base_dir: Path | None = None) -> PipelineCatalog:
    """The pipeline catalog named by ``pipelines.catalog_dir`` (empty if unset)."""
    catalog_dir = settings.pipelines.catalog_dir
    if catalog_dir is None:
        return PipelineCatalog()
    path = Path(catalog_dir)
    if base_dir is not None and not path.is_absolute():
        path = base_dir / path
    return PipelineCatalog.from_directory(path)


class Orchestrator:
    """Wires the engine components around one record store.

    Every component gets the same store, event bus and clock. Tests pass
    an in-memory ``db``, a scripted ``invoker`` and a manual ``clock``.

    Usage:
        with Orchestrator(settings) as engine:
            batch = engine.ask("Why is the sky blue?", n=5)
            engine.drain(lambda: engine.batch(batch.id).status.is_terminal)
    """

    def __init__(
        self,
        settings: QuorumSettings,
        *,
        db: StoreDB | None = None,
        invoker: ProviderInvoker | None = None,
        catalog: PipelineCatalog | None = None,
        plugins: PluginManager | None = None,
        clock: Clock = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self._owns_db = db is None
        self.db = db or StoreDB.from_url(settings.store.url, echo=settings.store.echo)
        self.store = RecordStore(self.db)
        self.events = EventBus()

        self.ledger = BudgetLedger(self.store, settings.budgets, clock=clock)
        self.state_machine = RunStateMachine(
            self.store,
            settings.retry,
            ledger=self.ledger,
            events=self.events,
            clock=clock,
            rng=rng,
        )
        self.leases = LeaseManager(self.store, self.state_machine, settings.lease, clock=clock)
        self.limiters = RateLimitRegistry(settings.rate_limit, dict(settings.queues))
        self.scheduler = QueueScheduler(
            self.store,
            settings,
            self.state_machine,
            self.leases,
            self.ledger,
            self.limiters,
        )
        self.invoker: ProviderInvoker = invoker or build_invoker(settings)
        self.executor = RunExecutor(
            self.store,
            settings,
            self.state_machine,
            self.leases,
            self.ledger,
            self.invoker,
        )

        self.sampling = SamplingEngine(
            self.store,
            settings,
            self.scheduler,
            self.state_machine,
            self.events,
            clock=clock,
        )
        if plugins is None:
            plugins = PluginManager()
            plugins.register_builtin_plugins()
        self.plugins = plugins
        self.pipelines = PipelineExecutor(
            self.store,
            settings,
            self.sampling,
            self.state_machine,
            self.events,
            self.plugins,
            catalog if catalog is not None else load_catalog(settings),
            clock=clock,
        )
        self.sweeper = Sweeper(
            settings,
            self.leases,
            self.ledger,
            self.sampling,
            self.pipelines,
            clock=clock,
        )
        logger.debug(
            "engine_ready",
            queues=list(settings.queues),
            profiles=list(settings.profiles),
            pipelines=self.pipelines.catalog.names(),
        )

    # === Entry points ===

    def worker(
        self,
        queues: Sequence[str] | None = None,
        *,
        worker_id: str | None = None,
        idle_sleep_seconds: float = 0.5,
    ) -> Worker:
        """A worker over ``queues`` (default: every configured queue)."""
        return Worker(
            self.scheduler,
            self.executor,
            list(queues) if queues else list(self.settings.queues),
            worker_id=worker_id,
            idle_sleep_seconds=idle_sleep_seconds,
        )

    def ask(
        self,
        question: str | Question,
        *,
        n: int | None = None,
        profile: str | None = None,
        tags: Sequence[str] = (),
        **options: Any,
    ) -> Batch:
        """Fan a question out to ``n`` samples and queue its reduction."""
        record = self.sampling.ensure_question(question, tags=list(tags))
        return self.sampling.fan_out(record, n, profile, **options)

    def start_pipeline(
        self, source: str | Mapping[str, Any], *, params: Mapping[str, Any] | None = None
    ) -> PipelineRun:
        """Start a pipeline by catalog name or from a raw definition."""
        return self.pipelines.start(source, params=dict(params or {}))

    def batch(self, batch_id: str) -> Batch:
        return self.store.get(Batch, batch_id)

    def pipeline(self, pipeline_id: str) -> PipelineRun:
        return self.store.get(PipelineRun, pipeline_id)

    def drain(
        self,
        done: Callable[[], bool],
        *,
        queues: Sequence[str] | None = None,
        timeout_seconds: float | None = None,
        poll_seconds: float = 0.2,
    ) -> bool:
        """Work queues in this process until ``done()`` holds.

        Runs due sweeps between rounds so deadlines and retries progress.

        Returns:
            Whether ``done()`` held before the timeout
        """
        worker = self.worker(queues)
        started = time.monotonic()
        while not done():
            executed = worker.run_until_idle()
            self.sweeper.run_due()
            if done():
                break
            if timeout_seconds is not None and time.monotonic() - started >= timeout_seconds:
                return False
            if executed == 0:
                time.sleep(poll_seconds)
        return True

    # === Lifecycle ===

    def close(self) -> None:
        self.executor.close()
        self.invoker.close()
        self.limiters.close()
        if self._owns_db:
            self.db.close()

    def __enter__(self) -> Orchestrator:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
