"""Run/queue engine: state machine, leases, scheduling, sampling and pipelines."""

from quorum.engine.budget import BudgetLedger
from quorum.engine.events import EventBus
from quorum.engine.leases import LeaseManager
from quorum.engine.orchestrator import Orchestrator, build_invoker, load_catalog
from quorum.engine.pipeline import PipelineExecutor, StepOutcome
from quorum.engine.sampling import SamplingEngine
from quorum.engine.scheduler import QueueScheduler, RunExecutor, Worker
from quorum.engine.state_machine import RunStateMachine
from quorum.engine.sweeps import PeriodicTask, Sweeper
from quorum.engine.templates import PromptTemplate, TemplateError

__all__ = [
    "BudgetLedger",
    "EventBus",
    "LeaseManager",
    "Orchestrator",
    "PeriodicTask",
    "PipelineExecutor",
    "PromptTemplate",
    "QueueScheduler",
    "RunExecutor",
    "RunStateMachine",
    "SamplingEngine",
    "StepOutcome",
    "Sweeper",
    "TemplateError",
    "Worker",
    "build_invoker",
    "load_catalog",
]
