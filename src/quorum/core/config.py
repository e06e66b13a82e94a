# src/quorum/core/config.py
"""
Configuration schema and loading for the orchestration engine.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction; the engine only ever
reads them.
"""

import fnmatch
import math
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from quorum.contracts.enums import BudgetWindow, MetaOperation
from quorum.contracts.errors import ValidationError


class QueueSettings(BaseModel):
    """A named work queue.

    Example YAML:
        queues:
          default:
            concurrency: 4
            rate_per_minute: 60
            burst: 10
            allowed_ops: ["sample", "meta.*"]
            budget_scope: daily
    """

    model_config = {"frozen": True}

    concurrency: int = Field(default=4, gt=0, description="Max leased/running runs")
    rate_per_minute: float = Field(default=60.0, gt=0, description="Token refill rate")
    burst: int = Field(default=10, gt=0, description="Token bucket capacity")
    allowed_ops: list[str] = Field(
        default_factory=lambda: ["*"],
        description="Op names or glob patterns admitted to this queue",
    )
    budget_scope: str | None = Field(
        default=None, description="Budget scope charged for every run in the queue"
    )

    def allows(self, op: str) -> bool:
        """Whether ``op`` may be submitted to this queue."""
        return any(fnmatch.fnmatchcase(op, pattern) for pattern in self.allowed_ops)


class ProfileSettings(BaseModel):
    """Model/provider selection plus cost accounting for a class of runs.

    Example YAML:
        profiles:
          fast:
            provider: openrouter
            model: anthropic/claude-3-haiku
            queue: default
            temperatures: [0.2, 0.7, 1.0]
            estimated_cost_usd: 0.002
            input_cost_per_1k: 0.00025
            output_cost_per_1k: 0.00125
    """

    model_config = {"frozen": True}

    provider: str = Field(default="openai", description="Provider key for the invoker")
    model: str = Field(description="Model identifier passed to the provider")
    system_prompt: str | None = None
    params: dict[str, Any] = Field(
        default_factory=dict, description="Decoding parameters (max_tokens, top_p, ...)"
    )
    temperatures: list[float] | None = Field(
        default=None,
        description="Per-sample temperature schedule, cycled across a batch",
    )
    seed_base: int | None = Field(
        default=0, description="Per-sample seed is seed_base + sample index"
    )
    queue: str = Field(default="default", description="Queue runs are submitted to")
    budget_scope: str | None = None
    estimated_cost_usd: float = Field(
        default=0.01, ge=0, description="Pre-authorization estimate per run"
    )
    max_cost_per_run_usd: float | None = Field(default=None, gt=0)
    input_cost_per_1k: float = Field(default=0.0, ge=0)
    output_cost_per_1k: float = Field(default=0.0, ge=0)
    max_attempts: int | None = Field(default=None, gt=0)
    timeout_seconds: float | None = Field(default=None, gt=0)
    templates: dict[MetaOperation, str] = Field(
        default_factory=dict, description="Jinja2 overrides for meta-operation prompts"
    )

    def cost_for(self, tokens_in: int, tokens_out: int) -> float:
        """Cost of a call from token usage and per-1k prices."""
        return (
            tokens_in * self.input_cost_per_1k + tokens_out * self.output_cost_per_1k
        ) / 1000.0


class ProviderSettings(BaseModel):
    """An OpenAI-compatible endpoint, keyed by provider name.

    Example YAML:
        providers:
          openrouter:
            base_url: https://openrouter.ai/api/v1
            api_key: "${OPENROUTER_API_KEY}"
    """

    model_config = {"frozen": True}

    base_url: str = Field(description="Endpoint root, /chat/completions is appended")
    api_key: str | None = Field(default=None, description="Bearer token")
    headers: dict[str, str] = Field(default_factory=dict)


class BudgetScopeSettings(BaseModel):
    """Cap for a budget scope over a rolling window."""

    model_config = {"frozen": True}

    cap_usd: float = Field(ge=0, description="Maximum spend per window")
    window: BudgetWindow = Field(default=BudgetWindow.DAILY)


class RetrySettings(BaseModel):
    """Retry/backoff policy for retryable failures.

    backoff(attempt) = min(base_delay * exponential_base ** attempt, max_delay),
    then scaled by a random factor in [1 - jitter, 1 + jitter].
    """

    model_config = {"frozen": True}

    max_attempts: int = Field(default=3, gt=0, description="Maximum attempts per run")
    base_delay_seconds: float = Field(default=1.0, ge=0, description="Backoff base")
    max_delay_seconds: float = Field(default=60.0, gt=0, description="Backoff cap")
    exponential_base: float = Field(default=2.0, gt=1.0)
    jitter: float = Field(default=0.1, ge=0, lt=1.0)


class LeaseSettings(BaseModel):
    """Lease duration and renewal cadence."""

    model_config = {"frozen": True}

    duration_seconds: float = Field(default=60.0, gt=0)
    renew_after_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Renew while invoking after this long (default: a third of duration)",
    )

    @property
    def renew_interval(self) -> float:
        if self.renew_after_seconds is not None:
            return self.renew_after_seconds
        return self.duration_seconds / 3.0


class InvocationSettings(BaseModel):
    """Provider call bounds."""

    model_config = {"frozen": True}

    timeout_seconds: float = Field(default=120.0, gt=0)
    cancel_grace_seconds: float = Field(
        default=30.0, gt=0, description="Hard timeout after a cancel request"
    )
    poll_interval_seconds: float = Field(default=0.05, gt=0)
    max_workers: int = Field(default=4, gt=0, description="Invocation thread pool size")


class BatchSettings(BaseModel):
    """Sampling defaults."""

    model_config = {"frozen": True}

    default_n: int = Field(default=5, gt=0)
    completion_ratio: float = Field(
        default=1.0,
        gt=0,
        le=1.0,
        description="Fraction of samples that must succeed before reduction starts",
    )
    deadline_seconds: float | None = Field(default=None, gt=0)
    meta_steps: list[MetaOperation] = Field(
        default_factory=lambda: [MetaOperation.RANK, MetaOperation.SYNTHESIZE]
    )
    meta_profile: str | None = Field(
        default=None, description="Profile for meta runs (default: sampling profile)"
    )

    def threshold_for(self, n: int) -> int:
        return max(1, min(n, math.ceil(n * self.completion_ratio)))


class CacheSettings(BaseModel):
    """Which ops may be answered from an earlier identical request."""

    model_config = {"frozen": True}

    enabled: bool = True
    ops: list[str] = Field(default_factory=lambda: ["sample", "meta.*"])

    def caches(self, op: str) -> bool:
        return self.enabled and any(fnmatch.fnmatchcase(op, p) for p in self.ops)


class PipelineSettings(BaseModel):
    """Pipeline catalog and execution defaults."""

    model_config = {"frozen": True}

    catalog_dir: str | None = Field(
        default=None, description="Directory of *.yaml pipeline definitions"
    )
    max_parallel_steps: int | None = Field(default=None, gt=0)
    stalled_step_seconds: float = Field(
        default=600.0, gt=0, description="Fail steps stuck starting for longer than this"
    )


class StoreSettings(BaseModel):
    """Record store configuration."""

    model_config = {"frozen": True}

    # NOTE: Using str instead of Path - Path mangles PostgreSQL DSNs
    url: str = Field(default="sqlite:///./quorum.db", description="SQLAlchemy URL")
    echo: bool = Field(default=False, description="Echo SQL statements")


class RateLimitSettings(BaseModel):
    """Token bucket backing store."""

    model_config = {"frozen": True}

    enabled: bool = Field(default=True, description="Enforce per-queue rate limits")
    persistence_path: str | None = Field(
        default=None, description="SQLite path for cross-process buckets"
    )


class SweepSettings(BaseModel):
    """Intervals of the periodic background tasks."""

    model_config = {"frozen": True}

    reclaim_interval_seconds: float = Field(default=15.0, gt=0)
    rollover_interval_seconds: float = Field(default=60.0, gt=0)
    deadline_interval_seconds: float = Field(default=5.0, gt=0)
    reconcile_interval_seconds: float = Field(default=30.0, gt=0)


class LoggingSettings(BaseModel):
    """Log output configuration."""

    model_config = {"frozen": True}

    level: str = "INFO"
    json_output: bool = False


class QuorumSettings(BaseModel):
    """Top-level configuration.

    This is the single source of truth for queues, profiles, budgets and
    engine policy. All settings are validated and frozen after construction.
    """

    model_config = {"frozen": True}

    queues: dict[str, QueueSettings] = Field(
        default_factory=lambda: {"default": QueueSettings()},
    )
    profiles: dict[str, ProfileSettings] = Field(default_factory=dict)
    providers: dict[str, ProviderSettings] = Field(default_factory=dict)
    default_profile: str | None = None
    budgets: dict[str, BudgetScopeSettings] = Field(default_factory=dict)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    lease: LeaseSettings = Field(default_factory=LeaseSettings)
    invocation: InvocationSettings = Field(default_factory=InvocationSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    pipelines: PipelineSettings = Field(default_factory=PipelineSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    sweeps: SweepSettings = Field(default_factory=SweepSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("queues")
    @classmethod
    def validate_queues_not_empty(
        cls, v: dict[str, QueueSettings]
    ) -> dict[str, QueueSettings]:
        if not v:
            raise ValueError("At least one queue is required")
        return v

    @model_validator(mode="after")
    def validate_references(self) -> "QuorumSettings":
        """Profiles must name existing queues; scopes must be defined budgets."""
        for name, profile in self.profiles.items():
            if profile.queue not in self.queues:
                raise ValueError(
                    f"profile '{name}' uses unknown queue '{profile.queue}'. "
                    f"Available queues: {list(self.queues.keys())}"
                )
            if profile.budget_scope and profile.budget_scope not in self.budgets:
                raise ValueError(
                    f"profile '{name}' uses unknown budget scope '{profile.budget_scope}'"
                )
        for name, queue in self.queues.items():
            if queue.budget_scope and queue.budget_scope not in self.budgets:
                raise ValueError(
                    f"queue '{name}' uses unknown budget scope '{queue.budget_scope}'"
                )
        if self.default_profile and self.default_profile not in self.profiles:
            raise ValueError(f"default_profile '{self.default_profile}' not found in profiles")
        if self.batch.meta_profile and self.batch.meta_profile not in self.profiles:
            raise ValueError(f"batch.meta_profile '{self.batch.meta_profile}' not found")
        return self

    def get_queue(self, name: str) -> QueueSettings:
        try:
            return self.queues[name]
        except KeyError:
            raise ValidationError(
                f"Unknown queue '{name}'. Available queues: {list(self.queues.keys())}"
            ) from None

    def get_profile(self, name: str | None = None) -> tuple[str, ProfileSettings]:
        """Resolve a profile by name, falling back to the default profile."""
        if name is None:
            name = self.default_profile or next(iter(self.profiles), None)
        if name is None or name not in self.profiles:
            raise ValidationError(
                f"Unknown profile '{name}'. Available profiles: {list(self.profiles.keys())}"
            )
        return name, self.profiles[name]


def load_settings(config_path: Path) -> QuorumSettings:
    """Load settings from YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (QUORUM_*) - highest priority
    2. Config file
    3. Defaults from Pydantic schema - lowest priority

    Environment variable format: QUORUM_STORE__URL for nested keys.

    Raises:
        pydantic.ValidationError: If configuration fails validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="QUORUM",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    # Dynaconf returns uppercase top-level keys
    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {
        k.lower(): v
        for k, v in dynaconf_settings.as_dict().items()
        if k not in internal_keys
    }
    return QuorumSettings(**raw_config)


def resolve_config(settings: QuorumSettings) -> dict[str, Any]:
    """Convert validated settings to a JSON-safe dict (explicit + defaults)."""
    return settings.model_dump(mode="json")
