# src/quorum/core/store/schema.py
"""SQLAlchemy table definitions for the record store.

Uses SQLAlchemy Core (not ORM) for explicit control over queries
and compatibility with multiple database backends. Every table carries
an ``extra`` JSON column and a ``version`` column for compare-and-set
updates. Structured fields (lists, maps) are stored as JSON text.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

# Shared metadata for all tables
metadata = MetaData()

# === Questions and Answers ===

questions_table = Table(
    "questions",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("text", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("canonical_answer_id", String(64)),
    Column("tags", Text, nullable=False),
    Column("extra", Text, nullable=False),
    Column("version", Integer, nullable=False),
)

answers_table = Table(
    "answers",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("kind", String(16), nullable=False),
    Column("text", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("run_id", String(64)),
    Column("question_id", String(64)),
    Column("batch_id", String(64)),
    Column("operation", String(64)),
    Column("score", Float),
    Column("rank", Integer),
    Column("extra", Text, nullable=False),
    Column("version", Integer, nullable=False),
)

Index("ix_answers_batch", answers_table.c.batch_id, answers_table.c.kind)

# === Runs ===

runs_table = Table(
    "runs",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("op", String(64), nullable=False),
    Column("queue_name", String(128), nullable=False),
    Column("request", Text, nullable=False),
    Column("request_hash", String(64), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("status", String(16), nullable=False),
    Column("profile_name", String(128)),
    Column("response", Text),
    Column("attempt", Integer, nullable=False),
    Column("max_attempts", Integer, nullable=False),
    Column("priority", Integer, nullable=False),
    Column("lease_owner", String(128)),
    Column("lease_expiry", DateTime(timezone=True)),
    Column("available_at", DateTime(timezone=True)),
    Column("started_at", DateTime(timezone=True)),
    Column("finished_at", DateTime(timezone=True)),
    Column("cost_usd", Float, nullable=False),
    Column("tokens_in", Integer, nullable=False),
    Column("tokens_out", Integer, nullable=False),
    Column("latency_ms", Float),
    Column("error", Text),
    Column("batch_id", String(64)),
    Column("pipeline_id", String(64)),
    Column("step_id", String(128)),
    Column("question_id", String(64)),
    Column("budget_scopes", Text, nullable=False),
    Column("reserved_usd", Float, nullable=False),
    Column("cancel_requested", Boolean, nullable=False),
    Column("cancel_requested_at", DateTime(timezone=True)),
    Column("retry_delays", Text, nullable=False),
    Column("cached_from", String(64)),
    Column("extra", Text, nullable=False),
    Column("version", Integer, nullable=False),
)

Index("ix_runs_queue_status", runs_table.c.queue_name, runs_table.c.status)
Index("ix_runs_request_hash", runs_table.c.request_hash, runs_table.c.status)
Index("ix_runs_batch", runs_table.c.batch_id)
Index("ix_runs_pipeline", runs_table.c.pipeline_id)

# === Batches ===

batches_table = Table(
    "batches",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("question_id", String(64), nullable=False),
    Column("target_count", Integer, nullable=False),
    Column("completion_threshold", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("profile_name", String(128)),
    Column("queue_name", String(128)),
    Column("status", String(16), nullable=False),
    Column("completed_count", Integer, nullable=False),
    Column("failed_count", Integer, nullable=False),
    Column("deadline", DateTime(timezone=True)),
    Column("run_ids", Text, nullable=False),
    Column("settled_run_ids", Text, nullable=False),
    Column("meta_steps", Text, nullable=False),
    Column("meta_index", Integer, nullable=False),
    Column("meta_run_ids", Text, nullable=False),
    Column("final_answer_id", String(64)),
    Column("pipeline_id", String(64)),
    Column("step_id", String(128)),
    Column("reduction_started_at", DateTime(timezone=True)),
    Column("finished_at", DateTime(timezone=True)),
    Column("error", Text),
    Column("extra", Text, nullable=False),
    Column("version", Integer, nullable=False),
)

Index("ix_batches_status", batches_table.c.status)

# === Pipelines ===

pipeline_runs_table = Table(
    "pipeline_runs",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(128), nullable=False),
    Column("definition", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("status", String(16), nullable=False),
    Column("failure_policy", String(16), nullable=False),
    Column("steps", Text, nullable=False),
    Column("lineage", Text, nullable=False),
    Column("params", Text, nullable=False),
    Column("parent_pipeline_id", String(64)),
    Column("parent_step_id", String(128)),
    Column("finished_at", DateTime(timezone=True)),
    Column("error", Text),
    Column("extra", Text, nullable=False),
    Column("version", Integer, nullable=False),
)

Index("ix_pipeline_runs_status", pipeline_runs_table.c.status)

# === Budgets ===

budget_scopes_table = Table(
    "budget_scopes",
    metadata,
    Column("id", String(128), primary_key=True),
    Column("cap_usd", Float, nullable=False),
    Column("window", String(16), nullable=False),
    Column("window_start", DateTime(timezone=True), nullable=False),
    Column("spent_usd", Float, nullable=False),
    Column("reserved_usd", Float, nullable=False),
    Column("extra", Text, nullable=False),
    Column("version", Integer, nullable=False),
)
