# src/quorum/cli.py
"""quorum Command Line Interface.

Entry point for the quorum CLI tool.
"""

import dataclasses
import json
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError

from quorum import __version__
from quorum.contracts.enums import BatchStatus, PipelineStatus
from quorum.contracts.errors import QuorumError
from quorum.contracts.records import Answer, Batch, PipelineRun, Question, Record, Run
from quorum.core.catalog import load_pipeline
from quorum.core.config import QuorumSettings, load_settings
from quorum.core.logging import configure_logging
from quorum.engine.orchestrator import Orchestrator, load_catalog

app = typer.Typer(
    name="quorum",
    help="quorum: sampled LLM runs, leased queues, ensemble reduction and pipelines.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"quorum version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """quorum: sampled LLM runs, leased queues, ensemble reduction and pipelines."""
    pass


# === Helpers ===


def _load(settings: str) -> QuorumSettings:
    """Load and validate settings, exiting with a message on failure."""
    try:
        config = load_settings(Path(settings))
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None
    configure_logging(config.logging.level, json_output=config.logging.json_output)
    return config


@contextmanager
def _engine(settings: str) -> Iterator[Orchestrator]:
    """An engine for one command. Engine errors become exit code 1."""
    config = _load(settings)
    base_dir = Path(settings).resolve().parent
    try:
        with Orchestrator(config, catalog=load_catalog(config, base_dir)) as engine:
            yield engine
    except QuorumError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


def _parse_params(values: list[str]) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected KEY=VALUE, got '{item}'")
        params[key] = value
    return params


def _as_json(record: Record) -> str:
    return json.dumps(dataclasses.asdict(record), indent=2, default=str)


def _echo_record(record: Record) -> None:
    if isinstance(record, Run):
        typer.echo(f"Run {record.id}: {record.status.value}")
        typer.echo(f"  Op: {record.op}  Queue: {record.queue_name}")
        typer.echo(f"  Attempt: {record.attempt}/{record.max_attempts}")
        typer.echo(f"  Cost: ${record.cost_usd:.4f}")
        if record.error:
            typer.echo(f"  Error: {record.error.get('reason')}")
    elif isinstance(record, Batch):
        typer.echo(f"Batch {record.id}: {record.status.value}")
        typer.echo(f"  Question: {record.question_id}")
        typer.echo(
            f"  Samples: {record.completed_count} succeeded, {record.failed_count} failed "
            f"of {record.target_count} (threshold {record.completion_threshold})"
        )
        typer.echo(f"  Meta: {record.meta_index}/{len(record.meta_steps)} steps")
        if record.final_answer_id:
            typer.echo(f"  Final answer: {record.final_answer_id}")
        if record.error:
            typer.echo(f"  Error: {record.error.get('reason')}")
    elif isinstance(record, PipelineRun):
        typer.echo(f"Pipeline {record.id} ({record.name}): {record.status.value}")
        for step_id, state in record.steps.items():
            line = f"  {step_id:16} {state.status.value}"
            if state.error:
                line += f" - {state.error}"
            typer.echo(line)
    elif isinstance(record, Question):
        typer.echo(f"Question {record.id}: {record.text}")
        if record.canonical_answer_id:
            typer.echo(f"  Canonical answer: {record.canonical_answer_id}")
    elif isinstance(record, Answer):
        typer.echo(f"Answer {record.id} ({record.kind.value})")
        typer.echo(record.text)


# === Commands ===


@app.command()
def validate(
    settings: str = typer.Option(
        "settings.yaml",
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
    pipeline: list[str] = typer.Option(
        [],
        "--pipeline",
        "-p",
        help="Pipeline YAML file to validate (repeatable).",
    ),
) -> None:
    """Validate configuration and pipeline definitions without running."""
    config = _load(settings)
    try:
        catalog = load_catalog(config, Path(settings).resolve().parent)
        for path in pipeline:
            catalog.check_definition(load_pipeline(Path(path)))
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    except QuorumError as e:
        typer.echo(f"Pipeline error: {e}", err=True)
        raise typer.Exit(1) from None

    typer.echo(f"Configuration valid: {Path(settings).name}")
    typer.echo(f"  Queues: {', '.join(config.queues)}")
    typer.echo(f"  Profiles: {', '.join(config.profiles) or '(none)'}")
    typer.echo(f"  Budgets: {', '.join(config.budgets) or '(none)'}")
    typer.echo(f"  Pipelines: {', '.join(catalog.names()) or '(none)'}")
    for path in pipeline:
        typer.echo(f"  Pipeline file valid: {path}")


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question text."),
    settings: str = typer.Option("settings.yaml", "--settings", "-s"),
    n: int | None = typer.Option(None, "--n", "-n", help="Number of samples."),
    profile: str | None = typer.Option(None, "--profile", "-p", help="Profile name."),
    queue: str | None = typer.Option(None, "--queue", "-q", help="Queue override."),
    priority: int = typer.Option(0, "--priority", help="Lease priority."),
    wait: bool = typer.Option(
        True, "--wait/--no-wait", help="Work the queues here until the batch finishes."
    ),
    timeout: float | None = typer.Option(None, "--timeout", help="Give up after N seconds."),
) -> None:
    """Sample a question n times and reduce the samples to one answer."""
    with _engine(settings) as engine:
        batch = engine.ask(question, n=n, profile=profile, queue=queue, priority=priority)
        typer.echo(f"Batch {batch.id}: {len(batch.run_ids)} samples queued")
        if not wait:
            return

        finished = engine.drain(
            lambda: engine.batch(batch.id).status.is_terminal, timeout_seconds=timeout
        )
        batch = engine.batch(batch.id)
        if not finished:
            typer.echo(f"Timed out; batch is {batch.status.value}", err=True)
            raise typer.Exit(1)
        if batch.status is not BatchStatus.DONE or batch.final_answer_id is None:
            reason = (batch.error or {}).get("reason", "unknown error")
            typer.echo(f"Batch failed: {reason}", err=True)
            raise typer.Exit(1)
        answer = engine.store.get(Answer, batch.final_answer_id)
        typer.echo(f"  Samples: {batch.completed_count}/{batch.target_count} succeeded")
        typer.echo("")
        typer.echo(answer.text)


@app.command()
def pipeline(
    source: str = typer.Argument(..., help="Catalog pipeline name or YAML file."),
    settings: str = typer.Option("settings.yaml", "--settings", "-s"),
    param: list[str] = typer.Option(
        [], "--param", "-P", help="Template parameter KEY=VALUE (repeatable)."
    ),
    wait: bool = typer.Option(
        True, "--wait/--no-wait", help="Work the queues here until the pipeline finishes."
    ),
    timeout: float | None = typer.Option(None, "--timeout", help="Give up after N seconds."),
) -> None:
    """Start a pipeline run."""
    params = _parse_params(param)
    path = Path(source)
    with _engine(settings) as engine:
        if path.suffix in (".yaml", ".yml", ".json") and path.exists():
            run = engine.pipelines.start(load_pipeline(path), params=params)
        else:
            run = engine.start_pipeline(source, params=params)
        typer.echo(f"Pipeline {run.id} ({run.name}) started")
        if not wait:
            return

        finished = engine.drain(
            lambda: engine.pipeline(run.id).status.is_terminal, timeout_seconds=timeout
        )
        run = engine.pipeline(run.id)
        _echo_record(run)
        if not finished:
            typer.echo("Timed out waiting for the pipeline", err=True)
            raise typer.Exit(1)
        if run.status in (PipelineStatus.FAILED, PipelineStatus.CANCELLED):
            raise typer.Exit(1)


@app.command()
def work(
    settings: str = typer.Option("settings.yaml", "--settings", "-s"),
    queue: list[str] = typer.Option(
        [], "--queue", "-q", help="Queue to work (repeatable, default: all)."
    ),
    worker_id: str | None = typer.Option(None, "--worker-id", help="Stable worker id."),
    until_idle: bool = typer.Option(
        False, "--until-idle", help="Exit once no queue has admissible work."
    ),
) -> None:
    """Run a worker that leases and executes runs."""
    with _engine(settings) as engine:
        worker = engine.worker(queue or None, worker_id=worker_id)
        if until_idle:
            executed = worker.run_until_idle()
            engine.sweeper.run_once()
            typer.echo(f"Executed {executed} run(s)")
            return

        stop = threading.Event()
        try:
            worker.run_forever(stop, on_idle=engine.sweeper.run_due)
        except KeyboardInterrupt:
            stop.set()
            typer.echo("Worker stopped.")


@app.command()
def sweep(
    settings: str = typer.Option("settings.yaml", "--settings", "-s"),
) -> None:
    """Run every periodic maintenance task once."""
    with _engine(settings) as engine:
        counts = engine.sweeper.run_once()
    for name, count in counts.items():
        typer.echo(f"  {name:10} {count}")


@app.command()
def status(
    record_id: str = typer.Argument(..., help="Run, batch, pipeline, question or answer id."),
    settings: str = typer.Option("settings.yaml", "--settings", "-s"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show a stored record."""
    with _engine(settings) as engine:
        record = engine.pipelines.resolve(record_id)
        if record is None:
            typer.echo(f"Error: No record with id '{record_id}'", err=True)
            raise typer.Exit(1)
        if json_output:
            typer.echo(_as_json(record))
        else:
            _echo_record(record)


@app.command("dead-letters")
def dead_letters(
    settings: str = typer.Option("settings.yaml", "--settings", "-s"),
    queue: str | None = typer.Option(None, "--queue", "-q", help="Only this queue."),
) -> None:
    """List runs that exhausted their attempts."""
    with _engine(settings) as engine:
        runs = list(engine.state_machine.dead_letters(queue))
    if not runs:
        typer.echo("No dead runs.")
        return
    for run in runs:
        reason = (run.error or {}).get("reason", "")
        typer.echo(f"  {run.id}  {run.queue_name:12} {run.op:24} attempt {run.attempt}  {reason}")


@app.command()
def cancel(
    record_id: str = typer.Argument(..., help="Run, batch or pipeline id."),
    settings: str = typer.Option("settings.yaml", "--settings", "-s"),
) -> None:
    """Cancel a run, a batch or a pipeline run."""
    with _engine(settings) as engine:
        record = engine.pipelines.resolve(record_id)
        result: Record
        if isinstance(record, Run):
            result = engine.state_machine.cancel(record.id)
        elif isinstance(record, Batch):
            result = engine.sampling.cancel_batch(record.id)
        elif isinstance(record, PipelineRun):
            result = engine.pipelines.cancel(record.id)
        else:
            typer.echo(f"Error: No cancellable record with id '{record_id}'", err=True)
            raise typer.Exit(1)
        _echo_record(result)


@app.command()
def resubmit(
    run_id: str = typer.Argument(..., help="Dead or failed run id."),
    settings: str = typer.Option("settings.yaml", "--settings", "-s"),
    max_attempts: int | None = typer.Option(
        None, "--max-attempts", help="Attempts for the new run."
    ),
) -> None:
    """Queue a fresh copy of a dead run."""
    with _engine(settings) as engine:
        run = engine.state_machine.resubmit(run_id, max_attempts=max_attempts)
    typer.echo(f"Resubmitted {run_id} as {run.id}")


if __name__ == "__main__":
    app()
