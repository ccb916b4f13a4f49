from __future__ import annotations

import json
import sys
from typing import List, Optional

import typer

from simcrm.config import Settings, get_settings
from simcrm.domain.errors import (
    ErrorCategory,
    InvalidSimulationState,
    ReplayRateLimited,
    ReplayValidationError,
    ScenarioUpdateInProgress,
    SimulationNotFound,
)
from simcrm.domain.models import ReplayOptions, ReplaySelector, ReplayStrategy
from simcrm.orchestrator import Orchestrator
from simcrm.reporter import print_dlq_detail, print_dlq_summary, print_health, print_replay_result, print_segments
from simcrm.runtime import available_backends, build_runtime
from simcrm.utils.logging import configure_logging

app = typer.Typer(help="CRM simulation engine CLI.")

_OPERATOR_ERRORS = (InvalidSimulationState, ReplayValidationError, SimulationNotFound)


def _settings() -> Settings:
    """
    Settings for a command that shares state with the workers.

    The memory backend lives and dies with one process, so a CLI call on it
    would only ever see an empty store.
    """
    settings = get_settings()
    if settings.backend == "memory":
        _fail(RuntimeError("the memory backend is per-process; set SIM_BACKEND=postgres"))
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    return settings


def _orchestrator() -> Orchestrator:
    return Orchestrator(build_runtime(_settings()))


def _fail(exc: Exception, code: int = 1) -> None:
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=code)


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    typer.echo(
        f"DB={settings.db_user}@{settings.db_host}:{settings.db_port}/{settings.db_name} | "
        f"backend={settings.backend} (available: {', '.join(available_backends())}) "
        f"real_mode={settings.real_mode} segment_hours={settings.segment_hours} "
        f"concurrency={settings.worker_concurrency}"
    )


@app.command()
def start(simulation_id: int = typer.Argument(..., help="Simulation to start.")) -> None:
    """
    Plan a QUEUED simulation and enqueue its first segment.
    """
    try:
        result = _orchestrator().start(simulation_id)
    except _OPERATOR_ERRORS as exc:
        _fail(exc)
    typer.echo(json.dumps(result, indent=2))


@app.command()
def abort(
    simulation_id: int = typer.Argument(..., help="Simulation to abort."),
    force: bool = typer.Option(False, "--force", "-f", help="Also purge queued jobs and dead letters."),
) -> None:
    """
    Abort a simulation (soft by default).
    """
    try:
        result = _orchestrator().abort(simulation_id, force=force)
    except _OPERATOR_ERRORS as exc:
        _fail(exc)
    typer.echo(json.dumps(result, indent=2))


@app.command()
def segments(simulation_id: int = typer.Argument(..., help="Simulation to inspect.")) -> None:
    """
    Show planned segments and which have been expanded.
    """
    try:
        rows = _orchestrator().segment_status(simulation_id)
    except _OPERATOR_ERRORS as exc:
        _fail(exc)
    print_segments(simulation_id, rows)


@app.command("dlq-summary")
def dlq_summary(
    contains: Optional[str] = typer.Option(None, "--sim", help="Only simulations whose id contains this."),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Only simulations with this category."),
    limit: int = typer.Option(200, "--limit", "-n", help="Maximum simulations to list (1-500)."),
) -> None:
    """
    Per-simulation dead-letter counters.
    """
    print_dlq_summary(_orchestrator().dlq_summary(contains, category, limit))


@app.command("dlq-detail")
def dlq_detail(simulation_id: int = typer.Argument(..., help="Simulation to inspect.")) -> None:
    """
    Dead-letter counters and recent samples for one simulation.
    """
    print_dlq_detail(_orchestrator().dlq_detail(simulation_id))


@app.command("dlq-replay")
def dlq_replay(
    simulation_id: int = typer.Argument(..., help="Simulation whose dead letters to replay."),
    job_ids: List[str] = typer.Option([], "--job-id", "-j", help="Explicit job or entry id (repeatable)."),
    categories: List[ErrorCategory] = typer.Option([], "--category", "-c", help="Error category (repeatable)."),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Maximum jobs to replay."),
    live: bool = typer.Option(False, "--live", help="Actually re-enqueue (default is a dry run)."),
    max_per_category: Optional[int] = typer.Option(None, "--max-per-category"),
    strategy: ReplayStrategy = typer.Option(ReplayStrategy.OLDEST, "--strategy", "-s"),
    full_retry: bool = typer.Option(False, "--full-retry", help="Re-enqueue with the full retry policy."),
    actor: str = typer.Option("cli", "--actor", help="Operator recorded in the audit trail."),
) -> None:
    """
    Replay dead-lettered jobs selected by id and/or category.
    """
    selector = ReplaySelector(job_ids=job_ids, categories=categories)
    options = ReplayOptions(
        limit=limit,
        dry_run=not live,
        max_per_category=max_per_category,
        strategy=strategy,
        use_full_retry=full_retry,
    )
    try:
        result = _orchestrator().dlq_replay(simulation_id, selector, options, actor=actor)
    except ReplayRateLimited as exc:
        _fail(exc, code=2)
    except _OPERATOR_ERRORS as exc:
        _fail(exc)
    print_replay_result(result)


@app.command("scenario-show")
def scenario_show(scenario_id: str = typer.Argument(..., help="Scenario id, e.g. b2b.")) -> None:
    """
    Show a scenario's override version, hash, overrides and history.
    """
    try:
        result = _orchestrator().scenario(scenario_id)
    except ValueError as exc:
        _fail(exc)
    typer.echo(json.dumps(result, indent=2))


@app.command("scenario-set")
def scenario_set(
    scenario_id: str = typer.Argument(..., help="Scenario id, e.g. b2b."),
    overrides: str = typer.Argument("{}", help='JSON patch, e.g. \'{"deal_win_rate_base": 0.4}\'.'),
    reset: bool = typer.Option(False, "--reset", help="Clear earlier overrides first."),
) -> None:
    """
    Layer validated overrides on a scenario and bump its version.
    """
    try:
        result = _orchestrator().set_scenario_overrides(scenario_id, json.loads(overrides), reset=reset)
    except ScenarioUpdateInProgress as exc:
        _fail(exc, code=2)
    except ValueError as exc:
        _fail(exc)
    typer.echo(json.dumps(result, indent=2))


@app.command()
def health() -> None:
    """
    Rate-limit cooldown, circuit breaker, bucket levels and queue depths.
    """
    print_health(_orchestrator().health())


@app.command()
def worker(
    threads: Optional[int] = typer.Option(None, "--threads", "-t", help="Polling threads (default from settings)."),
    drain: bool = typer.Option(False, "--drain", help="Process ready jobs once and exit."),
) -> None:
    """
    Consume the simulation queues until interrupted.
    """
    runtime = build_runtime(_settings())
    try:
        if drain:
            typer.echo(f"Processed {runtime.pool.drain()} job(s).")
            return
        runtime.pool.run(threads)
    finally:
        runtime.close()


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
