"""
Create a QUEUED simulation record in Postgres.

Simulations are normally created by the product's API; this script stands in
for it during development. Optionally applies the schema first and starts the
simulation right away.
"""

from __future__ import annotations

import sys
import time

import typer

from simcrm.config import get_settings
from simcrm.domain.models import DistributionMethod
from simcrm.infrastructure.db_factory import apply_schema, get_sync_connection, get_sync_pool
from simcrm.infrastructure.repository import PostgresSimulationRepository
from simcrm.orchestrator import Orchestrator
from simcrm.runtime import build_runtime
from simcrm.utils.logging import configure_logging

app = typer.Typer(help="Seed a QUEUED simulation (Postgres backend).")


@app.command()
def main(
    records: int = typer.Option(1_000, "--records", "-r", help="Requested record count."),
    scenario: str = typer.Option("b2b", "--scenario", "-s", help="Scenario id (b2b, b2c)."),
    method: DistributionMethod = typer.Option(DistributionMethod.LINEAR, "--method", "-m"),
    hours: float = typer.Option(4.0, "--hours", help="Window length starting now."),
    owner: str = typer.Option("dev-user", "--owner", help="Owning user id."),
    init_schema: bool = typer.Option(False, "--init-schema", help="Apply db/init.sql first."),
    start: bool = typer.Option(False, "--start", help="Start the simulation after creating it."),
) -> None:
    """
    Insert a simulation row and print its id.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)

    if init_schema:
        with get_sync_connection() as conn:
            apply_schema(conn)

    now_ms = int(time.time() * 1000)
    repository = PostgresSimulationRepository(get_sync_pool())
    sim = repository.create(
        owner_id=owner,
        scenario_id=scenario,
        total_records=records,
        start_time=now_ms,
        end_time=now_ms + int(hours * 60 * 60 * 1000),
        distribution_method=method.value,
    )
    typer.echo(f"Created simulation {sim.id} ({records:,} records, {scenario}, {method.value}, {hours}h)")

    if start:
        result = Orchestrator(build_runtime(settings, backend="postgres")).start(sim.id)
        typer.echo(f"Started: scheduled={result['scheduled']} effective_total={result['effective_total']}")


if __name__ == "__main__":
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
