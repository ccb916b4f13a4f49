"""
Pytest configuration for the CRM simulation engine.

Provides fixtures for:
- A controllable clock and small-footprint settings for unit tests
- In-memory runtimes wired the same way as production
- Database connection management and schema setup for integration tests
"""

from __future__ import annotations

import os
from typing import Generator

import psycopg
import pytest

from simcrm.config import Settings
from simcrm.crm import SimulatedCrmClient
from simcrm.domain.scenarios import ScenarioRegistry
from simcrm.infrastructure.db_factory import apply_schema
from simcrm.orchestrator import Orchestrator
from simcrm.runtime import Runtime, build_runtime
from simcrm.utils.clock import ManualClock

T0 = 1_700_000_000_000
HOUR_MS = 60 * 60 * 1000


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture
def settings() -> Settings:
    """
    Unit-test settings: memory backend, no credential, quick flushes.
    """
    return Settings(
        backend="memory",
        real_mode=False,
        crm_api_token=None,
        progress_flush_every=2,
        worker_concurrency=2,
        primary_job_timeout_ms=5_000,
        secondary_job_timeout_ms=5_000,
        external_call_timeout_ms=2_000,
        log_level="DEBUG",
    )


@pytest.fixture
def real_settings(settings: Settings) -> Settings:
    """Settings with a credential so external calls go through the CRM client."""
    return settings.model_copy(update={"real_mode": True, "crm_api_token": "test-token"})


@pytest.fixture
def scenarios(clock: ManualClock) -> ScenarioRegistry:
    return ScenarioRegistry(clock=clock)


@pytest.fixture
def runtime(settings: Settings, clock: ManualClock, scenarios: ScenarioRegistry) -> Generator[Runtime, None, None]:
    rt = build_runtime(settings, backend="memory", clock=clock, scenarios=scenarios)
    try:
        yield rt
    finally:
        rt.close()


@pytest.fixture
def crm_client() -> SimulatedCrmClient:
    return SimulatedCrmClient()


@pytest.fixture
def real_runtime(
    real_settings: Settings,
    clock: ManualClock,
    scenarios: ScenarioRegistry,
    crm_client: SimulatedCrmClient,
) -> Generator[Runtime, None, None]:
    rt = build_runtime(real_settings, backend="memory", clock=clock, scenarios=scenarios, crm_client=crm_client)
    try:
        yield rt
    finally:
        rt.close()


@pytest.fixture
def orchestrator(runtime: Runtime) -> Orchestrator:
    return Orchestrator(runtime)


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """
    Settings fixture with test-specific overrides.

    Can be overridden via environment variables in CI or local testing.
    """
    return Settings(
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "5432")),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", "postgres"),
        db_name=os.getenv("DB_NAME", "simcrm"),
        log_level="DEBUG",
    )


@pytest.fixture(scope="session")
def test_dsn(test_settings: Settings) -> str:
    """
    Database connection string for tests.
    """
    return (
        f"postgresql://{test_settings.db_user}:{test_settings.db_password}"
        f"@{test_settings.db_host}:{test_settings.db_port}/{test_settings.db_name}"
    )


@pytest.fixture(scope="session")
def db_connection_available(test_dsn: str) -> bool:
    """
    Check if database is reachable.

    Used to conditionally skip integration tests when DB is not available.
    """
    try:
        with psycopg.connect(test_dsn, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True
    except Exception:
        return False


@pytest.fixture(scope="session")
def db_connection(
    test_dsn: str, db_connection_available: bool
) -> Generator[psycopg.Connection, None, None]:
    """
    Provide a session-scoped database connection for integration tests.

    Skips tests if database is not available.
    """
    if not db_connection_available:
        pytest.skip("Database not available for integration tests")

    conn = psycopg.connect(test_dsn)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture(scope="session")
def db_schema_initialized(db_connection: psycopg.Connection) -> bool:
    """
    Ensure database schema is initialized (``db/init.sql`` is idempotent).
    """
    apply_schema(db_connection)
    return True


@pytest.fixture(scope="function")
def clean_tables(db_connection: psycopg.Connection, db_schema_initialized: bool):
    """
    Empty every engine table before and after each test function.
    """
    statement = "TRUNCATE TABLE simulations, dlq_replay_audit, kv_store, jobs RESTART IDENTITY CASCADE;"
    with db_connection.cursor() as cur:
        cur.execute(statement)
    db_connection.commit()
    yield
    with db_connection.cursor() as cur:
        cur.execute(statement)
    db_connection.commit()
