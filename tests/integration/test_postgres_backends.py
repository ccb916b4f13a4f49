"""
Integration tests for the PostgreSQL-backed store, queue and repository.

These tests run against a real PostgreSQL instance and verify that:
1. The key-value store honours claims, counters and expiry
2. The job queue delays, reserves and retries jobs
3. A full simulation runs end to end on the shared tables

Run with: RUN_INTEGRATION_TESTS=1 pytest tests/integration/
"""

from __future__ import annotations

import os
from typing import Generator

import pytest
from psycopg_pool import ConnectionPool

from simcrm.domain.models import PRIMARY_QUEUE, ReplayAudit, SimulationStatus
from simcrm.infrastructure.job_queue import LEASE_EXPIRED, PostgresJobQueue
from simcrm.infrastructure.kv_store import PostgresKeyValueStore
from simcrm.infrastructure.repository import PostgresSimulationRepository
from simcrm.orchestrator import Orchestrator
from simcrm.runtime import build_runtime
from simcrm.utils.clock import ManualClock

T0 = 1_700_000_000_000
HOUR_MS = 3_600_000
STEP_MS = 15 * 60 * 1000

pytestmark = pytest.mark.skipif(
    os.getenv("RUN_INTEGRATION_TESTS", "0") != "1",
    reason="Integration tests require RUN_INTEGRATION_TESTS=1 and reachable Postgres",
)


@pytest.fixture(scope="module")
def pg_pool(test_dsn: str, db_schema_initialized: bool) -> Generator[ConnectionPool, None, None]:
    pool = ConnectionPool(conninfo=test_dsn, min_size=1, max_size=4, open=True)
    try:
        yield pool
    finally:
        pool.close()


@pytest.fixture
def pg_clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture
def kv(pg_pool, pg_clock, clean_tables) -> PostgresKeyValueStore:
    return PostgresKeyValueStore(pg_pool, pg_clock)


@pytest.fixture
def jobs(pg_pool, pg_clock, clean_tables) -> PostgresJobQueue:
    return PostgresJobQueue(pg_pool, pg_clock)


@pytest.fixture
def repo(pg_pool, pg_clock, clean_tables) -> PostgresSimulationRepository:
    return PostgresSimulationRepository(pg_pool, pg_clock)


class TestPostgresKeyValueStore:
    """Atomic primitives over the kv_store table."""

    def test_set_if_absent_claims_once_until_expiry(self, kv, pg_clock):
        """A claim is exclusive until its TTL passes."""
        assert kv.set_if_absent("idem:1:0:0", "job-a", ttl_ms=1_000) is True
        assert kv.set_if_absent("idem:1:0:0", "job-b", ttl_ms=1_000) is False
        assert kv.get("idem:1:0:0") == "job-a"
        pg_clock.advance(1_000)
        assert kv.set_if_absent("idem:1:0:0", "job-c") is True

    def test_counters_and_guarded_decrement(self, kv):
        """incr returns the new value; decrement stops at zero."""
        assert kv.incr("sim:1:processed") == 1
        assert kv.incr("sim:1:processed", 2) == 3
        kv.set("sim:1:budget:notes", "1")
        assert kv.decrement_if_positive("sim:1:budget:notes") is True
        assert kv.decrement_if_positive("sim:1:budget:notes") is False

    def test_hash_set_and_sorted_set(self, kv):
        """Collections are stored one row per member."""
        kv.hset("sim:1:metrics", {"records_created": 2})
        assert kv.hincrby("sim:1:metrics", "records_created") == 3
        assert kv.sadd("seen", "a") is True
        assert kv.sadd("seen", "a") is False
        kv.zadd("window", "f1", 10)
        kv.zadd("window", "f2", 20)
        assert kv.zremrangebyscore("window", 10) == 1
        assert kv.zrange("window") == [("f2", 20.0)]

    def test_bounded_list_is_newest_first(self, kv):
        """lpush_trim keeps the most recent entries only."""
        for n in range(4):
            kv.lpush_trim("sim:1:thinning:events", str(n), 2)
        assert kv.lrange("sim:1:thinning:events", 10) == ["3", "2"]

    def test_scan_escapes_like_wildcards(self, kv):
        """Underscores in the prefix match literally."""
        kv.set("sim:1:dlq_x", "1")
        kv.set("sim:1:dlqAx", "1")
        assert kv.scan("sim:1:dlq_") == ["sim:1:dlq_x"]


class TestPostgresJobQueue:
    """Delayed job handling over the jobs table."""

    def test_delayed_job_becomes_ready(self, jobs, pg_clock):
        """A delayed job is invisible to reserve until its run-at time."""
        jobs.add(PRIMARY_QUEUE, "create-record", {"record_index": 0}, delay_ms=500)
        assert jobs.reserve(PRIMARY_QUEUE) is None
        assert jobs.delayed_count(PRIMARY_QUEUE) == 1
        pg_clock.advance(500)
        job = jobs.reserve(PRIMARY_QUEUE)
        assert job.payload == {"record_index": 0}
        assert jobs.reserve(PRIMARY_QUEUE) is None

    def test_retry_reschedules_with_attempt_count(self, jobs, pg_clock):
        """retry requeues the same job with a new run-at time."""
        added = jobs.add(PRIMARY_QUEUE, "create-record", {}, max_attempts=3, backoff_ms=(1_000, 3_000))
        job = jobs.reserve(PRIMARY_QUEUE)
        jobs.retry(job, job.delay_for_retry(0), "network")
        [pending] = jobs.pending(PRIMARY_QUEUE)
        assert pending.id == added.id
        assert pending.attempts_made == 1
        assert pending.run_at == T0 + 1_000
        assert pending.backoff_ms == [1_000, 3_000]

    def test_expired_lease_is_reclaimed(self, pg_pool, pg_clock, clean_tables):
        """An active job whose lease ran out is reserved again as a new attempt."""
        leased = PostgresJobQueue(pg_pool, pg_clock, lease_ms=1_000)
        added = leased.add(PRIMARY_QUEUE, "create-record", {}, max_attempts=3)
        assert leased.reserve(PRIMARY_QUEUE).locked_until == T0 + 1_000
        assert leased.reserve(PRIMARY_QUEUE) is None

        pg_clock.advance(1_000)
        again = leased.reserve(PRIMARY_QUEUE)
        assert again.id == added.id
        assert again.attempts_made == 1
        assert again.last_error == LEASE_EXPIRED

    def test_remove_skips_reserved_jobs(self, jobs):
        """Only queued jobs can be removed."""
        job = jobs.add(PRIMARY_QUEUE, "create-record", {})
        jobs.reserve(PRIMARY_QUEUE)
        assert jobs.remove(job.id) is False


class TestPostgresRepository:
    """Simulation rows and replay audit rows."""

    def test_create_update_and_audit(self, repo):
        """Status updates persist the snapshot; audit rows are listed per simulation."""
        sim = repo.create("owner-1", "b2b", 10, T0, T0 + HOUR_MS)
        updated = repo.update_status(
            sim.id,
            SimulationStatus.RUNNING,
            effective_total=8,
            scenario_snapshot={"id": "b2b"},
        )
        assert updated.effective_total == 8
        assert repo.get(sim.id).scenario_snapshot == {"id": "b2b"}

        repo.insert_replay_audit(
            ReplayAudit(
                id="audit-1",
                actor="ops",
                simulation_id=sim.id,
                dry_run=True,
                total_candidates=1,
                selected_count=1,
                replayed_count=0,
                created_at=T0,
            )
        )
        [audit] = repo.list_replay_audits(sim.id)
        assert audit.actor == "ops"


class TestPostgresSimulationRun:
    """A whole simulation on the shared tables."""

    def test_simulation_completes(self, kv, jobs, repo, pg_clock, settings, scenarios):
        """Segments expand and the run completes at the effective total."""
        runtime = build_runtime(settings, clock=pg_clock, scenarios=scenarios, backends=(kv, jobs, repo))
        try:
            orchestrator = Orchestrator(runtime)
            sim = repo.create("owner-1", "b2b", 10, T0, T0 + 3 * HOUR_MS)
            orchestrator.start(sim.id)

            runtime.pool.drain()
            for _ in range(16):
                pg_clock.advance(STEP_MS)
                runtime.pool.drain()

            stored = repo.get(sim.id)
            assert stored.status == SimulationStatus.COMPLETED
            assert stored.records_processed == 8
        finally:
            runtime.close()
