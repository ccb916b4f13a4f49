"""
End-to-end simulation runs on the in-memory backend.

A manual clock walks through the simulation window while the worker pool
drains whatever is ready, so segment expansion, secondary scheduling,
completion and dead-letter replay are exercised together.

Run with: pytest tests/integration/test_simulation_flow.py
"""

from __future__ import annotations

import pytest

from simcrm.crm import SimulatedCrmClient, TemplateContentGenerator
from simcrm.domain.errors import CrmError, ErrorCategory
from simcrm.domain.models import PRIMARY_QUEUE, ReplayOptions, ReplaySelector, SimulationStatus
from simcrm.orchestrator import Orchestrator
from simcrm.runtime import build_runtime

T0 = 1_700_000_000_000
HOUR_MS = 3_600_000
STEP_MS = 15 * 60 * 1000
WINDOW_HOURS = 3
REQUESTED = 10
EXPECTED_TOTAL = 8  # b2b lead-volume multiplier 0.8
FAILING_INDEX = 2


def _run_window(runtime, hours=WINDOW_HOURS, extra_steps=4):
    """Advance through the window in fixed steps, draining after each."""
    runtime.pool.drain()
    for _ in range(hours * HOUR_MS // STEP_MS + extra_steps):
        runtime.clock.advance(STEP_MS)
        runtime.pool.drain()


def _create(runtime, total=REQUESTED, method="linear"):
    return runtime.repository.create("owner-1", "b2b", total, T0, T0 + WINDOW_HOURS * HOUR_MS, method)


class TestDryRunSimulation:
    """Simulation without a credential: records are counted in dry-run mode."""

    def test_simulation_completes_with_effective_total(self, runtime, orchestrator):
        """Every segment is expanded and the run completes at the effective total."""
        sim = _create(runtime)
        orchestrator.start(sim.id)

        _run_window(runtime)

        stored = runtime.repository.get(sim.id)
        assert stored.status == SimulationStatus.COMPLETED
        assert stored.records_processed == EXPECTED_TOTAL
        assert runtime.progress.processed(sim.id) == EXPECTED_TOTAL
        assert all(s["expanded"] for s in orchestrator.segment_status(sim.id))

    def test_initial_notes_follow_every_record(self, runtime, orchestrator):
        """b2b always schedules an initial note for a created contact."""
        sim = _create(runtime)
        orchestrator.start(sim.id)

        _run_window(runtime)

        metrics = runtime.progress.metrics(sim.id)
        assert metrics["simulated_records"] == EXPECTED_TOTAL
        assert metrics["notes_scheduled"] == EXPECTED_TOTAL
        assert metrics["notes_created"] == EXPECTED_TOTAL
        assert orchestrator.progress(sim.id)["budgets"]["notes"] == 5000 - EXPECTED_TOTAL

    @pytest.mark.parametrize("method", ["bell_curve", "front_loaded", "back_loaded", "surge_mid", "trickle"])
    def test_every_distribution_completes(self, runtime, orchestrator, method):
        """Completion does not depend on how records are spread over the window."""
        sim = _create(runtime, total=40, method=method)
        orchestrator.start(sim.id)

        _run_window(runtime)

        assert runtime.repository.get(sim.id).status == SimulationStatus.COMPLETED
        assert runtime.progress.processed(sim.id) == 32

    def test_soft_abort_stops_later_segments(self, runtime, orchestrator):
        """Queued jobs drain after a soft abort but no further segment is expanded."""
        sim = _create(runtime)
        first_segment = orchestrator.start(sim.id)["scheduled"]
        orchestrator.abort(sim.id)

        _run_window(runtime)

        assert runtime.progress.processed(sim.id) == first_segment
        assert runtime.repository.get(sim.id).status == SimulationStatus.ABORTED
        assert not orchestrator.segment_status(sim.id)[1]["expanded"]


class TestRealModeSimulation:
    """Simulation with a credential: every record goes through the CRM client."""

    def test_contacts_and_notes_are_created(self, real_runtime, crm_client):
        """Each record produces one contact call and one associated note call."""
        orchestrator = Orchestrator(real_runtime)
        sim = _create(real_runtime)
        orchestrator.start(sim.id)

        _run_window(real_runtime)

        object_types = [call[0] for call in crm_client.calls]
        assert object_types.count("contact") == EXPECTED_TOTAL
        assert object_types.count("note") == EXPECTED_TOTAL
        assert all(props["associated_contact_id"] for kind, _, props in crm_client.calls if kind == "note")
        assert real_runtime.repository.get(sim.id).status == SimulationStatus.COMPLETED

    def test_dead_lettered_record_can_be_replayed(self, real_settings, clock, scenarios):
        """A validation failure is dead-lettered, then succeeds when replayed."""
        failing = {"active": True}

        def reject_one_record(object_type, operation, properties):
            if failing["active"] and object_type == "contact" and f".{FAILING_INDEX}@" in properties["email"]:
                return CrmError.from_status(422, "invalid email")
            return None

        client = SimulatedCrmClient(failure_hook=reject_one_record)
        rt = build_runtime(real_settings, backend="memory", clock=clock, scenarios=scenarios, crm_client=client)
        try:
            orchestrator = Orchestrator(rt)
            sim = _create(rt)
            orchestrator.start(sim.id)
            _run_window(rt)

            # failures never block progress
            assert rt.repository.get(sim.id).status == SimulationStatus.COMPLETED
            [entry] = rt.dead_letters.entries(sim.id)
            assert entry.category == ErrorCategory.VALIDATION
            assert entry.payload["record_index"] == FAILING_INDEX

            failing["active"] = False
            result = orchestrator.dlq_replay(
                sim.id,
                ReplaySelector(categories=[ErrorCategory.VALIDATION]),
                ReplayOptions(dry_run=False),
                actor="ops",
            )
            assert result.replayed == 1
            [replayed] = rt.queue.pending(PRIMARY_QUEUE)
            assert replayed.payload["replay_of"] == entry.job_id

            rt.pool.drain()
            assert rt.progress.processed(sim.id) == EXPECTED_TOTAL
            contact_emails = [p["email"] for kind, _, p in client.calls if kind == "contact"]
            assert sum(f".{FAILING_INDEX}@" in email for email in contact_emails) == 2
        finally:
            rt.close()


class _ContentFailingForRecord(TemplateContentGenerator):
    def __init__(self, record_index):
        self.record_index = record_index

    def generate(self, object_type, context):
        if object_type == "contact" and context.get("record_index") == self.record_index:
            raise ValueError("template missing")
        return super().generate(object_type, context)


class TestFailingCollaborators:
    """Failures around the external call never stall the simulation."""

    @pytest.mark.parametrize("failing_index", range(EXPECTED_TOTAL))
    def test_failing_content_still_completes(self, real_settings, clock, scenarios, failing_index):
        """Whichever record fails, later segments are expanded and every record is counted."""
        client = SimulatedCrmClient()
        rt = build_runtime(
            real_settings,
            backend="memory",
            clock=clock,
            scenarios=scenarios,
            crm_client=client,
            content=_ContentFailingForRecord(failing_index),
        )
        try:
            orchestrator = Orchestrator(rt)
            sim = _create(rt)
            orchestrator.start(sim.id)
            _run_window(rt)

            assert rt.repository.get(sim.id).status == SimulationStatus.COMPLETED
            assert rt.progress.processed(sim.id) == EXPECTED_TOTAL
            assert all(segment["expanded"] for segment in orchestrator.segment_status(sim.id))
            [entry] = rt.dead_letters.entries(sim.id)
            assert entry.payload["record_index"] == failing_index
            assert [c[0] for c in client.calls].count("contact") == EXPECTED_TOTAL - 1
        finally:
            rt.close()

    def test_flaky_activity_scheduling_still_completes(self, real_runtime, crm_client, monkeypatch):
        """A scheduling error is retried without counting the record twice or doubling its note."""
        failed_once = set()
        schedule = real_runtime.activities.schedule

        def flaky_schedule(**kwargs):
            if kwargs["record_index"] not in failed_once:
                failed_once.add(kwargs["record_index"])
                raise ConnectionError("store unavailable")
            return schedule(**kwargs)

        monkeypatch.setattr(real_runtime.activities, "schedule", flaky_schedule)
        orchestrator = Orchestrator(real_runtime)
        sim = _create(real_runtime)
        orchestrator.start(sim.id)

        _run_window(real_runtime)

        assert real_runtime.repository.get(sim.id).status == SimulationStatus.COMPLETED
        assert real_runtime.progress.processed(sim.id) == EXPECTED_TOTAL
        assert real_runtime.dead_letters.entries(sim.id) == []
        assert [c[0] for c in crm_client.calls].count("note") == EXPECTED_TOTAL
