from __future__ import annotations

import pytest

from simcrm.domain.errors import Classification, ErrorCategory, InvalidSimulationState, SimulationNotFound
from simcrm.domain.models import ALL_QUEUES, PRIMARY_QUEUE, SimulationStatus
from simcrm.infrastructure.job_queue import Job

T0 = 1_700_000_000_000
HOUR_MS = 3_600_000
B2B_MULTIPLIER_TOTAL = 80  # 100 requested * 0.8


def _create(runtime, scenario="b2b", total=100, hours=3):
    return runtime.repository.create("owner-1", scenario, total, T0, T0 + hours * HOUR_MS)


def _capture(runtime, sim_id, category=ErrorCategory.NETWORK):
    job = Job(id=f"job-{category.value}", queue=PRIMARY_QUEUE, name="create-record",
              payload={"simulation_id": sim_id, "record_index": 0}, run_at=T0)
    return runtime.dead_letters.capture(job, Classification(category, category.is_retryable, "boom"), 1)


def test_start_plans_first_segment_with_effective_total(runtime, orchestrator):
    sim = _create(runtime)

    result = orchestrator.start(sim.id)

    segments = orchestrator.segment_status(sim.id)
    assert result["effective_total"] == B2B_MULTIPLIER_TOTAL
    assert result["segments"] == len(segments) == 3
    assert result["scheduled"] == segments[0]["size"]
    assert len(runtime.queue.pending(PRIMARY_QUEUE)) == segments[0]["size"]
    assert sum(s["size"] for s in segments) == B2B_MULTIPLIER_TOTAL

    stored = runtime.repository.get(sim.id)
    assert stored.status == SimulationStatus.RUNNING
    assert stored.effective_total == B2B_MULTIPLIER_TOTAL
    assert stored.scenario_snapshot["id"] == "b2b"
    assert orchestrator.progress(sim.id)["budgets"]["notes"] == 5000


def test_start_twice_reports_already_running(runtime, orchestrator):
    sim = _create(runtime)
    orchestrator.start(sim.id)

    assert orchestrator.start(sim.id) == {"scheduled": 0, "already_running": True}
    assert len(runtime.queue.pending(PRIMARY_QUEUE)) == orchestrator.segment_status(sim.id)[0]["size"]


def test_start_rejects_finished_simulation(runtime, orchestrator):
    sim = _create(runtime)
    runtime.repository.update_status(sim.id, SimulationStatus.COMPLETED)
    with pytest.raises(InvalidSimulationState):
        orchestrator.start(sim.id)


def test_start_rejects_unknown_scenario(runtime, orchestrator):
    sim = _create(runtime, scenario="enterprise")
    with pytest.raises(InvalidSimulationState, match="unknown scenario"):
        orchestrator.start(sim.id)


def test_start_missing_simulation(orchestrator):
    with pytest.raises(SimulationNotFound):
        orchestrator.start(12345)


def test_start_captures_override_version(runtime, orchestrator, scenarios):
    scenarios.set_overrides("b2b", {"interactions": {"global_budgets": {"notes": 7}}})
    sim = _create(runtime)

    result = orchestrator.start(sim.id)

    assert result["override_version"] == 1
    assert result["overrides_hash"] == scenarios.version_info("b2b")["hash"]
    job = runtime.queue.pending(PRIMARY_QUEUE)[0]
    assert job.payload["override_version"] == 1
    assert job.payload["scenario_params"]["interactions"]["global_budgets"]["notes"] == 7
    assert orchestrator.progress(sim.id)["budgets"]["notes"] == 7


def test_soft_abort_keeps_queued_jobs_but_stops_expansion(runtime, orchestrator):
    sim = _create(runtime)
    orchestrator.start(sim.id)
    queued = len(runtime.queue.pending(PRIMARY_QUEUE))

    result = orchestrator.abort(sim.id)

    assert result == {"ok": True, "force": False, "removed": 0}
    assert runtime.repository.get(sim.id).status == SimulationStatus.ABORTED
    assert len(runtime.queue.pending(PRIMARY_QUEUE)) == queued
    assert runtime.planner.expand_next(sim.id, 0) == 0


def test_force_abort_purges_only_that_simulation(runtime, orchestrator):
    target = _create(runtime)
    other = _create(runtime)
    orchestrator.start(target.id)
    orchestrator.start(other.id)
    _capture(runtime, target.id)
    other_jobs = [j for j in runtime.queue.pending(PRIMARY_QUEUE) if j.payload["simulation_id"] == other.id]

    result = orchestrator.abort(target.id, force=True)

    assert result["removed"] == orchestrator.segment_status(target.id)[0]["size"]
    assert result["dlq_purged"] == 1
    assert runtime.dead_letters.entries(target.id) == []
    assert runtime.queue.pending(PRIMARY_QUEUE) == other_jobs


def test_abort_missing_simulation(orchestrator):
    with pytest.raises(SimulationNotFound):
        orchestrator.abort(777)


def test_abort_queued_simulation_is_allowed(runtime, orchestrator):
    sim = _create(runtime)

    assert orchestrator.abort(sim.id)["ok"] is True
    assert runtime.repository.get(sim.id).status == SimulationStatus.ABORTED


@pytest.mark.parametrize(
    "status", [SimulationStatus.COMPLETED, SimulationStatus.FAILED, SimulationStatus.ABORTED]
)
@pytest.mark.parametrize("force", [False, True])
def test_abort_rejects_finished_simulation(runtime, orchestrator, status, force):
    sim = _create(runtime)
    orchestrator.start(sim.id)
    _capture(runtime, sim.id)
    runtime.repository.update_status(sim.id, status, finished_at=T0)

    with pytest.raises(InvalidSimulationState, match="expected QUEUED or RUNNING"):
        orchestrator.abort(sim.id, force=force)

    assert runtime.repository.get(sim.id).status == status
    assert len(runtime.dead_letters.entries(sim.id)) == 1
    assert not runtime.planner.is_aborted(sim.id)


def test_health_reports_limiter_and_every_queue(runtime, orchestrator):
    sim = _create(runtime)
    orchestrator.start(sim.id)

    health = orchestrator.health()

    assert set(health["queues"]) == set(ALL_QUEUES)
    assert health["queues"][PRIMARY_QUEUE]["waiting"] == 0
    assert health["queues"][PRIMARY_QUEUE]["delayed"] > 0
    assert health["limiter"]["circuit_tripped"] is False


def test_dlq_summary_and_detail(runtime, orchestrator):
    sim = _create(runtime)
    _capture(runtime, sim.id, ErrorCategory.NETWORK)
    _capture(runtime, sim.id, ErrorCategory.AUTH)

    assert orchestrator.dlq_summary() == [{"simulation_id": sim.id, "counts": {"network": 1, "auth": 1}}]
    assert orchestrator.dlq_summary(category="timeout") == []
    assert orchestrator.dlq_summary(sim_id_contains="99") == []

    detail = orchestrator.dlq_detail(sim.id)
    assert detail["depth"] == 2
    assert [s["category"] for s in detail["samples"]] == ["auth", "network"]


def test_thinning_events_newest_first(runtime, orchestrator):
    runtime.progress.push_event(5, "thinning", {"record_index": 1, "before": 2, "after": 1})
    runtime.progress.push_event(5, "thinning", {"record_index": 2, "before": 1, "after": 0})

    events = orchestrator.thinning_events(5)

    assert [e["record_index"] for e in events] == [2, 1]
    assert orchestrator.thinning_events(5, limit=1)[0]["ts"] == T0


def test_scenario_reset_then_patch_is_validated_first(runtime, orchestrator):
    orchestrator.set_scenario_overrides("b2b", {"deal_win_rate_base": 0.3})

    with pytest.raises(ValueError):
        orchestrator.set_scenario_overrides("b2b", {"deal_win_rate_base": -1}, reset=True)
    assert orchestrator.scenario("b2b")["overrides"] == {"deal_win_rate_base": 0.3}

    info = orchestrator.set_scenario_overrides("b2b", {"interactions": {"per_record_caps": {"calls": 1}}}, reset=True)
    assert info["overrides"] == {"interactions": {"per_record_caps": {"calls": 1}}}
    assert info["version"] == 2


def test_start_records_current_override_version(runtime, orchestrator):
    orchestrator.set_scenario_overrides("b2c", {"deal_win_rate_base": 0.5})
    sim = _create(runtime, scenario="b2c")

    result = orchestrator.start(sim.id)

    assert result["override_version"] == runtime.scenarios.version_info("b2c")["version"] == 1
