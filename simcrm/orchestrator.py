"""
Operator-facing operations for running simulations.

Usage (example from CLI):
    from simcrm.orchestrator import Orchestrator
    from simcrm.runtime import build_runtime

    orchestrator = Orchestrator(build_runtime())
    print(orchestrator.start(42))

``start`` merges the scenario (base plus live overrides), fixes the effective
record total, expands the distribution and hands the timestamps to the segment
planner, which enqueues the first segment only. The remaining operations
abort simulations, inspect segments and thinning, and summarise or replay the
dead-letter queue.
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional

from simcrm.domain.errors import InvalidSimulationState, SimulationNotFound
from simcrm.domain.models import (
    ALL_QUEUES,
    ReplayOptions,
    ReplayResult,
    ReplaySelector,
    Simulation,
    SimulationStatus,
)
from simcrm.domain.scenarios import validate_overrides
from simcrm.runtime import Runtime
from simcrm.scheduling.distribution import expand_distribution
from simcrm.utils.logging import get_logger

log = get_logger(__name__)


def effective_total(total_records: int, multiplier: Optional[float]) -> int:
    """Requested total scaled by the scenario's lead-volume multiplier."""
    if not multiplier:
        return total_records
    # round half up
    return max(1, math.floor(total_records * multiplier + 0.5))


class Orchestrator:
    def __init__(self, runtime: Runtime) -> None:
        self._rt = runtime

    def _simulation(self, simulation_id: int) -> Simulation:
        sim = self._rt.repository.get(simulation_id)
        if sim is None:
            raise SimulationNotFound(f"simulation {simulation_id} not found")
        return sim

    def start(self, simulation_id: int) -> Dict[str, Any]:
        """
        Plan a QUEUED simulation and enqueue its first segment.

        Returns
        -------
        dict
            ``scheduled`` jobs, ``effective_total``, ``segments`` planned and the
            override ``override_version`` / ``overrides_hash`` captured for the
            run. A simulation that is already RUNNING returns
            ``{"scheduled": 0, "already_running": True}``.

        Raises
        ------
        SimulationNotFound
        InvalidSimulationState
            When the simulation is neither QUEUED nor RUNNING, or its scenario
            is unknown.
        """
        sim = self._simulation(simulation_id)
        if sim.status == SimulationStatus.RUNNING:
            return {"scheduled": 0, "already_running": True}
        if sim.status != SimulationStatus.QUEUED:
            raise InvalidSimulationState(f"simulation {simulation_id} is {sim.status.value}, expected QUEUED")

        params = self._rt.scenarios.merged(sim.scenario_id)
        if params is None:
            raise InvalidSimulationState(f"unknown scenario {sim.scenario_id!r}")
        total = effective_total(sim.total_records, params.lead_volume_multiplier)
        version = self._rt.scenarios.version_info(sim.scenario_id)

        sim = self._rt.repository.update_status(
            simulation_id,
            SimulationStatus.RUNNING,
            effective_total=total,
            override_version=version["version"],
            overrides_hash=version["hash"],
            scenario_snapshot=params.model_dump(mode="json"),
        )
        self._rt.activities.init_budgets(simulation_id, params.interactions.global_budgets)

        timestamps = expand_distribution(sim.distribution_method, total, sim.start_time, sim.end_time)
        segments = self._rt.planner.plan(sim, timestamps)
        scheduled = segments[0].size if segments else 0
        log.info(
            "Simulation started",
            extra={
                "simulation_id": simulation_id,
                "override_version": version["version"],
                "effective_total": total,
                "segments": len(segments),
                "scheduled": scheduled,
            },
        )
        return {
            "scheduled": scheduled,
            "effective_total": total,
            "segments": len(segments),
            "override_version": version["version"],
            "overrides_hash": version["hash"],
        }

    def abort(self, simulation_id: int, force: bool = False) -> Dict[str, Any]:
        """
        Stop a simulation.

        A soft abort sets the durable flag so no further segment is expanded;
        queued jobs drain. A force abort also purges the simulation's waiting
        and delayed jobs from every queue along with its dead-letter entries.

        Raises
        ------
        InvalidSimulationState
            If the simulation is not QUEUED or RUNNING.
        """
        sim = self._simulation(simulation_id)
        if sim.status not in (SimulationStatus.QUEUED, SimulationStatus.RUNNING):
            raise InvalidSimulationState(
                f"simulation {simulation_id} is {sim.status.value}, expected QUEUED or RUNNING"
            )
        self._rt.planner.mark_aborted(simulation_id)
        self._rt.repository.update_status(simulation_id, SimulationStatus.ABORTED, finished_at=self._rt.clock())
        if not force:
            log.info("Simulation aborted", extra={"event_id": "abort.soft", "simulation_id": simulation_id})
            return {"ok": True, "force": False, "removed": 0}

        removed = 0
        for queue_name in ALL_QUEUES:
            for job in self._rt.queue.pending(queue_name):
                if job.payload.get("simulation_id") == simulation_id and self._rt.queue.remove(job.id):
                    removed += 1
        dead_lettered = self._rt.dead_letters.purge(simulation_id)
        log.warning(
            "Simulation force-aborted",
            extra={
                "event_id": "abort.force",
                "simulation_id": simulation_id,
                "removed": removed,
                "dlq_purged": dead_lettered,
            },
        )
        return {"ok": True, "force": True, "removed": removed, "dlq_purged": dead_lettered}

    def segment_status(self, simulation_id: int) -> List[Dict[str, Any]]:
        self._simulation(simulation_id)
        return self._rt.planner.status(simulation_id)

    def thinning_events(self, simulation_id: int, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return self._rt.progress.events(simulation_id, "thinning", limit)

    def progress(self, simulation_id: int) -> Dict[str, Any]:
        sim = self._simulation(simulation_id)
        return {
            "simulation_id": simulation_id,
            "status": sim.status.value,
            "processed": self._rt.progress.processed(simulation_id),
            "target_total": sim.target_total,
            "metrics": self._rt.progress.metrics(simulation_id),
            "budgets": self._rt.activities.remaining_budgets(simulation_id),
        }

    def dlq_summary(
        self,
        sim_id_contains: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = 200,
    ) -> List[Dict[str, Any]]:
        return self._rt.dead_letters.summary(sim_id_contains, category, limit)

    def dlq_detail(self, simulation_id: int) -> Dict[str, Any]:
        return self._rt.dead_letters.detail(simulation_id)

    def dlq_replay(
        self,
        simulation_id: int,
        selector: ReplaySelector,
        options: ReplayOptions,
        actor: str = "unknown",
    ) -> ReplayResult:
        return self._rt.replay.replay(simulation_id, selector, options, actor)

    def scenario(self, scenario_id: str) -> Dict[str, Any]:
        """Current override state of a scenario plus what may be adjusted."""
        scenarios = self._rt.scenarios
        if scenarios.base(scenario_id) is None:
            raise ValueError(f"unknown scenario: {scenario_id}")
        return {
            "scenario": scenario_id,
            **scenarios.version_info(scenario_id),
            "overrides": scenarios.overrides(scenario_id) or {},
            "history": scenarios.history(scenario_id),
            "adjustable": scenarios.adjustable_keys(),
        }

    def set_scenario_overrides(self, scenario_id: str, partial: Dict[str, Any], reset: bool = False) -> Dict[str, Any]:
        """
        Apply an override patch (optionally after clearing earlier ones).

        Simulations already running keep their snapshot; their jobs are
        reported as stale once the version moves on.
        """
        scenarios = self._rt.scenarios
        if scenarios.base(scenario_id) is None:
            raise ValueError(f"unknown scenario: {scenario_id}")
        validate_overrides(partial)
        if reset:
            scenarios.reset(scenario_id)
        if partial:
            scenarios.set_overrides(scenario_id, partial)
        return self.scenario(scenario_id)

    def health(self) -> Dict[str, Any]:
        queues = {
            name: {
                "waiting": self._rt.queue.waiting_count(name),
                "delayed": self._rt.queue.delayed_count(name),
            }
            for name in ALL_QUEUES
        }
        return {"limiter": self._rt.rate_limiter.state(), "queues": queues}


__all__ = ["Orchestrator", "effective_total"]
