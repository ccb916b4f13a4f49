"""
Secondary activity scheduling with adaptive thinning.

A primary lifecycle phase maps to candidate rules. A rule fires when its
global budget is positive, the record is below its per-record cap and a
deterministic draw is below the rule probability. Each rule fires at most
once per record: ``sim:<id>:sec:<idx>:<rule>`` is claimed before the
per-record count and the budget are committed, so a retried or replayed
primary job re-runs scheduling without spending budget twice. Count and
budget are committed with atomic store operations and rolled back on a lost
race, so concurrent workers never overshoot either limit.

Before enqueueing, backlog pressure and the circuit state give a thinning
factor; each activity survives with that probability.
"""

from __future__ import annotations

import math
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from simcrm.config import Settings, get_settings
from simcrm.domain.models import (
    PRIMARY_QUEUE,
    SECONDARY_JOB,
    SECONDARY_QUEUE,
    ActivityType,
    LifecyclePhase,
    SecondaryActivity,
    SecondaryJobPayload,
)
from simcrm.domain.scenarios import DelaySpec, Interactions
from simcrm.infrastructure.job_queue import JobQueue
from simcrm.infrastructure.kv_store import KeyValueStore
from simcrm.resilience.rate_limiter import RateLimiter
from simcrm.retry_config import policy_for
from simcrm.scheduling.rng import DeterministicRng
from simcrm.utils.logging import get_logger
from simcrm.worker.progress import ProgressTracker

log = get_logger(__name__)

MS_PER_MINUTE = 60 * 1000

# phase -> (activity type, probability rule, delay rule); the initial note follows the record at once
RULES: Dict[LifecyclePhase, Tuple[Tuple[ActivityType, str, Optional[str]], ...]] = {
    LifecyclePhase.CONTACT_CREATED: ((ActivityType.NOTE, "initial_note", None),),
    LifecyclePhase.MQL: (
        (ActivityType.CALL, "first_call_on_mql", "first_call_on_mql"),
        (ActivityType.TASK, "follow_up_task_if_no_call", "follow_up_task_if_no_call"),
    ),
    LifecyclePhase.REGRESSION: ((ActivityType.NOTE, "nurture_note_on_regression", "nurture_note_on_regression"),),
    LifecyclePhase.DEAL_WON: ((ActivityType.NOTE, "post_win_note", "post_win_note"),),
    LifecyclePhase.DEAL_LOST: ((ActivityType.TICKET, "lost_deal_ticket", "lost_deal_ticket"),),
}

# (waiting jobs above, multiplier), checked in order
THINNING_TIERS: Tuple[Tuple[int, float], ...] = ((5000, 0.5), (2000, 0.7), (1000, 0.85))


def budget_key(simulation_id: int, activity: ActivityType) -> str:
    return f"sim:{simulation_id}:budget:{activity.plural}"


def record_count_key(simulation_id: int, record_index: int, activity: ActivityType) -> str:
    return f"sim:{simulation_id}:rec:{record_index}:{activity.plural}"


def marker_key(simulation_id: int, record_index: int, rule: str) -> str:
    return f"sim:{simulation_id}:sec:{record_index}:{rule}"


def random_delay_ms(rng: DeterministicRng, spec: Optional[DelaySpec]) -> int:
    """Delay for a rule: mean +/- jitter or a uniform integer range, given in minutes."""
    if spec is None:
        return 0
    if spec.mean_min is not None:
        offset = (rng.next_float() * 2 - 1) * spec.jitter
        return max(0, math.floor((spec.mean_min + offset) * MS_PER_MINUTE + 0.5))
    if spec.range_min is not None and spec.range_max is not None:
        return rng.next_int(spec.range_min, spec.range_max) * MS_PER_MINUTE
    return 0


def thinning_factor(total_waiting: int, circuit_tripped: bool, circuit_penalty: float = 0.4) -> float:
    factor = circuit_penalty if circuit_tripped else 1.0
    for threshold, multiplier in THINNING_TIERS:
        if total_waiting > threshold:
            factor *= multiplier
            break
    return factor


def thin(activities: Sequence[SecondaryActivity], factor: float, rng: DeterministicRng) -> List[SecondaryActivity]:
    if factor >= 1:
        return list(activities)
    return [a for a in activities if rng.next_float() < factor]


class ActivityScheduler:
    def __init__(
        self,
        store: KeyValueStore,
        queue: JobQueue,
        rate_limiter: RateLimiter,
        progress: ProgressTracker,
        settings: Optional[Settings] = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._rate_limiter = rate_limiter
        self._progress = progress
        self._settings = settings or get_settings()

    def init_budgets(self, simulation_id: int, global_budgets: Mapping[str, int]) -> None:
        """Seed per-simulation budgets once; existing values are kept."""
        for activity in ActivityType:
            if activity.plural in global_budgets:
                budget = str(int(global_budgets[activity.plural]))
                self._store.set_if_absent(budget_key(simulation_id, activity), budget)

    def remaining_budgets(self, simulation_id: int) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for activity in ActivityType:
            raw = self._store.get(budget_key(simulation_id, activity))
            if raw is not None:
                out[activity.plural] = int(raw)
        return out

    def decide(
        self,
        simulation_id: int,
        record_index: int,
        phase: LifecyclePhase,
        interactions: Interactions,
        rng: DeterministicRng,
    ) -> List[SecondaryActivity]:
        """
        Apply the phase rules, committing budget and cap for each activity that
        fires. A rule already claimed for this record is skipped.
        """
        fired: List[SecondaryActivity] = []
        for activity, rule, delay_rule in RULES.get(phase, ()):
            b_key = budget_key(simulation_id, activity)
            c_key = record_count_key(simulation_id, record_index, activity)
            cap = interactions.per_record_caps.get(activity.plural)
            budget = int(self._store.get(b_key) or 0)
            used = int(self._store.get(c_key) or 0)
            if budget <= 0 or (cap is not None and used >= cap):
                continue
            probability = interactions.probabilities.get(rule)
            if probability is None or not rng.chance(probability):
                continue
            delay_ms = random_delay_ms(rng, interactions.delays.get(delay_rule)) if delay_rule else 0

            if not self._store.set_if_absent(
                marker_key(simulation_id, record_index, rule),
                "1",
                ttl_ms=self._settings.secondary_marker_ttl_s * 1000,
            ):
                continue
            ordinal = self._store.incr(c_key)
            if cap is not None and ordinal > cap:
                self._store.incr(c_key, -1)
                continue
            if not self._store.decrement_if_positive(b_key):
                self._store.incr(c_key, -1)
                continue
            fired.append(SecondaryActivity(type=activity, ordinal=ordinal, delay_ms=delay_ms))
        return fired

    def backlog(self) -> int:
        return self._queue.waiting_count(PRIMARY_QUEUE) + self._queue.waiting_count(SECONDARY_QUEUE)

    def schedule(
        self,
        *,
        simulation_id: int,
        record_index: int,
        phase: LifecyclePhase,
        interactions: Interactions,
        owner_id: Optional[str] = None,
        override_version: int = 0,
        scenario_params: Optional[dict] = None,
        job_id: Optional[str] = None,
    ) -> List[SecondaryActivity]:
        """
        Decide, thin and enqueue follow-on activities for one primary record.
        Returns the activities actually enqueued.
        """
        rng = DeterministicRng.for_record(simulation_id, record_index)
        activities = self.decide(simulation_id, record_index, phase, interactions, rng)
        if not activities:
            return []

        total_waiting = self.backlog()
        factor = thinning_factor(
            total_waiting,
            self._rate_limiter.circuit_tripped(),
            self._settings.circuit_thinning_penalty,
        )
        kept = thin(activities, factor, rng)
        if len(kept) != len(activities):
            event = {
                "record_index": record_index,
                "before": len(activities),
                "after": len(kept),
                "factor": factor,
                "total_waiting": total_waiting,
            }
            log.info(
                "Activity thinning applied",
                extra={
                    "event_id": "activity.thinning",
                    "simulation_id": simulation_id,
                    "job_id": job_id,
                    "override_version": override_version,
                    **event,
                },
            )
            self._progress.push_event(simulation_id, "thinning", event)

        enqueued: List[SecondaryActivity] = []
        for activity in kept:
            policy = policy_for(activity.type.value)
            job_payload = SecondaryJobPayload(
                simulation_id=simulation_id,
                owner_id=owner_id,
                record_index=record_index,
                activity_type=activity.type,
                ordinal=activity.ordinal,
                override_version=override_version,
                scenario_params=scenario_params,
            )
            self._queue.add(
                SECONDARY_QUEUE,
                SECONDARY_JOB,
                job_payload.model_dump(mode="json"),
                delay_ms=activity.delay_ms,
                max_attempts=policy.attempts,
                backoff_ms=policy.backoff_ms,
            )
            self._progress.record_metric(simulation_id, f"{activity.type.plural}_scheduled")
            enqueued.append(activity)
        return enqueued


__all__ = [
    "RULES",
    "THINNING_TIERS",
    "ActivityScheduler",
    "budget_key",
    "marker_key",
    "random_delay_ms",
    "record_count_key",
    "thin",
    "thinning_factor",
]
