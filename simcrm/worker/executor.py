"""
Per-job execution logic.

Primary jobs (``create-record``) are idempotent per (simulation, override
version, record index). The first execution claims
``idem:<sim>:<version>:<index>`` with the job's lineage id (the original job id
for replays, its own id otherwise), so a duplicate delivery is skipped while a
retry or replay of the same job may proceed. A separate done-marker guarantees
the record is counted exactly once. Counting and the segment trigger run even
when preparing or making the external call raises, and both they and secondary
scheduling are safe to repeat when the job is retried.

The external call is optional: without a credential the record is processed
in dry-run mode, and a call denied by the rate limiter is dropped. External
failures never block progress. They are raised as ``JobFailure`` once the
bookkeeping is done, so the worker pool can retry or dead-letter the job.
"""

from __future__ import annotations

import concurrent.futures
import time
from typing import Any, Dict, Optional

from simcrm.config import Settings, get_settings
from simcrm.crm import ContentGenerator, CredentialProvider, CrmClient, CrmResult, PropertyNormalizer
from simcrm.domain.errors import Classification, CrmError, ErrorCategory, JobFailure, classify_exception
from simcrm.domain.models import (
    EXPAND_SEGMENT_JOB,
    PRIMARY_JOB,
    SECONDARY_JOB,
    PrimaryJobPayload,
    SecondaryJobPayload,
    SegmentCompletedPayload,
    Simulation,
)
from simcrm.domain.scenarios import Interactions, ScenarioParameters, ScenarioRegistry
from simcrm.infrastructure.job_queue import Job
from simcrm.infrastructure.kv_store import KeyValueStore
from simcrm.infrastructure.repository import SimulationRepository
from simcrm.resilience.rate_limiter import RateLimiter
from simcrm.scheduling.activities import ActivityScheduler
from simcrm.scheduling.segments import SegmentPlanner
from simcrm.utils.logging import get_logger
from simcrm.worker.progress import ProgressTracker

log = get_logger(__name__)

DRY_RUN = "dry_run"
DROPPED = "dropped"
CREATED = "created"
FAILED = "failed"


def idempotency_key(simulation_id: int, override_version: int, record_index: int) -> str:
    return f"idem:{simulation_id}:{override_version}:{record_index}"


def done_key(simulation_id: int, override_version: int, record_index: int) -> str:
    return f"done:{simulation_id}:{override_version}:{record_index}"


def record_ids_key(simulation_id: int, record_index: int) -> str:
    return f"sim:{simulation_id}:rec:{record_index}:ids"


class JobExecutor:
    """Executes one reserved job against the injected collaborators."""

    def __init__(
        self,
        store: KeyValueStore,
        repository: SimulationRepository,
        rate_limiter: RateLimiter,
        progress: ProgressTracker,
        planner: SegmentPlanner,
        activities: ActivityScheduler,
        scenarios: ScenarioRegistry,
        crm_client: CrmClient,
        normalizer: PropertyNormalizer,
        content: ContentGenerator,
        credentials: CredentialProvider,
        settings: Optional[Settings] = None,
    ) -> None:
        self._store = store
        self._repository = repository
        self._rate_limiter = rate_limiter
        self._progress = progress
        self._planner = planner
        self._activities = activities
        self._scenarios = scenarios
        self._crm = crm_client
        self._normalizer = normalizer
        self._content = content
        self._credentials = credentials
        self._settings = settings or get_settings()
        self._call_pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, self._settings.worker_concurrency), thread_name_prefix="crm-call"
        )

    def close(self) -> None:
        self._call_pool.shutdown(wait=False)

    def execute(self, job: Job) -> Dict[str, Any]:
        if job.name == PRIMARY_JOB:
            return self.execute_primary(job)
        if job.name == SECONDARY_JOB:
            return self.execute_secondary(job)
        if job.name == EXPAND_SEGMENT_JOB:
            event = SegmentCompletedPayload.model_validate(job.payload)
            scheduled = self._planner.expand_next(event.simulation_id, event.completed_ordinal)
            return {"ok": True, "expanded": scheduled}
        raise JobFailure(ErrorCategory.VALIDATION, f"unknown job name {job.name!r}")

    # primary

    def execute_primary(self, job: Job) -> Dict[str, Any]:
        payload = PrimaryJobPayload.model_validate(job.payload)
        sim_id, idx, version = payload.simulation_id, payload.record_index, payload.override_version
        lineage = payload.replay_of or job.id
        log_fields = {"simulation_id": sim_id, "job_id": job.id, "record_index": idx, "override_version": version}

        key = idempotency_key(sim_id, version, idx)
        if not self._store.set_if_absent(key, lineage, ttl_ms=self._settings.idempotency_ttl_s * 1000):
            if self._store.get(key) != lineage:
                self._progress.record_metric(sim_id, "idempotency_skipped")
                log.info("Idempotency skip", extra={"event_id": "idempotency.skip", **log_fields})
                return {"ok": True, "skipped": True, "record_index": idx}

        sim = self._load_simulation(sim_id, log_fields)
        self._check_override_version(sim, version, log_fields)

        started = time.perf_counter()
        context = {
            "simulation_id": sim_id,
            "record_index": idx,
            "phase": payload.phase.value,
            "scenario_id": sim.scenario_id,
        }
        try:
            outcome, failure = self._call_external(
                sim, payload.owner_id, "contact", "contact", context, job, extra_properties={}
            )
        finally:
            # the timeline advances whatever happened to the external call
            counted = self._count_record(sim, version, idx, job)
            self._planner.on_record_counted(sim_id, idx)

        if outcome == CREATED:
            latency_ms = int((time.perf_counter() - started) * 1000)
            self._progress.record_metric(sim_id, "contact_latency_count")
            self._progress.record_metric(sim_id, "contact_latency_total_ms", latency_ms)

        scheduled = 0
        interactions = self._interactions(payload.scenario_params, sim.scenario_id)
        if interactions is not None:
            scheduled = len(
                self._activities.schedule(
                    simulation_id=sim_id,
                    record_index=idx,
                    phase=payload.phase,
                    interactions=interactions,
                    owner_id=payload.owner_id,
                    override_version=version,
                    scenario_params=payload.scenario_params,
                    job_id=job.id,
                )
            )

        if failure is not None:
            raise JobFailure(failure.category, failure.message)
        log.info(
            "Job completed",
            extra={"event_id": "job.completed", "job_type": "primary", "mode": outcome, **log_fields},
        )
        return {"ok": True, "record_index": idx, "mode": outcome, "counted": counted, "secondary": scheduled}

    # secondary

    def execute_secondary(self, job: Job) -> Dict[str, Any]:
        payload = SecondaryJobPayload.model_validate(job.payload)
        sim_id, idx = payload.simulation_id, payload.record_index
        activity = payload.activity_type
        log_fields = {
            "simulation_id": sim_id,
            "job_id": job.id,
            "record_index": idx,
            "override_version": payload.override_version,
        }
        sim = self._load_simulation(sim_id, log_fields)
        ids = self._store.hgetall(record_ids_key(sim_id, idx))
        context = {
            "simulation_id": sim_id,
            "record_index": idx,
            "phase": payload.phase,
            "scenario_id": sim.scenario_id,
            "ordinal": payload.ordinal,
        }
        outcome, failure = self._call_external(
            sim,
            payload.owner_id,
            activity.value,
            activity.value,
            context,
            job,
            extra_properties={"associated_contact_id": ids.get("contact_id")},
        )
        self._progress.record_metric(sim_id, f"{activity.plural}_created")
        if failure is not None:
            raise JobFailure(failure.category, failure.message)
        log.info(
            "Job completed",
            extra={
                "event_id": "job.completed",
                "job_type": "secondary",
                "activity_type": activity.value,
                "mode": outcome,
                **log_fields,
            },
        )
        return {"ok": True, "record_index": idx, "activity_type": activity.value, "mode": outcome}

    # helpers

    def _count_record(self, sim: Simulation, version: int, record_index: int, job: Job) -> bool:
        """Count the record once per (simulation, version, index). Returns True on the first count."""
        counted = self._store.set_if_absent(
            done_key(sim.id, version, record_index), job.id, ttl_ms=self._settings.idempotency_ttl_s * 1000
        )
        if counted:
            self._progress.record_metric(sim.id, "records_created")
            self._progress.increment(sim.id, sim.target_total)
        return counted

    def _load_simulation(self, simulation_id: int, log_fields: Dict[str, Any]) -> Simulation:
        sim = self._repository.get(simulation_id)
        if sim is None:
            log.error("Simulation missing", extra={"event_id": "job.failed", **log_fields})
            raise JobFailure(ErrorCategory.VALIDATION, "simulation missing")
        return sim

    def _check_override_version(self, sim: Simulation, version: int, log_fields: Dict[str, Any]) -> None:
        current = self._scenarios.version_info(sim.scenario_id).get("version", 0)
        if current != version:
            self._progress.record_metric(sim.id, "stale_override_jobs")
            log.warning(
                "Job scheduled under stale overrides",
                extra={"event_id": "override.stale", "current_version": current, **log_fields},
            )

    def _interactions(self, snapshot: Optional[Dict[str, Any]], scenario_id: str) -> Optional[Interactions]:
        if snapshot:
            return ScenarioParameters.model_validate(snapshot).interactions
        merged = self._scenarios.merged(scenario_id)
        return merged.interactions if merged is not None else None

    def _capacities(self, sim: Simulation) -> Optional[Dict[str, Any]]:
        snapshot = sim.scenario_snapshot or {}
        return snapshot.get("bucket_capacities")

    def _call_external(
        self,
        sim: Simulation,
        owner_id: Optional[str],
        object_type: str,
        bucket: str,
        context: Dict[str, Any],
        job: Job,
        extra_properties: Dict[str, Any],
    ) -> tuple[str, Optional[Classification]]:
        """Returns (outcome, failure classification or None)."""
        is_primary = job.name == PRIMARY_JOB
        if not self._credentials.token_for(owner_id):
            if is_primary:
                self._progress.record_metric(sim.id, "simulated_records")
            return DRY_RUN, None

        admission = self._rate_limiter.admit(bucket, self._capacities(sim))
        if not admission.allowed:
            self._progress.record_metric(sim.id, "calls_dropped")
            log.debug(
                "External call dropped",
                extra={"simulation_id": sim.id, "job_id": job.id, "reason": admission.reason, "bucket": bucket},
            )
            return DROPPED, None

        try:
            properties = {**self._content.generate(object_type, context), **extra_properties}
            properties = self._normalizer.normalize(object_type, properties)
            result = self._call_with_timeout(object_type, properties)
        except Exception as exc:
            classification = classify_exception(exc)
            self._on_external_failure(sim.id, exc, classification, job, is_primary)
            return FAILED, classification

        self._rate_limiter.record_success()
        if is_primary:
            self._progress.record_metric(sim.id, "contacts_created_real")
            self._store.hset(record_ids_key(sim.id, context["record_index"]), {"contact_id": result.id})
        else:
            self._progress.record_metric(sim.id, f"{object_type}s_created_real")
        return CREATED, None

    def _call_with_timeout(self, object_type: str, properties: Dict[str, Any]) -> CrmResult:
        future = self._call_pool.submit(self._crm.call, object_type, "create", properties)
        timeout_s = self._settings.external_call_timeout_ms / 1000
        try:
            return future.result(timeout=timeout_s)
        except concurrent.futures.TimeoutError as exc:
            future.cancel()
            raise TimeoutError(f"external call timed out after {self._settings.external_call_timeout_ms}ms") from exc

    def _on_external_failure(
        self,
        simulation_id: int,
        exc: Exception,
        classification: Classification,
        job: Job,
        is_primary: bool,
    ) -> None:
        if classification.category == ErrorCategory.RATE_LIMIT:
            retry_after = exc.retry_after_ms if isinstance(exc, CrmError) else None
            self._rate_limiter.set_cooldown(max(retry_after or 0, self._settings.rate_limit_cooldown_ms))
            self._progress.record_metric(simulation_id, "rate_limit_hits")
            self._progress.push_event(
                simulation_id,
                "ratelimit",
                {"record_index": job.payload.get("record_index"), "retry_after_ms": retry_after},
            )
        self._rate_limiter.record_failure()
        self._progress.record_metric(simulation_id, "create_failures" if is_primary else "secondary_failures")
        log.error(
            "CRM operation failed",
            extra={
                "event_id": "crm.op_failed",
                "simulation_id": simulation_id,
                "job_id": job.id,
                "record_index": job.payload.get("record_index"),
                "override_version": job.payload.get("override_version"),
                "category": classification.category.value,
                "retryable": classification.retryable,
                "error": classification.message,
            },
        )


__all__ = ["JobExecutor", "done_key", "idempotency_key", "record_ids_key"]
