"""
Dead-letter replay controller.

Operators select dead-lettered jobs of one simulation by explicit job ids
and/or error categories. The selection is ordered by strategy, optionally
capped per category, trimmed to a limit and deduplicated twice: within the
batch and against jobs replayed recently. Dry runs only report. Live runs
re-enqueue to the origin queue, single-attempt unless the full retry policy is
requested. Every call writes an audit row and is rate limited per operator.
"""

from __future__ import annotations

import random
import uuid
from collections import Counter
from typing import Callable, Dict, List, MutableSequence, Optional

from simcrm.config import Settings, get_settings
from simcrm.domain.errors import ReplayRateLimited, ReplayValidationError, SimulationNotFound
from simcrm.domain.models import (
    ALL_QUEUES,
    SECONDARY_JOB,
    DeadLetterEntry,
    ReplayAudit,
    ReplayOptions,
    ReplayResult,
    ReplaySelector,
    ReplayStrategy,
)
from simcrm.infrastructure.job_queue import JobQueue
from simcrm.infrastructure.kv_store import KeyValueStore
from simcrm.infrastructure.repository import SimulationRepository
from simcrm.retry_config import policy_for
from simcrm.utils.clock import Clock, system_clock
from simcrm.utils.logging import get_logger
from simcrm.worker.dead_letter import DeadLetterStore

log = get_logger(__name__)


def lineage_id(entry: DeadLetterEntry) -> str:
    """Id of the originally failed job, stable across replays of it."""
    return str(entry.payload.get("replay_of") or entry.job_id)


def _retry_type(entry: DeadLetterEntry) -> str:
    if entry.job_name == SECONDARY_JOB:
        return str(entry.payload.get("activity_type") or "secondary")
    return "contact"


def order_candidates(
    candidates: List[DeadLetterEntry],
    strategy: ReplayStrategy,
    shuffle: Callable[[MutableSequence], None] = random.shuffle,
) -> List[DeadLetterEntry]:
    ordered = list(candidates)
    if strategy == ReplayStrategy.OLDEST:
        ordered.sort(key=lambda e: e.failed_at)
    elif strategy == ReplayStrategy.NEWEST:
        ordered.sort(key=lambda e: e.failed_at, reverse=True)
    else:
        shuffle(ordered)
    return ordered


def cap_per_category(candidates: List[DeadLetterEntry], max_per_category: Optional[int]) -> List[DeadLetterEntry]:
    if not max_per_category or max_per_category <= 0:
        return list(candidates)
    taken: Counter = Counter()
    out: List[DeadLetterEntry] = []
    for entry in candidates:
        if taken[entry.category] < max_per_category:
            out.append(entry)
            taken[entry.category] += 1
    return out


class ReplayController:
    def __init__(
        self,
        store: KeyValueStore,
        queue: JobQueue,
        dead_letters: DeadLetterStore,
        repository: SimulationRepository,
        clock: Clock = system_clock,
        settings: Optional[Settings] = None,
        shuffle: Callable[[MutableSequence], None] = random.shuffle,
    ) -> None:
        self._store = store
        self._queue = queue
        self._dead_letters = dead_letters
        self._repository = repository
        self._clock = clock
        self._settings = settings or get_settings()
        self._shuffle = shuffle

    def check_rate_limit(self, actor: str) -> None:
        key = f"rl:replay:{actor}"
        count = self._store.incr(key, ttl_ms=self._settings.replay_window_ms)
        if count > self._settings.replay_max_calls:
            retry_after = self._store.pttl(key)
            raise ReplayRateLimited(retry_after if retry_after is not None else self._settings.replay_window_ms)

    def _validate(self, selector: ReplaySelector, options: ReplayOptions) -> int:
        settings = self._settings
        requested = options.limit if options.limit is not None else settings.replay_default_limit
        limit = min(max(int(requested), 1), settings.replay_max_limit)
        if not selector.job_ids and not selector.categories:
            raise ReplayValidationError("must provide job_ids or categories")
        if not options.dry_run and limit > settings.replay_live_max_limit:
            raise ReplayValidationError(f"limit exceeds live replay cap of {settings.replay_live_max_limit}")
        if options.use_full_retry and options.dry_run:
            raise ReplayValidationError("use_full_retry is not applicable to a dry run")
        return limit

    def replay(
        self,
        simulation_id: int,
        selector: ReplaySelector,
        options: ReplayOptions,
        actor: str = "unknown",
    ) -> ReplayResult:
        self.check_rate_limit(actor)
        limit = self._validate(selector, options)
        if self._repository.get(simulation_id) is None:
            raise SimulationNotFound(simulation_id)

        candidates = self._dead_letters.entries(simulation_id)
        if selector.job_ids:
            wanted = set(selector.job_ids)
            candidates = [e for e in candidates if e.job_id in wanted or e.entry_id in wanted]
        if selector.categories:
            categories = set(selector.categories)
            candidates = [e for e in candidates if e.category in categories]
        total_candidates = len(candidates)

        ordered = order_candidates(candidates, options.strategy, self._shuffle)
        chosen = cap_per_category(ordered, options.max_per_category)[:limit]

        batch_id = uuid.uuid4().hex
        seen_key = f"sim:{simulation_id}:dlq:replay:seen:{batch_id}"
        recent_key = f"sim:{simulation_id}:dlq:replayed_recent"
        selected: List[DeadLetterEntry] = []
        skipped_duplicate: List[str] = []
        already_recent: List[str] = []
        for entry in chosen:
            origin = lineage_id(entry)
            if not self._store.sadd(seen_key, origin):
                skipped_duplicate.append(origin)
                continue
            if self._store.sismember(recent_key, origin):
                already_recent.append(origin)
                continue
            selected.append(entry)
        self._store.expire(seen_key, self._settings.replay_batch_ttl_s * 1000)

        new_job_ids: List[str] = []
        if not options.dry_run:
            for entry in selected:
                new_job_id = self._resubmit(entry, options.use_full_retry)
                if new_job_id is not None:
                    new_job_ids.append(new_job_id)
            if selected:
                for entry in selected:
                    self._store.sadd(recent_key, lineage_id(entry))
                self._store.expire(recent_key, self._settings.replay_recent_ttl_s * 1000)

        by_category: Dict[str, int] = dict(Counter(e.category.value for e in selected))
        result = ReplayResult(
            batch_id=batch_id,
            dry_run=options.dry_run,
            use_full_retry=options.use_full_retry,
            total_candidates=total_candidates,
            chosen=len(selected),
            by_category=by_category,
            replayed=len(new_job_ids),
            new_job_ids=new_job_ids,
            skipped_duplicate=skipped_duplicate,
            already_recent=already_recent,
        )
        self._repository.insert_replay_audit(
            ReplayAudit(
                id=uuid.uuid4().hex,
                actor=actor,
                simulation_id=simulation_id,
                dry_run=options.dry_run,
                total_candidates=total_candidates,
                selected_count=len(selected),
                replayed_count=result.replayed,
                filters={
                    "selector": selector.model_dump(mode="json"),
                    "options": options.model_dump(mode="json"),
                    "limit": limit,
                },
                created_at=self._clock(),
            )
        )
        log.info(
            "Dead-letter replay",
            extra={
                "event_id": "dlq.replay",
                "simulation_id": simulation_id,
                "actor": actor,
                "dry_run": options.dry_run,
                "use_full_retry": options.use_full_retry,
                "total_candidates": total_candidates,
                "chosen": len(selected),
                "replayed": result.replayed,
                "batch_id": batch_id,
            },
        )
        return result

    def _resubmit(self, entry: DeadLetterEntry, use_full_retry: bool) -> Optional[str]:
        if entry.origin_queue not in ALL_QUEUES:
            log.warning(
                "Replay skipped; unknown origin queue",
                extra={"job_id": entry.job_id, "queue": entry.origin_queue},
            )
            return None
        payload = dict(entry.payload)
        payload["replay_of"] = lineage_id(entry)
        max_attempts, backoff = 1, ()
        if use_full_retry:
            policy = policy_for(_retry_type(entry))
            max_attempts, backoff = policy.attempts, policy.backoff_ms
        job = self._queue.add(
            entry.origin_queue,
            entry.job_name,
            payload,
            max_attempts=max_attempts,
            backoff_ms=backoff,
        )
        return job.id


__all__ = ["ReplayController", "cap_per_category", "lineage_id", "order_candidates"]
