"""
Dead-letter store and routing.

A failed job is dead-lettered when its failure is not retryable or it has used
up its attempts; otherwise the queue retries it. Each entry keeps the full
payload and failure context. Per-simulation category counters and a bounded
list of recent samples are maintained next to the entries for observability.

Key layout::

    sim:<id>:dlq:entries        sorted set of entry ids scored by failure time
    sim:<id>:dlq:entry:<entry>  JSON entry
    sim:<id>:dlq:counts         hash category -> count
    sim:<id>:dlq:samples        recent samples, newest first
"""

from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional

from simcrm.config import Settings, get_settings
from simcrm.domain.errors import Classification
from simcrm.domain.models import DeadLetterEntry
from simcrm.infrastructure.job_queue import Job
from simcrm.infrastructure.kv_store import KeyValueStore
from simcrm.utils.clock import Clock, system_clock
from simcrm.utils.logging import get_logger

log = get_logger(__name__)

_COUNTS_SUFFIX = ":dlq:counts"


def should_dead_letter(classification: Classification, attempts_made: int, max_attempts: int) -> bool:
    """``attempts_made`` includes the attempt that just failed."""
    return not classification.retryable or attempts_made >= max_attempts


def entries_key(simulation_id: int) -> str:
    return f"sim:{simulation_id}:dlq:entries"


def entry_key(simulation_id: int, entry_id: str) -> str:
    return f"sim:{simulation_id}:dlq:entry:{entry_id}"


def counts_key(simulation_id: int) -> str:
    return f"sim:{simulation_id}{_COUNTS_SUFFIX}"


def samples_key(simulation_id: int) -> str:
    return f"sim:{simulation_id}:dlq:samples"


class DeadLetterStore:
    def __init__(
        self,
        store: KeyValueStore,
        clock: Clock = system_clock,
        settings: Optional[Settings] = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._settings = settings or get_settings()

    def capture(self, job: Job, classification: Classification, attempts_made: int) -> DeadLetterEntry:
        simulation_id = job.payload.get("simulation_id")
        entry = DeadLetterEntry(
            entry_id=uuid.uuid4().hex,
            origin_queue=job.queue,
            job_id=job.id,
            job_name=job.name,
            simulation_id=simulation_id,
            payload=dict(job.payload),
            error=classification.message,
            category=classification.category,
            retryable=classification.retryable,
            failed_at=self._clock(),
            attempts_made=attempts_made,
            max_attempts=job.max_attempts,
        )
        if simulation_id is not None:
            self._store.set(entry_key(simulation_id, entry.entry_id), entry.model_dump_json())
            self._store.zadd(entries_key(simulation_id), entry.entry_id, entry.failed_at)
            self._store.hincrby(counts_key(simulation_id), entry.category.value, 1)
            sample = {
                "ts": entry.failed_at,
                "category": entry.category.value,
                "retryable": entry.retryable,
                "msg": entry.error,
                "queue": entry.origin_queue,
                "job_id": entry.job_id,
                "record_index": job.payload.get("record_index"),
            }
            self._store.lpush_trim(samples_key(simulation_id), json.dumps(sample), self._settings.dlq_sample_size)
        log.error(
            "Job dead-lettered",
            extra={
                "event_id": "dlq.captured",
                "simulation_id": simulation_id,
                "job_id": job.id,
                "record_index": job.payload.get("record_index"),
                "override_version": job.payload.get("override_version"),
                "queue": job.queue,
                "category": entry.category.value,
                "retryable": entry.retryable,
                "attempts_made": attempts_made,
                "error": entry.error,
            },
        )
        return entry

    def entries(self, simulation_id: int) -> List[DeadLetterEntry]:
        """All entries for a simulation, oldest first."""
        out: List[DeadLetterEntry] = []
        for entry_id, _ in self._store.zrange(entries_key(simulation_id)):
            raw = self._store.get(entry_key(simulation_id, entry_id))
            if raw is None:
                self._store.zrem(entries_key(simulation_id), entry_id)
                continue
            out.append(DeadLetterEntry.model_validate_json(raw))
        return out

    def counts(self, simulation_id: int) -> Dict[str, int]:
        return {k: int(v) for k, v in self._store.hgetall(counts_key(simulation_id)).items()}

    def samples(self, simulation_id: int) -> List[Dict[str, Any]]:
        raw_samples = self._store.lrange(samples_key(simulation_id), self._settings.dlq_sample_size)
        return [json.loads(raw) for raw in raw_samples]

    def detail(self, simulation_id: int) -> Dict[str, Any]:
        return {
            "simulation_id": simulation_id,
            "counts": self.counts(simulation_id),
            "samples": self.samples(simulation_id),
            "depth": self._store.zcard(entries_key(simulation_id)),
        }

    def summary(
        self,
        sim_id_contains: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = 200,
    ) -> List[Dict[str, Any]]:
        """Per-simulation category counters across every simulation with dead letters."""
        limit = min(max(int(limit), 1), 500)
        out: List[Dict[str, Any]] = []
        for key in self._store.scan("sim:"):
            if not key.endswith(_COUNTS_SUFFIX):
                continue
            sim_id = key[len("sim:"):-len(_COUNTS_SUFFIX)]
            if sim_id_contains and sim_id_contains not in sim_id:
                continue
            counts = {k: int(v) for k, v in self._store.hgetall(key).items()}
            if category and category not in counts:
                continue
            out.append({"simulation_id": int(sim_id) if sim_id.isdigit() else sim_id, "counts": counts})
            if len(out) >= limit:
                break
        return out

    def purge(self, simulation_id: int) -> int:
        """Drop every entry for the simulation; counters and samples go too."""
        entry_ids = [entry_id for entry_id, _ in self._store.zrange(entries_key(simulation_id))]
        self._store.delete(*(entry_key(simulation_id, e) for e in entry_ids))
        self._store.delete(entries_key(simulation_id), counts_key(simulation_id), samples_key(simulation_id))
        return len(entry_ids)


__all__ = ["DeadLetterStore", "counts_key", "entries_key", "should_dead_letter"]
