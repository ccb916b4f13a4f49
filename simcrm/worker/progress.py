"""
Progress and metrics aggregation.

The processed count is an atomic counter in the key-value store
(``sim:<id>:processed``). It is flushed to the simulation row every
``progress_flush_every`` increments and once more when the count reaches the
simulation's effective total, at which point a RUNNING simulation becomes
COMPLETED. Completion depends on primary records only.

Per-simulation metrics are kept in the ``sim:<id>:metrics`` hash; bounded
event lists (thinning, rate-limit hits) hold the most recent entries.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from simcrm.config import Settings, get_settings
from simcrm.domain.models import SimulationStatus
from simcrm.infrastructure.kv_store import KeyValueStore
from simcrm.infrastructure.repository import SimulationRepository
from simcrm.utils.clock import Clock, system_clock
from simcrm.utils.logging import get_logger

log = get_logger(__name__)


def processed_key(simulation_id: int) -> str:
    return f"sim:{simulation_id}:processed"


def metrics_key(simulation_id: int) -> str:
    return f"sim:{simulation_id}:metrics"


def events_key(simulation_id: int, kind: str) -> str:
    return f"sim:{simulation_id}:{kind}:events"


class ProgressTracker:
    def __init__(
        self,
        store: KeyValueStore,
        repository: SimulationRepository,
        clock: Clock = system_clock,
        settings: Optional[Settings] = None,
    ) -> None:
        self._store = store
        self._repository = repository
        self._clock = clock
        self._settings = settings or get_settings()

    def increment(self, simulation_id: int, target_total: int) -> int:
        """Count one processed primary record; returns the new count."""
        processed = self._store.incr(processed_key(simulation_id))
        self._store.hset(metrics_key(simulation_id), {"last_progress_ts": self._clock()})
        if processed % self._settings.progress_flush_every == 0:
            self._repository.set_processed(simulation_id, processed)
        if processed >= target_total:
            self._complete(simulation_id, processed)
        return processed

    def processed(self, simulation_id: int) -> int:
        return int(self._store.get(processed_key(simulation_id)) or 0)

    def flush(self, simulation_id: int) -> int:
        processed = self.processed(simulation_id)
        self._repository.set_processed(simulation_id, processed)
        return processed

    def _complete(self, simulation_id: int, processed: int) -> None:
        self._repository.set_processed(simulation_id, processed)
        if not self._store.set_if_absent(f"sim:{simulation_id}:completed", str(self._clock())):
            return
        sim = self._repository.get(simulation_id)
        if sim is None or sim.status != SimulationStatus.RUNNING:
            return
        self._repository.update_status(
            simulation_id,
            SimulationStatus.COMPLETED,
            records_processed=processed,
            finished_at=self._clock(),
        )
        log.info(
            "Simulation completed",
            extra={"event_id": "simulation.completed", "simulation_id": simulation_id, "processed": processed},
        )

    # metrics

    def record_metric(self, simulation_id: int, name: str, amount: int = 1) -> int:
        return self._store.hincrby(metrics_key(simulation_id), name, amount)

    def metrics(self, simulation_id: int) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for name, value in self._store.hgetall(metrics_key(simulation_id)).items():
            try:
                out[name] = int(value)
            except ValueError:
                continue
        return out

    def push_event(self, simulation_id: int, kind: str, event: Dict[str, Any]) -> None:
        payload = json.dumps({"ts": self._clock(), **event}, default=str)
        self._store.lpush_trim(events_key(simulation_id, kind), payload, self._settings.event_list_size)

    def events(self, simulation_id: int, kind: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        count = limit or self._settings.event_list_size
        return [json.loads(raw) for raw in self._store.lrange(events_key(simulation_id, kind), count)]


__all__ = ["ProgressTracker", "events_key", "metrics_key", "processed_key"]
