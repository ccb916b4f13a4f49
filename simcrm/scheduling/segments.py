"""
Segment planning and lazy expansion.

The expanded timestamp array is cut into fixed-duration buckets and only
non-empty buckets become segments. Planning enqueues the first segment only.
Every later segment is expanded when the record at the previous segment's last
index is counted: the worker publishes a "segment completed" event on the
control queue and the expansion task claims the next segment with
set-if-absent, so concurrent observers expand it exactly once.

Key layout::

    sim:<id>:segments            JSON list of segments, ordered by ordinal
    sim:<id>:segments:expanded   set of expanded ordinals
    sim:<id>:seg:<n>:expanded    expansion claim (expiring)
    sim:<id>:timestamps          cached timestamp array (expiring)
    sim:<id>:aborted             abort flag
"""

from __future__ import annotations

import bisect
import json
from typing import Any, Dict, List, Optional, Sequence

from simcrm.config import Settings, get_settings
from simcrm.domain.models import (
    CONTROL_QUEUE,
    EXPAND_SEGMENT_JOB,
    PRIMARY_JOB,
    PRIMARY_QUEUE,
    PrimaryJobPayload,
    Segment,
    SegmentCompletedPayload,
    Simulation,
)
from simcrm.infrastructure.job_queue import JobQueue
from simcrm.infrastructure.kv_store import KeyValueStore
from simcrm.infrastructure.repository import SimulationRepository
from simcrm.retry_config import policy_for
from simcrm.scheduling.distribution import expand_distribution
from simcrm.utils.clock import Clock, system_clock
from simcrm.utils.logging import get_logger

log = get_logger(__name__)


def segments_key(simulation_id: int) -> str:
    return f"sim:{simulation_id}:segments"


def expanded_set_key(simulation_id: int) -> str:
    return f"sim:{simulation_id}:segments:expanded"


def claim_key(simulation_id: int, ordinal: int) -> str:
    return f"sim:{simulation_id}:seg:{ordinal}:expanded"


def timestamps_key(simulation_id: int) -> str:
    return f"sim:{simulation_id}:timestamps"


def aborted_key(simulation_id: int) -> str:
    return f"sim:{simulation_id}:aborted"


def plan_segments(
    simulation_id: int,
    timestamps: Sequence[int],
    start: int,
    end: int,
    segment_size_ms: int,
) -> List[Segment]:
    """
    Partition sorted ``timestamps`` into non-empty fixed-duration segments.

    Buckets are half-open ``[s, s + size)`` except the last one, which also
    holds timestamps equal to ``end``. A zero-width window yields a single
    segment spanning every index.
    """
    total = len(timestamps)
    if total == 0:
        return []
    if end <= start:
        return [Segment(simulation_id=simulation_id, ordinal=0, start=start, end=end, first_idx=0, last_idx=total - 1)]
    if segment_size_ms <= 0:
        raise ValueError("segment_size_ms must be positive")

    segments: List[Segment] = []
    last_bucket = (end - start - 1) // segment_size_ms
    next_idx = 0
    while next_idx < total:
        # jump straight to the bucket holding the next unassigned timestamp
        bucket = min(last_bucket, max(0, (timestamps[next_idx] - start) // segment_size_ms))
        seg_start = start + bucket * segment_size_ms
        seg_end = min(seg_start + segment_size_ms, end)
        if seg_end >= end:
            stop = total
        else:
            stop = bisect.bisect_left(timestamps, seg_end, lo=next_idx)
        segments.append(
            Segment(
                simulation_id=simulation_id,
                ordinal=len(segments),
                start=seg_start,
                end=seg_end,
                first_idx=next_idx,
                last_idx=stop - 1,
            )
        )
        next_idx = stop
    return segments


def build_primary_payload(sim: Simulation, record_index: int, scheduled_at: int) -> PrimaryJobPayload:
    return PrimaryJobPayload(
        simulation_id=sim.id,
        owner_id=sim.owner_id,
        record_index=record_index,
        scheduled_at=scheduled_at,
        scenario_id=sim.scenario_id,
        distribution_method=sim.distribution_method,
        override_version=sim.override_version,
        overrides_hash=sim.overrides_hash,
        scenario_params=sim.scenario_snapshot,
    )


class SegmentPlanner:
    """Stores segment metadata, enqueues segments and performs lazy expansion."""

    def __init__(
        self,
        store: KeyValueStore,
        queue: JobQueue,
        repository: SimulationRepository,
        clock: Clock = system_clock,
        settings: Optional[Settings] = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._repository = repository
        self._clock = clock
        self._settings = settings or get_settings()

    # planning

    def plan(self, sim: Simulation, timestamps: Sequence[int]) -> List[Segment]:
        """
        Persist segments and the timestamp cache, then enqueue the first
        segment. Returns the planned segments.
        """
        segments = plan_segments(sim.id, timestamps, sim.start_time, sim.end_time, self._settings.segment_size_ms)
        self._store.set(
            timestamps_key(sim.id),
            json.dumps(list(timestamps)),
            ttl_ms=self._settings.timestamp_cache_ttl_s * 1000,
        )
        self._store.set(segments_key(sim.id), json.dumps([s.model_dump() for s in segments]))
        if segments:
            first = segments[0]
            self._store.set_if_absent(
                claim_key(sim.id, first.ordinal), "1", ttl_ms=self._settings.segment_claim_ttl_s * 1000
            )
            self._store.sadd(expanded_set_key(sim.id), str(first.ordinal))
            self.enqueue_segment(sim, first, timestamps)
        log.info(
            "Segments planned",
            extra={"simulation_id": sim.id, "segments": len(segments), "records": len(timestamps)},
        )
        return segments

    def enqueue_segment(self, sim: Simulation, segment: Segment, timestamps: Sequence[int]) -> int:
        now = self._clock()
        policy = policy_for("contact")
        for idx in range(segment.first_idx, segment.last_idx + 1):
            scheduled_at = timestamps[idx]
            payload = build_primary_payload(sim, idx, scheduled_at)
            self._queue.add(
                PRIMARY_QUEUE,
                PRIMARY_JOB,
                payload.model_dump(mode="json"),
                delay_ms=max(0, scheduled_at - now),
                max_attempts=policy.attempts,
                backoff_ms=policy.backoff_ms,
            )
        return segment.size

    # lookup

    def load_segments(self, simulation_id: int) -> List[Segment]:
        raw = self._store.get(segments_key(simulation_id))
        if not raw:
            return []
        return [Segment.model_validate(item) for item in json.loads(raw)]

    def segment_for_index(self, simulation_id: int, record_index: int) -> Optional[Segment]:
        segments = self.load_segments(simulation_id)
        firsts = [s.first_idx for s in segments]
        pos = bisect.bisect_right(firsts, record_index) - 1
        if pos < 0:
            return None
        segment = segments[pos]
        return segment if segment.first_idx <= record_index <= segment.last_idx else None

    def timestamps(self, sim: Simulation) -> List[int]:
        """Cached timestamp array, recomputed and re-cached on a miss."""
        cached = self._store.get(timestamps_key(sim.id))
        if cached:
            try:
                return [int(ts) for ts in json.loads(cached)]
            except (ValueError, TypeError):
                log.warning("Discarding unreadable timestamp cache", extra={"simulation_id": sim.id})
        timestamps = expand_distribution(sim.distribution_method, sim.target_total, sim.start_time, sim.end_time)
        self._store.set(
            timestamps_key(sim.id),
            json.dumps(timestamps),
            ttl_ms=self._settings.timestamp_cache_ttl_s * 1000,
        )
        return timestamps

    # lazy expansion

    def on_record_counted(self, simulation_id: int, record_index: int) -> Optional[int]:
        """
        Publish a segment-completed event when ``record_index`` is the last
        index of its segment and the following segment is not expanded yet.
        Returns the completed ordinal, if any. Safe to call again for the same
        record; the expansion claim decides who expands.
        """
        segment = self.segment_for_index(simulation_id, record_index)
        if segment is None or segment.last_idx != record_index:
            return None
        if self._store.sismember(expanded_set_key(simulation_id), str(segment.ordinal + 1)):
            return None
        payload = SegmentCompletedPayload(simulation_id=simulation_id, completed_ordinal=segment.ordinal)
        self._queue.add(CONTROL_QUEUE, EXPAND_SEGMENT_JOB, payload.model_dump(), max_attempts=3, backoff_ms=(1000,))
        return segment.ordinal

    def expand_next(self, simulation_id: int, completed_ordinal: int) -> int:
        """
        Expand the segment following ``completed_ordinal``. Returns the number
        of jobs enqueued (zero when aborted, already claimed, or none left).
        """
        if self.is_aborted(simulation_id):
            log.info("Expansion skipped; simulation aborted", extra={"simulation_id": simulation_id})
            return 0
        segments = self.load_segments(simulation_id)
        next_ordinal = completed_ordinal + 1
        if next_ordinal >= len(segments):
            return 0
        segment = segments[next_ordinal]
        if not self._store.set_if_absent(
            claim_key(simulation_id, segment.ordinal), "1", ttl_ms=self._settings.segment_claim_ttl_s * 1000
        ):
            return 0
        sim = self._repository.get(simulation_id)
        if sim is None:
            return 0
        self._store.sadd(expanded_set_key(simulation_id), str(segment.ordinal))
        scheduled = self.enqueue_segment(sim, segment, self.timestamps(sim))
        log.info(
            "Segment expanded",
            extra={
                "event_id": "segment.expanded",
                "simulation_id": simulation_id,
                "ordinal": segment.ordinal,
                "scheduled": scheduled,
            },
        )
        return scheduled

    def status(self, simulation_id: int) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for segment in self.load_segments(simulation_id):
            expanded = self._store.sismember(expanded_set_key(simulation_id), str(segment.ordinal))
            out.append({**segment.model_dump(), "expanded": expanded, "size": segment.size})
        return out

    # abort flag

    def mark_aborted(self, simulation_id: int) -> None:
        self._store.set(aborted_key(simulation_id), "1", ttl_ms=self._settings.abort_flag_ttl_s * 1000)

    def is_aborted(self, simulation_id: int) -> bool:
        return self._store.get(aborted_key(simulation_id)) == "1"


__all__ = [
    "SegmentPlanner",
    "aborted_key",
    "build_primary_payload",
    "claim_key",
    "plan_segments",
    "segments_key",
    "timestamps_key",
]
