from __future__ import annotations

import concurrent.futures

import pytest

from simcrm.domain.models import CONTROL_QUEUE, EXPAND_SEGMENT_JOB, PRIMARY_QUEUE
from simcrm.scheduling.distribution import expand_distribution
from simcrm.scheduling.segments import plan_segments, timestamps_key

T0 = 1_700_000_000_000
HOUR_MS = 3_600_000
SIM_ID = 1
WORKERS = 8


def _assert_partition(segments, total):
    assert segments[0].first_idx == 0
    assert segments[-1].last_idx == total - 1
    for prev, nxt in zip(segments, segments[1:]):
        assert nxt.first_idx == prev.last_idx + 1
        assert nxt.start >= prev.end
    assert [s.ordinal for s in segments] == list(range(len(segments)))


def test_plan_segments_splits_linear_schedule_by_hour():
    timestamps = expand_distribution("linear", 100, T0, T0 + 3 * HOUR_MS)
    segments = plan_segments(SIM_ID, timestamps, T0, T0 + 3 * HOUR_MS, HOUR_MS)

    assert [(s.first_idx, s.last_idx) for s in segments] == [(0, 32), (33, 66), (67, 99)]
    assert [s.start for s in segments] == [T0, T0 + HOUR_MS, T0 + 2 * HOUR_MS]
    _assert_partition(segments, 100)


@pytest.mark.parametrize("method", ["bell_curve", "front_loaded", "surge_mid"])
def test_plan_segments_partitions_every_index(method):
    timestamps = expand_distribution(method, 333, T0, T0 + 10 * HOUR_MS)
    segments = plan_segments(SIM_ID, timestamps, T0, T0 + 10 * HOUR_MS, HOUR_MS)
    _assert_partition(segments, 333)
    assert sum(s.size for s in segments) == 333


def test_plan_segments_skips_empty_buckets():
    segments = plan_segments(SIM_ID, [T0 + 10, T0 + 5 * HOUR_MS + 1], T0, T0 + 6 * HOUR_MS, HOUR_MS)
    assert len(segments) == 2
    assert segments[1].ordinal == 1
    assert segments[1].start == T0 + 5 * HOUR_MS


def test_timestamp_at_window_end_belongs_to_last_segment():
    end = T0 + 2 * HOUR_MS
    segments = plan_segments(SIM_ID, [T0, T0 + HOUR_MS, end], T0, end, HOUR_MS)
    assert [(s.first_idx, s.last_idx) for s in segments] == [(0, 0), (1, 2)]
    assert segments[-1].end == end


def test_zero_width_window_gives_single_segment():
    segments = plan_segments(SIM_ID, [T0, T0, T0], T0, T0, HOUR_MS)
    assert len(segments) == 1
    assert (segments[0].first_idx, segments[0].last_idx) == (0, 2)


def test_no_timestamps_means_no_segments():
    assert plan_segments(SIM_ID, [], T0, T0 + HOUR_MS, HOUR_MS) == []


def _planned(runtime, total=100, hours=3):
    sim = runtime.repository.create("owner-1", "b2b", total, T0, T0 + hours * HOUR_MS)
    timestamps = expand_distribution("linear", total, T0, T0 + hours * HOUR_MS)
    segments = runtime.planner.plan(sim, timestamps)
    return sim, segments


def test_plan_enqueues_only_first_segment(runtime):
    sim, segments = _planned(runtime)

    pending = runtime.queue.pending(PRIMARY_QUEUE)
    assert len(pending) == segments[0].size
    assert sorted(j.payload["record_index"] for j in pending) == list(range(segments[0].size))
    status = runtime.planner.status(sim.id)
    assert [s["expanded"] for s in status] == [True, False, False]


def test_jobs_are_delayed_until_their_timestamp(runtime):
    _planned(runtime)
    first = runtime.queue.pending(PRIMARY_QUEUE)[0]
    assert first.run_at == first.payload["scheduled_at"]
    assert runtime.queue.waiting_count(PRIMARY_QUEUE) == 0


def test_record_counted_publishes_event_only_for_segment_last_index(runtime):
    sim, segments = _planned(runtime)

    assert runtime.planner.on_record_counted(sim.id, 5) is None
    assert runtime.queue.pending(CONTROL_QUEUE) == []

    assert runtime.planner.on_record_counted(sim.id, segments[0].last_idx) == 0
    [event] = runtime.queue.pending(CONTROL_QUEUE)
    assert event.name == EXPAND_SEGMENT_JOB
    assert event.payload == {"simulation_id": sim.id, "completed_ordinal": 0}


def test_record_counted_again_after_expansion_publishes_nothing(runtime):
    sim, segments = _planned(runtime)
    runtime.planner.expand_next(sim.id, 0)

    assert runtime.planner.on_record_counted(sim.id, segments[0].last_idx) is None
    assert runtime.queue.pending(CONTROL_QUEUE) == []


def test_concurrent_expansion_enqueues_segment_once(runtime):
    sim, segments = _planned(runtime)

    with concurrent.futures.ThreadPoolExecutor(max_workers=WORKERS) as pool:
        results = list(pool.map(lambda _: runtime.planner.expand_next(sim.id, 0), range(WORKERS)))

    assert sorted(results) == [0] * (WORKERS - 1) + [segments[1].size]
    assert len(runtime.queue.pending(PRIMARY_QUEUE)) == segments[0].size + segments[1].size


def test_expand_next_claims_each_segment_once(runtime):
    sim, segments = _planned(runtime)

    assert runtime.planner.expand_next(sim.id, 0) == segments[1].size
    assert runtime.planner.expand_next(sim.id, 0) == 0
    assert len(runtime.queue.pending(PRIMARY_QUEUE)) == segments[0].size + segments[1].size


def test_expand_next_past_last_segment_is_noop(runtime):
    sim, segments = _planned(runtime)
    assert runtime.planner.expand_next(sim.id, len(segments) - 1) == 0


def test_expand_next_skipped_when_aborted(runtime):
    sim, _ = _planned(runtime)
    runtime.planner.mark_aborted(sim.id)
    assert runtime.planner.expand_next(sim.id, 0) == 0


def test_expand_next_recomputes_timestamps_on_cache_miss(runtime):
    sim, segments = _planned(runtime)
    runtime.store.delete(timestamps_key(sim.id))

    assert runtime.planner.expand_next(sim.id, 0) == segments[1].size
    expanded = [j for j in runtime.queue.pending(PRIMARY_QUEUE) if j.payload["record_index"] == segments[1].first_idx]
    expected = expand_distribution("linear", 100, T0, T0 + 3 * HOUR_MS)[segments[1].first_idx]
    assert expanded[0].payload["scheduled_at"] == expected
    assert runtime.store.get(timestamps_key(sim.id)) is not None


def test_segment_for_index(runtime):
    sim, segments = _planned(runtime)
    assert runtime.planner.segment_for_index(sim.id, 0).ordinal == 0
    assert runtime.planner.segment_for_index(sim.id, 50).ordinal == 1
    assert runtime.planner.segment_for_index(sim.id, 99).ordinal == 2
    assert runtime.planner.segment_for_index(sim.id, 100) is None
