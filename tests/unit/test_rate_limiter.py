from __future__ import annotations

from simcrm.config import DEFAULT_BUCKET_SIZES
from simcrm.resilience.rate_limiter import resolve_capacities

REFILL_MS = 60_000
CIRCUIT_MAX_FAILURES = 8
CIRCUIT_WINDOW_MS = 60_000
CIRCUIT_COOLDOWN_MS = 30_000


def test_resolve_capacities_overrides_defaults_and_rejects_invalid_values():
    caps = resolve_capacities({"contact": -1, "note": "x", "call": 7, "meeting": 5})
    assert caps["contact"] == DEFAULT_BUCKET_SIZES["contact"]
    assert caps["note"] == DEFAULT_BUCKET_SIZES["note"]
    assert caps["call"] == 7
    assert caps["meeting"] == 5
    assert caps["ticket"] == DEFAULT_BUCKET_SIZES["ticket"]


def test_refill_happens_once_per_window(runtime):
    limiter = runtime.rate_limiter
    assert limiter.refill_if_due() is True
    assert limiter.refill_if_due() is False
    runtime.clock.advance(REFILL_MS)
    assert limiter.refill_if_due() is True


def test_bucket_exhaustion_drops_until_next_refill(runtime):
    limiter = runtime.rate_limiter
    capacities = {"contact": 2}

    assert limiter.admit("contact", capacities).allowed
    assert limiter.admit("contact", capacities).allowed
    denied = limiter.admit("contact", capacities)
    assert denied.allowed is False
    assert denied.reason == "no_token"
    assert limiter.bucket_levels()["contact"] == 0

    runtime.clock.advance(REFILL_MS)
    assert limiter.admit("contact", capacities).allowed


def test_buckets_refill_to_capacity_not_incrementally(runtime):
    limiter = runtime.rate_limiter
    limiter.admit("note", {"note": 3})
    runtime.clock.advance(REFILL_MS)
    limiter.refill_if_due({"note": 3})
    assert limiter.bucket_levels()["note"] == 3


def test_ungoverned_bucket_type_is_admitted(runtime):
    limiter = runtime.rate_limiter
    limiter.refill_if_due()
    assert limiter.take_token("meeting") is True


def test_cooldown_blocks_admission_until_it_expires(runtime):
    limiter = runtime.rate_limiter
    limiter.set_cooldown(1_000)
    admission = limiter.admit("contact")
    assert admission.allowed is False
    assert admission.reason == "cooldown"

    runtime.clock.advance(1_001)
    assert limiter.admit("contact").allowed


def test_circuit_trips_at_failure_threshold(runtime):
    limiter = runtime.rate_limiter
    for _ in range(CIRCUIT_MAX_FAILURES - 1):
        assert limiter.record_failure() is False
    assert limiter.record_failure() is True
    assert limiter.circuit_tripped()
    assert limiter.admit("contact").reason == "circuit_open"

    runtime.clock.advance(CIRCUIT_COOLDOWN_MS + 1)
    assert not limiter.circuit_tripped()


def test_old_failures_age_out_of_the_window(runtime):
    limiter = runtime.rate_limiter
    for _ in range(CIRCUIT_MAX_FAILURES - 1):
        limiter.record_failure()
    runtime.clock.advance(CIRCUIT_WINDOW_MS + 1)
    assert limiter.record_failure() is False
    assert limiter.failure_count() == 1


def test_success_does_not_reset_recent_failures(runtime):
    limiter = runtime.rate_limiter
    for _ in range(3):
        limiter.record_failure()
        runtime.clock.advance(1)
    limiter.record_success()
    assert limiter.failure_count() == 3


def test_state_reports_cooldown_circuit_and_buckets(runtime):
    limiter = runtime.rate_limiter
    limiter.refill_if_due({"contact": 4})
    limiter.set_cooldown(500)
    state = limiter.state()
    assert state["cooldown_active"] is True
    assert state["circuit_tripped"] is False
    assert state["buckets"]["contact"] == 4
