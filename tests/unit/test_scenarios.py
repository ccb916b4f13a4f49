from __future__ import annotations

import pytest

from simcrm.domain.errors import ScenarioUpdateInProgress
from simcrm.domain.scenarios import (
    HISTORY_LIMIT,
    PROBABILITY_KEYS,
    ScenarioRegistry,
    compute_hash,
    validate_overrides,
)
from simcrm.infrastructure.kv_store import InMemoryKeyValueStore


def test_compute_hash_is_stable_and_key_order_independent():
    first = compute_hash({"a": 1, "b": [1, 2]})
    assert first == compute_hash({"b": [1, 2], "a": 1})
    assert len(first) == 8
    assert first != compute_hash({"a": 2, "b": [1, 2]})


@pytest.mark.parametrize(
    "partial, message",
    [
        ({"deal_win_rate_base": 1.5}, "deal_win_rate_base"),
        ({"interactions": {"probabilities": {"surprise": 0.5}}}, "not adjustable"),
        ({"interactions": {"probabilities": {"initial_note": -0.1}}}, "initial_note"),
        ({"interactions": {"per_record_caps": {"notes": -1}}}, "per_record_caps"),
        ({"interactions": {"global_budgets": {"calls": "many"}}}, "global_budgets"),
    ],
)
def test_validate_overrides_rejects_bad_values(partial, message):
    with pytest.raises(ValueError, match=message):
        validate_overrides(partial)


def test_base_scenarios_are_available():
    registry = ScenarioRegistry()
    b2b = registry.merged("b2b")
    assert b2b.lead_volume_multiplier == 0.8
    assert b2b.interactions.probabilities["initial_note"] == 1.0
    assert registry.merged("b2c").bucket_capacities["contact"] == 120
    assert registry.merged("missing") is None
    assert registry.version_info("b2b") == {"version": 0, "hash": None}


def test_set_overrides_merges_and_bumps_version():
    registry = ScenarioRegistry()
    registry.set_overrides("b2b", {"interactions": {"probabilities": {"first_call_on_mql": 0.1}}})
    merged = registry.set_overrides("b2b", {"deal_win_rate_base": 0.2})

    assert merged["interactions"]["probabilities"] == {"first_call_on_mql": 0.1}
    params = registry.merged("b2b")
    assert params.deal_win_rate_base == 0.2
    assert params.interactions.probabilities["first_call_on_mql"] == 0.1
    assert params.interactions.probabilities["initial_note"] == 1.0

    info = registry.version_info("b2b")
    assert info["version"] == 2
    assert info["hash"] == compute_hash(registry.overrides("b2b"))
    assert [h["version"] for h in registry.history("b2b")] == [1, 2]


def test_invalid_override_leaves_state_untouched():
    registry = ScenarioRegistry()
    with pytest.raises(ValueError):
        registry.set_overrides("b2b", {"deal_win_rate_base": 2})
    assert registry.overrides("b2b") is None
    assert registry.version_info("b2b")["version"] == 0


def test_reset_clears_overrides_and_history():
    registry = ScenarioRegistry()
    registry.set_overrides("b2c", {"deal_win_rate_base": 0.9})
    registry.reset("b2c")
    assert registry.overrides("b2c") is None
    assert registry.history("b2c") == []
    assert registry.merged("b2c").deal_win_rate_base == 0.42


def test_adjustable_keys_lists_every_probability():
    keys = ScenarioRegistry.adjustable_keys()
    assert set(keys["probabilities"]) == set(PROBABILITY_KEYS)
    assert keys["deal_win_rate_base"] == "number 0..1"


def test_validate_overrides_rejects_non_adjustable_fields():
    with pytest.raises(ValueError, match="lead_volume_multiplier"):
        validate_overrides({"lead_volume_multiplier": 3})


def test_validate_overrides_returns_only_given_fields():
    patch = validate_overrides({"interactions": {"global_budgets": {"notes": 7}}})
    assert patch == {"interactions": {"global_budgets": {"notes": 7}}}


def test_registries_sharing_a_store_see_the_same_version(clock):
    store = InMemoryKeyValueStore(clock)
    writer = ScenarioRegistry(store, clock)
    reader = ScenarioRegistry(store, clock)

    writer.set_overrides("b2b", {"deal_win_rate_base": 0.25})

    assert reader.version_info("b2b") == writer.version_info("b2b")
    assert reader.version_info("b2b")["version"] == 1
    assert reader.merged("b2b").deal_win_rate_base == 0.25
    assert reader.history("b2b") == [{"version": 1, "hash": writer.version_info("b2b")["hash"], "ts": clock()}]


def test_version_keeps_increasing_after_reset(clock):
    store = InMemoryKeyValueStore(clock)
    registry = ScenarioRegistry(store, clock)
    registry.set_overrides("b2c", {"deal_win_rate_base": 0.9})
    registry.reset("b2c")

    assert registry.version_info("b2c") == {"version": 0, "hash": None}
    registry.set_overrides("b2c", {"deal_win_rate_base": 0.8})
    assert registry.version_info("b2c")["version"] == 2


def test_history_is_bounded_and_oldest_first(clock):
    registry = ScenarioRegistry(InMemoryKeyValueStore(clock), clock)
    for step in range(HISTORY_LIMIT + 3):
        registry.set_overrides("b2b", {"interactions": {"global_budgets": {"notes": step}}})

    versions = [entry["version"] for entry in registry.history("b2b")]
    assert versions == list(range(4, HISTORY_LIMIT + 4))


def test_unknown_scenario_cannot_be_overridden():
    with pytest.raises(ValueError, match="unknown scenario"):
        ScenarioRegistry().set_overrides("b2x", {"deal_win_rate_base": 0.5})


def test_update_waits_for_lock_then_gives_up(clock):
    store = InMemoryKeyValueStore(clock)
    registry = ScenarioRegistry(store, clock)
    store.set("scenario:b2b:lock", "1")

    with pytest.raises(ScenarioUpdateInProgress):
        registry.set_overrides("b2b", {"deal_win_rate_base": 0.5})
    assert registry.version_info("b2b")["version"] == 0

    store.delete("scenario:b2b:lock")
    registry.set_overrides("b2b", {"deal_win_rate_base": 0.5})
    assert registry.version_info("b2b")["version"] == 1
