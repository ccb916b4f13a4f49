"""
Scenario parameter bundles and the runtime override surface.

Base bundles (``b2b``, ``b2c``) hold lead-volume, interaction and rate-bucket
settings. Operators may layer validated overrides on top; each change bumps a
monotonically increasing version and recomputes a content hash so jobs
scheduled under an older snapshot can be recognised.

Overrides are kept in the shared key-value store:

    scenario:<id>:overrides   hash {overrides (JSON), version, hash}
    scenario:<id>:version     counter
    scenario:<id>:history     bounded list, newest first
"""

from __future__ import annotations

import copy
import json
from contextlib import contextmanager
from typing import Annotated, Any, Dict, Generator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, field_validator
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from simcrm.domain.errors import ScenarioUpdateInProgress
from simcrm.infrastructure.kv_store import InMemoryKeyValueStore, KeyValueStore
from simcrm.utils.clock import Clock, system_clock
from simcrm.utils.logging import get_logger

log = get_logger(__name__)

PROBABILITY_KEYS = (
    "initial_note",
    "first_call_on_mql",
    "follow_up_task_if_no_call",
    "nurture_note_on_regression",
    "post_win_note",
    "lost_deal_ticket",
)


class DelaySpec(BaseModel):
    """Either mean +/- jitter or a uniform range, in minutes."""

    mean_min: Optional[float] = None
    jitter: float = 0.0
    range_min: Optional[int] = None
    range_max: Optional[int] = None


class Interactions(BaseModel):
    probabilities: Dict[str, float] = Field(default_factory=dict)
    per_record_caps: Dict[str, int] = Field(default_factory=dict)
    global_budgets: Dict[str, int] = Field(default_factory=dict)
    delays: Dict[str, DelaySpec] = Field(default_factory=dict)


class ScenarioParameters(BaseModel):
    id: str
    lead_volume_multiplier: float = 1.0
    avg_sales_cycle_days: int = 30
    deal_win_rate_base: float = 0.5
    interactions: Interactions = Field(default_factory=Interactions)
    bucket_capacities: Dict[str, int] = Field(default_factory=dict)


_BASE_SCENARIOS: Dict[str, Dict[str, Any]] = {
    "b2b": {
        "id": "b2b",
        "lead_volume_multiplier": 0.8,
        "avg_sales_cycle_days": 60,
        "deal_win_rate_base": 0.6,
        "interactions": {
            "probabilities": {
                "initial_note": 1.0,
                "first_call_on_mql": 0.65,
                "follow_up_task_if_no_call": 0.5,
                "nurture_note_on_regression": 0.35,
                "post_win_note": 0.55,
                "lost_deal_ticket": 0.15,
            },
            "per_record_caps": {"notes": 5, "calls": 3, "tasks": 6, "tickets": 1},
            "global_budgets": {"notes": 5000, "calls": 2500, "tasks": 4000, "tickets": 500},
            "delays": {
                "first_call_on_mql": {"mean_min": 15, "jitter": 10},
                "follow_up_task_if_no_call": {"range_min": 30, "range_max": 180},
                "nurture_note_on_regression": {"range_min": 5, "range_max": 25},
                "post_win_note": {"range_min": 2, "range_max": 10},
                "lost_deal_ticket": {"range_min": 3, "range_max": 20},
            },
        },
        "bucket_capacities": {"contact": 60, "note": 50, "call": 30, "task": 40, "ticket": 15},
    },
    "b2c": {
        "id": "b2c",
        "lead_volume_multiplier": 1.8,
        "avg_sales_cycle_days": 7,
        "deal_win_rate_base": 0.42,
        "interactions": {
            "probabilities": {
                "initial_note": 0.9,
                "first_call_on_mql": 0.3,
                "follow_up_task_if_no_call": 0.25,
                "nurture_note_on_regression": 0.25,
                "post_win_note": 0.4,
                "lost_deal_ticket": 0.05,
            },
            "per_record_caps": {"notes": 3, "calls": 1, "tasks": 3, "tickets": 1},
            "global_budgets": {"notes": 8000, "calls": 1200, "tasks": 5000, "tickets": 300},
            "delays": {
                "first_call_on_mql": {"mean_min": 8, "jitter": 6},
                "follow_up_task_if_no_call": {"range_min": 15, "range_max": 90},
                "nurture_note_on_regression": {"range_min": 3, "range_max": 15},
                "post_win_note": {"range_min": 1, "range_max": 6},
                "lost_deal_ticket": {"range_min": 2, "range_max": 12},
            },
        },
        "bucket_capacities": {"contact": 120, "note": 80, "call": 15, "task": 50, "ticket": 10},
    },
}


def compute_hash(obj: Any) -> str:
    """FNV-1a (32 bit) over canonical JSON."""
    data = json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")
    h = 0x811C9DC5
    for byte in data:
        h ^= byte
        h = (h * 0x01000193) & 0xFFFFFFFF
    return f"{h:08x}"


def _deep_merge(base: Dict[str, Any], over: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    if not over:
        return out
    if over.get("deal_win_rate_base") is not None:
        out["deal_win_rate_base"] = over["deal_win_rate_base"]
    interactions = over.get("interactions") or {}
    if interactions:
        target = out.setdefault("interactions", {})
        for section in ("probabilities", "per_record_caps", "global_budgets"):
            if interactions.get(section):
                target[section] = {**target.get(section, {}), **interactions[section]}
    return out


Probability = Annotated[float, Field(ge=0, le=1)]


class InteractionOverrides(BaseModel):
    """Adjustable part of ``Interactions``; delays are fixed per scenario."""

    model_config = ConfigDict(extra="forbid")

    probabilities: Dict[str, Probability] = Field(default_factory=dict)
    per_record_caps: Dict[str, NonNegativeInt] = Field(default_factory=dict)
    global_budgets: Dict[str, NonNegativeInt] = Field(default_factory=dict)

    @field_validator("probabilities")
    @classmethod
    def _adjustable_probabilities(cls, value: Dict[str, float]) -> Dict[str, float]:
        for key in value:
            if key not in PROBABILITY_KEYS:
                raise ValueError(f"probability key not adjustable: {key}")
        return value


class ScenarioOverrides(BaseModel):
    model_config = ConfigDict(extra="forbid")

    deal_win_rate_base: Optional[Probability] = None
    interactions: InteractionOverrides = Field(default_factory=InteractionOverrides)


def validate_overrides(partial: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate an override patch and return it normalised.

    Raises
    ------
    pydantic.ValidationError
        A ``ValueError`` naming the offending key.
    """
    return ScenarioOverrides.model_validate(partial).model_dump(exclude_unset=True)


def overrides_key(scenario_id: str) -> str:
    return f"scenario:{scenario_id}:overrides"


def version_key(scenario_id: str) -> str:
    return f"scenario:{scenario_id}:version"


def history_key(scenario_id: str) -> str:
    return f"scenario:{scenario_id}:history"


def _lock_key(scenario_id: str) -> str:
    return f"scenario:{scenario_id}:lock"


HISTORY_LIMIT = 50
_LOCK_TTL_MS = 5_000

_retry_locked = retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
    retry=retry_if_exception_type(ScenarioUpdateInProgress),
    reraise=True,
)


class ScenarioRegistry:
    """
    Base scenarios plus versioned operator overrides.

    Overrides, their version and hash live in the shared key-value store, so
    every worker process sees the same version and stale snapshots are
    detectable across processes. Writers serialise on a short-lived lock key;
    the version comes from an atomic counter and only ever increases, even
    across ``reset``.

    Parameters
    ----------
    store : KeyValueStore | None
        Shared store; a private in-memory store when omitted.
    clock : Clock
        Millisecond clock for history timestamps.
    base : dict | None
        Base bundles keyed by scenario id; the built-in b2b/b2c otherwise.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        clock: Clock = system_clock,
        base: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> None:
        self._store = store if store is not None else InMemoryKeyValueStore(clock)
        self._clock = clock
        self._base = copy.deepcopy(base if base is not None else _BASE_SCENARIOS)

    def scenario_ids(self) -> List[str]:
        return sorted(self._base)

    def base(self, scenario_id: str) -> Optional[ScenarioParameters]:
        raw = self._base.get(scenario_id)
        return ScenarioParameters.model_validate(raw) if raw else None

    def merged(self, scenario_id: str) -> Optional[ScenarioParameters]:
        raw = self._base.get(scenario_id)
        if raw is None:
            return None
        return ScenarioParameters.model_validate(_deep_merge(raw, self.overrides(scenario_id)))

    def set_overrides(self, scenario_id: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        """
        Layer ``partial`` over the current overrides and bump the version.

        Returns the full override set now in force. Invalid input leaves the
        stored state untouched.
        """
        if not scenario_id:
            raise ValueError("scenario required")
        if scenario_id not in self._base:
            raise ValueError(f"unknown scenario: {scenario_id}")
        patch = validate_overrides(partial)
        merged, version, digest = self._write(scenario_id, patch)
        log.info(
            "Scenario overrides updated",
            extra={"event_id": "override.set", "scenario": scenario_id, "override_version": version, "hash": digest},
        )
        return merged

    @_retry_locked
    def _write(self, scenario_id: str, patch: Dict[str, Any]) -> Tuple[Dict[str, Any], int, str]:
        with self._locked(scenario_id):
            merged = _deep_merge(self.overrides(scenario_id) or {}, patch)
            digest = compute_hash(merged)
            version = self._store.incr(version_key(scenario_id))
            self._store.hset(
                overrides_key(scenario_id),
                {"overrides": json.dumps(merged, sort_keys=True), "version": version, "hash": digest},
            )
            self._store.lpush_trim(
                history_key(scenario_id),
                json.dumps({"version": version, "hash": digest, "ts": self._clock()}),
                HISTORY_LIMIT,
            )
        return merged, version, digest

    @contextmanager
    def _locked(self, scenario_id: str) -> Generator[None, None, None]:
        if not self._store.set_if_absent(_lock_key(scenario_id), "1", ttl_ms=_LOCK_TTL_MS):
            raise ScenarioUpdateInProgress(f"scenario {scenario_id} is being updated")
        try:
            yield
        finally:
            self._store.delete(_lock_key(scenario_id))

    @_retry_locked
    def reset(self, scenario_id: str) -> None:
        """Drop overrides and history; the next change gets a fresh version."""
        with self._locked(scenario_id):
            self._store.delete(overrides_key(scenario_id), history_key(scenario_id))
        log.info("Scenario overrides reset", extra={"event_id": "override.reset", "scenario": scenario_id})

    def overrides(self, scenario_id: str) -> Optional[Dict[str, Any]]:
        raw = self._store.hgetall(overrides_key(scenario_id)).get("overrides")
        return json.loads(raw) if raw else None

    def version_info(self, scenario_id: str) -> Dict[str, Any]:
        state = self._store.hgetall(overrides_key(scenario_id))
        if not state:
            return {"version": 0, "hash": None}
        return {"version": int(state["version"]), "hash": state["hash"]}

    def history(self, scenario_id: str) -> List[Dict[str, Any]]:
        """Changes oldest first, bounded to the most recent ``HISTORY_LIMIT``."""
        entries = self._store.lrange(history_key(scenario_id), HISTORY_LIMIT)
        return [json.loads(entry) for entry in reversed(entries)]

    @staticmethod
    def adjustable_keys() -> Dict[str, Any]:
        return {
            "deal_win_rate_base": "number 0..1",
            "probabilities": {key: "number 0..1" for key in PROBABILITY_KEYS},
            "per_record_caps": "non-negative integers",
            "global_budgets": "non-negative integers",
        }


__all__ = [
    "HISTORY_LIMIT",
    "PROBABILITY_KEYS",
    "DelaySpec",
    "InteractionOverrides",
    "Interactions",
    "ScenarioOverrides",
    "ScenarioParameters",
    "ScenarioRegistry",
    "compute_hash",
    "history_key",
    "overrides_key",
    "validate_overrides",
    "version_key",
]
