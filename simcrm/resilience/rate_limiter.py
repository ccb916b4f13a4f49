"""
Shared admission control for calls to the external CRM.

All state lives in the key-value store so every worker process sees the same
buckets, cooldown and circuit:

- token buckets ``ratelimit:bucket:<type>`` refilled to full capacity once per
  refill cadence (no continuous trickle),
- a global cooldown ``ratelimit:crm:cooldown_until`` set after an explicit
  rate-limit response,
- a failure window ``circuit:crm:fail_window`` (sorted set scored by time) and
  ``circuit:crm:tripped_until``.

A call is admitted only when there is no cooldown, the circuit is closed and a
token could be taken. A denied call is a soft drop for that job.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from simcrm.config import DEFAULT_BUCKET_SIZES, Settings, get_settings
from simcrm.infrastructure.kv_store import KeyValueStore
from simcrm.utils.clock import Clock, system_clock
from simcrm.utils.logging import get_logger

log = get_logger(__name__)

BUCKET_KEY_PREFIX = "ratelimit:bucket:"
LAST_REFILL_KEY = "ratelimit:bucket:last_refill"
REFILL_CLAIM_PREFIX = "ratelimit:refill:"
COOLDOWN_KEY = "ratelimit:crm:cooldown_until"
CIRCUIT_TRIP_KEY = "circuit:crm:tripped_until"
CIRCUIT_WINDOW_KEY = "circuit:crm:fail_window"


@dataclass(frozen=True)
class Admission:
    allowed: bool
    reason: str = "ok"


def resolve_capacities(overrides: Optional[Mapping[str, object]] = None) -> Dict[str, int]:
    """Default bucket sizes merged with scenario capacities; invalid entries fall back."""
    caps: Dict[str, int] = dict(DEFAULT_BUCKET_SIZES)
    for key, value in (overrides or {}).items():
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            caps[key] = DEFAULT_BUCKET_SIZES.get(key, 0)
        else:
            caps[key] = int(value)
    return caps


class RateLimiter:
    def __init__(
        self,
        store: KeyValueStore,
        clock: Clock = system_clock,
        settings: Optional[Settings] = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._settings = settings or get_settings()

    # token buckets

    def refill_if_due(self, capacities: Optional[Mapping[str, object]] = None) -> bool:
        """
        Reset every bucket to capacity if the current cadence window has not
        been refilled yet. Returns True for the one caller that performed it.
        """
        now = self._clock()
        refill_ms = self._settings.bucket_refill_ms
        window = now // refill_ms
        if not self._store.set_if_absent(f"{REFILL_CLAIM_PREFIX}{window}", str(now), ttl_ms=refill_ms * 2):
            return False
        for bucket_type, size in resolve_capacities(capacities).items():
            self._store.set(BUCKET_KEY_PREFIX + bucket_type, str(size))
        self._store.set(LAST_REFILL_KEY, str(now))
        log.debug("Token buckets refilled", extra={"window": window})
        return True

    def take_token(self, bucket_type: str) -> bool:
        key = BUCKET_KEY_PREFIX + bucket_type
        if self._store.decrement_if_positive(key):
            return True
        # unknown bucket type: not governed
        return self._store.get(key) is None

    def bucket_levels(self) -> Dict[str, int]:
        levels: Dict[str, int] = {}
        for key in self._store.scan(BUCKET_KEY_PREFIX):
            if key == LAST_REFILL_KEY:
                continue
            value = self._store.get(key)
            if value is not None:
                levels[key[len(BUCKET_KEY_PREFIX):]] = int(value)
        return levels

    # cooldown

    def set_cooldown(self, duration_ms: Optional[int] = None) -> int:
        duration = self._settings.rate_limit_cooldown_ms if duration_ms is None else duration_ms
        until = self._clock() + duration
        self._store.set(COOLDOWN_KEY, str(until), ttl_ms=duration * 2)
        log.warning("Rate-limit cooldown set", extra={"cooldown_until": until})
        return until

    def cooldown_active(self) -> bool:
        return self._until(COOLDOWN_KEY) > self._clock()

    # circuit breaker

    def circuit_tripped(self) -> bool:
        return self._until(CIRCUIT_TRIP_KEY) > self._clock()

    def record_failure(self) -> bool:
        """Append a failure to the window; trips the circuit at the threshold."""
        now = self._clock()
        self._store.zadd(CIRCUIT_WINDOW_KEY, f"{now}:{uuid.uuid4().hex[:8]}", now)
        self._store.zremrangebyscore(CIRCUIT_WINDOW_KEY, now - self._settings.circuit_window_ms)
        failures = self._store.zcard(CIRCUIT_WINDOW_KEY)
        if failures >= self._settings.circuit_max_failures:
            until = now + self._settings.circuit_cooldown_ms
            self._store.set(CIRCUIT_TRIP_KEY, str(until))
            log.warning("Circuit tripped", extra={"failures": failures, "tripped_until": until})
            return True
        return False

    def record_success(self) -> None:
        # successes only age out old failures; they never clear the window
        self._store.zremrangebyscore(CIRCUIT_WINDOW_KEY, self._clock() - self._settings.circuit_window_ms)

    def failure_count(self) -> int:
        self.record_success()
        return self._store.zcard(CIRCUIT_WINDOW_KEY)

    # admission

    def admit(self, bucket_type: str, capacities: Optional[Mapping[str, object]] = None) -> Admission:
        self.refill_if_due(capacities)
        if self.cooldown_active():
            return Admission(False, "cooldown")
        if self.circuit_tripped():
            return Admission(False, "circuit_open")
        if not self.take_token(bucket_type):
            return Admission(False, "no_token")
        return Admission(True)

    def state(self) -> Dict[str, object]:
        return {
            "cooldown_until": self._until(COOLDOWN_KEY) or None,
            "cooldown_active": self.cooldown_active(),
            "circuit_tripped_until": self._until(CIRCUIT_TRIP_KEY) or None,
            "circuit_tripped": self.circuit_tripped(),
            "circuit_failures": self.failure_count(),
            "buckets": self.bucket_levels(),
        }

    def _until(self, key: str) -> int:
        raw = self._store.get(key)
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0


__all__ = ["Admission", "RateLimiter", "resolve_capacities"]
