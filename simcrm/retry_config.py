"""
Per-job-type retry and backoff configuration.

Attempts and backoff schedules are read from the environment through
``RetrySettings`` so operators can tune them without a redeploy. Two naming
conventions are accepted, with the newer one taking precedence:

    CONTACT_ATTEMPTS=3        (new)       ATTEMPTS_CONTACT=3        (legacy)
    CONTACT_BACKOFF_MS=1,2,5  (new)       BACKOFF_CONTACT=1,2,5     (legacy)

Call ``reload_retry_config()`` after changing the environment to pick up new
values in a running process.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated, Any, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from simcrm.utils.logging import get_logger

log = get_logger(__name__)

_FALLBACK_DELAY_MS = 1000


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int
    backoff_ms: tuple[int, ...]


DEFAULT_POLICIES: Dict[str, RetryPolicy] = {
    "contact": RetryPolicy(3, (1000, 3000, 9000)),
    "note": RetryPolicy(2, (2000, 6000)),
    "call": RetryPolicy(2, (2000, 6000)),
    "task": RetryPolicy(2, (2000, 6000)),
    "ticket": RetryPolicy(2, (2000, 6000)),
    "secondary": RetryPolicy(2, (1500, 4500)),
}

# comma-separated in the environment, so JSON decoding is skipped
DelayList = Annotated[Optional[List[int]], NoDecode]

_ATTEMPT_FIELDS = tuple(
    name for job_type in DEFAULT_POLICIES for name in (f"{job_type}_attempts", f"attempts_{job_type}")
)
_BACKOFF_FIELDS = tuple(
    name for job_type in DEFAULT_POLICIES for name in (f"{job_type}_backoff_ms", f"backoff_{job_type}")
)


class RetrySettings(BaseSettings):
    """Raw retry overrides; ``None`` means not set (or unusable)."""

    contact_attempts: Optional[int] = Field(None, alias="CONTACT_ATTEMPTS")
    attempts_contact: Optional[int] = Field(None, alias="ATTEMPTS_CONTACT")
    contact_backoff_ms: DelayList = Field(None, alias="CONTACT_BACKOFF_MS")
    backoff_contact: DelayList = Field(None, alias="BACKOFF_CONTACT")

    note_attempts: Optional[int] = Field(None, alias="NOTE_ATTEMPTS")
    attempts_note: Optional[int] = Field(None, alias="ATTEMPTS_NOTE")
    note_backoff_ms: DelayList = Field(None, alias="NOTE_BACKOFF_MS")
    backoff_note: DelayList = Field(None, alias="BACKOFF_NOTE")

    call_attempts: Optional[int] = Field(None, alias="CALL_ATTEMPTS")
    attempts_call: Optional[int] = Field(None, alias="ATTEMPTS_CALL")
    call_backoff_ms: DelayList = Field(None, alias="CALL_BACKOFF_MS")
    backoff_call: DelayList = Field(None, alias="BACKOFF_CALL")

    task_attempts: Optional[int] = Field(None, alias="TASK_ATTEMPTS")
    attempts_task: Optional[int] = Field(None, alias="ATTEMPTS_TASK")
    task_backoff_ms: DelayList = Field(None, alias="TASK_BACKOFF_MS")
    backoff_task: DelayList = Field(None, alias="BACKOFF_TASK")

    ticket_attempts: Optional[int] = Field(None, alias="TICKET_ATTEMPTS")
    attempts_ticket: Optional[int] = Field(None, alias="ATTEMPTS_TICKET")
    ticket_backoff_ms: DelayList = Field(None, alias="TICKET_BACKOFF_MS")
    backoff_ticket: DelayList = Field(None, alias="BACKOFF_TICKET")

    secondary_attempts: Optional[int] = Field(None, alias="SECONDARY_ATTEMPTS")
    attempts_secondary: Optional[int] = Field(None, alias="ATTEMPTS_SECONDARY")
    secondary_backoff_ms: DelayList = Field(None, alias="SECONDARY_BACKOFF_MS")
    backoff_secondary: DelayList = Field(None, alias="BACKOFF_SECONDARY")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator(*_ATTEMPT_FIELDS, mode="before")
    @classmethod
    def _positive_attempts(cls, value: Any) -> Optional[int]:
        if value is None or value == "":
            return None
        try:
            attempts = int(value)
        except (TypeError, ValueError):
            return None
        return attempts if attempts > 0 else None

    @field_validator(*_BACKOFF_FIELDS, mode="before")
    @classmethod
    def _delay_list(cls, value: Any) -> Optional[List[int]]:
        if value is None:
            return None
        parts = value.split(",") if isinstance(value, str) else list(value)
        delays: List[int] = []
        for part in parts:
            try:
                delay = int(str(part).strip())
            except ValueError:
                continue
            if delay >= 0:
                delays.append(delay)
        return delays or None

    def policy(self, job_type: str) -> RetryPolicy:
        default = DEFAULT_POLICIES[job_type]
        new_attempts = getattr(self, f"{job_type}_attempts")
        legacy_attempts = getattr(self, f"attempts_{job_type}")
        new_backoff = getattr(self, f"{job_type}_backoff_ms")
        legacy_backoff = getattr(self, f"backoff_{job_type}")

        attempts = new_attempts or legacy_attempts or default.attempts
        backoff = list(new_backoff or legacy_backoff or default.backoff_ms)
        both_naming_present = (new_attempts is not None and legacy_attempts is not None) or (
            new_backoff is not None and legacy_backoff is not None
        )
        # pad only when not both conventions are set at once
        if not both_naming_present and len(backoff) < attempts - 1:
            last = backoff[-1] if backoff else _FALLBACK_DELAY_MS
            backoff.extend([last] * (attempts - 1 - len(backoff)))
        return RetryPolicy(attempts=attempts, backoff_ms=tuple(backoff))


def load_retry_config(settings: Optional[RetrySettings] = None) -> Dict[str, RetryPolicy]:
    """
    Build the retry policy table from ``settings`` (read from the environment
    when omitted).
    """
    settings = settings or RetrySettings()
    return {job_type: settings.policy(job_type) for job_type in DEFAULT_POLICIES}


@lru_cache(maxsize=1)
def get_retry_config() -> Dict[str, RetryPolicy]:
    """
    Retrieve the cached retry policy table to avoid repeated env parsing.
    """
    return load_retry_config()


def reload_retry_config() -> Dict[str, RetryPolicy]:
    """Drop the cached table and re-read the environment."""
    get_retry_config.cache_clear()
    config = get_retry_config()
    log.info("Retry configuration reloaded", extra={"types": sorted(config)})
    return config


def policy_for(job_type: str) -> RetryPolicy:
    config = get_retry_config()
    return config.get(job_type) or config["contact"]


def next_delay(job_type: str, retry_number: int) -> int:
    """Delay in ms before retry ``retry_number`` (0 is the first retry)."""
    backoff = policy_for(job_type).backoff_ms
    if not backoff:
        return _FALLBACK_DELAY_MS
    if 0 <= retry_number < len(backoff):
        return backoff[retry_number]
    return backoff[-1]


__all__ = [
    "DEFAULT_POLICIES",
    "RetryPolicy",
    "RetrySettings",
    "get_retry_config",
    "load_retry_config",
    "next_delay",
    "policy_for",
    "reload_retry_config",
]
