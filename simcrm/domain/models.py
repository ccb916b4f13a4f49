"""
Domain models for the CRM simulation engine.

Pydantic models describe the simulation record, its time segments, the job
payloads carried through the queues, dead-letter entries and replay requests.
They are used for validation and serialization across the orchestrator,
workers and storage backends.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from simcrm.domain.errors import ErrorCategory


PRIMARY_QUEUE = "simulation-jobs-0"
SECONDARY_QUEUE = "simulation-secondary"
CONTROL_QUEUE = "simulation-control"
ALL_QUEUES = (PRIMARY_QUEUE, SECONDARY_QUEUE, CONTROL_QUEUE)

PRIMARY_JOB = "create-record"
SECONDARY_JOB = "secondary-activity"
EXPAND_SEGMENT_JOB = "expand-segment"


class SimulationStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"


class DistributionMethod(str, Enum):
    LINEAR = "linear"
    FRONT_LOADED = "front_loaded"
    BACK_LOADED = "back_loaded"
    BELL_CURVE = "bell_curve"
    SURGE_MID = "surge_mid"
    TRICKLE = "trickle"
    DAILY_SPIKE = "daily_spike"


class LifecyclePhase(str, Enum):
    CONTACT_CREATED = "contact_created"
    MQL = "mql"
    REGRESSION = "regression"
    DEAL_WON = "deal_won"
    DEAL_LOST = "deal_lost"


class ActivityType(str, Enum):
    NOTE = "note"
    CALL = "call"
    TASK = "task"
    TICKET = "ticket"

    @property
    def plural(self) -> str:
        return f"{self.value}s"


class ReplayStrategy(str, Enum):
    OLDEST = "oldest"
    NEWEST = "newest"
    RANDOM = "random"


class Simulation(BaseModel):
    """
    Representation of a single row in the `simulations` table.
    """

    id: int = Field(..., description="Primary key.")
    owner_id: str = Field(..., description="User who created the simulation.")
    scenario_id: str = Field(..., description="Scenario bundle id (e.g. b2b).")
    distribution_method: str = Field("linear", description="Temporal distribution name.")
    total_records: int = Field(..., ge=0, description="Requested record count.")
    effective_total: Optional[int] = Field(None, description="Total after the volume multiplier.")
    start_time: int = Field(..., description="Window start, ms epoch.")
    end_time: int = Field(..., description="Window end, ms epoch.")
    status: SimulationStatus = Field(SimulationStatus.QUEUED)
    records_processed: int = Field(0, ge=0)
    override_version: int = Field(0, ge=0)
    overrides_hash: Optional[str] = None
    scenario_snapshot: Optional[Dict[str, Any]] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    finished_at: Optional[int] = None

    model_config = {
        "populate_by_name": True,
    }

    @property
    def target_total(self) -> int:
        return self.effective_total if self.effective_total is not None else self.total_records


class Segment(BaseModel):
    simulation_id: int
    ordinal: int
    start: int
    end: int
    first_idx: int
    last_idx: int
    expanded: bool = False

    model_config = {"frozen": True}

    @property
    def size(self) -> int:
        return self.last_idx - self.first_idx + 1


class PrimaryJobPayload(BaseModel):
    simulation_id: int
    owner_id: Optional[str] = None
    record_index: int = Field(..., ge=0)
    phase: LifecyclePhase = LifecyclePhase.CONTACT_CREATED
    scheduled_at: int
    scenario_id: Optional[str] = None
    distribution_method: Optional[str] = None
    override_version: int = 0
    overrides_hash: Optional[str] = None
    scenario_params: Optional[Dict[str, Any]] = None
    replay_of: Optional[str] = None


class SecondaryJobPayload(BaseModel):
    simulation_id: int
    owner_id: Optional[str] = None
    record_index: int = Field(..., ge=0)
    activity_type: ActivityType
    ordinal: int = Field(1, ge=1)
    phase: str = "secondary_activity"
    override_version: int = 0
    scenario_params: Optional[Dict[str, Any]] = None
    replay_of: Optional[str] = None


class SegmentCompletedPayload(BaseModel):
    simulation_id: int
    completed_ordinal: int


class SecondaryActivity(BaseModel):
    type: ActivityType
    ordinal: int
    delay_ms: int = 0

    model_config = {"frozen": True}


class DeadLetterEntry(BaseModel):
    entry_id: str
    origin_queue: str
    job_id: str
    job_name: str
    simulation_id: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    error: str = ""
    category: ErrorCategory = ErrorCategory.UNKNOWN
    retryable: bool = True
    failed_at: int
    attempts_made: int = 0
    max_attempts: int = 1


class ReplaySelector(BaseModel):
    job_ids: List[str] = Field(default_factory=list)
    categories: List[ErrorCategory] = Field(default_factory=list)


class ReplayOptions(BaseModel):
    limit: Optional[int] = None
    dry_run: bool = True
    max_per_category: Optional[int] = None
    strategy: ReplayStrategy = ReplayStrategy.OLDEST
    use_full_retry: bool = False


class ReplayResult(BaseModel):
    batch_id: str
    dry_run: bool
    use_full_retry: bool
    total_candidates: int
    chosen: int
    by_category: Dict[str, int] = Field(default_factory=dict)
    replayed: int = 0
    new_job_ids: List[str] = Field(default_factory=list)
    skipped_duplicate: List[str] = Field(default_factory=list)
    already_recent: List[str] = Field(default_factory=list)


class ReplayAudit(BaseModel):
    id: str
    actor: str
    simulation_id: int
    dry_run: bool
    total_candidates: int
    selected_count: int
    replayed_count: int
    filters: Dict[str, Any] = Field(default_factory=dict)
    created_at: int


__all__ = [
    "ALL_QUEUES",
    "CONTROL_QUEUE",
    "EXPAND_SEGMENT_JOB",
    "PRIMARY_JOB",
    "PRIMARY_QUEUE",
    "SECONDARY_JOB",
    "SECONDARY_QUEUE",
    "ActivityType",
    "DeadLetterEntry",
    "DistributionMethod",
    "LifecyclePhase",
    "PrimaryJobPayload",
    "ReplayAudit",
    "ReplayOptions",
    "ReplayResult",
    "ReplaySelector",
    "ReplayStrategy",
    "SecondaryActivity",
    "SecondaryJobPayload",
    "Segment",
    "SegmentCompletedPayload",
    "Simulation",
]
