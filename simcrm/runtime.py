"""
Startup wiring.

Selects the storage backend (``memory`` or ``postgres``) and the external
collaborators, then constructor-injects them into the planner, schedulers,
executor, worker pool and replay controller. Everything that runs a
simulation goes through a ``Runtime`` built here.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from simcrm.config import Settings, get_settings
from simcrm.crm import (
    ContentGenerator,
    CrmClient,
    PassthroughNormalizer,
    PropertyNormalizer,
    SimulatedCrmClient,
    StaticCredentialProvider,
    TemplateContentGenerator,
)
from simcrm.domain.scenarios import ScenarioRegistry
from simcrm.infrastructure.job_queue import InMemoryJobQueue, JobQueue, PostgresJobQueue
from simcrm.infrastructure.kv_store import InMemoryKeyValueStore, KeyValueStore, PostgresKeyValueStore
from simcrm.infrastructure.repository import (
    InMemorySimulationRepository,
    PostgresSimulationRepository,
    SimulationRepository,
)
from simcrm.resilience.rate_limiter import RateLimiter
from simcrm.scheduling.activities import ActivityScheduler
from simcrm.scheduling.segments import SegmentPlanner
from simcrm.utils.clock import Clock, system_clock
from simcrm.utils.logging import get_logger
from simcrm.worker.dead_letter import DeadLetterStore
from simcrm.worker.executor import JobExecutor
from simcrm.worker.pool import WorkerPool
from simcrm.worker.progress import ProgressTracker
from simcrm.worker.replay import ReplayController

log = get_logger(__name__)

Backends = Tuple[KeyValueStore, JobQueue, SimulationRepository]


@dataclass
class Runtime:
    settings: Settings
    clock: Clock
    store: KeyValueStore
    queue: JobQueue
    repository: SimulationRepository
    scenarios: ScenarioRegistry
    rate_limiter: RateLimiter
    progress: ProgressTracker
    planner: SegmentPlanner
    activities: ActivityScheduler
    dead_letters: DeadLetterStore
    replay: ReplayController
    executor: JobExecutor
    pool: WorkerPool
    crm_client: CrmClient

    def close(self) -> None:
        self.pool.close()


def _memory_backends(settings: Settings, clock: Clock) -> Backends:
    return (
        InMemoryKeyValueStore(clock),
        InMemoryJobQueue(clock, settings.job_lease_ms),
        InMemorySimulationRepository(clock),
    )


def _postgres_backends(settings: Settings, clock: Clock) -> Backends:
    from simcrm.infrastructure.db_factory import get_sync_pool

    pool = get_sync_pool()
    return (
        PostgresKeyValueStore(pool, clock),
        PostgresJobQueue(pool, clock, settings.job_lease_ms),
        PostgresSimulationRepository(pool, clock),
    )


def _backend_factories() -> Dict[str, Callable[[Settings, Clock], Backends]]:
    """Registry of available storage backends."""
    return {
        "memory": _memory_backends,
        "postgres": _postgres_backends,
    }


def available_backends() -> List[str]:
    return sorted(_backend_factories().keys())


def _resolve_backends(name: str, settings: Settings, clock: Clock) -> Backends:
    factories = _backend_factories()
    if name not in factories:
        raise ValueError(f"Unknown backend '{name}'. Available: {', '.join(factories)}")
    return factories[name](settings, clock)


def build_runtime(
    settings: Optional[Settings] = None,
    *,
    backend: Optional[str] = None,
    clock: Clock = system_clock,
    crm_client: Optional[CrmClient] = None,
    normalizer: Optional[PropertyNormalizer] = None,
    content: Optional[ContentGenerator] = None,
    scenarios: Optional[ScenarioRegistry] = None,
    backends: Optional[Backends] = None,
) -> Runtime:
    """
    Wire a complete runtime.

    Parameters
    ----------
    settings : Settings | None
        Defaults to ``get_settings()``.
    backend : str | None
        Storage backend name; defaults to ``settings.backend``.
    clock : Clock
        Millisecond clock shared by every component.
    crm_client, normalizer, content : optional
        External collaborators; simulated defaults otherwise.
    scenarios : ScenarioRegistry | None
        Defaults to a registry over the runtime's store.
    backends : tuple | None
        Pre-built (store, queue, repository), bypassing the registry.
    """
    settings = settings or get_settings()
    name = backend or settings.backend
    store, queue, repository = backends or _resolve_backends(name, settings, clock)
    scenarios = scenarios or ScenarioRegistry(store, clock)
    crm_client = crm_client or SimulatedCrmClient()
    token = settings.crm_api_token if settings.real_mode else None

    rate_limiter = RateLimiter(store, clock, settings)
    progress = ProgressTracker(store, repository, clock, settings)
    planner = SegmentPlanner(store, queue, repository, clock, settings)
    activities = ActivityScheduler(store, queue, rate_limiter, progress, settings)
    dead_letters = DeadLetterStore(store, clock, settings)
    replay = ReplayController(store, queue, dead_letters, repository, clock, settings)
    executor = JobExecutor(
        store,
        repository,
        rate_limiter,
        progress,
        planner,
        activities,
        scenarios,
        crm_client,
        normalizer or PassthroughNormalizer(),
        content or TemplateContentGenerator(),
        StaticCredentialProvider(token),
        settings,
    )
    pool = WorkerPool(queue, executor, dead_letters, settings)
    log.debug(
        "Runtime built",
        extra={"backend": name, "real_mode": settings.real_mode, "credential": bool(token)},
    )
    return Runtime(
        settings=settings,
        clock=clock,
        store=store,
        queue=queue,
        repository=repository,
        scenarios=scenarios,
        rate_limiter=rate_limiter,
        progress=progress,
        planner=planner,
        activities=activities,
        dead_letters=dead_letters,
        replay=replay,
        executor=executor,
        pool=pool,
        crm_client=crm_client,
    )


__all__ = ["Runtime", "available_backends", "build_runtime"]
