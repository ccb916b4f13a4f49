"""
Threaded worker pool consuming the simulation queues.

Each reserved job runs under a hard wall-clock timeout (primary and secondary
jobs have separate limits). A failure is classified; it is dead-lettered when
not retryable or out of attempts, otherwise rescheduled with the job's own
backoff or the per-type policy from ``simcrm.retry_config``.
"""

from __future__ import annotations

import concurrent.futures
import threading
from typing import Any, Dict, Optional, Sequence

from simcrm.config import Settings, get_settings
from simcrm.domain.errors import classify_exception
from simcrm.domain.models import ALL_QUEUES, PRIMARY_JOB, SECONDARY_JOB
from simcrm.infrastructure.job_queue import Job, JobQueue
from simcrm.retry_config import next_delay
from simcrm.utils.logging import get_logger
from simcrm.worker.dead_letter import DeadLetterStore, should_dead_letter
from simcrm.worker.executor import JobExecutor

log = get_logger(__name__)


def retry_type_for(job: Job) -> str:
    if job.name == PRIMARY_JOB:
        return "contact"
    if job.name == SECONDARY_JOB:
        return str(job.payload.get("activity_type") or "secondary")
    return "secondary"


class WorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        executor: JobExecutor,
        dead_letters: DeadLetterStore,
        settings: Optional[Settings] = None,
        queues: Sequence[str] = ALL_QUEUES,
    ) -> None:
        self._queue = queue
        self._executor = executor
        self._dead_letters = dead_letters
        self._settings = settings or get_settings()
        self._queues = tuple(queues)
        self._runner = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, self._settings.worker_concurrency), thread_name_prefix="sim-job"
        )
        self._stop = threading.Event()

    def _timeout_ms(self, job: Job) -> int:
        if job.name == PRIMARY_JOB:
            return self._settings.primary_job_timeout_ms
        return self._settings.secondary_job_timeout_ms

    def process(self, job: Job) -> Optional[Dict[str, Any]]:
        """Run one reserved job to completion, retry or dead letter."""
        timeout_ms = self._timeout_ms(job)
        future = self._runner.submit(self._executor.execute, job)
        try:
            try:
                result = future.result(timeout=timeout_ms / 1000)
            except concurrent.futures.TimeoutError as exc:
                future.cancel()
                raise TimeoutError(f"job exceeded {timeout_ms}ms") from exc
        except Exception as exc:
            self.handle_failure(job, exc)
            return None
        self._queue.complete(job)
        return result

    def handle_failure(self, job: Job, exc: BaseException) -> bool:
        """Route a failed job. Returns True when it was dead-lettered."""
        classification = classify_exception(exc)
        attempts = job.attempts_made + 1
        log.warning(
            "Job failed",
            extra={
                "event_id": "job.failed",
                "simulation_id": job.payload.get("simulation_id"),
                "job_id": job.id,
                "record_index": job.payload.get("record_index"),
                "override_version": job.payload.get("override_version"),
                "queue": job.queue,
                "category": classification.category.value,
                "attempt": attempts,
                "max_attempts": job.max_attempts,
                "error": classification.message,
            },
        )
        if should_dead_letter(classification, attempts, job.max_attempts):
            self._queue.fail(job, classification.message)
            self._dead_letters.capture(job, classification, attempts)
            return True
        delay = job.delay_for_retry(attempts - 1)
        if delay is None:
            delay = next_delay(retry_type_for(job), attempts - 1)
        self._queue.retry(job, delay, classification.message)
        return False

    def run_once(self) -> int:
        """Reserve and process at most one ready job per queue."""
        processed = 0
        for name in self._queues:
            job = self._queue.reserve(name)
            if job is None:
                continue
            self.process(job)
            processed += 1
        return processed

    def drain(self, max_jobs: Optional[int] = None) -> int:
        """Process ready jobs until none are left (or ``max_jobs`` is reached)."""
        total = 0
        while max_jobs is None or total < max_jobs:
            processed = self.run_once()
            if processed == 0:
                break
            total += processed
        return total

    def _loop(self) -> None:
        idle_s = self._settings.worker_poll_interval_ms / 1000
        while not self._stop.is_set():
            if self.run_once() == 0:
                self._stop.wait(idle_s)

    def run(self, threads: Optional[int] = None) -> None:
        """Block running ``threads`` polling loops until ``stop`` is called."""
        count = threads or self._settings.worker_concurrency
        workers = [
            threading.Thread(target=self._loop, name=f"sim-worker-{n}", daemon=True) for n in range(count)
        ]
        log.info("Worker pool started", extra={"threads": count, "queues": list(self._queues)})
        for worker in workers:
            worker.start()
        try:
            while any(w.is_alive() for w in workers):
                for worker in workers:
                    worker.join(timeout=0.5)
        finally:
            self._stop.set()
            log.info("Worker pool stopped")

    def stop(self) -> None:
        self._stop.set()

    def close(self) -> None:
        self.stop()
        self._runner.shutdown(wait=False)
        self._executor.close()


__all__ = ["WorkerPool", "retry_type_for"]
