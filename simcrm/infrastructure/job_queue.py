"""
Durable delayed-job queue.

Jobs carry their own attempt ceiling and backoff schedule so that replayed jobs
can run under a different policy from freshly scheduled ones. A job is handed
to one worker at a time by ``reserve``; the worker then calls exactly one of
``complete``, ``retry`` or ``fail``. Reserving takes a lease: a job still active
when its lease runs out (the worker died) is handed out again, counting as an
attempt.

Backends:

- ``InMemoryJobQueue``: heap ordered by run-at time, for local runs and tests.
- ``PostgresJobQueue``: the ``jobs`` table, reserving with
  ``FOR UPDATE SKIP LOCKED`` so concurrent workers never share a job.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from simcrm.infrastructure.db_factory import transient_retry
from simcrm.utils.clock import Clock, system_clock

QUEUED = "queued"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"

DEFAULT_LEASE_MS = 60_000
LEASE_EXPIRED = "lease expired"


@dataclass
class Job:
    id: str
    queue: str
    name: str
    payload: Dict[str, Any]
    run_at: int
    max_attempts: int = 1
    backoff_ms: List[int] = field(default_factory=list)
    attempts_made: int = 0
    state: str = QUEUED
    created_at: int = 0
    last_error: Optional[str] = None
    locked_until: Optional[int] = None

    def delay_for_retry(self, retry_number: int) -> Optional[int]:
        """Job-local backoff for retry ``retry_number`` (0-based), if one is set."""
        if not self.backoff_ms:
            return None
        return self.backoff_ms[min(retry_number, len(self.backoff_ms) - 1)]


@runtime_checkable
class JobQueue(Protocol):
    def add(
        self,
        queue: str,
        name: str,
        payload: Dict[str, Any],
        delay_ms: int = 0,
        max_attempts: int = 1,
        backoff_ms: Sequence[int] = (),
        job_id: Optional[str] = None,
    ) -> Job: ...

    def reserve(self, queue: str) -> Optional[Job]: ...

    def complete(self, job: Job) -> None: ...

    def retry(self, job: Job, delay_ms: int, error: str = "") -> None: ...

    def fail(self, job: Job, error: str) -> None: ...

    def waiting_count(self, queue: str) -> int: ...

    def delayed_count(self, queue: str) -> int: ...

    def pending(self, queue: str) -> List[Job]: ...

    def remove(self, job_id: str) -> bool: ...


def _new_job_id() -> str:
    return uuid.uuid4().hex


class InMemoryJobQueue:
    """Process-local queue. ``pending`` returns waiting and delayed jobs."""

    def __init__(self, clock: Clock = system_clock, lease_ms: int = DEFAULT_LEASE_MS) -> None:
        self._clock = clock
        self._lease_ms = lease_ms
        self._lock = threading.Lock()
        self._heaps: Dict[str, List[tuple]] = {}
        self._jobs: Dict[str, Job] = {}
        self._seq = itertools.count()

    def _push(self, job: Job) -> None:
        heapq.heappush(self._heaps.setdefault(job.queue, []), (job.run_at, next(self._seq), job.id))

    def add(
        self,
        queue: str,
        name: str,
        payload: Dict[str, Any],
        delay_ms: int = 0,
        max_attempts: int = 1,
        backoff_ms: Sequence[int] = (),
        job_id: Optional[str] = None,
    ) -> Job:
        now = self._clock()
        job = Job(
            id=job_id or _new_job_id(),
            queue=queue,
            name=name,
            payload=dict(payload),
            run_at=now + max(0, int(delay_ms)),
            max_attempts=max(1, int(max_attempts)),
            backoff_ms=list(backoff_ms),
            created_at=now,
        )
        with self._lock:
            self._jobs[job.id] = job
            self._push(job)
        return job

    def _reclaim_expired(self, queue: str, now: int) -> None:
        for job in self._jobs.values():
            if job.queue != queue or job.state != ACTIVE:
                continue
            if job.locked_until is not None and job.locked_until <= now:
                job.attempts_made += 1
                job.last_error = LEASE_EXPIRED
                job.state = QUEUED
                job.locked_until = None
                self._push(job)

    def reserve(self, queue: str) -> Optional[Job]:
        now = self._clock()
        with self._lock:
            self._reclaim_expired(queue, now)
            heap = self._heaps.get(queue, [])
            while heap and heap[0][0] <= now:
                _, _, job_id = heapq.heappop(heap)
                job = self._jobs.get(job_id)
                # stale heap entry (removed or rescheduled)
                if job is None or job.state != QUEUED or job.queue != queue:
                    continue
                job.state = ACTIVE
                job.locked_until = now + self._lease_ms
                return job
            return None

    def complete(self, job: Job) -> None:
        with self._lock:
            job.state = COMPLETED
            self._jobs.pop(job.id, None)

    def retry(self, job: Job, delay_ms: int, error: str = "") -> None:
        with self._lock:
            job.attempts_made += 1
            job.last_error = error or job.last_error
            job.state = QUEUED
            job.locked_until = None
            job.run_at = self._clock() + max(0, int(delay_ms))
            self._jobs[job.id] = job
            self._push(job)

    def fail(self, job: Job, error: str) -> None:
        with self._lock:
            job.attempts_made += 1
            job.last_error = error
            job.state = FAILED
            self._jobs.pop(job.id, None)

    def _queued(self, queue: str) -> List[Job]:
        return [j for j in self._jobs.values() if j.queue == queue and j.state == QUEUED]

    def waiting_count(self, queue: str) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for j in self._queued(queue) if j.run_at <= now)

    def delayed_count(self, queue: str) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for j in self._queued(queue) if j.run_at > now)

    def pending(self, queue: str) -> List[Job]:
        with self._lock:
            return sorted(self._queued(queue), key=lambda j: (j.run_at, j.created_at))

    def remove(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != QUEUED:
                return False
            del self._jobs[job_id]
            return True


_JOB_COLUMNS = (
    "id, queue, name, payload, run_at, max_attempts, backoff_ms, "
    "attempts_made, state, created_at, last_error, locked_until"
)


def _row_to_job(row: Dict[str, Any]) -> Job:
    return Job(
        id=row["id"],
        queue=row["queue"],
        name=row["name"],
        payload=row["payload"] or {},
        run_at=int(row["run_at"]),
        max_attempts=int(row["max_attempts"]),
        backoff_ms=list(row["backoff_ms"] or []),
        attempts_made=int(row["attempts_made"]),
        state=row["state"],
        created_at=int(row["created_at"]),
        last_error=row["last_error"],
        locked_until=int(row["locked_until"]) if row.get("locked_until") is not None else None,
    )


class PostgresJobQueue:
    """``JobQueue`` stored in the ``jobs`` table."""

    def __init__(self, pool: ConnectionPool, clock: Clock = system_clock, lease_ms: int = DEFAULT_LEASE_MS) -> None:
        self._pool = pool
        self._clock = clock
        self._lease_ms = lease_ms

    @transient_retry
    def _fetch(self, sql: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(sql, params)
                return cur.fetchall() if cur.description else []

    @transient_retry
    def _execute(self, sql: str, params: Dict[str, Any]) -> int:
        with self._pool.connection() as conn:
            return conn.execute(sql, params).rowcount

    def add(
        self,
        queue: str,
        name: str,
        payload: Dict[str, Any],
        delay_ms: int = 0,
        max_attempts: int = 1,
        backoff_ms: Sequence[int] = (),
        job_id: Optional[str] = None,
    ) -> Job:
        now = self._clock()
        rows = self._fetch(
            f"""
            INSERT INTO jobs (id, queue, name, payload, run_at, max_attempts, backoff_ms,
                              attempts_made, state, created_at)
            VALUES (%(id)s, %(queue)s, %(name)s, %(payload)s, %(run_at)s, %(max_attempts)s,
                    %(backoff)s, 0, '{QUEUED}', %(now)s)
            RETURNING {_JOB_COLUMNS}
            """,
            {
                "id": job_id or _new_job_id(),
                "queue": queue,
                "name": name,
                "payload": Jsonb(payload),
                "run_at": now + max(0, int(delay_ms)),
                "max_attempts": max(1, int(max_attempts)),
                "backoff": Jsonb(list(backoff_ms)),
                "now": now,
            },
        )
        return _row_to_job(rows[0])

    def reserve(self, queue: str) -> Optional[Job]:
        now = self._clock()
        # SET expressions see the row before the update, so an expired lease is detectable
        rows = self._fetch(
            f"""
            UPDATE jobs
               SET state = '{ACTIVE}',
                   locked_until = %(lease)s,
                   attempts_made = attempts_made + CASE WHEN state = '{ACTIVE}' THEN 1 ELSE 0 END,
                   last_error = CASE WHEN state = '{ACTIVE}' THEN %(expired)s ELSE last_error END
             WHERE id = (
                SELECT id FROM jobs
                 WHERE queue = %(queue)s
                   AND ((state = '{QUEUED}' AND run_at <= %(now)s)
                        OR (state = '{ACTIVE}' AND locked_until <= %(now)s))
                 ORDER BY run_at, created_at
                 FOR UPDATE SKIP LOCKED
                 LIMIT 1
             )
            RETURNING {_JOB_COLUMNS}
            """,
            {"queue": queue, "now": now, "lease": now + self._lease_ms, "expired": LEASE_EXPIRED},
        )
        return _row_to_job(rows[0]) if rows else None

    def complete(self, job: Job) -> None:
        job.state = COMPLETED
        self._execute(
            f"UPDATE jobs SET state = '{COMPLETED}', finished_at = %(now)s WHERE id = %(id)s",
            {"id": job.id, "now": self._clock()},
        )

    def retry(self, job: Job, delay_ms: int, error: str = "") -> None:
        job.attempts_made += 1
        job.state = QUEUED
        job.locked_until = None
        job.run_at = self._clock() + max(0, int(delay_ms))
        job.last_error = error or job.last_error
        self._execute(
            f"""
            UPDATE jobs SET state = '{QUEUED}', attempts_made = %(attempts)s,
                   run_at = %(run_at)s, last_error = %(error)s, locked_until = NULL
             WHERE id = %(id)s
            """,
            {"id": job.id, "attempts": job.attempts_made, "run_at": job.run_at, "error": job.last_error},
        )

    def fail(self, job: Job, error: str) -> None:
        job.attempts_made += 1
        job.state = FAILED
        job.last_error = error
        self._execute(
            f"""
            UPDATE jobs SET state = '{FAILED}', attempts_made = %(attempts)s,
                   last_error = %(error)s, finished_at = %(now)s
             WHERE id = %(id)s
            """,
            {"id": job.id, "attempts": job.attempts_made, "error": error, "now": self._clock()},
        )

    def waiting_count(self, queue: str) -> int:
        rows = self._fetch(
            f"SELECT count(*) AS n FROM jobs WHERE queue = %(queue)s AND state = '{QUEUED}' AND run_at <= %(now)s",
            {"queue": queue, "now": self._clock()},
        )
        return int(rows[0]["n"])

    def delayed_count(self, queue: str) -> int:
        rows = self._fetch(
            f"SELECT count(*) AS n FROM jobs WHERE queue = %(queue)s AND state = '{QUEUED}' AND run_at > %(now)s",
            {"queue": queue, "now": self._clock()},
        )
        return int(rows[0]["n"])

    def pending(self, queue: str) -> List[Job]:
        rows = self._fetch(
            f"""
            SELECT {_JOB_COLUMNS} FROM jobs
             WHERE queue = %(queue)s AND state = '{QUEUED}'
             ORDER BY run_at, created_at
            """,
            {"queue": queue},
        )
        return [_row_to_job(row) for row in rows]

    def remove(self, job_id: str) -> bool:
        return bool(
            self._execute(
                f"DELETE FROM jobs WHERE id = %(id)s AND state = '{QUEUED}'",
                {"id": job_id},
            )
        )


__all__ = ["DEFAULT_LEASE_MS", "LEASE_EXPIRED", "InMemoryJobQueue", "Job", "JobQueue", "PostgresJobQueue"]
