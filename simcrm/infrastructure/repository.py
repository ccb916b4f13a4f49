"""
Durable storage for simulation records and replay audit rows.

The simulation row is the relational source of truth for status, window,
effective total and the scenario snapshot taken at start. Processed counts are
flushed here periodically from the fast key-value counter.
"""

from __future__ import annotations

import copy
import threading
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from simcrm.domain.errors import SimulationNotFound
from simcrm.domain.models import ReplayAudit, Simulation, SimulationStatus
from simcrm.infrastructure.db_factory import transient_retry
from simcrm.utils.clock import Clock, system_clock

# Columns callers may change through ``update_status``.
_UPDATABLE = frozenset(
    {
        "effective_total",
        "records_processed",
        "override_version",
        "overrides_hash",
        "scenario_snapshot",
        "finished_at",
    }
)


@runtime_checkable
class SimulationRepository(Protocol):
    def get(self, simulation_id: int) -> Optional[Simulation]: ...

    def create(
        self,
        owner_id: str,
        scenario_id: str,
        total_records: int,
        start_time: int,
        end_time: int,
        distribution_method: str = "linear",
    ) -> Simulation: ...

    def update_status(self, simulation_id: int, status: SimulationStatus, **fields: Any) -> Simulation: ...

    def set_processed(self, simulation_id: int, processed: int) -> None: ...

    def list_simulations(self, limit: int = 50) -> List[Simulation]: ...

    def insert_replay_audit(self, audit: ReplayAudit) -> None: ...

    def list_replay_audits(self, simulation_id: int) -> List[ReplayAudit]: ...


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - _UPDATABLE
    if unknown:
        raise ValueError(f"Cannot update simulation columns: {sorted(unknown)}")


class InMemorySimulationRepository:
    def __init__(self, clock: Clock = system_clock) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._rows: Dict[int, Simulation] = {}
        self._audits: List[ReplayAudit] = []
        self._next_id = 1

    def get(self, simulation_id: int) -> Optional[Simulation]:
        with self._lock:
            row = self._rows.get(simulation_id)
            return row.model_copy(deep=True) if row is not None else None

    def create(
        self,
        owner_id: str,
        scenario_id: str,
        total_records: int,
        start_time: int,
        end_time: int,
        distribution_method: str = "linear",
    ) -> Simulation:
        now = self._clock()
        with self._lock:
            sim = Simulation(
                id=self._next_id,
                owner_id=owner_id,
                scenario_id=scenario_id,
                distribution_method=distribution_method,
                total_records=total_records,
                start_time=start_time,
                end_time=end_time,
                created_at=now,
                updated_at=now,
            )
            self._rows[sim.id] = sim
            self._next_id += 1
            return sim.model_copy(deep=True)

    def update_status(self, simulation_id: int, status: SimulationStatus, **fields: Any) -> Simulation:
        _check_fields(fields)
        with self._lock:
            row = self._rows.get(simulation_id)
            if row is None:
                raise SimulationNotFound(simulation_id)
            updated = row.model_copy(
                update={**copy.deepcopy(fields), "status": status, "updated_at": self._clock()}
            )
            self._rows[simulation_id] = updated
            return updated.model_copy(deep=True)

    def set_processed(self, simulation_id: int, processed: int) -> None:
        with self._lock:
            row = self._rows.get(simulation_id)
            if row is None:
                raise SimulationNotFound(simulation_id)
            self._rows[simulation_id] = row.model_copy(
                update={"records_processed": processed, "updated_at": self._clock()}
            )

    def list_simulations(self, limit: int = 50) -> List[Simulation]:
        with self._lock:
            rows = sorted(self._rows.values(), key=lambda s: s.id, reverse=True)[:limit]
            return [row.model_copy(deep=True) for row in rows]

    def insert_replay_audit(self, audit: ReplayAudit) -> None:
        with self._lock:
            self._audits.append(audit.model_copy(deep=True))

    def list_replay_audits(self, simulation_id: int) -> List[ReplayAudit]:
        with self._lock:
            return [a.model_copy(deep=True) for a in self._audits if a.simulation_id == simulation_id]


_SIM_COLUMNS = (
    "id, owner_id, scenario_id, distribution_method, total_records, effective_total, "
    "start_time, end_time, status, records_processed, override_version, overrides_hash, "
    "scenario_snapshot, created_at, updated_at, finished_at"
)


class PostgresSimulationRepository:
    """Repository over the ``simulations`` and ``dlq_replay_audit`` tables."""

    def __init__(self, pool: ConnectionPool, clock: Clock = system_clock) -> None:
        self._pool = pool
        self._clock = clock

    @transient_retry
    def _fetch(self, sql: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(sql, params)
                return cur.fetchall() if cur.description else []

    def get(self, simulation_id: int) -> Optional[Simulation]:
        rows = self._fetch(f"SELECT {_SIM_COLUMNS} FROM simulations WHERE id = %(id)s", {"id": simulation_id})
        return Simulation.model_validate(rows[0]) if rows else None

    def create(
        self,
        owner_id: str,
        scenario_id: str,
        total_records: int,
        start_time: int,
        end_time: int,
        distribution_method: str = "linear",
    ) -> Simulation:
        rows = self._fetch(
            f"""
            INSERT INTO simulations (owner_id, scenario_id, distribution_method, total_records,
                                     start_time, end_time, status, created_at, updated_at)
            VALUES (%(owner)s, %(scenario)s, %(method)s, %(total)s, %(start)s, %(end)s,
                    %(status)s, %(now)s, %(now)s)
            RETURNING {_SIM_COLUMNS}
            """,
            {
                "owner": owner_id,
                "scenario": scenario_id,
                "method": distribution_method,
                "total": total_records,
                "start": start_time,
                "end": end_time,
                "status": SimulationStatus.QUEUED.value,
                "now": self._clock(),
            },
        )
        return Simulation.model_validate(rows[0])

    def update_status(self, simulation_id: int, status: SimulationStatus, **fields: Any) -> Simulation:
        _check_fields(fields)
        params: Dict[str, Any] = {"id": simulation_id, "status": status.value, "now": self._clock()}
        assignments = ["status = %(status)s", "updated_at = %(now)s"]
        for column, value in sorted(fields.items()):
            assignments.append(f"{column} = %({column})s")
            params[column] = Jsonb(value) if column == "scenario_snapshot" and value is not None else value
        rows = self._fetch(
            f"UPDATE simulations SET {', '.join(assignments)} WHERE id = %(id)s RETURNING {_SIM_COLUMNS}",
            params,
        )
        if not rows:
            raise SimulationNotFound(simulation_id)
        return Simulation.model_validate(rows[0])

    def set_processed(self, simulation_id: int, processed: int) -> None:
        self._fetch(
            "UPDATE simulations SET records_processed = %(processed)s, updated_at = %(now)s WHERE id = %(id)s",
            {"id": simulation_id, "processed": processed, "now": self._clock()},
        )

    def list_simulations(self, limit: int = 50) -> List[Simulation]:
        rows = self._fetch(
            f"SELECT {_SIM_COLUMNS} FROM simulations ORDER BY id DESC LIMIT %(limit)s", {"limit": limit}
        )
        return [Simulation.model_validate(row) for row in rows]

    def insert_replay_audit(self, audit: ReplayAudit) -> None:
        self._fetch(
            """
            INSERT INTO dlq_replay_audit (id, actor, simulation_id, dry_run, total_candidates,
                                          selected_count, replayed_count, filters, created_at)
            VALUES (%(id)s, %(actor)s, %(simulation_id)s, %(dry_run)s, %(total_candidates)s,
                    %(selected_count)s, %(replayed_count)s, %(filters)s, %(created_at)s)
            """,
            {**audit.model_dump(), "filters": Jsonb(audit.filters)},
        )

    def list_replay_audits(self, simulation_id: int) -> List[ReplayAudit]:
        rows = self._fetch(
            """
            SELECT id, actor, simulation_id, dry_run, total_candidates, selected_count,
                   replayed_count, filters, created_at
              FROM dlq_replay_audit WHERE simulation_id = %(id)s ORDER BY created_at
            """,
            {"id": simulation_id},
        )
        return [ReplayAudit.model_validate(row) for row in rows]


__all__ = ["InMemorySimulationRepository", "PostgresSimulationRepository", "SimulationRepository"]
