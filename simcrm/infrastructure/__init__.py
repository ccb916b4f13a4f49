"""
Infrastructure package for the CRM simulation engine.

Centralizes storage concerns: the Postgres pool factory, the key-value store,
the delayed-job queue and the simulation repository. Keep this layer focused
on I/O and resource management, decoupled from scheduling logic.
"""

from simcrm.infrastructure.db_factory import get_sync_connection, get_sync_pool
from simcrm.infrastructure.job_queue import InMemoryJobQueue, Job, PostgresJobQueue
from simcrm.infrastructure.kv_store import InMemoryKeyValueStore, PostgresKeyValueStore

__all__ = [
    "get_sync_connection",
    "get_sync_pool",
    "InMemoryJobQueue",
    "InMemoryKeyValueStore",
    "Job",
    "PostgresJobQueue",
    "PostgresKeyValueStore",
]
