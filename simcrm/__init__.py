"""
CRM simulation engine - scheduling core for synthetic CRM record generation.

This package turns a requested number of records over a time window into a
stream of delayed jobs and executes them against a CRM collaborator:

- Deterministic temporal distributions and per-record random streams
- Segment planning with lazy, claim-once expansion
- Token-bucket rate limiting, cooldown and a circuit breaker
- Secondary activity scheduling with budgets, caps and adaptive thinning
- Idempotent workers, a dead-letter queue and an audited replay controller

Storage is pluggable: in-memory backends for development and tests, Postgres
(psycopg) for shared, durable state.
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from simcrm.config import Settings, get_settings
from simcrm.orchestrator import Orchestrator
from simcrm.runtime import Runtime, available_backends, build_runtime
from simcrm.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "Settings",
    "get_settings",
    # Wiring and operations
    "Orchestrator",
    "Runtime",
    "available_backends",
    "build_runtime",
    # Logging
    "configure_logging",
    "get_logger",
]
