"""
Utilities package for the CRM simulation engine.

Exports shared helpers for logging and time keeping.
Keep this package lightweight and free of domain-specific logic.
"""

from simcrm.utils.clock import ManualClock, system_clock
from simcrm.utils.logging import configure_logging, get_logger

__all__ = [
    "configure_logging",
    "get_logger",
    "ManualClock",
    "system_clock",
]
