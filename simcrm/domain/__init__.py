"""
Domain package for the CRM simulation engine.

Exports the core domain models and error types shared by the scheduler,
workers and storage backends. Keep this package focused on data definitions
and validation concerns.
"""

from simcrm.domain.errors import CrmError, ErrorCategory, JobFailure
from simcrm.domain.models import Segment, Simulation, SimulationStatus

__all__ = [
    "CrmError",
    "ErrorCategory",
    "JobFailure",
    "Segment",
    "Simulation",
    "SimulationStatus",
]
