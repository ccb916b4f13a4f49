"""
Failure taxonomy and exception types.

The CRM collaborator raises ``CrmError`` carrying an ``ErrorCategory`` directly,
so the worker never has to infer a category from message text. Anything else
that escapes a job is mapped through ``classify_exception``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    TIMEOUT = "timeout"
    AUTH = "auth"
    VALIDATION = "validation"
    UNKNOWN = "unknown"

    @property
    def is_retryable(self) -> bool:
        return self not in (ErrorCategory.AUTH, ErrorCategory.VALIDATION)


@dataclass(frozen=True)
class Classification:
    category: ErrorCategory
    retryable: bool
    message: str = ""


class CrmError(Exception):
    """Typed failure returned by the external CRM client."""

    def __init__(
        self,
        category: ErrorCategory,
        message: str = "",
        status: Optional[int] = None,
        retry_after_ms: Optional[int] = None,
    ) -> None:
        super().__init__(message or category.value)
        self.category = category
        self.status = status
        self.retry_after_ms = retry_after_ms

    @classmethod
    def from_status(cls, status: int, message: str = "", retry_after_ms: Optional[int] = None) -> "CrmError":
        return cls(category_for_status(status), message or f"HTTP {status}", status, retry_after_ms)


class JobFailure(Exception):
    """
    Raised by the executor once bookkeeping is done so the worker pool can
    apply retry or dead-letter routing.
    """

    def __init__(self, category: ErrorCategory, message: str = "") -> None:
        super().__init__(message or category.value)
        self.category = category


class SimulationNotFound(LookupError):
    pass


class InvalidSimulationState(RuntimeError):
    pass


class ReplayValidationError(ValueError):
    pass


class ScenarioUpdateInProgress(RuntimeError):
    """Another operator holds the scenario's update lock."""


class ReplayRateLimited(RuntimeError):
    def __init__(self, retry_after_ms: int) -> None:
        super().__init__(f"replay rate limited; retry after {retry_after_ms}ms")
        self.retry_after_ms = retry_after_ms


def category_for_status(status: Optional[int]) -> ErrorCategory:
    if status is None:
        return ErrorCategory.NETWORK
    if status == 429:
        return ErrorCategory.RATE_LIMIT
    if status in (401, 403):
        return ErrorCategory.AUTH
    if status in (400, 422):
        return ErrorCategory.VALIDATION
    if status in (408, 504):
        return ErrorCategory.TIMEOUT
    if 500 <= status < 600:
        return ErrorCategory.NETWORK
    return ErrorCategory.UNKNOWN


def classify_exception(exc: Optional[BaseException]) -> Classification:
    """Map any exception onto the taxonomy; unknown errors stay retryable."""
    if exc is None:
        category = ErrorCategory.UNKNOWN
    elif isinstance(exc, (CrmError, JobFailure)):
        category = exc.category
    elif isinstance(exc, TimeoutError):
        category = ErrorCategory.TIMEOUT
    elif isinstance(exc, (ConnectionError, OSError)):
        category = ErrorCategory.NETWORK
    else:
        category = ErrorCategory.UNKNOWN
    return Classification(
        category=category,
        retryable=category.is_retryable,
        message=str(exc) if exc is not None else "",
    )


__all__ = [
    "Classification",
    "CrmError",
    "ErrorCategory",
    "InvalidSimulationState",
    "JobFailure",
    "ReplayRateLimited",
    "ReplayValidationError",
    "ScenarioUpdateInProgress",
    "SimulationNotFound",
    "category_for_status",
    "classify_exception",
]
