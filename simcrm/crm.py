"""
External collaborators consumed by the execution worker.

The worker only depends on the small protocols defined here. Concrete
collaborators are chosen at startup (see ``simcrm.runtime``) and passed in
through constructors.

- ``CrmClient.call(object_type, operation, properties)`` returns a ``CrmResult``
  or raises ``CrmError`` with the failure category already attached.
- ``PropertyNormalizer`` cleans a property bag before every create call.
- ``ContentGenerator`` fills in realistic field values per record/activity.
- ``CredentialProvider`` resolves the API token for a simulation owner; no
  token means the record is processed in dry-run mode.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from simcrm.domain.errors import CrmError
from simcrm.scheduling.rng import DeterministicRng


@dataclass(frozen=True)
class CrmResult:
    id: str
    raw: Dict[str, Any] = field(default_factory=dict)


class CrmClient(Protocol):
    def call(self, object_type: str, operation: str, properties: Dict[str, Any]) -> CrmResult: ...


class PropertyNormalizer(Protocol):
    def normalize(self, object_type: str, properties: Dict[str, Any]) -> Dict[str, Any]: ...


class ContentGenerator(Protocol):
    def generate(self, object_type: str, context: Dict[str, Any]) -> Dict[str, Any]: ...


class CredentialProvider(Protocol):
    def token_for(self, owner_id: Optional[str]) -> Optional[str]: ...


# Hook deciding whether a simulated call fails: (object_type, operation, properties) -> error or None.
FailureHook = Callable[[str, str, Dict[str, Any]], Optional[CrmError]]


class SimulatedCrmClient:
    """
    In-process CRM stand-in that hands out sequential ids.

    ``failure_hook`` lets callers inject typed failures; every call is recorded
    in ``calls`` for inspection.
    """

    def __init__(self, failure_hook: Optional[FailureHook] = None) -> None:
        self._failure_hook = failure_hook
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    def call(self, object_type: str, operation: str, properties: Dict[str, Any]) -> CrmResult:
        with self._lock:
            self.calls.append((object_type, operation, dict(properties)))
        if self._failure_hook is not None:
            error = self._failure_hook(object_type, operation, properties)
            if error is not None:
                raise error
        with self._lock:
            new_id = f"{object_type}-{next(self._ids)}"
        return CrmResult(id=new_id, raw={"id": new_id, "properties": dict(properties)})


class PassthroughNormalizer:
    """Drops empty values and lower-cases keys."""

    def normalize(self, object_type: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        return {str(k).lower(): v for k, v in properties.items() if v is not None and v != ""}


_FIRST_NAMES = ("Ana", "Ben", "Chloe", "Diego", "Emma", "Farid", "Grace", "Hugo", "Iris", "Jonas")
_LAST_NAMES = ("Almeida", "Brooks", "Chen", "Dubois", "Evans", "Fischer", "Garcia", "Haddad", "Ito")
_COMPANIES = ("Acme", "Globex", "Initech", "Umbrella", "Hooli", "Vandelay", "Stark")
_NOTE_LINES = (
    "Discussed current tooling and pain points.",
    "Shared pricing overview; follow-up requested.",
    "Prospect asked for a case study in their industry.",
    "Checked in after onboarding call.",
)


class TemplateContentGenerator:
    """Deterministic template-based field values keyed by simulation and record."""

    def generate(self, object_type: str, context: Dict[str, Any]) -> Dict[str, Any]:
        rng = DeterministicRng(
            f"content:{context.get('simulation_id')}:{context.get('record_index')}:{object_type}"
        )
        if object_type == "contact":
            first, last = rng.pick(_FIRST_NAMES), rng.pick(_LAST_NAMES)
            company = rng.pick(_COMPANIES)
            return {
                "firstname": first,
                "lastname": last,
                "email": f"{first}.{last}.{context.get('record_index')}@{company}.example".lower(),
                "company": company,
                "lifecyclestage": context.get("phase"),
            }
        if object_type == "note":
            return {"body": rng.pick(_NOTE_LINES)}
        if object_type == "call":
            return {"title": "Discovery call", "duration_ms": rng.next_int(2, 30) * 60_000}
        if object_type == "task":
            return {"subject": "Follow up with prospect", "priority": rng.pick(("LOW", "MEDIUM", "HIGH"))}
        if object_type == "ticket":
            return {"subject": "Post-sale issue", "priority": rng.pick(("LOW", "MEDIUM", "HIGH"))}
        return {}


class StaticCredentialProvider:
    def __init__(self, token: Optional[str]) -> None:
        self._token = token or None

    def token_for(self, owner_id: Optional[str]) -> Optional[str]:
        return self._token


__all__ = [
    "ContentGenerator",
    "CredentialProvider",
    "CrmClient",
    "CrmResult",
    "FailureHook",
    "PassthroughNormalizer",
    "PropertyNormalizer",
    "SimulatedCrmClient",
    "StaticCredentialProvider",
    "TemplateContentGenerator",
]
