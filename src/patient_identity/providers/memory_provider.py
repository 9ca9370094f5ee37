"""
In-Memory External System Client

Serves candidate records registered per system. Used for local runs and tests
where no external system is reachable.
"""

from typing import Dict, Iterable, List, Optional
import logging

from patient_identity.core.exceptions import ExternalSystemError
from patient_identity.domains.patient.models.patient import PatientRecord
from patient_identity.domains.reconciliation.models.reconciliation import (
    ExternalCandidate,
    ExternalSystem
)
from .base_provider import BaseExternalSystemClient

logger = logging.getLogger(__name__)


class InMemoryExternalSystemClient(BaseExternalSystemClient):
    """
    External system client backed by a dictionary

    Every registered record of a system is returned as a candidate; the
    reconciler decides which of them match.
    """

    def __init__(self, candidates: Optional[Dict[str, Iterable[ExternalCandidate]]] = None):
        super().__init__()
        self._candidates: Dict[str, List[ExternalCandidate]] = {}
        self._unavailable: Dict[str, str] = {}
        for system_id, items in (candidates or {}).items():
            self._candidates[system_id] = list(items)

    def add_candidate(self, system_id: str, external_id: str, record: PatientRecord) -> None:
        self._candidates.setdefault(system_id, []).append(
            ExternalCandidate(external_id=external_id, record=record)
        )

    def mark_unavailable(self, system_id: str, reason: str = "system unavailable") -> None:
        """Make every lookup against `system_id` fail"""
        self._unavailable[system_id] = reason

    async def lookup(self, system: ExternalSystem, patient: PatientRecord) -> List[ExternalCandidate]:
        self.total_calls += 1

        if system.id in self._unavailable:
            self.failed_calls += 1
            raise ExternalSystemError(system.id, self._unavailable[system.id])

        candidates = list(self._candidates.get(system.id, []))
        logger.debug(f"In-memory system {system.id} returned {len(candidates)} candidates")
        return candidates
