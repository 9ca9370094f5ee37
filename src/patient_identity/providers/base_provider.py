"""
Base External System Client Interface

Defines the standard interface that all external system clients must implement.
This keeps the reconciler independent of how a system is reached.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List
import logging

from patient_identity.core.exceptions import ExternalSystemError
from patient_identity.domains.patient.models.patient import PatientRecord
from patient_identity.domains.reconciliation.models.reconciliation import (
    ExternalCandidate,
    ExternalSystem
)

logger = logging.getLogger(__name__)


class BaseExternalSystemClient(ABC):
    """
    Abstract base class for all external system clients

    A client looks a local patient up in one external system and returns the
    records that system considers candidates. Scoring is left to the reconciler.
    """

    def __init__(self):
        self.client_name = self.__class__.__name__.replace('ExternalSystemClient', '').lower()
        self._initialized = False

        # Statistics
        self.total_calls = 0
        self.failed_calls = 0

    async def initialize(self) -> None:
        """
        Initialize the client

        Clients holding connections or sessions open them here.
        """
        self._initialized = True

    @abstractmethod
    async def lookup(self, system: ExternalSystem, patient: PatientRecord) -> List[ExternalCandidate]:
        """
        Look a patient up in one external system

        Args:
            system: Catalog entry for the system to query
            patient: Validated local patient record

        Returns:
            Candidate records, possibly empty

        Raises:
            ExternalSystemError: If the system cannot be reached or answers badly
        """
        pass

    def get_stats(self) -> Dict[str, Any]:
        """
        Get client statistics

        Returns:
            Dictionary with client statistics
        """
        return {
            'client': self.client_name,
            'initialized': self._initialized,
            'total_calls': self.total_calls,
            'failed_calls': self.failed_calls
        }

    async def cleanup(self) -> None:
        """
        Cleanup client resources

        This method should close any connections or sessions
        when the service is shutting down.
        """
        self._initialized = False

    def _parse_candidates(self, system: ExternalSystem, payload: Any) -> List[ExternalCandidate]:
        """
        Convert a raw system response into candidates

        Accepts either a list of candidates or an object with a 'candidates' list.
        Each candidate carries 'externalId' (or 'external_id') and 'record'.

        Raises:
            ExternalSystemError: If the payload is not in the expected shape
        """
        if isinstance(payload, dict):
            payload = payload.get('candidates', [])
        if not isinstance(payload, list):
            raise ExternalSystemError(system.id, "response is not a candidate list")

        candidates = []
        for item in payload:
            try:
                candidates.append(ExternalCandidate.model_validate(item))
            except Exception as e:
                raise ExternalSystemError(system.id, f"malformed candidate: {e}") from e
        return candidates
