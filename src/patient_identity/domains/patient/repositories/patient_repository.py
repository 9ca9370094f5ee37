"""
Patient repository - corpus access for the identity engine
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional
import logging

from patient_identity.core.database import BaseRepository, DatabaseManager
from ..models.patient import PatientRecord


logger = logging.getLogger(__name__)


class PatientRepository(ABC):
    """Storage collaborator for local patient records"""

    @abstractmethod
    async def list_all_patients(self, page: int = 0, page_size: int = 500) -> List[PatientRecord]:
        """
        Return one page of the corpus in a stable order.

        An empty page marks the end of the corpus.
        """

    @abstractmethod
    async def get_patient(self, patient_id: str) -> Optional[PatientRecord]:
        """Fetch a single patient by ID"""

    @abstractmethod
    async def save_patient(self, patient: PatientRecord) -> None:
        """Insert or replace a patient record"""


class InMemoryPatientRepository(PatientRepository):
    """Dictionary-backed repository used for tests and local runs"""

    def __init__(self, patients: Optional[Iterable[PatientRecord]] = None):
        self._patients: Dict[str, PatientRecord] = {}
        for patient in patients or []:
            self._patients[patient.id] = patient

    async def list_all_patients(self, page: int = 0, page_size: int = 500) -> List[PatientRecord]:
        ordered = [self._patients[key] for key in sorted(self._patients)]
        start = page * page_size
        return ordered[start:start + page_size]

    async def get_patient(self, patient_id: str) -> Optional[PatientRecord]:
        return self._patients.get(patient_id)

    async def save_patient(self, patient: PatientRecord) -> None:
        self._patients[patient.id] = patient


class MongoPatientRepository(BaseRepository, PatientRepository):
    """Repository for patient records stored in MongoDB"""

    def __init__(self, db_manager: DatabaseManager):
        super().__init__(db_manager, "patients")

    async def list_all_patients(self, page: int = 0, page_size: int = 500) -> List[PatientRecord]:
        docs = await self.find_many(
            {},
            projection={"_id": 0},
            sort=[("id", 1)],
            skip=page * page_size,
            limit=page_size
        )
        return [PatientRecord.model_validate(doc) for doc in docs]

    async def get_patient(self, patient_id: str) -> Optional[PatientRecord]:
        doc = await self.find_one({"id": patient_id}, {"_id": 0})
        return PatientRecord.model_validate(doc) if doc else None

    async def save_patient(self, patient: PatientRecord) -> None:
        await self.replace_one({"id": patient.id}, patient.to_dict(), upsert=True)
        logger.info(f"Saved patient record {patient.id}")
