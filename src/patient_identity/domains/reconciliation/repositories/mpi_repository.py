"""
Master Patient Index repository - versioned storage for MPI entries
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional
import logging

from pymongo.errors import DuplicateKeyError

from patient_identity.core.database import BaseRepository, DatabaseManager
from patient_identity.core.exceptions import MergeConflictError
from ..models.reconciliation import MasterPatientIndex


logger = logging.getLogger(__name__)


class MasterPatientIndexRepository(ABC):
    """
    Storage collaborator for MPI entries.

    Writes are optimistic: save() only succeeds when the stored version still
    equals `expected_version` (0 for an entry that does not exist yet).
    """

    @abstractmethod
    async def get(self, patient_id: str) -> Optional[MasterPatientIndex]:
        """Fetch the MPI entry for a patient"""

    @abstractmethod
    async def save(self, mpi: MasterPatientIndex, expected_version: int) -> MasterPatientIndex:
        """
        Store `mpi` with version expected_version + 1 and return the stored entry.

        Raises MergeConflictError when the stored version has moved on.
        """


class InMemoryMasterPatientIndexRepository(MasterPatientIndexRepository):
    """Dictionary-backed repository used for tests and local runs"""

    def __init__(self):
        self._entries: Dict[str, MasterPatientIndex] = {}

    async def get(self, patient_id: str) -> Optional[MasterPatientIndex]:
        return self._entries.get(patient_id)

    async def save(self, mpi: MasterPatientIndex, expected_version: int) -> MasterPatientIndex:
        current = self._entries.get(mpi.patient_id)
        current_version = current.version if current else 0
        if current_version != expected_version:
            raise MergeConflictError(
                mpi.patient_id,
                f"expected version {expected_version}, found {current_version}"
            )

        stored = mpi.model_copy(update={"version": expected_version + 1})
        self._entries[mpi.patient_id] = stored
        return stored


class MongoMasterPatientIndexRepository(BaseRepository, MasterPatientIndexRepository):
    """Repository for MPI entries stored in MongoDB"""

    def __init__(self, db_manager: DatabaseManager):
        super().__init__(db_manager, "master_patient_index")

    async def get(self, patient_id: str) -> Optional[MasterPatientIndex]:
        doc = await self.find_one({"patient_id": patient_id}, {"_id": 0})
        return MasterPatientIndex.model_validate(doc) if doc else None

    async def save(self, mpi: MasterPatientIndex, expected_version: int) -> MasterPatientIndex:
        stored = mpi.model_copy(update={"version": expected_version + 1})
        document = stored.model_dump(mode="json")

        if expected_version == 0:
            try:
                await self.insert_one(document)
            except DuplicateKeyError as e:
                raise MergeConflictError(mpi.patient_id, "entry was created concurrently") from e
            return stored

        result = await self.find_one_and_replace(
            {"patient_id": mpi.patient_id, "version": expected_version},
            document
        )
        if result is None:
            raise MergeConflictError(
                mpi.patient_id,
                f"expected version {expected_version} is no longer current"
            )
        return stored
