"""
Merge history repository - append-only log of patient merges
"""

from abc import ABC, abstractmethod
from typing import Iterable, List, Set
import logging

from patient_identity.core.database import BaseRepository, DatabaseManager
from ..models.review import MergeHistoryEntry


logger = logging.getLogger(__name__)


class MergeHistoryRepository(ABC):
    """Storage collaborator for merge history entries"""

    @abstractmethod
    async def append(self, entry: MergeHistoryEntry) -> None:
        """Record a completed merge"""

    @abstractmethod
    async def list_for_patient(self, patient_id: str) -> List[MergeHistoryEntry]:
        """Entries where the patient is the target or a source, newest first"""

    @abstractmethod
    async def merged_away(self, patient_ids: Iterable[str]) -> Set[str]:
        """The subset of `patient_ids` that were merged into another record"""


class InMemoryMergeHistoryRepository(MergeHistoryRepository):
    """List-backed repository used for tests and local runs"""

    def __init__(self):
        self._entries: List[MergeHistoryEntry] = []

    async def append(self, entry: MergeHistoryEntry) -> None:
        self._entries.append(entry)

    async def list_for_patient(self, patient_id: str) -> List[MergeHistoryEntry]:
        # Reversed first so equal timestamps still come out newest first
        entries = [
            entry for entry in reversed(self._entries)
            if entry.merged_into == patient_id or patient_id in entry.merged_from
        ]
        return sorted(entries, key=lambda entry: entry.merge_date, reverse=True)

    async def merged_away(self, patient_ids: Iterable[str]) -> Set[str]:
        wanted = set(patient_ids)
        return {
            patient_id for entry in self._entries for patient_id in entry.merged_from
            if patient_id in wanted
        }


class MongoMergeHistoryRepository(BaseRepository, MergeHistoryRepository):
    """Repository for merge history stored in MongoDB"""

    def __init__(self, db_manager: DatabaseManager):
        super().__init__(db_manager, "merge_history")

    async def append(self, entry: MergeHistoryEntry) -> None:
        # merge_date stays a datetime so the newest-first sort is chronological
        document = entry.model_dump(mode="json")
        document["merge_date"] = entry.merge_date
        await self.insert_one(document)
        logger.info(f"Recorded merge {entry.id} into patient {entry.merged_into}")

    async def list_for_patient(self, patient_id: str) -> List[MergeHistoryEntry]:
        docs = await self.find_many(
            {"$or": [{"merged_into": patient_id}, {"merged_from": patient_id}]},
            projection={"_id": 0},
            sort=[("merge_date", -1), ("_id", -1)]
        )
        return [MergeHistoryEntry.model_validate(doc) for doc in docs]

    async def merged_away(self, patient_ids: Iterable[str]) -> Set[str]:
        wanted = list(patient_ids)
        if not wanted:
            return set()
        docs = await self.find_many(
            {"merged_from": {"$in": wanted}},
            projection={"_id": 0, "merged_from": 1}
        )
        return {patient_id for doc in docs for patient_id in doc["merged_from"] if patient_id in wanted}
