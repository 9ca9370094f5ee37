"""
Duplicate match repository - persistence for flagged local duplicate pairs
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional
import logging

from pymongo.errors import DuplicateKeyError

from patient_identity.core.database import BaseRepository, DatabaseManager
from ..models.matching import DuplicateMatch, MatchStatus


logger = logging.getLogger(__name__)


class DuplicateMatchRepository(ABC):
    """Storage collaborator for DuplicateMatch records"""

    @abstractmethod
    async def get(self, match_id: str) -> Optional[DuplicateMatch]:
        """Fetch a match by ID"""

    @abstractmethod
    async def save_many(self, matches: Iterable[DuplicateMatch]) -> List[DuplicateMatch]:
        """
        Store freshly scored matches and return the stored copy of each, in order.

        A stored match that has already left the pending state is kept as is
        and returned in place of the fresh one.
        """

    @abstractmethod
    async def update_status(self, match: DuplicateMatch, expected: MatchStatus) -> bool:
        """
        Replace a match only if its stored status is still `expected`.

        Returns False when another writer got there first.
        """

    @abstractmethod
    async def list_for_patient(
        self,
        patient_id: str,
        status: Optional[MatchStatus] = None
    ) -> List[DuplicateMatch]:
        """Matches involving the patient, highest score first"""


def _by_score(matches: Iterable[DuplicateMatch]) -> List[DuplicateMatch]:
    return sorted(matches, key=lambda match: (-match.match_score, match.match_id))


class InMemoryDuplicateMatchRepository(DuplicateMatchRepository):
    """Dictionary-backed repository used for tests and local runs"""

    def __init__(self):
        self._matches: Dict[str, DuplicateMatch] = {}

    async def get(self, match_id: str) -> Optional[DuplicateMatch]:
        return self._matches.get(match_id)

    async def save_many(self, matches: Iterable[DuplicateMatch]) -> List[DuplicateMatch]:
        stored = []
        for match in matches:
            existing = self._matches.get(match.match_id)
            if existing is not None and existing.status != MatchStatus.PENDING:
                stored.append(existing)
                continue
            self._matches[match.match_id] = match
            stored.append(match)
        return stored

    async def update_status(self, match: DuplicateMatch, expected: MatchStatus) -> bool:
        existing = self._matches.get(match.match_id)
        if existing is None or existing.status != expected:
            return False
        self._matches[match.match_id] = match
        return True

    async def list_for_patient(
        self,
        patient_id: str,
        status: Optional[MatchStatus] = None
    ) -> List[DuplicateMatch]:
        return _by_score(
            match for match in self._matches.values()
            if patient_id in match.patient_ids and (status is None or match.status == status)
        )


class MongoDuplicateMatchRepository(BaseRepository, DuplicateMatchRepository):
    """Repository for duplicate matches stored in MongoDB"""

    def __init__(self, db_manager: DatabaseManager):
        super().__init__(db_manager, "duplicate_matches")

    async def get(self, match_id: str) -> Optional[DuplicateMatch]:
        doc = await self.find_one({"match_id": match_id}, {"_id": 0})
        return DuplicateMatch.model_validate(doc) if doc else None

    async def save_many(self, matches: Iterable[DuplicateMatch]) -> List[DuplicateMatch]:
        stored = []
        for match in matches:
            try:
                # Only pending documents are replaced; a resolved one makes the
                # upsert collide on the unique match_id index.
                await self.replace_one(
                    {"match_id": match.match_id, "status": MatchStatus.PENDING.value},
                    match.model_dump(mode="json"),
                    upsert=True
                )
                stored.append(match)
            except DuplicateKeyError:
                logger.info(f"Keeping resolved duplicate match {match.match_id}")
                stored.append(await self.get(match.match_id) or match)
        return stored

    async def update_status(self, match: DuplicateMatch, expected: MatchStatus) -> bool:
        doc = await self.find_one_and_replace(
            {"match_id": match.match_id, "status": expected.value},
            match.model_dump(mode="json")
        )
        return doc is not None

    async def list_for_patient(
        self,
        patient_id: str,
        status: Optional[MatchStatus] = None
    ) -> List[DuplicateMatch]:
        query = {"$or": [{"patient1.id": patient_id}, {"patient2.id": patient_id}]}
        if status is not None:
            query["status"] = status.value
        docs = await self.find_many(
            query,
            projection={"_id": 0},
            sort=[("match_score", -1), ("match_id", 1)]
        )
        return [DuplicateMatch.model_validate(doc) for doc in docs]
