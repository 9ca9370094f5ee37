"""
Duplicate detection service - finds local records that describe the same patient
"""

from typing import Any, Dict, List, Optional, Set, Union
import asyncio
import logging
import time

from patient_identity.core import metrics
from patient_identity.core.config import MatchingConfig, get_config
from patient_identity.core.exceptions import NotFoundError
from patient_identity.domains.audit.services.audit_service import SafeAuditor
from patient_identity.domains.patient.models.patient import PatientRecord, validate_patient
from patient_identity.domains.patient.repositories.patient_repository import PatientRepository
from patient_identity.domains.review.repositories.merge_history_repository import MergeHistoryRepository
from ..calculator import MatchCalculator
from ..models.matching import DuplicateMatch, MatchBreakdown, MatchStatus
from ..repositories.duplicate_repository import DuplicateMatchRepository


logger = logging.getLogger(__name__)

COMPONENT = "DuplicateDetectionService"


def _patient_ref(patient: Union[PatientRecord, Dict[str, Any], None]) -> Optional[str]:
    if isinstance(patient, PatientRecord):
        return patient.id
    if isinstance(patient, dict):
        return patient.get("id")
    return None


def _pending(matches: List[DuplicateMatch]) -> List[DuplicateMatch]:
    # Pairs a reviewer already resolved stay resolved across rescans
    return [match for match in matches if match.status == MatchStatus.PENDING]


class DuplicateDetectionService:
    """
    Scans the patient corpus for likely duplicates.

    Results are written to the match repository only once a scan has run to
    completion, so a cancelled scan leaves storage untouched. Records merged
    into another patient take no part in detection.
    """

    def __init__(
        self,
        patients: PatientRepository,
        matches: DuplicateMatchRepository,
        auditor: SafeAuditor,
        calculator: Optional[MatchCalculator] = None,
        config: Optional[MatchingConfig] = None,
        history: Optional[MergeHistoryRepository] = None
    ):
        self.patients = patients
        self.matches = matches
        self.auditor = auditor
        self.history = history
        self.config = config or get_config().matching
        self.calculator = calculator or MatchCalculator(
            self.config.weights, self.config.external_weights
        )

    async def find_potential_duplicates(
        self,
        patient: Union[PatientRecord, Dict[str, Any]],
        actor: str = "system"
    ) -> List[DuplicateMatch]:
        """Pending matches between `patient` and every other record at or above the threshold"""
        start_time = time.perf_counter()
        patient_id = _patient_ref(patient)

        try:
            patient = validate_patient(patient)
            found = _pending(await self.matches.save_many(await self._scan_for(patient)))
        except asyncio.CancelledError:
            metrics.duplicate_scans.labels(status="cancelled").inc()
            logger.info(f"Duplicate scan for patient {patient_id} cancelled")
            raise
        except Exception as e:
            metrics.duplicate_scans.labels(status="error").inc()
            logger.error(f"Duplicate scan for patient {patient_id} failed: {e}")
            await self.auditor.error(
                actor, "duplicate_patient_search_error", e, COMPONENT,
                {"patient_id": patient_id}
            )
            raise

        metrics.duplicate_scans.labels(status="success").inc()
        metrics.duplicate_candidates.inc(len(found))
        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Duplicate scan for patient {patient.id} found {len(found)} candidates "
            f"in {elapsed_ms:.1f}ms"
        )

        await self.auditor.access(
            actor, "duplicate_patient_search",
            {"patient_id": patient.id, "match_count": len(found)},
            COMPONENT
        )
        return found

    async def find_duplicates_for_patient_id(
        self,
        patient_id: str,
        actor: str = "system"
    ) -> List[DuplicateMatch]:
        patient = await self.patients.get_patient(patient_id)
        if patient is None:
            error = NotFoundError("Patient", patient_id)
            await self.auditor.error(
                actor, "duplicate_patient_search_error", error, COMPONENT,
                {"patient_id": patient_id}
            )
            raise error
        return await self.find_potential_duplicates(patient, actor)

    async def scan_corpus(self, actor: str = "system") -> List[DuplicateMatch]:
        """Every unordered pair in the corpus at or above the threshold, each reported once"""
        start_time = time.perf_counter()

        try:
            found = _pending(await self.matches.save_many(await self._scan_all_pairs()))
        except asyncio.CancelledError:
            metrics.duplicate_scans.labels(status="cancelled").inc()
            logger.info("Corpus duplicate scan cancelled")
            raise
        except Exception as e:
            metrics.duplicate_scans.labels(status="error").inc()
            logger.error(f"Corpus duplicate scan failed: {e}")
            await self.auditor.error(
                actor, "duplicate_patient_search_error", e, COMPONENT, {"scope": "corpus"}
            )
            raise

        metrics.duplicate_scans.labels(status="success").inc()
        metrics.duplicate_candidates.inc(len(found))
        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.info(f"Corpus duplicate scan found {len(found)} candidates in {elapsed_ms:.1f}ms")

        await self.auditor.access(
            actor, "duplicate_patient_search",
            {"scope": "corpus", "match_count": len(found)},
            COMPONENT
        )
        return found

    async def _scan_for(self, patient: PatientRecord) -> List[DuplicateMatch]:
        if await self._merged_away([patient]):
            logger.info(f"Patient {patient.id} was merged into another record; nothing to scan")
            return []

        semaphore = asyncio.Semaphore(self.config.max_concurrent_comparisons)
        seen: Set[str] = {patient.id}
        found: List[DuplicateMatch] = []

        page = 0
        while True:
            records = await self.patients.list_all_patients(page, self.config.scan_page_size)
            if not records:
                break

            candidates = await self._fresh(records, seen)
            breakdowns = await asyncio.gather(*[
                self._score(semaphore, patient, other) for other in candidates
            ])
            for other, breakdown in zip(candidates, breakdowns):
                if breakdown.score >= self.config.duplicate_threshold:
                    found.append(DuplicateMatch.create(patient, other, breakdown))

            page += 1

        found.sort(key=lambda match: (-match.match_score, match.patient2.id))
        return found

    async def _scan_all_pairs(self) -> List[DuplicateMatch]:
        """
        Block nested loop over the paged corpus.

        Each outer page is paired against a fresh pass over every page, and a
        pair is scored only from its lower id, so at most two pages of records
        are held at a time.
        """
        semaphore = asyncio.Semaphore(self.config.max_concurrent_comparisons)
        done: Set[str] = set()
        found: List[DuplicateMatch] = []

        page = 0
        while True:
            records = await self.patients.list_all_patients(page, self.config.scan_page_size)
            if not records:
                break

            outer = await self._fresh(records, done)
            if outer:
                found.extend(await self._pair_with_corpus(semaphore, outer))

            page += 1

        found.sort(key=lambda match: (-match.match_score, match.patient1.id, match.patient2.id))
        return found

    async def _pair_with_corpus(
        self,
        semaphore: asyncio.Semaphore,
        outer: List[PatientRecord]
    ) -> List[DuplicateMatch]:
        seen: Set[str] = set()
        found: List[DuplicateMatch] = []

        page = 0
        while True:
            records = await self.patients.list_all_patients(page, self.config.scan_page_size)
            if not records:
                break

            inner = await self._fresh(records, seen)
            pairs = [(first, second) for first in outer for second in inner if first.id < second.id]
            breakdowns = await asyncio.gather(*[
                self._score(semaphore, first, second) for first, second in pairs
            ])
            for (first, second), breakdown in zip(pairs, breakdowns):
                if breakdown.score >= self.config.duplicate_threshold:
                    found.append(DuplicateMatch.create(first, second, breakdown))

            page += 1

        return found

    async def _fresh(self, records: List[PatientRecord], seen: Set[str]) -> List[PatientRecord]:
        """Records not seen before on this pass, minus those merged into another record"""
        fresh = []
        for record in records:
            if record.id in seen:
                continue
            seen.add(record.id)
            fresh.append(record)

        merged_away = await self._merged_away(fresh)
        return [record for record in fresh if record.id not in merged_away]

    async def _merged_away(self, records: List[PatientRecord]) -> Set[str]:
        if self.history is None or not records:
            return set()
        return await self.history.merged_away([record.id for record in records])

    async def _score(
        self,
        semaphore: asyncio.Semaphore,
        patient1: PatientRecord,
        patient2: PatientRecord
    ) -> MatchBreakdown:
        async with semaphore:
            # Yield so a cancelled scan stops between comparisons
            await asyncio.sleep(0)
            return self.calculator.score(patient1, patient2)
