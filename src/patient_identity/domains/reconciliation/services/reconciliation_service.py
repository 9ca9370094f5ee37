"""
Reconciliation service - external system lookups folded into the Master Patient Index
"""

from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
import asyncio
import json
import logging
import time

from patient_identity.core import metrics
from patient_identity.core.concurrency import KeyedLocks
from patient_identity.core.config import MatchingConfig, ReconciliationConfig, get_config
from patient_identity.core.exceptions import (
    ConfigurationError,
    ExternalSystemError,
    MergeConflictError,
    NotFoundError,
    ValidationError
)
from patient_identity.domains.audit.models.audit import PHICategory
from patient_identity.domains.audit.services.audit_service import SafeAuditor
from patient_identity.domains.matching.calculator import MatchCalculator
from patient_identity.domains.matching.models.matching import MatchStatus
from patient_identity.domains.patient.models.patient import PatientRecord, utcnow, validate_patient
from patient_identity.domains.patient.repositories.patient_repository import PatientRepository
from patient_identity.providers.base_provider import BaseExternalSystemClient
from ..models.reconciliation import (
    DEFAULT_EXTERNAL_SYSTEMS,
    ExternalCandidate,
    ExternalIdentifier,
    ExternalSystem,
    IdentifierSource,
    MasterPatientIndex,
    MatchClassification,
    MatchResult,
    ReconciliationResult,
    SystemFailure,
    classify,
    external_match_id
)
from ..repositories.mpi_repository import MasterPatientIndexRepository


logger = logging.getLogger(__name__)

COMPONENT = "RecordMatchingService"

IndexMutation = Callable[[MasterPatientIndex], MasterPatientIndex]


def load_external_systems(file_path: Optional[str]) -> Tuple[ExternalSystem, ...]:
    """
    Load the external system catalog from a JSON list.

    Without a file the built-in catalog (EMR, laboratory, pharmacy) is used.
    """
    if not file_path:
        return DEFAULT_EXTERNAL_SYSTEMS

    try:
        with open(file_path, 'r') as f:
            entries = json.load(f)
        systems = tuple(ExternalSystem.model_validate(entry) for entry in entries)
    except (OSError, ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid external system catalog {file_path}: {e}") from e

    ids = [system.id for system in systems]
    if len(set(ids)) != len(ids):
        raise ConfigurationError(f"Duplicate system ids in catalog {file_path}")
    return systems


def apply_identifier(
    mpi: MasterPatientIndex,
    identifier: ExternalIdentifier,
    override: bool = False
) -> MasterPatientIndex:
    """
    Upsert an identifier by system, honouring manual verification.

    An automatic or imported identifier never replaces a manually verified
    one. A manual identifier replaces a different manual one only with
    `override`; otherwise MergeConflictError is raised.
    """
    existing = mpi.identifier_for(identifier.system_id)

    if existing is not None and existing.manually_verified:
        if not identifier.manually_verified:
            logger.info(
                f"Keeping manually verified {identifier.system_id} identifier for "
                f"patient {mpi.patient_id}; automatic discovery skipped"
            )
            return mpi
        if existing.external_id != identifier.external_id and not override:
            metrics.mpi_conflicts.inc()
            logger.warning(
                f"Conflicting manual {identifier.system_id} identifier for patient {mpi.patient_id}"
            )
            raise MergeConflictError(
                mpi.patient_id,
                f"system '{identifier.system_id}' already has a different manually verified identifier"
            )

    others = [item for item in mpi.external_identifiers if item.system_id != identifier.system_id]
    identifiers = sorted(others + [identifier], key=lambda item: item.system_id)
    return mpi.model_copy(update={"external_identifiers": identifiers})


def store_match_result(mpi: MasterPatientIndex, result: MatchResult) -> MasterPatientIndex:
    """Replace the stored result with the same match_id unless it has been resolved"""
    existing = mpi.match_result(result.match_id)
    if existing is not None and existing.status != MatchStatus.PENDING:
        return mpi

    others = [item for item in mpi.match_results if item.match_id != result.match_id]
    return mpi.model_copy(update={"match_results": others + [result]})


def _patient_ref(patient: Any) -> Optional[str]:
    if isinstance(patient, PatientRecord):
        return patient.id
    if isinstance(patient, dict):
        return patient.get("id")
    return None


class ReconciliationService:
    """
    Looks patients up in every external system and maintains their MPI entries.

    MPI writes for one patient are serialized by a per-patient lock and
    checked against the stored version; a lost race is retried from a fresh
    read up to max_write_retries times before MergeConflictError.
    """

    def __init__(
        self,
        patients: PatientRepository,
        mpi: MasterPatientIndexRepository,
        client: BaseExternalSystemClient,
        auditor: SafeAuditor,
        calculator: Optional[MatchCalculator] = None,
        systems: Optional[Sequence[ExternalSystem]] = None,
        config: Optional[ReconciliationConfig] = None,
        matching_config: Optional[MatchingConfig] = None,
        locks: Optional[KeyedLocks] = None
    ):
        self.patients = patients
        self.mpi = mpi
        self.client = client
        self.auditor = auditor
        self.config = config or get_config().reconciliation
        self.matching_config = matching_config or get_config().matching
        self.calculator = calculator or MatchCalculator(
            self.matching_config.weights, self.matching_config.external_weights
        )
        self._systems: Tuple[ExternalSystem, ...] = tuple(
            systems if systems is not None else load_external_systems(self.config.systems_file)
        )
        self._locks = locks or KeyedLocks()

    def get_external_systems(self) -> List[ExternalSystem]:
        return list(self._systems)

    def get_external_system(self, system_id: str) -> ExternalSystem:
        for system in self._systems:
            if system.id == system_id:
                return system
        raise NotFoundError("External system", system_id)

    async def find_matches(
        self,
        patient: Union[PatientRecord, Dict[str, Any]],
        actor: str = "system"
    ) -> ReconciliationResult:
        """
        Look the patient up in every catalogued system.

        A failing or slow system is reported in failed_systems and never
        affects the others. Matched results are folded into the MPI.
        """
        patient_id = _patient_ref(patient)

        try:
            patient = validate_patient(patient)
            result = await self._reconcile(patient)
            await self._record_results(patient, result, actor)
        except asyncio.CancelledError:
            logger.info(f"Reconciliation for patient {patient_id} cancelled")
            raise
        except Exception as e:
            logger.error(f"Reconciliation for patient {patient_id} failed: {e}")
            await self.auditor.error(
                actor, "patient_record_match_error", e, COMPONENT, {"patient_id": patient_id}
            )
            raise

        await self.auditor.access(
            actor, "patient_record_match_search",
            {
                "patient_id": patient.id,
                "match_count": len(result.matches),
                "failed_systems": [failure.system_id for failure in result.failed_systems]
            },
            COMPONENT,
            category=PHICategory.PATIENT_IDENTIFIERS
        )
        return result

    async def find_matches_for_patient_id(
        self,
        patient_id: str,
        actor: str = "system"
    ) -> ReconciliationResult:
        patient = await self.patients.get_patient(patient_id)
        if patient is None:
            error = NotFoundError("Patient", patient_id)
            await self.auditor.error(
                actor, "patient_record_match_error", error, COMPONENT, {"patient_id": patient_id}
            )
            raise error
        return await self.find_matches(patient, actor)

    async def verify_identifier(
        self,
        patient_id: str,
        system_id: str,
        external_id: str,
        actor: str,
        override: bool = False
    ) -> MasterPatientIndex:
        """Record an operator-confirmed identifier for one system"""
        identifier = ExternalIdentifier(
            system_id=system_id,
            external_id=external_id,
            patient_id=patient_id,
            confidence=1.0,
            source=IdentifierSource.MANUAL,
            verified=True
        )
        return await self.update_master_patient_index(patient_id, identifier, actor, override)

    async def update_master_patient_index(
        self,
        patient_id: str,
        identifier: ExternalIdentifier,
        actor: str,
        override: bool = False
    ) -> MasterPatientIndex:
        try:
            if identifier.patient_id != patient_id:
                raise ValidationError(
                    f"Identifier belongs to patient {identifier.patient_id}, not {patient_id}",
                    fields=["patient_id"]
                )
            self.get_external_system(identifier.system_id)

            fresh = identifier.model_copy(update={"last_updated": utcnow()})
            mpi = await self.modify_index(
                patient_id,
                lambda entry: apply_identifier(entry, fresh, override),
                actor
            )
        except Exception as e:
            logger.error(f"MPI update for patient {patient_id} failed: {e}")
            await self.auditor.error(
                actor, "master_patient_index_update_error", e, COMPONENT,
                {"patient_id": patient_id, "system_id": identifier.system_id},
                category=PHICategory.PATIENT_IDENTIFIERS
            )
            raise

        await self.auditor.access(
            actor, "master_patient_index_update",
            {
                "patient_id": patient_id,
                "system_id": identifier.system_id,
                "external_id": identifier.external_id,
                "source": identifier.source.value,
                "override": override
            },
            COMPONENT,
            category=PHICategory.PATIENT_IDENTIFIERS
        )
        return mpi

    async def get_master_patient_index(
        self,
        patient_id: str,
        actor: str = "system"
    ) -> MasterPatientIndex:
        try:
            mpi = await self.mpi.get(patient_id)
            if mpi is None:
                raise NotFoundError("Master patient index", patient_id)
        except Exception as e:
            await self.auditor.error(
                actor, "master_patient_index_error", e, COMPONENT,
                {"patient_id": patient_id},
                category=PHICategory.PATIENT_IDENTIFIERS
            )
            raise

        await self.auditor.access(
            actor, "master_patient_index_access", {"patient_id": patient_id}, COMPONENT,
            category=PHICategory.PATIENT_IDENTIFIERS
        )
        return mpi

    async def supersede_entry(
        self,
        secondary_id: str,
        merged_primary: PatientRecord,
        actor: str
    ) -> Optional[MasterPatientIndex]:
        """
        Point the secondary's MPI entry at the surviving patient.

        Identifiers for systems the primary has no identifier for move to the
        primary's entry. Returns the primary's entry, or None when neither
        patient has one.
        """
        primary_id = merged_primary.id
        secondary = await self.mpi.get(secondary_id)

        if secondary is not None:
            def mark(entry: MasterPatientIndex) -> MasterPatientIndex:
                if entry.superseded_by == primary_id:
                    return entry
                return entry.model_copy(update={"superseded_by": primary_id})

            secondary = await self.modify_index(secondary_id, mark, actor)
        elif await self.mpi.get(primary_id) is None:
            return None

        carried = secondary.external_identifiers if secondary is not None else []

        def absorb(entry: MasterPatientIndex) -> MasterPatientIndex:
            updated = entry.model_copy(update={"primary_record": merged_primary})
            for identifier in carried:
                if updated.identifier_for(identifier.system_id) is None:
                    updated = apply_identifier(
                        updated, identifier.model_copy(update={"patient_id": primary_id})
                    )
            return updated

        return await self.modify_index(primary_id, absorb, actor, primary_record=merged_primary)

    async def modify_index(
        self,
        patient_id: str,
        mutate: IndexMutation,
        actor: str,
        primary_record: Optional[PatientRecord] = None
    ) -> MasterPatientIndex:
        """
        Apply `mutate` to the patient's MPI entry and store the result.

        The entry is created from `primary_record` (or the stored patient)
        when it does not exist yet. A mutation returning its input unchanged
        on an existing entry skips the write.
        """
        attempts = self.config.max_write_retries + 1

        async with self._locks.hold(patient_id):
            for attempt in range(1, attempts + 1):
                current = await self.mpi.get(patient_id)
                if current is None:
                    base = await self._new_entry(patient_id, actor, primary_record)
                    expected_version = 0
                else:
                    base = current
                    expected_version = current.version

                updated = mutate(base)
                if current is not None and updated is current:
                    return current

                updated = updated.model_copy(update={"last_updated": utcnow(), "updated_by": actor})
                try:
                    return await self.mpi.save(updated, expected_version)
                except MergeConflictError as e:
                    metrics.mpi_conflicts.inc()
                    logger.warning(
                        f"MPI write conflict for patient {patient_id} "
                        f"(attempt {attempt}/{attempts}): {e}"
                    )

        raise MergeConflictError(patient_id, f"gave up after {attempts} conflicting writes")

    async def _new_entry(
        self,
        patient_id: str,
        actor: str,
        primary_record: Optional[PatientRecord]
    ) -> MasterPatientIndex:
        record = primary_record or await self.patients.get_patient(patient_id)
        if record is None:
            raise NotFoundError("Patient", patient_id)
        return MasterPatientIndex(
            patient_id=patient_id,
            primary_record=record,
            created_by=actor,
            updated_by=actor
        )

    async def _reconcile(self, patient: PatientRecord) -> ReconciliationResult:
        semaphore = asyncio.Semaphore(self.config.max_concurrent_lookups)
        outcomes = await asyncio.gather(*[
            self._lookup(semaphore, system, patient) for system in self._systems
        ])

        matches: List[MatchResult] = []
        succeeded: List[str] = []
        failed: List[SystemFailure] = []
        for system, (results, failure) in zip(self._systems, outcomes):
            if failure is not None:
                failed.append(failure)
                continue
            succeeded.append(system.id)
            matches.extend(results)

        matches.sort(key=lambda match: (-match.match_score, match.system_id, match.external_id))
        logger.info(
            f"Reconciled patient {patient.id}: {len(matches)} matches, "
            f"{len(succeeded)} systems ok, {len(failed)} failed"
        )
        return ReconciliationResult(
            patient_id=patient.id,
            matches=matches,
            succeeded_systems=succeeded,
            failed_systems=failed
        )

    async def _lookup(
        self,
        semaphore: asyncio.Semaphore,
        system: ExternalSystem,
        patient: PatientRecord
    ) -> Tuple[List[MatchResult], Optional[SystemFailure]]:
        timeout = self.config.lookup_timeout_seconds

        async with semaphore:
            start_time = time.perf_counter()
            try:
                candidates = await asyncio.wait_for(self.client.lookup(system, patient), timeout)
            except asyncio.TimeoutError:
                failure = SystemFailure(
                    system_id=system.id,
                    error=f"lookup timed out after {timeout}s",
                    timed_out=True
                )
            except ExternalSystemError as e:
                failure = SystemFailure(system_id=system.id, error=str(e), timed_out=e.timed_out)
            except Exception as e:
                failure = SystemFailure(system_id=system.id, error=str(e) or e.__class__.__name__)
            else:
                failure = None
            finally:
                metrics.external_lookup_duration.labels(system=system.id).observe(
                    time.perf_counter() - start_time
                )

        if failure is not None:
            status = "timeout" if failure.timed_out else "error"
            metrics.external_lookups.labels(system=system.id, status=status).inc()
            logger.warning(f"Lookup against {system.id} failed for patient {patient.id}: {failure.error}")
            return [], failure

        metrics.external_lookups.labels(system=system.id, status="success").inc()
        results = [
            result for result in (
                self._score_candidate(system, patient, candidate) for candidate in candidates
            )
            if result is not None
        ]
        return results, None

    def _score_candidate(
        self,
        system: ExternalSystem,
        patient: PatientRecord,
        candidate: ExternalCandidate
    ) -> Optional[MatchResult]:
        breakdown = self.calculator.score_against_external(patient, candidate.record)
        classification = classify(
            breakdown.score,
            self.matching_config.duplicate_threshold,
            self.matching_config.potential_threshold
        )
        if classification == MatchClassification.UNMATCHED:
            return None

        identifier = ExternalIdentifier(
            system_id=system.id,
            external_id=candidate.external_id,
            patient_id=patient.id,
            confidence=breakdown.score,
            source=IdentifierSource.AUTOMATIC,
            verified=False
        )
        return MatchResult(
            match_id=external_match_id(patient.id, system.id, candidate.external_id),
            patient_id=patient.id,
            system_id=system.id,
            external_id=candidate.external_id,
            match_score=breakdown.score,
            match_factors=breakdown.factors,
            external_identifiers=[identifier],
            classification=classification
        )

    async def _record_results(
        self,
        patient: PatientRecord,
        result: ReconciliationResult,
        actor: str
    ) -> None:
        def fold(entry: MasterPatientIndex) -> MasterPatientIndex:
            updated = entry.model_copy(update={"primary_record": patient})
            # Matches arrive best first; only the top matched record per system
            # supplies that system's identifier
            claimed = set()
            for match in result.matches:
                updated = store_match_result(updated, match)
                if match.classification != MatchClassification.MATCHED:
                    continue
                for identifier in match.external_identifiers:
                    if identifier.system_id not in claimed:
                        updated = apply_identifier(updated, identifier)
                claimed.update(identifier.system_id for identifier in match.external_identifiers)
            return updated

        await self.modify_index(patient.id, fold, actor, primary_record=patient)
