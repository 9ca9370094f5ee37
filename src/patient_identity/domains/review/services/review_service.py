"""
Review service - merge/review state machine for flagged matches
"""

from typing import Any, Callable, Dict, List, Optional
import inspect
import logging

from patient_identity.core import metrics
from patient_identity.core.exceptions import InvalidStateTransitionError, NotFoundError
from patient_identity.domains.audit.models.audit import PHICategory
from patient_identity.domains.audit.services.audit_service import SafeAuditor
from patient_identity.domains.matching.models.matching import DuplicateMatch, MatchStatus
from patient_identity.domains.matching.repositories.duplicate_repository import DuplicateMatchRepository
from patient_identity.domains.patient.models.patient import Address, PatientRecord, utcnow
from patient_identity.domains.patient.repositories.patient_repository import PatientRepository
from patient_identity.domains.reconciliation.models.reconciliation import (
    IdentifierSource,
    MasterPatientIndex
)
from patient_identity.domains.reconciliation.services.reconciliation_service import (
    ReconciliationService,
    apply_identifier
)
from ..models.review import MergeHistoryEntry, MergeOutcome
from ..repositories.merge_history_repository import MergeHistoryRepository


logger = logging.getLogger(__name__)

COMPONENT = "PatientIdentificationService"

MergeCallback = Callable[[PatientRecord, PatientRecord], Any]

# reviewed is not terminal: a reviewed match can still be merged or rejected
ALLOWED_TRANSITIONS = {
    MatchStatus.PENDING: {MatchStatus.REVIEWED, MatchStatus.MERGED, MatchStatus.REJECTED},
    MatchStatus.REVIEWED: {MatchStatus.MERGED, MatchStatus.REJECTED},
}

_MERGE_SKIPPED_FIELDS = {"id", "address", "last_updated"}


def check_transition(match_id: str, current: MatchStatus, requested: MatchStatus) -> None:
    if requested not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidStateTransitionError(match_id, current.value, requested.value)


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _prefer(primary_value: Any, secondary_value: Any) -> Any:
    if _is_empty(primary_value) and not _is_empty(secondary_value):
        return secondary_value
    return primary_value


def merge_patient_records(primary: PatientRecord, secondary: PatientRecord) -> PatientRecord:
    """
    Combine two records describing the same patient.

    Field by field, a non-empty value wins over an empty one and the primary
    wins when both are set. The merged record keeps the primary's id.
    """
    updates: Dict[str, Any] = {
        name: _prefer(getattr(primary, name), getattr(secondary, name))
        for name in PatientRecord.model_fields
        if name not in _MERGE_SKIPPED_FIELDS
    }
    updates["address"] = Address(**{
        name: _prefer(getattr(primary.address, name), getattr(secondary.address, name))
        for name in Address.model_fields
    })
    updates["last_updated"] = utcnow()
    return primary.model_copy(update=updates)


class ReviewService:
    """
    Moves duplicate matches and external match results through review.

    pending -> reviewed | merged | rejected, reviewed -> merged | rejected.
    merged and rejected are terminal. Status writes are compare-and-set, so
    of two concurrent resolvers exactly one succeeds.
    """

    def __init__(
        self,
        patients: PatientRepository,
        matches: DuplicateMatchRepository,
        history: MergeHistoryRepository,
        reconciliation: ReconciliationService,
        auditor: SafeAuditor,
        on_merge: Optional[MergeCallback] = None
    ):
        self.patients = patients
        self.matches = matches
        self.history = history
        self.reconciliation = reconciliation
        self.auditor = auditor
        self.on_merge = on_merge

    async def get_match(self, match_id: str) -> DuplicateMatch:
        match = await self.matches.get(match_id)
        if match is None:
            raise NotFoundError("Duplicate match", match_id)
        return match

    async def mark_reviewed(
        self, match_id: str, reviewer: str, notes: Optional[str] = None
    ) -> DuplicateMatch:
        return await self._transition(match_id, MatchStatus.REVIEWED, reviewer, notes)

    async def reject(
        self, match_id: str, reviewer: str, notes: Optional[str] = None
    ) -> DuplicateMatch:
        return await self._transition(match_id, MatchStatus.REJECTED, reviewer, notes)

    async def merge(
        self, match_id: str, reviewer: str, notes: Optional[str] = None
    ) -> MergeOutcome:
        """
        Merge patient2 into patient1.

        The match status is claimed first so concurrent resolvers have one
        winner. The merged record, the MPI supersession and the history entry
        are then written, and on_merge runs once. If any of those writes
        fails the claim is released back to the previous status, so the
        merge can be retried. A failing callback is audited and re-raised but
        does not undo the merge.
        """
        try:
            match = await self.get_match(match_id)
            check_transition(match_id, match.status, MatchStatus.MERGED)

            primary = await self.patients.get_patient(match.patient1.id) or match.patient1
            secondary = await self.patients.get_patient(match.patient2.id) or match.patient2
            merged = merge_patient_records(primary, secondary)

            resolved = await self._claim(match, MatchStatus.MERGED, reviewer, notes)

            entry = MergeHistoryEntry(
                merged_from=[secondary.id],
                merged_into=primary.id,
                merged_by=reviewer,
                notes=notes,
                match_id=match_id
            )
            try:
                await self.patients.save_patient(merged)
                await self.reconciliation.supersede_entry(secondary.id, merged, reviewer)
                # Appended last: history entries are never rolled back
                await self.history.append(entry)
            except Exception:
                await self._release(match, resolved)
                raise

        except Exception as e:
            metrics.review_transitions.labels(status=MatchStatus.MERGED.value, outcome="error").inc()
            logger.error(f"Merge of match {match_id} failed: {e}")
            await self.auditor.error(
                reviewer, "patient_records_merge_error", e, COMPONENT, {"match_id": match_id}
            )
            raise

        metrics.review_transitions.labels(status=MatchStatus.MERGED.value, outcome="success").inc()
        logger.info(f"Merged patient {secondary.id} into {primary.id} (match {match_id})")
        await self._audit_status(resolved)
        await self.auditor.access(
            reviewer, "patient_records_merged",
            {
                "primary_patient_id": primary.id,
                "secondary_patient_id": secondary.id,
                "match_id": match_id,
                "notes": notes
            },
            COMPONENT
        )

        await self._notify_merge(merged, secondary, reviewer, match_id)
        return MergeOutcome(match=resolved, merged_record=merged, history_entry=entry)

    async def accept_external_match(
        self,
        patient_id: str,
        match_id: str,
        reviewer: str,
        notes: Optional[str] = None,
        override: bool = False
    ) -> MasterPatientIndex:
        """Confirm an external match; its identifiers become manually verified"""
        return await self._resolve_external(
            patient_id, match_id, MatchStatus.MERGED, reviewer, notes, override
        )

    async def reject_external_match(
        self,
        patient_id: str,
        match_id: str,
        reviewer: str,
        notes: Optional[str] = None
    ) -> MasterPatientIndex:
        return await self._resolve_external(patient_id, match_id, MatchStatus.REJECTED, reviewer, notes)

    async def mark_external_reviewed(
        self,
        patient_id: str,
        match_id: str,
        reviewer: str,
        notes: Optional[str] = None
    ) -> MasterPatientIndex:
        return await self._resolve_external(patient_id, match_id, MatchStatus.REVIEWED, reviewer, notes)

    async def get_merge_history(self, patient_id: str, actor: str = "system") -> List[MergeHistoryEntry]:
        try:
            entries = await self.history.list_for_patient(patient_id)
        except Exception as e:
            await self.auditor.error(
                actor, "merge_history_error", e, COMPONENT, {"patient_id": patient_id}
            )
            raise

        await self.auditor.access(
            actor, "merge_history_access",
            {"patient_id": patient_id, "entry_count": len(entries)},
            COMPONENT
        )
        return entries

    async def _transition(
        self,
        match_id: str,
        target: MatchStatus,
        reviewer: str,
        notes: Optional[str]
    ) -> DuplicateMatch:
        try:
            match = await self.get_match(match_id)
            check_transition(match_id, match.status, target)
            resolved = await self._claim(match, target, reviewer, notes)
        except Exception as e:
            metrics.review_transitions.labels(status=target.value, outcome="error").inc()
            logger.warning(f"Transition of match {match_id} to {target.value} failed: {e}")
            await self.auditor.error(
                reviewer, "duplicate_patient_status_update_error", e, COMPONENT,
                {"match_id": match_id, "status": target.value}
            )
            raise

        metrics.review_transitions.labels(status=target.value, outcome="success").inc()
        await self._audit_status(resolved)
        return resolved

    async def _claim(
        self,
        match: DuplicateMatch,
        target: MatchStatus,
        reviewer: str,
        notes: Optional[str]
    ) -> DuplicateMatch:
        resolved = match.model_copy(update={
            "status": target,
            "reviewed_by": reviewer,
            "reviewed_at": utcnow(),
            "merge_notes": notes if notes is not None else match.merge_notes
        })
        if not await self.matches.update_status(resolved, expected=match.status):
            latest = await self.matches.get(match.match_id)
            current = latest.status.value if latest else "missing"
            raise InvalidStateTransitionError(match.match_id, current, target.value)
        return resolved

    async def _release(self, previous: DuplicateMatch, claimed: DuplicateMatch) -> None:
        """Put a claimed match back to its previous status after a failed merge"""
        try:
            restored = await self.matches.update_status(previous, expected=claimed.status)
        except Exception as e:
            logger.error(f"Could not release match {previous.match_id} after failed merge: {e}")
            return
        if restored:
            logger.warning(f"Released match {previous.match_id} back to {previous.status.value}")
        else:
            logger.error(f"Match {previous.match_id} changed while its merge was failing; left as is")

    async def _audit_status(self, match: DuplicateMatch) -> None:
        await self.auditor.access(
            match.reviewed_by, "duplicate_patient_status_update",
            {
                "match_id": match.match_id,
                "patient1_id": match.patient1.id,
                "patient2_id": match.patient2.id,
                "status": match.status.value,
                "notes": match.merge_notes
            },
            COMPONENT
        )

    async def _notify_merge(
        self,
        primary: PatientRecord,
        secondary: PatientRecord,
        reviewer: str,
        match_id: str
    ) -> None:
        if self.on_merge is None:
            return
        try:
            outcome = self.on_merge(primary, secondary)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"Merge callback failed for match {match_id}: {e}")
            await self.auditor.error(
                reviewer, "merge_callback_error", e, COMPONENT,
                {
                    "match_id": match_id,
                    "primary_patient_id": primary.id,
                    "secondary_patient_id": secondary.id
                }
            )
            raise

    async def _resolve_external(
        self,
        patient_id: str,
        match_id: str,
        target: MatchStatus,
        reviewer: str,
        notes: Optional[str],
        override: bool = False
    ) -> MasterPatientIndex:
        def resolve(entry: MasterPatientIndex) -> MasterPatientIndex:
            result = entry.match_result(match_id)
            if result is None:
                raise NotFoundError("Match result", match_id)
            check_transition(match_id, result.status, target)

            resolved = result.model_copy(update={
                "status": target,
                "reviewed_by": reviewer,
                "reviewed_at": utcnow(),
                "merge_notes": notes if notes is not None else result.merge_notes,
                "last_updated": utcnow()
            })
            updated = entry.model_copy(update={
                "match_results": [
                    resolved if item.match_id == match_id else item
                    for item in entry.match_results
                ]
            })

            if target == MatchStatus.MERGED:
                for identifier in result.external_identifiers:
                    verified = identifier.model_copy(update={
                        "source": IdentifierSource.MANUAL,
                        "verified": True,
                        "confidence": 1.0,
                        "last_updated": utcnow()
                    })
                    updated = apply_identifier(updated, verified, override)
            return updated

        try:
            mpi = await self.reconciliation.modify_index(patient_id, resolve, reviewer)
        except Exception as e:
            metrics.review_transitions.labels(status=target.value, outcome="error").inc()
            logger.warning(f"Transition of external match {match_id} to {target.value} failed: {e}")
            await self.auditor.error(
                reviewer, "external_match_status_update_error", e, COMPONENT,
                {"patient_id": patient_id, "match_id": match_id, "status": target.value},
                category=PHICategory.PATIENT_IDENTIFIERS
            )
            raise

        metrics.review_transitions.labels(status=target.value, outcome="success").inc()
        await self.auditor.access(
            reviewer, "external_match_status_update",
            {"patient_id": patient_id, "match_id": match_id, "status": target.value, "notes": notes},
            COMPONENT,
            category=PHICategory.PATIENT_IDENTIFIERS
        )
        return mpi
