"""
Review controller - match review and merge endpoints
"""

from typing import List
from fastapi import APIRouter, Depends, Path, Query
import logging

from patient_identity.core.dependencies import get_review_service, to_http_exception
from patient_identity.domains.matching.models.matching import DuplicateMatch
from patient_identity.domains.reconciliation.models.reconciliation import MasterPatientIndex
from ..models.review import ExternalReviewRequest, MergeHistoryEntry, MergeOutcome, ReviewRequest
from ..services.review_service import ReviewService


logger = logging.getLogger(__name__)

router = APIRouter(tags=["review"])


@router.post("/matches/{match_id}/review", response_model=DuplicateMatch, response_model_by_alias=False)
async def review_match(
    request: ReviewRequest,
    match_id: str = Path(..., description="Duplicate match ID"),
    service: ReviewService = Depends(get_review_service)
) -> DuplicateMatch:
    """Mark a pending match as reviewed without changing any record"""
    try:
        return await service.mark_reviewed(match_id, request.reviewer, request.notes)

    except Exception as e:
        logger.warning(f"Error reviewing match {match_id}: {e}")
        raise to_http_exception(e)


@router.post("/matches/{match_id}/merge", response_model=MergeOutcome, response_model_by_alias=False)
async def merge_match(
    request: ReviewRequest,
    match_id: str = Path(..., description="Duplicate match ID"),
    service: ReviewService = Depends(get_review_service)
) -> MergeOutcome:
    """
    Merge the second patient of a match into the first

    Returns the resolved match, the merged record and the merge history entry.
    """
    try:
        return await service.merge(match_id, request.reviewer, request.notes)

    except Exception as e:
        logger.warning(f"Error merging match {match_id}: {e}")
        raise to_http_exception(e)


@router.post("/matches/{match_id}/reject", response_model=DuplicateMatch, response_model_by_alias=False)
async def reject_match(
    request: ReviewRequest,
    match_id: str = Path(..., description="Duplicate match ID"),
    service: ReviewService = Depends(get_review_service)
) -> DuplicateMatch:
    """Reject a match; the two records stay separate"""
    try:
        return await service.reject(match_id, request.reviewer, request.notes)

    except Exception as e:
        logger.warning(f"Error rejecting match {match_id}: {e}")
        raise to_http_exception(e)


@router.post(
    "/mpi/{patient_id}/matches/{match_id}/{action}",
    response_model=MasterPatientIndex,
    response_model_by_alias=False
)
async def resolve_external_match(
    request: ExternalReviewRequest,
    patient_id: str = Path(..., description="Local patient ID"),
    match_id: str = Path(..., description="External match result ID"),
    action: str = Path(..., pattern="^(accept|reject|review)$"),
    service: ReviewService = Depends(get_review_service)
) -> MasterPatientIndex:
    """
    Resolve an external match stored in the patient's MPI entry

    accept verifies the match's identifiers; reject and review only record
    the decision.
    """
    try:
        if action == "accept":
            return await service.accept_external_match(
                patient_id, match_id, request.reviewer, request.notes, request.override
            )
        if action == "reject":
            return await service.reject_external_match(
                patient_id, match_id, request.reviewer, request.notes
            )
        return await service.mark_external_reviewed(
            patient_id, match_id, request.reviewer, request.notes
        )

    except Exception as e:
        logger.warning(f"Error resolving external match {match_id}: {e}")
        raise to_http_exception(e)


@router.get(
    "/patients/{patient_id}/merge-history",
    response_model=List[MergeHistoryEntry],
    response_model_by_alias=False
)
async def get_merge_history(
    patient_id: str = Path(..., description="Local patient ID"),
    actor: str = Query(default="system", description="Who is asking"),
    service: ReviewService = Depends(get_review_service)
) -> List[MergeHistoryEntry]:
    """Merges the patient took part in, newest first"""
    try:
        return await service.get_merge_history(patient_id, actor)

    except Exception as e:
        logger.error(f"Error fetching merge history for {patient_id}: {e}")
        raise to_http_exception(e)
