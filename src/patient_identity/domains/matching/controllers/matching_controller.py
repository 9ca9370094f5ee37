"""
Matching controller - duplicate detection endpoints
"""

from typing import List
from fastapi import APIRouter, Depends, Path, Query
import logging

from patient_identity.core.dependencies import get_duplicate_service, to_http_exception
from ..models.matching import DuplicateMatch, ScanRequest
from ..services.duplicate_service import DuplicateDetectionService


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/duplicates", tags=["duplicates"])


@router.post("/scan", response_model=List[DuplicateMatch], response_model_by_alias=False)
async def scan_for_duplicates(
    request: ScanRequest,
    service: DuplicateDetectionService = Depends(get_duplicate_service)
) -> List[DuplicateMatch]:
    """
    Scan for duplicate patients

    With a patient in the body, returns the records that likely duplicate it.
    Without one, scans every pair in the corpus. Matches are stored as pending.
    """
    try:
        if request.patient is not None:
            return await service.find_potential_duplicates(request.patient, request.actor)
        return await service.scan_corpus(request.actor)

    except Exception as e:
        logger.error(f"Error scanning for duplicates: {e}")
        raise to_http_exception(e)


@router.get("/{patient_id}", response_model=List[DuplicateMatch], response_model_by_alias=False)
async def get_duplicates_for_patient(
    patient_id: str = Path(..., description="Local patient ID"),
    actor: str = Query(default="system", description="Who is asking"),
    service: DuplicateDetectionService = Depends(get_duplicate_service)
) -> List[DuplicateMatch]:
    """
    Find likely duplicates of a stored patient

    Sorted by match score, highest first.
    """
    try:
        return await service.find_duplicates_for_patient_id(patient_id, actor)

    except Exception as e:
        logger.error(f"Error finding duplicates for {patient_id}: {e}")
        raise to_http_exception(e)
