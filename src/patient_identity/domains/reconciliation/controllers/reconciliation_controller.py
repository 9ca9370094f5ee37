"""
Reconciliation controller - external system and Master Patient Index endpoints
"""

from typing import List
from fastapi import APIRouter, Depends, Path, Query
import logging

from patient_identity.core.dependencies import get_reconciliation_service, to_http_exception
from ..models.reconciliation import (
    ExternalSystem,
    MasterPatientIndex,
    ReconciliationRequest,
    ReconciliationResult,
    VerifyIdentifierRequest
)
from ..services.reconciliation_service import ReconciliationService


logger = logging.getLogger(__name__)

router = APIRouter(tags=["reconciliation"])


@router.post(
    "/reconciliation/{patient_id}",
    response_model=ReconciliationResult,
    response_model_by_alias=False
)
async def reconcile_patient(
    request: ReconciliationRequest,
    patient_id: str = Path(..., description="Local patient ID"),
    service: ReconciliationService = Depends(get_reconciliation_service)
) -> ReconciliationResult:
    """
    Look a stored patient up in every external system

    Systems that fail or time out are listed in failed_systems; the others
    still contribute matches.
    """
    try:
        return await service.find_matches_for_patient_id(patient_id, request.actor)

    except Exception as e:
        logger.error(f"Error reconciling patient {patient_id}: {e}")
        raise to_http_exception(e)


@router.get("/mpi/{patient_id}", response_model=MasterPatientIndex, response_model_by_alias=False)
async def get_master_patient_index(
    patient_id: str = Path(..., description="Local patient ID"),
    actor: str = Query(default="system", description="Who is asking"),
    service: ReconciliationService = Depends(get_reconciliation_service)
) -> MasterPatientIndex:
    """Fetch a patient's Master Patient Index entry"""
    try:
        return await service.get_master_patient_index(patient_id, actor)

    except Exception as e:
        logger.warning(f"Error fetching MPI entry for {patient_id}: {e}")
        raise to_http_exception(e)


@router.post(
    "/mpi/{patient_id}/identifiers/{system_id}/verify",
    response_model=MasterPatientIndex,
    response_model_by_alias=False
)
async def verify_identifier(
    request: VerifyIdentifierRequest,
    patient_id: str = Path(..., description="Local patient ID"),
    system_id: str = Path(..., description="External system ID"),
    service: ReconciliationService = Depends(get_reconciliation_service)
) -> MasterPatientIndex:
    """
    Manually verify a patient's identifier in one external system

    Replacing a different manually verified identifier requires override.
    """
    try:
        return await service.verify_identifier(
            patient_id, system_id, request.external_id, request.actor, request.override
        )

    except Exception as e:
        logger.warning(f"Error verifying {system_id} identifier for {patient_id}: {e}")
        raise to_http_exception(e)


@router.get("/external-systems", response_model=List[ExternalSystem], response_model_by_alias=False)
async def list_external_systems(
    service: ReconciliationService = Depends(get_reconciliation_service)
) -> List[ExternalSystem]:
    """Catalog of external systems; API keys are never returned"""
    return service.get_external_systems()
