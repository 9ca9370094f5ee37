"""
Dependency injection for the application
"""

from fastapi import Depends, HTTPException, Request

from .exceptions import (
    ExternalSystemError,
    InvalidStateTransitionError,
    MergeConflictError,
    NotFoundError,
    ValidationError
)

# Domain services
from patient_identity.domains.matching.services.duplicate_service import DuplicateDetectionService
from patient_identity.domains.reconciliation.services.reconciliation_service import ReconciliationService
from patient_identity.domains.review.services.review_service import ReviewService


async def get_service_context(request: Request):
    """Get the identity service context built at startup"""
    return request.app.state.identity_service


# Service dependencies
async def get_duplicate_service(
    context=Depends(get_service_context)
) -> DuplicateDetectionService:
    """Get duplicate detection service instance"""
    return context.duplicate_service


async def get_reconciliation_service(
    context=Depends(get_service_context)
) -> ReconciliationService:
    """Get reconciliation service instance"""
    return context.reconciliation_service


async def get_review_service(
    context=Depends(get_service_context)
) -> ReviewService:
    """Get review service instance"""
    return context.review_service


def to_http_exception(error: Exception) -> HTTPException:
    """Map a domain error onto the HTTP status the API reports for it"""
    if isinstance(error, HTTPException):
        return error
    if isinstance(error, ValidationError):
        return HTTPException(status_code=400, detail={"message": str(error), "fields": error.fields})
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ExternalSystemError):
        return HTTPException(status_code=502, detail=str(error))
    if isinstance(error, (InvalidStateTransitionError, MergeConflictError)):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=500, detail="Internal server error")
